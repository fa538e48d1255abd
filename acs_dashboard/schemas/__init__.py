from .conversation import (  # noqa: F401
    Conversation,
    Message,
    StorageMetadata,
    StorageStats,
    Thread,
)
from .dashboard import (  # noqa: F401
    DashboardAnalytics,
    DashboardMetrics,
    DashboardUsage,
    DashboardView,
    LeadPerformance,
    LeadStage,
    ThreadMetrics,
    TrendData,
    UsageStats,
)
