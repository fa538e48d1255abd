from __future__ import annotations

import datetime
from typing import Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from acs_dashboard.schemas.conversation import Conversation, StorageStats

TimeRange = Literal["today", "week", "month", "quarter", "year", "all"]
SortBy = Literal["date", "name", "status", "priority"]
SortOrder = Literal["asc", "desc"]
StatusFilter = Literal["all", "active", "completed", "flagged", "spam"]
TrendDirection = Literal["up", "down", "stable"]


class ThreadMetrics(BaseModel):
    new_leads: int = 0
    pending_replies: int = 0
    unopened_leads: int = 0


class LeadPerformance(BaseModel):
    thread_id: str
    score: float
    timestamp: str
    start_timestamp: str
    end_timestamp: str
    source: str
    source_name: str


class ProcessedThreadData(BaseModel):
    conversations: List[Conversation] = Field(default_factory=list)
    metrics: ThreadMetrics = Field(default_factory=ThreadMetrics)
    lead_performance: List[LeadPerformance] = Field(default_factory=list)


class DashboardMetrics(BaseModel):
    total_conversations: int = 0
    active_conversations: int = 0
    total_leads: int = 0
    conversion_rate: int = 0
    average_response_time: int = 0
    monthly_growth: int = 0
    total_revenue: float = 0
    average_deal_size: float = 0


class DashboardUsage(BaseModel):
    emails_sent: int = 0
    logins: int = 0
    active_days: int = 0


class UsageStats(BaseModel):
    emails_sent: int = 0
    logins: int = 0
    active_days: int = 0
    average_emails_per_day: int = 0
    engagement_rate: int = 0


class ChartDataset(BaseModel):
    label: str
    data: List[float] = Field(default_factory=list)
    background_color: Optional[Union[str, List[str]]] = None
    border_color: Optional[Union[str, List[str]]] = None


class ChartData(BaseModel):
    labels: List[str] = Field(default_factory=list)
    datasets: List[ChartDataset] = Field(default_factory=list)


class DashboardAnalytics(BaseModel):
    conversation_trend: ChartData
    lead_source_breakdown: ChartData
    response_time_trend: ChartData
    conversion_funnel: ChartData
    revenue_trend: ChartData = Field(default_factory=ChartData)


class LeadStage(BaseModel):
    """One EV band of the lead funnel."""

    name: str
    leads: int = 0
    ev_range: str
    action: str


class TrendData(BaseModel):
    current: float
    previous: float
    change: float
    change_percent: float
    direction: TrendDirection


class DateRange(BaseModel):
    start_date: datetime.datetime
    end_date: datetime.datetime


class DashboardView(BaseModel):
    """Everything one dashboard screen needs in a single payload."""

    conversations: List[Conversation]
    metrics: DashboardMetrics
    analytics: DashboardAnalytics
    usage: DashboardUsage
    usage_stats: UsageStats
    lead_funnel: List[LeadStage]
    cache: StorageStats
    last_updated: Optional[datetime.datetime] = None
    trends: Optional[Dict[str, TrendData]] = None
    error: Optional[str] = None
