from __future__ import annotations

import logging
import math
from collections import Counter
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional

from dateutil.relativedelta import relativedelta

from acs_dashboard.schemas.conversation import Conversation
from acs_dashboard.schemas.dashboard import (
    ChartData,
    ChartDataset,
    DashboardAnalytics,
    DashboardMetrics,
    DashboardUsage,
    LeadStage,
    SortBy,
    SortOrder,
    TrendData,
    UsageStats,
)
from acs_dashboard.services.normalize import parse_date, utcnow

logger = logging.getLogger("acs.dashboard.services.dashboard")

PRIORITY_ORDER: Dict[str, int] = {"high": 3, "medium": 2, "normal": 1, "low": 0}

# (name, EV range, highest EV in band, action), lowest band first.
LEAD_STAGES = [
    ("Contacted", "0-19", 19, "Initial outreach"),
    ("Engaged", "20-39", 39, "Follow-up"),
    ("Toured", "40-59", 59, "Schedule tour"),
    ("Offer Stage", "60-79", 79, "Prepare offer"),
    ("Closed", "80-100", 100, "Finalize deal"),
]


def _round(value: float) -> int:
    """Round half up, the way the dashboard charts always have."""
    return int(math.floor(value + 0.5))


def percent_of(part: int, whole: int) -> int:
    return _round(part / whole * 100) if whole > 0 else 0


def _created(conversation: Conversation) -> Optional[datetime]:
    return parse_date(conversation.thread.created_at)


def _day_label(day: datetime) -> str:
    return f"{day:%b} {day.day}"


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------

def calculate_average_response_time(conversations: List[Conversation]) -> int:
    """
    Average minutes between an inbound email and the outbound reply that
    directly follows it.
    """
    response_seconds: List[float] = []

    for conversation in conversations:
        messages = sorted(conversation.messages, key=lambda m: m.local_date)
        for current, following in zip(messages, messages[1:]):
            if current.type == "inbound-email" and following.type == "outbound-email":
                delta = following.local_date - current.local_date
                response_seconds.append(delta.total_seconds())

    if not response_seconds:
        return 0

    average = sum(response_seconds) / len(response_seconds)
    return _round(average / 60)


def calculate_monthly_growth(
    conversations: List[Conversation],
    now: Optional[datetime] = None,
) -> int:
    """Percent change in new conversations, this calendar month vs the last."""
    now = now or utcnow()
    current_month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    last_month_start = current_month_start - relativedelta(months=1)

    current_count = 0
    last_count = 0
    for conversation in conversations:
        created = _created(conversation)
        if created is None:
            continue
        if created >= current_month_start:
            current_count += 1
        elif created >= last_month_start:
            last_count += 1

    if last_count == 0:
        return 100 if current_count > 0 else 0
    return _round((current_count - last_count) / last_count * 100)


def calculate_dashboard_metrics(
    conversations: List[Conversation],
    usage: DashboardUsage,
    now: Optional[datetime] = None,
) -> DashboardMetrics:
    total = len(conversations)
    completed = sum(1 for c in conversations if c.thread.completed)

    logger.debug(
        "Dashboard metrics over %d conversations (emails_sent=%s)",
        total,
        usage.emails_sent,
    )
    return DashboardMetrics(
        total_conversations=total,
        active_conversations=total - completed,
        total_leads=total,
        conversion_rate=percent_of(completed, total),
        average_response_time=calculate_average_response_time(conversations),
        monthly_growth=calculate_monthly_growth(conversations, now),
        # Revenue tracking is not wired to any backend table yet.
        total_revenue=0,
        average_deal_size=0,
    )


def calculate_usage_stats(usage: DashboardUsage) -> UsageStats:
    return UsageStats(
        emails_sent=usage.emails_sent or 0,
        logins=usage.logins or 0,
        active_days=usage.active_days or 0,
        average_emails_per_day=(
            _round(usage.emails_sent / usage.active_days) if usage.active_days > 0 else 0
        ),
        engagement_rate=percent_of(usage.active_days, usage.logins),
    )


# ---------------------------------------------------------------------------
# Analytics (chart data)
# ---------------------------------------------------------------------------

def generate_analytics(
    conversations: List[Conversation],
    now: Optional[datetime] = None,
) -> DashboardAnalytics:
    now = now or utcnow()

    # Conversation trend, last 7 days (oldest first).
    trend = [0] * 7
    trend_labels = [_day_label(now - timedelta(days=6 - i)) for i in range(7)]
    for conversation in conversations:
        created = _created(conversation)
        if created is None:
            continue
        days_ago = int((now - created).total_seconds() / 86400)
        if 0 <= days_ago < 7:
            trend[6 - days_ago] += 1

    # Lead sources, in first-seen order.
    source_counts = Counter(c.thread.source_name or "Unknown" for c in conversations)

    # Conversion funnel.
    total = len(conversations)
    completed = sum(1 for c in conversations if c.thread.completed)
    funnel = [("Total Leads", total), ("Active", total - completed), ("Completed", completed)]

    # Average response time per creation day, last 30 days.
    by_day: Dict[date, List[Conversation]] = {}
    for conversation in conversations:
        created = _created(conversation)
        if created is not None:
            by_day.setdefault(created.date(), []).append(conversation)

    response_labels: List[str] = []
    response_times: List[float] = []
    for i in range(30):
        day = now - timedelta(days=29 - i)
        response_labels.append(_day_label(day))
        response_times.append(calculate_average_response_time(by_day.get(day.date(), [])))

    return DashboardAnalytics(
        conversation_trend=ChartData(
            labels=trend_labels,
            datasets=[
                ChartDataset(
                    label="Conversations",
                    data=trend,
                    border_color="#4A90E2",
                    background_color="rgba(74, 144, 226, 0.2)",
                )
            ],
        ),
        lead_source_breakdown=ChartData(
            labels=list(source_counts.keys()),
            datasets=[
                ChartDataset(
                    label="Lead Sources",
                    data=list(source_counts.values()),
                    background_color=["#4A90E2", "#50E3C2", "#F5A623", "#BD10E0", "#9013FE"],
                )
            ],
        ),
        response_time_trend=ChartData(
            labels=response_labels,
            datasets=[
                ChartDataset(
                    label="Avg Response Time (min)",
                    data=response_times,
                    border_color="#50E3C2",
                    background_color="rgba(80, 227, 194, 0.2)",
                )
            ],
        ),
        conversion_funnel=ChartData(
            labels=[stage for stage, _ in funnel],
            datasets=[
                ChartDataset(
                    label="Conversations",
                    data=[count for _, count in funnel],
                    background_color=["#4A90E2", "#F5A623", "#50E3C2"],
                )
            ],
        ),
        revenue_trend=ChartData(),
    )


def categorize_leads(conversations: List[Conversation]) -> List[LeadStage]:
    """
    Bucket conversations into the EV funnel by their highest message score.

    Conversations with no scored message are left out. Closed comes first.
    """
    stages = [
        LeadStage(name=name, ev_range=ev_range, action=action)
        for name, ev_range, _, action in LEAD_STAGES
    ]

    for conversation in conversations:
        scores = [m.ev_score for m in conversation.messages if m.ev_score is not None]
        if not scores or max(scores) < 0:
            continue
        highest = max(scores)
        for stage, (_, _, ceiling, _) in zip(stages, LEAD_STAGES):
            if highest <= ceiling:
                stage.leads += 1
                break
        else:
            # Scores above 100 still count as closed.
            stages[-1].leads += 1

    return list(reversed(stages))


# ---------------------------------------------------------------------------
# Filtering / sorting
# ---------------------------------------------------------------------------

def filter_conversations_by_date_range(
    conversations: List[Conversation],
    start_date: datetime,
    end_date: datetime,
) -> List[Conversation]:
    """Conversations created within [start_date, end_date]."""
    start = parse_date(start_date)
    end = parse_date(end_date)
    result = []
    for conversation in conversations:
        created = _created(conversation)
        if created is not None and start <= created <= end:
            result.append(conversation)
    return result


def filter_conversations_by_search(
    conversations: List[Conversation],
    query: str,
) -> List[Conversation]:
    needle = (query or "").strip().lower()
    if not needle:
        return list(conversations)

    def matches(conversation: Conversation) -> bool:
        thread = conversation.thread
        contact_fields = (thread.lead_name, thread.client_email, thread.location)
        if any(needle in (value or "").lower() for value in contact_fields):
            return True
        return any(
            needle in (m.body or "").lower() or needle in (m.subject or "").lower()
            for m in conversation.messages
        )

    return [c for c in conversations if matches(c)]


def sort_conversations(
    conversations: List[Conversation],
    sort_by: SortBy = "date",
    sort_order: SortOrder = "desc",
) -> List[Conversation]:
    reverse = sort_order == "desc"

    if sort_by == "date":
        def key(c: Conversation):
            when = parse_date(c.thread.last_message_at)
            return when.timestamp() if when else 0.0
    elif sort_by == "name":
        def key(c: Conversation):
            return (c.thread.lead_name or "").lower()
    elif sort_by == "status":
        def key(c: Conversation):
            return 1 if c.thread.completed else 0
    elif sort_by == "priority":
        def key(c: Conversation):
            return PRIORITY_ORDER.get((c.thread.priority or "").lower(), 1)
    else:
        logger.warning("Unknown sort field %r; leaving order unchanged", sort_by)
        return list(conversations)

    return sorted(conversations, key=key, reverse=reverse)


def group_conversations_by_status(
    conversations: List[Conversation],
) -> Dict[str, List[Conversation]]:
    return {
        "active": [c for c in conversations if not c.thread.completed],
        "completed": [c for c in conversations if c.thread.completed],
        "flagged": [c for c in conversations if c.thread.flag or c.thread.flag_for_review],
        "spam": [c for c in conversations if c.thread.spam],
    }


# ---------------------------------------------------------------------------
# Trends
# ---------------------------------------------------------------------------

def _metric_trend(current: float, previous: float) -> TrendData:
    change = current - previous
    change_percent = change / previous * 100 if previous > 0 else 0.0

    if abs(change_percent) < 1:
        direction = "stable"
    else:
        direction = "up" if change_percent > 0 else "down"

    return TrendData(
        current=current,
        previous=previous,
        change=change,
        change_percent=change_percent,
        direction=direction,
    )


def calculate_trends(
    conversations: List[Conversation],
    start_date: datetime,
    end_date: datetime,
) -> Dict[str, TrendData]:
    """
    Compare the window [start_date, end_date] against the window of the
    same length that ends the day before it starts.
    """
    start = parse_date(start_date)
    end = parse_date(end_date)
    previous_start = start - (end - start)
    previous_end = start - timedelta(days=1)

    current = filter_conversations_by_date_range(conversations, start, end)
    previous = filter_conversations_by_date_range(conversations, previous_start, previous_end)

    def completed(items: List[Conversation]) -> int:
        return sum(1 for c in items if c.thread.completed)

    def conversion(items: List[Conversation]) -> float:
        return completed(items) / len(items) * 100 if items else 0.0

    total_trend = _metric_trend(len(current), len(previous))
    return {
        "total_conversations": total_trend,
        "active_conversations": _metric_trend(
            len(current) - completed(current),
            len(previous) - completed(previous),
        ),
        "conversion_rate": _metric_trend(conversion(current), conversion(previous)),
        "average_response_time": _metric_trend(
            calculate_average_response_time(current),
            calculate_average_response_time(previous),
        ),
        "new_conversations": total_trend,
    }


def should_show_trend(trend: Optional[TrendData]) -> bool:
    if trend is None:
        return False
    return abs(trend.change_percent) >= 1


def format_trend_change(trend: Optional[TrendData]) -> str:
    if trend is None:
        return ""
    sign = "+" if trend.change_percent >= 0 else "-"
    return f"{sign}{_round(abs(trend.change_percent))}%"


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------

def format_currency(amount: float) -> str:
    sign = "-" if amount < 0 else ""
    return f"{sign}${abs(amount):,.2f}"


def format_percentage(value: float) -> str:
    return f"{value}%"


def format_duration(minutes: int) -> str:
    if minutes < 60:
        return f"{minutes}m"
    hours, remaining = divmod(minutes, 60)
    return f"{hours}h {remaining}m" if remaining else f"{hours}h"
