from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, List, Optional

from dateutil.relativedelta import relativedelta

from acs_dashboard.schemas.conversation import Conversation, Message
from acs_dashboard.schemas.dashboard import (
    LeadPerformance,
    ProcessedThreadData,
    ThreadMetrics,
    TimeRange,
)
from acs_dashboard.services.normalize import parse_boolean, process_threads_response, utcnow

logger = logging.getLogger("acs.dashboard.services.dashboard_utils")

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

__all__ = [
    "calculate_metrics",
    "get_first_message",
    "get_latest_evaluable_message",
    "get_most_recent_message",
    "get_start_date",
    "is_thread_completed",
    "parse_boolean",
    "process_thread_data",
    "sort_messages_by_date",
    "summarize_conversations",
]


def sort_messages_by_date(messages: List[Message], ascending: bool = False) -> List[Message]:
    return sorted(messages, key=lambda m: m.local_date, reverse=not ascending)


def get_most_recent_message(conversation: Conversation) -> Optional[Message]:
    if not conversation.messages:
        return None
    return max(conversation.messages, key=lambda m: m.local_date)


def get_first_message(conversation: Conversation) -> Optional[Message]:
    if not conversation.messages:
        return None
    return min(conversation.messages, key=lambda m: m.local_date)


def get_latest_evaluable_message(messages: List[Message]) -> Optional[Message]:
    """Latest message that has a response id (the ones the LCP scored)."""
    evaluable = [m for m in messages if m.response_id]
    if not evaluable:
        return None
    return max(evaluable, key=lambda m: m.local_date)


def get_start_date(time_range: TimeRange, now: Optional[datetime] = None) -> datetime:
    """Lower bound of a dashboard time window."""
    now = now or utcnow()
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)

    if time_range == "today":
        return midnight
    if time_range == "week":
        return now - relativedelta(days=7)
    if time_range == "month":
        return now - relativedelta(months=1)
    if time_range == "quarter":
        quarter_month = ((now.month - 1) // 3) * 3 + 1
        return midnight.replace(month=quarter_month, day=1)
    if time_range == "year":
        return now - relativedelta(years=1)
    return EPOCH


def is_thread_completed(completed: Any) -> bool:
    return parse_boolean(completed)


def calculate_metrics(
    conversations: List[Conversation],
    time_range: TimeRange,
    now: Optional[datetime] = None,
) -> ThreadMetrics:
    """
    Headline counters for the open pipeline.

    Spam and completed threads are excluded from every counter.
    """
    metrics = ThreadMetrics()
    if not conversations:
        return metrics

    start_date = get_start_date(time_range, now)

    for conversation in conversations:
        thread = conversation.thread
        if thread.spam or thread.completed:
            continue

        latest = get_most_recent_message(conversation)

        if not thread.read:
            metrics.unopened_leads += 1
        if latest is not None and latest.type == "inbound-email":
            metrics.pending_replies += 1
        if latest is not None and latest.local_date >= start_date:
            metrics.new_leads += 1

    return metrics


def _lead_performance(conversation: Conversation, now: datetime) -> LeadPerformance:
    ev_message = get_latest_evaluable_message(conversation.messages)
    ordered = sort_messages_by_date(conversation.messages, ascending=True)
    fallback = now.isoformat()

    return LeadPerformance(
        thread_id=conversation.thread.conversation_id,
        score=(ev_message.ev_score if ev_message and ev_message.ev_score else 0),
        timestamp=ev_message.timestamp if ev_message else fallback,
        start_timestamp=ordered[0].timestamp if ordered else fallback,
        end_timestamp=ordered[-1].timestamp if ordered else fallback,
        source=conversation.thread.source_name,
        source_name=conversation.thread.source_name,
    )


def process_thread_data(
    raw_data: Any,
    time_range: TimeRange,
    now: Optional[datetime] = None,
) -> ProcessedThreadData:
    """Normalize raw threads, then derive metrics and per-lead performance rows."""
    if not isinstance(raw_data, list):
        logger.warning("process_thread_data received non-list data: %r", type(raw_data))
        return ProcessedThreadData()

    now = now or utcnow()
    return summarize_conversations(process_threads_response(raw_data, now), time_range, now)


def summarize_conversations(
    conversations: List[Conversation],
    time_range: TimeRange,
    now: Optional[datetime] = None,
) -> ProcessedThreadData:
    """Same as process_thread_data, for conversations that are already normalized."""
    now = now or utcnow()
    conversations = list(conversations)

    def latest_time(conversation: Conversation) -> datetime:
        latest = get_most_recent_message(conversation)
        return latest.local_date if latest else EPOCH

    conversations.sort(key=latest_time, reverse=True)

    return ProcessedThreadData(
        conversations=conversations,
        metrics=calculate_metrics(conversations, time_range, now),
        lead_performance=[
            _lead_performance(conversation, now)
            for conversation in conversations
            if conversation.messages
        ],
    )
