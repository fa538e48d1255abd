from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from acs_dashboard.clients.backend import BackendClient, BackendError
from acs_dashboard.schemas.conversation import Conversation
from acs_dashboard.schemas.dashboard import (
    DashboardUsage,
    DashboardView,
    DateRange,
    SortBy,
    SortOrder,
    StatusFilter,
)
from acs_dashboard.services.dashboard import (
    calculate_dashboard_metrics,
    calculate_trends,
    calculate_usage_stats,
    categorize_leads,
    filter_conversations_by_date_range,
    filter_conversations_by_search,
    generate_analytics,
    group_conversations_by_status,
    percent_of,
    sort_conversations,
)
from acs_dashboard.services.normalize import parse_date, process_threads_response, utcnow
from acs_dashboard.services.storage import DEFAULT_MAX_AGE_MINUTES, ConversationStorage
from acs_dashboard.services.usage_stats import usage_from_invocations

logger = logging.getLogger("acs.dashboard.services.dashboard_data")


class DashboardQuery(BaseModel):
    """Filter and sort options of one dashboard screen."""

    date_range: Optional[DateRange] = None
    sort_by: SortBy = "date"
    sort_order: SortOrder = "desc"
    status_filter: StatusFilter = "all"
    search_query: str = ""


# Status filter each dashboard section starts from.
SECTION_PRESETS: Dict[str, StatusFilter] = {
    "leads": "all",
    "conversations": "active",
    "analytics": "all",
    "history": "completed",
    "usage": "all",
    "junk": "spam",
    "email": "all",
}


def query_for_section(section: str, **options: Any) -> DashboardQuery:
    if section not in SECTION_PRESETS:
        raise KeyError(section)
    return DashboardQuery(**{**options, "status_filter": SECTION_PRESETS[section], "sort_by": "date"})


def apply_query(conversations: List[Conversation], query: DashboardQuery) -> List[Conversation]:
    """Date range, then status, then search, then sort."""
    filtered = conversations

    if query.date_range is not None:
        filtered = filter_conversations_by_date_range(
            filtered,
            query.date_range.start_date,
            query.date_range.end_date,
        )

    if query.status_filter != "all":
        filtered = group_conversations_by_status(filtered)[query.status_filter]

    if query.search_query:
        filtered = filter_conversations_by_search(filtered, query.search_query)

    return sort_conversations(filtered, query.sort_by, query.sort_order)


@dataclass
class DashboardSnapshot:
    conversations: List[Conversation] = field(default_factory=list)
    usage: DashboardUsage = field(default_factory=DashboardUsage)
    from_cache: bool = False
    last_updated: Optional[datetime] = None
    error: Optional[str] = None
    warnings: List[Dict[str, Any]] = field(default_factory=list)


class DashboardDataService:
    """
    Fetches, caches and derives everything the dashboard screens show.

    A fresh cache is served as-is; a stale or missing one triggers a fetch
    of threads and usage in parallel. When the fetch fails the stale cache
    (if any) is still served together with the error.
    """

    def __init__(
        self,
        client: BackendClient,
        storage: ConversationStorage,
        *,
        user_id: str,
        session_id: Optional[str] = None,
        max_age_minutes: float = DEFAULT_MAX_AGE_MINUTES,
    ) -> None:
        self.client = client
        self.storage = storage
        self.user_id = user_id
        self.session_id = session_id
        self.max_age_minutes = max_age_minutes
        self.storage.initialize(user_id)

    def _read_cache(self) -> Tuple[Optional[List[Conversation]], Optional[datetime]]:
        cached = self.storage.get_conversations()
        metadata = self.storage.get_metadata() if cached is not None else None
        return cached, parse_date(metadata.last_updated) if metadata else None

    def _read_fresh_cache(self) -> Tuple[Optional[List[Conversation]], Optional[datetime]]:
        if self.storage.is_stale(self.max_age_minutes):
            return None, None
        return self._read_cache()

    async def _fetch_usage(self) -> DashboardUsage:
        try:
            invocations = await self.client.get_invocations(self.user_id, session_id=self.session_id)
        except BackendError as exc:
            logger.warning("Usage fetch failed (status=%s); using zeros", exc.status_code)
            return DashboardUsage()
        return usage_from_invocations(invocations)

    async def refresh(self) -> DashboardSnapshot:
        """Fetch from the backend and rewrite the cache."""
        threads_result, usage = await asyncio.gather(
            self.client.get_all_threads(self.user_id, session_id=self.session_id),
            self._fetch_usage(),
            return_exceptions=True,
        )
        if isinstance(usage, BaseException):
            logger.warning("Usage fetch raised %r; using zeros", usage)
            usage = DashboardUsage()

        if isinstance(threads_result, BaseException):
            # An expired session is the caller's problem, not a stale-cache case.
            if not isinstance(threads_result, BackendError) or threads_result.is_unauthorized:
                raise threads_result
            message = f"Failed to load conversations: {threads_result.detail}"
            logger.error("Dashboard refresh for user %s failed: %s", self.user_id, message)
            cached, last_updated = await run_in_threadpool(self._read_cache)
            return DashboardSnapshot(
                conversations=cached or [],
                usage=usage,
                from_cache=cached is not None,
                last_updated=last_updated,
                error=message,
            )

        raw_conversations, failures = threads_result
        conversations = process_threads_response(raw_conversations)
        await run_in_threadpool(self.storage.store_conversations, conversations)

        return DashboardSnapshot(
            conversations=conversations,
            usage=usage,
            from_cache=False,
            last_updated=utcnow(),
            warnings=failures,
        )

    async def load(self, force_refresh: bool = False) -> DashboardSnapshot:
        if not force_refresh:
            cached, last_updated = await run_in_threadpool(self._read_fresh_cache)
            if cached is not None:
                logger.debug("Serving %d cached conversations for %s", len(cached), self.user_id)
                return DashboardSnapshot(
                    conversations=cached,
                    usage=await self._fetch_usage(),
                    from_cache=True,
                    last_updated=last_updated,
                )
        return await self.refresh()

    def build_view(self, snapshot: DashboardSnapshot, query: DashboardQuery) -> DashboardView:
        conversations = apply_query(snapshot.conversations, query)

        metrics = calculate_dashboard_metrics(snapshot.conversations, snapshot.usage)
        completed = sum(1 for c in conversations if c.thread.completed)
        total = len(conversations)
        metrics.total_conversations = total
        metrics.total_leads = total
        metrics.active_conversations = total - completed
        metrics.conversion_rate = percent_of(completed, total)

        trends = None
        if query.date_range is not None:
            trends = calculate_trends(
                snapshot.conversations,
                query.date_range.start_date,
                query.date_range.end_date,
            )

        return DashboardView(
            conversations=conversations,
            metrics=metrics,
            analytics=generate_analytics(snapshot.conversations),
            usage=snapshot.usage,
            usage_stats=calculate_usage_stats(snapshot.usage),
            lead_funnel=categorize_leads(conversations),
            cache=self.storage.get_stats(self.max_age_minutes),
            last_updated=snapshot.last_updated,
            trends=trends,
            error=snapshot.error,
        )

    async def view(self, query: Optional[DashboardQuery] = None, force_refresh: bool = False) -> DashboardView:
        snapshot = await self.load(force_refresh=force_refresh)
        # Cache stats hit the database and the aggregation is CPU bound.
        return await run_in_threadpool(self.build_view, snapshot, query or DashboardQuery())

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        """Cached conversation if present, otherwise fetched on its own."""
        cached = await run_in_threadpool(self.storage.get_conversation, conversation_id)
        if cached is not None:
            return cached

        raw = await self.client.get_thread_by_id(
            conversation_id,
            account_id=self.user_id,
            session_id=self.session_id,
        )
        if raw is None:
            return None
        conversations = process_threads_response([raw])
        return conversations[0] if conversations else None
