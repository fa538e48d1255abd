from __future__ import annotations

import datetime
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from starlette.concurrency import run_in_threadpool

from acs_dashboard.clients.backend import BackendClient, BackendError
from acs_dashboard.routers.errors import backend_http_error, bad_request
from acs_dashboard.schemas.dashboard import (
    DashboardView,
    DateRange,
    ProcessedThreadData,
    SortBy,
    SortOrder,
    StatusFilter,
    TimeRange,
)
from acs_dashboard.schemas.requests import BulkActionRequest
from acs_dashboard.services.auth_service import (
    get_backend_client,
    get_conversation_storage,
    get_dashboard_service,
    get_session_id,
)
from acs_dashboard.services.bulk_actions import BulkConversationActions, UnknownStatusError
from acs_dashboard.services.dashboard_data import (
    SECTION_PRESETS,
    DashboardDataService,
    DashboardQuery,
)
from acs_dashboard.services.dashboard_utils import summarize_conversations
from acs_dashboard.services.normalize import parse_date
from acs_dashboard.services.storage import ConversationStorage

logger = logging.getLogger("acs.dashboard.routers.dashboard")

router = APIRouter(prefix="/api/dashboard", tags=["dashboard"])

BULK_ACTIONS = ("delete", "complete", "note", "status")


def _date_range(
    start_date: Optional[datetime.datetime],
    end_date: Optional[datetime.datetime],
) -> Optional[DateRange]:
    if start_date is None and end_date is None:
        return None
    if start_date is None or end_date is None:
        raise bad_request("start_date and end_date must be given together")

    # Naive query values are UTC, like every stored timestamp.
    start_date = parse_date(start_date)
    end_date = parse_date(end_date)
    if start_date > end_date:
        raise bad_request("start_date must not be after end_date")
    return DateRange(start_date=start_date, end_date=end_date)


@router.get("", response_model=DashboardView, summary="Everything the dashboard screen shows.")
async def get_dashboard(
    start_date: Optional[datetime.datetime] = None,
    end_date: Optional[datetime.datetime] = None,
    status: Optional[StatusFilter] = None,
    search: str = "",
    sort_by: SortBy = "date",
    sort_order: SortOrder = "desc",
    section: Optional[str] = Query(default=None, description="Apply a section's status preset."),
    refresh: bool = False,
    service: DashboardDataService = Depends(get_dashboard_service),
) -> DashboardView:
    if section is not None and section not in SECTION_PRESETS:
        raise HTTPException(status_code=404, detail=f"Unknown dashboard section: {section}")

    status_filter = status or (SECTION_PRESETS[section] if section else "all")
    query = DashboardQuery(
        date_range=_date_range(start_date, end_date),
        sort_by=sort_by,
        sort_order=sort_order,
        status_filter=status_filter,
        search_query=search,
    )

    try:
        return await service.view(query, force_refresh=refresh)
    except BackendError as exc:
        raise backend_http_error(exc) from exc


@router.get("/metrics", response_model=ProcessedThreadData)
async def get_metrics(
    time_range: TimeRange = "month",
    refresh: bool = False,
    service: DashboardDataService = Depends(get_dashboard_service),
) -> ProcessedThreadData:
    try:
        snapshot = await service.load(force_refresh=refresh)
    except BackendError as exc:
        raise backend_http_error(exc) from exc
    return summarize_conversations(snapshot.conversations, time_range)


@router.get("/conversations/{conversation_id}")
async def get_conversation(
    conversation_id: str,
    service: DashboardDataService = Depends(get_dashboard_service),
) -> Dict[str, Any]:
    try:
        conversation = await service.get_conversation(conversation_id)
    except BackendError as exc:
        raise backend_http_error(exc) from exc

    if conversation is None:
        raise HTTPException(status_code=404, detail="Thread not found")
    return {"success": True, "data": conversation.model_dump(mode="json")}


@router.patch("/conversations/{conversation_id}")
async def patch_conversation(
    conversation_id: str,
    patch: Dict[str, Any] = Body(...),
    session_id: Optional[str] = Depends(get_session_id),
    client: BackendClient = Depends(get_backend_client),
    storage: ConversationStorage = Depends(get_conversation_storage),
) -> Dict[str, Any]:
    """
    Patch the cached conversation right away, then push thread fields upstream.

    A failed upstream update is reported but the cached patch stays.
    """
    if not patch:
        raise bad_request("Update data is required")

    cached = await run_in_threadpool(storage.update_conversation, conversation_id, patch)

    thread_fields = dict(patch.get("thread") or {})
    thread_fields.update({k: v for k, v in patch.items() if k not in ("thread", "messages")})
    thread_fields.pop("conversation_id", None)

    updated_item = None
    if thread_fields:
        try:
            updated_item = await client.update_thread(
                conversation_id,
                thread_fields,
                session_id=session_id,
            )
        except BackendError as exc:
            logger.error("Upstream update of %s failed: %s", conversation_id, exc.detail)
            raise backend_http_error(exc) from exc

    conversation = await run_in_threadpool(storage.get_conversation, conversation_id)
    return {
        "success": True,
        "cached": cached,
        "updated_item": updated_item,
        "data": conversation.model_dump(mode="json") if conversation else None,
    }


@router.post("/bulk/{action}")
async def bulk_action(
    action: str,
    payload: BulkActionRequest,
    session_id: Optional[str] = Depends(get_session_id),
    client: BackendClient = Depends(get_backend_client),
    storage: ConversationStorage = Depends(get_conversation_storage),
) -> Dict[str, Any]:
    if action not in BULK_ACTIONS:
        raise HTTPException(status_code=404, detail=f"Unknown bulk action: {action}")

    actions = BulkConversationActions(client, storage, session_id=session_id)
    if action == "delete":
        result = await actions.delete(payload.conversation_ids)
    elif action == "complete":
        result = await actions.mark_complete(payload.conversation_ids)
    elif action == "note":
        result = await actions.add_note(payload.conversation_ids, payload.note or "")
    else:
        if not payload.status:
            raise bad_request("Status is required")
        try:
            result = await actions.update_status(payload.conversation_ids, payload.status)
        except UnknownStatusError as exc:
            raise bad_request(str(exc)) from exc

    return {
        "success": not result.failed,
        "action": result.action,
        "attempted": result.attempted,
        "succeeded": result.succeeded,
        "failed": result.failed,
    }
