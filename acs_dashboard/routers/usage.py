from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query

from acs_dashboard.clients.backend import BackendClient, BackendError
from acs_dashboard.routers.errors import backend_http_error, internal_error
from acs_dashboard.services.auth_service import (
    authenticated_user,
    get_backend_client,
    get_session_id,
)
from acs_dashboard.services.usage_stats import summarize_invocations

logger = logging.getLogger("acs.dashboard.routers.usage")

router = APIRouter(prefix="/api/usage", tags=["usage"])


@router.get("/stats", summary="LCP invocation and token usage of the current user.")
async def usage_stats(
    time_range: Optional[str] = Query(default="1y", alias="timeRange"),
    user_id: str = Depends(authenticated_user),
    session_id: Optional[str] = Depends(get_session_id),
    client: BackendClient = Depends(get_backend_client),
) -> Dict[str, Any]:
    try:
        invocations = await client.get_invocations(user_id, session_id=session_id)
    except BackendError as exc:
        if exc.is_unauthorized:
            raise backend_http_error(exc) from exc
        logger.error("Failed to fetch invocations for %s: %s", user_id, exc.detail)
        raise internal_error(f"Failed to fetch invocations: {exc.detail}") from exc

    return summarize_invocations(invocations, time_range)
