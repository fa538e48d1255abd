from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from acs_dashboard.clients.backend import BackendClient, BackendError, InvalidBackendResponse
from acs_dashboard.routers.errors import (
    UNAUTHORIZED_SESSION,
    backend_http_error,
    bad_request,
    internal_error,
)
from acs_dashboard.schemas.requests import DbDeleteRequest, DbSelectRequest, DbUpdateRequest
from acs_dashboard.services.auth_service import (
    authenticated_user,
    get_backend_client,
    get_session_id,
)

logger = logging.getLogger("acs.dashboard.routers.db")

router = APIRouter(prefix="/api/db", tags=["db"])

MISSING_PARAMETERS = "Missing required parameters"


@router.post("/select", summary="Query a backend table through an index.")
async def db_select(
    payload: DbSelectRequest,
    user_id: str = Depends(authenticated_user),
    session_id: Optional[str] = Depends(get_session_id),
    client: BackendClient = Depends(get_backend_client),
) -> Any:
    if (
        not payload.table_name
        or not payload.index_name
        or not payload.key_name
        or payload.key_value is None
    ):
        raise bad_request(MISSING_PARAMETERS)

    try:
        items = await client.db_select(
            payload.table_name,
            payload.index_name,
            payload.key_name,
            payload.key_value,
            account_id=user_id,
            session_id=session_id,
        )
    except InvalidBackendResponse as exc:
        raise internal_error(exc.detail) from exc
    except BackendError as exc:
        logger.error(
            "db/select on %s failed with %s: %s",
            payload.table_name,
            exc.status_code,
            exc.detail,
        )
        error = UNAUTHORIZED_SESSION if exc.is_unauthorized else "Database query failed"
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": error, "details": exc.body, "status": exc.status_code},
        )

    return {"success": True, "items": items}


@router.post("/update")
async def db_update(
    payload: DbUpdateRequest,
    session_id: Optional[str] = Depends(get_session_id),
    client: BackendClient = Depends(get_backend_client),
) -> Dict[str, Any]:
    if (
        not payload.table_name
        or not payload.key_name
        or not payload.key_value
        or not payload.update_data
    ):
        raise bad_request(MISSING_PARAMETERS)

    try:
        updated_item = await client.db_update(
            payload.table_name,
            payload.key_name,
            payload.key_value,
            payload.update_data,
            index_name=payload.index_name,
            session_id=session_id,
        )
    except BackendError as exc:
        if exc.is_unauthorized:
            raise backend_http_error(exc) from exc
        raise internal_error("Internal server error from db/update route") from exc

    return {"success": True, "updated_item": updated_item}


@router.post("/delete")
async def db_delete(
    payload: DbDeleteRequest,
    session_id: Optional[str] = Depends(get_session_id),
    client: BackendClient = Depends(get_backend_client),
) -> Dict[str, Any]:
    if (
        not payload.table_name
        or not payload.attribute_name
        or payload.attribute_value is None
        or payload.is_primary_key is None
    ):
        raise bad_request(MISSING_PARAMETERS)

    try:
        deleted_item = await client.db_delete(
            payload.table_name,
            session_id=session_id,
            attribute_name=payload.attribute_name,
            attribute_value=payload.attribute_value,
            is_primary_key=payload.is_primary_key,
        )
    except BackendError as exc:
        if exc.is_unauthorized:
            raise backend_http_error(exc) from exc
        raise internal_error("Internal server error from db/delete route") from exc

    return {"success": True, "deleted_item": deleted_item}
