from __future__ import annotations

import logging
from typing import Optional

from fastapi import Depends, HTTPException, Request, status

from acs_dashboard.clients.backend import SESSION_COOKIE, BackendClient
from acs_dashboard.config import settings
from acs_dashboard.db import SessionLocal
from acs_dashboard.services.dashboard_data import DashboardDataService
from acs_dashboard.services.storage import ConversationStorage, SqlKeyValueStore

logger = logging.getLogger("acs.dashboard.auth")

USER_COOKIE = "acs_user_id"
USER_HEADER = "X-User-Id"


def get_session_id(request: Request) -> Optional[str]:
    """The backend's `session_id` cookie, forwarded on every upstream call."""
    return request.cookies.get(SESSION_COOKIE) or None


def get_current_user_id(request: Request) -> Optional[str]:
    """Read the user id from the login cookie, or the header for API clients."""
    user_id = request.cookies.get(USER_COOKIE) or request.headers.get(USER_HEADER)
    if user_id:
        return user_id.strip() or None
    return None


def authenticated_user(request: Request) -> str:
    user_id = get_current_user_id(request)
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized - No authenticated user found",
        )
    return user_id


def get_backend_client(request: Request) -> BackendClient:
    """The client opened on startup; a client per request would leak connections."""
    client = getattr(request.app.state, "backend_client", None)
    if client is None:
        logger.error("No backend client on app.state; was the app started without its lifespan?")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Backend client is not running",
        )
    return client


def storage_scope(session_id: Optional[str], user_id: str) -> str:
    return f"session:{session_id}" if session_id else f"user:{user_id}"


def build_conversation_storage(user_id: str, session_id: Optional[str]) -> ConversationStorage:
    store = SqlKeyValueStore(SessionLocal, storage_scope(session_id, user_id))
    return ConversationStorage(store, user_id=user_id)


def get_conversation_storage(
    user_id: str = Depends(authenticated_user),
    session_id: Optional[str] = Depends(get_session_id),
) -> ConversationStorage:
    return build_conversation_storage(user_id, session_id)


def get_dashboard_service(
    user_id: str = Depends(authenticated_user),
    session_id: Optional[str] = Depends(get_session_id),
    client: BackendClient = Depends(get_backend_client),
    storage: ConversationStorage = Depends(get_conversation_storage),
) -> DashboardDataService:
    return DashboardDataService(
        client,
        storage,
        user_id=user_id,
        session_id=session_id,
        max_age_minutes=settings.cache_max_age_minutes,
    )
