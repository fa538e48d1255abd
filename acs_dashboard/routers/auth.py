from __future__ import annotations

import logging
import re
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from acs_dashboard.clients.backend import SESSION_COOKIE, BackendClient, BackendError, extract_session_id
from acs_dashboard.config import settings
from acs_dashboard.routers.errors import bad_request
from acs_dashboard.schemas.requests import LoginRequest
from acs_dashboard.services.auth_service import (
    USER_COOKIE,
    build_conversation_storage,
    get_backend_client,
    get_current_user_id,
    get_session_id,
)

logger = logging.getLogger("acs.dashboard.routers.auth")

router = APIRouter(prefix="/api/auth", tags=["auth"])

SECURE_ATTRIBUTE = re.compile(r";\s?secure", re.IGNORECASE)


def _login_user(data: Dict[str, Any], payload: LoginRequest) -> Dict[str, Any]:
    nested = data.get("user") if isinstance(data.get("user"), dict) else {}
    return {
        "id": data.get("id") or data.get("_id"),
        "email": payload.email,
        "name": data.get("name") or nested.get("name") or payload.name,
        "authType": data.get("authType") or data.get("authtype") or "existing",
        "provider": payload.provider or "form",
    }


@router.post("/login", summary="Log in upstream and forward the session cookie.")
async def login(
    payload: LoginRequest,
    client: BackendClient = Depends(get_backend_client),
) -> JSONResponse:
    if not payload.email:
        raise bad_request("Email is required.")
    if payload.provider == "form" and not payload.password:
        raise bad_request("Password is required for form-based login.")
    if payload.provider == "google" and not (payload.name or "").strip():
        raise bad_request("Name is required for google login.")

    try:
        data, set_cookies = await client.auth_login(
            payload.email,
            payload.password,
            payload.provider,
            payload.name,
        )
    except BackendError as exc:
        logger.warning("Login failed for %s (status=%s)", payload.email, exc.status_code)
        return JSONResponse(status_code=exc.status_code, content={"error": "Login failed."})

    user = _login_user(data, payload)
    session_id = extract_session_id(set_cookies)

    response = JSONResponse(
        content={
            "success": True,
            "message": "Login successful!",
            "user": user,
            "sessionId": session_id,
        }
    )

    for cookie in set_cookies:
        if not settings.is_production:
            # Local dev runs over plain http.
            cookie = SECURE_ATTRIBUTE.sub("", cookie)
        response.headers.append("set-cookie", cookie.strip())

    if user["id"]:
        response.set_cookie(
            USER_COOKIE,
            str(user["id"]),
            httponly=True,
            samesite="lax",
            secure=settings.is_production,
        )
    else:
        logger.warning("Login response for %s carried no user id", payload.email)

    logger.info("User %s logged in via %s", payload.email, payload.provider)
    return response


@router.post("/logout")
async def logout(
    request: Request,
    session_id: Optional[str] = Depends(get_session_id),
) -> JSONResponse:
    """Drop the cached conversations of this client and clear its cookies."""
    user_id = get_current_user_id(request)
    if user_id:
        storage = build_conversation_storage(user_id, session_id)
        await run_in_threadpool(storage.clear)
        logger.info("User %s logged out", user_id)

    response = JSONResponse(content={"success": True, "message": "Logged out"})
    response.delete_cookie(USER_COOKIE)
    response.delete_cookie(SESSION_COOKIE)
    return response
