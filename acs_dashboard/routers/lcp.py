from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse

from acs_dashboard.clients.backend import BackendClient, BackendError
from acs_dashboard.routers.errors import backend_http_error, bad_request, internal_error
from acs_dashboard.schemas.requests import (
    ConversationRequest,
    LLMResponseRequest,
    MarkNotSpamRequest,
    SendEmailRequest,
    ThreadAttrsRequest,
    ThreadsRequest,
)
from acs_dashboard.services.auth_service import (
    authenticated_user,
    get_backend_client,
    get_session_id,
)

logger = logging.getLogger("acs.dashboard.routers.lcp")

router = APIRouter(prefix="/api/lcp", tags=["lcp"])


@router.post("/get_all_threads", summary="All threads of a user, with their messages.")
async def get_all_threads(
    payload: ThreadsRequest,
    session_id: Optional[str] = Depends(get_session_id),
    client: BackendClient = Depends(get_backend_client),
) -> Any:
    if not payload.user_id:
        raise bad_request("User ID is required")

    try:
        conversations, failures = await client.get_all_threads(payload.user_id, session_id=session_id)
    except BackendError as exc:
        if exc.is_unauthorized:
            raise backend_http_error(exc) from exc
        logger.error("get_all_threads failed for %s: %s", payload.user_id, exc.detail)
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "error": exc.detail,
                # Transport failures are worth retrying; bad data is not.
                "retryable": exc.status_code == 502,
            },
        )

    body: Dict[str, Any] = {"success": True, "data": conversations}
    if failures:
        body["warnings"] = {"failedThreads": failures}
    return body


@router.post("/getThreadById", summary="One thread and its messages.")
async def get_thread_by_id(
    payload: ConversationRequest,
    user_id: str = Depends(authenticated_user),
    session_id: Optional[str] = Depends(get_session_id),
    client: BackendClient = Depends(get_backend_client),
) -> Dict[str, Any]:
    if not payload.conversation_id:
        raise bad_request("Conversation ID is required")

    try:
        conversation = await client.get_thread_by_id(
            payload.conversation_id,
            account_id=user_id,
            session_id=session_id,
        )
    except BackendError as exc:
        raise backend_http_error(exc) from exc

    if conversation is None:
        raise HTTPException(status_code=404, detail="Thread not found")
    return {"success": True, "data": conversation}


@router.post("/send_email")
async def send_email(
    payload: SendEmailRequest,
    session_id: Optional[str] = Depends(get_session_id),
    client: BackendClient = Depends(get_backend_client),
) -> Dict[str, Any]:
    if not payload.conversation_id or not payload.response_body:
        raise bad_request("Conversation ID and Response Body are required")

    try:
        data = await client.lcp_send_email(
            payload.conversation_id,
            payload.response_body,
            session_id=session_id,
        )
    except BackendError as exc:
        raise backend_http_error(exc) from exc
    return {"success": True, "data": data}


@router.post("/delete_thread")
async def delete_thread(
    payload: ConversationRequest,
    session_id: Optional[str] = Depends(get_session_id),
    client: BackendClient = Depends(get_backend_client),
) -> Dict[str, Any]:
    if not payload.conversation_id:
        raise bad_request("Conversation ID is required")

    try:
        await client.delete_thread(payload.conversation_id, session_id=session_id)
    except BackendError as exc:
        if exc.is_unauthorized:
            raise backend_http_error(exc) from exc
        raise internal_error(f"Failed to delete thread: {exc.detail}") from exc

    return {
        "success": True,
        "message": "Thread and associated conversations deleted successfully",
    }


@router.post("/mark_not_spam")
async def mark_not_spam(
    payload: MarkNotSpamRequest,
    session_id: Optional[str] = Depends(get_session_id),
    client: BackendClient = Depends(get_backend_client),
) -> Dict[str, Any]:
    if not payload.conversation_id or not payload.message_id or not payload.account_id:
        raise bad_request("Conversation ID, Response ID, and Account ID are required")

    try:
        await client.mark_not_spam(
            payload.conversation_id,
            payload.message_id,
            payload.account_id,
            session_id=session_id,
        )
    except BackendError as exc:
        if exc.is_unauthorized:
            raise backend_http_error(exc) from exc
        raise internal_error(exc.detail) from exc

    return {
        "success": True,
        "message": "Email marked as not spam successfully in both Threads and Conversations",
    }


@router.post("/get_llm_response")
async def get_llm_response(
    payload: LLMResponseRequest,
    session_id: Optional[str] = Depends(get_session_id),
    client: BackendClient = Depends(get_backend_client),
) -> Dict[str, Any]:
    if not payload.conversation_id or not payload.account_id:
        raise bad_request("Conversation ID and Account ID are required")

    try:
        data = await client.lcp_get_llm_response(
            payload.conversation_id,
            payload.account_id,
            payload.is_first_email,
            session_id=session_id,
        )
    except BackendError as exc:
        raise backend_http_error(exc) from exc

    if isinstance(data, dict) and data.get("status") == "flagged_for_review":
        return {"success": True, "data": data, "flagged": True}
    return {"success": True, "data": data}


@router.post("/get_thread_attrs")
async def get_thread_attrs(
    payload: ThreadAttrsRequest,
    session_id: Optional[str] = Depends(get_session_id),
    client: BackendClient = Depends(get_backend_client),
) -> Any:
    if not payload.conversation_id:
        raise bad_request("Conversation ID is required")

    try:
        return await client.lcp_get_thread_attrs(payload.conversation_id, session_id=session_id)
    except BackendError as exc:
        raise backend_http_error(exc) from exc
