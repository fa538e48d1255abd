from __future__ import annotations

import asyncio
import logging
import re
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx

from acs_dashboard.config import settings

logger = logging.getLogger("acs.dashboard.clients.backend")

SESSION_COOKIE = "session_id"
SESSION_ID_PATTERN = re.compile(r"session_id=([^;,\s]+)")

THREADS_TABLE = "Threads"
MESSAGES_TABLE = "Conversations"
INVOCATIONS_TABLE = "Invocations"

# Rows un-marked as spam get a TTL far enough out that they never expire.
NEVER_EXPIRE_SECONDS = 1000 * 365 * 24 * 60 * 60


class BackendError(Exception):
    """The remote backend answered with a non-2xx status or was unreachable."""

    def __init__(self, status_code: int, detail: str, body: Any = None) -> None:
        super().__init__(detail)
        self.status_code = status_code
        self.detail = detail
        self.body = body

    @property
    def is_unauthorized(self) -> bool:
        return self.status_code == 401


class InvalidBackendResponse(BackendError):
    """The backend answered 2xx but the body was not the JSON we expected."""

    def __init__(self, detail: str = "Invalid JSON response", body: Any = None) -> None:
        super().__init__(500, detail, body)


def extract_session_id(set_cookie_headers: List[str]) -> Optional[str]:
    for header in set_cookie_headers:
        match = SESSION_ID_PATTERN.search(header)
        if match:
            return match.group(1)
    return None


def _error_detail(response: httpx.Response, default: str) -> Tuple[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return (response.text or default), response.text
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or default), body
    return default, body


class BackendClient:
    """
    Async client for the remote dashboard backend.

    Every call forwards the caller's `session_id` cookie when given, so the
    backend applies its own session checks.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.base_url = (base_url or settings.api_url).rstrip("/")
        self.max_retries = settings.backend_max_retries if max_retries is None else max_retries
        self.retry_delay = (
            settings.backend_retry_delay_seconds if retry_delay is None else retry_delay
        )
        self._sleep = sleep
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout or settings.backend_timeout_seconds,
            transport=transport,
            headers={"Content-Type": "application/json"},
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "BackendClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Transport helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _headers(session_id: Optional[str]) -> Dict[str, str]:
        if not session_id:
            return {}
        return {"Cookie": f"{SESSION_COOKIE}={session_id}"}

    async def _send(
        self,
        path: str,
        payload: Dict[str, Any],
        session_id: Optional[str] = None,
    ) -> httpx.Response:
        started = time.perf_counter()
        try:
            response = await self._http.post(path, json=payload, headers=self._headers(session_id))
        except httpx.HTTPError as exc:
            logger.error("Backend request to %s failed: %s", path, exc)
            raise BackendError(502, f"Backend unreachable: {exc}") from exc

        logger.debug(
            "POST %s -> %s (%.0f ms)",
            path,
            response.status_code,
            (time.perf_counter() - started) * 1000,
        )
        return response

    async def _post(
        self,
        path: str,
        payload: Dict[str, Any],
        session_id: Optional[str] = None,
        *,
        default_error: str = "Backend request failed",
    ) -> httpx.Response:
        response = await self._send(path, payload, session_id)
        if response.is_success:
            return response

        detail, body = _error_detail(response, default_error)
        logger.error(
            "Backend %s returned %s: %s",
            path,
            response.status_code,
            detail,
        )
        raise BackendError(response.status_code, detail, body)

    async def _post_with_retry(
        self,
        path: str,
        payload: Dict[str, Any],
        session_id: Optional[str] = None,
    ) -> httpx.Response:
        """POST with exponential backoff on any failure except an expired session."""
        delay = self.retry_delay
        attempt = 0
        while True:
            try:
                return await self._post(path, payload, session_id)
            except BackendError as exc:
                if exc.is_unauthorized or attempt >= self.max_retries:
                    raise
                attempt += 1
                logger.warning(
                    "[RETRY] %s failed with %s (attempt=%d, sleep=%.1fs)",
                    path,
                    exc.status_code,
                    attempt,
                    delay,
                )
                await self._sleep(delay)
                delay *= 2

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            logger.error("Backend returned invalid JSON: %.200s", response.text)
            raise InvalidBackendResponse(body=response.text) from exc

    # ------------------------------------------------------------------
    # /db
    # ------------------------------------------------------------------

    async def db_select(
        self,
        table_name: str,
        index_name: str,
        key_name: str,
        key_value: Any,
        *,
        account_id: Optional[str] = None,
        session_id: Optional[str] = None,
        retry: bool = False,
    ) -> List[Dict[str, Any]]:
        payload: Dict[str, Any] = {
            "table_name": table_name,
            "index_name": index_name,
            "key_name": key_name,
            "key_value": key_value,
        }
        if account_id is not None:
            payload["account_id"] = account_id

        send = self._post_with_retry if retry else self._post
        response = await send("/db/select", payload, session_id)
        rows = self._json(response)
        if not isinstance(rows, list):
            logger.error("db/select on %s expected a list, got %s", table_name, type(rows).__name__)
            raise InvalidBackendResponse("Invalid response format - expected array", rows)
        return rows

    async def db_update(
        self,
        table_name: str,
        key_name: str,
        key_value: Any,
        update_data: Dict[str, Any],
        *,
        index_name: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> Any:
        payload: Dict[str, Any] = {
            "table_name": table_name,
            "key_name": key_name,
            "key_value": key_value,
            "update_data": update_data,
        }
        if index_name:
            payload["index_name"] = index_name
        response = await self._post("/db/update", payload, session_id)
        body = self._json(response)
        return body.get("updated_item") if isinstance(body, dict) else None

    async def db_delete(
        self,
        table_name: str,
        *,
        session_id: Optional[str] = None,
        **keys: Any,
    ) -> Any:
        """Delete rows; `keys` is passed through (key_name/key_value or attribute_*)."""
        response = await self._post("/db/delete", {"table_name": table_name, **keys}, session_id)
        body = self._json(response)
        return body.get("deleted_item") if isinstance(body, dict) else None

    # ------------------------------------------------------------------
    # Threads
    # ------------------------------------------------------------------

    async def _messages_for(
        self,
        thread: Dict[str, Any],
        session_id: Optional[str],
    ) -> Dict[str, Any]:
        conversation_id = thread.get("conversation_id")
        try:
            messages = await self.db_select(
                MESSAGES_TABLE,
                "conversation_id-index",
                "conversation_id",
                conversation_id,
                session_id=session_id,
                retry=True,
            )
        except BackendError as exc:
            logger.error("Error fetching messages for thread %s: %s", conversation_id, exc.detail)
            return {"thread": thread, "messages": [], "error": exc.detail}
        return {"thread": thread, "messages": messages}

    async def get_all_threads(
        self,
        user_id: str,
        session_id: Optional[str] = None,
    ) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
        """
        Every thread of a user with its messages.

        Returns (conversations, failures); a thread whose messages could not
        be fetched is reported in failures instead of failing the call.
        """
        threads = await self.db_select(
            THREADS_TABLE,
            "associated_account-index",
            "associated_account",
            user_id,
            session_id=session_id,
            retry=True,
        )
        results = await asyncio.gather(
            *(self._messages_for(thread, session_id) for thread in threads if isinstance(thread, dict))
        )

        conversations = [r for r in results if "error" not in r]
        failures = [
            {"conversation_id": r["thread"].get("conversation_id"), "error": r["error"]}
            for r in results
            if "error" in r
        ]
        if failures:
            logger.warning("Failed to fetch messages for %d threads", len(failures))
        logger.info(
            "Fetched %d threads for user %s (%d failed)",
            len(conversations),
            user_id,
            len(failures),
        )
        return conversations, failures

    async def get_thread_by_id(
        self,
        conversation_id: str,
        *,
        account_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """`{thread, messages}` for one conversation, or None if unknown."""
        threads = await self.db_select(
            THREADS_TABLE,
            "conversation_id-index",
            "conversation_id",
            conversation_id,
            account_id=account_id,
            session_id=session_id,
        )
        if not threads:
            return None

        messages = await self.db_select(
            MESSAGES_TABLE,
            "conversation_id-index",
            "conversation_id",
            conversation_id,
            account_id=account_id,
            session_id=session_id,
        )
        return {"thread": threads[0], "messages": messages}

    async def update_thread(
        self,
        conversation_id: str,
        update_data: Dict[str, Any],
        *,
        session_id: Optional[str] = None,
    ) -> Any:
        return await self.db_update(
            THREADS_TABLE,
            "conversation_id",
            conversation_id,
            update_data,
            index_name="conversation_id-index",
            session_id=session_id,
        )

    async def delete_thread(
        self,
        conversation_id: str,
        *,
        session_id: Optional[str] = None,
    ) -> None:
        """Delete a thread's messages, then the thread row itself."""
        await self.db_delete(
            MESSAGES_TABLE,
            key_name="conversation_id",
            key_value=conversation_id,
            session_id=session_id,
        )
        await self.db_delete(
            THREADS_TABLE,
            key_name="conversation_id",
            key_value=conversation_id,
            session_id=session_id,
        )
        logger.info("Deleted thread %s and its messages", conversation_id)

    async def mark_not_spam(
        self,
        conversation_id: str,
        message_id: str,
        account_id: str,
        *,
        session_id: Optional[str] = None,
    ) -> None:
        """
        Clear the spam flag in both tables, then ask for a fresh EV score.

        EV generation failing is only logged.
        """
        update_data = {
            "spam": "false",
            "ttl": int(time.time()) + NEVER_EXPIRE_SECONDS,
        }
        results = await asyncio.gather(
            *(
                self.db_update(
                    table,
                    "conversation_id",
                    conversation_id,
                    update_data,
                    index_name="conversation_id-index",
                    session_id=session_id,
                )
                for table in (THREADS_TABLE, MESSAGES_TABLE)
            ),
            return_exceptions=True,
        )

        errors = [
            f"{table} update failed: {result.detail if isinstance(result, BackendError) else result}"
            for table, result in zip((THREADS_TABLE, MESSAGES_TABLE), results)
            if isinstance(result, Exception)
        ]
        if errors:
            logger.error("Update spam status failed: %s", errors)
            raise BackendError(500, f"Failed to update spam status: {', '.join(errors)}")

        try:
            await self.lcp_generate_ev(conversation_id, message_id, account_id, session_id=session_id)
        except BackendError as exc:
            logger.warning(
                "EV generation failed, but spam status was updated (status=%s): %s",
                exc.status_code,
                exc.detail,
            )

    async def get_invocations(
        self,
        user_id: str,
        *,
        session_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        return await self.db_select(
            INVOCATIONS_TABLE,
            "associated_account-index",
            "associated_account",
            user_id,
            account_id=user_id,
            session_id=session_id,
        )

    # ------------------------------------------------------------------
    # /lcp
    # ------------------------------------------------------------------

    async def lcp_send_email(
        self,
        conversation_id: str,
        response_body: str,
        *,
        session_id: Optional[str] = None,
    ) -> Any:
        response = await self._post(
            "/lcp/send-email",
            {"conversation_id": conversation_id, "response_body": response_body},
            session_id,
            default_error="Failed to send email",
        )
        logger.info("Sent email for conversation %s", conversation_id)
        return self._json(response)

    async def lcp_get_llm_response(
        self,
        conversation_id: str,
        account_id: str,
        is_first_email: bool = False,
        *,
        session_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Ask the LCP for a draft reply.

        A `flagged_for_review` answer is returned as data even when the
        status code is an error.
        """
        response = await self._send(
            "/lcp/get-llm-response",
            {
                "conversation_id": conversation_id,
                "account_id": account_id,
                "is_first_email": bool(is_first_email),
            },
            session_id,
        )
        data = self._json(response)
        if isinstance(data, dict) and data.get("status") == "flagged_for_review":
            logger.info("LLM response for %s flagged for review", conversation_id)
            return data
        if not response.is_success:
            message = data.get("message") if isinstance(data, dict) else None
            raise BackendError(response.status_code, message or "Failed to get LLM response", data)
        return data

    async def lcp_get_thread_attrs(
        self,
        conversation_id: str,
        *,
        session_id: Optional[str] = None,
    ) -> Any:
        response = await self._post(
            "/lcp/get-thread-attrs",
            {"conversationId": conversation_id},
            session_id,
        )
        return self._json(response)

    async def lcp_generate_ev(
        self,
        conversation_id: str,
        response_id: str,
        account_id: str,
        *,
        session_id: Optional[str] = None,
    ) -> Any:
        response = await self._post(
            "/lcp/generate-ev",
            {
                "conversation_id": conversation_id,
                "response_id": response_id,
                "account_id": account_id,
            },
            session_id,
        )
        return self._json(response)

    # ------------------------------------------------------------------
    # /users
    # ------------------------------------------------------------------

    async def auth_login(
        self,
        email: str,
        password: Optional[str],
        provider: str,
        name: Optional[str] = None,
    ) -> Tuple[Dict[str, Any], List[str]]:
        """Log in upstream; returns (user payload, raw set-cookie headers)."""
        response = await self._post(
            "/users/auth/login",
            {"email": email, "password": password, "provider": provider, "name": name},
            default_error="Login failed.",
        )
        data = self._json(response)
        return (data if isinstance(data, dict) else {}), response.headers.get_list("set-cookie")
