import json
import os
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

# Settings are read once at import time; point them at throwaway targets first.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["API_URL"] = "http://backend.test"
os.environ.setdefault("ENVIRONMENT", "test")

import httpx
import pytest
from fastapi.testclient import TestClient

from acs_dashboard.clients.backend import BackendClient
from acs_dashboard.db import SessionLocal
from acs_dashboard.main import app
from acs_dashboard.models import StorageEntry
from acs_dashboard.services.auth_service import get_backend_client

NOW = datetime(2024, 6, 15, 12, 0, 0, tzinfo=timezone.utc)

AUTH = {"X-User-Id": "user-1"}

Responder = Union[Tuple[int, Any], Callable[[Dict[str, Any]], httpx.Response]]


def make_raw_message(
    conversation_id: str = "conv-1",
    timestamp: str = "2024-06-14T10:00:00Z",
    message_type: str = "inbound-email",
    **extra: Any,
) -> Dict[str, Any]:
    message = {
        "conversation_id": conversation_id,
        "response_id": extra.pop("response_id", f"{conversation_id}-{timestamp}"),
        "sender": "lead@example.com",
        "receiver": "agent@example.com",
        "body": "Hello, is the house still available?",
        "subject": "123 Main St",
        "timestamp": timestamp,
        "type": message_type,
    }
    message.update(extra)
    return message


def make_raw_thread(conversation_id: str = "conv-1", **extra: Any) -> Dict[str, Any]:
    thread = {
        "conversation_id": conversation_id,
        "associated_account": "user-1",
        "source_name": "Jane Buyer",
        "source": "jane@example.com",
        "created_at": "2024-06-10T09:00:00Z",
        "updated_at": "2024-06-14T10:00:00Z",
        "lcp_enabled": "true",
        "completed": "false",
        "spam": "false",
        "read": "false",
    }
    thread.update(extra)
    return thread


def make_item(
    conversation_id: str = "conv-1",
    messages: Optional[List[Dict[str, Any]]] = None,
    **thread_extra: Any,
) -> Dict[str, Any]:
    if messages is None:
        messages = [make_raw_message(conversation_id)]
    return {"thread": make_raw_thread(conversation_id, **thread_extra), "messages": messages}


class FakeBackend:
    """
    In-process stand-in for the remote backend, served via httpx.MockTransport.

    `tables` answers /db/select by key; `responses` overrides any path.
    """

    def __init__(self) -> None:
        self.tables: Dict[str, List[Dict[str, Any]]] = {
            "Threads": [],
            "Conversations": [],
            "Invocations": [],
        }
        self.responses: Dict[str, Responder] = {}
        self.requests: List[Tuple[str, Dict[str, Any], Optional[str]]] = []

    def add_item(self, item: Dict[str, Any]) -> None:
        self.tables["Threads"].append(item["thread"])
        self.tables["Conversations"].extend(item["messages"])

    def calls_to(self, path: str) -> List[Dict[str, Any]]:
        return [payload for p, payload, _ in self.requests if p == path]

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        payload = json.loads(request.content) if request.content else {}
        self.requests.append((path, payload, request.headers.get("cookie")))

        override = self.responses.get(path)
        if override is not None:
            if callable(override):
                return override(payload)
            status_code, body = override
            return httpx.Response(status_code, json=body)

        if path == "/db/select":
            rows = self.tables.get(payload["table_name"], [])
            return httpx.Response(
                200,
                json=[r for r in rows if r.get(payload["key_name"]) == payload["key_value"]],
            )
        if path == "/db/update":
            return httpx.Response(200, json={"updated_item": payload["update_data"]})
        if path == "/db/delete":
            return httpx.Response(200, json={"deleted_item": {"table_name": payload["table_name"]}})
        if path == "/lcp/send-email":
            return httpx.Response(200, json={"status": "sent"})
        if path == "/lcp/get-llm-response":
            return httpx.Response(200, json={"status": "ok", "response": "Thanks for reaching out!"})
        if path == "/lcp/get-thread-attrs":
            return httpx.Response(200, json={"conversationId": payload["conversationId"], "attrs": {}})
        if path == "/lcp/generate-ev":
            return httpx.Response(200, json={"ev_score": 55})
        if path == "/users/auth/login":
            return httpx.Response(
                200,
                json={"id": "user-1", "name": "Ana Agent"},
                headers=[("set-cookie", "session_id=sess-abc; Path=/; HttpOnly; Secure")],
            )
        return httpx.Response(404, json={"message": f"No route {path}"})


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def backend_client(fake_backend: FakeBackend, sleeps: List[float]) -> BackendClient:
    async def record_sleep(delay: float) -> None:
        sleeps.append(delay)

    return BackendClient(
        "http://backend.test",
        transport=httpx.MockTransport(fake_backend.handler),
        max_retries=3,
        retry_delay=1.0,
        sleep=record_sleep,
    )


@pytest.fixture
def api(backend_client: BackendClient):
    """TestClient wired to the fake backend; the cache tables are emptied afterwards."""
    app.dependency_overrides[get_backend_client] = lambda: backend_client
    try:
        with TestClient(app) as client:
            yield client
    finally:
        app.dependency_overrides.clear()
        with SessionLocal() as db:
            db.query(StorageEntry).delete()
            db.commit()
