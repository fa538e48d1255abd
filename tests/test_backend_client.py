"""Tests for the async backend client against an in-process fake backend."""
import httpx
import pytest

from acs_dashboard.clients.backend import (
    BackendClient,
    BackendError,
    InvalidBackendResponse,
    extract_session_id,
)
from conftest import make_item, make_raw_message


def _select_failing_for(table_name, key_value=None, status_code=500):
    """A /db/select responder that fails only for one table (and key)."""

    def respond(payload):
        if payload["table_name"] == table_name and key_value in (None, payload["key_value"]):
            return httpx.Response(status_code, json={"message": f"{table_name} unavailable"})
        return httpx.Response(200, json=[])

    return respond


class TestRetry:
    async def test_threads_fetch_retries_with_backoff(self, backend_client, fake_backend, sleeps):
        fake_backend.responses["/db/select"] = (503, {"message": "busy"})

        with pytest.raises(BackendError) as excinfo:
            await backend_client.get_all_threads("user-1")

        assert excinfo.value.status_code == 503
        assert excinfo.value.detail == "busy"
        assert sleeps == [1.0, 2.0, 4.0]
        assert len(fake_backend.calls_to("/db/select")) == 4

    async def test_expired_session_is_not_retried(self, backend_client, fake_backend, sleeps):
        fake_backend.responses["/db/select"] = (401, {"message": "expired"})

        with pytest.raises(BackendError) as excinfo:
            await backend_client.get_all_threads("user-1")

        assert excinfo.value.is_unauthorized
        assert sleeps == []
        assert len(fake_backend.calls_to("/db/select")) == 1

    async def test_recovers_after_transient_failure(self, backend_client, fake_backend, sleeps):
        fake_backend.add_item(make_item("conv-1"))
        attempts = []

        def flaky(payload):
            attempts.append(payload["table_name"])
            if len(attempts) == 1:
                return httpx.Response(500, json={"error": "hiccup"})
            rows = fake_backend.tables[payload["table_name"]]
            matching = [r for r in rows if r.get(payload["key_name"]) == payload["key_value"]]
            return httpx.Response(200, json=matching)

        fake_backend.responses["/db/select"] = flaky

        conversations, failures = await backend_client.get_all_threads("user-1")

        assert sleeps == [1.0]
        assert failures == []
        assert [c["thread"]["conversation_id"] for c in conversations] == ["conv-1"]

    async def test_plain_calls_do_not_retry(self, backend_client, fake_backend, sleeps):
        fake_backend.responses["/db/update"] = (500, {"message": "nope"})

        with pytest.raises(BackendError):
            await backend_client.update_thread("conv-1", {"read": "true"})

        assert sleeps == []
        assert len(fake_backend.calls_to("/db/update")) == 1


class TestTransportErrors:
    async def test_unreachable_backend_is_502(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = BackendClient(
            "http://backend.test",
            transport=httpx.MockTransport(refuse),
            max_retries=0,
        )
        async with client:
            with pytest.raises(BackendError) as excinfo:
                await client.db_select("Threads", "idx", "k", "v")

        assert excinfo.value.status_code == 502
        assert "Backend unreachable" in excinfo.value.detail

    async def test_invalid_json(self, backend_client, fake_backend):
        fake_backend.responses["/db/select"] = lambda payload: httpx.Response(200, text="<html>")

        with pytest.raises(InvalidBackendResponse) as excinfo:
            await backend_client.db_select("Threads", "idx", "k", "v")

        assert excinfo.value.status_code == 500
        assert excinfo.value.detail == "Invalid JSON response"

    async def test_select_must_return_a_list(self, backend_client, fake_backend):
        fake_backend.responses["/db/select"] = (200, {"rows": []})

        with pytest.raises(InvalidBackendResponse) as excinfo:
            await backend_client.db_select("Threads", "idx", "k", "v")

        assert "expected array" in excinfo.value.detail

    async def test_plain_text_error_body(self, backend_client, fake_backend):
        fake_backend.responses["/db/delete"] = lambda payload: httpx.Response(403, text="Forbidden")

        with pytest.raises(BackendError) as excinfo:
            await backend_client.db_delete("Threads", key_name="conversation_id", key_value="c")

        assert excinfo.value.status_code == 403
        assert excinfo.value.detail == "Forbidden"
        assert excinfo.value.is_unauthorized is False


class TestThreads:
    async def test_get_all_threads_joins_messages(self, backend_client, fake_backend):
        fake_backend.add_item(make_item("conv-1"))
        fake_backend.add_item(
            make_item(
                "conv-2",
                messages=[make_raw_message("conv-2"), make_raw_message("conv-2", "2024-06-14T11:00:00Z")],
            )
        )
        fake_backend.add_item(make_item("other", associated_account="user-9"))

        conversations, failures = await backend_client.get_all_threads("user-1")

        assert failures == []
        by_id = {c["thread"]["conversation_id"]: c for c in conversations}
        assert set(by_id) == {"conv-1", "conv-2"}
        assert len(by_id["conv-2"]["messages"]) == 2

    async def test_failed_message_fetch_is_reported(self, backend_client, fake_backend, sleeps):
        fake_backend.tables["Threads"] = [
            {"conversation_id": "conv-1", "associated_account": "user-1"},
            {"conversation_id": "conv-2", "associated_account": "user-1"},
        ]
        failing = _select_failing_for("Conversations", key_value="conv-2")

        def respond(payload):
            if payload["table_name"] == "Conversations":
                return failing(payload)
            rows = [
                r for r in fake_backend.tables["Threads"]
                if r["associated_account"] == payload["key_value"]
            ]
            return httpx.Response(200, json=rows)

        fake_backend.responses["/db/select"] = respond

        conversations, failures = await backend_client.get_all_threads("user-1")

        assert [c["thread"]["conversation_id"] for c in conversations] == ["conv-1"]
        assert failures == [{"conversation_id": "conv-2", "error": "Conversations unavailable"}]
        assert sleeps == [1.0, 2.0, 4.0]

    async def test_session_cookie_is_forwarded(self, backend_client, fake_backend):
        await backend_client.get_all_threads("user-1", session_id="sess-1")

        assert fake_backend.requests[0][2] == "session_id=sess-1"

    async def test_no_cookie_without_session(self, backend_client, fake_backend):
        await backend_client.get_all_threads("user-1")

        assert fake_backend.requests[0][2] is None

    async def test_get_thread_by_id(self, backend_client, fake_backend):
        fake_backend.add_item(make_item("conv-1"))

        item = await backend_client.get_thread_by_id("conv-1", account_id="user-1")
        missing = await backend_client.get_thread_by_id("nope")

        assert item["thread"]["conversation_id"] == "conv-1"
        assert len(item["messages"]) == 1
        assert missing is None
        assert fake_backend.calls_to("/db/select")[0]["account_id"] == "user-1"

    async def test_delete_thread_removes_messages_first(self, backend_client, fake_backend):
        await backend_client.delete_thread("conv-1")

        tables = [p["table_name"] for p in fake_backend.calls_to("/db/delete")]
        assert tables == ["Conversations", "Threads"]

    async def test_update_thread_targets_conversation_index(self, backend_client, fake_backend):
        updated = await backend_client.update_thread("conv-1", {"completed": "true"})

        payload = fake_backend.calls_to("/db/update")[0]
        assert payload["index_name"] == "conversation_id-index"
        assert updated == {"completed": "true"}


class TestMarkNotSpam:
    async def test_updates_both_tables_then_scores(self, backend_client, fake_backend):
        await backend_client.mark_not_spam("conv-1", "msg-1", "user-1")

        updates = fake_backend.calls_to("/db/update")
        assert sorted(p["table_name"] for p in updates) == ["Conversations", "Threads"]
        assert all(p["update_data"]["spam"] == "false" for p in updates)
        assert fake_backend.calls_to("/lcp/generate-ev") == [
            {"conversation_id": "conv-1", "response_id": "msg-1", "account_id": "user-1"}
        ]

    async def test_update_failure_raises(self, backend_client, fake_backend):
        def respond(payload):
            if payload["table_name"] == "Conversations":
                return httpx.Response(500, json={"message": "throttled"})
            return httpx.Response(200, json={"updated_item": {}})

        fake_backend.responses["/db/update"] = respond

        with pytest.raises(BackendError) as excinfo:
            await backend_client.mark_not_spam("conv-1", "msg-1", "user-1")

        assert excinfo.value.status_code == 500
        assert "Conversations update failed: throttled" in excinfo.value.detail
        assert fake_backend.calls_to("/lcp/generate-ev") == []

    async def test_ev_failure_is_only_logged(self, backend_client, fake_backend):
        fake_backend.responses["/lcp/generate-ev"] = (500, {"message": "model down"})

        await backend_client.mark_not_spam("conv-1", "msg-1", "user-1")

        assert len(fake_backend.calls_to("/lcp/generate-ev")) == 1


class TestLcp:
    async def test_llm_response(self, backend_client, fake_backend):
        data = await backend_client.lcp_get_llm_response("conv-1", "user-1", is_first_email=True)

        assert data["response"] == "Thanks for reaching out!"
        assert fake_backend.calls_to("/lcp/get-llm-response")[0]["is_first_email"] is True

    async def test_flagged_for_review_is_data(self, backend_client, fake_backend):
        fake_backend.responses["/lcp/get-llm-response"] = (
            422,
            {"status": "flagged_for_review", "message": "Needs a human"},
        )

        data = await backend_client.lcp_get_llm_response("conv-1", "user-1")

        assert data["status"] == "flagged_for_review"

    async def test_llm_error(self, backend_client, fake_backend):
        fake_backend.responses["/lcp/get-llm-response"] = (500, {"message": "LLM down"})

        with pytest.raises(BackendError) as excinfo:
            await backend_client.lcp_get_llm_response("conv-1", "user-1")

        assert excinfo.value.detail == "LLM down"

    async def test_send_email(self, backend_client, fake_backend):
        result = await backend_client.lcp_send_email("conv-1", "See you Saturday")

        assert result == {"status": "sent"}
        assert fake_backend.calls_to("/lcp/send-email") == [
            {"conversation_id": "conv-1", "response_body": "See you Saturday"}
        ]

    async def test_thread_attrs_uses_camel_case_key(self, backend_client, fake_backend):
        result = await backend_client.lcp_get_thread_attrs("conv-1")

        assert result["conversationId"] == "conv-1"


class TestLogin:
    async def test_returns_user_and_cookies(self, backend_client, fake_backend):
        user, cookies = await backend_client.auth_login("ana@example.com", "pw", "form")

        assert user["id"] == "user-1"
        assert cookies == ["session_id=sess-abc; Path=/; HttpOnly; Secure"]
        assert extract_session_id(cookies) == "sess-abc"

    async def test_failure_uses_login_message(self, backend_client, fake_backend):
        fake_backend.responses["/users/auth/login"] = lambda payload: httpx.Response(401, text="")

        with pytest.raises(BackendError) as excinfo:
            await backend_client.auth_login("ana@example.com", "bad", "form")

        assert excinfo.value.is_unauthorized
        assert excinfo.value.detail == "Login failed."


def test_extract_session_id_none():
    assert extract_session_id(["theme=dark; Path=/"]) is None
    assert extract_session_id([]) is None
