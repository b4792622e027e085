"""Integration tests for the HTTP surface.

Uses httpx AsyncClient with ASGITransport against the FastAPI app, with the
global service swapped for one wired to the fake upstream.
"""

import importlib
import json

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from conftest import completion_chunk, sse_body

# The package re-exports the FastAPI instance as `relay.app`, so fetch the module itself
app_module = importlib.import_module("relay.app")

MESSAGE = {
    "model": "claude-sonnet-4-20250514",
    "max_tokens": 64,
    "messages": [{"role": "user", "content": "Hello"}],
}


def parse_sse(text: str) -> list[tuple[str, dict]]:
    events = []
    for block in text.strip().split("\n\n"):
        lines = dict(line.split(": ", 1) for line in block.split("\n"))
        events.append((lines["event"], json.loads(lines["data"])))
    return events


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def api(service, monkeypatch):
    """HTTP client for the app, backed by the test service."""
    monkeypatch.setattr(app_module, "relay", service)
    async with AsyncClient(transport=ASGITransport(app=app_module.app), base_url="http://test") as c:
        yield c


@pytest_asyncio.fixture
async def api_logged_in(api, logged_in):
    return api


# ---------------------------------------------------------------------------
# Health and models
# ---------------------------------------------------------------------------


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, api):
        r = await api.get("/health")
        assert r.status_code == 200
        body = r.json()
        assert body["status"] == "ok"
        assert body["authenticated"] is False

    @pytest.mark.asyncio
    async def test_models(self, api):
        r = await api.get("/anthropic/v1/models")
        assert r.status_code == 200
        body = r.json()
        assert body["object"] == "list"
        assert "claude-sonnet-4-20250514" in [m["id"] for m in body["data"]]

    @pytest.mark.asyncio
    async def test_get_model(self, api):
        r = await api.get("/anthropic/v1/models/claude-3-7-sonnet-20250219")
        assert r.status_code == 200
        assert r.json()["display_name"] == "Claude 3.7 Sonnet"

    @pytest.mark.asyncio
    async def test_get_unknown_model(self, api):
        r = await api.get("/anthropic/v1/models/gpt-4o")
        assert r.status_code == 404
        assert r.json()["error"]["type"] == "not_found_error"


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


class TestAuthRoutes:
    @pytest.mark.asyncio
    async def test_device_flow_round_trip(self, api, upstream):
        r = await api.post("/auth/device")
        assert r.status_code == 200
        assert r.json()["user_code"] == "ABCD-1234"
        assert r.json()["status"] == "pending_verification"

        r = await api.get("/auth/check")
        assert r.json() == {"authenticated": False}

        upstream.access_token_answers = [{"access_token": "gho_x"}]
        r = await api.get("/auth/check")
        assert r.json() == {"authenticated": True}

        r = await api.get("/auth/status")
        assert r.json()["state"] == "active"
        assert r.json()["token_valid"] is True

        r = await api.post("/auth/logout")
        assert r.status_code == 204
        assert (await api.get("/auth/status")).json()["state"] == "unauthenticated"

    @pytest.mark.asyncio
    async def test_device_flow_upstream_failure(self, api, upstream):
        upstream.device_code_status = 500
        r = await api.post("/auth/device")
        assert r.status_code == 502
        assert r.json()["error"]["code"] == "auth_initiation_failed"

    @pytest.mark.asyncio
    async def test_denied_check(self, api, upstream):
        upstream.access_token_answers = [{"error": "access_denied"}]
        await api.post("/auth/device")

        r = await api.get("/auth/check")

        assert r.status_code == 502
        assert r.json()["error"]["code"] == "auth_check_failed"


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


class TestMessages:
    @pytest.mark.asyncio
    async def test_non_streaming(self, api_logged_in):
        r = await api_logged_in.post("/anthropic/v1/messages", json=MESSAGE)

        assert r.status_code == 200
        body = r.json()
        assert body["type"] == "message"
        assert body["role"] == "assistant"
        assert body["content"] == [{"type": "text", "text": "Hello!"}]
        assert body["id"].startswith("msg_")

    @pytest.mark.asyncio
    async def test_streaming(self, api_logged_in, upstream):
        upstream.stream_body = sse_body(completion_chunk("Hi"), completion_chunk(" you"))

        r = await api_logged_in.post("/anthropic/v1/messages", json={**MESSAGE, "stream": True})

        assert r.status_code == 200
        assert r.headers["content-type"].startswith("text/event-stream")
        events = parse_sse(r.text)
        assert [name for name, _ in events] == [
            "message_start", "content_block_start", "ping",
            "content_block_delta", "content_block_delta",
            "content_block_stop", "message_delta", "message_stop",
        ]
        assert "".join(d["delta"]["text"] for n, d in events if n == "content_block_delta") == "Hi you"

    @pytest.mark.asyncio
    async def test_streaming_failure_before_first_event_is_json(self, api_logged_in, upstream):
        upstream.stream_status = 503

        r = await api_logged_in.post("/anthropic/v1/messages", json={**MESSAGE, "stream": True})

        assert r.status_code == 502
        assert r.json()["type"] == "error"
        assert r.json()["error"]["code"] == "backend_connect_failed"

    @pytest.mark.asyncio
    async def test_streaming_failure_after_first_event_ends_with_error_event(self, api_logged_in, upstream):
        upstream.stream_body = sse_body(completion_chunk("Hi"), done=False)
        upstream.stream_resets = True

        r = await api_logged_in.post(
            "/anthropic/v1/messages",
            json={**MESSAGE, "stream": True},
            headers={"x-session-id": "broken-stream"},
        )

        assert r.status_code == 200
        events = parse_sse(r.text)
        assert [name for name, _ in events] == [
            "message_start", "content_block_start", "ping", "content_block_delta", "error",
        ]
        assert events[-1][1]["error"]["code"] == "backend_connect_failed"
        assert app_module.relay.usage.sessions["broken-stream"].request_count == 1

    @pytest.mark.asyncio
    async def test_requires_login(self, api):
        r = await api.post("/anthropic/v1/messages", json=MESSAGE)

        assert r.status_code == 401
        assert r.json()["error"]["type"] == "authentication_error"
        assert r.json()["error"]["code"] == "no_identity_token"

    @pytest.mark.asyncio
    async def test_invalid_body(self, api):
        r = await api.post("/anthropic/v1/messages", json={"model": "x", "messages": []})

        assert r.status_code == 400
        assert r.json()["error"]["type"] == "invalid_request_error"
        assert "max_tokens" in r.json()["error"]["message"]

    @pytest.mark.asyncio
    async def test_unknown_block_types_are_accepted(self, api_logged_in, upstream):
        body = {**MESSAGE, "messages": [{
            "role": "user",
            "content": [{"type": "text", "text": "Hello"}, {"type": "document", "source": {}}],
        }]}

        r = await api_logged_in.post("/anthropic/v1/messages", json=body)

        assert r.status_code == 200
        assert upstream.completion_payloads()[0]["prompt"] == "User: Hello\n\nAssistant: "

    @pytest.mark.asyncio
    async def test_count_tokens(self, api):
        r = await api.post("/anthropic/v1/messages/count_tokens", json={"messages": MESSAGE["messages"]})
        assert r.status_code == 200
        assert r.json() == {"input_tokens": 6}


# ---------------------------------------------------------------------------
# Usage
# ---------------------------------------------------------------------------


class TestUsageRoutes:
    @pytest.mark.asyncio
    async def test_usage_tracks_sessions(self, api_logged_in):
        await api_logged_in.post("/anthropic/v1/messages", json=MESSAGE, headers={"x-session-id": "abcdef123456"})

        summary = (await api_logged_in.get("/usage/summary")).json()
        assert summary["sessions"] == 1
        assert summary["totalRequests"] == 1
        assert summary["totalTokens"] == 7

        details = (await api_logged_in.get("/usage/details")).json()
        assert details[0]["sessionId"] == "abcdef12..."

        r = await api_logged_in.post("/usage/reset/abcdef12")
        assert r.json()["success"] is True
        assert (await api_logged_in.get("/usage/summary")).json()["sessions"] == 0

    @pytest.mark.asyncio
    async def test_reset_unknown_session(self, api):
        r = await api.post("/usage/reset/nobody")
        assert r.status_code == 404
        assert r.json()["error"]["code"] == "session_not_found"

    @pytest.mark.asyncio
    async def test_reset_all(self, api, service):
        service.usage.track("a", 1)
        service.usage.track("b", 2)

        r = await api.post("/usage/reset-all")

        assert r.status_code == 200
        assert service.usage.sessions == {}
