"""Shared fixtures: a fake GitHub/Copilot upstream on httpx.MockTransport, and a manual clock."""

import json

import httpx
import pytest
import pytest_asyncio

from relay import copilot, github
from relay.auth import CredentialManager
from relay.service import GatewayService

START_TIME = 1_700_000_000.0
TOKEN_LIFETIME = 1800


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock the tests move by hand."""

    def __init__(self, now: float = START_TIME):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def completion_chunk(text: str, finish_reason: str | None = None) -> dict:
    return {"choices": [{"text": text, "index": 0, "finish_reason": finish_reason}]}


def sse_body(*chunks: dict, done: bool = True) -> bytes:
    """Copilot-style SSE stream: one `data:` event per chunk, then [DONE]."""
    parts = [f"data: {json.dumps(chunk)}\n\n" for chunk in chunks]
    if done:
        parts.append("data: [DONE]\n\n")
    return "".join(parts).encode()


async def body_then_reset(body: bytes):
    """Stream body that delivers `body` and then loses the connection."""
    yield body
    raise httpx.ReadError("connection reset by peer")


class FakeUpstream:
    """Canned answers for every upstream URL the relay talks to, plus a log of what it asked."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.requests: list[httpx.Request] = []

        self.device_code_status = 200
        self.device_code = {
            "device_code": "dev-123",
            "user_code": "ABCD-1234",
            "verification_uri": "https://github.com/login/device",
            "expires_in": 900,
            "interval": 5,
        }
        # Answers are used in order; the last one repeats
        self.access_token_answers: list[dict] = [{"error": "authorization_pending"}]

        self.copilot_token_status = 200
        self.tokens_issued = 0

        self.completion = httpx.Response(200, json={
            "id": "cmpl-1",
            "choices": [{"text": " Hello!", "index": 0, "finish_reason": "stop"}],
            "usage": {"prompt_tokens": 5, "completion_tokens": 2},
        })
        self.stream_status = 200
        self.stream_body = sse_body(completion_chunk("Hi"), completion_chunk(" there", "stop"))
        self.stream_error: Exception | None = None
        self.stream_resets = False  # drop the connection after stream_body

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)

        if url == github.GITHUB_DEVICE_CODE_URL:
            if self.device_code_status != 200:
                return httpx.Response(self.device_code_status, json={"error": "server_error"})
            return httpx.Response(200, json=self.device_code)

        if url == github.GITHUB_ACCESS_TOKEN_URL:
            answers = self.access_token_answers
            answer = answers.pop(0) if len(answers) > 1 else answers[0]
            return httpx.Response(200, json=answer)

        if url == github.COPILOT_TOKEN_URL:
            if self.copilot_token_status != 200:
                return httpx.Response(self.copilot_token_status, json={"message": "Bad credentials"})
            self.tokens_issued += 1
            return httpx.Response(200, json={
                "token": f"copilot-{self.tokens_issued}",
                "expires_at": int(self.clock()) + TOKEN_LIFETIME,
            })

        if url == copilot.COPILOT_COMPLETIONS_URL:
            if json.loads(request.content).get("stream"):
                if self.stream_error is not None:
                    raise self.stream_error
                body = body_then_reset(self.stream_body) if self.stream_resets else self.stream_body
                return httpx.Response(
                    self.stream_status,
                    content=body,
                    headers={"content-type": "text/event-stream"},
                )
            return self.completion

        return httpx.Response(404)

    def calls_to(self, url: str) -> list[httpx.Request]:
        return [r for r in self.requests if str(r.url) == url]

    def completion_payloads(self) -> list[dict]:
        return [json.loads(r.content) for r in self.calls_to(copilot.COPILOT_COMPLETIONS_URL)]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def upstream(clock):
    return FakeUpstream(clock)


@pytest_asyncio.fixture
async def client(upstream):
    async with httpx.AsyncClient(transport=httpx.MockTransport(upstream.handler)) as c:
        yield c


@pytest.fixture
def credentials(client, clock):
    return CredentialManager(client, clock=clock)


@pytest_asyncio.fixture
async def logged_in(credentials, upstream):
    """CredentialManager that has finished the device flow and holds copilot-1."""
    upstream.access_token_answers = [{"access_token": "gho_test", "token_type": "bearer"}]
    await credentials.begin_device_authorization()
    assert await credentials.poll_authorization() is True
    return credentials


@pytest.fixture
def service(client, credentials):
    return GatewayService(client=client, credentials=credentials)
