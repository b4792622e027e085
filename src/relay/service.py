"""
GatewayService - the heart of the relay.

Owns the shared httpx client, the credential manager and the usage counters,
and exposes the operations the HTTP layer calls: translating Messages
requests to Copilot (whole or streamed) and driving the GitHub login.
"""

import logging
import os
import time
from typing import AsyncGenerator, Awaitable, Callable

import httpx
from pydantic import ValidationError

from . import copilot
from .auth import AuthState, CredentialManager
from .bridge import StreamingBridge
from .errors import BackendProtocolError
from .models import (
    CountTokensRequest,
    Credential,
    MessageRequest,
    MessageResponse,
    VerificationDescriptor,
    decode_completion,
)
from .normalizer import estimate_tokens, to_canonical
from .synthesizer import OutboundEvent, from_backend_completion, is_message_envelope
from .usage import UsageTracker

logger = logging.getLogger(__name__)

HTTP_TIMEOUT = float(os.environ.get("RELAY_HTTP_TIMEOUT", "120"))


class GatewayService:
    """
    Stateful service behind the relay's routes.

    All state is in-memory and lives as long as the process.
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        credentials: CredentialManager | None = None,
        usage: UsageTracker | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(HTTP_TIMEOUT, connect=10.0),
            limits=httpx.Limits(max_connections=50, max_keepalive_connections=10),
        )
        self.credentials = credentials or CredentialManager(self.client, clock=clock)
        self.usage = usage or UsageTracker()

    async def close(self) -> None:
        await self.client.aclose()

    # ------------------------------------------------------------------
    # Translation
    # ------------------------------------------------------------------

    async def translate_completion(
        self,
        request: MessageRequest,
        session_id: str = "anonymous",
        credential: Credential | None = None,
    ) -> MessageResponse:
        """
        Answer a non-streaming Messages request through Copilot.

        No retries: a failed call surfaces immediately as a GatewayError.
        """
        credential = credential or await self.credentials.ensure_valid()

        prompt = to_canonical(request.messages, request.system).render()
        payload = copilot.build_payload(request, prompt, stream=False)
        logger.info(
            f"Completion for session {session_id[:8]}: model={payload['model']} "
            f"prompt_chars={len(prompt)}"
        )

        result = await copilot.complete(self.client, payload, credential.value)

        if is_message_envelope(result):
            try:
                response = MessageResponse.model_validate(result)
            except ValidationError as e:
                raise BackendProtocolError("Backend message envelope was malformed") from e
        else:
            response = from_backend_completion(decode_completion(result), request.model)

        self.usage.track(session_id, response.usage.input_tokens + response.usage.output_tokens)
        return response

    def translate_stream(
        self,
        request: MessageRequest,
        session_id: str = "anonymous",
        is_disconnected: Callable[[], Awaitable[bool]] | None = None,
    ) -> AsyncGenerator[OutboundEvent, None]:
        """Stream a Messages request through Copilot as outbound SSE events."""

        def record(bridge: StreamingBridge) -> None:
            output = bridge.stream_state.output_tokens if bridge.stream_state else 0
            self.usage.track(session_id, estimate_tokens(bridge.prompt) + output)
            logger.info(f"Stream for session {session_id[:8]} ended ({bridge.state.value})")

        bridge = StreamingBridge(
            self.client,
            self.credentials,
            request,
            is_disconnected=is_disconnected,
            on_close=record,
        )
        return bridge.events()

    def count_tokens(self, request: CountTokensRequest) -> int:
        return estimate_tokens(to_canonical(request.messages, request.system).render())

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    async def get_verification(self) -> VerificationDescriptor:
        """The device flow in progress, or a freshly started one."""
        descriptor = self.credentials.verification
        if descriptor is not None:
            return descriptor
        return await self.credentials.begin_device_authorization()

    async def poll_authorization(self) -> bool:
        return await self.credentials.poll_authorization()

    def is_authenticated(self) -> bool:
        return self.credentials.state is AuthState.ACTIVE

    def logout(self) -> None:
        self.credentials.clear()
