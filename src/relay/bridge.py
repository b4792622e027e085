"""
Streaming bridge.

Re-frames Copilot's streamed completion (`data: {choices: [{text}]}` lines
ending in `data: [DONE]`) into the Messages SSE grammar as fragments arrive.

    OPENING ──> STREAMING ──> CLOSING ──> CLOSED
       │            │
       └────────────┴──> ERRORED ──> (closed)

One bridge serves one call and is iterated once.
"""

import json
import logging
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable

import httpx

from . import copilot
from .auth import CredentialManager
from .errors import BackendConnectFailed, BackendProtocolError, GatewayError
from .models import MessageRequest, decode_completion
from .normalizer import estimate_tokens, to_canonical
from .synthesizer import (
    OutboundEvent,
    StreamState,
    close_stream,
    error_event,
    from_backend_delta,
)

logger = logging.getLogger(__name__)

TERMINAL_MARKER = "[DONE]"


class BridgeState(str, Enum):
    OPENING = "opening"
    STREAMING = "streaming"
    CLOSING = "closing"
    CLOSED = "closed"
    ERRORED = "errored"


class StreamingBridge:
    """
    Drives one streaming call from credential lookup to the final event.

    Args:
        client: Shared httpx client
        credentials: The process-wide CredentialManager
        request: The validated Messages request
        is_disconnected: Optional coroutine telling us the caller went away
        on_close: Called exactly once when the outbound side closes
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        credentials: CredentialManager,
        request: MessageRequest,
        is_disconnected: Callable[[], Awaitable[bool]] | None = None,
        on_close: Callable[["StreamingBridge"], None] | None = None,
    ):
        self._client = client
        self._credentials = credentials
        self._request = request
        self._is_disconnected = is_disconnected
        self._on_close = on_close

        self.state = BridgeState.OPENING
        self.stream_state: StreamState | None = None
        self.prompt = ""
        self.disconnected = False
        self._closed = False

    def __aiter__(self) -> AsyncIterator[OutboundEvent]:
        return self.events()

    async def events(self) -> AsyncIterator[OutboundEvent]:
        """Yield outbound events in backend order until the stream ends."""
        run = self._run()
        try:
            async for event in run:
                yield event
        finally:
            # Releases the backend connection now, not whenever the generator is collected
            await run.aclose()
            self._close()

    async def _run(self) -> AsyncIterator[OutboundEvent]:
        try:
            credential = await self._credentials.ensure_valid()
        except GatewayError as e:
            yield self._fail(e)
            return

        self.prompt = to_canonical(self._request.messages, self._request.system).render()
        payload = copilot.build_payload(self._request, self.prompt, stream=True)

        try:
            async with copilot.open_stream(self._client, payload, credential.value) as response:
                self.stream_state = StreamState(
                    model=self._request.model,
                    input_tokens=estimate_tokens(self.prompt),
                )
                self.state = BridgeState.STREAMING

                async for line in response.aiter_lines():
                    if self._is_disconnected and await self._is_disconnected():
                        logger.info("Client disconnected, dropping backend stream")
                        self.disconnected = True
                        break

                    data = self._feed_line(line)
                    if data is None:
                        continue
                    if data == TERMINAL_MARKER:
                        self.state = BridgeState.CLOSING
                        break
                    for event in self._translate(data):
                        yield event

                # Backend hung up without [DONE]; whatever was buffered is the last event
                if self.state is BridgeState.STREAMING and not self.disconnected:
                    data = self._flush()
                    if data is not None and data != TERMINAL_MARKER:
                        for event in self._translate(data):
                            yield event
                    self.state = BridgeState.CLOSING

        except GatewayError as e:
            yield self._fail(e)
            return
        except httpx.HTTPError as e:
            logger.error(f"Backend stream failed: {e}")
            yield self._fail(BackendConnectFailed(f"Stream connection error: {e}"))
            return

        if self.disconnected:
            return

        for event in close_stream(self.stream_state):
            yield event

    def _feed_line(self, line: str) -> str | None:
        """
        Accumulate one SSE line; return the event's data once a blank line ends it.

        `data:` values of one event are joined with newlines, per SSE. Event
        names, ids, retry hints and comments carry nothing we need.
        """
        partial = self.stream_state.partial_data
        if line == "":
            return self._flush()
        if line.startswith("data:"):
            value = line[5:]
            partial.append(value[1:] if value.startswith(" ") else value)
        return None

    def _flush(self) -> str | None:
        partial = self.stream_state.partial_data
        if not partial:
            return None
        data = "\n".join(partial)
        partial.clear()
        return data

    def _translate(self, data: str) -> list[OutboundEvent]:
        """One backend fragment to outbound events. Malformed fragments become one error event."""
        try:
            chunk = decode_completion(json.loads(data))
        except ValueError as e:
            logger.warning(f"Error parsing stream message: {e}")
            return [error_event(BackendProtocolError(f"Unparseable stream fragment: {e}"), fatal=False)]
        except BackendProtocolError as e:
            logger.warning(f"Malformed stream fragment: {e}")
            return [error_event(e, fatal=False)]
        return from_backend_delta(chunk, self.stream_state)

    def _fail(self, exc: GatewayError) -> OutboundEvent:
        logger.error(f"Streaming call failed in state {self.state.value}: {exc}")
        self.state = BridgeState.ERRORED
        return error_event(exc)

    def _close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self.state is not BridgeState.ERRORED:
            self.state = BridgeState.CLOSED
        if self._on_close:
            self._on_close(self)
