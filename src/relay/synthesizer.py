"""
Response synthesis.

Builds Messages API envelopes out of Copilot completions: whole messages for
the non-streaming path, and SSE events for the streaming one. Copilot streams
flat `{choices: [{text}]}` chunks with no framing, so the opening
(message_start, content_block_start) and closing (content_block_stop,
message_delta, message_stop) events are synthesized here.
"""

import json
import math
import uuid
from dataclasses import dataclass, field
from typing import Any

from .errors import GatewayError
from .models import BackendCompletion, MessageResponse, TextBlock, Usage

FINISH_REASONS = {
    "length": "max_tokens",
    "stop": "stop_sequence",
}


def map_stop_reason(finish_reason: str | None) -> str:
    return FINISH_REASONS.get(finish_reason or "", "end_turn")


def generate_message_id() -> str:
    return f"msg_{uuid.uuid4().hex[:24]}"


@dataclass(frozen=True)
class OutboundEvent:
    """One SSE event in the Messages streaming grammar."""
    event: str
    data: dict[str, Any]
    # Set only on the fatal error that ends a stream
    error: GatewayError | None = field(default=None, compare=False)

    @property
    def is_terminal(self) -> bool:
        return self.event == "message_stop" or self.error is not None

    def encode(self) -> str:
        return f"event: {self.event}\ndata: {json.dumps(self.data)}\n\n"


@dataclass
class StreamState:
    """Per-call bookkeeping for one streamed message."""
    model: str
    input_tokens: int = 0
    message_id: str = field(default_factory=generate_message_id)
    position: int = 0  # backend fragments consumed
    block_index: int | None = None  # open content block, if any
    started: bool = False
    finished: bool = False
    stop_reason: str = "end_turn"
    output_chars: int = 0
    partial_data: list[str] = field(default_factory=list)  # SSE data lines not yet dispatched

    @property
    def output_tokens(self) -> int:
        return math.ceil(self.output_chars / 4)


def error_event(exc: GatewayError, fatal: bool = True) -> OutboundEvent:
    return OutboundEvent("error", exc.to_payload(), error=exc if fatal else None)


def is_message_envelope(payload: Any) -> bool:
    """Backend already answered in Messages shape; nothing to translate."""
    return isinstance(payload, dict) and payload.get("type") == "message" and bool(payload.get("content"))


def from_backend_completion(result: BackendCompletion, requested_model: str) -> MessageResponse:
    """
    Convert a Copilot completion into a Messages response.

    Args:
        result: Decoded backend completion
        requested_model: The model name the client asked for (echoed back)

    Returns:
        MessageResponse with a single text block (or none if the backend
        produced no text)
    """
    text = "".join(choice.text for choice in result.choices).strip()
    content = [TextBlock(text=text)] if text else []

    usage = result.usage
    input_tokens = (usage.prompt_tokens if usage else None) or 0
    output_tokens = (usage.completion_tokens if usage else None) or 0

    finish_reason = result.choices[0].finish_reason if result.choices else None

    return MessageResponse(
        id=generate_message_id(),
        content=content,
        model=requested_model,
        stop_reason=map_stop_reason(finish_reason),
        usage=Usage(input_tokens=input_tokens, output_tokens=output_tokens),
    )


def _open_message(state: StreamState) -> list[OutboundEvent]:
    state.started = True
    state.block_index = 0
    return [
        OutboundEvent("message_start", {
            "type": "message_start",
            "message": {
                "id": state.message_id,
                "type": "message",
                "role": "assistant",
                "content": [],
                "model": state.model,
                "stop_reason": None,
                "stop_sequence": None,
                "usage": {"input_tokens": state.input_tokens, "output_tokens": 0},
            },
        }),
        OutboundEvent("content_block_start", {
            "type": "content_block_start",
            "index": state.block_index,
            "content_block": {"type": "text", "text": ""},
        }),
        OutboundEvent("ping", {"type": "ping"}),
    ]


def from_backend_delta(chunk: BackendCompletion, state: StreamState) -> list[OutboundEvent]:
    """
    Translate one streamed backend fragment.

    The first fragment of a stream also carries the opening framing. Blocks
    are never closed here; close_stream() does that when the backend is done.
    """
    if state.finished:
        return []

    events = _open_message(state) if not state.started else []

    for choice in chunk.choices:
        if choice.text:
            events.append(OutboundEvent("content_block_delta", {
                "type": "content_block_delta",
                "index": state.block_index,
                "delta": {"type": "text_delta", "text": choice.text},
            }))
            state.output_chars += len(choice.text)
        if choice.finish_reason:
            state.stop_reason = map_stop_reason(choice.finish_reason)

    state.position += 1
    return events


def close_stream(state: StreamState) -> list[OutboundEvent]:
    """Emit the closing sequence, ending with the terminal message_stop. Safe to call twice."""
    if state.finished:
        return []

    events = _open_message(state) if not state.started else []

    if state.block_index is not None:
        events.append(OutboundEvent("content_block_stop", {
            "type": "content_block_stop",
            "index": state.block_index,
        }))
        state.block_index = None

    events.append(OutboundEvent("message_delta", {
        "type": "message_delta",
        "delta": {"stop_reason": state.stop_reason, "stop_sequence": None},
        "usage": {"output_tokens": state.output_tokens},
    }))
    events.append(OutboundEvent("message_stop", {"type": "message_stop"}))

    state.finished = True
    return events
