"""
Pydantic models for the relay.

Inbound Messages API requests, outbound message envelopes, credential
records, and the strict decode types for Copilot completion payloads.
"""

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag, ValidationError

from .errors import BackendProtocolError


# ---------------------------------------------------------------------------
# Content blocks
# ---------------------------------------------------------------------------


class TextBlock(BaseModel):
    """Plain text content."""
    type: Literal["text"] = "text"
    text: str


class ImageSource(BaseModel):
    type: Literal["base64", "url"]
    media_type: str | None = None
    data: str | None = None
    url: str | None = None


class ImageBlock(BaseModel):
    type: Literal["image"] = "image"
    source: ImageSource


class ToolUseBlock(BaseModel):
    """A tool call made by the assistant."""
    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


class ToolResultBlock(BaseModel):
    """The result of a tool call, sent back by the client."""
    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: "str | list[ContentBlock]" = ""
    is_error: bool = False


class UnknownBlock(BaseModel):
    """Any block type we don't understand yet. Kept, never interpreted."""
    model_config = ConfigDict(extra="allow")

    type: str


_KNOWN_BLOCKS = {"text", "image", "tool_use", "tool_result"}


def _block_kind(value: Any) -> str:
    if isinstance(value, dict):
        kind = value.get("type")
    else:
        kind = getattr(value, "type", None)
    return kind if kind in _KNOWN_BLOCKS else "unknown"


ContentBlock = Annotated[
    Union[
        Annotated[TextBlock, Tag("text")],
        Annotated[ImageBlock, Tag("image")],
        Annotated[ToolUseBlock, Tag("tool_use")],
        Annotated[ToolResultBlock, Tag("tool_result")],
        Annotated[UnknownBlock, Tag("unknown")],
    ],
    Discriminator(_block_kind),
]

ToolResultBlock.model_rebuild()


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class Message(BaseModel):
    """A single message in the conversation."""
    role: Literal["user", "assistant"]
    content: str | list[ContentBlock]


class Tool(BaseModel):
    name: str = Field(min_length=1, max_length=64)
    description: str | None = None
    input_schema: dict[str, Any]


class RequestMetadata(BaseModel):
    user_id: str | None = None


class MessageRequest(BaseModel):
    """Request body for POST /v1/messages."""
    model_config = ConfigDict(extra="ignore")

    model: str = Field(min_length=1)
    messages: list[Message] = Field(min_length=1)
    max_tokens: int = Field(gt=0)
    system: str | list[TextBlock] | None = None
    temperature: float | None = Field(default=None, ge=0, le=1)
    top_p: float | None = Field(default=None, ge=0, le=1)
    top_k: int | None = Field(default=None, gt=0)
    stop_sequences: list[str] | None = Field(default=None, max_length=4)
    stream: bool = False
    tools: list[Tool] | None = None
    tool_choice: str | dict[str, Any] | None = None
    metadata: RequestMetadata | None = None


class CountTokensRequest(BaseModel):
    """Request body for POST /v1/messages/count_tokens."""
    model_config = ConfigDict(extra="ignore")

    model: str | None = None
    messages: list[Message] = Field(min_length=1)
    system: str | list[TextBlock] | None = None


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


StopReason = Literal["end_turn", "max_tokens", "stop_sequence", "tool_use"]


class Usage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0


class MessageResponse(BaseModel):
    """Non-streaming response from POST /v1/messages."""
    id: str
    type: Literal["message"] = "message"
    role: Literal["assistant"] = "assistant"
    content: list[ContentBlock]
    model: str
    stop_reason: StopReason | None = "end_turn"
    stop_sequence: str | None = None
    usage: Usage = Field(default_factory=Usage)


class TokenCount(BaseModel):
    input_tokens: int


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


class Credential(BaseModel):
    """A downstream Copilot token. Replaced wholesale, never edited."""
    model_config = ConfigDict(frozen=True)

    value: str
    expires_at: int


class VerificationDescriptor(BaseModel):
    """What the user needs to finish the device flow in a browser."""
    model_config = ConfigDict(frozen=True)

    verification_uri: str
    user_code: str
    expires_in: int
    interval: int = 5
    status: str = "pending_verification"


# ---------------------------------------------------------------------------
# Copilot backend payloads
# ---------------------------------------------------------------------------


class BackendChoice(BaseModel):
    model_config = ConfigDict(extra="ignore")

    text: str
    index: int = 0
    finish_reason: str | None = None


class BackendUsage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    prompt_tokens: int | None = None
    completion_tokens: int | None = None


class BackendCompletion(BaseModel):
    """A completion result, or one streamed fragment of one."""
    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    choices: list[BackendChoice]
    usage: BackendUsage | None = None


def decode_completion(payload: Any) -> BackendCompletion:
    """Validate a decoded backend JSON body, raising BackendProtocolError if it doesn't fit."""
    try:
        return BackendCompletion.model_validate(payload)
    except ValidationError as e:
        raise BackendProtocolError(
            f"Malformed backend payload: {e.error_count()} validation error(s)"
        ) from e
