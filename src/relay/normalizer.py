"""
Message normalization.

Turns Messages API conversations into the plain-text prompt Copilot's
completion endpoint expects. Everything here is pure and total: bad content
degrades to an empty string instead of raising.
"""

import math
import re
from dataclasses import dataclass
from typing import Any

from .models import TextBlock

DEFAULT_LANGUAGE = "javascript"

EXTENSION_LANGUAGES = {
    "js": "javascript",
    "ts": "typescript",
    "py": "python",
    "java": "java",
    "c": "c",
    "cpp": "cpp",
    "cs": "csharp",
    "go": "go",
    "rb": "ruby",
    "php": "php",
    "html": "html",
    "css": "css",
    "json": "json",
    "md": "markdown",
}

_FENCE_RE = re.compile(r"```(\w+)")
_EXTENSION_RE = re.compile(r"\.([a-zA-Z0-9]+)(?:\s|\"|'|$|\?|!|,|\.)")

_ROLE_PREFIXES = {
    "user": "User: ",
    "assistant": "Assistant: ",
}


@dataclass(frozen=True)
class Turn:
    """One role-tagged piece of the prompt."""
    role: str  # "system", "user" or "assistant"
    text: str


@dataclass(frozen=True)
class CanonicalPrompt:
    """The pivot between the two wire formats."""
    turns: tuple[Turn, ...]
    open_turn: bool = False  # trailing "Assistant: " asking for a continuation

    def render(self) -> str:
        parts = []
        for turn in self.turns:
            prefix = _ROLE_PREFIXES.get(turn.role, "")
            parts.append(f"{prefix}{turn.text}\n\n")
        if self.open_turn:
            parts.append(_ROLE_PREFIXES["assistant"])
        return "".join(parts)


def _get(item: Any, name: str) -> Any:
    if isinstance(item, dict):
        return item.get(name)
    return getattr(item, name, None)


def extract_text(content: Any) -> str:
    """
    Project message content down to its text.

    Strings pass through. For a block list, only text blocks count; tool
    calls, tool results, images and unknown block types are dropped.
    """
    if isinstance(content, str):
        return content
    if not isinstance(content, (list, tuple)):
        return ""

    texts = []
    for block in content:
        if isinstance(block, TextBlock):
            texts.append(block.text)
        elif isinstance(block, dict) and block.get("type") == "text":
            text = block.get("text")
            if isinstance(text, str):
                texts.append(text)
    return "\n".join(texts)


def to_canonical(messages: Any, system_prompt: Any = None) -> CanonicalPrompt:
    """
    Build the canonical prompt for a conversation.

    Args:
        messages: Message models or plain {"role", "content"} dicts
        system_prompt: Optional system prompt, string or text blocks

    Returns:
        CanonicalPrompt ending in an open assistant turn when the user
        spoke last
    """
    turns: list[Turn] = []

    system_text = extract_text(system_prompt)
    if system_text:
        turns.append(Turn("system", system_text))

    messages = list(messages) if isinstance(messages, (list, tuple)) else []
    for message in messages:
        role = _get(message, "role")
        if role not in _ROLE_PREFIXES:
            continue
        text = extract_text(_get(message, "content"))
        if text:
            turns.append(Turn(role, text))

    open_turn = bool(messages) and _get(messages[-1], "role") == "user"
    if messages and not turns and not open_turn:
        open_turn = True

    return CanonicalPrompt(turns=tuple(turns), open_turn=open_turn)


def detect_language_hint(messages: Any) -> str:
    """Guess the language the user is working in, for Copilot's `extra.language` hint."""
    if not isinstance(messages, (list, tuple)):
        return DEFAULT_LANGUAGE

    last_user = next((m for m in reversed(messages) if _get(m, "role") == "user"), None)
    if last_user is None:
        return DEFAULT_LANGUAGE

    content = extract_text(_get(last_user, "content"))
    if not content:
        return DEFAULT_LANGUAGE

    fence = _FENCE_RE.search(content)
    if fence:
        return fence.group(1).lower()

    extension = _EXTENSION_RE.search(content)
    if extension:
        return EXTENSION_LANGUAGES.get(extension.group(1).lower(), DEFAULT_LANGUAGE)

    return DEFAULT_LANGUAGE


def estimate_tokens(text: str) -> int:
    """Rough token count (~4 chars/token). Never meant to be exact."""
    if not text:
        return 0
    return math.ceil(len(text) / 4)
