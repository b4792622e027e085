"""
Model name mapping between Claude Code and Copilot.

Claude Code asks for dated Anthropic ids; Copilot knows its own short names.
Anything we don't recognise (GPT, Gemini, ...) passes through untouched since
Copilot serves several providers.
"""

import re
import time

MODEL_MAPPINGS = {
    "claude-opus-4-5-20250514": "claude-opus-4.5",
    "claude-sonnet-4-5-20250514": "claude-sonnet-4.5",
    "claude-haiku-4-5-20250514": "claude-haiku-4.5",
    "claude-sonnet-4-20250514": "claude-sonnet-4",
    "claude-3-7-sonnet-20250219": "claude-3.7-sonnet",
    "claude-3-5-sonnet-20241022": "claude-3.5-sonnet",
    "opus": "claude-opus-4.5",
    "sonnet": "claude-sonnet-4.5",
    "haiku": "claude-haiku-4.5",
}

AVAILABLE_MODELS = [
    {"id": "claude-opus-4-5-20250514", "copilot_model": "claude-opus-4.5", "display_name": "Claude Opus 4.5"},
    {"id": "claude-sonnet-4-5-20250514", "copilot_model": "claude-sonnet-4.5", "display_name": "Claude Sonnet 4.5"},
    {"id": "claude-haiku-4-5-20250514", "copilot_model": "claude-haiku-4.5", "display_name": "Claude Haiku 4.5"},
    {"id": "claude-sonnet-4-20250514", "copilot_model": "claude-sonnet-4", "display_name": "Claude Sonnet 4"},
    {"id": "claude-3-7-sonnet-20250219", "copilot_model": "claude-3.7-sonnet", "display_name": "Claude 3.7 Sonnet"},
    {"id": "claude-3-5-sonnet-20241022", "copilot_model": "claude-3.5-sonnet", "display_name": "Claude 3.5 Sonnet"},
]


def map_model(model: str) -> str:
    """Map a requested model name to the Copilot model name."""
    mapped = MODEL_MAPPINGS.get(model)
    if mapped:
        return mapped

    # Already a Copilot name
    if model in MODEL_MAPPINGS.values():
        return model

    # Requested name may carry an extra suffix, or be a truncated id
    if model:
        for key, value in MODEL_MAPPINGS.items():
            if model.startswith(key) or key.startswith(model):
                return value

    return model


def is_known_model(model: str) -> bool:
    if model in MODEL_MAPPINGS or model in MODEL_MAPPINGS.values():
        return True
    return model.lower().startswith("claude")


def describe_model(model: str, created: int | None = None) -> dict:
    """One entry of the /v1/models listing."""
    return {
        "id": model,
        "object": "model",
        "type": "model",
        "created": created if created is not None else int(time.time()),
        "owned_by": "anthropic",
        "display_name": display_name(model),
    }


def available_models() -> dict:
    """The /v1/models list envelope."""
    created = int(time.time())
    return {
        "object": "list",
        "data": [describe_model(m["id"], created) for m in AVAILABLE_MODELS],
    }


def display_name(model: str) -> str:
    for m in AVAILABLE_MODELS:
        if model in (m["id"], m["copilot_model"]):
            return m["display_name"]

    words = re.sub(r"(\d+)", r" \1 ", model.replace("-", " ")).split()
    return " ".join(word[:1].upper() + word[1:] for word in words)
