"""Copilot client for the relay.

Builds completion requests for Copilot's prompt/suffix endpoint and sends them,
either as one POST or as a streaming connection.

Spans carry gen_ai.* semantic conventions so calls render in the Logfire
Model Run panel:
1. Inside a FastAPI request the attributes attach to the request span.
2. Anywhere else a manual logfire.span() is opened for them.
"""

import hashlib
import json
import logging
import os
import uuid
from contextlib import asynccontextmanager

import httpx
import logfire
from opentelemetry import trace

from .errors import BackendConnectFailed, BackendProtocolError
from .model_mapper import map_model
from .models import MessageRequest
from .normalizer import detect_language_hint

logger = logging.getLogger(__name__)

COPILOT_COMPLETIONS_URL = os.environ.get(
    "COPILOT_COMPLETIONS_URL",
    "https://copilot-proxy.githubusercontent.com/v1/engines/copilot-codex/completions",
)

DEFAULT_TEMPERATURE = 0.7
DEFAULT_TOP_P = 1
# Canonical turns are separated by a blank line before the next role prefix
DEFAULT_STOP = ["\n\nUser:"]

MACHINE_ID = hashlib.sha256(str(uuid.getnode()).encode()).hexdigest()


def build_headers(token: str) -> dict[str, str]:
    return {
        "Content-Type": "application/json",
        "Authorization": f"Bearer {token}",
        "X-Request-Id": str(uuid.uuid4()),
        "Machine-Id": MACHINE_ID,
        "User-Agent": "GitHubCopilotChat/0.12.0",
        "Editor-Version": "Cursor-IDE/1.0.0",
        "Editor-Plugin-Version": "copilot-cursor/1.0.0",
        "Openai-Organization": "github-copilot",
        "Openai-Intent": "copilot-ghost",
    }


def build_payload(request: MessageRequest, prompt: str, stream: bool) -> dict:
    """Copilot completion body for a Messages request and its rendered prompt."""
    return {
        "model": map_model(request.model),
        "prompt": prompt,
        "suffix": "",
        "max_tokens": request.max_tokens,
        "temperature": request.temperature if request.temperature is not None else DEFAULT_TEMPERATURE,
        "top_p": request.top_p if request.top_p is not None else DEFAULT_TOP_P,
        "n": 1,
        "stream": stream,
        "stop": request.stop_sequences or DEFAULT_STOP,
        "extra": {
            "language": detect_language_hint(request.messages),
            "next_indent": 0,
            "trim_by_indentation": True,
        },
    }


@asynccontextmanager
async def _span_context(operation: str, payload: dict):
    """
    Context manager that either attaches to an existing span or creates a new one.

    If there's an active recording span (FastAPI request), we attach attributes to it.
    If not, we create a manual logfire.span() with the gen_ai.* attributes.
    """
    current_span = trace.get_current_span()

    prompt = payload["prompt"]
    request_attrs = {
        "gen_ai.operation.name": "chat",  # MUST be "chat" for Model Run panel
        "relay.operation": operation,
        "gen_ai.provider.name": "github-copilot",
        "gen_ai.request.model": payload["model"],
        "gen_ai.request.max_tokens": payload["max_tokens"],
        "gen_ai.request.temperature": payload["temperature"],
        "gen_ai.input.messages": json.dumps([{
            "role": "user",
            "parts": [{"type": "text", "content": prompt[-1000:] if len(prompt) > 1000 else prompt}],
        }]),
    }

    if current_span.is_recording():
        for key, value in request_attrs.items():
            current_span.set_attribute(key, value)
        yield current_span
    else:
        with logfire.span(f"copilot:{operation}", **request_attrs) as span:
            yield span


def _set_response_attrs(span, model: str, prompt_tokens: int, completion_tokens: int, finish_reason: str):
    """Set gen_ai.* response attributes on a span."""
    span.set_attribute("gen_ai.usage.input_tokens", prompt_tokens)
    span.set_attribute("gen_ai.usage.output_tokens", completion_tokens)
    span.set_attribute("gen_ai.response.model", model)
    span.set_attribute("gen_ai.response.finish_reasons", [finish_reason])
    span.set_attribute("gen_ai.output.type", "text")


def _summarize(result) -> tuple[int, int, str]:
    """Token counts and first finish reason, for telemetry only. Never raises."""
    if not isinstance(result, dict):
        return 0, 0, "unknown"
    usage = result.get("usage")
    usage = usage if isinstance(usage, dict) else {}
    choices = result.get("choices")
    first = choices[0] if isinstance(choices, list) and choices and isinstance(choices[0], dict) else {}
    return (
        usage.get("prompt_tokens") or 0,
        usage.get("completion_tokens") or 0,
        first.get("finish_reason") or result.get("stop_reason") or "unknown",
    )


async def complete(client: httpx.AsyncClient, payload: dict, token: str) -> dict:
    """
    One non-streaming completion.

    Returns:
        The decoded JSON body, untranslated

    Raises:
        BackendConnectFailed: on transport errors or a non-2xx answer
        BackendProtocolError: if the body isn't JSON
    """
    async with _span_context("complete", payload) as span:
        try:
            response = await client.post(
                COPILOT_COMPLETIONS_URL,
                json={**payload, "stream": False},
                headers=build_headers(token),
            )
        except httpx.HTTPError as e:
            logger.error(f"Copilot request failed: {e}")
            logfire.error("Copilot request failed", error=str(e))
            raise BackendConnectFailed(f"Copilot API unreachable: {e}") from e

        if not response.is_success:
            logger.error(f"Copilot API error: {response.status_code} {response.text[:500]}")
            raise BackendConnectFailed(
                f"Copilot API error: {response.status_code} {response.reason_phrase}",
                backend_status=response.status_code,
            )

        try:
            result = response.json()
        except ValueError as e:
            raise BackendProtocolError("Copilot returned a non-JSON body") from e

        prompt_tokens, completion_tokens, finish_reason = _summarize(result)
        _set_response_attrs(span, payload["model"], prompt_tokens, completion_tokens, finish_reason)

        logfire.info("Copilot call complete", model=payload["model"],
                     input_tokens=prompt_tokens, output_tokens=completion_tokens)
        return result


@asynccontextmanager
async def open_stream(client: httpx.AsyncClient, payload: dict, token: str):
    """
    Open a streaming completion and yield the live response.

    The backend connection is released when the context exits, including on
    cancellation.

    Raises:
        BackendConnectFailed: if the backend answers non-2xx
        httpx.HTTPError: on transport failures (left to the caller)
    """
    async with _span_context("stream", payload):
        async with client.stream(
            "POST",
            COPILOT_COMPLETIONS_URL,
            json={**payload, "stream": True},
            headers=build_headers(token),
        ) as response:
            if not response.is_success:
                body = await response.aread()
                logger.error(f"Stream connection error: {response.status_code} {body[:500]!r}")
                raise BackendConnectFailed(
                    f"Stream connection error: {response.status_code} {response.reason_phrase}",
                    backend_status=response.status_code,
                )
            yield response
