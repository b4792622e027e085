"""
Relay FastAPI application.

Messages API endpoints backed by GitHub Copilot, plus the device-flow login
and usage endpoints.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import APIRouter, FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator

from . import __version__
from .errors import GatewayError, ModelNotFound, ValidationRejected
from .model_mapper import available_models, describe_model, is_known_model
from .models import (
    CountTokensRequest,
    MessageRequest,
    MessageResponse,
    TokenCount,
    VerificationDescriptor,
)
from .service import GatewayService
from .synthesizer import OutboundEvent
from .telemetry import get_tracer, init

# Initialize telemetry
init("relay")
logger = logging.getLogger(__name__)
tracer = get_tracer()

# Global service instance
relay = GatewayService()


def extract_parent_context(request: Request):
    """Extract OTel parent context from incoming request headers."""
    traceparent = request.headers.get("traceparent")
    if traceparent:
        carrier = {"traceparent": traceparent}
        return TraceContextTextMapPropagator().extract(carrier=carrier)
    return None


def session_id_for(request: Request, body: MessageRequest | None = None) -> str:
    """Who is calling, for the usage counters."""
    header = request.headers.get("x-session-id")
    if header:
        return header
    if body is not None and body.metadata and body.metadata.user_id:
        return body.metadata.user_id
    return request.client.host if request.client else "anonymous"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle."""
    logger.info(f"Relay {__version__} starting up (state is in-memory only)")
    yield
    await relay.close()
    logger.info("Relay shut down")


app = FastAPI(
    title="Relay",
    description="Messages API gateway for GitHub Copilot",
    version=__version__,
    lifespan=lifespan,
)


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = "; ".join(
        f"{'.'.join(str(p) for p in err['loc'][1:]) or 'body'}: {err['msg']}"
        for err in exc.errors()
    )
    logger.warning(f"Request validation failed on {request.url.path}: {details}")
    rejected = ValidationRejected(f"Request validation failed: {details}")
    return JSONResponse(status_code=rejected.status_code, content=rejected.to_payload())


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {
        "status": "ok",
        "version": __version__,
        "authenticated": relay.is_authenticated(),
        "active_sessions": len(relay.usage.sessions),
    }


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


auth = APIRouter(prefix="/auth")


@auth.post("/device", response_model=VerificationDescriptor)
async def begin_login() -> VerificationDescriptor:
    """
    Start (or resume) the GitHub device flow.

    The user opens verification_uri and types user_code; the caller then
    polls /auth/check every `interval` seconds.
    """
    return await relay.get_verification()


@auth.get("/check")
async def check_login():
    """One device-flow poll."""
    return {"authenticated": await relay.poll_authorization()}


@auth.get("/status")
async def login_status():
    state = relay.credentials.state
    credential = relay.credentials.current()
    return {
        "state": state.value,
        "authenticated": relay.is_authenticated(),
        "token_valid": relay.credentials.is_valid(),
        "expires_at": credential.expires_at if credential else None,
    }


@auth.post("/logout", status_code=204)
async def logout():
    relay.logout()
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Messages API
# ---------------------------------------------------------------------------


messages_api = APIRouter(prefix="/anthropic/v1")


@messages_api.get("/models")
async def list_models():
    return available_models()


@messages_api.get("/models/{model_id}")
async def get_model(model_id: str):
    if not is_known_model(model_id):
        raise ModelNotFound(f"Model not found: {model_id}")
    return describe_model(model_id)


@messages_api.post("/messages/count_tokens", response_model=TokenCount)
async def count_tokens(body: CountTokensRequest) -> TokenCount:
    """Heuristic token count for a conversation (~4 chars per token)."""
    return TokenCount(input_tokens=relay.count_tokens(body))


async def _sse(
    first: OutboundEvent, events: AsyncGenerator[OutboundEvent, None]
) -> AsyncGenerator[str, None]:
    try:
        yield first.encode()
        async for event in events:
            yield event.encode()
    finally:
        await events.aclose()


@messages_api.post("/messages", response_model=MessageResponse)
async def create_message(body: MessageRequest, request: Request):
    """
    Create a message, streamed or not.

    Streaming answers are text/event-stream in the Messages event grammar.
    If the stream fails before anything was produced, the error comes back
    as a plain JSON error response instead.
    """
    parent_context = extract_parent_context(request)
    session_id = session_id_for(request, body)

    with tracer.start_as_current_span("relay.messages", context=parent_context) as span:
        span.set_attribute("session_id", session_id[:8])
        span.set_attribute("model", body.model)
        span.set_attribute("stream", body.stream)
        span.set_attribute("message_count", len(body.messages))

        if not body.stream:
            return await relay.translate_completion(body, session_id)

        events = relay.translate_stream(body, session_id, is_disconnected=request.is_disconnected)
        try:
            first = await anext(events)
        except StopAsyncIteration:
            # A bridge always yields at least one event
            return Response(status_code=204)

        if first.error is not None:
            await events.aclose()
            raise first.error

    return StreamingResponse(
        _sse(first, events),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


# ---------------------------------------------------------------------------
# Usage
# ---------------------------------------------------------------------------


usage = APIRouter(prefix="/usage")


@usage.get("/summary")
async def usage_summary():
    return relay.usage.summary()


@usage.get("/details")
async def usage_details():
    return relay.usage.details()


@usage.post("/reset/{session_id}")
async def reset_usage(session_id: str):
    if not relay.usage.reset(session_id):
        return JSONResponse(
            status_code=404,
            content={"error": {"message": "Session ID not found", "code": "session_not_found"}},
        )
    logger.info(f"Usage reset for session: {session_id}")
    return {"success": True, "message": f"Usage reset for session: {session_id}"}


@usage.post("/reset-all")
async def reset_all_usage():
    relay.usage.reset_all()
    logger.info("All usage metrics reset")
    return {"success": True, "message": "All usage metrics reset"}


app.include_router(auth)
app.include_router(messages_api)
app.include_router(usage)


# For running directly with uvicorn
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=3000)
