"""
Telemetry setup for the relay.

Logfire for spans and structured events, with stdlib logging routed through
it so `logger.info(...)` calls show up next to the spans. Nothing leaves the
machine unless LOGFIRE_TOKEN is set.
"""

import logging
import os

import logfire
from opentelemetry import trace

LOG_LEVEL = os.environ.get("LOG_LEVEL", "info").upper()

_initialized = False


def init(service_name: str) -> None:
    """Configure logfire and logging once per process."""
    global _initialized
    if _initialized:
        return

    logfire.configure(
        service_name=service_name,
        send_to_logfire="if-token-present",
        console=False,
    )
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=[logging.StreamHandler(), logfire.LogfireLoggingHandler()],
    )
    _initialized = True


def get_tracer(name: str = "relay"):
    return trace.get_tracer(name)
