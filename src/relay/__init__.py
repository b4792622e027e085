# Relay - Messages API gateway for GitHub Copilot
#
# v0.1.0
# - /anthropic/v1/messages translated to Copilot completions (whole and streamed)
# - GitHub device-flow login under /auth
# - per-session usage counters under /usage

__version__ = "0.1.0"

from .app import app
from .service import GatewayService
from .models import (
    MessageRequest,
    MessageResponse,
    CountTokensRequest,
    Credential,
    VerificationDescriptor,
)

__all__ = [
    "app",
    "GatewayService",
    "MessageRequest",
    "MessageResponse",
    "CountTokensRequest",
    "Credential",
    "VerificationDescriptor",
]
