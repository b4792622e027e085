"""
Credential lifecycle for the relay.

CredentialManager owns the GitHub device flow and the Copilot token that
every backend call presents. There is one manager per process. It runs no
timers: whoever drives the login calls poll_authorization() at their own
cadence, and translation calls go through ensure_valid().

State lives in three attributes, each replaced by a single assignment, so a
concurrent reader sees either the old value or the new one:

    _pending     device flow waiting for the user (AWAITING_VERIFICATION)
    _identity    GitHub token
    _credential  Copilot token (ACTIVE once both are set)
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable

import httpx

from . import github
from .errors import AuthCheckFailed, NoIdentityToken
from .models import Credential, VerificationDescriptor

logger = logging.getLogger(__name__)

# Tokens this close to expiry are treated as already expired
EXPIRY_SKEW_SECONDS = 60

# Provider errors that end the device flow for good
TERMINAL_FLOW_ERRORS = {"expired_token", "access_denied"}


class AuthState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AWAITING_VERIFICATION = "awaiting_verification"
    ACTIVE = "active"


@dataclass(frozen=True)
class _PendingFlow:
    device_code: str
    descriptor: VerificationDescriptor
    started_at: float

    def expired(self, now: float) -> bool:
        return now >= self.started_at + self.descriptor.expires_in


class CredentialManager:
    """Device-flow state machine plus the downstream Copilot credential."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        clock: Callable[[], float] = time.time,
        client_id: str = github.GITHUB_CLIENT_ID,
        scopes: tuple[str, ...] = github.DEFAULT_SCOPES,
    ):
        self._client = client
        self._clock = clock
        self._client_id = client_id
        self._scopes = scopes

        self._pending: _PendingFlow | None = None
        self._identity: str | None = None
        self._credential: Credential | None = None

        # Bumped by clear(); a refresh that started before a clear must not store its result
        self._generation = 0
        self._lock = asyncio.Lock()

    @property
    def state(self) -> AuthState:
        if self._identity and self._credential:
            return AuthState.ACTIVE
        if self._pending:
            return AuthState.AWAITING_VERIFICATION
        return AuthState.UNAUTHENTICATED

    @property
    def verification(self) -> VerificationDescriptor | None:
        """The descriptor of the device flow in progress, if it hasn't expired."""
        pending = self._pending
        if pending is None or pending.expired(self._clock()):
            return None
        return pending.descriptor

    @property
    def has_identity(self) -> bool:
        return self._identity is not None

    def current(self) -> Credential | None:
        return self._credential

    def is_valid(self) -> bool:
        """True if there is a credential and it won't expire within the skew window."""
        credential = self._credential
        if credential is None or not credential.value:
            return False
        return self._clock() < credential.expires_at - EXPIRY_SKEW_SECONDS

    def clear(self) -> None:
        """Forget everything and go back to UNAUTHENTICATED."""
        self._generation += 1
        self._pending = None
        self._identity = None
        self._credential = None
        logger.info("Authentication tokens cleared")

    async def begin_device_authorization(self) -> VerificationDescriptor:
        """
        Start a device flow and return what the user needs to approve it.

        Returns immediately; call poll_authorization() to find out when the
        user is done.
        """
        grant = await github.request_device_code(self._client, self._client_id, self._scopes)

        descriptor = VerificationDescriptor(
            verification_uri=grant.verification_uri,
            user_code=grant.user_code,
            expires_in=grant.expires_in,
            interval=grant.interval,
        )
        self._pending = _PendingFlow(
            device_code=grant.device_code,
            descriptor=descriptor,
            started_at=self._clock(),
        )
        logger.info(
            f"Device verification initiated: {descriptor.verification_uri} "
            f"(code {descriptor.user_code}, expires in {descriptor.expires_in}s)"
        )
        return descriptor

    async def poll_authorization(self) -> bool:
        """
        Check once whether the user finished the device flow.

        Returns:
            True once authenticated; False while still pending or if no flow
            is in progress

        Raises:
            AuthCheckFailed: if GitHub rejects the flow
            CredentialExchangeFailed: if the Copilot token can't be fetched
        """
        if self.state is AuthState.ACTIVE:
            return True

        # Approved earlier but the Copilot exchange failed; retry only that step
        if self._identity and self._credential is None:
            await self.refresh()
            return True

        pending = self._pending
        if pending is None:
            return False

        if pending.expired(self._clock()):
            logger.warning("Device flow expired before the user approved it")
            self._drop_pending(pending)
            return False

        try:
            token = await github.poll_access_token(self._client, pending.device_code, self._client_id)
        except AuthCheckFailed as e:
            if e.provider_error in TERMINAL_FLOW_ERRORS:
                self._drop_pending(pending)
            raise

        if token is None:
            return False

        self._identity = token
        self._drop_pending(pending)
        logger.info("Device flow approved, fetching Copilot token")

        await self.refresh()
        return True

    async def refresh(self) -> Credential:
        """
        Exchange the GitHub token for a fresh Copilot token.

        The stored credential is replaced only on success.

        Raises:
            NoIdentityToken: if nobody has logged in
            CredentialExchangeFailed: if the exchange fails
        """
        async with self._lock:
            return await self._exchange()

    async def ensure_valid(self) -> Credential:
        """Return a credential that is safe to send downstream, refreshing if needed."""
        credential = self._credential
        if credential is not None and self.is_valid():
            return credential

        async with self._lock:
            # Another caller may have refreshed while we waited
            credential = self._credential
            if credential is not None and self.is_valid():
                return credential
            return await self._exchange()

    async def _exchange(self) -> Credential:
        identity = self._identity
        if not identity:
            raise NoIdentityToken("GitHub token is required for refresh")

        generation = self._generation
        credential = await github.exchange_copilot_token(self._client, identity)

        if generation != self._generation:
            logger.warning("Session cleared during token refresh, discarding new token")
            raise NoIdentityToken("Session was cleared during refresh")

        self._credential = credential
        expires = datetime.fromtimestamp(credential.expires_at, tz=timezone.utc).isoformat()
        logger.info(f"Copilot token refreshed (expires {expires})")
        return credential

    def _drop_pending(self, pending: _PendingFlow) -> None:
        # Only drop the flow we were looking at; a newer one may have started meanwhile
        if self._pending is pending:
            self._pending = None
