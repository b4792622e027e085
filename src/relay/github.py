"""
GitHub client for the relay.

Device-flow calls against GitHub's OAuth endpoints, and the exchange of the
resulting GitHub token for a short-lived Copilot token. Each call is one
request; polling cadence belongs to the caller.
"""

import logging
import os
from dataclasses import dataclass

import httpx

from .errors import AuthCheckFailed, AuthInitiationFailed, CredentialExchangeFailed
from .models import Credential

logger = logging.getLogger(__name__)

GITHUB_CLIENT_ID = os.environ.get("GITHUB_CLIENT_ID", "Iv1.b507a08c87ecfe98")
GITHUB_DEVICE_CODE_URL = os.environ.get("GITHUB_DEVICE_CODE_URL", "https://github.com/login/device/code")
GITHUB_ACCESS_TOKEN_URL = os.environ.get(
    "GITHUB_ACCESS_TOKEN_URL", "https://github.com/login/oauth/access_token"
)
COPILOT_TOKEN_URL = os.environ.get(
    "COPILOT_TOKEN_URL", "https://api.github.com/copilot_internal/v2/token"
)

DEVICE_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:device_code"
DEFAULT_SCOPES = ("read:user",)

# Provider answers that mean "ask again later", not failure
PENDING_ERRORS = {"authorization_pending", "slow_down"}

EDITOR_HEADERS = {
    "Editor-Version": "Cursor-IDE/1.0.0",
    "Editor-Plugin-Version": "copilot-cursor/1.0.0",
}


@dataclass
class DeviceCode:
    """A device-code grant: the private code we poll with, plus what the user sees."""
    device_code: str
    user_code: str
    verification_uri: str
    expires_in: int
    interval: int


async def request_device_code(
    client: httpx.AsyncClient,
    client_id: str = GITHUB_CLIENT_ID,
    scopes: tuple[str, ...] = DEFAULT_SCOPES,
) -> DeviceCode:
    """
    Start a device authorization.

    Raises:
        AuthInitiationFailed: if GitHub can't be reached or returns no challenge
    """
    try:
        response = await client.post(
            GITHUB_DEVICE_CODE_URL,
            data={"client_id": client_id, "scope": " ".join(scopes)},
            headers={"Accept": "application/json"},
        )
        response.raise_for_status()
        data = response.json()
    except (httpx.HTTPError, ValueError) as e:
        logger.error(f"Device code request failed: {e}")
        raise AuthInitiationFailed(f"Failed to initiate GitHub authentication: {e}") from e

    try:
        return DeviceCode(
            device_code=data["device_code"],
            user_code=data["user_code"],
            verification_uri=data["verification_uri"],
            expires_in=int(data.get("expires_in", 900)),
            interval=int(data.get("interval", 5)),
        )
    except (KeyError, TypeError, ValueError) as e:
        logger.error(f"Device code response missing fields: {e}")
        raise AuthInitiationFailed("GitHub returned no verification challenge") from e


async def poll_access_token(
    client: httpx.AsyncClient,
    device_code: str,
    client_id: str = GITHUB_CLIENT_ID,
) -> str | None:
    """
    Check once whether the user has approved the device.

    Returns:
        The GitHub access token, or None while authorization is still pending

    Raises:
        AuthCheckFailed: on any other provider error; `.provider_error` holds
        GitHub's error code when there is one
    """
    try:
        response = await client.post(
            GITHUB_ACCESS_TOKEN_URL,
            data={
                "client_id": client_id,
                "device_code": device_code,
                "grant_type": DEVICE_GRANT_TYPE,
            },
            headers={"Accept": "application/json"},
        )
        response.raise_for_status()
        data = response.json()
    except (httpx.HTTPError, ValueError) as e:
        logger.error(f"Device flow check failed: {e}")
        raise AuthCheckFailed(f"Error checking device flow auth: {e}") from e

    token = data.get("access_token")
    if token:
        return token

    error = data.get("error")
    if error in PENDING_ERRORS:
        return None

    description = data.get("error_description") or error or "no token in response"
    logger.error(f"Device flow check rejected: {description}")
    raise AuthCheckFailed(f"GitHub authorization failed: {description}", provider_error=error)


async def exchange_copilot_token(client: httpx.AsyncClient, github_token: str) -> Credential:
    """
    Trade a GitHub token for a Copilot token.

    Raises:
        CredentialExchangeFailed: on transport errors, non-2xx, or a body
        without token/expires_at
    """
    try:
        response = await client.get(
            COPILOT_TOKEN_URL,
            headers={"Authorization": f"token {github_token}", **EDITOR_HEADERS},
        )
    except httpx.HTTPError as e:
        logger.error(f"Copilot token request failed: {e}")
        raise CredentialExchangeFailed(f"Failed to get Copilot token: {e}") from e

    if not response.is_success:
        logger.error(f"Copilot token endpoint returned {response.status_code}")
        raise CredentialExchangeFailed(
            f"Failed to get Copilot token: {response.status_code} {response.reason_phrase}"
        )

    try:
        data = response.json()
        return Credential(value=data["token"], expires_at=int(data["expires_at"]))
    except (ValueError, KeyError, TypeError) as e:
        logger.error(f"Copilot token response malformed: {e}")
        raise CredentialExchangeFailed("Copilot token response was malformed") from e
