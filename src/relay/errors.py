"""
Typed failures for the gateway core.

Each error knows the HTTP status and the Messages API error type it maps to,
so routes (and the streaming bridge) can report it without string matching.
"""


class GatewayError(Exception):
    """Base class for every failure the core surfaces to its callers."""

    code = "gateway_error"
    status_code = 500
    error_type = "api_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_payload(self) -> dict:
        """Render as a Messages API error envelope."""
        return {
            "type": "error",
            "error": {
                "type": self.error_type,
                "message": self.message,
                "code": self.code,
            },
        }


class AuthInitiationFailed(GatewayError):
    code = "auth_initiation_failed"
    status_code = 502


class AuthCheckFailed(GatewayError):
    code = "auth_check_failed"
    status_code = 502

    def __init__(self, message: str = "", provider_error: str | None = None):
        super().__init__(message)
        self.provider_error = provider_error


class NoIdentityToken(GatewayError):
    code = "no_identity_token"
    status_code = 401
    error_type = "authentication_error"


class CredentialExchangeFailed(GatewayError):
    code = "credential_exchange_failed"
    status_code = 401
    error_type = "authentication_error"


class BackendConnectFailed(GatewayError):
    code = "backend_connect_failed"
    status_code = 502

    def __init__(self, message: str = "", backend_status: int | None = None):
        super().__init__(message)
        self.backend_status = backend_status


class BackendProtocolError(GatewayError):
    code = "backend_protocol_error"
    status_code = 502


class ValidationRejected(GatewayError):
    code = "validation_rejected"
    status_code = 400
    error_type = "invalid_request_error"


class ModelNotFound(GatewayError):
    code = "model_not_found"
    status_code = 404
    error_type = "not_found_error"
