"""
warden_errors.py — OAuth 2.0 error taxonomy for the Warden grant engine.

Every failure that reaches the protocol boundary is one of these. The
error codes are the RFC 6749 §5.2 set plus the RFC 8628 §3.5 device-flow
codes. Descriptions are safe to show to clients: no store identifiers,
no token values, no tracebacks.
"""

from typing import Any


class OAuth2Error(Exception):
    """Base class for errors returned at the token/device endpoints."""

    error_code = "invalid_request"
    status_code = 400
    default_description = "The request is invalid."

    def __init__(self, description: str | None = None):
        self.description = description or self.default_description
        super().__init__(f"{self.error_code}: {self.description}")

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.error_code, "error_description": self.description}


class InvalidRequest(OAuth2Error):
    error_code = "invalid_request"


class InvalidClient(OAuth2Error):
    error_code = "invalid_client"
    status_code = 401
    default_description = "Client authentication failed."


class InvalidGrant(OAuth2Error):
    """Expired, invalidated, replayed or mismatched grant.

    Callers pass no description on purpose: every grant check reports
    the same text so a client cannot tell which one failed.
    """

    error_code = "invalid_grant"
    default_description = "The provided authorization grant is invalid, expired or revoked."


class UnauthorizedClient(OAuth2Error):
    error_code = "unauthorized_client"
    default_description = "The client is not authorized to use this grant type."


class UnsupportedGrantType(OAuth2Error):
    error_code = "unsupported_grant_type"
    default_description = "The grant type is not supported."


class InvalidScope(OAuth2Error):
    error_code = "invalid_scope"
    default_description = "The requested scope is invalid or exceeds the granted scope."


class ServerError(OAuth2Error):
    error_code = "server_error"
    status_code = 500
    default_description = "The authorization server encountered an unexpected condition."


# ---------------------------------------------------------------------------
# Device flow (RFC 8628 §3.5): the session stays alive after these
# ---------------------------------------------------------------------------

class DeviceFlowError(OAuth2Error):
    pass


class AuthorizationPending(DeviceFlowError):
    error_code = "authorization_pending"
    default_description = "The user has not yet completed the authorization."


class SlowDown(DeviceFlowError):
    error_code = "slow_down"
    default_description = "Polling too frequently; increase the interval."


class AccessDenied(DeviceFlowError):
    error_code = "access_denied"
    default_description = "The user denied the authorization request."


class ExpiredToken(DeviceFlowError):
    error_code = "expired_token"
    default_description = "The device code has expired."


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class ConcurrentUpdateError(Exception):
    """Raised by a store when a commit loses a compare-and-commit race."""

    def __init__(self, authorization_id: str, expected: int, actual: int | None):
        self.authorization_id = authorization_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"authorization {authorization_id} changed concurrently "
            f"(expected version {expected}, found {actual})"
        )


class DuplicateTokenError(Exception):
    """Raised by a store when a token value is already held by another authorization."""

    def __init__(self, kind: str, authorization_id: str):
        self.kind = kind
        self.authorization_id = authorization_id
        super().__init__(f"{kind} value already belongs to authorization {authorization_id}")
