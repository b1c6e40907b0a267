from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP ``status_code`` and a stable
    ``error_code`` that clients can branch on:

    - validation_error (400)
    - wrong_auth_method (400)
    - federated_claims_incomplete (400)
    - unauthorized (401)
    - invalid_credentials (401)
    - invalid_federated_token (401)
    - refresh_reuse_or_invalid (401)
    - refresh_expired (401)
    - not_found (404)
    - already_exists (409)
    - server_error (500)
    - session_persist_failed (500)
    - service_unavailable (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class ServiceUnavailableError(ServiceError):
    """A dependency the call needs is unreachable (503)."""
    status_code = 503
    error_code = "service_unavailable"


# Authentication outcomes


class AlreadyExists(ConflictError):
    """An identity with this email is already registered."""
    error_code = "already_exists"


class IdentityNotFound(NotFoundError):
    """No identity is registered under this email."""


class WrongAuthMethod(ValidationError):
    """The identity has no password; it signs in through a federated provider."""
    error_code = "wrong_auth_method"


class InvalidCredentials(AuthenticationError):
    error_code = "invalid_credentials"


class InvalidFederatedToken(AuthenticationError):
    """Federated ID token failed signature, audience, issuer or expiry checks."""
    error_code = "invalid_federated_token"


class FederatedClaimsIncomplete(ValidationError):
    """Federated ID token is valid but lacks a verified email."""
    error_code = "federated_claims_incomplete"


class RefreshReuseOrInvalid(AuthenticationError):
    """Refresh token was never issued, already used, or revoked.

    These cases are deliberately indistinguishable to the caller.
    """
    error_code = "refresh_reuse_or_invalid"


class RefreshExpired(AuthenticationError):
    error_code = "refresh_expired"


class SessionPersistFailed(ServerError):
    """Tokens were generated but the session could not be recorded."""
    error_code = "session_persist_failed"


class InternalAuthError(ServerError):
    """Opaque failure for broken invariants between ledger and directory."""


class FederatedProviderUnavailable(ServiceUnavailableError):
    """The identity provider's signing keys could not be fetched."""


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "ServiceUnavailableError",
    "AlreadyExists",
    "IdentityNotFound",
    "WrongAuthMethod",
    "InvalidCredentials",
    "InvalidFederatedToken",
    "FederatedClaimsIncomplete",
    "RefreshReuseOrInvalid",
    "RefreshExpired",
    "SessionPersistFailed",
    "InternalAuthError",
    "FederatedProviderUnavailable",
]
