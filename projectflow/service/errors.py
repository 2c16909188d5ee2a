from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code. OAuth endpoints translate the error_code into the RFC 6749
    vocabulary; the rest of the API renders it inside the error envelope:
    - validation_error (400)
    - invalid_grant (400)
    - unauthorized (401)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - server_error (500)
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


class UnsupportedGrantTypeError(ValidationError):
    """Token endpoint received a grant_type it does not serve (400)."""
    error_code = "unsupported_grant_type"


class InvalidScopeError(ValidationError):
    """Requested scope is unknown or exceeds what was granted (400)."""
    error_code = "invalid_scope"


class InvalidGrantError(ServiceError):
    """Authorization code, PKCE verifier or refresh token rejected (400).

    Covers unknown, expired, already-used and mismatched grants alike so the
    response never tells an attacker which check failed.
    """
    status_code = 400
    error_code = "invalid_grant"


class AuthenticationError(ServiceError):
    """Bearer credential missing, malformed, expired or revoked (401)."""
    status_code = 401
    error_code = "unauthorized"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., a code_challenge already in flight (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Store or crypto failure; surfaced without internals (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "UnsupportedGrantTypeError",
    "InvalidScopeError",
    "InvalidGrantError",
    "AuthenticationError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
]
