from __future__ import annotations

from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from projectflow.logging import get_correlation_id

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "invalid_grant",
    "invalid_scope",
    "unsupported_grant_type",
})

# RFC 6749 section 5.2 names for our internal error codes
OAUTH_ERROR_CODES = {
    "validation_error": "invalid_request",
    "not_found": "invalid_request",
    "conflict": "invalid_request",
    "invalid_grant": "invalid_grant",
    "invalid_scope": "invalid_scope",
    "unsupported_grant_type": "unsupported_grant_type",
    "unsupported_response_type": "unsupported_response_type",
    "unauthorized": "invalid_client",
    "rate_limited": "temporarily_unavailable",
    "server_error": "server_error",
}


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(f"unknown error code: {value}")
        return value


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


class OAuthErrorBody(BaseModel):
    """``{error, error_description}`` as returned by OAuth endpoints."""

    error: str
    error_description: Optional[str] = None

    @classmethod
    def from_code(cls, error_code: str, description: Optional[str]) -> "OAuthErrorBody":
        return cls(
            error=OAUTH_ERROR_CODES.get(error_code, "invalid_request"),
            error_description=description,
        )


class AuthorizationPendingBody(BaseModel):
    error: str = "authorization_pending"
    error_description: str
    verification_uri: str


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int
    scope: str


class RegisterClientRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    client_name: str = Field(default="unnamed client", min_length=1, max_length=200)
    redirect_uris: List[str] = Field(..., min_length=1, max_length=20)
    grant_types: Optional[List[str]] = None
    response_types: Optional[List[str]] = None
    token_endpoint_auth_method: Optional[str] = None
    scope: Optional[str] = None


class RegisterClientResponse(BaseModel):
    client_id: str
    client_id_issued_at: int
    client_name: str
    redirect_uris: List[str]
    grant_types: List[str]
    response_types: List[str]
    token_endpoint_auth_method: str


class AuthorizationServerMetadata(BaseModel):
    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    registration_endpoint: str
    revocation_endpoint: str
    response_types_supported: List[str] = ["code"]
    grant_types_supported: List[str] = ["authorization_code", "refresh_token"]
    code_challenge_methods_supported: List[str] = ["S256", "plain"]
    token_endpoint_auth_methods_supported: List[str] = ["none"]
    revocation_endpoint_auth_methods_supported: List[str] = ["none"]
    scopes_supported: List[str]


class ProtectedResourceMetadata(BaseModel):
    resource: str
    authorization_servers: List[str]
    scopes_supported: List[str]
    bearer_methods_supported: List[str] = ["header"]
    resource_name: str = "ProjectFlow protocol endpoint"
