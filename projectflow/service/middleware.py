from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from projectflow.logging import get_logger
from projectflow.service.errors import ServiceError
from projectflow.service.tokens import TokenClaims, TokenService
from projectflow.storage.errors import StorageError

logger = get_logger(__name__)


@dataclass(frozen=True)
class AuthenticationContext:
    user_id: str
    role: str
    email: Optional[str] = None
    client_id: Optional[str] = None
    scope: str = ""
    token_kind: str = "opaque"

    @classmethod
    def from_claims(cls, claims: TokenClaims) -> "AuthenticationContext":
        return cls(
            user_id=claims.subject,
            role=claims.role,
            email=claims.email,
            client_id=claims.client_id,
            scope=claims.scope,
            token_kind=claims.token_kind,
        )

    @property
    def scopes(self) -> frozenset[str]:
        return frozenset(self.scope.split())


def extract_bearer(header: Optional[str]) -> Optional[str]:
    """Return the credential of a ``Bearer`` authorization header, else None."""
    if not header:
        return None
    scheme, _, credential = header.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    credential = credential.strip()
    if not credential or " " in credential:
        return None
    return credential


async def extract_context(
    authorization: Optional[str],
    expected_audience: str,
    tokens: TokenService,
) -> Optional[AuthenticationContext]:
    """Resolve the caller behind an ``Authorization`` header.

    Never raises for bad credentials: an absent, malformed, expired or
    revoked token yields None and the dispatcher decides whether the method
    needed one.
    """
    token = extract_bearer(authorization)
    if token is None:
        return None
    try:
        claims = await tokens.verify(token, expected_audience)
    except ServiceError as exc:
        logger.debug("bearer_rejected", reason=exc.message)
        return None
    except StorageError as exc:
        logger.warning("bearer_lookup_failed", error=exc.message)
        return None
    return AuthenticationContext.from_claims(claims)
