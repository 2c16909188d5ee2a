from __future__ import annotations

import secrets
from datetime import datetime
from typing import Callable, Optional, Protocol
from urllib.parse import urlparse

from projectflow.config import Settings
from projectflow.logging import get_logger
from projectflow.service import pkce
from projectflow.service.errors import (
    ConflictError,
    InvalidScopeError,
    NotFoundError,
    ValidationError,
)
from projectflow.storage.models import AuthorizationCode, PendingAuthorizationRequest, utcnow

logger = get_logger(__name__)

# 32 random bytes -> 256 bits of entropy per code
CODE_ENTROPY_BYTES = 32

_FORBIDDEN_REDIRECT_SCHEMES = {"javascript", "data", "file", "vbscript"}


class PendingRequestStore(Protocol):
    def create_pending_request(
        self, request: PendingAuthorizationRequest, *, now: datetime
    ) -> tuple[PendingAuthorizationRequest, bool]: ...

    def get_pending_request(
        self, code_challenge: str
    ) -> Optional[PendingAuthorizationRequest]: ...

    def complete_pending_request(
        self,
        code_challenge: str,
        *,
        code: str,
        user_id: str,
        now: datetime,
        code_ttl_seconds: int,
    ) -> Optional[AuthorizationCode]: ...

    def rebind_pending_request(
        self, request_id: str, *, scope: str, state: Optional[str], now: datetime
    ) -> Optional[PendingAuthorizationRequest]: ...

    def delete_pending_for_code(self, code: str) -> int: ...

    def delete_expired_pending(self, now: datetime) -> int: ...


def validate_redirect_uri(redirect_uri: Optional[str]) -> str:
    """Return ``redirect_uri`` if it is an absolute URI usable as a redirect."""
    if not redirect_uri or not redirect_uri.strip():
        raise ValidationError("redirect_uri is required", detail={"field": "redirect_uri"})
    try:
        parsed = urlparse(redirect_uri)
    except ValueError as exc:
        raise ValidationError(
            "redirect_uri is not a valid URI", detail={"field": "redirect_uri"}
        ) from exc
    if not parsed.scheme or not parsed.netloc:
        raise ValidationError(
            "redirect_uri must be an absolute URI", detail={"field": "redirect_uri"}
        )
    if parsed.scheme.lower() in _FORBIDDEN_REDIRECT_SCHEMES:
        raise ValidationError(
            "redirect_uri scheme not allowed", detail={"field": "redirect_uri"}
        )
    if parsed.fragment:
        raise ValidationError(
            "redirect_uri must not contain a fragment", detail={"field": "redirect_uri"}
        )
    return redirect_uri


def normalize_scope(scope: Optional[str], settings: Settings) -> str:
    """Collapse whitespace, drop duplicates and reject scopes we do not serve."""
    requested = (scope or "").split()
    if not requested:
        return settings.default_scope
    unknown = [s for s in requested if s not in settings.supported_scopes]
    if unknown:
        raise InvalidScopeError(
            "requested scope is not supported", detail={"unsupported": unknown}
        )
    return " ".join(dict.fromkeys(requested))


class PendingRequestService:
    """Begins, completes and sweeps in-flight authorization attempts.

    Attempts are keyed by their PKCE challenge, so any number of agents can
    be mid-flow at once and any server process can resolve any of them.
    """

    def __init__(
        self,
        store: PendingRequestStore,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock

    def begin(
        self,
        client_id: Optional[str],
        redirect_uri: Optional[str],
        code_challenge: Optional[str],
        code_challenge_method: Optional[str],
        scope: Optional[str] = None,
        state: Optional[str] = None,
    ) -> PendingAuthorizationRequest:
        if not client_id or not client_id.strip():
            raise ValidationError("client_id is required", detail={"field": "client_id"})
        if len(client_id) > 255:
            raise ValidationError("client_id is too long", detail={"field": "client_id"})
        redirect_uri = validate_redirect_uri(redirect_uri)
        method = code_challenge_method
        if method not in pkce.SUPPORTED_METHODS:
            raise ValidationError(
                "code_challenge_method must be S256 or plain",
                detail={"field": "code_challenge_method"},
            )
        if not code_challenge:
            raise ValidationError(
                "code_challenge is required", detail={"field": "code_challenge"}
            )
        if not pkce.is_valid_challenge(code_challenge, method):
            raise ValidationError(
                "code_challenge is malformed", detail={"field": "code_challenge"}
            )
        if state is not None and len(state) > 1024:
            raise ValidationError("state is too long", detail={"field": "state"})
        normalized_scope = normalize_scope(scope, self.settings)

        now = self._clock()
        candidate = PendingAuthorizationRequest.new(
            client_id,
            redirect_uri,
            code_challenge,
            method,
            normalized_scope,
            state,
            now=now,
            ttl_seconds=self.settings.pending_request_ttl_seconds,
        )
        stored, created = self.store.create_pending_request(candidate, now=now)
        if not created:
            if (
                stored.client_id != client_id
                or stored.redirect_uri != redirect_uri
                or stored.code_challenge_method != method
            ):
                logger.warning(
                    "pending_request_challenge_conflict",
                    client_id=client_id,
                    existing_client_id=stored.client_id,
                )
                raise ConflictError(
                    "code_challenge is already in use by another authorization request",
                    detail={"field": "code_challenge"},
                )
            if stored.scope != normalized_scope or stored.state != state:
                # The retry carries the state the client will check on the redirect
                rebound = self.store.rebind_pending_request(
                    stored.id, scope=normalized_scope, state=state, now=now
                )
                if rebound is None:
                    raise ConflictError(
                        "authorization request for this challenge has already completed",
                        detail={"field": "code_challenge"},
                    )
                stored = rebound
            logger.info("pending_request_resumed", request_id=stored.id, client_id=client_id)
        else:
            logger.info(
                "pending_request_created",
                request_id=stored.id,
                client_id=client_id,
                method=method,
            )
        return stored

    def complete(self, code_challenge: str, user_id: str) -> AuthorizationCode:
        """Issue the authorization code for the attempt holding ``code_challenge``."""
        if not user_id:
            raise ValidationError("user_id is required", detail={"field": "user_id"})
        issued = self.store.complete_pending_request(
            code_challenge,
            code=secrets.token_urlsafe(CODE_ENTROPY_BYTES),
            user_id=user_id,
            now=self._clock(),
            code_ttl_seconds=self.settings.authorization_code_ttl_seconds,
        )
        if issued is None:
            raise NotFoundError("no pending authorization request for this challenge")
        logger.info(
            "authorization_code_issued",
            client_id=issued.client_id,
            user_id=user_id,
            expires_at=issued.expires_at.isoformat(),
        )
        return issued

    def sweep(self) -> int:
        removed = self.store.delete_expired_pending(self._clock())
        if removed:
            logger.info("pending_requests_swept", removed=removed)
        return removed
