from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Protocol

from projectflow.logging import get_logger
from projectflow.service import pkce
from projectflow.service.errors import InvalidGrantError
from projectflow.storage.models import AuthorizationCode, utcnow

logger = get_logger(__name__)


class CodeStore(Protocol):
    def consume_authorization_code(
        self, code: str, *, now: datetime
    ) -> Optional[AuthorizationCode]: ...

    def delete_pending_for_code(self, code: str) -> int: ...

    def delete_expired_codes(self, now: datetime) -> int: ...


@dataclass(frozen=True)
class RedeemedGrant:
    user_id: str
    client_id: str
    scope: str


class AuthorizationCodeService:
    """Single-use redemption of authorization codes at the token endpoint."""

    def __init__(
        self, store: CodeStore, *, clock: Callable[[], datetime] = utcnow
    ) -> None:
        self.store = store
        self._clock = clock

    def redeem(
        self,
        code: Optional[str],
        client_id: Optional[str],
        redirect_uri: Optional[str],
        code_verifier: Optional[str],
    ) -> RedeemedGrant:
        """Exchange ``code`` for the identity and scope it was issued to.

        The store marks the code used in the same statement that reads it,
        before any binding check runs. A concurrent second redemption
        therefore finds ``used_at`` already set, and a code presented with
        the wrong client, redirect URI or verifier is burned rather than left
        open for another guess.
        """
        if not code:
            raise InvalidGrantError("authorization code is required")
        issued = self.store.consume_authorization_code(code, now=self._clock())
        if issued is None:
            logger.warning("code_redeem_failed", reason="unknown_used_or_expired")
            raise InvalidGrantError("authorization code is invalid, expired or already used")

        if client_id != issued.client_id:
            logger.warning(
                "code_redeem_failed",
                reason="client_mismatch",
                client_id=client_id,
                expected_client_id=issued.client_id,
            )
            raise InvalidGrantError("authorization code was issued to another client")
        if redirect_uri != issued.redirect_uri:
            logger.warning("code_redeem_failed", reason="redirect_mismatch", client_id=client_id)
            raise InvalidGrantError("redirect_uri does not match the authorization request")
        if not code_verifier or not pkce.verify(
            code_verifier, issued.code_challenge, issued.code_challenge_method
        ):
            logger.warning("code_redeem_failed", reason="pkce_mismatch", client_id=client_id)
            raise InvalidGrantError("code_verifier does not match the code_challenge")

        self.store.delete_pending_for_code(code)
        logger.info("code_redeemed", client_id=client_id, user_id=issued.user_id)
        return RedeemedGrant(
            user_id=issued.user_id, client_id=issued.client_id, scope=issued.scope
        )

    def sweep(self) -> int:
        removed = self.store.delete_expired_codes(self._clock())
        if removed:
            logger.info("authorization_codes_swept", removed=removed)
        return removed
