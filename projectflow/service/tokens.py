from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Protocol, Sequence

from projectflow.config import Settings
from projectflow.logging import get_logger
from projectflow.service.errors import AuthenticationError, InvalidGrantError
from projectflow.storage.models import OAuthToken, utcnow
from projectflow.storage.redis_cache import CacheBackend

logger = get_logger(__name__)

OPAQUE_TOKEN_BYTES = 32
TOKEN_TYPE_ACCESS = "access"
TOKEN_TYPE_REFRESH = "refresh"
DEFAULT_ROLE = "authenticated"


class TokenStore(Protocol):
    def save_tokens(self, tokens: Sequence[OAuthToken]) -> None: ...

    def get_token(self, token_hash: str) -> Optional[OAuthToken]: ...

    def consume_refresh_token(
        self, token_hash: str, *, now: datetime
    ) -> Optional[OAuthToken]: ...

    def revoke_token(self, token_hash: str, *, now: datetime) -> Optional[OAuthToken]: ...

    def revoke_token_pair(self, pair_id: str, *, now: datetime) -> int: ...

    def delete_stale_tokens(self, cutoff: datetime) -> int: ...


@dataclass(frozen=True)
class TokenClaims:
    """Claims recomputed from a verified bearer token; never persisted."""

    subject: str
    audience: str
    role: str
    email: Optional[str]
    issued_at: Optional[datetime]
    expires_at: datetime
    client_id: Optional[str] = None
    scope: str = ""
    token_kind: str = "opaque"
    jti: Optional[str] = None


@dataclass(frozen=True)
class IssuedTokens:
    access_token: str
    refresh_token: str
    expires_in: int
    scope: str
    token_type: str = "Bearer"

    def as_response(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
            "scope": self.scope,
        }


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def looks_like_jwt(token: str) -> bool:
    """Three non-empty dot-separated segments; opaque tokens never contain a dot."""
    parts = token.split(".")
    return len(parts) == 3 and all(parts)


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _from_timestamp(value: Any) -> Optional[datetime]:
    try:
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


class IdentityTokenCodec:
    """HS256 JWTs shared with the upstream identity provider.

    Verification is self-contained: header, signature, issuer, audience and
    expiry are all checked from the token and the shared secret alone.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: Optional[str] = None,
        leeway: timedelta = timedelta(0),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if not secret:
            raise ValueError("identity token secret must not be empty")
        self._secret = secret.encode("utf-8")
        self.issuer = issuer
        self._leeway = leeway
        self._clock = clock

    def _sign(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(self._secret, signing_input.encode("utf-8"), hashlib.sha256).digest()
        )

    def encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def signed_payload(self, token: str) -> dict[str, Any]:
        """Return the payload once header and signature check out; claims are not checked."""
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError as exc:
            raise AuthenticationError("malformed token") from exc

        # Pin the algorithm; "none" and RS/HS confusion are rejected here
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_header_decode_failed")
            raise AuthenticationError("malformed token") from exc
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise AuthenticationError("unsupported token algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode("ascii"), sig_b64.encode("utf-8")):
            raise AuthenticationError("token signature mismatch")
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise AuthenticationError("malformed token") from exc
        if not isinstance(payload, dict):
            raise AuthenticationError("malformed token")
        return payload

    def decode(self, token: str, *, audience: str) -> dict[str, Any]:
        """Return the verified payload or raise AuthenticationError."""
        payload = self.signed_payload(token)
        if self.issuer and payload.get("iss") != self.issuer:
            raise AuthenticationError("token issuer mismatch")
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == audience
        elif isinstance(aud, list):
            valid_aud = audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            raise AuthenticationError("token audience mismatch")
        exp = _from_timestamp(payload.get("exp"))
        if exp is None:
            raise AuthenticationError("token has no expiry")
        if exp <= self._clock() - self._leeway:
            raise AuthenticationError("token expired")
        if not payload.get("sub"):
            raise AuthenticationError("token has no subject")
        return payload


class TokenService:
    """Issues, verifies, rotates and revokes bearer tokens.

    Two shapes reach ``verify``. Identity JWTs minted by the upstream
    provider are checked locally against the shared secret. Opaque tokens
    minted here are looked up by their SHA-256 digest, which is the only
    form the store ever sees.
    """

    def __init__(
        self,
        store: TokenStore,
        settings: Settings,
        *,
        cache: Optional[CacheBackend] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self.cache = cache
        self._clock = clock
        self.identity = IdentityTokenCodec(
            settings.identity_jwt_secret or "",
            issuer=settings.identity_jwt_issuer,
            leeway=timedelta(seconds=settings.identity_jwt_leeway_seconds),
            clock=clock,
        )

    def issue_tokens(
        self,
        user_id: str,
        client_id: str,
        scope: str,
        audience: Optional[str] = None,
    ) -> IssuedTokens:
        """Mint an access token and its paired refresh token."""
        now = self._clock()
        audience = audience or self.settings.resource_audience
        access_value = secrets.token_urlsafe(OPAQUE_TOKEN_BYTES)
        refresh_value = secrets.token_urlsafe(OPAQUE_TOKEN_BYTES)
        pair_id = str(uuid.uuid4())
        access_ttl = self.settings.access_token_ttl_seconds
        records = [
            OAuthToken(
                token_hash=hash_token(access_value),
                user_id=user_id,
                client_id=client_id,
                scope=scope,
                token_type=TOKEN_TYPE_ACCESS,
                audience=audience,
                pair_id=pair_id,
                created_at=now,
                expires_at=now + timedelta(seconds=access_ttl),
            ),
            OAuthToken(
                token_hash=hash_token(refresh_value),
                user_id=user_id,
                client_id=client_id,
                scope=scope,
                token_type=TOKEN_TYPE_REFRESH,
                audience=audience,
                pair_id=pair_id,
                created_at=now,
                expires_at=now + timedelta(days=self.settings.refresh_token_ttl_days),
            ),
        ]
        self.store.save_tokens(records)
        logger.info("tokens_issued", user_id=user_id, client_id=client_id, pair_id=pair_id)
        return IssuedTokens(
            access_token=access_value,
            refresh_token=refresh_value,
            expires_in=access_ttl,
            scope=scope,
        )

    async def verify(self, token: str, expected_audience: str) -> TokenClaims:
        if not token or not isinstance(token, str):
            raise AuthenticationError("missing token")
        if looks_like_jwt(token):
            return await self._verify_identity_token(token, expected_audience)
        return self._verify_opaque_token(token, expected_audience)

    async def _verify_identity_token(self, token: str, expected_audience: str) -> TokenClaims:
        payload = self.identity.decode(token, audience=expected_audience)
        jti = payload.get("jti")
        if jti and self.cache is not None:
            try:
                denied = await self.cache.is_token_denylisted(str(jti))
            except Exception as exc:
                # Fail closed: an unreachable denylist cannot vouch for the token
                logger.warning("identity_denylist_check_failed", error=str(exc))
                raise AuthenticationError("token revocation status unavailable") from exc
            if denied:
                raise AuthenticationError("token has been revoked")
        return TokenClaims(
            subject=str(payload["sub"]),
            audience=expected_audience,
            role=str(payload.get("role") or DEFAULT_ROLE),
            email=payload.get("email"),
            issued_at=_from_timestamp(payload.get("iat")),
            expires_at=_from_timestamp(payload["exp"]),
            client_id=payload.get("client_id"),
            scope=str(payload.get("scope") or ""),
            token_kind="jwt",
            jti=str(jti) if jti else None,
        )

    def _verify_opaque_token(self, token: str, expected_audience: str) -> TokenClaims:
        record = self.store.get_token(hash_token(token))
        if record is None or record.token_type != TOKEN_TYPE_ACCESS:
            raise AuthenticationError("unknown access token")
        now = self._clock()
        if record.revoked_at is not None:
            raise AuthenticationError("token has been revoked")
        if record.expires_at <= now:
            raise AuthenticationError("token expired")
        if record.audience != expected_audience:
            raise AuthenticationError("token audience mismatch")
        return TokenClaims(
            subject=record.user_id,
            audience=record.audience,
            role=DEFAULT_ROLE,
            email=None,
            issued_at=record.created_at,
            expires_at=record.expires_at,
            client_id=record.client_id,
            scope=record.scope,
            token_kind="opaque",
        )

    def refresh(self, refresh_token: Optional[str], client_id: Optional[str] = None) -> IssuedTokens:
        """Rotate ``refresh_token``: revoke it and mint a new pair.

        The revoke is a conditional update, so two concurrent refreshes of
        the same token cannot both succeed.
        """
        if not refresh_token or looks_like_jwt(refresh_token):
            raise InvalidGrantError("refresh token is invalid")
        previous = self.store.consume_refresh_token(
            hash_token(refresh_token), now=self._clock()
        )
        if previous is None:
            logger.warning("refresh_rejected", client_id=client_id)
            raise InvalidGrantError("refresh token is invalid, expired or revoked")
        if client_id and client_id != previous.client_id:
            logger.warning(
                "refresh_client_mismatch",
                client_id=client_id,
                expected_client_id=previous.client_id,
            )
            raise InvalidGrantError("refresh token was issued to another client")
        logger.info("refresh_token_rotated", pair_id=previous.pair_id, client_id=previous.client_id)
        return self.issue_tokens(
            previous.user_id, previous.client_id, previous.scope, previous.audience
        )

    async def revoke(self, token: Optional[str]) -> None:
        """Revoke any token this service can recognise; unknown tokens are ignored."""
        if not token:
            return
        if looks_like_jwt(token):
            await self._denylist_identity_token(token)
            return
        record = self.store.revoke_token(hash_token(token), now=self._clock())
        if record is None:
            return
        logger.info("token_revoked", kind=record.token_type, pair_id=record.pair_id)
        # RFC 7009: revoking a refresh token also ends the access token minted with it
        if record.token_type == TOKEN_TYPE_REFRESH:
            self.store.revoke_token_pair(record.pair_id, now=self._clock())

    def revoke_refresh(self, token: Optional[str]) -> None:
        """Revoke a refresh token together with the access token minted beside it."""
        if not token or looks_like_jwt(token):
            return
        record = self.store.get_token(hash_token(token))
        if record is None or record.token_type != TOKEN_TYPE_REFRESH:
            return
        revoked = self.store.revoke_token_pair(record.pair_id, now=self._clock())
        logger.info("token_pair_revoked", pair_id=record.pair_id, revoked=revoked)

    async def _denylist_identity_token(self, token: str) -> None:
        if self.cache is None:
            logger.info("identity_token_revoke_skipped", reason="no_cache")
            return
        try:
            payload = self.identity.signed_payload(token)
        except AuthenticationError:
            return
        jti = payload.get("jti")
        exp = _from_timestamp(payload.get("exp"))
        if not jti or exp is None or exp <= self._clock():
            return
        await self.cache.denylist_token(str(jti), exp)
        logger.info("identity_token_denylisted", jti=jti)

    def sweep(self) -> int:
        cutoff = self._clock() - timedelta(days=self.settings.token_retention_days)
        removed = self.store.delete_stale_tokens(cutoff)
        if removed:
            logger.info("tokens_swept", removed=removed)
        return removed
