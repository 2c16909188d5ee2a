"""Unit tests for the token service.

Tests for:
- Opaque access/refresh issuance and verification
- Audience, expiry and revocation checks
- Refresh rotation
- Identity JWT verification and denylisting
- Sweep retention
"""

from datetime import datetime, timedelta

import pytest

from projectflow.service.errors import AuthenticationError, InvalidGrantError
from projectflow.service.tokens import (
    IdentityTokenCodec,
    TokenService,
    hash_token,
    looks_like_jwt,
)

CLIENT = "agent-a"


class FakeDenylist:
    def __init__(self, *, broken: bool = False):
        self.denied: dict[str, datetime] = {}
        self.broken = broken

    async def denylist_token(self, jti: str, expires_at: datetime) -> None:
        self.denied[jti] = expires_at

    async def is_token_denylisted(self, jti: str) -> bool:
        if self.broken:
            raise ConnectionError("redis down")
        return jti in self.denied


@pytest.fixture
def tokens(store, settings, clock):
    return TokenService(store, settings, clock=clock)


def _identity_token(settings, clock, **overrides):
    codec = IdentityTokenCodec(settings.identity_jwt_secret, issuer=settings.identity_jwt_issuer)
    payload = {
        "sub": "user-1",
        "aud": settings.identity_jwt_audience,
        "iss": settings.identity_jwt_issuer,
        "iat": int(clock().timestamp()),
        "exp": int((clock() + timedelta(minutes=5)).timestamp()),
        "jti": "jti-1",
        "role": "authenticated",
        "email": "human@example.com",
    }
    payload.update(overrides)
    return codec.encode(payload)


class TestIssue:
    def test_issue_returns_bearer_pair(self, tokens, settings):
        issued = tokens.issue_tokens("user-1", CLIENT, "tasks:read")
        body = issued.as_response()
        assert body["token_type"] == "Bearer"
        assert body["expires_in"] == settings.access_token_ttl_seconds
        assert issued.access_token != issued.refresh_token
        assert not looks_like_jwt(issued.access_token)

    def test_only_hashes_are_stored(self, tokens, store):
        issued = tokens.issue_tokens("user-1", CLIENT, "tasks:read")
        assert issued.access_token not in store.tokens
        access = store.get_token(hash_token(issued.access_token))
        refresh = store.get_token(hash_token(issued.refresh_token))
        assert access.token_type == "access"
        assert refresh.token_type == "refresh"
        assert access.pair_id == refresh.pair_id


class TestVerifyOpaque:
    async def test_verify_access_token(self, tokens, settings):
        issued = tokens.issue_tokens("user-1", CLIENT, "tasks:read")
        claims = await tokens.verify(issued.access_token, settings.resource_audience)
        assert claims.subject == "user-1"
        assert claims.client_id == CLIENT
        assert claims.scope == "tasks:read"
        assert claims.token_kind == "opaque"

    async def test_wrong_audience_rejected(self, tokens):
        issued = tokens.issue_tokens("user-1", CLIENT, "tasks:read")
        with pytest.raises(AuthenticationError):
            await tokens.verify(issued.access_token, "http://elsewhere/rpc")

    async def test_expired_token_rejected(self, tokens, settings, clock):
        issued = tokens.issue_tokens("user-1", CLIENT, "tasks:read")
        clock.advance(seconds=settings.access_token_ttl_seconds)
        with pytest.raises(AuthenticationError):
            await tokens.verify(issued.access_token, settings.resource_audience)

    async def test_revoked_token_rejected(self, tokens, settings):
        issued = tokens.issue_tokens("user-1", CLIENT, "tasks:read")
        await tokens.revoke(issued.access_token)
        with pytest.raises(AuthenticationError):
            await tokens.verify(issued.access_token, settings.resource_audience)

    async def test_refresh_token_is_not_an_access_token(self, tokens, settings):
        issued = tokens.issue_tokens("user-1", CLIENT, "tasks:read")
        with pytest.raises(AuthenticationError):
            await tokens.verify(issued.refresh_token, settings.resource_audience)

    async def test_unknown_and_empty_tokens_rejected(self, tokens, settings):
        for value in ("", "not-a-token", "a.b"):
            with pytest.raises(AuthenticationError):
                await tokens.verify(value, settings.resource_audience)


class TestRefresh:
    async def test_refresh_rotates(self, tokens, settings):
        issued = tokens.issue_tokens("user-1", CLIENT, "tasks:read")
        rotated = tokens.refresh(issued.refresh_token, CLIENT)

        assert rotated.refresh_token != issued.refresh_token
        assert rotated.scope == "tasks:read"
        claims = await tokens.verify(rotated.access_token, settings.resource_audience)
        assert claims.audience == settings.resource_audience

        with pytest.raises(InvalidGrantError):
            tokens.refresh(issued.refresh_token, CLIENT)

    def test_refresh_with_other_client_fails(self, tokens):
        issued = tokens.issue_tokens("user-1", CLIENT, "tasks:read")
        with pytest.raises(InvalidGrantError):
            tokens.refresh(issued.refresh_token, "agent-b")

    def test_refresh_with_access_token_fails(self, tokens):
        issued = tokens.issue_tokens("user-1", CLIENT, "tasks:read")
        with pytest.raises(InvalidGrantError):
            tokens.refresh(issued.access_token, CLIENT)

    def test_expired_refresh_fails(self, tokens, settings, clock):
        issued = tokens.issue_tokens("user-1", CLIENT, "tasks:read")
        clock.advance(days=settings.refresh_token_ttl_days, seconds=1)
        with pytest.raises(InvalidGrantError):
            tokens.refresh(issued.refresh_token, CLIENT)

    async def test_revoking_refresh_ends_the_pair(self, tokens, settings):
        issued = tokens.issue_tokens("user-1", CLIENT, "tasks:read")
        await tokens.revoke(issued.refresh_token)
        with pytest.raises(AuthenticationError):
            await tokens.verify(issued.access_token, settings.resource_audience)
        with pytest.raises(InvalidGrantError):
            tokens.refresh(issued.refresh_token, CLIENT)

    async def test_revoke_refresh_is_idempotent(self, tokens, settings):
        issued = tokens.issue_tokens("user-1", CLIENT, "tasks:read")
        tokens.revoke_refresh(issued.refresh_token)
        tokens.revoke_refresh(issued.refresh_token)
        tokens.revoke_refresh("unknown")
        with pytest.raises(AuthenticationError):
            await tokens.verify(issued.access_token, settings.resource_audience)


class TestIdentityTokens:
    async def test_valid_identity_token(self, tokens, settings, clock):
        token = _identity_token(settings, clock)
        claims = await tokens.verify(token, settings.identity_jwt_audience)
        assert claims.subject == "user-1"
        assert claims.token_kind == "jwt"
        assert claims.email == "human@example.com"

    async def test_audience_list_accepted(self, tokens, settings, clock):
        token = _identity_token(settings, clock, aud=["other", settings.identity_jwt_audience])
        claims = await tokens.verify(token, settings.identity_jwt_audience)
        assert claims.subject == "user-1"

    async def test_identity_token_not_valid_for_resource(self, tokens, settings, clock):
        token = _identity_token(settings, clock)
        with pytest.raises(AuthenticationError):
            await tokens.verify(token, settings.resource_audience)

    async def test_bad_signature_rejected(self, tokens, settings, clock):
        token = _identity_token(settings, clock)
        header, payload, signature = token.split(".")
        flipped = ("A" if signature[0] != "A" else "B") + signature[1:]
        tampered = f"{header}.{payload}.{flipped}"
        with pytest.raises(AuthenticationError):
            await tokens.verify(tampered, settings.identity_jwt_audience)

    async def test_foreign_secret_rejected(self, tokens, settings, clock):
        forged = IdentityTokenCodec("another-secret").encode(
            {"sub": "user-1", "aud": settings.identity_jwt_audience, "iss": settings.identity_jwt_issuer,
             "exp": int((clock() + timedelta(minutes=5)).timestamp())}
        )
        with pytest.raises(AuthenticationError):
            await tokens.verify(forged, settings.identity_jwt_audience)

    async def test_expired_identity_token(self, tokens, settings, clock):
        token = _identity_token(settings, clock, exp=int((clock() - timedelta(seconds=1)).timestamp()))
        with pytest.raises(AuthenticationError):
            await tokens.verify(token, settings.identity_jwt_audience)

    async def test_wrong_issuer(self, tokens, settings, clock):
        token = _identity_token(settings, clock, iss="https://evil.test")
        with pytest.raises(AuthenticationError):
            await tokens.verify(token, settings.identity_jwt_audience)

    async def test_alg_none_rejected(self, tokens, settings, clock):
        token = _identity_token(settings, clock)
        _header, payload, signature = token.split(".")
        none_header = "eyJhbGciOiJub25lIiwidHlwIjoiSldUIn0"  # {"alg":"none","typ":"JWT"}
        with pytest.raises(AuthenticationError):
            await tokens.verify(f"{none_header}.{payload}.{signature}", settings.identity_jwt_audience)

    async def test_denylisted_identity_token(self, store, settings, clock):
        cache = FakeDenylist()
        service = TokenService(store, settings, cache=cache, clock=clock)
        token = _identity_token(settings, clock)
        await service.revoke(token)
        assert "jti-1" in cache.denied
        with pytest.raises(AuthenticationError):
            await service.verify(token, settings.identity_jwt_audience)

    async def test_denylist_outage_fails_closed(self, store, settings, clock):
        service = TokenService(store, settings, cache=FakeDenylist(broken=True), clock=clock)
        token = _identity_token(settings, clock)
        with pytest.raises(AuthenticationError):
            await service.verify(token, settings.identity_jwt_audience)

    async def test_forged_token_is_not_denylisted(self, store, settings, clock):
        cache = FakeDenylist()
        service = TokenService(store, settings, cache=cache, clock=clock)
        forged = IdentityTokenCodec("another-secret").encode(
            {"sub": "x", "jti": "victim", "exp": int((clock() + timedelta(minutes=5)).timestamp())}
        )
        await service.revoke(forged)
        assert cache.denied == {}


def test_sweep_keeps_recent_rows(tokens, store, settings, clock):
    tokens.issue_tokens("user-1", CLIENT, "tasks:read")
    clock.advance(seconds=settings.access_token_ttl_seconds + 1)
    assert tokens.sweep() == 0
    clock.advance(days=settings.token_retention_days)
    # The access token is past retention; the refresh token is still live
    assert tokens.sweep() == 1
    assert len(store.tokens) == 1
