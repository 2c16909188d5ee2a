import pytest

from projectflow.service.middleware import extract_bearer, extract_context
from projectflow.service.tokens import TokenService
from projectflow.storage.errors import StoreUnavailable


@pytest.fixture
def tokens(store, settings, clock):
    return TokenService(store, settings, clock=clock)


@pytest.mark.parametrize(
    "header,expected",
    [
        ("Bearer abc", "abc"),
        ("bearer abc", "abc"),
        ("BEARER  abc ", "abc"),
        ("Basic abc", None),
        ("Bearer", None),
        ("Bearer ", None),
        ("Bearer a b", None),
        ("", None),
        (None, None),
    ],
)
def test_extract_bearer(header, expected):
    assert extract_bearer(header) == expected


async def test_valid_token_yields_context(tokens, settings):
    issued = tokens.issue_tokens("user-1", "agent-a", "tasks:read tasks:write")
    context = await extract_context(
        f"Bearer {issued.access_token}", settings.resource_audience, tokens
    )
    assert context is not None
    assert context.user_id == "user-1"
    assert context.client_id == "agent-a"
    assert context.scopes == frozenset({"tasks:read", "tasks:write"})


async def test_invalid_token_yields_none(tokens, settings):
    assert await extract_context("Bearer nope", settings.resource_audience, tokens) is None
    assert await extract_context(None, settings.resource_audience, tokens) is None


async def test_expired_token_yields_none(tokens, settings, clock):
    issued = tokens.issue_tokens("user-1", "agent-a", "tasks:read")
    clock.advance(hours=2)
    context = await extract_context(
        f"Bearer {issued.access_token}", settings.resource_audience, tokens
    )
    assert context is None


async def test_store_outage_yields_none(tokens, settings, monkeypatch):
    def _down(token_hash):
        raise StoreUnavailable("database unavailable")

    monkeypatch.setattr(tokens.store, "get_token", _down)
    assert await extract_context("Bearer whatever", settings.resource_audience, tokens) is None
