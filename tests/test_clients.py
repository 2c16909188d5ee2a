import pytest

from projectflow.service.clients import ClientRegistry
from projectflow.service.errors import ValidationError

REDIRECT = "http://127.0.0.1:9999/callback"


@pytest.fixture
def registry(store, clock):
    return ClientRegistry(store, clock=clock)


def test_register_public_client(registry, clock):
    client = registry.register("desktop agent", [REDIRECT])
    assert client.client_id.startswith("pf_")
    assert client.grant_types == ["authorization_code", "refresh_token"]
    assert client.created_at == clock()
    assert registry.get(client.client_id).redirect_uris == [REDIRECT]


@pytest.mark.parametrize(
    "kwargs",
    [
        {"redirect_uris": []},
        {"redirect_uris": ["javascript:alert(1)"]},
        {"redirect_uris": ["/relative"]},
        {"redirect_uris": [REDIRECT], "grant_types": ["client_credentials"]},
        {"redirect_uris": [REDIRECT], "response_types": ["token"]},
        {"redirect_uris": [REDIRECT], "token_endpoint_auth_method": "client_secret_basic"},
    ],
)
def test_register_rejects_bad_metadata(registry, kwargs):
    redirect_uris = kwargs.pop("redirect_uris")
    with pytest.raises(ValidationError):
        registry.register("agent", redirect_uris, **kwargs)


def test_check_redirect(registry):
    client = registry.register("agent", [REDIRECT])
    registry.check_redirect(client.client_id, REDIRECT)
    registry.check_redirect("never-registered", "http://anywhere.test/cb")
    with pytest.raises(ValidationError):
        registry.check_redirect(client.client_id, "http://127.0.0.1:9999/other")
