import pytest
from pydantic import ValidationError

from projectflow.config import MAX_AUTHORIZATION_CODE_TTL_SECONDS, Settings


def test_csv_fields_are_split():
    settings = Settings(
        identity_jwt_secret="s",
        cors_allow_origins="https://a.test, https://b.test",
        supported_scopes="tasks:read tasks:write",
    )
    assert settings.cors_allow_origins == ["https://a.test", "https://b.test"]
    assert settings.supported_scopes == ["tasks:read", "tasks:write"]


def test_base_url_drives_issuer_and_audience():
    settings = Settings(identity_jwt_secret="s", app_base_url="https://pf.example/")
    assert settings.issuer == "https://pf.example"
    assert settings.resource_audience == "https://pf.example/rpc"
    assert settings.resolved_login_url == "https://pf.example/login"


def test_identity_secret_required_outside_test_mode():
    with pytest.raises(ValidationError):
        Settings(identity_jwt_secret=None, test_mode=False)


def test_identity_secret_generated_in_test_mode():
    settings = Settings(identity_jwt_secret=None, test_mode=True)
    assert settings.identity_jwt_secret


def test_code_ttl_is_capped():
    with pytest.raises(ValidationError):
        Settings(
            identity_jwt_secret="s",
            authorization_code_ttl_seconds=MAX_AUTHORIZATION_CODE_TTL_SECONDS + 1,
        )


def test_from_env_reads_environment(monkeypatch):
    monkeypatch.setenv("APP_BASE_URL", "https://env.test")
    monkeypatch.setenv("ACCESS_TOKEN_TTL_SECONDS", "120")
    settings = Settings.from_env()
    assert settings.app_base_url == "https://env.test"
    assert settings.access_token_ttl_seconds == 120
