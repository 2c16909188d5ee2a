import uuid
from datetime import datetime, timedelta, timezone

import pytest
from psycopg import OperationalError, errors

from projectflow.logging import get_logger
from projectflow.storage.errors import ConstraintViolation, StoreUnavailable
from projectflow.storage.models import OAuthClient
from projectflow.storage.postgres import PostgresStore

NOW = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


class DummyCursor:
    def __init__(self, row=None, rowcount=0):
        self.row = row
        self.rowcount = rowcount

    def fetchone(self):
        return self.row


class DummyConnection:
    def __init__(self, results):
        self.results = list(results)
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        outcome = self.results.pop(0) if self.results else DummyCursor()
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class DummyPool:
    def __init__(self, *results, fail=None):
        self.conn = DummyConnection(results)
        self.fail = fail

    def connection(self):
        if self.fail is not None:
            raise self.fail
        return self.conn


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://unit-test"
    store.pool = pool
    store.logger = get_logger(__name__)
    return store


def _code_row(**overrides):
    row = {
        "code": "code-1",
        "user_id": uuid.UUID("00000000-0000-0000-0000-000000000001"),
        "client_id": "agent-a",
        "redirect_uri": "http://127.0.0.1/cb",
        "scope": None,
        "code_challenge": "c" * 43,
        "code_challenge_method": "S256",
        "created_at": NOW,
        "expires_at": NOW + timedelta(minutes=10),
        "used_at": None,
    }
    row.update(overrides)
    return row


def test_consume_code_is_a_single_conditional_update():
    pool = DummyPool(DummyCursor(_code_row(used_at=NOW)))
    code = _store(pool).consume_authorization_code("code-1", now=NOW)

    assert code.user_id == "00000000-0000-0000-0000-000000000001"
    assert code.scope == ""
    (sql, params), = pool.conn.statements
    assert sql.startswith("UPDATE oauth_authorization_code")
    assert "used_at IS NULL" in sql
    assert params == (NOW, "code-1", NOW)


def test_consume_code_miss_returns_none():
    assert _store(DummyPool(DummyCursor(None))).consume_authorization_code("x", now=NOW) is None


def test_complete_pending_returns_none_when_row_gone():
    pool = DummyPool(DummyCursor(None))
    result = _store(pool).complete_pending_request(
        "c" * 43, code="code-1", user_id="u", now=NOW, code_ttl_seconds=600
    )
    assert result is None
    assert len(pool.conn.statements) == 1


def test_complete_pending_inserts_code_with_ttl():
    pending_row = {
        "client_id": "agent-a",
        "redirect_uri": "http://127.0.0.1/cb",
        "scope": "tasks:read",
        "code_challenge": "c" * 43,
        "code_challenge_method": "S256",
    }
    pool = DummyPool(DummyCursor(pending_row), DummyCursor(_code_row(scope="tasks:read")))
    code = _store(pool).complete_pending_request(
        "c" * 43, code="code-1", user_id="u", now=NOW, code_ttl_seconds=600
    )
    assert code.scope == "tasks:read"
    _sql, params = pool.conn.statements[1]
    assert params[-1] == NOW + timedelta(seconds=600)


def test_rebind_pending_updates_open_row_only():
    row = {
        "id": uuid.UUID("00000000-0000-0000-0000-0000000000aa"),
        "client_id": "agent-a",
        "redirect_uri": "http://127.0.0.1/cb",
        "code_challenge": "c" * 43,
        "code_challenge_method": "S256",
        "scope": "tasks:read",
        "state": "second",
        "created_at": NOW,
        "expires_at": NOW + timedelta(minutes=10),
        "authorization_code": None,
    }
    pool = DummyPool(DummyCursor(row))
    pending = _store(pool).rebind_pending_request(
        "00000000-0000-0000-0000-0000000000aa", scope="tasks:read", state="second", now=NOW
    )

    assert pending.state == "second"
    assert pending.id == "00000000-0000-0000-0000-0000000000aa"
    (sql, params), = pool.conn.statements
    assert sql.startswith("UPDATE oauth_pending_request")
    assert "authorization_code IS NULL" in sql
    assert params == ("tasks:read", "second", "00000000-0000-0000-0000-0000000000aa", NOW)


def test_rebind_pending_miss_returns_none():
    pool = DummyPool(DummyCursor(None))
    assert _store(pool).rebind_pending_request("x", scope="", state=None, now=NOW) is None


def test_unique_violation_maps_to_constraint_violation():
    pool = DummyPool(errors.UniqueViolation("duplicate key"))
    client = OAuthClient(
        client_id="pf_x",
        client_name="agent",
        redirect_uris=["http://127.0.0.1/cb"],
        grant_types=["authorization_code"],
        response_types=["code"],
        token_endpoint_auth_method="none",
        created_at=NOW,
    )
    with pytest.raises(ConstraintViolation):
        _store(pool).create_client(client)


def test_client_row_decodes_json_columns():
    row = {
        "client_id": "pf_x",
        "client_name": "agent",
        "redirect_uris": '["http://127.0.0.1/cb"]',
        "grant_types": ["authorization_code"],
        "response_types": "not json",
        "token_endpoint_auth_method": None,
        "created_at": NOW,
    }
    client = _store(DummyPool(DummyCursor(row))).get_client("pf_x")
    assert client.redirect_uris == ["http://127.0.0.1/cb"]
    assert client.response_types == []
    assert client.token_endpoint_auth_method == "none"


def test_sweeps_report_rowcount():
    store = _store(DummyPool(DummyCursor(rowcount=3), DummyCursor(rowcount=2), DummyCursor(rowcount=1)))
    assert store.delete_expired_pending(NOW) == 3
    assert store.delete_expired_codes(NOW) == 2
    assert store.delete_stale_tokens(NOW) == 1


def test_pool_outage_raises_store_unavailable():
    store = _store(DummyPool(fail=OperationalError("connection refused")))
    with pytest.raises(StoreUnavailable):
        store.get_token("hash")
