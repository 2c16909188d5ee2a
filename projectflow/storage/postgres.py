from __future__ import annotations

import contextlib
import json
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, Optional, Sequence

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from projectflow.logging import get_logger
from projectflow.storage.errors import ConstraintViolation, StoreUnavailable
from projectflow.storage.models import (
    AuthorizationCode,
    OAuthClient,
    OAuthToken,
    PendingAuthorizationRequest,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS oauth_pending_request (
        id UUID PRIMARY KEY,
        client_id TEXT NOT NULL,
        redirect_uri TEXT NOT NULL,
        code_challenge TEXT NOT NULL,
        code_challenge_method TEXT NOT NULL CHECK (code_challenge_method IN ('plain', 'S256')),
        scope TEXT NOT NULL DEFAULT '',
        state TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL DEFAULT now() + interval '10 minutes',
        authorization_code TEXT
    )
    """,
    # A challenge is unique only while its row is unconsumed
    """
    CREATE UNIQUE INDEX IF NOT EXISTS oauth_pending_request_open_challenge
        ON oauth_pending_request (code_challenge)
        WHERE authorization_code IS NULL
    """,
    "CREATE INDEX IF NOT EXISTS oauth_pending_request_expires ON oauth_pending_request (expires_at)",
    "CREATE INDEX IF NOT EXISTS oauth_pending_request_code ON oauth_pending_request (authorization_code)",
    """
    CREATE TABLE IF NOT EXISTS oauth_authorization_code (
        code TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        client_id TEXT NOT NULL,
        redirect_uri TEXT NOT NULL,
        scope TEXT NOT NULL DEFAULT '',
        code_challenge TEXT NOT NULL,
        code_challenge_method TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL,
        used_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS oauth_token (
        token_hash TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        client_id TEXT NOT NULL,
        scope TEXT NOT NULL DEFAULT '',
        token_type TEXT NOT NULL CHECK (token_type IN ('access', 'refresh')),
        audience TEXT NOT NULL,
        pair_id UUID NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL,
        revoked_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS oauth_token_pair ON oauth_token (pair_id)",
    "CREATE INDEX IF NOT EXISTS oauth_token_expires ON oauth_token (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS oauth_client (
        client_id TEXT PRIMARY KEY,
        client_name TEXT NOT NULL,
        redirect_uris JSONB NOT NULL,
        grant_types JSONB NOT NULL,
        response_types JSONB NOT NULL,
        token_endpoint_auth_method TEXT NOT NULL DEFAULT 'none',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)


def _pending_from_row(row: Dict[str, Any]) -> PendingAuthorizationRequest:
    return PendingAuthorizationRequest(
        id=str(row["id"]),
        client_id=row["client_id"],
        redirect_uri=row["redirect_uri"],
        code_challenge=row["code_challenge"],
        code_challenge_method=row["code_challenge_method"],
        scope=row.get("scope") or "",
        state=row.get("state"),
        created_at=row["created_at"],
        expires_at=row["expires_at"],
        authorization_code=row.get("authorization_code"),
    )


def _code_from_row(row: Dict[str, Any]) -> AuthorizationCode:
    return AuthorizationCode(
        code=row["code"],
        user_id=str(row["user_id"]),
        client_id=row["client_id"],
        redirect_uri=row["redirect_uri"],
        scope=row.get("scope") or "",
        code_challenge=row["code_challenge"],
        code_challenge_method=row["code_challenge_method"],
        created_at=row["created_at"],
        expires_at=row["expires_at"],
        used_at=row.get("used_at"),
    )


def _token_from_row(row: Dict[str, Any]) -> OAuthToken:
    return OAuthToken(
        token_hash=row["token_hash"],
        user_id=str(row["user_id"]),
        client_id=row["client_id"],
        scope=row.get("scope") or "",
        token_type=row["token_type"],
        audience=row["audience"],
        pair_id=str(row["pair_id"]),
        created_at=row["created_at"],
        expires_at=row["expires_at"],
        revoked_at=row.get("revoked_at"),
    )


def _json_list(value: Any) -> list:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            return []
    return list(value or [])


def _client_from_row(row: Dict[str, Any]) -> OAuthClient:
    return OAuthClient(
        client_id=row["client_id"],
        client_name=row["client_name"],
        redirect_uris=_json_list(row.get("redirect_uris")),
        grant_types=_json_list(row.get("grant_types")),
        response_types=_json_list(row.get("response_types")),
        token_endpoint_auth_method=row.get("token_endpoint_auth_method") or "none",
        created_at=row["created_at"],
    )


class PostgresStore:
    """Postgres-backed OAuth store shared by every server process.

    Each state transition is one conditional statement (or one transaction
    for ``complete_pending_request``), so concurrent redemptions of the same
    code or refresh token race on the row and exactly one wins.
    """

    def __init__(self, dsn: str, *, pool: Optional[ConnectionPool] = None) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = pool or ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    @contextlib.contextmanager
    def _transaction(self) -> Iterator[psycopg.Connection]:
        """Yield a pooled connection; commit on success, roll back on error."""
        try:
            with self._connect() as conn:
                yield conn
        except (psycopg.OperationalError, PoolTimeout) as exc:
            self.logger.error("oauth_store_unavailable", error=str(exc))
            raise StoreUnavailable("database unavailable") from exc

    def _ensure_schema(self) -> None:
        """Create the OAuth tables and indexes when they are missing."""
        with self._transaction() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._transaction() as conn:
            conn.execute("SELECT 1").fetchone()

    # -- pending authorization requests ---------------------------------

    def create_pending_request(
        self, request: PendingAuthorizationRequest, *, now: datetime
    ) -> tuple[PendingAuthorizationRequest, bool]:
        with self._transaction() as conn:
            # An expired open row would otherwise block the challenge until the sweep runs
            conn.execute(
                """
                DELETE FROM oauth_pending_request
                WHERE code_challenge = %s AND authorization_code IS NULL AND expires_at <= %s
                """,
                (request.code_challenge, now),
            )
            row = conn.execute(
                """
                INSERT INTO oauth_pending_request (
                    id, client_id, redirect_uri, code_challenge, code_challenge_method,
                    scope, state, created_at, expires_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (code_challenge) WHERE authorization_code IS NULL DO NOTHING
                RETURNING *
                """,
                (
                    request.id,
                    request.client_id,
                    request.redirect_uri,
                    request.code_challenge,
                    request.code_challenge_method,
                    request.scope,
                    request.state,
                    request.created_at,
                    request.expires_at,
                ),
            ).fetchone()
            if row:
                return _pending_from_row(row), True
            row = conn.execute(
                """
                SELECT * FROM oauth_pending_request
                WHERE code_challenge = %s AND authorization_code IS NULL
                """,
                (request.code_challenge,),
            ).fetchone()
        if not row:
            # The conflicting row was consumed between our insert and select
            raise ConstraintViolation(
                "code_challenge already in flight", {"field": "code_challenge"}
            )
        return _pending_from_row(row), False

    def get_pending_request(self, code_challenge: str) -> Optional[PendingAuthorizationRequest]:
        with self._transaction() as conn:
            row = conn.execute(
                """
                SELECT * FROM oauth_pending_request
                WHERE code_challenge = %s AND authorization_code IS NULL
                """,
                (code_challenge,),
            ).fetchone()
        return _pending_from_row(row) if row else None

    def complete_pending_request(
        self,
        code_challenge: str,
        *,
        code: str,
        user_id: str,
        now: datetime,
        code_ttl_seconds: int,
    ) -> Optional[AuthorizationCode]:
        try:
            with self._transaction() as conn:
                pending = conn.execute(
                    """
                    UPDATE oauth_pending_request
                    SET authorization_code = %s
                    WHERE code_challenge = %s
                      AND authorization_code IS NULL
                      AND expires_at > %s
                    RETURNING *
                    """,
                    (code, code_challenge, now),
                ).fetchone()
                if not pending:
                    return None
                row = conn.execute(
                    """
                    INSERT INTO oauth_authorization_code (
                        code, user_id, client_id, redirect_uri, scope,
                        code_challenge, code_challenge_method, created_at, expires_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        code,
                        user_id,
                        pending["client_id"],
                        pending["redirect_uri"],
                        pending.get("scope") or "",
                        pending["code_challenge"],
                        pending["code_challenge_method"],
                        now,
                        now + timedelta(seconds=code_ttl_seconds),
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("authorization code collision", {"field": "code"}) from exc
        return _code_from_row(row)

    def rebind_pending_request(
        self, request_id: str, *, scope: str, state: Optional[str], now: datetime
    ) -> Optional[PendingAuthorizationRequest]:
        with self._transaction() as conn:
            row = conn.execute(
                """
                UPDATE oauth_pending_request
                SET scope = %s, state = %s
                WHERE id = %s AND authorization_code IS NULL AND expires_at > %s
                RETURNING *
                """,
                (scope, state, request_id, now),
            ).fetchone()
        return _pending_from_row(row) if row else None

    def delete_pending_for_code(self, code: str) -> int:
        with self._transaction() as conn:
            cur = conn.execute(
                "DELETE FROM oauth_pending_request WHERE authorization_code = %s", (code,)
            )
            return cur.rowcount

    def delete_expired_pending(self, now: datetime) -> int:
        with self._transaction() as conn:
            cur = conn.execute(
                "DELETE FROM oauth_pending_request WHERE expires_at <= %s", (now,)
            )
            return cur.rowcount

    # -- authorization codes --------------------------------------------

    def consume_authorization_code(
        self, code: str, *, now: datetime
    ) -> Optional[AuthorizationCode]:
        with self._transaction() as conn:
            row = conn.execute(
                """
                UPDATE oauth_authorization_code
                SET used_at = %s
                WHERE code = %s AND used_at IS NULL AND expires_at > %s
                RETURNING *
                """,
                (now, code, now),
            ).fetchone()
        return _code_from_row(row) if row else None

    def get_authorization_code(self, code: str) -> Optional[AuthorizationCode]:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM oauth_authorization_code WHERE code = %s", (code,)
            ).fetchone()
        return _code_from_row(row) if row else None

    def delete_expired_codes(self, now: datetime) -> int:
        with self._transaction() as conn:
            cur = conn.execute(
                "DELETE FROM oauth_authorization_code WHERE expires_at <= %s", (now,)
            )
            return cur.rowcount

    # -- tokens ---------------------------------------------------------

    def save_tokens(self, tokens: Sequence[OAuthToken]) -> None:
        try:
            with self._transaction() as conn:
                for token in tokens:
                    conn.execute(
                        """
                        INSERT INTO oauth_token (
                            token_hash, user_id, client_id, scope, token_type,
                            audience, pair_id, created_at, expires_at
                        )
                        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                        """,
                        (
                            token.token_hash,
                            token.user_id,
                            token.client_id,
                            token.scope,
                            token.token_type,
                            token.audience,
                            token.pair_id,
                            token.created_at,
                            token.expires_at,
                        ),
                    )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("token collision", {"field": "token_hash"}) from exc

    def get_token(self, token_hash: str) -> Optional[OAuthToken]:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM oauth_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return _token_from_row(row) if row else None

    def consume_refresh_token(self, token_hash: str, *, now: datetime) -> Optional[OAuthToken]:
        with self._transaction() as conn:
            row = conn.execute(
                """
                UPDATE oauth_token
                SET revoked_at = %s
                WHERE token_hash = %s
                  AND token_type = 'refresh'
                  AND revoked_at IS NULL
                  AND expires_at > %s
                RETURNING *
                """,
                (now, token_hash, now),
            ).fetchone()
        return _token_from_row(row) if row else None

    def revoke_token(self, token_hash: str, *, now: datetime) -> Optional[OAuthToken]:
        with self._transaction() as conn:
            row = conn.execute(
                """
                UPDATE oauth_token
                SET revoked_at = COALESCE(revoked_at, %s)
                WHERE token_hash = %s
                RETURNING *
                """,
                (now, token_hash),
            ).fetchone()
        return _token_from_row(row) if row else None

    def revoke_token_pair(self, pair_id: str, *, now: datetime) -> int:
        with self._transaction() as conn:
            cur = conn.execute(
                """
                UPDATE oauth_token SET revoked_at = %s
                WHERE pair_id = %s AND revoked_at IS NULL
                """,
                (now, pair_id),
            )
            return cur.rowcount

    def delete_stale_tokens(self, cutoff: datetime) -> int:
        with self._transaction() as conn:
            cur = conn.execute(
                """
                DELETE FROM oauth_token
                WHERE expires_at <= %s OR (revoked_at IS NOT NULL AND revoked_at <= %s)
                """,
                (cutoff, cutoff),
            )
            return cur.rowcount

    # -- registered clients ---------------------------------------------

    def create_client(self, client: OAuthClient) -> OAuthClient:
        try:
            with self._transaction() as conn:
                row = conn.execute(
                    """
                    INSERT INTO oauth_client (
                        client_id, client_name, redirect_uris, grant_types,
                        response_types, token_endpoint_auth_method, created_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        client.client_id,
                        client.client_name,
                        json.dumps(client.redirect_uris),
                        json.dumps(client.grant_types),
                        json.dumps(client.response_types),
                        client.token_endpoint_auth_method,
                        client.created_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("client already exists", {"field": "client_id"}) from exc
        return _client_from_row(row)

    def get_client(self, client_id: str) -> Optional[OAuthClient]:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM oauth_client WHERE client_id = %s", (client_id,)
            ).fetchone()
        return _client_from_row(row) if row else None

    def close(self) -> None:
        self.pool.close()
