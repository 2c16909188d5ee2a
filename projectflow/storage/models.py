from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PendingAuthorizationRequest:
    """An in-flight PKCE authorization attempt, keyed by its code_challenge."""

    id: str
    client_id: str
    redirect_uri: str
    code_challenge: str
    code_challenge_method: str
    scope: str
    state: Optional[str]
    created_at: datetime
    expires_at: datetime
    authorization_code: Optional[str] = None

    @classmethod
    def new(
        cls,
        client_id: str,
        redirect_uri: str,
        code_challenge: str,
        code_challenge_method: str,
        scope: str,
        state: Optional[str],
        *,
        now: datetime,
        ttl_seconds: int,
    ) -> "PendingAuthorizationRequest":
        return cls(
            id=str(uuid.uuid4()),
            client_id=client_id,
            redirect_uri=redirect_uri,
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method,
            scope=scope,
            state=state,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
        )

    @property
    def consumed(self) -> bool:
        return self.authorization_code is not None


@dataclass
class AuthorizationCode:
    code: str
    user_id: str
    client_id: str
    redirect_uri: str
    scope: str
    code_challenge: str
    code_challenge_method: str
    created_at: datetime
    expires_at: datetime
    used_at: Optional[datetime] = None


@dataclass
class OAuthToken:
    """Persisted access or refresh token; the raw value is never stored."""

    token_hash: str
    user_id: str
    client_id: str
    scope: str
    token_type: str
    audience: str
    pair_id: str
    created_at: datetime
    expires_at: datetime
    revoked_at: Optional[datetime] = None

    def is_active(self, now: datetime) -> bool:
        return self.revoked_at is None and self.expires_at > now


@dataclass
class OAuthClient:
    client_id: str
    client_name: str
    redirect_uris: List[str]
    grant_types: List[str] = field(
        default_factory=lambda: ["authorization_code", "refresh_token"]
    )
    response_types: List[str] = field(default_factory=lambda: ["code"])
    token_endpoint_auth_method: str = "none"
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Project:
    id: str
    owner_id: str
    name: str
    description: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Task:
    id: str
    project_id: str
    owner_id: str
    title: str
    description: Optional[str] = None
    status: str = "todo"
    priority: int = 0
    meta: Dict | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
