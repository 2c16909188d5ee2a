from __future__ import annotations

import dataclasses
import threading
import uuid
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence

from projectflow.logging import get_logger
from projectflow.storage.errors import ConstraintViolation
from projectflow.storage.models import (
    AuthorizationCode,
    OAuthClient,
    OAuthToken,
    PendingAuthorizationRequest,
    Project,
    Task,
    utcnow,
)


class MemoryStore:
    """In-process OAuth store for tests and single-node development.

    Every mutating method runs its check and its write under one lock, which
    gives the same compare-and-set semantics the Postgres store gets from
    single-statement updates.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.pending: Dict[str, PendingAuthorizationRequest] = {}
        self.codes: Dict[str, AuthorizationCode] = {}
        self.tokens: Dict[str, OAuthToken] = {}
        self.clients: Dict[str, OAuthClient] = {}
        self._data_lock = threading.RLock()

    # -- pending authorization requests ---------------------------------

    def _find_open_pending(self, code_challenge: str) -> Optional[PendingAuthorizationRequest]:
        for req in self.pending.values():
            if req.code_challenge == code_challenge and not req.consumed:
                return req
        return None

    def create_pending_request(
        self, request: PendingAuthorizationRequest, *, now: datetime
    ) -> tuple[PendingAuthorizationRequest, bool]:
        """Insert ``request`` unless an open row holds the same challenge.

        Returns the stored row and whether it was created by this call.
        """
        with self._data_lock:
            existing = self._find_open_pending(request.code_challenge)
            if existing and existing.expires_at <= now:
                del self.pending[existing.id]
                existing = None
            if existing:
                return dataclasses.replace(existing), False
            self.pending[request.id] = dataclasses.replace(request)
            return dataclasses.replace(request), True

    def get_pending_request(self, code_challenge: str) -> Optional[PendingAuthorizationRequest]:
        with self._data_lock:
            req = self._find_open_pending(code_challenge)
            return dataclasses.replace(req) if req else None

    def complete_pending_request(
        self,
        code_challenge: str,
        *,
        code: str,
        user_id: str,
        now: datetime,
        code_ttl_seconds: int,
    ) -> Optional[AuthorizationCode]:
        with self._data_lock:
            req = self._find_open_pending(code_challenge)
            if not req or req.expires_at <= now:
                return None
            if code in self.codes:
                self.logger.warning("memory_store_constraint_violation", field="code")
                raise ConstraintViolation("authorization code collision", {"field": "code"})
            req.authorization_code = code
            issued = AuthorizationCode(
                code=code,
                user_id=user_id,
                client_id=req.client_id,
                redirect_uri=req.redirect_uri,
                scope=req.scope,
                code_challenge=req.code_challenge,
                code_challenge_method=req.code_challenge_method,
                created_at=now,
                expires_at=now + timedelta(seconds=code_ttl_seconds),
            )
            self.codes[code] = issued
            return dataclasses.replace(issued)

    def rebind_pending_request(
        self, request_id: str, *, scope: str, state: Optional[str], now: datetime
    ) -> Optional[PendingAuthorizationRequest]:
        with self._data_lock:
            req = self.pending.get(request_id)
            if not req or req.consumed or req.expires_at <= now:
                return None
            req.scope = scope
            req.state = state
            return dataclasses.replace(req)

    def delete_pending_for_code(self, code: str) -> int:
        with self._data_lock:
            stale = [rid for rid, req in self.pending.items() if req.authorization_code == code]
            for rid in stale:
                del self.pending[rid]
            return len(stale)

    def delete_expired_pending(self, now: datetime) -> int:
        with self._data_lock:
            stale = [rid for rid, req in self.pending.items() if req.expires_at <= now]
            for rid in stale:
                del self.pending[rid]
            return len(stale)

    # -- authorization codes --------------------------------------------

    def consume_authorization_code(
        self, code: str, *, now: datetime
    ) -> Optional[AuthorizationCode]:
        """Mark ``code`` used and return it, or None if absent, used or expired."""
        with self._data_lock:
            issued = self.codes.get(code)
            if not issued or issued.used_at is not None or issued.expires_at <= now:
                return None
            issued.used_at = now
            return dataclasses.replace(issued)

    def get_authorization_code(self, code: str) -> Optional[AuthorizationCode]:
        with self._data_lock:
            issued = self.codes.get(code)
            return dataclasses.replace(issued) if issued else None

    def delete_expired_codes(self, now: datetime) -> int:
        with self._data_lock:
            stale = [c for c, issued in self.codes.items() if issued.expires_at <= now]
            for c in stale:
                del self.codes[c]
            return len(stale)

    # -- tokens ---------------------------------------------------------

    def save_tokens(self, tokens: Sequence[OAuthToken]) -> None:
        with self._data_lock:
            for token in tokens:
                if token.token_hash in self.tokens:
                    self.logger.warning("memory_store_constraint_violation", field="token_hash")
                    raise ConstraintViolation("token collision", {"field": "token_hash"})
            for token in tokens:
                self.tokens[token.token_hash] = dataclasses.replace(token)

    def get_token(self, token_hash: str) -> Optional[OAuthToken]:
        with self._data_lock:
            token = self.tokens.get(token_hash)
            return dataclasses.replace(token) if token else None

    def consume_refresh_token(self, token_hash: str, *, now: datetime) -> Optional[OAuthToken]:
        with self._data_lock:
            token = self.tokens.get(token_hash)
            if not token or token.token_type != "refresh" or not token.is_active(now):
                return None
            token.revoked_at = now
            return dataclasses.replace(token)

    def revoke_token(self, token_hash: str, *, now: datetime) -> Optional[OAuthToken]:
        with self._data_lock:
            token = self.tokens.get(token_hash)
            if not token:
                return None
            if token.revoked_at is None:
                token.revoked_at = now
            return dataclasses.replace(token)

    def revoke_token_pair(self, pair_id: str, *, now: datetime) -> int:
        with self._data_lock:
            revoked = 0
            for token in self.tokens.values():
                if token.pair_id == pair_id and token.revoked_at is None:
                    token.revoked_at = now
                    revoked += 1
            return revoked

    def delete_stale_tokens(self, cutoff: datetime) -> int:
        with self._data_lock:
            stale = [
                h
                for h, token in self.tokens.items()
                if token.expires_at <= cutoff
                or (token.revoked_at is not None and token.revoked_at <= cutoff)
            ]
            for h in stale:
                del self.tokens[h]
            return len(stale)

    # -- registered clients ---------------------------------------------

    def create_client(self, client: OAuthClient) -> OAuthClient:
        with self._data_lock:
            if client.client_id in self.clients:
                self.logger.warning("memory_store_constraint_violation", field="client_id")
                raise ConstraintViolation("client already exists", {"field": "client_id"})
            self.clients[client.client_id] = dataclasses.replace(client)
            return client

    def get_client(self, client_id: str) -> Optional[OAuthClient]:
        with self._data_lock:
            client = self.clients.get(client_id)
            return dataclasses.replace(client) if client else None


class MemoryProjectRepository:
    """Per-process project/task repository backing the ``pm.*`` tools."""

    def __init__(self) -> None:
        self.projects: Dict[str, Project] = {}
        self.tasks: Dict[str, Task] = {}
        self._data_lock = threading.RLock()

    def create_project(
        self, owner_id: str, name: str, description: Optional[str] = None
    ) -> Project:
        project = Project(
            id=str(uuid.uuid4()), owner_id=owner_id, name=name, description=description
        )
        with self._data_lock:
            self.projects[project.id] = project
        return project

    def list_projects(self, owner_id: str) -> List[Project]:
        with self._data_lock:
            owned = [p for p in self.projects.values() if p.owner_id == owner_id]
        return sorted(owned, key=lambda p: p.created_at)

    def get_project(self, owner_id: str, project_id: str) -> Optional[Project]:
        with self._data_lock:
            project = self.projects.get(project_id)
        if not project or project.owner_id != owner_id:
            return None
        return project

    def create_task(
        self,
        owner_id: str,
        project_id: str,
        title: str,
        *,
        description: Optional[str] = None,
        priority: int = 0,
    ) -> Task:
        task = Task(
            id=str(uuid.uuid4()),
            project_id=project_id,
            owner_id=owner_id,
            title=title,
            description=description,
            priority=priority,
        )
        with self._data_lock:
            self.tasks[task.id] = task
        return task

    def list_tasks(
        self, owner_id: str, project_id: str, *, status: Optional[str] = None
    ) -> List[Task]:
        with self._data_lock:
            matches = [
                t
                for t in self.tasks.values()
                if t.owner_id == owner_id
                and t.project_id == project_id
                and (status is None or t.status == status)
            ]
        return sorted(matches, key=lambda t: (-t.priority, t.created_at))

    def update_task(self, owner_id: str, task_id: str, **changes) -> Optional[Task]:
        with self._data_lock:
            task = self.tasks.get(task_id)
            if not task or task.owner_id != owner_id:
                return None
            for name, value in changes.items():
                if value is not None:
                    setattr(task, name, value)
            task.updated_at = utcnow()
            return task
