from __future__ import annotations

import secrets
from datetime import datetime
from typing import Callable, Iterable, Optional, Protocol

from projectflow.logging import get_logger
from projectflow.service.errors import ValidationError
from projectflow.service.pending import validate_redirect_uri
from projectflow.storage.models import OAuthClient, utcnow

logger = get_logger(__name__)

SUPPORTED_GRANT_TYPES = ("authorization_code", "refresh_token")
SUPPORTED_RESPONSE_TYPES = ("code",)
SUPPORTED_AUTH_METHODS = ("none",)


class ClientStore(Protocol):
    def create_client(self, client: OAuthClient) -> OAuthClient: ...

    def get_client(self, client_id: str) -> Optional[OAuthClient]: ...


class ClientRegistry:
    """Dynamic registration of public (secretless) OAuth clients."""

    def __init__(
        self, store: ClientStore, *, clock: Callable[[], datetime] = utcnow
    ) -> None:
        self.store = store
        self._clock = clock

    def register(
        self,
        client_name: str,
        redirect_uris: Iterable[str],
        *,
        grant_types: Optional[Iterable[str]] = None,
        response_types: Optional[Iterable[str]] = None,
        token_endpoint_auth_method: Optional[str] = None,
    ) -> OAuthClient:
        uris = [validate_redirect_uri(uri) for uri in redirect_uris]
        if not uris:
            raise ValidationError(
                "at least one redirect_uri is required", detail={"field": "redirect_uris"}
            )
        grants = list(grant_types or SUPPORTED_GRANT_TYPES)
        unsupported = [g for g in grants if g not in SUPPORTED_GRANT_TYPES]
        if unsupported:
            raise ValidationError(
                "unsupported grant_types", detail={"field": "grant_types", "values": unsupported}
            )
        responses = list(response_types or SUPPORTED_RESPONSE_TYPES)
        if any(r not in SUPPORTED_RESPONSE_TYPES for r in responses):
            raise ValidationError(
                "response_types must be ['code']", detail={"field": "response_types"}
            )
        auth_method = token_endpoint_auth_method or "none"
        if auth_method not in SUPPORTED_AUTH_METHODS:
            raise ValidationError(
                "only public clients (token_endpoint_auth_method=none) are supported",
                detail={"field": "token_endpoint_auth_method"},
            )
        client = OAuthClient(
            client_id=f"pf_{secrets.token_urlsafe(16)}",
            client_name=client_name,
            redirect_uris=uris,
            grant_types=grants,
            response_types=responses,
            token_endpoint_auth_method=auth_method,
            created_at=self._clock(),
        )
        self.store.create_client(client)
        logger.info("oauth_client_registered", client_id=client.client_id, redirect_count=len(uris))
        return client

    def get(self, client_id: str) -> Optional[OAuthClient]:
        return self.store.get_client(client_id)

    def check_redirect(self, client_id: str, redirect_uri: str) -> None:
        """Reject a redirect URI a registered client never declared.

        Unregistered client ids are treated as public clients and pass.
        """
        client = self.store.get_client(client_id)
        if client is None:
            return
        if redirect_uri not in client.redirect_uris:
            logger.warning("redirect_uri_not_registered", client_id=client_id)
            raise ValidationError(
                "redirect_uri is not registered for this client",
                detail={"field": "redirect_uri"},
            )
