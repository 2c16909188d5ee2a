from __future__ import annotations

from datetime import timezone
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from fastapi import APIRouter, Form, Header, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse

from projectflow.api.error_handling import NO_STORE_HEADERS
from projectflow.api.schemas import (
    AuthorizationPendingBody,
    AuthorizationServerMetadata,
    ProtectedResourceMetadata,
    RegisterClientRequest,
    RegisterClientResponse,
    TokenResponse,
)
from projectflow.logging import get_logger
from projectflow.service.errors import (
    RateLimitedError,
    UnsupportedGrantTypeError,
    ValidationError,
)
from projectflow.service.middleware import AuthenticationContext, extract_context
from projectflow.service.runtime import Runtime, check_rate_limit, get_runtime

logger = get_logger(__name__)

router = APIRouter()

GRANT_AUTHORIZATION_CODE = "authorization_code"
GRANT_REFRESH_TOKEN = "refresh_token"


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def _enforce_rate_limit(runtime: Runtime, key: str, limit: int) -> None:
    allowed, _remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, 60, return_remaining=True
    )
    if not allowed:
        logger.warning("rate_limited", key=key)
        raise RateLimitedError(
            "too many requests, retry later", detail={"retry_after": max(1, reset_seconds)}
        )


def _require(value: Optional[str], name: str) -> str:
    if not value:
        raise ValidationError(f"{name} is required", detail={"field": name})
    return value


def _with_query(url: str, **params: Optional[str]) -> str:
    parsed = urlparse(url)
    query = parse_qsl(parsed.query, keep_blank_values=True)
    query.extend((key, value) for key, value in params.items() if value is not None)
    return urlunparse(parsed._replace(query=urlencode(query)))


async def _resolve_human(
    request: Request, runtime: Runtime, authorization: Optional[str]
) -> Optional[AuthenticationContext]:
    """Find the signed-in human from the identity cookie or bearer header."""
    audience = runtime.settings.identity_jwt_audience
    cookie = request.cookies.get(runtime.settings.identity_cookie_name)
    if cookie:
        context = await extract_context(f"Bearer {cookie}", audience, runtime.tokens)
        if context is not None:
            return context
    return await extract_context(authorization, audience, runtime.tokens)


@router.get("/authorize", tags=["oauth"])
async def authorize(
    request: Request,
    client_id: Optional[str] = Query(None, max_length=255),
    redirect_uri: Optional[str] = Query(None, max_length=2048),
    response_type: Optional[str] = Query(None, max_length=32),
    code_challenge: Optional[str] = Query(None, max_length=256),
    code_challenge_method: Optional[str] = Query(None, max_length=16),
    scope: Optional[str] = Query(None, max_length=1024),
    state: Optional[str] = Query(None, max_length=1024),
    authorization: Optional[str] = Header(None),
):
    """Begin or resume a PKCE authorization and, once a human is signed in, issue the code."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"authorize:{_client_ip(request)}",
        runtime.settings.authorize_rate_limit_per_minute,
    )
    if response_type != "code":
        raise ValidationError(
            "response_type must be 'code'",
            detail={"field": "response_type"},
            error_code="unsupported_response_type",
        )
    client_id = _require(client_id, "client_id")
    redirect_uri = _require(redirect_uri, "redirect_uri")
    runtime.clients.check_redirect(client_id, redirect_uri)

    pending = runtime.pending.begin(
        client_id,
        redirect_uri,
        code_challenge,
        code_challenge_method or "S256",
        scope,
        state,
    )

    human = await _resolve_human(request, runtime, authorization)
    if human is None:
        login = runtime.settings.resolved_login_url
        verification_uri = f"{login}?{urlencode({'next': str(request.url)})}"
        body = AuthorizationPendingBody(
            error_description="sign in at verification_uri, then retry this request",
            verification_uri=verification_uri,
        )
        return JSONResponse(status_code=401, content=body.model_dump(), headers=NO_STORE_HEADERS)

    issued = runtime.pending.complete(pending.code_challenge, human.user_id)
    location = _with_query(pending.redirect_uri, code=issued.code, state=state)
    return RedirectResponse(location, status_code=302, headers=NO_STORE_HEADERS)


@router.post("/token", tags=["oauth"])
async def token(
    request: Request,
    grant_type: Optional[str] = Form(None),
    code: Optional[str] = Form(None),
    redirect_uri: Optional[str] = Form(None),
    client_id: Optional[str] = Form(None),
    code_verifier: Optional[str] = Form(None),
    refresh_token: Optional[str] = Form(None),
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"token:{client_id or _client_ip(request)}",
        runtime.settings.token_rate_limit_per_minute,
    )
    if not grant_type:
        raise ValidationError("grant_type is required", detail={"field": "grant_type"})

    if grant_type == GRANT_AUTHORIZATION_CODE:
        grant = runtime.codes.redeem(
            _require(code, "code"),
            _require(client_id, "client_id"),
            _require(redirect_uri, "redirect_uri"),
            _require(code_verifier, "code_verifier"),
        )
        issued = runtime.tokens.issue_tokens(grant.user_id, grant.client_id, grant.scope)
    elif grant_type == GRANT_REFRESH_TOKEN:
        issued = runtime.tokens.refresh(
            _require(refresh_token, "refresh_token"), _require(client_id, "client_id")
        )
    else:
        raise UnsupportedGrantTypeError(
            f"grant_type '{grant_type}' is not supported", detail={"field": "grant_type"}
        )

    body = TokenResponse(**issued.as_response())
    return JSONResponse(content=body.model_dump(), headers=NO_STORE_HEADERS)


@router.post("/revoke", tags=["oauth"])
async def revoke(
    token: Optional[str] = Form(None),
    token_type_hint: Optional[str] = Form(None),
):
    """RFC 7009 revocation; unknown or already revoked tokens still get 200."""
    runtime = get_runtime()
    await runtime.tokens.revoke(token)
    logger.info("revocation_requested", hint=token_type_hint)
    return JSONResponse(content={}, headers=NO_STORE_HEADERS)


@router.post("/register", status_code=201, tags=["oauth"])
async def register(body: RegisterClientRequest):
    runtime = get_runtime()
    client = runtime.clients.register(
        body.client_name,
        body.redirect_uris,
        grant_types=body.grant_types,
        response_types=body.response_types,
        token_endpoint_auth_method=body.token_endpoint_auth_method,
    )
    issued_at = client.created_at
    if issued_at.tzinfo is None:
        issued_at = issued_at.replace(tzinfo=timezone.utc)
    response = RegisterClientResponse(
        client_id=client.client_id,
        client_id_issued_at=int(issued_at.timestamp()),
        client_name=client.client_name,
        redirect_uris=client.redirect_uris,
        grant_types=client.grant_types,
        response_types=client.response_types,
        token_endpoint_auth_method=client.token_endpoint_auth_method,
    )
    return JSONResponse(status_code=201, content=response.model_dump(), headers=NO_STORE_HEADERS)


def _authorization_server_metadata(runtime: Runtime) -> AuthorizationServerMetadata:
    issuer = runtime.settings.issuer
    return AuthorizationServerMetadata(
        issuer=issuer,
        authorization_endpoint=f"{issuer}/authorize",
        token_endpoint=f"{issuer}/token",
        registration_endpoint=f"{issuer}/register",
        revocation_endpoint=f"{issuer}/revoke",
        scopes_supported=list(runtime.settings.supported_scopes),
    )


@router.get("/.well-known/oauth-authorization-server", tags=["discovery"])
async def oauth_authorization_server():
    return _authorization_server_metadata(get_runtime()).model_dump()


@router.get("/.well-known/openid-configuration", tags=["discovery"])
async def openid_configuration():
    return _authorization_server_metadata(get_runtime()).model_dump()


@router.get("/.well-known/oauth-protected-resource", tags=["discovery"])
async def oauth_protected_resource():
    settings = get_runtime().settings
    return ProtectedResourceMetadata(
        resource=settings.resource_audience,
        authorization_servers=[settings.issuer],
        scopes_supported=list(settings.supported_scopes),
    ).model_dump()
