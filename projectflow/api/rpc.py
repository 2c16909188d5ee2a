from __future__ import annotations

import json
from typing import Any, Optional

from fastapi import APIRouter, Header, Request
from fastapi.responses import JSONResponse

from projectflow.logging import get_logger
from projectflow.service.dispatcher import INVALID_REQUEST, JSONRPC_VERSION
from projectflow.service.middleware import extract_context
from projectflow.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter()

# Requests larger than this are rejected before JSON parsing
MAX_RPC_BODY_BYTES = 1024 * 1024


def _invalid_request(message: str = "Invalid Request") -> JSONResponse:
    return JSONResponse(
        content={
            "jsonrpc": JSONRPC_VERSION,
            "id": None,
            "error": {"code": INVALID_REQUEST, "message": message},
        }
    )


@router.post("/rpc", tags=["rpc"])
async def rpc(request: Request, authorization: Optional[str] = Header(None)):
    runtime = get_runtime()
    raw = await request.body()
    if len(raw) > MAX_RPC_BODY_BYTES:
        return _invalid_request("request body too large")
    try:
        payload: Any = json.loads(raw)
    except (ValueError, UnicodeDecodeError):
        logger.info("rpc_body_not_json", size=len(raw))
        return _invalid_request()

    context = await extract_context(
        authorization, runtime.settings.resource_audience, runtime.tokens
    )
    result = await runtime.dispatcher.dispatch(payload, context)
    return JSONResponse(
        status_code=result.status_code, content=result.body, headers=result.headers
    )


@router.get("/rpc", tags=["rpc"])
async def rpc_description():
    runtime = get_runtime()
    discovery = runtime.dispatcher.discovery
    return {
        "endpoint": runtime.settings.resource_audience,
        "transport": "POST application/json, JSON-RPC 2.0",
        "authentication": "OAuth 2.1 bearer token (authorization code + PKCE)",
        "authorization_server_metadata": discovery.authorization_uri,
        "protected_resource_metadata": discovery.resource_metadata,
        "methods": [
            {"name": name, "requires_auth": method.requires_auth}
            for name, method in runtime.dispatcher.methods.items()
        ],
    }
