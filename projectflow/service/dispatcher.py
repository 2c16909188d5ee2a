"""JSON-RPC 2.0 dispatch with per-method authentication.

A request moves through parse, auth check, routing and response. Every
failure along the way becomes a protocol error envelope carrying the
request id (or null when the envelope itself was unreadable); nothing a
handler raises escapes ``dispatch``.
"""
from __future__ import annotations

import inspect
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Iterable, Mapping, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    StrictFloat,
    StrictInt,
    StrictStr,
)
from pydantic import ValidationError as PydanticValidationError

from projectflow.logging import get_logger, sanitize_error_message
from projectflow.service.errors import ValidationError
from projectflow.service.middleware import AuthenticationContext

logger = get_logger(__name__)

JSONRPC_VERSION = "2.0"

INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
UNAUTHORIZED = -32001

RequestId = Union[StrictStr, StrictInt, StrictFloat, None]
Handler = Callable[
    [BaseModel, Optional[AuthenticationContext]], Union[Any, Awaitable[Any]]
]


class ProtocolError(Exception):
    """Raised by handlers to answer with a specific protocol error code."""

    def __init__(self, code: int, message: str, data: Any = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data


class EmptyParams(BaseModel):
    model_config = ConfigDict(extra="allow")


@dataclass(frozen=True)
class ProtocolMethod:
    name: str
    requires_auth: bool
    handler: Handler
    params_model: type[BaseModel] = EmptyParams
    description: str = ""


@dataclass(frozen=True)
class DiscoveryLinks:
    """Where an unauthenticated client learns how to start the OAuth flow."""

    authorization_uri: str
    resource_metadata: str

    def challenge_header(self) -> str:
        return (
            'Bearer error="invalid_token", '
            f'authorization_uri="{self.authorization_uri}", '
            f'resource_metadata="{self.resource_metadata}"'
        )


@dataclass
class DispatchResult:
    status_code: int
    body: dict[str, Any]
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def is_error(self) -> bool:
        return "error" in self.body


class RpcRequest(BaseModel):
    """Inbound envelope; ``version`` is accepted as an alias of ``jsonrpc``."""

    model_config = ConfigDict(extra="ignore")

    jsonrpc: str = Field(validation_alias=AliasChoices("jsonrpc", "version"))
    id: RequestId = None
    method: str = Field(min_length=1, max_length=256)
    params: Union[dict[str, Any], list[Any], None] = None


def _param_errors(exc: PydanticValidationError) -> list[dict[str, str]]:
    return [
        {"field": ".".join(str(part) for part in err.get("loc", ())), "message": err.get("msg", "")}
        for err in exc.errors()
    ]


class ProtocolDispatcher:
    """Routes parsed calls through one static table built at startup."""

    def __init__(self, methods: Iterable[ProtocolMethod], discovery: DiscoveryLinks) -> None:
        table: dict[str, ProtocolMethod] = {}
        for method in methods:
            if method.name in table:
                raise ValueError(f"duplicate protocol method: {method.name}")
            table[method.name] = method
        self.methods: Mapping[str, ProtocolMethod] = MappingProxyType(table)
        self.discovery = discovery

    def requires_auth(self, name: str) -> bool:
        method = self.methods.get(name)
        return bool(method and method.requires_auth)

    @staticmethod
    def _result(request_id: RequestId, result: Any) -> DispatchResult:
        return DispatchResult(
            status_code=200,
            body={"jsonrpc": JSONRPC_VERSION, "id": request_id, "result": result},
        )

    @staticmethod
    def _error(
        request_id: RequestId,
        code: int,
        message: str,
        data: Any = None,
        *,
        status_code: int = 200,
        headers: Optional[dict[str, str]] = None,
    ) -> DispatchResult:
        error: dict[str, Any] = {"code": code, "message": message}
        if data is not None:
            error["data"] = data
        return DispatchResult(
            status_code=status_code,
            body={"jsonrpc": JSONRPC_VERSION, "id": request_id, "error": error},
            headers=headers or {},
        )

    def unauthorized(self, request_id: RequestId) -> DispatchResult:
        return self._error(
            request_id,
            UNAUTHORIZED,
            "Authentication required",
            {
                "oauth_required": True,
                "error_type": "authentication_required",
                "authorization_uri": self.discovery.authorization_uri,
                "resource_metadata": self.discovery.resource_metadata,
            },
            status_code=401,
            headers={"WWW-Authenticate": self.discovery.challenge_header()},
        )

    async def dispatch(
        self, payload: Any, context: Optional[AuthenticationContext]
    ) -> DispatchResult:
        # Parse
        try:
            request = RpcRequest.model_validate(payload)
        except PydanticValidationError as exc:
            logger.warning("rpc_invalid_request", errors=_param_errors(exc))
            return self._error(None, INVALID_REQUEST, "Invalid Request")
        if request.jsonrpc != JSONRPC_VERSION:
            logger.warning("rpc_invalid_version", version=request.jsonrpc)
            return self._error(None, INVALID_REQUEST, "Invalid Request")
        request_id = request.id

        # AuthCheck
        method = self.methods.get(request.method)
        if method is None:
            logger.info("rpc_method_not_found", method=request.method)
            return self._error(
                request_id, METHOD_NOT_FOUND, f"Method not found: {request.method}"
            )
        if method.requires_auth and context is None:
            logger.info("rpc_unauthorized", method=request.method)
            return self.unauthorized(request_id)

        # Route
        if isinstance(request.params, list):
            return self._error(request_id, INVALID_PARAMS, "params must be an object")
        try:
            params = method.params_model.model_validate(request.params or {})
        except PydanticValidationError as exc:
            return self._error(
                request_id, INVALID_PARAMS, "Invalid params", _param_errors(exc)
            )

        started = time.perf_counter()
        try:
            result = method.handler(params, context)
            if inspect.isawaitable(result):
                result = await result
        except ProtocolError as exc:
            logger.info("rpc_handler_protocol_error", method=method.name, code=exc.code)
            return self._error(request_id, exc.code, exc.message, exc.data)
        except ValidationError as exc:
            return self._error(
                request_id,
                INVALID_PARAMS,
                sanitize_error_message(exc.message),
                exc.detail or None,
            )
        except PydanticValidationError as exc:
            return self._error(
                request_id, INVALID_PARAMS, "Invalid params", _param_errors(exc)
            )
        except Exception as exc:
            logger.exception(
                "rpc_handler_failed",
                method=method.name,
                error_type=type(exc).__name__,
            )
            return self._error(request_id, INTERNAL_ERROR, "Internal error")

        logger.debug(
            "rpc_dispatched",
            method=method.name,
            user_id=context.user_id if context else None,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        return self._result(request_id, result)
