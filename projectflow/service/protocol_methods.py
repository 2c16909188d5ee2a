"""The static JSON-RPC method table served on ``/rpc``."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from projectflow.config import Settings
from projectflow.service.dispatcher import (
    INVALID_PARAMS,
    EmptyParams,
    ProtocolError,
    ProtocolMethod,
)
from projectflow.service.errors import NotFoundError
from projectflow.service.middleware import AuthenticationContext
from projectflow.service.tools import ProjectTools

PROTOCOL_VERSION = "2024-11-05"
SERVER_NAME = "projectflow"


class InitializeParams(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    protocol_version: Optional[str] = Field(default=None, alias="protocolVersion")
    capabilities: Dict[str, Any] = Field(default_factory=dict)
    client_info: Dict[str, Any] = Field(default_factory=dict, alias="clientInfo")


class ListParams(BaseModel):
    model_config = ConfigDict(extra="allow")

    cursor: Optional[str] = None


class ToolsCallParams(BaseModel):
    name: str = Field(min_length=1)
    arguments: Dict[str, Any] = Field(default_factory=dict)


class ResourcesReadParams(BaseModel):
    uri: str = Field(min_length=1)


class PromptsGetParams(BaseModel):
    name: str = Field(min_length=1)
    arguments: Dict[str, str] = Field(default_factory=dict)


def build_method_table(tools: ProjectTools, settings: Settings) -> List[ProtocolMethod]:
    """Bind every protocol method to its handler; protected ones need a context."""

    def initialize(params: InitializeParams, context: Optional[AuthenticationContext]) -> Dict[str, Any]:
        return {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {
                "tools": {"listChanged": False},
                "resources": {"subscribe": False, "listChanged": False},
                "prompts": {"listChanged": False},
            },
            "serverInfo": {"name": SERVER_NAME, "version": settings.build_sha},
            "instructions": (
                "Authenticate with OAuth 2.1 + PKCE using "
                f"{settings.issuer}/.well-known/oauth-authorization-server "
                "before calling tools."
            ),
        }

    def ping(params: EmptyParams, context: Optional[AuthenticationContext]) -> Dict[str, Any]:
        return {}

    def initialized(params: EmptyParams, context: Optional[AuthenticationContext]) -> Dict[str, Any]:
        return {}

    def tools_list(params: ListParams, context: Optional[AuthenticationContext]) -> Dict[str, Any]:
        return {"tools": tools.list_tools()}

    def tools_call(params: ToolsCallParams, context: AuthenticationContext) -> Dict[str, Any]:
        if params.name not in tools.catalog:
            raise ProtocolError(INVALID_PARAMS, f"Unknown tool: {params.name}")
        return tools.call(params.name, params.arguments, context)

    def resources_list(params: ListParams, context: AuthenticationContext) -> Dict[str, Any]:
        return {"resources": tools.list_resources(context.user_id)}

    def resources_read(params: ResourcesReadParams, context: AuthenticationContext) -> Dict[str, Any]:
        try:
            contents = tools.read_resource(context.user_id, params.uri)
        except NotFoundError as exc:
            raise ProtocolError(INVALID_PARAMS, exc.message, {"uri": params.uri}) from exc
        return {"contents": [contents]}

    def prompts_list(params: ListParams, context: AuthenticationContext) -> Dict[str, Any]:
        return {"prompts": tools.list_prompts()}

    def prompts_get(params: PromptsGetParams, context: AuthenticationContext) -> Dict[str, Any]:
        try:
            return tools.get_prompt(context.user_id, params.name, params.arguments)
        except NotFoundError as exc:
            raise ProtocolError(INVALID_PARAMS, exc.message, exc.detail or None) from exc

    return [
        ProtocolMethod("initialize", False, initialize, InitializeParams),
        ProtocolMethod("ping", False, ping),
        ProtocolMethod("notifications/initialized", False, initialized),
        ProtocolMethod("tools/list", False, tools_list, ListParams),
        ProtocolMethod("tools/call", True, tools_call, ToolsCallParams),
        ProtocolMethod("resources/list", True, resources_list, ListParams),
        ProtocolMethod("resources/read", True, resources_read, ResourcesReadParams),
        ProtocolMethod("prompts/list", True, prompts_list, ListParams),
        ProtocolMethod("prompts/get", True, prompts_get, PromptsGetParams),
    ]
