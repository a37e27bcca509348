"""MCP method handling on top of the tool registry and dispatcher."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, StrictStr, ValidationError
from starlette.requests import Request

from .config import Settings
from .dispatcher import DispatchCancelledError, ToolDispatcher
from .governance import ANONYMOUS, CallerIdentity, GovernanceChain
from .jsonrpc import (
    INTERNAL_ERROR,
    InvalidParamsError,
    JsonRpcCodecError,
    JsonRpcException,
    JsonRpcRequest,
    JsonRpcResponse,
    MethodNotFoundError,
    decode_request,
)
from .models import Arguments, ToolDescriptor, ToolResult
from .observability import InvocationRecorder
from .schema import empty_schema
from .tool_registry import ToolRegistry

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"

# Marker result for notifications, which get no response envelope.
NO_RESPONSE = object()


class ToolCallParams(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: StrictStr
    arguments: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class CallContext:
    request: Optional[Request] = None
    identity: CallerIdentity = ANONYMOUS
    correlation_id: Optional[str] = None
    cancel_event: Optional[asyncio.Event] = None


class McpToolService:
    def __init__(
        self,
        registry: ToolRegistry,
        dispatcher: ToolDispatcher,
        governance: GovernanceChain,
        recorder: InvocationRecorder,
    ) -> None:
        self.registry = registry
        self.dispatcher = dispatcher
        self.governance = governance
        self.recorder = recorder

    async def list_tools(self, context: CallContext) -> List[Dict[str, Any]]:
        definitions: List[Dict[str, Any]] = []
        for descriptor in self.registry.get_tools():
            if await self.governance.is_visible(descriptor, context.identity, context.request):
                definitions.append(tool_definition(descriptor))
        return definitions

    async def call_tool(
        self, name: str, arguments: Optional[Mapping[str, Any]], context: CallContext
    ) -> ToolResult:
        descriptor = self.registry.get_tool(name)
        if descriptor is None or not await self.governance.is_visible(
            descriptor, context.identity, context.request
        ):
            logger.warning("Unknown tool requested: %s (correlation_id=%s)", name, context.correlation_id)
            return ToolResult.error(f"Unknown tool: {name}")

        started = time.perf_counter()
        result = await self.dispatcher.dispatch(
            descriptor,
            Arguments(arguments),
            cancel_event=context.cancel_event,
            source_request=context.request,
            identity=context.identity,
            correlation_id=context.correlation_id,
        )
        duration_ms = (time.perf_counter() - started) * 1000
        self.recorder.record(
            descriptor.name,
            result.status_code,
            not result.is_success,
            duration_ms,
            context.correlation_id,
        )

        if result.is_success:
            return ToolResult.success(result.content, result.content_type)
        return ToolResult.error(f"Tool '{name}' failed with HTTP {result.status_code}: {result.content}")


class McpProtocolHandler:
    """JSON-RPC state machine for the MCP methods.

    Every outcome, protocol errors included, is an envelope; the transport
    answers with HTTP 200 unless the method was a notification.
    """

    def __init__(self, settings: Settings, tools: McpToolService) -> None:
        self.settings = settings
        self.tools = tools
        self._methods: Dict[str, Callable[[JsonRpcRequest, CallContext], Awaitable[Any]]] = {
            "initialize": self.handle_initialize,
            "notifications/initialized": self.handle_initialized,
            "tools/list": self.handle_tools_list,
            "tools/call": self.handle_tools_call,
        }

    async def handle(self, payload: bytes, context: CallContext) -> Optional[JsonRpcResponse]:
        try:
            request = decode_request(payload)
        except JsonRpcCodecError as exc:
            logger.info("Rejected JSON-RPC request: %s", exc.message)
            return exc.to_response()

        method = self._methods.get(request.method)
        try:
            if method is None:
                raise MethodNotFoundError(f"Method not found: {request.method}")
            result = await method(request, context)
        except JsonRpcException as exc:
            logger.info("JSON-RPC error %s for method=%s: %s", exc.code, request.method, exc.message)
            return JsonRpcResponse.failure(request.id, exc.code, exc.message, exc.data)
        except DispatchCancelledError:
            raise
        except Exception as exc:
            logger.exception("Internal error handling method=%s", request.method)
            return JsonRpcResponse.failure(request.id, INTERNAL_ERROR, "Internal error", str(exc))

        if result is NO_RESPONSE:
            return None
        return JsonRpcResponse(id=request.id, result=result)

    async def handle_initialize(self, request: JsonRpcRequest, context: CallContext) -> Dict[str, Any]:
        return {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {"tools": {"listChanged": False}},
            "serverInfo": {
                "name": self.settings.service_name,
                "version": self.settings.mcp_server_version,
            },
        }

    async def handle_initialized(self, request: JsonRpcRequest, context: CallContext) -> object:
        return NO_RESPONSE

    async def handle_tools_list(self, request: JsonRpcRequest, context: CallContext) -> Dict[str, Any]:
        return {"tools": await self.tools.list_tools(context)}

    async def handle_tools_call(self, request: JsonRpcRequest, context: CallContext) -> Dict[str, Any]:
        if not isinstance(request.params, dict):
            raise InvalidParamsError("Invalid params: expected an object with a 'name' field")
        try:
            params = ToolCallParams.model_validate(request.params)
        except ValidationError as exc:
            details = [
                {"loc": [str(part) for part in error["loc"]], "msg": error["msg"]}
                for error in exc.errors()
            ]
            raise InvalidParamsError(
                "Invalid params: 'name' must be a string and 'arguments' an object",
                data=details,
            ) from exc

        result = await self.tools.call_tool(params.name, params.arguments, context)
        return result.to_content()


def tool_definition(descriptor: ToolDescriptor) -> Dict[str, Any]:
    schema = json.loads(descriptor.input_schema or empty_schema())
    return {
        "name": descriptor.name,
        "description": tool_description(descriptor),
        "inputSchema": schema,
    }


def tool_description(descriptor: ToolDescriptor) -> str:
    route = f"[{descriptor.http_method} {descriptor.path_template}]"
    description = descriptor.description.strip()
    text = f"{description} {route}" if description else route
    if descriptor.tags:
        text += f" (tags: {', '.join(descriptor.tags)})"
    return text
