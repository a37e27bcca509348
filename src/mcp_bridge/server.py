"""MCP endpoint setup for a FastAPI / Starlette host application."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse, Response

from .config import Settings, get_settings
from .dispatcher import DispatchCancelledError, ToolDispatcher
from .governance import (
    GovernanceChain,
    IdentityProvider,
    PolicyCheck,
    VisibilityFilter,
    identity_from_scope,
    wrap_authentication_backends,
)
from .jsonrpc import encode_response
from .logging import configure_logging
from .metadata import RouteMetadataSource
from .observability import InvocationRecorder, MetricsSink, new_correlation_id
from .protocol import PROTOCOL_VERSION, CallContext, McpProtocolHandler, McpToolService
from .schema import SchemaBuilder
from .synthetic import SyntheticRequestBuilder
from .tool_registry import ToolFilter, ToolRegistry

logger = logging.getLogger(__name__)

# Non-standard status for a request whose client went away; nobody reads it.
CLIENT_CLOSED_REQUEST = 499


@dataclass(frozen=True)
class McpBridge:
    settings: Settings
    registry: ToolRegistry
    dispatcher: ToolDispatcher
    tools: McpToolService
    handler: McpProtocolHandler
    identity_provider: IdentityProvider


def build_bridge(
    app: Starlette,
    settings: Optional[Settings] = None,
    *,
    tool_filter: Optional[ToolFilter] = None,
    visibility_filter: Optional[VisibilityFilter] = None,
    policies: Optional[Mapping[str, PolicyCheck]] = None,
    metrics_sink: Optional[MetricsSink] = None,
    identity_provider: Optional[IdentityProvider] = None,
) -> McpBridge:
    settings = settings or get_settings()
    registry = ToolRegistry(
        settings,
        RouteMetadataSource(app),
        SchemaBuilder(settings.mcp_property_naming),
        tool_filter=tool_filter,
    )
    dispatcher = ToolDispatcher(app, SyntheticRequestBuilder(settings))
    tools = McpToolService(
        registry,
        dispatcher,
        GovernanceChain.default(policies=policies, visibility_filter=visibility_filter),
        InvocationRecorder(metrics_sink, enrich_spans=settings.mcp_enable_otel_enrichment),
    )
    return McpBridge(
        settings=settings,
        registry=registry,
        dispatcher=dispatcher,
        tools=tools,
        handler=McpProtocolHandler(settings, tools),
        identity_provider=identity_provider or identity_from_scope,
    )


def mount_mcp(
    app: Starlette,
    settings: Optional[Settings] = None,
    **options: Any,
) -> McpBridge:
    """Expose the application's marked routes as MCP tools.

    Adds a GET/POST route at the configured prefix and stores the assembled
    bridge on `app.state.mcp_bridge`. Tool discovery is deferred until the
    first MCP request, so routes registered after this call are still found.
    Authentication middleware must be added before this call: its backend is
    wrapped so that tool calls reach the host as the MCP caller.
    """
    bridge = build_bridge(app, settings, **options)
    configure_logging(bridge.settings.mcp_log_level)
    if wrap_authentication_backends(app):
        logger.debug("MCP caller identity installed on the host authentication backend")

    prefix = bridge.settings.route_prefix()
    app.add_route(prefix, _mcp_endpoint(bridge), methods=["GET", "POST"], include_in_schema=False)
    app.state.mcp_bridge = bridge
    logger.info("MCP endpoint mounted at %s", prefix)
    return bridge


def _mcp_endpoint(bridge: McpBridge):  # type: ignore[no-untyped-def]
    header = bridge.settings.mcp_correlation_id_header

    async def mcp_endpoint(request: Request) -> Response:
        correlation_id = request.headers.get(header) or new_correlation_id()
        if request.method == "GET":
            response: Response = JSONResponse(_capabilities(bridge.settings))
        else:
            response = await _handle_post(bridge, request, correlation_id)
        response.headers[header] = correlation_id
        return response

    return mcp_endpoint


async def _handle_post(bridge: McpBridge, request: Request, correlation_id: str) -> Response:
    if not _is_json(request.headers.get("content-type")):
        return PlainTextResponse("Content-Type must be application/json", status_code=415)

    body = await request.body()
    identity = await bridge.identity_provider(request)
    cancel_event = asyncio.Event()
    watcher = asyncio.ensure_future(_watch_disconnect(request, cancel_event))
    context = CallContext(
        request=request,
        identity=identity,
        correlation_id=correlation_id,
        cancel_event=cancel_event,
    )
    try:
        envelope = await bridge.handler.handle(body, context)
    except DispatchCancelledError:
        logger.info("Client disconnected; tool call abandoned (correlation_id=%s)", correlation_id)
        return Response(status_code=CLIENT_CLOSED_REQUEST)
    finally:
        watcher.cancel()

    if envelope is None:
        return Response(status_code=204)
    return Response(encode_response(envelope), media_type="application/json")


async def _watch_disconnect(request: Request, cancel_event: asyncio.Event) -> None:
    while True:
        message = await request.receive()
        if message["type"] == "http.disconnect":
            cancel_event.set()
            return


def _is_json(content_type: Optional[str]) -> bool:
    if not content_type:
        return False
    media_type = content_type.split(";", 1)[0].strip().lower()
    return media_type == "application/json" or media_type.endswith("+json")


def _capabilities(settings: Settings) -> Dict[str, Any]:
    return {
        "protocol": "mcp",
        "protocolVersion": PROTOCOL_VERSION,
        "transport": "http",
        "endpoint": settings.route_prefix(),
        "server": {"name": settings.service_name, "version": settings.mcp_server_version},
        "methods": ["initialize", "notifications/initialized", "tools/list", "tools/call"],
        "usage": "POST a JSON-RPC 2.0 request to this endpoint.",
        "example": {"jsonrpc": "2.0", "id": 1, "method": "tools/list"},
    }
