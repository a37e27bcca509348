from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, List

import pytest
from starlette.authentication import SimpleUser

from mcp_bridge.dispatcher import DispatchCancelledError
from mcp_bridge.governance import CallerIdentity
from mcp_bridge.protocol import PROTOCOL_VERSION, CallContext, tool_description
from mcp_bridge.server import McpBridge

ADMIN = CallerIdentity(SimpleUser("admin"), frozenset({"authenticated", "Admin"}))


async def _handle(bridge: McpBridge, payload: Dict[str, Any], context: CallContext = CallContext()) -> Any:
    response = await bridge.handler.handle(json.dumps(payload).encode(), context)
    return None if response is None else response.to_dict()


def _call(name: Any, arguments: Any = None, req_id: int = 1) -> Dict[str, Any]:
    params: Dict[str, Any] = {"name": name}
    if arguments is not None:
        params["arguments"] = arguments
    return {"jsonrpc": "2.0", "id": req_id, "method": "tools/call", "params": params}


def _names(response: Dict[str, Any]) -> List[str]:
    return [tool["name"] for tool in response["result"]["tools"]]


@pytest.mark.asyncio
async def test_initialize(bridge: McpBridge) -> None:
    response = await _handle(bridge, {"jsonrpc": "2.0", "id": 1, "method": "initialize", "params": {}})

    assert response["result"] == {
        "protocolVersion": PROTOCOL_VERSION,
        "capabilities": {"tools": {"listChanged": False}},
        "serverInfo": {"name": "orders-api", "version": "1.0.0"},
    }


@pytest.mark.asyncio
async def test_initialized_notification_has_no_response(bridge: McpBridge) -> None:
    assert await _handle(bridge, {"jsonrpc": "2.0", "method": "notifications/initialized"}) is None


@pytest.mark.asyncio
async def test_unknown_method(bridge: McpBridge) -> None:
    response = await _handle(bridge, {"jsonrpc": "2.0", "id": 7, "method": "resources/list"})

    assert response == {
        "jsonrpc": "2.0",
        "id": 7,
        "error": {"code": -32601, "message": "Method not found: resources/list"},
    }


@pytest.mark.asyncio
async def test_decode_failure_is_an_envelope(bridge: McpBridge) -> None:
    response = await bridge.handler.handle(b"{oops", CallContext())

    assert response.to_dict()["error"]["code"] == -32700


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("params", "bad_field"),
    [
        ({"name": 5}, "name"),
        ({"arguments": {}}, "name"),
        ({"name": "get_order", "arguments": [1]}, "arguments"),
        ({"name": "get_order", "arguments": "id=1"}, "arguments"),
    ],
)
async def test_invalid_call_params(bridge: McpBridge, params: Dict[str, Any], bad_field: str) -> None:
    response = await _handle(bridge, {"jsonrpc": "2.0", "id": 2, "method": "tools/call", "params": params})

    error = response["error"]
    assert error["code"] == -32602
    assert [detail["loc"][0] for detail in error["data"]] == [bad_field]


@pytest.mark.asyncio
async def test_call_params_must_be_an_object(bridge: McpBridge) -> None:
    response = await _handle(bridge, {"jsonrpc": "2.0", "id": 3, "method": "tools/call", "params": ["get_order"]})

    assert response["error"]["code"] == -32602
    assert "data" not in response["error"]


@pytest.mark.asyncio
async def test_internal_errors_are_reported(bridge: McpBridge, monkeypatch: pytest.MonkeyPatch) -> None:
    def explode() -> None:
        raise RuntimeError("registry unavailable")

    monkeypatch.setattr(bridge.registry, "get_tools", explode)

    response = await _handle(bridge, {"jsonrpc": "2.0", "id": 4, "method": "tools/list"})

    assert response["error"] == {
        "code": -32603,
        "message": "Internal error",
        "data": "registry unavailable",
    }


@pytest.mark.asyncio
async def test_tools_list_respects_governance(bridge: McpBridge) -> None:
    payload = {"jsonrpc": "2.0", "id": 1, "method": "tools/list"}

    anonymous = _names(await _handle(bridge, payload))
    admin = _names(await _handle(bridge, payload, CallContext(identity=ADMIN)))

    assert "admin_health" not in anonymous
    assert "list_reports" not in anonymous
    assert set(admin) - set(anonymous) == {"admin_health", "list_reports"}


@pytest.mark.asyncio
async def test_hidden_tool_is_reported_as_unknown(bridge: McpBridge, caplog: pytest.LogCaptureFixture) -> None:
    response = await _handle(bridge, _call("admin_health"), CallContext(correlation_id="c-7"))

    assert response["result"] == {
        "content": [{"type": "text", "text": "Unknown tool: admin_health"}],
        "isError": True,
    }
    unknown = [r for r in caplog.records if r.getMessage().startswith("Unknown tool requested: admin_health")]
    assert [r.levelno for r in unknown] == [logging.WARNING]
    assert "correlation_id=c-7" in unknown[0].getMessage()


@pytest.mark.asyncio
async def test_tool_failure_is_a_tool_error_not_a_protocol_error(bridge: McpBridge) -> None:
    response = await _handle(bridge, _call("GET_ORDER", {"id": 42}))

    result = response["result"]
    assert result["isError"] is True
    assert result["content"][0]["text"].startswith("Tool 'GET_ORDER' failed with HTTP 404: ")


@pytest.mark.asyncio
async def test_successful_call(bridge: McpBridge) -> None:
    response = await _handle(bridge, _call("get_order", {"ID": 2}))

    result = response["result"]
    assert result["isError"] is False
    assert json.loads(result["content"][0]["text"])["customerName"] == "Bob"


@pytest.mark.asyncio
async def test_cancellation_propagates(bridge: McpBridge) -> None:
    cancel_event = asyncio.Event()
    cancel_event.set()

    with pytest.raises(DispatchCancelledError):
        await _handle(bridge, _call("get_order", {"id": 1}), CallContext(cancel_event=cancel_event))


def test_tool_description_format(bridge: McpBridge) -> None:
    assert tool_description(bridge.registry.get_tool("create_order")) == (
        "Create a new order. [POST /api/orders] (tags: write)"
    )
    assert tool_description(bridge.registry.get_tool("list_orders")) == (
        "List orders, optionally filtered by status. [GET /api/orders]"
    )
    assert tool_description(bridge.registry.get_tool("admin_health")) == (
        "Detailed health for operators. [GET /api/admin/health]"
    )
