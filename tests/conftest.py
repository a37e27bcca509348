"""Shared fixtures: the Orders API exposed through the MCP bridge."""

from __future__ import annotations

from typing import Any, Callable, Dict, Optional

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from mcp_bridge.config import Settings
from mcp_bridge.server import McpBridge
from orders_app import create_orders_app


@pytest.fixture
def settings() -> Settings:
    return Settings(service_name="orders-api", mcp_forward_headers="Authorization,X-Api-Key")


@pytest.fixture
def app(settings: Settings) -> FastAPI:
    return create_orders_app(settings)


@pytest.fixture
def bridge(app: FastAPI) -> McpBridge:
    return app.state.mcp_bridge


@pytest.fixture
def client(app: FastAPI):  # type: ignore[no-untyped-def]
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def rpc(client: TestClient) -> Callable[..., Dict[str, Any]]:
    def call(
        method: str,
        params: Optional[Dict[str, Any]] = None,
        *,
        req_id: Any = 1,
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"jsonrpc": "2.0", "id": req_id, "method": method}
        if params is not None:
            payload["params"] = params
        response = client.post("/mcp", json=payload, headers=headers or {})
        assert response.status_code == 200
        return response.json()

    return call


@pytest.fixture
def call_tool(rpc: Callable[..., Dict[str, Any]]) -> Callable[..., Dict[str, Any]]:
    def call(
        name: str,
        arguments: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {"name": name}
        if arguments is not None:
            params["arguments"] = arguments
        return rpc("tools/call", params, headers=headers)["result"]

    return call
