"""Declarative marker that exposes a route endpoint as an MCP tool."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional, Tuple, TypeVar

Endpoint = TypeVar("Endpoint", bound=Callable[..., Any])

MCP_TOOL_ATTRIBUTE = "__mcp_tool__"


@dataclass(frozen=True)
class McpToolMarker:
    name: str
    description: Optional[str] = None
    tags: Tuple[str, ...] = ()
    roles: Tuple[str, ...] = ()
    policy: Optional[str] = None


def mcp_tool(
    name: str,
    *,
    description: Optional[str] = None,
    tags: Optional[Iterable[str]] = None,
    roles: Optional[Iterable[str]] = None,
    policy: Optional[str] = None,
) -> Callable[[Endpoint], Endpoint]:
    """Mark a FastAPI or Starlette endpoint function as an MCP tool.

    The endpoint is left untouched; the marker is only read when the tool
    registry enumerates the application's routes.

      - `roles`: the caller must hold at least one of them to see the tool
      - `policy`: name of an authorization policy passed to `mount_mcp`
    """
    if not name or not name.strip():
        raise ValueError("MCP tool name must be a non-empty string")

    marker = McpToolMarker(
        name=name.strip(),
        description=description,
        tags=tuple(tags or ()),
        roles=tuple(roles or ()),
        policy=policy,
    )

    def wrapper(fn: Endpoint) -> Endpoint:
        setattr(fn, MCP_TOOL_ATTRIBUTE, marker)
        return fn

    return wrapper


def get_marker(endpoint: Any) -> Optional[McpToolMarker]:
    marker = getattr(endpoint, MCP_TOOL_ATTRIBUTE, None)
    return marker if isinstance(marker, McpToolMarker) else None
