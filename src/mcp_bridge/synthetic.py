"""Synthetic ASGI requests that reproduce a real inbound call to a route."""

from __future__ import annotations

import asyncio
import json
import re
from typing import Any, Dict, List, Mapping, Optional, Tuple
from urllib.parse import quote, urlencode

from starlette.requests import Request
from starlette.types import Message, Scope

from .config import Settings
from .governance import CallerIdentity, attach_identity
from .jsonrpc import JsonNumber
from .metadata import route_matches
from .models import Arguments, BodyDescriptor, ToolDescriptor
from .naming import match_name, normalize_name

_PLACEHOLDER = re.compile(r"\{([a-zA-Z_][a-zA-Z0-9_]*)(?::([a-zA-Z_][a-zA-Z0-9_]*))?\}")

# Set by the builder itself; never copied from the originating request.
_RESERVED_HEADERS = {"host", "content-type", "content-length", "transfer-encoding"}


class ArgumentBindingError(ValueError):
    pass


def to_argument_string(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, JsonNumber):
        return value.text
    if isinstance(value, (int, float)):
        return json.dumps(value)
    return json.dumps(value, separators=(",", ":"))


class SyntheticRequest:
    """An ASGI HTTP scope plus a receive channel for one dispatch.

    The body is delivered in a single message. Afterwards `receive` blocks the
    way a live connection does until `close` reports the client as gone.
    """

    def __init__(self, scope: Scope, body: bytes = b"") -> None:
        self.scope = scope
        self.body = body
        self._body_sent = False
        self._closed = asyncio.Event()

    async def receive(self) -> Message:
        if not self._body_sent:
            self._body_sent = True
            return {"type": "http.request", "body": self.body, "more_body": False}
        await self._closed.wait()
        return {"type": "http.disconnect"}

    def close(self) -> None:
        self._closed.set()

    @property
    def request(self) -> Request:
        return Request(self.scope, self.receive)


class SyntheticRequestBuilder:
    def __init__(self, settings: Settings) -> None:
        self.forward_headers = settings.forward_headers()
        self.correlation_id_header = settings.mcp_correlation_id_header.lower()
        self.property_naming = settings.mcp_property_naming

    def build(
        self,
        descriptor: ToolDescriptor,
        arguments: Mapping[str, Any],
        state: Dict[str, Any],
        source_request: Optional[Request] = None,
        identity: Optional[CallerIdentity] = None,
        correlation_id: Optional[str] = None,
    ) -> SyntheticRequest:
        if not isinstance(arguments, Arguments):
            arguments = Arguments(arguments)

        path, raw_path = self._build_path(descriptor, arguments)
        body = self._build_body(descriptor, arguments)
        source_scope: Scope = source_request.scope if source_request is not None else {}

        scope: Dict[str, Any] = {
            "type": "http",
            "asgi": {"version": "3.0", "spec_version": "2.3"},
            "http_version": "1.1",
            "method": descriptor.http_method.upper(),
            "scheme": source_scope.get("scheme", "https"),
            "server": source_scope.get("server"),
            "client": source_scope.get("client"),
            "root_path": "",
            "path": path,
            "raw_path": raw_path.encode("utf-8"),
            "query_string": self._build_query_string(descriptor, arguments).encode("ascii"),
            "headers": self._build_headers(source_request, correlation_id, body),
            "state": state,
            "extensions": {},
        }
        if identity is not None:
            attach_identity(scope, identity)

        if not route_matches(descriptor.operation, scope):
            raise ArgumentBindingError(
                f"path {path!r} does not match route {descriptor.http_method} {descriptor.path_template}"
            )
        return SyntheticRequest(scope, body)

    def _build_path(self, descriptor: ToolDescriptor, arguments: Arguments) -> Tuple[str, str]:
        for parameter in descriptor.route_parameters:
            if parameter.name not in arguments:
                raise ArgumentBindingError(f"missing required route parameter '{parameter.name}'")

        def value_for(match: re.Match) -> str:
            name = match.group(1)
            if name not in arguments:
                raise ArgumentBindingError(f"missing required route parameter '{name}'")
            return to_argument_string(arguments[name])

        def encoded(match: re.Match) -> str:
            # The path convertor spans segments, so its slashes stay literal.
            safe = "/" if match.group(2) == "path" else ""
            return quote(value_for(match), safe=safe)

        template = descriptor.path_template
        return _PLACEHOLDER.sub(value_for, template), _PLACEHOLDER.sub(encoded, template)

    def _build_query_string(self, descriptor: ToolDescriptor, arguments: Arguments) -> str:
        pairs: List[Tuple[str, str]] = []
        for parameter in descriptor.query_parameters:
            if parameter.name not in arguments:
                continue
            value = arguments[parameter.name]
            if value is None:
                continue
            if parameter.kind == "array" and isinstance(value, (list, tuple)):
                pairs.extend((parameter.name, to_argument_string(item)) for item in value)
            else:
                pairs.append((parameter.name, to_argument_string(value)))
        return urlencode(pairs, quote_via=quote)

    def _build_body(self, descriptor: ToolDescriptor, arguments: Arguments) -> bytes:
        body = descriptor.body
        if body is None:
            return b""

        if not body.flatten:
            if body.parameter_name not in arguments:
                return b""
            payload: Any = arguments[body.parameter_name]
        else:
            bound = {name.lower() for name in descriptor.bound_names}
            payload = {
                self._wire_name(key, body): value
                for key, value in arguments.items()
                if key.lower() not in bound
            }
            if not payload and not body.required:
                return b""
        return json.dumps(payload, separators=(",", ":")).encode("utf-8")

    def _wire_name(self, key: str, body: BodyDescriptor) -> str:
        if body.property_names:
            matched = match_name(key, body.property_names)
            if matched:
                return matched
        return normalize_name(key, self.property_naming)

    def _build_headers(
        self, source_request: Optional[Request], correlation_id: Optional[str], body: bytes
    ) -> List[Tuple[bytes, bytes]]:
        host = source_request.headers.get("host") if source_request is not None else None
        headers: List[Tuple[bytes, bytes]] = [(b"host", (host or "localhost").encode("latin-1"))]

        if source_request is not None:
            for name in self.forward_headers:
                if name.lower() in _RESERVED_HEADERS:
                    continue
                for value in source_request.headers.getlist(name):
                    headers.append((name.lower().encode("latin-1"), value.encode("latin-1")))

        if correlation_id and not any(key == self.correlation_id_header.encode("latin-1") for key, _ in headers):
            headers.append(
                (self.correlation_id_header.encode("latin-1"), correlation_id.encode("latin-1"))
            )

        if body:
            headers.append((b"content-type", b"application/json"))
            headers.append((b"content-length", str(len(body)).encode("latin-1")))
        return headers
