"""Route metadata source over a FastAPI / Starlette application."""

from __future__ import annotations

import inspect
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Iterable, Iterator, List, Optional, Tuple

from fastapi.routing import APIRoute
from starlette.convertors import FloatConvertor, IntegerConvertor, UUIDConvertor
from starlette.routing import BaseRoute, Match, Route
from starlette.types import ASGIApp, Scope

from .decorators import McpToolMarker, get_marker

logger = logging.getLogger(__name__)

_METHOD_PREFERENCE = ("GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS")

_CONVERTOR_TYPES = {
    IntegerConvertor: int,
    FloatConvertor: float,
    UUIDConvertor: uuid.UUID,
}


@dataclass(frozen=True)
class ParameterMetadata:
    name: str
    source: str
    annotation: Any = str
    required: bool = True
    description: Optional[str] = None
    constraints: Tuple[Any, ...] = ()


@dataclass(frozen=True)
class OperationMetadata:
    marker: McpToolMarker
    http_method: str
    path_template: str
    parameters: Tuple[ParameterMetadata, ...]
    summary: Optional[str]
    route: BaseRoute
    kind: str

    def parameters_from(self, source: str) -> List[ParameterMetadata]:
        return [param for param in self.parameters if param.source == source]


class RouteMetadataSource:
    """Enumerates the marked routes of a host application in registration order.

    FastAPI routes contribute their dependant's path, query and body
    parameters. Plain Starlette routes are free-standing handlers whose only
    parameters are the path placeholders and their convertors.
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    def operations(self) -> Iterator[OperationMetadata]:
        for route in self._routes():
            marker = get_marker(getattr(route, "endpoint", None))
            if marker is None:
                continue
            try:
                operation = self._describe(route, marker)
            except Exception:
                logger.exception("Skipping tool=%s: failed to read route metadata", marker.name)
                continue
            if operation is not None:
                yield operation

    def _describe(self, route: BaseRoute, marker: McpToolMarker) -> Optional[OperationMetadata]:
        if isinstance(route, APIRoute):
            return self._describe_api_route(route, marker)
        if isinstance(route, Route):
            return self._describe_endpoint(route, marker)
        logger.warning(
            "Skipping tool=%s: unsupported route type %s",
            marker.name,
            type(route).__name__,
        )
        return None

    def _routes(self) -> List[BaseRoute]:
        routes = getattr(self.app, "routes", None)
        if routes is None:
            routes = getattr(getattr(self.app, "router", None), "routes", [])
        return list(routes)

    def _describe_api_route(self, route: APIRoute, marker: McpToolMarker) -> OperationMetadata:
        path_params, query_params, body_params = _collect_params(route.dependant)
        parameters: List[ParameterMetadata] = []
        for model_field in path_params:
            parameters.append(_from_model_field(model_field, "path", required=True))
        for model_field in query_params:
            parameters.append(_from_model_field(model_field, "query"))

        # FastAPI folds several body params into one embedded model field.
        body_field = getattr(route, "body_field", None)
        if body_field is None and len(body_params) == 1:
            body_field = body_params[0]
        if body_field is not None:
            parameters.append(_from_model_field(body_field, "body"))

        return OperationMetadata(
            marker=marker,
            http_method=_select_method(route.methods),
            path_template=route.path,
            parameters=tuple(parameters),
            summary=route.summary or _first_paragraph(route.description),
            route=route,
            kind="route",
        )

    def _describe_endpoint(self, route: Route, marker: McpToolMarker) -> OperationMetadata:
        parameters = tuple(
            ParameterMetadata(
                name=name,
                source="path",
                annotation=_CONVERTOR_TYPES.get(type(convertor), str),
            )
            for name, convertor in route.param_convertors.items()
        )
        return OperationMetadata(
            marker=marker,
            http_method=_select_method(route.methods),
            path_template=route.path,
            parameters=parameters,
            summary=_docstring(route.endpoint),
            route=route,
            kind="endpoint",
        )


def route_matches(route: Any, scope: Scope) -> bool:
    """Whether the host route would accept a request with this scope."""
    if not isinstance(route, BaseRoute):
        return True
    match, _ = route.matches(scope)
    return match == Match.FULL


def _collect_params(dependant: Any) -> Tuple[List[Any], List[Any], List[Any]]:
    """Path, query and body fields of a dependant and its sub-dependencies.

    Each name is reported once, at its first occurrence.
    """
    collected: Tuple[List[Any], List[Any], List[Any]] = ([], [], [])
    seen: Tuple[set, set, set] = (set(), set(), set())
    pending = [dependant]
    visited = set()
    while pending:
        current = pending.pop(0)
        if id(current) in visited:
            continue
        visited.add(id(current))
        groups = (
            getattr(current, "path_params", None) or [],
            getattr(current, "query_params", None) or [],
            getattr(current, "body_params", None) or [],
        )
        for index, fields in enumerate(groups):
            for model_field in fields:
                name = _field_name(model_field)
                if name not in seen[index]:
                    seen[index].add(name)
                    collected[index].append(model_field)
        pending.extend(getattr(current, "dependencies", None) or [])
    return collected


def _field_name(model_field: Any) -> str:
    field_info = getattr(model_field, "field_info", None)
    return getattr(field_info, "alias", None) or model_field.name


def _from_model_field(model_field: Any, source: str, required: Optional[bool] = None) -> ParameterMetadata:
    field_info = model_field.field_info
    annotation = getattr(field_info, "annotation", None)
    if annotation is None:
        annotation = getattr(model_field, "type_", Any)
    return ParameterMetadata(
        name=_field_name(model_field),
        source=source,
        annotation=annotation,
        required=field_info.is_required() if required is None else required,
        description=field_info.description,
        constraints=tuple(getattr(field_info, "metadata", ()) or ()),
    )


def _select_method(methods: Optional[Iterable[str]]) -> str:
    available = {method.upper() for method in methods or ()}
    for method in _METHOD_PREFERENCE:
        if method in available:
            return method
    available.discard("HEAD")
    return sorted(available)[0] if available else "GET"


def _docstring(endpoint: Any) -> Optional[str]:
    return _first_paragraph(inspect.getdoc(endpoint) if endpoint is not None else None)


def _first_paragraph(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    return text.strip().split("\n\n", 1)[0].replace("\n", " ").strip() or None
