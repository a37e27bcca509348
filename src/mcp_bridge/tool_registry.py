"""Tool registry built once from the host application's routes."""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from types import MappingProxyType
from typing import Callable, Dict, Generic, List, Mapping, Optional, TypeVar

from .config import Settings
from .metadata import OperationMetadata, RouteMetadataSource
from .models import BodyDescriptor, ToolDescriptor
from .schema import (
    SchemaBuilder,
    body_property_names,
    describe_parameter,
    empty_schema,
    is_object_type,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

ToolFilter = Callable[[str], bool]


class ComputeOnce(Generic[T]):
    """Lazily computed value; the factory runs at most once across threads."""

    def __init__(self, factory: Callable[[], T]) -> None:
        self._factory = factory
        self._lock = threading.Lock()
        self._computed = False
        self._value: Optional[T] = None

    def get(self) -> T:
        if self._computed:
            return self._value  # type: ignore[return-value]
        with self._lock:
            if not self._computed:
                self._value = self._factory()
                self._computed = True
        return self._value  # type: ignore[return-value]


class ToolRegistry:
    def __init__(
        self,
        settings: Settings,
        metadata_source: RouteMetadataSource,
        schema_builder: SchemaBuilder,
        tool_filter: Optional[ToolFilter] = None,
    ) -> None:
        self.settings = settings
        self.metadata_source = metadata_source
        self.schema_builder = schema_builder
        self.tool_filter = tool_filter
        self._registry: ComputeOnce[Mapping[str, ToolDescriptor]] = ComputeOnce(self._build_registry)

    def get_tools(self) -> List[ToolDescriptor]:
        return list(self._registry.get().values())

    def get_tool(self, name: str) -> Optional[ToolDescriptor]:
        if not name:
            return None
        return self._registry.get().get(name.lower())

    def _build_registry(self) -> Mapping[str, ToolDescriptor]:
        tools: Dict[str, ToolDescriptor] = {}
        allowlist = self.settings.tool_allowlist()

        for operation in self.metadata_source.operations():
            name = operation.marker.name
            if allowlist and name.lower() not in allowlist:
                logger.info("Skipping tool=%s: not in allowlist", name)
                continue
            if self.tool_filter is not None and not self.tool_filter(name):
                logger.info("Skipping tool=%s: excluded by tool filter", name)
                continue

            key = name.lower()
            if key in tools:
                existing = tools[key]
                logger.warning(
                    "Duplicate MCP tool name '%s' on %s %s; keeping %s %s",
                    name,
                    operation.http_method,
                    operation.path_template,
                    existing.http_method,
                    existing.path_template,
                )
                continue

            try:
                descriptor = self._build_descriptor(operation)
            except Exception:
                logger.exception("Skipping tool=%s: failed to read route metadata", name)
                continue

            tools[key] = descriptor
            logger.debug(
                "Registered MCP tool %s -> %s %s",
                descriptor.name,
                descriptor.http_method,
                descriptor.path_template,
            )

        logger.info("Discovered %d MCP tools", len(tools))
        return MappingProxyType(tools)

    def _build_descriptor(self, operation: OperationMetadata) -> ToolDescriptor:
        marker = operation.marker
        route_parameters = tuple(describe_parameter(p) for p in operation.parameters_from("path"))
        query_parameters = tuple(describe_parameter(p) for p in operation.parameters_from("query"))

        body: Optional[BodyDescriptor] = None
        body_parameters = operation.parameters_from("body")
        if body_parameters:
            body_parameter = body_parameters[0]
            body = BodyDescriptor(
                body_type=body_parameter.annotation,
                parameter_name=body_parameter.name,
                property_names=body_property_names(body_parameter.annotation),
                flatten=is_object_type(body_parameter.annotation),
                required=body_parameter.required,
            )

        descriptor = ToolDescriptor(
            name=marker.name,
            description=marker.description or operation.summary or "",
            http_method=operation.http_method,
            path_template=operation.path_template,
            route_parameters=route_parameters,
            query_parameters=query_parameters,
            body=body,
            tags=marker.tags,
            required_roles=marker.roles,
            required_policy=marker.policy,
            operation=operation.route,
            operation_kind=operation.kind,
        )

        if not self.settings.mcp_include_input_schemas:
            return descriptor
        try:
            schema = self.schema_builder.build_schema(descriptor)
        except Exception:
            logger.warning("Failed to build input schema for tool=%s", marker.name, exc_info=True)
            schema = empty_schema()
        return replace(descriptor, input_schema=schema)
