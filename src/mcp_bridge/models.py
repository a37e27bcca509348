"""Internal models for tool descriptors and invocation results."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, Optional, Tuple


@dataclass(frozen=True)
class ParameterDescriptor:
    name: str
    kind: str = "string"
    required: bool = False
    nullable: bool = False
    description: Optional[str] = None
    pattern: Optional[str] = None
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    exclusive_minimum: Optional[float] = None
    exclusive_maximum: Optional[float] = None
    min_length: Optional[int] = None
    max_length: Optional[int] = None
    enum_values: Tuple[str, ...] = ()


@dataclass(frozen=True)
class BodyDescriptor:
    body_type: Any
    parameter_name: str
    property_names: Tuple[str, ...] = ()
    flatten: bool = True
    required: bool = True


@dataclass(frozen=True)
class ToolDescriptor:
    name: str
    description: str
    http_method: str
    path_template: str
    route_parameters: Tuple[ParameterDescriptor, ...] = ()
    query_parameters: Tuple[ParameterDescriptor, ...] = ()
    body: Optional[BodyDescriptor] = None
    tags: Tuple[str, ...] = ()
    required_roles: Tuple[str, ...] = ()
    required_policy: Optional[str] = None
    input_schema: Optional[str] = None
    operation: Any = field(default=None, compare=False, repr=False)
    operation_kind: str = "route"

    @property
    def bound_names(self) -> Tuple[str, ...]:
        """Argument names consumed by the path and the query string."""
        return tuple(p.name for p in self.route_parameters + self.query_parameters)


@dataclass(frozen=True)
class DispatchResult:
    is_success: bool
    status_code: int
    content: str = ""
    content_type: Optional[str] = None

    @classmethod
    def success(cls, status_code: int, content: str, content_type: Optional[str]) -> "DispatchResult":
        return cls(True, status_code, content, content_type)

    @classmethod
    def failure(cls, status_code: int, content: str, content_type: Optional[str] = None) -> "DispatchResult":
        return cls(False, status_code, content, content_type)


@dataclass(frozen=True)
class ToolResult:
    is_error: bool
    content: str
    content_type: Optional[str] = "text/plain"

    @classmethod
    def success(cls, content: str, content_type: Optional[str] = "application/json") -> "ToolResult":
        return cls(False, content, content_type)

    @classmethod
    def error(cls, message: str) -> "ToolResult":
        return cls(True, message, "text/plain")

    def to_content(self) -> Dict[str, Any]:
        return {
            "content": [{"type": "text", "text": self.content}],
            "isError": self.is_error,
        }


class Arguments(Mapping):
    """Case-insensitive, insertion-ordered view over tool call arguments.

    Keys keep the spelling the caller used; lookups ignore case. When the same
    name arrives twice with different casing the last value wins.
    """

    def __init__(self, values: Optional[Mapping[str, Any]] = None) -> None:
        self._items: Dict[str, Tuple[str, Any]] = {}
        for key, value in (values or {}).items():
            self._items[key.lower()] = (key, value)

    def __getitem__(self, key: str) -> Any:
        return self._items[key.lower()][1]

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and key.lower() in self._items

    def __iter__(self) -> Iterator[str]:
        return (original for original, _ in self._items.values())

    def __len__(self) -> int:
        return len(self._items)

    def __repr__(self) -> str:
        return f"Arguments({dict(self.items())!r})"
