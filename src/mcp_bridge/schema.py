"""JSON Schema generation for tool input."""

from __future__ import annotations

import collections.abc
import datetime
import enum
import inspect
import json
import logging
import types
import uuid
from decimal import Decimal
from typing import Annotated, Any, Dict, Iterable, List, Literal, Mapping, Optional, Tuple, Union, get_args, get_origin

from pydantic import TypeAdapter
from pydantic.fields import FieldInfo

from .metadata import ParameterMetadata
from .models import BodyDescriptor, ParameterDescriptor, ToolDescriptor
from .naming import match_name, normalize_name

logger = logging.getLogger(__name__)

EMPTY_SCHEMA: Dict[str, Any] = {"type": "object", "properties": {}}

_JSON_TYPES = {"boolean", "integer", "number", "string", "array", "object"}

_STRING_TYPES = (
    str,
    bytes,
    uuid.UUID,
    datetime.date,
    datetime.time,
    datetime.timedelta,
)

_ARRAY_ORIGINS = (
    list,
    tuple,
    set,
    frozenset,
    collections.abc.Sequence,
    collections.abc.MutableSequence,
    collections.abc.Set,
    collections.abc.MutableSet,
)

# (metadata attribute, JSON Schema keyword)
_CONSTRAINTS = (
    ("pattern", "pattern"),
    ("ge", "minimum"),
    ("le", "maximum"),
    ("gt", "exclusiveMinimum"),
    ("lt", "exclusiveMaximum"),
    ("min_length", "minLength"),
    ("max_length", "maxLength"),
)

# (descriptor attribute, JSON Schema keyword)
_DESCRIPTOR_CONSTRAINTS = (
    ("pattern", "pattern"),
    ("minimum", "minimum"),
    ("maximum", "maximum"),
    ("exclusive_minimum", "exclusiveMinimum"),
    ("exclusive_maximum", "exclusiveMaximum"),
    ("min_length", "minLength"),
    ("max_length", "maxLength"),
)


def empty_schema() -> str:
    return json.dumps(EMPTY_SCHEMA)


def classify_annotation(annotation: Any) -> Tuple[str, bool, Tuple[str, ...]]:
    """Map a Python annotation to (kind, nullable, enum values)."""
    origin = get_origin(annotation)
    if origin is Annotated:
        return classify_annotation(get_args(annotation)[0])
    if origin is Union or origin is types.UnionType:
        args = get_args(annotation)
        members = [arg for arg in args if arg is not type(None)]
        nullable = len(members) < len(args)
        if len(members) == 1:
            kind, _, values = classify_annotation(members[0])
            return kind, nullable, values
        return "object", nullable, ()
    if origin is Literal:
        return "enum", False, tuple(str(_plain_value(arg)) for arg in get_args(annotation))
    if origin is not None:
        return ("array" if origin in _ARRAY_ORIGINS else "object"), False, ()

    if not inspect.isclass(annotation):
        return "object", False, ()
    # bool is an int subclass and str-mixin enums are str subclasses
    if issubclass(annotation, bool):
        return "boolean", False, ()
    if issubclass(annotation, enum.Enum):
        return "enum", False, _enum_values(annotation)
    if issubclass(annotation, int):
        return "integer", False, ()
    if issubclass(annotation, (float, Decimal)):
        return "number", False, ()
    if issubclass(annotation, _STRING_TYPES):
        return "string", False, ()
    if issubclass(annotation, (list, tuple, set, frozenset)):
        return "array", False, ()
    return "object", False, ()


def constraints_from_metadata(metadata: Iterable[Any]) -> Dict[str, Any]:
    """Collect validation constraints from pydantic / annotated-types metadata."""
    found: Dict[str, Any] = {}
    for item in metadata:
        for attribute, keyword in _CONSTRAINTS:
            value = getattr(item, attribute, None)
            if value is None or keyword in found:
                continue
            if keyword == "pattern":
                value = getattr(value, "pattern", value)
                if not isinstance(value, str):
                    continue
            elif isinstance(value, Decimal):
                value = float(value)
            elif not isinstance(value, (int, float)) or isinstance(value, bool):
                continue
            found[keyword] = value
    return found


def describe_parameter(parameter: ParameterMetadata) -> ParameterDescriptor:
    kind, nullable, values = classify_annotation(parameter.annotation)
    constraints = constraints_from_metadata(parameter.constraints)
    return ParameterDescriptor(
        name=parameter.name,
        kind=kind,
        required=parameter.required,
        nullable=nullable,
        description=parameter.description,
        pattern=constraints.get("pattern"),
        minimum=constraints.get("minimum"),
        maximum=constraints.get("maximum"),
        exclusive_minimum=constraints.get("exclusiveMinimum"),
        exclusive_maximum=constraints.get("exclusiveMaximum"),
        min_length=constraints.get("minLength"),
        max_length=constraints.get("maxLength"),
        enum_values=values,
    )


def body_property_names(body_type: Any) -> Tuple[str, ...]:
    """Wire names the host accepts for the properties of a body model."""
    fields = _model_fields(unwrap_optional(body_type)[0])
    names: List[str] = []
    for attribute, field_info in fields.items():
        alias = field_info.validation_alias if isinstance(field_info.validation_alias, str) else None
        names.append(alias or field_info.alias or attribute)
    return tuple(names)


def unwrap_optional(annotation: Any) -> Tuple[Any, bool]:
    origin = get_origin(annotation)
    if origin is Union or origin is types.UnionType:
        args = get_args(annotation)
        members = [arg for arg in args if arg is not type(None)]
        if len(members) == 1:
            return members[0], len(members) < len(args)
    return annotation, False


def is_object_type(annotation: Any) -> bool:
    """Whether a body type serializes as a JSON object with named properties."""
    annotation, _ = unwrap_optional(annotation)
    if _model_fields(annotation):
        return True
    try:
        schema = TypeAdapter(annotation).json_schema(by_alias=True)
    except Exception:
        # Treated as an object so schema generation takes its generic-body path.
        logger.debug("No JSON schema for body type %r", annotation, exc_info=True)
        return True
    return "properties" in _resolve(schema, schema.get("$defs") or {})


class SchemaBuilder:
    """Builds the merged input schema of a tool.

    Route parameters are always required. Query parameters are required when
    the host declares them without a default. Body properties come from the
    pydantic JSON schema of the body type; their names follow the configured
    casing while route and query names stay exactly as the host declares them.
    """

    def __init__(self, property_naming: str = "camel") -> None:
        self.property_naming = property_naming

    def build_schema(self, descriptor: ToolDescriptor) -> str:
        properties: Dict[str, Any] = {}
        required: List[str] = []

        for parameter in descriptor.route_parameters:
            properties[parameter.name] = self.parameter_schema(parameter)
            required.append(parameter.name)

        for parameter in descriptor.query_parameters:
            properties[parameter.name] = self.parameter_schema(parameter)
            if parameter.required:
                required.append(parameter.name)

        if descriptor.body is not None:
            body_properties, body_required = self.body_properties(descriptor.body)
            for name, entry in body_properties.items():
                properties.setdefault(name, entry)
            required.extend(body_required)

        schema: Dict[str, Any] = {"type": "object", "properties": properties}
        required = [name for name in dict.fromkeys(required) if name in properties]
        if required:
            schema["required"] = required
        return json.dumps(schema)

    def parameter_schema(self, parameter: ParameterDescriptor) -> Dict[str, Any]:
        json_type = "string" if parameter.kind == "enum" else parameter.kind
        entry: Dict[str, Any] = {"type": [json_type, "null"] if parameter.nullable else json_type}
        if parameter.description:
            entry["description"] = parameter.description
        if parameter.enum_values:
            entry["enum"] = list(parameter.enum_values)
        for attribute, keyword in _DESCRIPTOR_CONSTRAINTS:
            value = getattr(parameter, attribute)
            if value is not None:
                entry[keyword] = value
        return entry

    def body_properties(self, body: BodyDescriptor) -> Tuple[Dict[str, Any], List[str]]:
        if not body.flatten:
            kind, nullable, values = classify_annotation(body.body_type)
            entry = self.parameter_schema(
                ParameterDescriptor(name=body.parameter_name, kind=kind, nullable=nullable, enum_values=values)
            )
            return {body.parameter_name: entry}, [body.parameter_name] if body.required else []

        try:
            return self._extract_body_properties(body.body_type)
        except Exception:
            logger.warning(
                "Failed to generate body schema for %s; using generic body property",
                getattr(body.body_type, "__name__", body.body_type),
                exc_info=True,
            )
            return {"body": {"type": "object"}}, []

    def _extract_body_properties(self, body_type: Any) -> Tuple[Dict[str, Any], List[str]]:
        body_type, _ = unwrap_optional(body_type)
        schema = TypeAdapter(body_type).json_schema(by_alias=True)
        definitions = schema.get("$defs") or {}
        root = _resolve(schema, definitions)
        fields = _model_fields(body_type)
        required_wire = set(root.get("required") or ())

        properties: Dict[str, Any] = {}
        required: List[str] = []
        for wire_name, property_schema in (root.get("properties") or {}).items():
            name = normalize_name(wire_name, self.property_naming)
            entry = _property_entry(property_schema, definitions)
            field_info = _find_field(fields, wire_name)
            if field_info is not None:
                _apply_field_metadata(entry, field_info)
            properties[name] = entry
            if wire_name in required_wire:
                required.append(name)
        return properties, required


def _property_entry(property_schema: Mapping[str, Any], definitions: Mapping[str, Any]) -> Dict[str, Any]:
    nullable = False
    branch: Mapping[str, Any] = property_schema
    options = property_schema.get("anyOf")
    if options:
        concrete = [option for option in options if option.get("type") != "null"]
        nullable = len(concrete) < len(options)
        branch = concrete[0] if concrete else {}
    branch = _resolve(branch, definitions)
    members = branch.get("allOf")
    if members and len(members) == 1:
        branch = {**_resolve(members[0], definitions), **{k: v for k, v in branch.items() if k != "allOf"}}

    json_type = _json_type(branch)
    if isinstance(branch.get("type"), list) and "null" in branch["type"]:
        nullable = True
    entry: Dict[str, Any] = {"type": [json_type, "null"] if nullable else json_type}

    description = property_schema.get("description") or branch.get("description")
    if description:
        entry["description"] = description
    if "enum" in branch:
        entry["enum"] = list(branch["enum"])
    elif "const" in branch:
        entry["enum"] = [branch["const"]]
    for _, keyword in _CONSTRAINTS:
        value = property_schema.get(keyword, branch.get(keyword))
        if value is not None:
            entry[keyword] = value
    return entry


def _apply_field_metadata(entry: Dict[str, Any], field_info: FieldInfo) -> None:
    # Constraints attached through custom annotations never reach the JSON schema.
    for keyword, value in constraints_from_metadata(field_info.metadata).items():
        entry.setdefault(keyword, value)
    if "enum" not in entry:
        kind, _, values = classify_annotation(field_info.annotation)
        if kind == "enum" and values:
            entry["enum"] = list(values)
    if "description" not in entry and field_info.description:
        entry["description"] = field_info.description


def _resolve(schema: Mapping[str, Any], definitions: Mapping[str, Any]) -> Dict[str, Any]:
    resolved = dict(schema)
    seen = set()
    while "$ref" in resolved:
        reference = resolved.pop("$ref")
        if reference in seen:
            break
        seen.add(reference)
        target = definitions.get(reference.rsplit("/", 1)[-1], {})
        resolved = {**target, **resolved}
    return resolved


def _json_type(schema: Mapping[str, Any]) -> str:
    declared = schema.get("type")
    if isinstance(declared, list):
        declared = next((item for item in declared if item != "null"), None)
    if declared in _JSON_TYPES:
        return declared
    if "enum" in schema or "const" in schema:
        return "string"
    if declared is None:
        return "object"
    return "string"


def _model_fields(annotation: Any) -> Dict[str, FieldInfo]:
    if not inspect.isclass(annotation):
        return {}
    fields = getattr(annotation, "model_fields", None)
    return dict(fields) if isinstance(fields, Mapping) else {}


def _find_field(fields: Mapping[str, FieldInfo], wire_name: str) -> Optional[FieldInfo]:
    for attribute, field_info in fields.items():
        if wire_name in (field_info.alias, field_info.validation_alias, attribute):
            return field_info
    attribute = match_name(wire_name, fields.keys())
    return fields.get(attribute) if attribute else None


def _enum_values(enum_type: Any) -> Tuple[str, ...]:
    return tuple(str(_plain_value(member)) for member in enum_type)


def _plain_value(value: Any) -> Any:
    return value.value if isinstance(value, enum.Enum) else value
