from __future__ import annotations

from typing import Any, Dict, List, Mapping

from jsonschema import Draft202012Validator

from ruleflow.service.errors import FlowValidationError, ValidationError
from ruleflow.storage.models import FlowDefinition, InputField

_STRING_OR_NULL = {"type": ["string", "null"]}
_PATH_MAP = {"type": "object", "additionalProperties": {"type": "string"}}

FLOW_DOCUMENT_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "$defs": {
        "node": {
            "type": "object",
            "properties": {
                "id": {"type": "string", "minLength": 1},
                "type": {"type": "string", "minLength": 1},
                "config": {
                    "type": "object",
                    "properties": {
                        "mode": {"enum": ["inline", "reference", None]},
                        "version_id": _STRING_OR_NULL,
                        "excel_file": _STRING_OR_NULL,
                        "code": _STRING_OR_NULL,
                        "input_mapping": _PATH_MAP,
                        "output_mapping": _PATH_MAP,
                        "metadata": {"type": "object"},
                    },
                },
            },
            "required": ["id", "type"],
        },
        "endpoint": {
            "type": "object",
            "properties": {
                "node": {"type": "string", "minLength": 1},
                "output": _STRING_OR_NULL,
                "outputs": {"type": "object"},
                "input": _STRING_OR_NULL,
                "inputs": {"type": "object"},
                "value": _STRING_OR_NULL,
                "path": _STRING_OR_NULL,
            },
            "required": ["node"],
        },
        "endpoints": {
            "anyOf": [
                {"$ref": "#/$defs/endpoint"},
                {"type": "array", "minItems": 1, "items": {"$ref": "#/$defs/endpoint"}},
            ]
        },
        "connection": {
            "type": "object",
            "properties": {
                "from": {"$ref": "#/$defs/endpoints"},
                "to": {"$ref": "#/$defs/endpoints"},
                "condition": _STRING_OR_NULL,
                "transform": _STRING_OR_NULL,
            },
            "required": ["from", "to"],
        },
        "graph": {
            "type": "object",
            "properties": {
                "nodes": {"type": "array", "items": {"$ref": "#/$defs/node"}},
                "connections": {"type": "array", "items": {"$ref": "#/$defs/connection"}},
            },
            "required": ["nodes"],
        },
    },
    "type": "object",
    "properties": {
        "input_columns": {
            "type": "object",
            "additionalProperties": {
                "anyOf": [
                    {"type": "string"},
                    {
                        "type": "object",
                        "properties": {
                            "type": {"type": "string"},
                            "required": {"type": "boolean"},
                        },
                    },
                ]
            },
        },
        "output_columns": {
            "type": "object",
            "additionalProperties": {
                "anyOf": [
                    {"type": "string"},
                    {"type": "object", "properties": {"path": _STRING_OR_NULL}},
                ]
            },
        },
        "variables": {"type": "object", "additionalProperties": {"type": "object"}},
        "flow": {"$ref": "#/$defs/graph"},
    },
}

_GRAPH_SCHEMA: Dict[str, Any] = {
    "$schema": FLOW_DOCUMENT_SCHEMA["$schema"],
    "$defs": FLOW_DOCUMENT_SCHEMA["$defs"],
    "$ref": "#/$defs/graph",
}

_DOCUMENT_VALIDATOR = Draft202012Validator(FLOW_DOCUMENT_SCHEMA)
_GRAPH_VALIDATOR = Draft202012Validator(_GRAPH_SCHEMA)

# Declared input types -> accepted Python types
_INPUT_TYPES: Dict[str, tuple] = {
    "string": (str,),
    "date": (str,),
    "email": (str,),
    "url": (str,),
    "file": (str,),
    "number": (int, float),
    "integer": (int,),
    "boolean": (bool,),
    "object": (dict,),
    "array": (list,),
}


def validate_flow_document(document: Mapping[str, Any]) -> None:
    """Validate the JSON shape of a flow document before it is parsed.

    Accepts both the wrapped ``{"flow": {...}}`` document and a bare graph.
    """

    if not isinstance(document, Mapping):
        raise FlowValidationError("flow document must be an object", ["not an object"])
    validator = _DOCUMENT_VALIDATOR if "flow" in document else _GRAPH_VALIDATOR
    errors = sorted(
        validator.iter_errors(dict(document)),
        key=lambda e: [str(part) for part in e.absolute_path],
    )
    if errors:
        messages = [_format_error(e) for e in errors]
        raise FlowValidationError("flow document validation failed", messages)


def _format_error(error: Any) -> str:
    location = "/".join(str(part) for part in error.absolute_path)
    return f"{location}: {error.message}" if location else error.message


def validate_flow_definition(definition: FlowDefinition) -> None:
    """Structural checks the JSON schema cannot express."""

    errors: List[str] = []
    if not definition.nodes:
        errors.append("flow has no nodes")

    seen: set[str] = set()
    for node in definition.nodes:
        if node.id in seen:
            errors.append(f"duplicate node id {node.id!r}")
        seen.add(node.id)

    for index, connection in enumerate(definition.connections):
        if not connection.sources:
            errors.append(f"connection {index} has no source")
        if not connection.targets:
            errors.append(f"connection {index} has no target")
        for node_id in connection.source_node_ids + connection.target_node_ids:
            if node_id not in seen:
                errors.append(f"connection {index} references unknown node {node_id!r}")

    if errors:
        raise FlowValidationError("flow definition is invalid", errors)


def validate_inputs(schema: Mapping[str, InputField], inputs: Mapping[str, Any]) -> None:
    """Check presence and declared type of every input before round 0."""

    if not isinstance(inputs, Mapping):
        raise ValidationError("inputs must be an object")

    errors: List[str] = []
    for name, column in schema.items():
        if name not in inputs:
            if column.required:
                errors.append(f"missing required input: {name}")
            continue
        value = inputs[name]
        if value is None and not column.required:
            continue
        expected = _INPUT_TYPES.get((column.type or "").lower())
        if expected is None:
            continue
        # bool is an int subclass; only "boolean" accepts it
        if isinstance(value, bool) and bool not in expected:
            matches = False
        else:
            matches = isinstance(value, expected)
        if not matches:
            errors.append(
                f"invalid type for input {name}: expected {column.type}, got {_type_name(value)}"
            )

    if errors:
        raise ValidationError("input validation failed", detail={"errors": errors})


def _type_name(value: Any) -> str:
    if value is None:
        return "null"
    return type(value).__name__
