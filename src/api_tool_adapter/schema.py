"""Derive a flat input schema from a normalized operation."""

from __future__ import annotations

import copy
import logging
from typing import Any, Dict, List

from .openapi import Operation


logger = logging.getLogger(__name__)

SCHEMA_PARAMETER_LOCATIONS = ("path", "query", "header")


def empty_schema(description: str) -> Dict[str, Any]:
    return {"type": "object", "properties": {}, "required": [], "description": description}


def derive_input_schema(operation: Operation) -> Dict[str, Any]:
    """Merge parameters and object body properties into one object schema.

    Never raises: a schema that cannot be derived comes back empty with a
    ``description`` explaining why, so there is always something to show.
    """
    if operation.unresolved:
        refs = ", ".join(item.describe() for item in operation.unresolved)
        return empty_schema(f"Input schema unavailable: unresolved references {refs}")

    try:
        return _derive(operation)
    except Exception as exc:
        logger.warning("Schema derivation failed for %s: %s", operation.operation_id, exc)
        return empty_schema(f"Input schema unavailable: {exc}")


def _derive(operation: Operation) -> Dict[str, Any]:
    properties: Dict[str, Any] = {}
    required: List[str] = []

    def add(name: str, schema: Dict[str, Any], is_required: bool, origin: str) -> None:
        if name in properties:
            # Flat namespace: same-named inputs from two locations cannot be told apart.
            logger.warning(
                "Input '%s' from %s collides with an earlier input of %s; keeping the first",
                name,
                origin,
                operation.operation_id,
            )
            return
        properties[name] = schema
        if is_required and name not in required:
            required.append(name)

    for parameter in operation.parameters:
        if parameter.location not in SCHEMA_PARAMETER_LOCATIONS:
            continue
        schema = copy.deepcopy(parameter.schema)
        if parameter.description and "description" not in schema:
            schema["description"] = parameter.description
        add(parameter.name, schema, parameter.required, parameter.location)

    body = operation.request_body
    if body and body.is_object:
        body_required = body.schema.get("required") or []
        for name, schema in body.schema["properties"].items():
            add(name, copy.deepcopy(schema), name in body_required, "body")

    # Last, so a declared parameter keeps its required flag over a server variable.
    for variable, definition in operation.server_variables.items():
        variable_schema: Dict[str, Any] = {"type": "string"}
        for key in ("default", "enum", "description"):
            if key in definition:
                variable_schema[key] = definition[key]
        add(variable, variable_schema, False, "server")

    return {"type": "object", "properties": properties, "required": required}
