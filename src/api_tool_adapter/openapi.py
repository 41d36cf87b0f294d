"""OpenAPI normalizer for single-operation tool documents."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from .errors import InvalidSpec, ToolEngineError
from .models import SecuritySecrets
from .security import parse_security_scheme


logger = logging.getLogger(__name__)

HTTP_METHODS = ("get", "put", "post", "delete", "options", "head", "patch", "trace")
COMPONENT_NAMESPACES = ("parameters", "requestBodies", "schemas", "securitySchemes")
PARAMETER_LOCATIONS = ("path", "query", "header", "cookie")


@dataclass(frozen=True)
class UnresolvedRef:
    ref: str
    reason: str

    def describe(self) -> str:
        return f"{self.ref} ({self.reason})"


Resolved = Union[Dict[str, Any], UnresolvedRef]


@dataclass(frozen=True)
class Parameter:
    name: str
    location: str
    required: bool
    schema: Dict[str, Any]
    description: Optional[str] = None


@dataclass(frozen=True)
class RequestBody:
    media_type: str
    schema: Dict[str, Any]
    required: bool = False

    @property
    def is_object(self) -> bool:
        return self.schema.get("type") == "object" and isinstance(
            self.schema.get("properties"), dict
        )


@dataclass(frozen=True)
class Operation:
    method: str
    path: str
    server_url: str
    operation: Dict[str, Any]
    parameters: Tuple[Parameter, ...] = ()
    request_body: Optional[RequestBody] = None
    server_variables: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    unresolved: Tuple[UnresolvedRef, ...] = ()

    @property
    def operation_id(self) -> str:
        fallback = self.path.strip("/").replace("/", "_").replace("{", "").replace("}", "")
        return self.operation.get("operationId") or f"{self.method}_{fallback or 'root'}"

    @property
    def description(self) -> str:
        return self.operation.get("description") or self.operation.get("summary") or ""


def resolve_ref(spec: Dict[str, Any], node: Any, namespace: str) -> Resolved:
    """Resolve a local ``#/components/<namespace>/<name>`` reference one level deep."""
    if not isinstance(node, dict):
        return UnresolvedRef(repr(node), "not an object")
    if "$ref" not in node:
        return node

    ref = node["$ref"]
    if namespace not in COMPONENT_NAMESPACES:
        return UnresolvedRef(ref, f"unknown namespace '{namespace}'")
    prefix = f"#/components/{namespace}/"
    if not isinstance(ref, str) or not ref.startswith(prefix):
        return UnresolvedRef(str(ref), f"only {prefix} references are supported")

    components = spec.get("components") or {}
    target = (components.get(namespace) or {}).get(ref[len(prefix):])
    if not isinstance(target, dict):
        return UnresolvedRef(ref, "target not found")
    if "$ref" in target:
        return UnresolvedRef(ref, "nested references are not supported")
    return target


def normalize_spec(spec: Dict[str, Any]) -> Operation:
    if not isinstance(spec, dict):
        raise InvalidSpec("openapiSpecification must be an object")

    paths = spec.get("paths")
    if not isinstance(paths, dict) or len(paths) != 1:
        found = len(paths) if isinstance(paths, dict) else 0
        raise InvalidSpec(f"paths must contain exactly one path (found {found})")

    path, path_item = next(iter(paths.items()))
    if not isinstance(path_item, dict):
        raise InvalidSpec(f"path item for '{path}' is invalid")

    methods = [key for key in path_item if key.lower() in HTTP_METHODS]
    if len(methods) != 1:
        raise InvalidSpec(
            f"path '{path}' must contain exactly one HTTP method (found {len(methods)})"
        )
    method_key = methods[0]
    operation = path_item[method_key]
    if not isinstance(operation, dict):
        raise InvalidSpec(f"operation '{method_key} {path}' is invalid")

    server_url, server_variables = _single_server(spec)

    unresolved: List[UnresolvedRef] = []
    parameters = _collect_parameters(spec, path_item, operation, unresolved)
    request_body = _request_body(spec, operation.get("requestBody"), unresolved)

    for missing in unresolved:
        logger.warning("Unresolved reference in %s %s: %s", method_key, path, missing.describe())

    return Operation(
        method=method_key.lower(),
        path=path,
        server_url=server_url,
        operation=operation,
        parameters=tuple(parameters),
        request_body=request_body,
        server_variables=server_variables,
        unresolved=tuple(unresolved),
    )


def validate_tool_definition(
    spec: Dict[str, Any],
    security_option: Optional[str],
    security_secrets: SecuritySecrets,
) -> List[str]:
    """Return registration errors for a tool definition; empty when it is usable."""
    errors: List[str] = []
    if not isinstance(spec, dict):
        return ["openapiSpecification must be an object."]

    version = spec.get("openapi")
    if not isinstance(version, str) or not version.startswith("3."):
        errors.append("openapiSpecification must be an OpenAPI 3.x document.")
    info = spec.get("info")
    if not isinstance(info, dict) or not info.get("title") or not info.get("version"):
        errors.append("openapiSpecification must have an info object with title and version.")

    try:
        normalize_spec(spec)
    except InvalidSpec as exc:
        errors.append(exc.message)

    if not security_option:
        return errors

    try:
        scheme = parse_security_scheme(spec, security_option)
        scheme.slots(security_secrets)
    except ToolEngineError as exc:
        errors.append(exc.message)
    return errors


def _single_server(spec: Dict[str, Any]) -> Tuple[str, Dict[str, Dict[str, Any]]]:
    servers = spec.get("servers")
    if not isinstance(servers, list) or len(servers) != 1:
        found = len(servers) if isinstance(servers, list) else 0
        raise InvalidSpec(f"servers must contain exactly one entry (found {found})")
    server = servers[0]
    url = server.get("url") if isinstance(server, dict) else None
    if not url:
        raise InvalidSpec("server entry must have a url")
    if url == "/":
        raise InvalidSpec("server url '/' is not a usable base URL")
    variables = server.get("variables") or {}
    return url, {name: dict(value or {}) for name, value in variables.items()}


def _collect_parameters(
    spec: Dict[str, Any],
    path_item: Dict[str, Any],
    operation: Dict[str, Any],
    unresolved: List[UnresolvedRef],
) -> List[Parameter]:
    merged: Dict[Tuple[str, str], Parameter] = {}
    raw_parameters = [*(path_item.get("parameters") or []), *(operation.get("parameters") or [])]

    for raw in raw_parameters:
        resolved = resolve_ref(spec, raw, "parameters")
        if isinstance(resolved, UnresolvedRef):
            unresolved.append(resolved)
            continue
        name = resolved.get("name")
        location = resolved.get("in")
        if not name or location not in PARAMETER_LOCATIONS:
            logger.warning("Skipping malformed parameter: %s", resolved)
            continue

        schema = resolve_ref(spec, resolved.get("schema") or {}, "schemas")
        if isinstance(schema, UnresolvedRef):
            unresolved.append(schema)
            continue
        unresolved.extend(_nested_refs(schema))

        merged[(name, location)] = Parameter(
            name=name,
            location=location,
            required=bool(resolved.get("required")) or location == "path",
            schema=dict(schema),
            description=resolved.get("description"),
        )
    return list(merged.values())


def _request_body(
    spec: Dict[str, Any], raw: Any, unresolved: List[UnresolvedRef]
) -> Optional[RequestBody]:
    if not raw:
        return None
    body = resolve_ref(spec, raw, "requestBodies")
    if isinstance(body, UnresolvedRef):
        unresolved.append(body)
        return None

    content = body.get("content") or {}
    if not content:
        return None
    media_type, media = next(iter(content.items()))
    schema = resolve_ref(spec, (media or {}).get("schema") or {}, "schemas")
    if isinstance(schema, UnresolvedRef):
        unresolved.append(schema)
        return None

    schema = dict(schema)
    properties = schema.get("properties")
    if isinstance(properties, dict):
        resolved_properties: Dict[str, Any] = {}
        for key, value in properties.items():
            prop = resolve_ref(spec, value, "schemas")
            if isinstance(prop, UnresolvedRef):
                unresolved.append(prop)
                continue
            resolved_properties[key] = prop
        schema["properties"] = resolved_properties

    unresolved.extend(_nested_refs(schema))

    return RequestBody(media_type=media_type, schema=schema, required=bool(body.get("required")))


def _nested_refs(node: Any) -> List[UnresolvedRef]:
    """Collect ``$ref`` entries left below the first level of a resolved schema."""
    found: List[UnresolvedRef] = []
    if isinstance(node, dict):
        ref = node.get("$ref")
        if isinstance(ref, str):
            found.append(UnresolvedRef(ref, "nested references are not supported"))
        for key, value in node.items():
            if key != "$ref":
                found.extend(_nested_refs(value))
    elif isinstance(node, list):
        for item in node:
            found.extend(_nested_refs(item))
    return found
