import pytest

from api_tool_adapter.errors import InvalidSpec
from api_tool_adapter.models import SecuritySecrets
from api_tool_adapter.openapi import (
    UnresolvedRef,
    normalize_spec,
    resolve_ref,
    validate_tool_definition,
)

from conftest import BASE_URL, build_spec


def test_normalize_returns_single_operation():
    spec = build_spec(
        path="/items/{itemId}",
        method="get",
        parameters=[{"name": "itemId", "in": "path", "required": True, "schema": {"type": "string"}}],
    )

    operation = normalize_spec(spec)

    assert operation.method == "get"
    assert operation.path == "/items/{itemId}"
    assert operation.server_url == BASE_URL
    assert operation.operation_id == "doThing"
    assert [p.name for p in operation.parameters] == ["itemId"]
    assert operation.unresolved == ()


@pytest.mark.parametrize("paths", [{}, {"/a": {"get": {}}, "/b": {"get": {}}}])
def test_zero_or_many_paths_is_invalid(paths):
    spec = build_spec()
    spec["paths"] = paths

    with pytest.raises(InvalidSpec):
        normalize_spec(spec)


@pytest.mark.parametrize(
    "path_item",
    [{"summary": "no methods"}, {"get": {}, "post": {}}],
)
def test_zero_or_many_methods_is_invalid(path_item):
    spec = build_spec()
    spec["paths"] = {"/items": path_item}

    with pytest.raises(InvalidSpec):
        normalize_spec(spec)


@pytest.mark.parametrize(
    "servers",
    [[], [{"url": "https://a.example.com"}, {"url": "https://b.example.com"}], [{"url": "/"}], [{}]],
)
def test_server_must_be_single_non_root_url(servers):
    with pytest.raises(InvalidSpec):
        normalize_spec(build_spec(servers=servers))


def test_path_item_parameters_are_merged_and_overridden():
    spec = build_spec(
        path="/items/{itemId}",
        parameters=[
            {"name": "limit", "in": "query", "schema": {"type": "integer"}, "description": "op level"},
        ],
    )
    spec["paths"]["/items/{itemId}"]["parameters"] = [
        {"name": "itemId", "in": "path", "required": True, "schema": {"type": "string"}},
        {"name": "limit", "in": "query", "schema": {"type": "string"}, "description": "path level"},
    ]

    operation = normalize_spec(spec)

    by_name = {p.name: p for p in operation.parameters}
    assert set(by_name) == {"itemId", "limit"}
    assert by_name["limit"].description == "op level"
    assert by_name["limit"].schema == {"type": "integer"}


def test_component_refs_are_resolved_one_level():
    spec = build_spec(
        method="post",
        parameters=[{"$ref": "#/components/parameters/Limit"}],
        request_body={"$ref": "#/components/requestBodies/NewItem"},
        components={
            "parameters": {"Limit": {"name": "limit", "in": "query", "schema": {"$ref": "#/components/schemas/Count"}}},
            "schemas": {"Count": {"type": "integer"}, "Name": {"type": "string"}},
            "requestBodies": {
                "NewItem": {
                    "required": True,
                    "content": {
                        "application/json": {
                            "schema": {
                                "type": "object",
                                "properties": {"name": {"$ref": "#/components/schemas/Name"}},
                            }
                        }
                    },
                }
            },
        },
    )

    operation = normalize_spec(spec)

    assert operation.parameters[0].schema == {"type": "integer"}
    assert operation.request_body.media_type == "application/json"
    assert operation.request_body.schema["properties"] == {"name": {"type": "string"}}
    assert operation.unresolved == ()


def test_missing_and_nested_refs_are_reported_not_raised():
    spec = build_spec(
        parameters=[{"$ref": "#/components/parameters/Missing"}, {"$ref": "#/components/parameters/Alias"}],
        components={"parameters": {"Alias": {"$ref": "#/components/parameters/Missing"}}},
    )

    operation = normalize_spec(spec)

    assert operation.parameters == ()
    reasons = [item.reason for item in operation.unresolved]
    assert reasons == ["target not found", "nested references are not supported"]


def test_resolve_ref_rejects_foreign_namespace():
    spec = build_spec(components={"schemas": {"Name": {"type": "string"}}})

    result = resolve_ref(spec, {"$ref": "#/components/schemas/Name"}, "parameters")

    assert isinstance(result, UnresolvedRef)


def test_validate_tool_definition_accepts_valid_api_key_tool():
    spec = build_spec(security_schemes={"ApiKeyAuth": {"type": "apiKey", "in": "header", "name": "X-API-Key"}})

    errors = validate_tool_definition(spec, "ApiKeyAuth", SecuritySecrets(name="api key"))

    assert errors == []


def test_validate_tool_definition_collects_errors():
    spec = build_spec(security_schemes={"Basic": {"type": "http", "scheme": "basic"}})
    spec["openapi"] = "2.0"
    del spec["info"]["version"]

    errors = validate_tool_definition(spec, "Basic", SecuritySecrets())

    assert len(errors) == 3
    assert "x-secret-username" in errors[-1]


def test_validate_tool_definition_rejects_missing_and_unsupported_schemes():
    spec = build_spec(security_schemes={"Digest": {"type": "http", "scheme": "digest"}})

    assert validate_tool_definition(spec, "Nope", SecuritySecrets(name="api key"))
    assert validate_tool_definition(spec, "Digest", SecuritySecrets(name="api key"))


def test_refs_inside_resolved_schemas_are_reported():
    spec = build_spec(
        parameters=[
            {
                "name": "ids",
                "in": "query",
                "schema": {"type": "array", "items": {"$ref": "#/components/schemas/Id"}},
            }
        ],
        components={"schemas": {"Id": {"type": "string"}}},
    )

    operation = normalize_spec(spec)

    assert [param.name for param in operation.parameters] == ["ids"]
    assert [item.ref for item in operation.unresolved] == ["#/components/schemas/Id"]
