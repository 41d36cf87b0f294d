import json

import httpx
import pytest

from api_tool_adapter.errors import InvalidSpec
from api_tool_adapter.models import (
    CallerIdentity,
    ErrorKind,
    Failed,
    SetupNeeded,
    Succeeded,
    ToolStatus,
)
from api_tool_adapter.platform_client import build_secret_id
from api_tool_adapter.service import SETUP_HINT, to_envelope

from conftest import BASE_URL, TOOL_ID, build_spec, build_tool

CALLER = CallerIdentity(user_id="user-1", organization_id="org-1")
API_KEY_SCHEMES = {"ApiKeyAuth": {"type": "apiKey", "in": "header", "name": "X-API-Key"}}


def _item_tool(**kwargs):
    spec = build_spec(
        path="/items/{itemId}",
        method="post",
        parameters=[
            {"name": "itemId", "in": "path", "required": True, "schema": {"type": "string"}},
            {"name": "notify", "in": "query", "schema": {"type": "string"}},
        ],
        request_body={
            "content": {
                "application/json": {
                    "schema": {"type": "object", "properties": {"title": {"type": "string"}}}
                }
            }
        },
        security_schemes=API_KEY_SCHEMES,
    )
    return build_tool(spec, "ApiKeyAuth", {"x-secret-name": "api key"}, **kwargs)


def _grant_api_key(secret_client, value="k-123"):
    secret_client.secrets[build_secret_id("client", "user-1", "org-1", "example", "api key")] = value


@pytest.mark.asyncio
async def test_success_substitutes_path_and_appends_query(service, store, secret_client, respx_mock):
    store.tools[TOOL_ID] = _item_tool()
    _grant_api_key(secret_client)
    route = respx_mock.post(f"{BASE_URL}/items/42").mock(return_value=httpx.Response(201, json={"id": 7}))

    outcome = await service.execute_tool(TOOL_ID, CALLER, {"itemId": "42", "notify": "yes", "title": "t"})

    assert outcome == Succeeded(data={"id": 7}, status_code=201)
    request = route.calls.last.request
    assert str(request.url) == f"{BASE_URL}/items/42?notify=yes"
    assert request.headers["X-API-Key"] == "k-123"

    [record] = store.executions
    assert record.status_code == 201
    assert record.input == {"itemId": "42", "notify": "yes", "title": "t"}
    assert record.output == {"success": True, "data": {"id": 7}}
    assert record.error is None
    assert store.status_updates == [("user-1", "org-1", TOOL_ID, ToolStatus.ACTIVE)]
    assert ("user-1", "org-1", TOOL_ID) in store.links


@pytest.mark.asyncio
@pytest.mark.respx(assert_all_called=False)
async def test_missing_secret_needs_setup_without_calling_upstream(service, store, respx_mock):
    store.tools[TOOL_ID] = _item_tool()
    route = respx_mock.route(url__startswith=BASE_URL)

    outcome = await service.execute_tool(TOOL_ID, CALLER, {"itemId": "42"})

    assert isinstance(outcome, SetupNeeded)
    assert outcome.required_secret_inputs == ("api key",)
    assert route.call_count == 0
    [record] = store.executions
    assert record.status_code == 200
    assert record.error == "Prerequisites not met, setup needed."
    assert record.output["data"]["requiredSecretInputs"] == ["api key"]
    assert store.status_updates == []


@pytest.mark.asyncio
async def test_basic_with_missing_password_needs_setup(service, store, secret_client):
    spec = build_spec(security_schemes={"Basic": {"type": "http", "scheme": "basic"}})
    store.tools[TOOL_ID] = build_tool(
        spec, "Basic", {"x-secret-username": "username", "x-secret-password": "password"}
    )
    secret_client.secrets[build_secret_id("client", "user-1", "org-1", "example", "username")] = "alice"

    outcome = await service.execute_tool(TOOL_ID, CALLER, {})

    assert isinstance(outcome, SetupNeeded)
    assert outcome.required_secret_inputs == ("password",)


@pytest.mark.asyncio
async def test_validation_failure_is_recorded_before_prerequisites(service, store, secret_client):
    store.tools[TOOL_ID] = _item_tool()

    outcome = await service.execute_tool(TOOL_ID, CALLER, {"title": 5})

    assert isinstance(outcome, Failed)
    assert outcome.kind == ErrorKind.VALIDATION_ERROR
    assert outcome.status_code == 400
    assert {error["path"] for error in outcome.details} == {"itemId", "title"}
    assert secret_client.requested == []
    [record] = store.executions
    assert record.status_code == 400
    assert record.input == {"title": 5}
    assert record.error == "Input validation failed."


@pytest.mark.asyncio
async def test_upstream_error_message(service, store, secret_client, respx_mock):
    store.tools[TOOL_ID] = _item_tool()
    _grant_api_key(secret_client)
    respx_mock.post(f"{BASE_URL}/items/9").mock(
        return_value=httpx.Response(404, json={"error": "not found"})
    )

    outcome = await service.execute_tool(TOOL_ID, CALLER, {"itemId": "9"})

    assert isinstance(outcome, Failed)
    assert outcome.kind == ErrorKind.UPSTREAM_ERROR
    assert "External API Error (404): not found" in outcome.error
    [record] = store.executions
    assert record.status_code == 404
    assert record.error_details == '{"error": "not found"}'
    assert store.status_updates == []


@pytest.mark.asyncio
async def test_each_invocation_is_independent(service, store, secret_client, respx_mock):
    store.tools[TOOL_ID] = _item_tool()
    _grant_api_key(secret_client)
    route = respx_mock.post(f"{BASE_URL}/items/1").mock(return_value=httpx.Response(200, json={"ok": True}))

    first = await service.execute_tool(TOOL_ID, CALLER, {"itemId": "1"})
    second = await service.execute_tool(TOOL_ID, CALLER, {"itemId": "1"})

    assert first == second
    assert route.call_count == 2
    assert len(store.executions) == 2
    assert len(secret_client.requested) == 2


@pytest.mark.asyncio
async def test_unknown_tool_is_not_found(service, store):
    outcome = await service.execute_tool("missing", CALLER, {})

    assert isinstance(outcome, Failed)
    assert outcome.kind == ErrorKind.TOOL_NOT_FOUND
    assert outcome.status_code == 404
    assert store.executions == []


@pytest.mark.asyncio
async def test_invalid_spec_is_a_configuration_error(service, store):
    spec = build_spec()
    spec["paths"]["/other"] = {"get": {}}
    store.tools[TOOL_ID] = build_tool(spec)

    outcome = await service.execute_tool(TOOL_ID, CALLER, {})

    assert outcome.kind == ErrorKind.INVALID_SPEC
    assert outcome.kind.is_configuration_error
    assert outcome.hint
    assert len(store.executions) == 1


@pytest.mark.asyncio
async def test_unsupported_scheme_is_a_configuration_error(service, store):
    spec = build_spec(security_schemes={"Digest": {"type": "http", "scheme": "digest"}})
    store.tools[TOOL_ID] = build_tool(spec, "Digest", {"x-secret-name": "api key"})

    outcome = await service.execute_tool(TOOL_ID, CALLER, {})

    assert outcome.kind == ErrorKind.UNSUPPORTED_SCHEME
    assert store.executions[0].error == outcome.error


@pytest.mark.asyncio
async def test_unexpected_error_is_an_orchestration_failure(service, store, monkeypatch):
    store.tools[TOOL_ID] = build_tool(build_spec())

    async def explode(tool, caller):
        raise KeyError("boom")

    monkeypatch.setattr(service.resolver, "resolve", explode)

    outcome = await service.execute_tool(TOOL_ID, CALLER, {})

    assert outcome.kind == ErrorKind.ORCHESTRATION_ERROR
    assert outcome.error == "Tool execution orchestration failed."
    assert len(store.executions) == 1


@pytest.mark.asyncio
async def test_audit_failure_does_not_replace_outcome(service, store, respx_mock, caplog):
    store.tools[TOOL_ID] = build_tool(build_spec())
    store.fail_record = True
    store.fail_link = True
    respx_mock.get(f"{BASE_URL}/items").mock(return_value=httpx.Response(200, json=[1, 2]))

    outcome = await service.execute_tool(TOOL_ID, CALLER, {})

    assert outcome == Succeeded(data=[1, 2], status_code=200)
    assert "Failed to write execution record" in caplog.text


def test_setup_envelope_carries_hint():
    outcome = SetupNeeded(
        utility_provider="example",
        title="Config Required: Example API",
        description="To use 'Example API', provide: Enter Bearer Token. Securely stored.",
        message="Setup for Example API.",
        required_secret_inputs=("bearer token",),
    )

    envelope = to_envelope(outcome)

    assert envelope["success"] is True
    assert envelope["data"]["needsSetup"] is True
    assert envelope["data"]["requiredSecretInputs"] == ["bearer token"]
    assert envelope["hint"] == SETUP_HINT


def test_tool_info_includes_input_schema(service, store):
    store.tools[TOOL_ID] = _item_tool()

    info = service.get_tool_info(TOOL_ID)

    assert info["method"] == "POST"
    assert info["path"] == "/items/{itemId}"
    assert info["input_schema"]["required"] == ["itemId"]
    assert info["title"] == "Example API"


def test_register_tool_rejects_invalid_definition(service):
    payload = {
        "name": "broken",
        "utility_provider": "example",
        "openapi_specification": build_spec(servers=[]),
        "security_option": None,
        "security_secrets": {},
    }

    with pytest.raises(InvalidSpec) as info:
        service.register_tool(payload, CALLER)

    assert info.value.details


def test_register_tool_sets_creator(service, store):
    payload = {
        "name": "items",
        "utility_provider": "Example",
        "openapi_specification": build_spec(security_schemes=API_KEY_SCHEMES),
        "security_option": "ApiKeyAuth",
        "security_secrets": {"x-secret-name": "api key"},
        "creator_user_id": None,
    }

    tool = service.register_tool(payload, CALLER)

    assert tool.creator_user_id == "user-1"
    assert tool.creator_organization_id == "org-1"
    assert tool.utility_provider == "example"
    assert store.get_tool(tool.id) == tool


@pytest.mark.asyncio
async def test_nested_body_ref_still_calls_upstream(service, store, respx_mock):
    spec = build_spec(
        method="post",
        request_body={
            "content": {
                "application/json": {
                    "schema": {
                        "type": "object",
                        "properties": {
                            "items": {"type": "array", "items": {"$ref": "#/components/schemas/Item"}},
                        },
                    }
                }
            }
        },
        components={"schemas": {"Item": {"type": "object", "properties": {"sku": {"type": "string"}}}}},
    )
    store.tools[TOOL_ID] = build_tool(spec)
    route = respx_mock.post(f"{BASE_URL}/items").mock(return_value=httpx.Response(200, json={"ok": True}))

    outcome = await service.execute_tool(TOOL_ID, CALLER, {"items": [{"sku": "a"}]})

    assert outcome == Succeeded(data={"ok": True}, status_code=200)
    assert json.loads(route.calls.last.request.content) == {"items": [{"sku": "a"}]}
    assert "#/components/schemas/Item" in service.get_tool_info(TOOL_ID)["input_schema"]["description"]


@pytest.mark.asyncio
async def test_request_build_error_reports_its_reason(service, store):
    store.tools[TOOL_ID] = build_tool(build_spec(path="/items/{itemId}"))

    outcome = await service.execute_tool(TOOL_ID, CALLER, {})

    assert outcome.kind == ErrorKind.ORCHESTRATION_ERROR
    assert outcome.error == "Unresolved path placeholders: itemId"
    assert store.executions[0].error == outcome.error


@pytest.mark.asyncio
async def test_list_user_tools_counts_executions(service, store, respx_mock):
    store.tools[TOOL_ID] = build_tool(build_spec())
    respx_mock.get(f"{BASE_URL}/items").mock(
        side_effect=[httpx.Response(200, json={}), httpx.Response(500, json={"error": "down"})]
    )

    await service.execute_tool(TOOL_ID, CALLER, {})
    await service.execute_tool(TOOL_ID, CALLER, {})
    [summary] = service.list_user_tools(CALLER)

    assert summary.link.status == ToolStatus.ACTIVE
    assert (summary.total_executions, summary.succeeded_executions, summary.failed_executions) == (2, 1, 1)
    assert service.list_user_tools(CallerIdentity(user_id="user-2")) == []
