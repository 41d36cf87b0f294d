"""Shared fixtures: sample OpenAPI tool documents, an in-memory store and a fake secret service."""

import copy
import uuid
from dataclasses import replace
from typing import Any, Dict, List, Optional

import pytest

from api_tool_adapter.config import Settings
from api_tool_adapter.models import (
    ExecutionRecord,
    SecuritySecrets,
    ToolDefinition,
    ToolStatus,
    UserToolLink,
    UserToolSummary,
)
from api_tool_adapter.security import CredentialResolver
from api_tool_adapter.service import ToolExecutionService

BASE_URL = "https://api.example.com/v1"
TOOL_ID = "5b0f7c2e-3f4a-4b7e-9d55-0c1d2e3f4a5b"


def build_spec(
    path: str = "/items",
    method: str = "get",
    parameters: Optional[List[Dict[str, Any]]] = None,
    request_body: Optional[Dict[str, Any]] = None,
    security_schemes: Optional[Dict[str, Any]] = None,
    servers: Optional[List[Dict[str, Any]]] = None,
    components: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    operation: Dict[str, Any] = {"operationId": "doThing", "description": "Does the thing"}
    if parameters is not None:
        operation["parameters"] = parameters
    if request_body is not None:
        operation["requestBody"] = request_body

    spec: Dict[str, Any] = {
        "openapi": "3.0.3",
        "info": {"title": "Example API", "version": "1.0.0"},
        "servers": servers if servers is not None else [{"url": BASE_URL}],
        "paths": {path: {method: operation}},
    }
    merged_components = copy.deepcopy(components or {})
    if security_schemes is not None:
        merged_components["securitySchemes"] = security_schemes
    if merged_components:
        spec["components"] = merged_components
    return spec


def build_tool(
    spec: Dict[str, Any],
    security_option: Optional[str] = None,
    security_secrets: Optional[Dict[str, str]] = None,
    tool_id: str = TOOL_ID,
    utility_provider: str = "example",
) -> ToolDefinition:
    return ToolDefinition(
        id=tool_id,
        name="example_tool",
        description="Example tool",
        utility_provider=utility_provider,
        openapi_specification=spec,
        security_option=security_option,
        security_secrets=SecuritySecrets.from_mapping(security_secrets),
    )


class FakeStore:
    def __init__(self, tools: Optional[List[ToolDefinition]] = None) -> None:
        self.tools: Dict[str, ToolDefinition] = {tool.id: tool for tool in tools or []}
        self.executions: List[ExecutionRecord] = []
        self.links: Dict[tuple, UserToolLink] = {}
        self.status_updates: List[tuple] = []
        self.fail_record = False
        self.fail_link = False

    def list_tools(self) -> List[ToolDefinition]:
        return list(self.tools.values())

    def get_tool(self, tool_id: str) -> Optional[ToolDefinition]:
        return self.tools.get(tool_id)

    def create_tool(self, payload: Dict[str, Any]) -> ToolDefinition:
        tool = ToolDefinition(
            id=str(uuid.uuid4()),
            name=payload["name"],
            description=payload.get("description") or "",
            utility_provider=payload["utility_provider"].lower(),
            openapi_specification=payload["openapi_specification"],
            security_option=payload.get("security_option"),
            security_secrets=SecuritySecrets.from_mapping(payload.get("security_secrets")),
            is_verified=payload.get("is_verified", False),
            creator_user_id=payload.get("creator_user_id"),
            creator_organization_id=payload.get("creator_organization_id"),
        )
        self.tools[tool.id] = tool
        return tool

    def record_execution(self, record: ExecutionRecord) -> ExecutionRecord:
        if self.fail_record:
            raise RuntimeError("database unavailable")
        self.executions.append(record)
        return record

    def list_user_executions(self, user_id, organization_id, tool_id=None, limit=50):
        matching = [
            record
            for record in self.executions
            if record.user_id == user_id
            and record.organization_id == organization_id
            and (tool_id is None or record.api_tool_id == tool_id)
        ]
        return list(reversed(matching))[:limit]

    def get_or_create_user_tool(self, user_id, organization_id, tool_id) -> UserToolLink:
        if self.fail_link:
            raise RuntimeError("database unavailable")
        key = (user_id, organization_id, tool_id)
        return self.links.setdefault(key, UserToolLink(user_id, organization_id, tool_id))

    def update_user_tool_status(self, user_id, organization_id, tool_id, status: ToolStatus) -> None:
        self.status_updates.append((user_id, organization_id, tool_id, status))
        key = (user_id, organization_id, tool_id)
        if key in self.links:
            self.links[key] = replace(self.links[key], status=status)

    def list_user_tools(self, user_id, organization_id) -> List[UserToolSummary]:
        summaries = []
        for (link_user, link_org, tool_id), link in self.links.items():
            if link_user != user_id or link_org != organization_id or link.status == ToolStatus.DELETED:
                continue
            tool = self.tools[tool_id]
            runs = [
                record
                for record in self.executions
                if record.api_tool_id == tool_id
                and record.user_id == user_id
                and record.organization_id == organization_id
            ]
            summaries.append(
                UserToolSummary(
                    link=link,
                    name=tool.name,
                    description=tool.description,
                    utility_provider=tool.utility_provider,
                    security_option=tool.security_option,
                    is_verified=tool.is_verified,
                    creator_user_id=tool.creator_user_id,
                    total_executions=len(runs),
                    succeeded_executions=sum(1 for run in runs if 200 <= run.status_code < 300),
                    failed_executions=sum(1 for run in runs if run.status_code >= 400),
                )
            )
        return summaries


class FakeSecretClient:
    def __init__(self, secrets: Optional[Dict[str, str]] = None, error: Optional[Exception] = None) -> None:
        self.secrets = dict(secrets or {})
        self.error = error
        self.requested: List[str] = []

    async def get_secret(self, secret_id: str) -> Optional[str]:
        self.requested.append(secret_id)
        if self.error:
            raise self.error
        return self.secrets.get(secret_id)


class FakeOAuthClient:
    def __init__(self, status) -> None:  # type: ignore[no-untyped-def]
        self.status = status
        self.calls: List[tuple] = []

    async def check_auth(self, user_id, organization_id, provider, scopes):  # type: ignore[no-untyped-def]
        self.calls.append((user_id, organization_id, provider, scopes))
        return self.status


@pytest.fixture
def settings() -> Settings:
    return Settings(
        adapter_service_key="service-key",
        upstream_timeout_seconds=5,
        secret_service_base_url="https://secrets.internal",
        secret_service_api_key="secret-api-key",
    )


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def secret_client() -> FakeSecretClient:
    return FakeSecretClient()


@pytest.fixture
def service(settings, store, secret_client) -> ToolExecutionService:
    return ToolExecutionService(settings, store, CredentialResolver(secret_client))
