"""HTTP routes for the tool catalogue, tool execution and execution history."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from starlette.exceptions import HTTPException
from starlette.requests import Request
from starlette.responses import JSONResponse

from .auth import caller_from_headers
from .errors import AuthenticationError, InvalidSpec, ToolNotFound
from .models import (
    CallerIdentity,
    ErrorKind,
    ExecutionRecord,
    Failed,
    ToolDefinition,
    UserToolSummary,
)
from .service import ToolExecutionService, to_envelope


logger = logging.getLogger(__name__)


class ToolCreate(BaseModel):
    name: str
    description: Optional[str] = ""
    utility_provider: str = Field(..., description="Lowercase provider tag, e.g. github")
    openapi_specification: Dict[str, Any]
    security_option: Optional[str] = None
    security_secrets: Dict[str, str] = Field(
        default_factory=dict,
        description="x-secret-name / x-secret-username / x-secret-password secret types",
    )
    is_verified: bool = False


class ExecuteToolPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    params: Dict[str, Any] = Field(default_factory=dict)
    conversation_id: Optional[str] = Field(default=None, alias="conversationId")


class ToolSummary(BaseModel):
    id: str
    name: str
    description: str
    utility_provider: str


class ToolResponse(ToolSummary):
    openapi_specification: Dict[str, Any]
    security_option: Optional[str]
    security_secrets: Dict[str, str]
    is_verified: bool
    creator_user_id: Optional[str]
    creator_organization_id: Optional[str]
    created_at: Optional[str]
    updated_at: Optional[str]


class ToolInfoResponse(ToolSummary):
    title: str
    security_option: Optional[str]
    is_verified: bool
    method: Optional[str]
    path: Optional[str]
    input_schema: Dict[str, Any]


class ExecutionResponse(BaseModel):
    id: Optional[str]
    api_tool_id: str
    user_id: str
    organization_id: Optional[str]
    input: Any
    output: Any
    status_code: int
    error: Optional[str]
    error_details: Optional[str]
    hint: Optional[str]
    created_at: Optional[str]


class UserToolResponse(ToolSummary):
    security_option: Optional[str]
    is_verified: bool
    creator_user_id: Optional[str]
    status: str
    total_executions: int
    succeeded_executions: int
    failed_executions: int
    last_executed_at: Optional[str]
    created_at: Optional[str]
    updated_at: Optional[str]


def mount_api(app, service: ToolExecutionService) -> None:  # type: ignore[no-untyped-def]
    async def list_tools(request: Request) -> JSONResponse:
        _require_caller(request)
        tools = service.list_tools()
        return JSONResponse([to_summary(tool).model_dump() for tool in tools])

    async def get_tool(request: Request) -> JSONResponse:
        _require_caller(request)
        try:
            info = service.get_tool_info(request.path_params["tool_id"])
        except ToolNotFound as exc:
            return JSONResponse({"success": False, "error": exc.message}, status_code=404)
        return JSONResponse(ToolInfoResponse(**info).model_dump())

    async def create_tool(request: Request) -> JSONResponse:
        caller = _require_caller(request)
        try:
            payload = await request.json()
            data = ToolCreate(**payload).model_dump()
        except ValidationError as exc:
            return JSONResponse(
                {"success": False, "error": "Invalid payload", "details": exc.errors()},
                status_code=422,
            )
        except (TypeError, ValueError):
            return JSONResponse(
                {"success": False, "error": "Request body must be a JSON object"}, status_code=400
            )
        try:
            tool = service.register_tool(data, caller)
        except InvalidSpec as exc:
            return JSONResponse(
                {"success": False, "error": exc.message, "details": exc.details}, status_code=400
            )
        return JSONResponse(to_tool_response(tool).model_dump(), status_code=201)

    async def execute_tool(request: Request) -> JSONResponse:
        caller = _require_caller(request)
        tool_id = request.path_params["tool_id"]
        try:
            body = await request.json() if await request.body() else {}
            payload = ExecuteToolPayload(**body)
        except ValidationError as exc:
            return JSONResponse(
                {"success": False, "error": "Invalid payload", "details": exc.errors()},
                status_code=422,
            )
        except (TypeError, ValueError):
            return JSONResponse(
                {"success": False, "error": "Request body must be a JSON object"}, status_code=400
            )

        outcome = await service.execute_tool(
            tool_id, caller, payload.params, conversation_id=payload.conversation_id
        )
        return JSONResponse(to_envelope(outcome), status_code=http_status(outcome))

    async def list_executions(request: Request) -> JSONResponse:
        caller = _require_caller(request)
        tool_id = request.query_params.get("toolId") or request.query_params.get("tool_id")
        try:
            limit = int(request.query_params.get("limit", 50))
        except ValueError:
            return JSONResponse({"success": False, "error": "limit must be an integer"}, status_code=400)
        records = service.list_user_executions(caller, tool_id=tool_id, limit=max(1, min(limit, 500)))
        return JSONResponse(execution_list(records))

    async def list_user_tools(request: Request) -> JSONResponse:
        caller = _require_caller(request)
        return JSONResponse(user_tool_list(service.list_user_tools(caller)))

    app.add_route("/tools", list_tools, methods=["GET"])
    app.add_route("/tools", create_tool, methods=["POST"])
    app.add_route("/tools/{tool_id}", get_tool, methods=["GET"])
    app.add_route("/tools/{tool_id}/execute", execute_tool, methods=["POST"])
    app.add_route("/user-tool-executions", list_executions, methods=["GET"])
    app.add_route("/user-api-tools", list_user_tools, methods=["GET"])


def http_status(outcome) -> int:  # type: ignore[no-untyped-def]
    if not isinstance(outcome, Failed):
        return 200
    if outcome.kind == ErrorKind.TOOL_NOT_FOUND:
        return 404
    return 400


def _require_caller(request: Request) -> CallerIdentity:
    try:
        return caller_from_headers(request.headers)
    except AuthenticationError as exc:
        raise HTTPException(status_code=401, detail=exc.message) from exc


def to_summary(tool: ToolDefinition) -> ToolSummary:
    return ToolSummary(
        id=tool.id,
        name=tool.name,
        description=tool.description,
        utility_provider=tool.utility_provider,
    )


def to_tool_response(tool: ToolDefinition) -> ToolResponse:
    return ToolResponse(
        id=tool.id,
        name=tool.name,
        description=tool.description,
        utility_provider=tool.utility_provider,
        openapi_specification=tool.openapi_specification,
        security_option=tool.security_option,
        security_secrets=tool.security_secrets.to_mapping(),
        is_verified=tool.is_verified,
        creator_user_id=tool.creator_user_id,
        creator_organization_id=tool.creator_organization_id,
        created_at=tool.created_at,
        updated_at=tool.updated_at,
    )


def to_execution_response(record: ExecutionRecord) -> ExecutionResponse:
    return ExecutionResponse(
        id=record.id,
        api_tool_id=record.api_tool_id,
        user_id=record.user_id,
        organization_id=record.organization_id,
        input=record.input,
        output=record.output,
        status_code=record.status_code,
        error=record.error,
        error_details=record.error_details,
        hint=record.hint,
        created_at=record.created_at,
    )


def execution_list(records: List[ExecutionRecord]) -> List[Dict[str, Any]]:
    return [to_execution_response(record).model_dump() for record in records]


def to_user_tool_response(summary: UserToolSummary) -> UserToolResponse:
    return UserToolResponse(
        id=summary.link.api_tool_id,
        name=summary.name,
        description=summary.description,
        utility_provider=summary.utility_provider,
        security_option=summary.security_option,
        is_verified=summary.is_verified,
        creator_user_id=summary.creator_user_id,
        status=summary.link.status.value,
        total_executions=summary.total_executions,
        succeeded_executions=summary.succeeded_executions,
        failed_executions=summary.failed_executions,
        last_executed_at=summary.last_executed_at,
        created_at=summary.link.created_at,
        updated_at=summary.link.updated_at,
    )


def user_tool_list(summaries: List[UserToolSummary]) -> List[Dict[str, Any]]:
    return [to_user_tool_response(summary).model_dump() for summary in summaries]
