"""MCP server and HTTP app setup for the API tool adapter."""

import logging
from typing import Any, Dict, Optional

from fastmcp import FastMCP
from fastmcp.server.dependencies import get_http_headers
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse

from .admin_api import execution_list, mount_api, to_summary, user_tool_list
from .auth import caller_from_headers, verify_service_key
from .config import Settings
from .errors import AuthenticationError, ToolNotFound
from .models import CallerIdentity
from .platform_client import OAuthServiceClient, SecretServiceClient
from .security import CredentialResolver
from .service import ToolExecutionService, to_envelope
from .tool_store import ToolStore

logger = logging.getLogger(__name__)


def build_service(settings: Settings, store: Optional[ToolStore] = None) -> ToolExecutionService:
    secret_client = SecretServiceClient(
        base_url=settings.secret_service_base_url,
        api_key=settings.secret_service_api_key,
        timeout_seconds=settings.platform_timeout_seconds,
        verify_ssl=settings.platform_verify_ssl,
    )
    oauth_client = None
    if settings.oauth_service_base_url:
        oauth_client = OAuthServiceClient(
            base_url=settings.oauth_service_base_url,
            api_key=settings.oauth_service_api_key,
            timeout_seconds=settings.platform_timeout_seconds,
            verify_ssl=settings.platform_verify_ssl,
        )
    resolver = CredentialResolver(secret_client, oauth_client, scope=settings.secret_scope)
    return ToolExecutionService(
        settings, store or ToolStore(settings.adapter_database_url), resolver
    )


def build_server(
    settings: Settings, service: Optional[ToolExecutionService] = None
) -> tuple[FastMCP, object | None]:
    service = service or build_service(settings)

    mcp = FastMCP(settings.service_name, instructions=_instructions())
    _register_tools(mcp, service)

    app = _get_http_app(mcp, settings)
    if app:
        _attach_auth(app, settings)
        _attach_healthcheck(app)
        mount_api(app, service)  # type: ignore[arg-type]
    return mcp, app


def _register_tools(mcp: FastMCP, service: ToolExecutionService) -> None:
    @mcp.tool(name="list_api_tools")
    async def list_api_tools() -> Dict[str, Any]:
        """List the registered API tools with their ids and descriptions."""
        tools = service.list_tools()
        return {"success": True, "data": [to_summary(tool).model_dump() for tool in tools]}

    @mcp.tool(name="get_api_tool")
    async def get_api_tool(tool_id: str) -> Dict[str, Any]:
        """Describe one API tool, including the input schema its parameters must match."""
        try:
            return {"success": True, "data": service.get_tool_info(tool_id)}
        except ToolNotFound as exc:
            return {"success": False, "error": exc.message}

    @mcp.tool(name="execute_api_tool")
    async def execute_api_tool(
        tool_id: str,
        params: Optional[Dict[str, Any]] = None,
        conversation_id: Optional[str] = None,
        user_id: Optional[str] = None,
        organization_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Run an API tool for the calling user.

        Answers with a success envelope, a setup-needed envelope listing the
        secrets the user still has to provide, or an error envelope.
        """
        try:
            caller = _mcp_caller(user_id, organization_id)
        except AuthenticationError as exc:
            return {"success": False, "error": exc.message}
        outcome = await service.execute_tool(
            tool_id, caller, params or {}, conversation_id=conversation_id
        )
        return to_envelope(outcome)

    @mcp.tool(name="list_api_tool_executions")
    async def list_api_tool_executions(
        tool_id: Optional[str] = None,
        limit: int = 20,
        user_id: Optional[str] = None,
        organization_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """List the calling user's recent tool executions, newest first."""
        try:
            caller = _mcp_caller(user_id, organization_id)
        except AuthenticationError as exc:
            return {"success": False, "error": exc.message}
        records = service.list_user_executions(caller, tool_id=tool_id, limit=limit)
        return {"success": True, "data": execution_list(records)}

    @mcp.tool(name="list_user_api_tools")
    async def list_user_api_tools(
        user_id: Optional[str] = None,
        organization_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """List the tools the calling user has used, with status and execution counts."""
        try:
            caller = _mcp_caller(user_id, organization_id)
        except AuthenticationError as exc:
            return {"success": False, "error": exc.message}
        return {"success": True, "data": user_tool_list(service.list_user_tools(caller))}


def _mcp_caller(user_id: Optional[str], organization_id: Optional[str]) -> CallerIdentity:
    headers = get_http_headers()
    if headers:
        return caller_from_headers(headers)
    # stdio transport has no request headers.
    return caller_from_headers(
        {
            "x-client-user-id": user_id or "",
            "x-client-organization-id": organization_id or "",
        }
    )


def _attach_auth(app, settings: Settings) -> None:  # type: ignore[no-untyped-def]
    if not settings.adapter_service_key:
        logger.warning("ADAPTER_SERVICE_KEY not set; service key check disabled")

    async def auth_middleware(request, call_next):  # type: ignore[no-untyped-def]
        if request.method == "OPTIONS":
            return await call_next(request)
        if request.url.path.endswith("/health"):
            return await call_next(request)
        try:
            verify_service_key(request.headers, settings.adapter_service_key)
        except AuthenticationError as exc:
            logger.warning("Rejected request to %s: %s", request.url.path, exc.message)
            return JSONResponse({"success": False, "error": "Unauthorized"}, status_code=401)
        return await call_next(request)

    app.add_middleware(BaseHTTPMiddleware, dispatch=auth_middleware)


def _attach_healthcheck(app) -> None:  # type: ignore[no-untyped-def]
    async def healthcheck(_request):  # type: ignore[no-untyped-def]
        return JSONResponse({"status": "ok"})

    app.add_route("/health", healthcheck, methods=["GET"])


def _instructions() -> str:
    return (
        "API tool adapter. Each tool wraps one operation of a third-party HTTP API. "
        "Call get_api_tool for the input schema, then execute_api_tool. "
        "A needsSetup answer means the user must provide secrets before retrying."
    )


def _get_http_app(mcp: FastMCP, settings: Settings):  # type: ignore[no-untyped-def]
    transport = settings.adapter_transport.lower()
    if transport in {"http"}:
        app = mcp.http_app(transport="http", stateless_http=True, json_response=True)
    elif transport in {"streamable-http", "streamablehttp"}:
        app = mcp.http_app(
            transport="streamable-http", stateless_http=True, json_response=True
        )
    elif transport in {"sse"}:
        app = mcp.http_app(transport="sse")
    else:
        return None
    _attach_cors(app)
    return app


def _attach_cors(app) -> None:  # type: ignore[no-untyped-def]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
