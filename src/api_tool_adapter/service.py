"""Execution orchestrator for API tools."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple

from .config import Settings
from .errors import (
    InputValidationError,
    InvalidSpec,
    MisconfiguredTool,
    RequestBuildError,
    ToolEngineError,
    ToolNotFound,
    UnsupportedScheme,
)
from .executors import RequestBuilder, RestExecutor
from .logging import redact_payload
from .models import (
    CallerIdentity,
    ErrorKind,
    ExecutionOutcome,
    ExecutionRecord,
    Failed,
    SecuritySecrets,
    SetupNeeded,
    Succeeded,
    ToolDefinition,
    ToolStatus,
    UserToolSummary,
)
from .openapi import normalize_spec, validate_tool_definition
from .schema import derive_input_schema, empty_schema
from .security import CredentialResolver
from .tool_store import ToolStore
from .validation import validate_params

logger = logging.getLogger(__name__)

ORCHESTRATION_FAILED = "Tool execution orchestration failed."
CONTACT_ADMIN_HINT = "This tool is misconfigured. Contact the tool administrator."
SETUP_HINT = (
    "A form asking the user for the required secrets has been displayed. "
    "Tell the user to fill it in, then run the tool again."
)

_ERROR_KINDS: List[Tuple[type, ErrorKind, int]] = [
    (InvalidSpec, ErrorKind.INVALID_SPEC, 500),
    (MisconfiguredTool, ErrorKind.MISCONFIGURED_TOOL, 500),
    (UnsupportedScheme, ErrorKind.UNSUPPORTED_SCHEME, 500),
    (InputValidationError, ErrorKind.VALIDATION_ERROR, 400),
    (RequestBuildError, ErrorKind.ORCHESTRATION_ERROR, 500),
]


def to_envelope(outcome: ExecutionOutcome) -> Dict[str, Any]:
    """Caller-facing envelope; setup-needed answers carry a hint for the agent."""
    envelope = outcome.to_response()
    if isinstance(outcome, SetupNeeded):
        envelope["hint"] = SETUP_HINT
    return envelope


class ToolExecutionService:
    """
    Runs one tool invocation through validation, prerequisite checks and the
    upstream call, and writes exactly one execution record per terminal state.

    Nothing is cached between invocations: the tool definition, derived schema
    and credentials are loaded again on every call.
    """

    def __init__(
        self,
        settings: Settings,
        store: ToolStore,
        resolver: CredentialResolver,
        executor: Optional[RestExecutor] = None,
        builder: Optional[RequestBuilder] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.resolver = resolver
        self.executor = executor or RestExecutor(timeout_seconds=settings.upstream_timeout_seconds)
        self.builder = builder or RequestBuilder()
        self.semaphore = asyncio.Semaphore(settings.adapter_max_concurrency)

    async def execute_tool(
        self,
        tool_id: str,
        caller: CallerIdentity,
        params: Optional[Dict[str, Any]] = None,
        conversation_id: Optional[str] = None,
    ) -> ExecutionOutcome:
        params = dict(params or {})
        log_prefix = f"[tool={tool_id} user={caller.user_id}]"
        async with self.semaphore:
            logger.info(
                "%s Executing conversation=%s params=%s",
                log_prefix,
                conversation_id,
                redact_payload(params),
            )
            try:
                tool = self.store.get_tool(tool_id)
            except Exception as exc:
                logger.exception("%s Failed to load tool", log_prefix)
                return Failed(ErrorKind.ORCHESTRATION_ERROR, ORCHESTRATION_FAILED, details=str(exc))
            if not tool:
                logger.warning("%s Tool not found", log_prefix)
                error = ToolNotFound(tool_id)
                return Failed(ErrorKind.TOOL_NOT_FOUND, error.message, status_code=404)

            self._link_user_tool(tool, caller, log_prefix)
            outcome, validated = await self._run(tool, caller, params, log_prefix)

            record = ExecutionRecord.from_outcome(
                tool.id, caller, validated if validated is not None else params, outcome
            )
            self._record(record, log_prefix)
            if isinstance(outcome, Succeeded):
                self._mark_active(tool, caller, log_prefix)

            logger.info(
                "%s Finished with %s (status=%s)",
                log_prefix,
                type(outcome).__name__,
                outcome.status_code,
            )
            return outcome

    async def _run(
        self,
        tool: ToolDefinition,
        caller: CallerIdentity,
        params: Dict[str, Any],
        log_prefix: str,
    ) -> Tuple[ExecutionOutcome, Optional[Dict[str, Any]]]:
        validated: Optional[Dict[str, Any]] = None
        try:
            operation = normalize_spec(tool.openapi_specification)
            schema = derive_input_schema(operation)
            validated = validate_params(schema, params)

            resolution = await self.resolver.resolve(tool, caller)
            if isinstance(resolution, SetupNeeded):
                logger.info(
                    "%s Setup needed: %s",
                    log_prefix,
                    list(resolution.required_secret_inputs) or resolution.message,
                )
                return resolution, validated

            request = self.builder.build(
                operation, validated, resolution.scheme, resolution.credentials
            )
            return await self.executor.execute(request), validated
        except ToolEngineError as exc:
            logger.warning("%s %s: %s", log_prefix, type(exc).__name__, exc.message)
            return self._failure(exc), validated
        except Exception as exc:
            logger.exception("%s Unexpected orchestration failure", log_prefix)
            return (
                Failed(ErrorKind.ORCHESTRATION_ERROR, ORCHESTRATION_FAILED, details=str(exc)),
                validated,
            )

    def _failure(self, exc: ToolEngineError) -> Failed:
        for error_type, kind, status_code in _ERROR_KINDS:
            if isinstance(exc, error_type):
                return Failed(
                    kind=kind,
                    error=exc.message,
                    details=exc.details,
                    status_code=status_code,
                    hint=CONTACT_ADMIN_HINT if kind.is_configuration_error else None,
                )
        return Failed(ErrorKind.ORCHESTRATION_ERROR, ORCHESTRATION_FAILED, details=exc.message)

    def _link_user_tool(self, tool: ToolDefinition, caller: CallerIdentity, log_prefix: str) -> None:
        try:
            self.store.get_or_create_user_tool(caller.user_id, caller.organization_id, tool.id)
        except Exception:
            logger.exception("%s Failed to link tool to user", log_prefix)

    def _record(self, record: ExecutionRecord, log_prefix: str) -> None:
        try:
            self.store.record_execution(record)
        except Exception:
            logger.exception("%s Failed to write execution record", log_prefix)

    def _mark_active(self, tool: ToolDefinition, caller: CallerIdentity, log_prefix: str) -> None:
        try:
            self.store.update_user_tool_status(
                caller.user_id, caller.organization_id, tool.id, ToolStatus.ACTIVE
            )
        except Exception:
            logger.exception("%s Failed to update user tool status", log_prefix)

    def list_tools(self) -> List[ToolDefinition]:
        return self.store.list_tools()

    def get_tool_info(self, tool_id: str) -> Dict[str, Any]:
        tool = self.store.get_tool(tool_id)
        if not tool:
            raise ToolNotFound(tool_id)

        info: Dict[str, Any] = {
            "id": tool.id,
            "name": tool.name,
            "title": tool.title,
            "description": tool.description,
            "utility_provider": tool.utility_provider,
            "security_option": tool.security_option,
            "is_verified": tool.is_verified,
            "method": None,
            "path": None,
        }
        try:
            operation = normalize_spec(tool.openapi_specification)
        except InvalidSpec as exc:
            info["input_schema"] = empty_schema(f"Input schema unavailable: {exc.message}")
            return info

        info["method"] = operation.method.upper()
        info["path"] = operation.path
        info["input_schema"] = derive_input_schema(operation)
        return info

    def register_tool(self, payload: Dict[str, Any], caller: CallerIdentity) -> ToolDefinition:
        errors = validate_tool_definition(
            payload.get("openapi_specification"),
            payload.get("security_option"),
            SecuritySecrets.from_mapping(payload.get("security_secrets")),
        )
        if errors:
            raise InvalidSpec("Tool definition is invalid.", details=errors)

        data = dict(payload)
        data["creator_user_id"] = data.get("creator_user_id") or caller.user_id
        data["creator_organization_id"] = (
            data.get("creator_organization_id") or caller.organization_id
        )
        tool = self.store.create_tool(data)
        logger.info("Registered tool id=%s name=%s", tool.id, tool.name)
        return tool

    def list_user_executions(
        self,
        caller: CallerIdentity,
        tool_id: Optional[str] = None,
        limit: int = 50,
    ) -> List[ExecutionRecord]:
        return self.store.list_user_executions(
            caller.user_id, caller.organization_id, tool_id=tool_id, limit=limit
        )

    def list_user_tools(self, caller: CallerIdentity) -> List[UserToolSummary]:
        return self.store.list_user_tools(caller.user_id, caller.organization_id)
