"""Internal models for tool definitions, execution outcomes and audit records."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict, Mapping, Optional, Tuple, Union


_SECRET_ROLE_KEYS = {
    "name": ("x-secret-name", "name"),
    "username": ("x-secret-username", "username"),
    "password": ("x-secret-password", "password"),
}


class ToolStatus(str, Enum):
    UNSET = "unset"
    ACTIVE = "active"
    DELETED = "deleted"


class ErrorKind(str, Enum):
    INVALID_SPEC = "invalid_spec"
    MISCONFIGURED_TOOL = "misconfigured_tool"
    UNSUPPORTED_SCHEME = "unsupported_scheme"
    VALIDATION_ERROR = "validation_error"
    UPSTREAM_ERROR = "upstream_error"
    ORCHESTRATION_ERROR = "orchestration_error"
    TOOL_NOT_FOUND = "tool_not_found"

    @property
    def is_configuration_error(self) -> bool:
        return self in {
            ErrorKind.INVALID_SPEC,
            ErrorKind.MISCONFIGURED_TOOL,
            ErrorKind.UNSUPPORTED_SCHEME,
        }


@dataclass(frozen=True)
class SecuritySecrets:
    """Secret-type tags per credential role. Tags name a kind of secret, never a value."""

    name: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "SecuritySecrets":
        data = data or {}
        values: Dict[str, Optional[str]] = {}
        for role, keys in _SECRET_ROLE_KEYS.items():
            value = next((data[key] for key in keys if data.get(key)), None)
            values[role] = str(value) if value else None
        return cls(**values)

    def to_mapping(self) -> Dict[str, str]:
        stored: Dict[str, str] = {}
        for role, keys in _SECRET_ROLE_KEYS.items():
            value = getattr(self, role)
            if value:
                stored[keys[0]] = value
        return stored


@dataclass(frozen=True)
class CallerIdentity:
    user_id: str
    organization_id: Optional[str] = None


@dataclass(frozen=True)
class ToolDefinition:
    id: str
    name: str
    description: str
    utility_provider: str
    openapi_specification: Dict[str, Any]
    security_option: Optional[str] = None
    security_secrets: SecuritySecrets = field(default_factory=SecuritySecrets)
    is_verified: bool = False
    creator_user_id: Optional[str] = None
    creator_organization_id: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def title(self) -> str:
        info = self.openapi_specification.get("info") or {}
        return info.get("title") or self.name


@dataclass(frozen=True)
class Succeeded:
    data: Any
    status_code: int = 200

    def to_response(self) -> Dict[str, Any]:
        return {"success": True, "data": self.data}


@dataclass(frozen=True)
class SetupNeeded:
    utility_provider: str
    title: str
    description: str
    message: str
    required_secret_inputs: Tuple[str, ...] = ()
    required_action_confirmations: Tuple[str, ...] = ()
    oauth_url: Optional[str] = None

    # Setup needed is a valid answer, not a failure.
    status_code: ClassVar[int] = 200

    def to_response(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "needsSetup": True,
            "utilityProvider": self.utility_provider,
            "title": self.title,
            "description": self.description,
            "message": self.message,
            "requiredSecretInputs": list(self.required_secret_inputs),
            "requiredActionConfirmations": list(self.required_action_confirmations),
        }
        if self.oauth_url:
            data["oauthUrl"] = self.oauth_url
        return {"success": True, "data": data}


@dataclass(frozen=True)
class Failed:
    kind: ErrorKind
    error: str
    details: Any = None
    status_code: int = 500
    hint: Optional[str] = None

    def to_response(self) -> Dict[str, Any]:
        response: Dict[str, Any] = {"success": False, "error": self.error}
        if self.details is not None:
            response["details"] = self.details
        if self.hint:
            response["hint"] = self.hint
        return response


ExecutionOutcome = Union[Succeeded, SetupNeeded, Failed]


@dataclass(frozen=True)
class ExecutionRecord:
    api_tool_id: str
    user_id: str
    organization_id: Optional[str]
    input: Any
    output: Any
    status_code: int
    error: Optional[str] = None
    error_details: Optional[str] = None
    hint: Optional[str] = None
    id: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_outcome(
        cls,
        tool_id: str,
        caller: CallerIdentity,
        input_params: Any,
        outcome: ExecutionOutcome,
    ) -> "ExecutionRecord":
        error: Optional[str] = None
        error_details: Optional[str] = None
        hint: Optional[str] = None

        if isinstance(outcome, Failed):
            error = outcome.error
            error_details = _stringify(outcome.details)
            hint = outcome.hint
        elif isinstance(outcome, SetupNeeded):
            error = "Prerequisites not met, setup needed."
            hint = outcome.description

        return cls(
            api_tool_id=tool_id,
            user_id=caller.user_id,
            organization_id=caller.organization_id,
            input=input_params,
            output=outcome.to_response(),
            status_code=outcome.status_code,
            error=error,
            error_details=error_details,
            hint=hint,
        )


@dataclass(frozen=True)
class UserToolLink:
    user_id: str
    organization_id: Optional[str]
    api_tool_id: str
    status: ToolStatus = ToolStatus.UNSET
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


@dataclass(frozen=True)
class UserToolSummary:
    """A tool linked to a user, with the user's status and execution counts for it."""

    link: UserToolLink
    name: str
    description: str
    utility_provider: str
    security_option: Optional[str]
    is_verified: bool
    creator_user_id: Optional[str] = None
    total_executions: int = 0
    succeeded_executions: int = 0
    failed_executions: int = 0
    last_executed_at: Optional[str] = None


def _stringify(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)
