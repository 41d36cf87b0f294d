"""Error taxonomy for tool execution."""

from __future__ import annotations

from typing import Any, Dict, List


class ToolEngineError(Exception):
    def __init__(self, message: str, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class InvalidSpec(ToolEngineError):
    """The tool's OpenAPI document breaks the single path/method/server convention."""


class MisconfiguredTool(ToolEngineError):
    """The security option points at a missing scheme or lacks secret-type tags."""


class MissingSecretMapping(MisconfiguredTool):
    def __init__(self, scheme_name: str, role: str) -> None:
        super().__init__(
            f"Security scheme '{scheme_name}' requires a '{role}' entry in securitySecrets"
        )
        self.scheme_name = scheme_name
        self.role = role


class UnsupportedScheme(ToolEngineError):
    pass


class InputValidationError(ToolEngineError):
    def __init__(self, errors: List[Dict[str, str]]) -> None:
        super().__init__("Input validation failed.", details=errors)
        self.errors = errors


class RequestBuildError(ToolEngineError):
    pass


class ToolNotFound(ToolEngineError):
    def __init__(self, tool_id: str) -> None:
        super().__init__(f"Tool config not found for ID '{tool_id}'.")
        self.tool_id = tool_id


class AuthenticationError(ToolEngineError):
    pass


class PlatformClientError(ToolEngineError):
    pass
