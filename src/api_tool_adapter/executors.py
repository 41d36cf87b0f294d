"""Request building and execution for OpenAPI tool calls."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx

from .errors import RequestBuildError
from .logging import redact_payload
from .models import ErrorKind, ExecutionOutcome, Failed, Succeeded
from .openapi import Operation
from .security import Credentials, SecurityScheme

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\{([^{}]+)\}")


@dataclass(frozen=True)
class PreparedRequest:
    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    params: Dict[str, Any] = field(default_factory=dict)
    json_body: Any = None
    form_body: Optional[Dict[str, str]] = None
    content: Optional[bytes] = None


class RequestBuilder:
    def build(
        self,
        operation: Operation,
        params: Dict[str, Any],
        scheme: Optional[SecurityScheme] = None,
        credentials: Optional[Credentials] = None,
    ) -> PreparedRequest:
        headers: Dict[str, str] = {}
        query: Dict[str, Any] = {}

        base_url = self._server_url(operation, params)
        path = self._substitute_path(operation, params)

        for parameter in operation.parameters:
            if parameter.location == "path":
                continue
            value = params.get(parameter.name)
            if value is None:
                continue
            if parameter.location == "query":
                query[parameter.name] = self._query_value(value)
            elif parameter.location == "header":
                headers[parameter.name] = self._scalar(value)
            else:
                logger.warning(
                    "Dropping unsupported %s parameter '%s'", parameter.location, parameter.name
                )

        json_body: Any = None
        form_body: Optional[Dict[str, str]] = None
        content: Optional[bytes] = None
        body = operation.request_body
        if body:
            headers["Content-Type"] = body.media_type
            if body.is_object:
                payload: Any = {
                    key: params[key] for key in body.schema["properties"] if key in params
                }
            else:
                # Non-object body schemas receive the whole parameter object.
                payload = dict(params)

            media_type = body.media_type.split(";")[0].strip().lower()
            if media_type == "application/json" or media_type.endswith("+json"):
                json_body = payload
            elif media_type == "application/x-www-form-urlencoded":
                form_body = {key: self._scalar(value) for key, value in payload.items()}
            else:
                content = json.dumps(payload).encode("utf-8")

        if scheme is not None:
            scheme.apply(credentials or {}, headers, query)

        return PreparedRequest(
            method=operation.method.upper(),
            url=base_url.rstrip("/") + path,
            headers=headers,
            params=query,
            json_body=json_body,
            form_body=form_body,
            content=content,
        )

    def _server_url(self, operation: Operation, params: Dict[str, Any]) -> str:
        def replace(match: "re.Match[str]") -> str:
            name = match.group(1)
            if params.get(name) is not None:
                return str(params[name])
            default = (operation.server_variables.get(name) or {}).get("default")
            if default is not None:
                return str(default)
            logger.warning("Server variable '%s' has no value or default", name)
            return match.group(0)

        return _PLACEHOLDER.sub(replace, operation.server_url)

    def _substitute_path(self, operation: Operation, params: Dict[str, Any]) -> str:
        path = operation.path
        for parameter in operation.parameters:
            if parameter.location != "path":
                continue
            value = params.get(parameter.name)
            if value is None:
                raise RequestBuildError(f"Missing required path parameter: {parameter.name}")
            path = path.replace(f"{{{parameter.name}}}", quote(self._scalar(value), safe=""))

        leftover = _PLACEHOLDER.findall(path)
        if leftover:
            raise RequestBuildError(f"Unresolved path placeholders: {', '.join(leftover)}")
        return path

    def _query_value(self, value: Any) -> Any:
        if isinstance(value, (list, tuple)):
            return [self._scalar(item) for item in value]
        return self._scalar(value)

    def _scalar(self, value: Any) -> str:
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, (dict, list)):
            return json.dumps(value)
        return str(value)


class RestExecutor:
    """Perform one upstream call per invocation; retries belong to the caller."""

    def __init__(self, timeout_seconds: float = 30) -> None:
        self.timeout_seconds = timeout_seconds

    async def execute(self, request: PreparedRequest) -> ExecutionOutcome:
        logger.info(
            "Calling upstream %s %s params=%s headers=%s",
            request.method,
            request.url,
            redact_payload(request.params),
            redact_payload(request.headers),
        )
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.request(
                    request.method,
                    request.url,
                    headers=request.headers,
                    params=request.params,
                    json=request.json_body,
                    data=request.form_body,
                    content=request.content,
                )
        except httpx.HTTPError as exc:
            logger.error("Upstream call failed: %s %s: %r", request.method, request.url, exc)
            return Failed(
                kind=ErrorKind.UPSTREAM_ERROR,
                error=f"Tool Execution Failed: {str(exc) or type(exc).__name__}",
                details=type(exc).__name__,
                status_code=500,
            )

        logger.info("Upstream response status: %s", response.status_code)
        body = self._parse_body(response)
        if response.is_success:
            return Succeeded(data=body, status_code=response.status_code)

        return Failed(
            kind=ErrorKind.UPSTREAM_ERROR,
            error=f"External API Error ({response.status_code}): {self._error_message(response, body)}",
            details=body,
            status_code=response.status_code,
        )

    def _parse_body(self, response: httpx.Response) -> Any:
        if not response.content:
            return {"status": "ok"} if response.is_success else None
        try:
            return response.json()
        except ValueError:
            return response.text

    def _error_message(self, response: httpx.Response, body: Any) -> str:
        if isinstance(body, dict):
            error = body.get("error")
            if isinstance(error, str) and error:
                return error
            if isinstance(error, dict) and error.get("message"):
                return str(error["message"])
        elif isinstance(body, str) and body.strip():
            return body.strip()
        return response.reason_phrase or str(response.status_code)
