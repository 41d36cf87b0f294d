"""Security schemes, credential slots and credential resolution."""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

import httpx

from .errors import (
    MisconfiguredTool,
    MissingSecretMapping,
    PlatformClientError,
    RequestBuildError,
    UnsupportedScheme,
)
from .models import CallerIdentity, SecuritySecrets, SetupNeeded, ToolDefinition
from .platform_client import (
    OAuthServiceClient,
    OAuthStatus,
    SecretServiceClient,
    build_secret_id,
)


logger = logging.getLogger(__name__)


class CredentialRole(str, Enum):
    NAME = "name"
    USERNAME = "username"
    PASSWORD = "password"
    ACCESS_TOKEN = "access_token"


@dataclass(frozen=True)
class SlotKey:
    scheme_name: str
    role: CredentialRole


@dataclass(frozen=True)
class CredentialSlot:
    key: SlotKey
    secret_type: str
    prompt: str


Credentials = Dict[SlotKey, str]


def _require(credentials: Credentials, key: SlotKey) -> str:
    value = credentials.get(key)
    if value is None:
        raise RequestBuildError(
            f"No credential resolved for scheme '{key.scheme_name}' ({key.role.value})"
        )
    return value


@dataclass(frozen=True)
class ApiKeyScheme:
    scheme_name: str
    param_name: str
    location: str = "header"

    @property
    def key(self) -> SlotKey:
        return SlotKey(self.scheme_name, CredentialRole.NAME)

    def slots(self, secrets: SecuritySecrets) -> List[CredentialSlot]:
        if not secrets.name:
            raise MissingSecretMapping(self.scheme_name, "x-secret-name")
        return [CredentialSlot(self.key, secrets.name, f"Enter API Key for {self.param_name}")]

    def expand_missing(
        self, slots: List[CredentialSlot], missing: List[CredentialSlot]
    ) -> List[CredentialSlot]:
        return missing

    def apply(self, credentials: Credentials, headers: Dict[str, str], query: Dict[str, Any]) -> None:
        value = _require(credentials, self.key)
        if self.location == "query":
            query[self.param_name] = value
        elif self.location == "cookie":
            cookie = f"{self.param_name}={value}"
            headers["Cookie"] = f"{headers['Cookie']}; {cookie}" if headers.get("Cookie") else cookie
        else:
            headers[self.param_name] = value


@dataclass(frozen=True)
class BearerScheme:
    scheme_name: str

    @property
    def key(self) -> SlotKey:
        return SlotKey(self.scheme_name, CredentialRole.NAME)

    def slots(self, secrets: SecuritySecrets) -> List[CredentialSlot]:
        if not secrets.name:
            raise MissingSecretMapping(self.scheme_name, "x-secret-name")
        return [CredentialSlot(self.key, secrets.name, "Enter Bearer Token")]

    def expand_missing(
        self, slots: List[CredentialSlot], missing: List[CredentialSlot]
    ) -> List[CredentialSlot]:
        return missing

    def apply(self, credentials: Credentials, headers: Dict[str, str], query: Dict[str, Any]) -> None:
        headers["Authorization"] = f"Bearer {_require(credentials, self.key)}"


@dataclass(frozen=True)
class BasicScheme:
    scheme_name: str

    @property
    def username_key(self) -> SlotKey:
        return SlotKey(self.scheme_name, CredentialRole.USERNAME)

    @property
    def password_key(self) -> SlotKey:
        return SlotKey(self.scheme_name, CredentialRole.PASSWORD)

    def slots(self, secrets: SecuritySecrets) -> List[CredentialSlot]:
        if not secrets.username:
            raise MissingSecretMapping(self.scheme_name, "x-secret-username")
        slots = [CredentialSlot(self.username_key, secrets.username, "Enter Username")]
        if secrets.password:
            slots.append(CredentialSlot(self.password_key, secrets.password, "Enter Password"))
        return slots

    def expand_missing(
        self, slots: List[CredentialSlot], missing: List[CredentialSlot]
    ) -> List[CredentialSlot]:
        # Re-asking for the username also re-asks for a declared password.
        if not any(slot.key == self.username_key for slot in missing):
            return missing
        password = [slot for slot in slots if slot.key == self.password_key]
        return [*missing, *(slot for slot in password if slot not in missing)]

    def apply(self, credentials: Credentials, headers: Dict[str, str], query: Dict[str, Any]) -> None:
        username = _require(credentials, self.username_key)
        password = credentials.get(self.password_key, "")
        token = base64.b64encode(f"{username}:{password}".encode("utf-8")).decode("ascii")
        headers["Authorization"] = f"Basic {token}"


@dataclass(frozen=True)
class OAuth2Scheme:
    scheme_name: str
    provider: str
    scopes: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def key(self) -> SlotKey:
        return SlotKey(self.scheme_name, CredentialRole.ACCESS_TOKEN)

    def slots(self, secrets: SecuritySecrets) -> List[CredentialSlot]:
        return []

    def expand_missing(
        self, slots: List[CredentialSlot], missing: List[CredentialSlot]
    ) -> List[CredentialSlot]:
        return missing

    def apply(self, credentials: Credentials, headers: Dict[str, str], query: Dict[str, Any]) -> None:
        headers["Authorization"] = f"Bearer {_require(credentials, self.key)}"


SecurityScheme = Union[ApiKeyScheme, BearerScheme, BasicScheme, OAuth2Scheme]


def parse_security_scheme(spec: Dict[str, Any], scheme_name: str) -> SecurityScheme:
    schemes = (spec.get("components") or {}).get("securitySchemes") or {}
    raw = schemes.get(scheme_name)
    if not isinstance(raw, dict):
        raise MisconfiguredTool(
            f"Security option '{scheme_name}' not found in components.securitySchemes"
        )
    if "$ref" in raw:
        raise MisconfiguredTool(f"Security scheme '{scheme_name}' is a $ref and cannot be used")

    scheme_type = raw.get("type")
    if scheme_type == "apiKey":
        if not raw.get("name"):
            raise MisconfiguredTool(f"apiKey scheme '{scheme_name}' does not declare a name")
        return ApiKeyScheme(scheme_name, raw["name"], (raw.get("in") or "header").lower())

    if scheme_type == "http":
        http_scheme = str(raw.get("scheme") or "").lower()
        if http_scheme == "bearer":
            return BearerScheme(scheme_name)
        if http_scheme == "basic":
            return BasicScheme(scheme_name)
        raise UnsupportedScheme(f"HTTP auth scheme '{http_scheme}' is not supported")

    if scheme_type == "oauth2":
        return OAuth2Scheme(scheme_name, _oauth_provider(scheme_name), _oauth_scopes(raw))

    raise UnsupportedScheme(f"Security scheme type '{scheme_type}' is not supported")


def _oauth_provider(scheme_name: str) -> str:
    suffix = "_oauth"
    return scheme_name[: -len(suffix)] if scheme_name.endswith(suffix) else scheme_name


def _oauth_scopes(raw: Dict[str, Any]) -> Tuple[str, ...]:
    flows = raw.get("flows") or {}
    preferred = ["authorizationCode", *(name for name in flows if name != "authorizationCode")]
    for name in preferred:
        flow = flows.get(name)
        if isinstance(flow, dict) and isinstance(flow.get("scopes"), dict):
            return tuple(flow["scopes"])
    return ()


@dataclass(frozen=True)
class CredentialResolution:
    scheme: Optional[SecurityScheme] = None
    credentials: Credentials = field(default_factory=dict)


class CredentialResolver:
    """Resolve the credential slots a tool's security option needs for one caller.

    Secrets are fetched from the secret service on every call; a slot whose
    lookup returns nothing or fails counts as missing and produces a
    ``SetupNeeded`` answer instead of an error.
    """

    def __init__(
        self,
        secret_client: SecretServiceClient,
        oauth_client: Optional[OAuthServiceClient] = None,
        scope: str = "client",
    ) -> None:
        self.secret_client = secret_client
        self.oauth_client = oauth_client
        self.scope = scope

    async def resolve(
        self, tool: ToolDefinition, caller: CallerIdentity
    ) -> Union[CredentialResolution, SetupNeeded]:
        if not tool.security_option:
            return CredentialResolution()

        scheme = parse_security_scheme(tool.openapi_specification, tool.security_option)
        credentials: Credentials = {}

        if isinstance(scheme, OAuth2Scheme):
            status = await self._check_oauth(scheme, caller)
            if not status.has_auth:
                return SetupNeeded(
                    utility_provider=tool.utility_provider,
                    title=f"Authorization Required: {tool.title}",
                    description=f"Authorize access to {scheme.provider} to use '{tool.title}'.",
                    message=f"Setup for {tool.title}.",
                    oauth_url=status.auth_url,
                )
            credentials[scheme.key] = status.access_token or ""

        try:
            slots = scheme.slots(tool.security_secrets)
        except MissingSecretMapping as exc:
            logger.error("Misconfigured tool %s: %s", tool.id, exc.message)
            return _contact_admin(tool, exc.message)

        missing: List[CredentialSlot] = []
        for slot in slots:
            value = await self._fetch(tool, caller, slot)
            if value:
                credentials[slot.key] = value
            else:
                missing.append(slot)

        missing = scheme.expand_missing(slots, missing)
        if missing:
            return _setup_needed(tool, missing)
        return CredentialResolution(scheme=scheme, credentials=credentials)

    async def _fetch(
        self, tool: ToolDefinition, caller: CallerIdentity, slot: CredentialSlot
    ) -> Optional[str]:
        secret_id = build_secret_id(
            self.scope,
            caller.user_id,
            caller.organization_id,
            tool.utility_provider,
            slot.secret_type,
        )
        try:
            value = await self.secret_client.get_secret(secret_id)
        except Exception as exc:
            logger.warning(
                "Secret lookup failed for tool=%s type=%s: %s", tool.id, slot.secret_type, exc
            )
            return None
        logger.debug(
            "Secret lookup for tool=%s type=%s: %s",
            tool.id,
            slot.secret_type,
            "received value" if value else "empty",
        )
        return value

    async def _check_oauth(self, scheme: OAuth2Scheme, caller: CallerIdentity) -> OAuthStatus:
        if not self.oauth_client:
            raise PlatformClientError("OAuth service is not configured.")
        try:
            return await self.oauth_client.check_auth(
                caller.user_id, caller.organization_id, scheme.provider, list(scheme.scopes)
            )
        except httpx.HTTPError as exc:
            raise PlatformClientError("Failed to check OAuth status.", details=str(exc)) from exc


def _setup_needed(tool: ToolDefinition, missing: List[CredentialSlot]) -> SetupNeeded:
    unique = list(dict.fromkeys(missing))
    prompts = ", ".join(slot.prompt for slot in unique)
    return SetupNeeded(
        utility_provider=tool.utility_provider,
        title=f"Config Required: {tool.title}",
        description=f"To use '{tool.title}', provide: {prompts}. Securely stored.",
        message=f"Setup for {tool.title}.",
        required_secret_inputs=tuple(dict.fromkeys(slot.secret_type for slot in unique)),
    )


def _contact_admin(tool: ToolDefinition, reason: str) -> SetupNeeded:
    return SetupNeeded(
        utility_provider=tool.utility_provider,
        title=f"Configuration Error: {tool.utility_provider}",
        description=f"'{tool.title}' cannot be used as configured ({reason}).",
        message="This tool is misconfigured. Contact the tool administrator.",
    )
