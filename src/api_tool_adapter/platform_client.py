"""Clients for the platform's secret store and OAuth status services."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from .errors import PlatformClientError

logger = logging.getLogger(__name__)

_SECRET_ID_UNSAFE = re.compile(r"[^a-z0-9_-]+")


def build_secret_id(
    scope: str,
    user_id: str,
    organization_id: Optional[str],
    provider: str,
    secret_type: str,
) -> str:
    """Composite key of a stored secret; the same inputs always give the same id."""
    parts = [scope, user_id, organization_id or "none", provider, secret_type]
    return "_".join(_SECRET_ID_UNSAFE.sub("_", str(part).strip().lower()) for part in parts)


@dataclass(frozen=True)
class OAuthStatus:
    has_auth: bool
    access_token: Optional[str] = None
    auth_url: Optional[str] = None


class SecretServiceClient:
    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout_seconds: float = 20,
        verify_ssl: bool = True,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self.verify_ssl = verify_ssl

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    async def get_secret(self, secret_id: str) -> Optional[str]:
        url = f"{self.base_url}/secrets/{quote(secret_id, safe='')}"
        async with httpx.AsyncClient(timeout=self.timeout_seconds, verify=self.verify_ssl) as client:
            response = await client.get(url, headers=self._headers())
            if response.status_code == 404:
                return None
            response.raise_for_status()
            payload = response.json()

        if isinstance(payload, dict):
            data = payload.get("data", payload)
            if isinstance(data, dict):
                value = data.get("value")
                return str(value) if value else None
        logger.warning("Unexpected secret response shape: %s", type(payload))
        return None


class OAuthServiceClient:
    def __init__(
        self,
        base_url: Optional[str],
        api_key: str,
        timeout_seconds: float = 20,
        verify_ssl: bool = True,
    ) -> None:
        self.base_url = (base_url or "").rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self.verify_ssl = verify_ssl

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    async def check_auth(
        self,
        user_id: str,
        organization_id: Optional[str],
        provider: str,
        scopes: List[str],
    ) -> OAuthStatus:
        if not self.base_url:
            raise PlatformClientError("OAuth service URL is not configured.")

        url = f"{self.base_url}/oauth/check-auth"
        body: Dict[str, Any] = {
            "userId": user_id,
            "organizationId": organization_id,
            "oauthProvider": provider,
            "requiredScopes": scopes,
        }
        async with httpx.AsyncClient(timeout=self.timeout_seconds, verify=self.verify_ssl) as client:
            response = await client.post(url, headers=self._headers(), json=body)
            response.raise_for_status()
            payload = response.json()

        if not isinstance(payload, dict) or payload.get("success") is False:
            raise PlatformClientError("Failed to check OAuth status.", details=payload)

        data = payload.get("data") or {}
        if not data.get("hasAuth"):
            return OAuthStatus(has_auth=False, auth_url=data.get("authUrl"))

        credentials = data.get("oauthCredentials") or []
        token = credentials[0].get("accessToken") if credentials else data.get("accessToken")
        if not token:
            raise PlatformClientError("OAuth status reported auth without an access token.")
        return OAuthStatus(has_auth=True, access_token=token)
