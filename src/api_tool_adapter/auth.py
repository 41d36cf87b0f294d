"""Service-key check and caller identity extraction."""

from __future__ import annotations

import hmac
import logging
from typing import Mapping, Optional

from .errors import AuthenticationError
from .models import CallerIdentity


logger = logging.getLogger(__name__)

USER_ID_HEADER = "x-client-user-id"
ORGANIZATION_ID_HEADER = "x-client-organization-id"


def bearer_token(headers: Mapping[str, str]) -> str:
    auth_header = headers.get("authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer":
        return ""
    return token.strip()


def verify_service_key(headers: Mapping[str, str], service_key: Optional[str]) -> None:
    """Raise ``AuthenticationError`` unless the request carries the configured key.

    With no key configured every request is accepted.
    """
    if not service_key:
        return
    token = bearer_token(headers)
    if not token or not hmac.compare_digest(token, service_key):
        raise AuthenticationError("Invalid or missing service key.")


def caller_from_headers(headers: Mapping[str, str]) -> CallerIdentity:
    user_id = (headers.get(USER_ID_HEADER) or "").strip()
    if not user_id:
        raise AuthenticationError(f"Missing {USER_ID_HEADER} header.")
    organization_id = (headers.get(ORGANIZATION_ID_HEADER) or "").strip() or None
    return CallerIdentity(user_id=user_id, organization_id=organization_id)
