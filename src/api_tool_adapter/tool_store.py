"""Postgres-backed store for tool definitions, user tool links and execution records."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import psycopg
from psycopg.types.json import Jsonb

from .models import (
    ExecutionRecord,
    SecuritySecrets,
    ToolDefinition,
    ToolStatus,
    UserToolLink,
    UserToolSummary,
)


logger = logging.getLogger(__name__)

_TOOL_COLUMNS = (
    "id, name, description, utility_provider, openapi_specification, security_option, "
    "security_secrets, is_verified, creator_user_id, creator_organization_id, "
    "created_at, updated_at"
)
_EXECUTION_COLUMNS = (
    "id, api_tool_id, user_id, organization_id, input, output, status_code, "
    "error, error_details, hint, created_at, updated_at"
)
_LINK_COLUMNS = "user_id, organization_id, api_tool_id, status, created_at, updated_at"


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ToolStore:
    def __init__(self, database_url: str) -> None:
        self.database_url = database_url
        self._init_db()

    def _connect(self) -> psycopg.Connection:
        return psycopg.connect(self.database_url)

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS api_tools (
                    id UUID PRIMARY KEY,
                    name TEXT NOT NULL,
                    description TEXT,
                    utility_provider TEXT NOT NULL,
                    openapi_specification JSONB NOT NULL,
                    security_option TEXT,
                    security_secrets JSONB,
                    is_verified BOOLEAN NOT NULL DEFAULT FALSE,
                    creator_user_id TEXT,
                    creator_organization_id TEXT,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS user_api_tools (
                    user_id TEXT NOT NULL,
                    organization_id TEXT NOT NULL DEFAULT '',
                    api_tool_id UUID NOT NULL REFERENCES api_tools(id),
                    status TEXT NOT NULL DEFAULT 'unset',
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL,
                    PRIMARY KEY (user_id, organization_id, api_tool_id)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS api_tool_executions (
                    id UUID PRIMARY KEY,
                    api_tool_id UUID NOT NULL REFERENCES api_tools(id),
                    user_id TEXT NOT NULL,
                    organization_id TEXT,
                    input JSONB,
                    output JSONB,
                    status_code INTEGER NOT NULL,
                    error TEXT,
                    error_details TEXT,
                    hint TEXT,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL
                )
                """
            )

    def list_tools(self) -> List[ToolDefinition]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_TOOL_COLUMNS} FROM api_tools ORDER BY created_at"
            ).fetchall()
        return [self._to_tool(row) for row in rows]

    def get_tool(self, tool_id: str) -> Optional[ToolDefinition]:
        if not _is_uuid(tool_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_TOOL_COLUMNS} FROM api_tools WHERE id = %s", (str(tool_id),)
            ).fetchone()
        return self._to_tool(row) if row else None

    def create_tool(self, payload: Dict[str, Any]) -> ToolDefinition:
        tool_id = str(uuid.uuid4())
        secrets = SecuritySecrets.from_mapping(payload.get("security_secrets"))
        now = _now()
        with self._connect() as conn:
            conn.execute(
                f"""
                INSERT INTO api_tools ({_TOOL_COLUMNS})
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    tool_id,
                    payload["name"],
                    payload.get("description", ""),
                    payload["utility_provider"].lower(),
                    Jsonb(payload["openapi_specification"]),
                    payload.get("security_option"),
                    Jsonb(secrets.to_mapping()),
                    payload.get("is_verified", False),
                    payload.get("creator_user_id"),
                    payload.get("creator_organization_id"),
                    now,
                    now,
                ),
            )
        tool = self.get_tool(tool_id)
        if not tool:
            raise ValueError("Failed to create tool")
        return tool

    def record_execution(self, record: ExecutionRecord) -> ExecutionRecord:
        execution_id = str(uuid.uuid4())
        now = _now()
        with self._connect() as conn:
            row = conn.execute(
                f"""
                INSERT INTO api_tool_executions ({_EXECUTION_COLUMNS})
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING {_EXECUTION_COLUMNS}
                """,
                (
                    execution_id,
                    record.api_tool_id,
                    record.user_id,
                    record.organization_id,
                    Jsonb(record.input),
                    Jsonb(record.output),
                    record.status_code,
                    record.error,
                    record.error_details,
                    record.hint,
                    now,
                    now,
                ),
            ).fetchone()
        return self._to_execution(row)

    def list_user_executions(
        self,
        user_id: str,
        organization_id: Optional[str],
        tool_id: Optional[str] = None,
        limit: int = 50,
    ) -> List[ExecutionRecord]:
        query = f"SELECT {_EXECUTION_COLUMNS} FROM api_tool_executions WHERE user_id = %s"
        params: List[Any] = [user_id]
        if organization_id:
            query += " AND organization_id = %s"
            params.append(organization_id)
        else:
            query += " AND organization_id IS NULL"
        if tool_id:
            if not _is_uuid(tool_id):
                return []
            query += " AND api_tool_id = %s"
            params.append(tool_id)
        query += " ORDER BY created_at DESC LIMIT %s"
        params.append(limit)

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._to_execution(row) for row in rows]

    def get_or_create_user_tool(
        self, user_id: str, organization_id: Optional[str], tool_id: str
    ) -> UserToolLink:
        now = _now()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO user_api_tools (
                    user_id, organization_id, api_tool_id, status, created_at, updated_at
                ) VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (user_id, organization_id, api_tool_id) DO NOTHING
                """,
                (user_id, organization_id or "", tool_id, ToolStatus.UNSET.value, now, now),
            )
            row = conn.execute(
                f"""
                SELECT {_LINK_COLUMNS} FROM user_api_tools
                WHERE user_id = %s AND organization_id = %s AND api_tool_id = %s
                """,
                (user_id, organization_id or "", tool_id),
            ).fetchone()
        return self._to_link(row)

    def update_user_tool_status(
        self,
        user_id: str,
        organization_id: Optional[str],
        tool_id: str,
        status: ToolStatus,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE user_api_tools SET status = %s, updated_at = %s
                WHERE user_id = %s AND organization_id = %s AND api_tool_id = %s
                """,
                (ToolStatus(status).value, _now(), user_id, organization_id or "", tool_id),
            )

    def list_user_tools(
        self, user_id: str, organization_id: Optional[str]
    ) -> List[UserToolSummary]:
        """Tools linked to the user, skipping deleted links, with per-user execution stats."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT
                    uat.user_id, uat.organization_id, uat.api_tool_id, uat.status,
                    uat.created_at, uat.updated_at,
                    t.name, t.description, t.utility_provider, t.security_option,
                    t.is_verified, t.creator_user_id,
                    COUNT(e.id),
                    COUNT(e.id) FILTER (WHERE e.status_code >= 200 AND e.status_code < 300),
                    COUNT(e.id) FILTER (WHERE e.status_code >= 400),
                    MAX(e.created_at)
                FROM user_api_tools uat
                JOIN api_tools t ON t.id = uat.api_tool_id
                LEFT JOIN api_tool_executions e
                    ON e.api_tool_id = uat.api_tool_id
                    AND e.user_id = uat.user_id
                    AND COALESCE(e.organization_id, '') = uat.organization_id
                WHERE uat.user_id = %s AND uat.organization_id = %s AND uat.status <> %s
                GROUP BY uat.user_id, uat.organization_id, uat.api_tool_id, t.id
                ORDER BY uat.updated_at DESC
                """,
                (user_id, organization_id or "", ToolStatus.DELETED.value),
            ).fetchall()
        return [self._to_user_tool(row) for row in rows]

    def _to_tool(self, row) -> ToolDefinition:
        return ToolDefinition(
            id=str(row[0]),
            name=row[1],
            description=row[2] or "",
            utility_provider=row[3],
            openapi_specification=row[4] or {},
            security_option=row[5],
            security_secrets=SecuritySecrets.from_mapping(row[6]),
            is_verified=bool(row[7]),
            creator_user_id=row[8],
            creator_organization_id=row[9],
            created_at=str(row[10]),
            updated_at=str(row[11]),
        )

    def _to_execution(self, row) -> ExecutionRecord:
        return ExecutionRecord(
            id=str(row[0]),
            api_tool_id=str(row[1]),
            user_id=row[2],
            organization_id=row[3],
            input=row[4],
            output=row[5],
            status_code=int(row[6]),
            error=row[7],
            error_details=row[8],
            hint=row[9],
            created_at=str(row[10]),
            updated_at=str(row[11]),
        )

    def _to_link(self, row) -> UserToolLink:
        return UserToolLink(
            user_id=row[0],
            organization_id=row[1] or None,
            api_tool_id=str(row[2]),
            status=ToolStatus(row[3]),
            created_at=str(row[4]),
            updated_at=str(row[5]),
        )

    def _to_user_tool(self, row) -> UserToolSummary:
        return UserToolSummary(
            link=self._to_link(row[:6]),
            name=row[6],
            description=row[7] or "",
            utility_provider=row[8],
            security_option=row[9],
            is_verified=bool(row[10]),
            creator_user_id=row[11],
            total_executions=int(row[12] or 0),
            succeeded_executions=int(row[13] or 0),
            failed_executions=int(row[14] or 0),
            last_executed_at=str(row[15]) if row[15] else None,
        )
