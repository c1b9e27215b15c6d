"""PostgreSQL implementation of the workflow store."""

from __future__ import annotations

from datetime import datetime

import asyncpg

from ..errors import DuplicateIdError, NotFoundError, VersionConflictError
from .archive import ArchiveSink, InMemoryArchiveSink, compact
from .models import TERMINAL_STATUSES, WorkflowRecord, WorkflowStatus
from .repository import Mutator, WorkflowStore, apply_mutation


class PostgresWorkflowStore(WorkflowStore):
    """Persist workflow state using PostgreSQL."""

    def __init__(self, dsn: str, archive_sink: ArchiveSink | None = None):
        self._dsn = dsn
        self._initialized = False
        self.archive_sink = archive_sink or InMemoryArchiveSink()

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS flowstate_workflows (
                workflow_id TEXT PRIMARY KEY,
                workflow_type TEXT NOT NULL,
                status TEXT NOT NULL,
                version INTEGER NOT NULL,
                timeout_at TIMESTAMPTZ,
                next_attempt_at TIMESTAMPTZ,
                completed_at TIMESTAMPTZ,
                data JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_flowstate_workflows_status
            ON flowstate_workflows (status)
            """
        )

    @staticmethod
    def _columns(record: WorkflowRecord) -> tuple:
        timeout_at = record.pending_action.timeout_at if record.pending_action else None
        return (
            record.workflow_type,
            record.status.value,
            record.version,
            timeout_at,
            record.next_attempt_at,
            record.completed_at,
            record.model_dump_json(),
        )

    # ------------------------------------------------------------------
    async def create(self, record: WorkflowRecord) -> str:
        record.check_invariants()
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO flowstate_workflows (
                    workflow_type, status, version, timeout_at,
                    next_attempt_at, completed_at, data, workflow_id
                ) VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb, $8)
                """,
                *self._columns(record),
                record.workflow_id,
            )
        except asyncpg.UniqueViolationError as exc:
            raise DuplicateIdError(record.workflow_id) from exc
        finally:
            await conn.close()
        return record.workflow_id

    async def get(self, workflow_id: str) -> WorkflowRecord:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT data::text AS data FROM flowstate_workflows WHERE workflow_id = $1",
                workflow_id,
            )
        finally:
            await conn.close()
        if row is None:
            raise NotFoundError(workflow_id)
        return WorkflowRecord.model_validate_json(row["data"])

    async def update(
        self, workflow_id: str, mutator: Mutator, expected_version: int
    ) -> WorkflowRecord:
        current = await self.get(workflow_id)
        updated = apply_mutation(current, mutator, expected_version)
        conn = await self._connect()
        try:
            result = await conn.execute(
                """
                UPDATE flowstate_workflows
                SET workflow_type = $1, status = $2, version = $3, timeout_at = $4,
                    next_attempt_at = $5, completed_at = $6, data = $7::jsonb
                WHERE workflow_id = $8 AND version = $9
                """,
                *self._columns(updated),
                workflow_id,
                expected_version,
            )
            if result.endswith(" 0"):
                actual = await conn.fetchval(
                    "SELECT version FROM flowstate_workflows WHERE workflow_id = $1",
                    workflow_id,
                )
                if actual is None:
                    raise NotFoundError(workflow_id)
                raise VersionConflictError(workflow_id, expected_version, actual)
        finally:
            await conn.close()
        return updated

    async def _fetch_ids(self, query: str, *params) -> list[str]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(query, *params)
        finally:
            await conn.close()
        return [r["workflow_id"] for r in rows]

    async def query_expired(self, now: datetime) -> list[str]:
        return await self._fetch_ids(
            "SELECT workflow_id FROM flowstate_workflows WHERE status = $1 AND timeout_at <= $2",
            WorkflowStatus.PAUSED.value,
            now,
        )

    async def query_runnable(self, now: datetime) -> list[str]:
        return await self._fetch_ids(
            """
            SELECT workflow_id FROM flowstate_workflows
            WHERE status = $1 AND (next_attempt_at IS NULL OR next_attempt_at <= $2)
            """,
            WorkflowStatus.ACTIVE.value,
            now,
        )

    async def query_terminal(self, before: datetime) -> list[str]:
        return await self._fetch_ids(
            """
            SELECT workflow_id FROM flowstate_workflows
            WHERE status = ANY($1::text[]) AND completed_at <= $2
            """,
            [status.value for status in TERMINAL_STATUSES],
            before,
        )

    async def list_workflows(
        self, status: WorkflowStatus | None = None
    ) -> list[WorkflowRecord]:
        conn = await self._connect()
        try:
            if status is None:
                rows = await conn.fetch(
                    "SELECT data::text AS data FROM flowstate_workflows"
                )
            else:
                rows = await conn.fetch(
                    "SELECT data::text AS data FROM flowstate_workflows WHERE status = $1",
                    status.value,
                )
        finally:
            await conn.close()
        return [WorkflowRecord.model_validate_json(r["data"]) for r in rows]

    async def archive(self, workflow_id: str) -> None:
        record = await self.get(workflow_id)
        await self.archive_sink.write(compact(record))
        conn = await self._connect()
        try:
            await conn.execute(
                "DELETE FROM flowstate_workflows WHERE workflow_id = $1 AND version = $2",
                workflow_id,
                record.version,
            )
        finally:
            await conn.close()
