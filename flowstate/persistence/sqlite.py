"""SQLite implementation of the workflow store."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any

from ..errors import DuplicateIdError, NotFoundError, VersionConflictError
from .archive import ArchiveSink, InMemoryArchiveSink, compact
from .models import TERMINAL_STATUSES, WorkflowRecord, WorkflowStatus
from .repository import Mutator, WorkflowStore, apply_mutation


def _ts(value: datetime | None) -> float | None:
    return value.timestamp() if value is not None else None


class SQLiteWorkflowStore(WorkflowStore):
    """Persist workflow state using SQLite.

    The full record is stored as a JSON document next to the columns the
    sweep queries filter on. Updates are a compare-and-swap on ``version``.
    """

    def __init__(self, db_path: str | Path, archive_sink: ArchiveSink | None = None):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        # the connection is shared by to_thread workers
        self._conn_lock = threading.Lock()
        self.archive_sink = archive_sink or InMemoryArchiveSink()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                workflow_id TEXT PRIMARY KEY,
                workflow_type TEXT NOT NULL,
                status TEXT NOT NULL,
                version INTEGER NOT NULL,
                timeout_at REAL,
                next_attempt_at REAL,
                completed_at REAL,
                data TEXT NOT NULL
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_workflows_status ON workflows (status)"
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._conn_lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._conn_lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._conn_lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    @staticmethod
    def _columns(record: WorkflowRecord) -> tuple:
        timeout_at = record.pending_action.timeout_at if record.pending_action else None
        return (
            record.workflow_type,
            record.status.value,
            record.version,
            _ts(timeout_at),
            _ts(record.next_attempt_at),
            _ts(record.completed_at),
            record.model_dump_json(),
        )

    # ------------------------------------------------------------------
    # Store API
    async def create(self, record: WorkflowRecord) -> str:
        record.check_invariants()
        try:
            await asyncio.to_thread(
                self._execute,
                """
                INSERT INTO workflows (
                    workflow_type, status, version, timeout_at,
                    next_attempt_at, completed_at, data, workflow_id
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                *self._columns(record),
                record.workflow_id,
            )
        except sqlite3.IntegrityError as exc:
            raise DuplicateIdError(record.workflow_id) from exc
        return record.workflow_id

    async def get(self, workflow_id: str) -> WorkflowRecord:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT data FROM workflows WHERE workflow_id = ?",
            workflow_id,
        )
        if row is None:
            raise NotFoundError(workflow_id)
        return WorkflowRecord.model_validate_json(row["data"])

    async def update(
        self, workflow_id: str, mutator: Mutator, expected_version: int
    ) -> WorkflowRecord:
        current = await self.get(workflow_id)
        updated = apply_mutation(current, mutator, expected_version)
        changed = await asyncio.to_thread(
            self._execute,
            """
            UPDATE workflows
            SET workflow_type = ?, status = ?, version = ?, timeout_at = ?,
                next_attempt_at = ?, completed_at = ?, data = ?
            WHERE workflow_id = ? AND version = ?
            """,
            *self._columns(updated),
            workflow_id,
            expected_version,
        )
        if changed == 0:
            # another writer won between our read and write
            row = await asyncio.to_thread(
                self._fetchone,
                "SELECT version FROM workflows WHERE workflow_id = ?",
                workflow_id,
            )
            if row is None:
                raise NotFoundError(workflow_id)
            raise VersionConflictError(workflow_id, expected_version, row["version"])
        return updated

    async def query_expired(self, now: datetime) -> list[str]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT workflow_id FROM workflows WHERE status = ? AND timeout_at <= ?",
            WorkflowStatus.PAUSED.value,
            now.timestamp(),
        )
        return [r["workflow_id"] for r in rows]

    async def query_runnable(self, now: datetime) -> list[str]:
        rows = await asyncio.to_thread(
            self._fetchall,
            """
            SELECT workflow_id FROM workflows
            WHERE status = ? AND (next_attempt_at IS NULL OR next_attempt_at <= ?)
            """,
            WorkflowStatus.ACTIVE.value,
            now.timestamp(),
        )
        return [r["workflow_id"] for r in rows]

    async def query_terminal(self, before: datetime) -> list[str]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT workflow_id FROM workflows WHERE status IN (?, ?) AND completed_at <= ?",
            *(status.value for status in sorted(TERMINAL_STATUSES)),
            before.timestamp(),
        )
        return [r["workflow_id"] for r in rows]

    async def list_workflows(
        self, status: WorkflowStatus | None = None
    ) -> list[WorkflowRecord]:
        if status is None:
            rows = await asyncio.to_thread(
                self._fetchall, "SELECT data FROM workflows ORDER BY rowid"
            )
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT data FROM workflows WHERE status = ? ORDER BY rowid",
                status.value,
            )
        return [WorkflowRecord.model_validate_json(r["data"]) for r in rows]

    async def archive(self, workflow_id: str) -> None:
        record = await self.get(workflow_id)
        await self.archive_sink.write(compact(record))
        await asyncio.to_thread(
            self._execute,
            "DELETE FROM workflows WHERE workflow_id = ? AND version = ?",
            workflow_id,
            record.version,
        )

    def close(self) -> None:
        self._conn.close()
