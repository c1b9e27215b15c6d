"""In-memory implementation of the workflow store."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Dict

from ..errors import DuplicateIdError, NotFoundError
from .archive import ArchiveSink, InMemoryArchiveSink, compact
from .models import WorkflowRecord, WorkflowStatus
from .repository import Mutator, WorkflowStore, apply_mutation


class InMemoryWorkflowStore(WorkflowStore):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are copied on the way in and
    out so callers never share state with the store.
    """

    def __init__(self, archive_sink: ArchiveSink | None = None) -> None:
        self._workflows: Dict[str, WorkflowRecord] = {}
        self._lock = asyncio.Lock()
        self.archive_sink = archive_sink or InMemoryArchiveSink()

    # ------------------------------------------------------------------
    async def create(self, record: WorkflowRecord) -> str:
        record.check_invariants()
        async with self._lock:
            if record.workflow_id in self._workflows:
                raise DuplicateIdError(record.workflow_id)
            self._workflows[record.workflow_id] = record.model_copy(deep=True)
        return record.workflow_id

    async def get(self, workflow_id: str) -> WorkflowRecord:
        async with self._lock:
            record = self._workflows.get(workflow_id)
            if record is None:
                raise NotFoundError(workflow_id)
            return record.model_copy(deep=True)

    async def update(
        self, workflow_id: str, mutator: Mutator, expected_version: int
    ) -> WorkflowRecord:
        async with self._lock:
            current = self._workflows.get(workflow_id)
            if current is None:
                raise NotFoundError(workflow_id)
            updated = apply_mutation(current, mutator, expected_version)
            self._workflows[workflow_id] = updated
            return updated.model_copy(deep=True)

    async def query_expired(self, now: datetime) -> list[str]:
        async with self._lock:
            return [
                wf.workflow_id
                for wf in self._workflows.values()
                if wf.status == WorkflowStatus.PAUSED
                and wf.pending_action is not None
                and wf.pending_action.timeout_at <= now
            ]

    async def query_runnable(self, now: datetime) -> list[str]:
        async with self._lock:
            return [
                wf.workflow_id
                for wf in self._workflows.values()
                if wf.status == WorkflowStatus.ACTIVE
                and (wf.next_attempt_at is None or wf.next_attempt_at <= now)
            ]

    async def query_terminal(self, before: datetime) -> list[str]:
        async with self._lock:
            return [
                wf.workflow_id
                for wf in self._workflows.values()
                if wf.is_terminal
                and wf.completed_at is not None
                and wf.completed_at <= before
            ]

    async def list_workflows(
        self, status: WorkflowStatus | None = None
    ) -> list[WorkflowRecord]:
        async with self._lock:
            return [
                wf.model_copy(deep=True)
                for wf in self._workflows.values()
                if status is None or wf.status == status
            ]

    async def archive(self, workflow_id: str) -> None:
        record = await self.get(workflow_id)
        await self.archive_sink.write(compact(record))
        async with self._lock:
            self._workflows.pop(workflow_id, None)
