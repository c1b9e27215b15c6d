"""Store abstraction for workflow state persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional, Protocol

from ..errors import InvalidStateError, VersionConflictError
from .models import WorkflowRecord, WorkflowStatus, check_transition, utcnow

Mutator = Callable[[WorkflowRecord], Optional[WorkflowRecord]]


class WorkflowStore(Protocol):
    """Protocol for workflow state persistence backends."""

    async def create(self, record: WorkflowRecord) -> str:
        """Persist a new record and return its id."""

    async def get(self, workflow_id: str) -> WorkflowRecord:
        """Return the stored record or raise ``NotFoundError``."""

    async def update(
        self, workflow_id: str, mutator: Mutator, expected_version: int
    ) -> WorkflowRecord:
        """Apply ``mutator`` if the stored version equals ``expected_version``."""

    async def query_expired(self, now: datetime) -> list[str]:
        """Ids of paused workflows whose wait window has elapsed."""

    async def query_runnable(self, now: datetime) -> list[str]:
        """Ids of active workflows with no retry delay outstanding."""

    async def query_terminal(self, before: datetime) -> list[str]:
        """Ids of terminal workflows completed at or before ``before``."""

    async def list_workflows(
        self, status: WorkflowStatus | None = None
    ) -> list[WorkflowRecord]:
        """Return all workflows in hot storage, optionally filtered."""

    async def archive(self, workflow_id: str) -> None:
        """Move a terminal record to cold storage."""


def apply_mutation(
    current: WorkflowRecord,
    mutator: Mutator,
    expected_version: int,
    now: datetime | None = None,
) -> WorkflowRecord:
    """Run ``mutator`` against a copy of ``current`` and return the successor.

    Every backend funnels ``update`` through this function so version checks,
    terminal protection and invariant validation behave identically.
    """
    if current.version != expected_version:
        raise VersionConflictError(
            current.workflow_id, expected_version, current.version
        )
    if current.is_terminal:
        raise InvalidStateError(
            f"Workflow {current.workflow_id} is {current.status.value} and cannot be mutated"
        )
    draft = current.model_copy(deep=True)
    returned = mutator(draft)
    updated = returned if returned is not None else draft
    # round-trip so nested validators run on the mutated data
    updated = WorkflowRecord.model_validate(updated.model_dump())
    check_transition(current, updated)
    updated.version = current.version + 1
    updated.updated_at = now or utcnow()
    return updated
