"""Cold storage for terminal workflows."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional, Protocol

from pydantic import BaseModel, Field

from ..errors import InvalidStateError
from .models import FailureReason, WorkflowRecord, WorkflowStatus, utcnow


class ArchivedStep(BaseModel):
    step_index: int
    step_name: str
    status: str


class ArchivedWorkflow(BaseModel):
    """Compacted form of a terminal workflow written to cold storage."""

    workflow_id: str
    workflow_type: str
    status: WorkflowStatus
    failure_reason: Optional[FailureReason] = None
    error_details: Optional[dict[str, Any]] = None
    steps: list[ArchivedStep] = Field(default_factory=list)
    context: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    completed_at: Optional[datetime] = None
    archived_at: datetime
    version: int


def compact(record: WorkflowRecord, archived_at: datetime | None = None) -> ArchivedWorkflow:
    """Build the archival form of ``record``; step results are dropped."""
    if not record.is_terminal:
        raise InvalidStateError(
            f"Workflow {record.workflow_id} is {record.status.value}; only terminal "
            "workflows can be archived"
        )
    return ArchivedWorkflow(
        workflow_id=record.workflow_id,
        workflow_type=record.workflow_type,
        status=record.status,
        failure_reason=record.failure_reason,
        error_details=record.error_details,
        steps=[
            ArchivedStep(
                step_index=step.step_index,
                step_name=step.step_name,
                status=step.status.value,
            )
            for step in record.steps_completed
        ],
        context=record.context,
        created_at=record.created_at,
        completed_at=record.completed_at,
        archived_at=archived_at or utcnow(),
        version=record.version,
    )


class ArchiveSink(Protocol):
    """Destination for archived workflows."""

    async def write(self, archived: ArchivedWorkflow) -> None:
        """Persist ``archived``; repeated writes of the same id overwrite."""


class InMemoryArchiveSink(ArchiveSink):
    """Keep archived workflows in local memory.

    Useful for tests or when no archive database is configured.
    """

    def __init__(self) -> None:
        self._archived: Dict[str, ArchivedWorkflow] = {}

    async def write(self, archived: ArchivedWorkflow) -> None:
        self._archived[archived.workflow_id] = archived

    async def get(self, workflow_id: str) -> ArchivedWorkflow | None:
        return self._archived.get(workflow_id)

    def __len__(self) -> int:
        return len(self._archived)
