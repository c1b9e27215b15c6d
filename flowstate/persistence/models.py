"""Data models for persisted workflow state."""

from __future__ import annotations

import secrets
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..errors import InvariantViolationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_resume_token() -> str:
    return secrets.token_urlsafe(24)


class WorkflowStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({WorkflowStatus.COMPLETED, WorkflowStatus.FAILED})


class StepStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class PendingActionType(str, Enum):
    HUMAN_APPROVAL = "human_approval"
    ASYNC_CALLBACK = "async_callback"


class ResumeOutcome(str, Enum):
    """Outcome carried by an external event that resolves a pause."""

    APPROVED = "approved"
    SUCCESS = "success"
    DENIED = "denied"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"

    @property
    def reactivates(self) -> bool:
        return self in (ResumeOutcome.APPROVED, ResumeOutcome.SUCCESS)


class FailureReason(str, Enum):
    TIMEOUT = "timeout"
    DENIED = "denied"
    CANCELLED = "cancelled"
    MAX_RETRIES_EXHAUSTED = "max_retries_exhausted"
    NON_RETRYABLE_ERROR = "non_retryable_error"
    FATAL_ERROR = "fatal_error"


class StepRecord(BaseModel):
    """Immutable record of one executed step."""

    model_config = ConfigDict(frozen=True)

    step_index: int
    step_name: str
    started_at: datetime
    completed_at: datetime
    status: StepStatus = StepStatus.SUCCESS
    result: Any = None

    @model_validator(mode="after")
    def _check_timestamps(self) -> "StepRecord":
        if self.started_at > self.completed_at:
            raise ValueError("started_at must not be after completed_at")
        return self


class PendingAction(BaseModel):
    """Outstanding blocking request of a paused workflow."""

    type: PendingActionType
    step_index: int
    step_name: str
    submitted_at: datetime
    timeout_at: datetime
    resume_token: str = Field(default_factory=new_resume_token)
    details: dict[str, Any] = Field(default_factory=dict)


class Resolution(BaseModel):
    """A consumed resume token and what it resolved to."""

    resume_token: str
    outcome: ResumeOutcome
    step_index: int
    resolved_at: datetime
    payload: Optional[dict[str, Any]] = None


class WorkflowRecord(BaseModel):
    """Persisted state of one workflow instance."""

    workflow_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    workflow_type: str
    status: WorkflowStatus = WorkflowStatus.ACTIVE
    current_step_index: int = 0
    steps_completed: list[StepRecord] = Field(default_factory=list)
    pending_action: Optional[PendingAction] = None
    context: dict[str, Any] = Field(default_factory=dict)
    retry_count: int = 0
    max_retries: int = 3
    next_attempt_at: Optional[datetime] = None
    failure_reason: Optional[FailureReason] = None
    error_details: Optional[dict[str, Any]] = None
    resolutions: list[Resolution] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    version: int = 1

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def resolution_for(self, resume_token: str) -> Optional[Resolution]:
        for resolution in self.resolutions:
            if resolution.resume_token == resume_token:
                return resolution
        return None

    def latest_resolution(self, step_index: int) -> Optional[Resolution]:
        """Return the most recent resolution recorded for ``step_index``."""
        for resolution in reversed(self.resolutions):
            if resolution.step_index == step_index:
                return resolution
        return None

    def check_invariants(self) -> None:
        """Raise ``InvariantViolationError`` if the record is inconsistent."""
        if (self.pending_action is not None) != (self.status == WorkflowStatus.PAUSED):
            raise InvariantViolationError(
                f"pending_action must be set iff status is paused "
                f"(status={self.status.value}, workflow_id={self.workflow_id})"
            )
        previous = -1
        for step in self.steps_completed:
            if step.step_index <= previous:
                raise InvariantViolationError(
                    f"steps_completed out of order for workflow {self.workflow_id}"
                )
            previous = step.step_index
        if self.current_step_index < 0 or self.retry_count < 0:
            raise InvariantViolationError("counters must not be negative")


def check_transition(before: WorkflowRecord, after: WorkflowRecord) -> None:
    """Validate that ``after`` is a legal successor of ``before``."""
    after.check_invariants()
    if after.workflow_id != before.workflow_id:
        raise InvariantViolationError("workflow_id is immutable")
    if after.workflow_type != before.workflow_type:
        raise InvariantViolationError("workflow_type is immutable")
    if after.current_step_index < before.current_step_index:
        raise InvariantViolationError(
            f"current_step_index moved backwards for workflow {before.workflow_id}"
        )
    if after.steps_completed[: len(before.steps_completed)] != before.steps_completed:
        raise InvariantViolationError(
            f"steps_completed is append-only for workflow {before.workflow_id}"
        )
    if after.resolutions[: len(before.resolutions)] != before.resolutions:
        raise InvariantViolationError("resolutions are append-only")
