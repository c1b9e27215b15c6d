"""Contracts between the engine and externally supplied step logic."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from .persistence.models import PendingActionType, Resolution, utcnow
from .utils.retry import ErrorKind


class StepContext(BaseModel):
    """Everything a step handler may read about the workflow it runs in."""

    workflow_id: str
    workflow_type: str
    step_index: int
    step_name: str
    attempt: int = 0
    context: Dict[str, Any] = Field(default_factory=dict)
    resolution: Optional[Resolution] = None

    @property
    def idempotency_key(self) -> str:
        """Stable key for external side effects of this step.

        The same step index always yields the same key, so a retried or
        re-delivered step can deduplicate calls it already made.
        """
        return f"{self.workflow_id}:{self.step_index}"


class Success(BaseModel):
    outcome: Literal["success"] = "success"
    result: Any = None
    context_updates: Dict[str, Any] = Field(default_factory=dict)


class RequiresWait(BaseModel):
    """The step cannot finish until an external event arrives."""

    outcome: Literal["requires_wait"] = "requires_wait"
    type: PendingActionType = PendingActionType.HUMAN_APPROVAL
    timeout: Optional[float] = Field(default=None, gt=0, description="Seconds")
    details: Dict[str, Any] = Field(default_factory=dict)


class RecoverableError(BaseModel):
    outcome: Literal["recoverable_error"] = "recoverable_error"
    detail: str
    error_kind: ErrorKind = ErrorKind.TRANSIENT


class FatalError(BaseModel):
    outcome: Literal["fatal_error"] = "fatal_error"
    detail: str


StepOutcome = Union[Success, RequiresWait, RecoverableError, FatalError]
StepHandler = Callable[[StepContext], Union[StepOutcome, Awaitable[StepOutcome]]]
SignalReason = Literal["started", "resumed"]


class StepDefinition(BaseModel):
    """Defines one step in a workflow."""

    name: str
    handler: Callable[..., Any]
    timeout: Optional[float] = Field(default=None, gt=0, description="Seconds")
    max_retries: Optional[int] = Field(default=None, ge=0)


class WorkflowDefinition(BaseModel):
    """Ordered step sequence run for every workflow of ``workflow_type``."""

    workflow_type: str
    steps: List[StepDefinition] = Field(default_factory=list)
    max_retries: Optional[int] = Field(default=None, ge=0)

    def is_finished(self, index: int) -> bool:
        return index >= len(self.steps)


class WorkflowSignal(BaseModel):
    """Notice that a workflow is ready for its executor to run."""

    signal_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    workflow_id: str
    reason: SignalReason
    timestamp: datetime = Field(default_factory=utcnow)

    def to_json(self) -> str:
        """Serialize signal to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "WorkflowSignal":
        """Deserialize signal from JSON."""
        return cls.model_validate_json(data)


def _gate(
    action_type: PendingActionType,
    timeout: Optional[float],
    details: Optional[Dict[str, Any]],
) -> StepHandler:
    def gate(ctx: StepContext) -> StepOutcome:
        if ctx.resolution is not None and ctx.resolution.outcome.reactivates:
            return Success(result=ctx.resolution.payload or {})
        return RequiresWait(type=action_type, timeout=timeout, details=details or {})

    return gate


def require_approval(
    timeout: Optional[float] = None, details: Optional[Dict[str, Any]] = None
) -> StepHandler:
    """Step handler that pauses for human approval and then succeeds.

    The approval payload becomes the step result.
    """
    return _gate(PendingActionType.HUMAN_APPROVAL, timeout, details)


def await_callback(
    timeout: Optional[float] = None, details: Optional[Dict[str, Any]] = None
) -> StepHandler:
    """Step handler that pauses until an async callback reports success."""
    return _gate(PendingActionType.ASYNC_CALLBACK, timeout, details)
