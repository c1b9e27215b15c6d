"""Durable recording of step outcomes."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel, Field

from .audit import AuditLog, LoggingAuditLog, emit
from .errors import InvalidStateError, VersionConflictError
from .persistence import WorkflowStore
from .persistence.models import (
    FailureReason,
    StepRecord,
    StepStatus,
    WorkflowRecord,
    WorkflowStatus,
    utcnow,
)

logger = logging.getLogger(__name__)


class StepResult(BaseModel):
    """Outcome of one step execution, ready to be checkpointed."""

    step_index: int
    step_name: str
    started_at: datetime
    completed_at: datetime = Field(default_factory=utcnow)
    status: StepStatus = StepStatus.SUCCESS
    result: Any = None
    context_updates: Dict[str, Any] = Field(default_factory=dict)

    def to_record(self) -> StepRecord:
        return StepRecord(
            step_index=self.step_index,
            step_name=self.step_name,
            started_at=self.started_at,
            completed_at=self.completed_at,
            status=self.status,
            result=self.result,
        )


class _AlreadyApplied(Exception):
    pass


def _require_active(record: WorkflowRecord, action: str) -> None:
    if record.status != WorkflowStatus.ACTIVE:
        raise InvalidStateError(
            f"Cannot {action} workflow {record.workflow_id} in status {record.status.value}"
        )


class CheckpointManager:
    """Persists step outcomes as atomic, version-checked transitions.

    Usage:
        checkpoints = CheckpointManager(store)
        record = await checkpoints.checkpoint(workflow_id, result, record.version)
    """

    def __init__(
        self,
        store: WorkflowStore,
        audit: AuditLog | None = None,
        conflict_retries: int = 5,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._audit = audit or LoggingAuditLog()
        self._conflict_retries = conflict_retries
        self._clock = clock

    # ------------------------------------------------------------------
    # Step checkpoints
    # ------------------------------------------------------------------

    async def checkpoint(
        self, workflow_id: str, step_result: StepResult, expected_version: int
    ) -> WorkflowRecord:
        """Append ``step_result`` and advance the cursor past it.

        A result for a step index the cursor has already passed is a
        duplicate delivery and returns the stored record unchanged. When the
        record was modified concurrently, it is reloaded and the duplicate
        check is repeated before trying again.
        """

        def append(record: WorkflowRecord) -> None:
            if record.current_step_index > step_result.step_index:
                raise _AlreadyApplied()
            _require_active(record, "checkpoint")
            if record.current_step_index != step_result.step_index:
                raise InvalidStateError(
                    f"Step {step_result.step_index} checkpointed out of order for "
                    f"workflow {workflow_id} (cursor at {record.current_step_index})"
                )
            record.steps_completed.append(step_result.to_record())
            record.current_step_index += 1
            record.retry_count = 0
            record.next_attempt_at = None
            record.error_details = None
            record.context.update(step_result.context_updates)

        version = expected_version
        for _ in range(self._conflict_retries):
            try:
                updated = await self._store.update(workflow_id, append, version)
            except _AlreadyApplied:
                logger.info(
                    f"Step {step_result.step_index} of workflow {workflow_id} already "
                    "checkpointed; ignoring duplicate"
                )
                return await self._store.get(workflow_id)
            except InvalidStateError:
                record = await self._store.get(workflow_id)
                if record.current_step_index > step_result.step_index or record.is_terminal:
                    logger.info(
                        f"Step {step_result.step_index} of workflow {workflow_id} arrived "
                        f"after the workflow became {record.status.value}; ignoring"
                    )
                    return record
                raise
            except VersionConflictError:
                record = await self._store.get(workflow_id)
                if record.current_step_index > step_result.step_index:
                    logger.info(
                        f"Step {step_result.step_index} of workflow {workflow_id} was "
                        "applied by another executor"
                    )
                    return record
                if record.status != WorkflowStatus.ACTIVE:
                    logger.info(
                        f"Workflow {workflow_id} became {record.status.value} while "
                        f"step {step_result.step_name} ran; result discarded"
                    )
                    return record
                version = record.version
                continue
            await emit(
                self._audit,
                "step_checkpointed",
                workflow_id,
                step_name=step_result.step_name,
                step_index=step_result.step_index,
                timestamp=step_result.completed_at.isoformat(),
            )
            return updated
        raise VersionConflictError(workflow_id, version, None)

    # ------------------------------------------------------------------
    # Other step-outcome transitions
    # ------------------------------------------------------------------

    async def complete(self, workflow_id: str, expected_version: int) -> WorkflowRecord:
        """Mark an active workflow whose steps are all done as completed."""
        now = self._clock()

        def mark_completed(record: WorkflowRecord) -> None:
            _require_active(record, "complete")
            record.status = WorkflowStatus.COMPLETED
            record.completed_at = now
            record.next_attempt_at = None

        updated = await self._store.update(workflow_id, mark_completed, expected_version)
        logger.info(f"Workflow {workflow_id} completed")
        await emit(
            self._audit,
            "workflow_completed",
            workflow_id,
            steps=len(updated.steps_completed),
        )
        return updated

    async def record_retry(
        self,
        workflow_id: str,
        retry_count: int,
        next_attempt_at: Optional[datetime],
        error: Dict[str, Any],
        expected_version: int,
    ) -> WorkflowRecord:
        """Persist a failed attempt that will be retried."""

        def mark_retry(record: WorkflowRecord) -> None:
            _require_active(record, "retry")
            record.retry_count = retry_count
            record.next_attempt_at = next_attempt_at
            record.error_details = error

        updated = await self._store.update(workflow_id, mark_retry, expected_version)
        await emit(
            self._audit,
            "retry_scheduled",
            workflow_id,
            retry_count=retry_count,
            next_attempt_at=next_attempt_at.isoformat() if next_attempt_at else None,
        )
        return updated

    async def fail(
        self,
        workflow_id: str,
        reason: FailureReason,
        details: Dict[str, Any],
        expected_version: int,
        failed_step: Optional[StepResult] = None,
    ) -> WorkflowRecord:
        """Move an active workflow to ``failed``, recording why."""
        now = self._clock()

        def mark_failed(record: WorkflowRecord) -> None:
            _require_active(record, "fail")
            if failed_step is not None:
                record.steps_completed.append(failed_step.to_record())
            record.status = WorkflowStatus.FAILED
            record.failure_reason = reason
            record.error_details = details
            record.completed_at = now
            record.next_attempt_at = None

        updated = await self._store.update(workflow_id, mark_failed, expected_version)
        logger.warning(f"Workflow {workflow_id} failed: {reason.value} {details}")
        await emit(
            self._audit,
            "workflow_failed",
            workflow_id,
            reason=reason.value,
            details=details,
        )
        return updated
