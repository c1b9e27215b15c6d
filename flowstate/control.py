"""Pause/resume state machine for workflows waiting on external events.

A paused workflow is not held by any coroutine: its ``pending_action`` is
persisted and the executor returns. An approval, callback, timeout sweep or
cancellation later resolves the pause by consuming its resume token. Each
token resolves at most once; replaying a consumed token returns the record
unchanged so at-least-once delivery of callbacks is safe.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Union

from .audit import AuditLog, LoggingAuditLog, emit
from .contracts import RequiresWait, SignalReason
from .errors import (
    InvalidStateError,
    NotFoundError,
    StaleResumeError,
    VersionConflictError,
)
from .persistence import WorkflowStore
from .persistence.models import (
    FailureReason,
    PendingAction,
    Resolution,
    ResumeOutcome,
    WorkflowRecord,
    WorkflowStatus,
    utcnow,
)
from .transports import BaseTransport

logger = logging.getLogger(__name__)

_FAILURE_FOR_OUTCOME = {
    ResumeOutcome.DENIED: FailureReason.DENIED,
    ResumeOutcome.TIMEOUT: FailureReason.TIMEOUT,
    ResumeOutcome.CANCELLED: FailureReason.CANCELLED,
}


class PauseResumeController:
    """Moves workflows into and out of the ``paused`` status."""

    def __init__(
        self,
        store: WorkflowStore,
        audit: AuditLog | None = None,
        transport: BaseTransport | None = None,
        signal_topic: str = "flowstate.ready",
        default_wait_timeout: float = 3600.0,
        conflict_retries: int = 5,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._audit = audit or LoggingAuditLog()
        self._transport = transport
        self._signal_topic = signal_topic
        self._default_wait_timeout = default_wait_timeout
        self._conflict_retries = conflict_retries
        self._clock = clock

    def new_pending_action(
        self, step_index: int, step_name: str, request: RequiresWait
    ) -> PendingAction:
        """Build the pending action for a step's wait request.

        ``timeout_at`` is fixed here, at submission, so every worker agrees on
        when the wait window closes.
        """
        submitted_at = self._clock()
        timeout = request.timeout or self._default_wait_timeout
        return PendingAction(
            type=request.type,
            step_index=step_index,
            step_name=step_name,
            submitted_at=submitted_at,
            timeout_at=submitted_at + timedelta(seconds=timeout),
            details=request.details,
        )

    async def pause(
        self, workflow_id: str, pending_action: PendingAction, expected_version: int
    ) -> WorkflowRecord:
        """Park an active workflow until ``pending_action`` is resolved."""
        if pending_action.timeout_at <= pending_action.submitted_at:
            raise ValueError("timeout_at must be after submitted_at")

        def park(record: WorkflowRecord) -> None:
            if record.status != WorkflowStatus.ACTIVE:
                raise InvalidStateError(
                    f"Cannot pause workflow {workflow_id} in status {record.status.value}"
                )
            record.status = WorkflowStatus.PAUSED
            record.pending_action = pending_action
            record.next_attempt_at = None

        updated = await self._store.update(workflow_id, park, expected_version)
        logger.info(
            f"Workflow {workflow_id} paused for {pending_action.type.value} at step "
            f"{pending_action.step_name} until {pending_action.timeout_at.isoformat()}"
        )
        await emit(
            self._audit,
            "workflow_paused",
            workflow_id,
            action=pending_action.type.value,
            step_name=pending_action.step_name,
            timeout_at=pending_action.timeout_at.isoformat(),
        )
        return updated

    async def resume(
        self,
        workflow_id: str,
        resume_token: str,
        outcome: Union[ResumeOutcome, str],
        payload: Optional[Dict[str, Any]] = None,
    ) -> WorkflowRecord:
        """Resolve the pending action identified by ``resume_token``.

        Raises:
            StaleResumeError: If the token does not belong to the outstanding
                pause and was never consumed before.
        """
        outcome = ResumeOutcome(outcome)
        if outcome == ResumeOutcome.CANCELLED:
            raise ValueError("Use cancel() to cancel a workflow")

        for _ in range(self._conflict_retries):
            record = await self._store.get(workflow_id)
            if record.resolution_for(resume_token) is not None:
                logger.info(
                    f"Resume token for workflow {workflow_id} already consumed; "
                    "ignoring duplicate"
                )
                return record
            pending = record.pending_action
            if (
                record.status != WorkflowStatus.PAUSED
                or pending is None
                or pending.resume_token != resume_token
            ):
                raise StaleResumeError(workflow_id, resume_token)

            now = self._clock()
            resolved = outcome
            if outcome != ResumeOutcome.TIMEOUT and now >= pending.timeout_at:
                logger.warning(
                    f"Resume of workflow {workflow_id} arrived after its wait expired at "
                    f"{pending.timeout_at.isoformat()}; recording a timeout"
                )
                resolved = ResumeOutcome.TIMEOUT
            resolution = Resolution(
                resume_token=resume_token,
                outcome=resolved,
                step_index=pending.step_index,
                resolved_at=now,
                payload=payload,
            )
            try:
                updated = await self._store.update(
                    workflow_id,
                    lambda r: self._resolve(r, resolution, pending, now),
                    record.version,
                )
            except VersionConflictError:
                logger.debug(f"Version conflict resuming {workflow_id}; reloading")
                continue

            await emit(
                self._audit,
                "workflow_resumed" if resolved.reactivates else "workflow_failed",
                workflow_id,
                outcome=resolved.value,
                step_name=pending.step_name,
            )
            if resolved.reactivates:
                logger.info(f"Workflow {workflow_id} resumed ({resolved.value})")
                await self.notify(workflow_id, "resumed")
            else:
                logger.warning(
                    f"Workflow {workflow_id} failed while waiting: {resolved.value}"
                )
            return updated
        raise VersionConflictError(workflow_id, record.version, None)

    @staticmethod
    def _resolve(
        record: WorkflowRecord,
        resolution: Resolution,
        pending: PendingAction,
        now: datetime,
    ) -> None:
        record.resolutions.append(resolution)
        record.pending_action = None
        if resolution.outcome.reactivates:
            record.status = WorkflowStatus.ACTIVE
            return
        record.status = WorkflowStatus.FAILED
        record.failure_reason = _FAILURE_FOR_OUTCOME[resolution.outcome]
        record.error_details = {
            "step_name": pending.step_name,
            "step_index": pending.step_index,
            "pending_action": pending.type.value,
            "outcome": resolution.outcome.value,
            "payload": resolution.payload,
        }
        record.completed_at = now

    async def cancel(
        self, workflow_id: str, reason: Optional[str] = None
    ) -> WorkflowRecord:
        """Fail a non-terminal workflow with reason ``cancelled``.

        Cancelling a terminal workflow returns it unchanged. An outstanding
        resume token is consumed so a late callback or timeout sweep does
        nothing.
        """
        for _ in range(self._conflict_retries):
            record = await self._store.get(workflow_id)
            if record.is_terminal:
                return record
            now = self._clock()
            previous_status = record.status

            def mark_cancelled(r: WorkflowRecord) -> None:
                if r.pending_action is not None:
                    r.resolutions.append(
                        Resolution(
                            resume_token=r.pending_action.resume_token,
                            outcome=ResumeOutcome.CANCELLED,
                            step_index=r.pending_action.step_index,
                            resolved_at=now,
                        )
                    )
                    r.pending_action = None
                r.status = WorkflowStatus.FAILED
                r.failure_reason = FailureReason.CANCELLED
                r.error_details = {
                    "previous_status": previous_status.value,
                    "step_index": r.current_step_index,
                    "reason": reason,
                }
                r.completed_at = now
                r.next_attempt_at = None

            try:
                updated = await self._store.update(
                    workflow_id, mark_cancelled, record.version
                )
            except VersionConflictError:
                continue
            logger.info(f"Workflow {workflow_id} cancelled")
            await emit(self._audit, "workflow_cancelled", workflow_id, reason=reason)
            return updated
        raise VersionConflictError(workflow_id, record.version, None)

    async def sweep_expired(self, now: Optional[datetime] = None) -> list[WorkflowRecord]:
        """Fail every paused workflow whose wait window has closed."""
        now = now or self._clock()
        timed_out: list[WorkflowRecord] = []
        for workflow_id in await self._store.query_expired(now):
            try:
                record = await self._store.get(workflow_id)
                pending = record.pending_action
                if pending is None or pending.timeout_at > now:
                    continue
                updated = await self.resume(
                    workflow_id, pending.resume_token, ResumeOutcome.TIMEOUT
                )
            except (StaleResumeError, NotFoundError) as exc:
                # resolved, cancelled or archived since the query ran
                logger.info(f"Skipping timeout for workflow {workflow_id}: {exc}")
                continue
            if updated.failure_reason == FailureReason.TIMEOUT:
                timed_out.append(updated)
        if timed_out:
            logger.info(f"Timed out {len(timed_out)} paused workflows")
        return timed_out

    async def notify(self, workflow_id: str, reason: SignalReason) -> None:
        """Tell executors listening on the transport that a workflow is ready."""
        if self._transport is None:
            return
        await self._transport.signal(self._signal_topic, workflow_id, reason)
