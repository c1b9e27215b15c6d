"""Workflow execution engine for flowstate."""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from .checkpoint import CheckpointManager, StepResult
from .contracts import (
    FatalError,
    RecoverableError,
    RequiresWait,
    StepContext,
    StepDefinition,
    StepOutcome,
    Success,
    WorkflowSignal,
)
from .control import PauseResumeController
from .errors import InvalidStateError, NotFoundError, VersionConflictError
from .persistence import WorkflowStore
from .persistence.models import FailureReason, StepStatus, WorkflowRecord, WorkflowStatus, utcnow
from .registry import WorkflowRegistry
from .transports import BaseTransport
from .utils.retry import RetryPolicy, classify_exception

logger = logging.getLogger(__name__)

_OUTCOME_TYPES = (Success, RequiresWait, RecoverableError, FatalError)


class WorkflowExecutor:
    """Drives active workflows through their step sequence.

    The executor holds no workflow state between calls. Each ``tick`` loads
    the record, runs steps until the workflow pauses, finishes, fails or has
    to wait for a retry delay, and persists every transition with an
    optimistic version check. Any number of executors may tick the same
    workflow; a losing writer reloads and re-evaluates.
    """

    def __init__(
        self,
        store: WorkflowStore,
        registry: WorkflowRegistry,
        checkpoints: CheckpointManager,
        controller: PauseResumeController,
        retry_policy: RetryPolicy | None = None,
        inline_retries: bool = True,
        max_conflicts: int = 5,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._registry = registry
        self._checkpoints = checkpoints
        self._controller = controller
        self._retry_policy = retry_policy or RetryPolicy()
        self._inline_retries = inline_retries
        self._max_conflicts = max_conflicts
        self._clock = clock
        self._sleep = sleep

    async def tick(self, workflow_id: str) -> WorkflowRecord:
        """Advance ``workflow_id`` as far as it can go right now."""
        conflicts = 0
        while True:
            record = await self._store.get(workflow_id)
            if record.status != WorkflowStatus.ACTIVE:
                logger.debug(
                    f"Workflow {workflow_id} is {record.status.value}; nothing to run"
                )
                return record

            if record.next_attempt_at is not None:
                wait = (record.next_attempt_at - self._clock()).total_seconds()
                if wait > 0:
                    if not self._inline_retries:
                        return record
                    await self._sleep(wait)

            try:
                record = await self._advance(record)
            except VersionConflictError:
                conflicts += 1
                if conflicts >= self._max_conflicts:
                    raise
                logger.info(
                    f"Workflow {workflow_id} changed concurrently; reloading"
                )
                continue
            if record is None:
                continue
            return record

    async def _advance(self, record: WorkflowRecord) -> Optional[WorkflowRecord]:
        """Run the step under the cursor and persist its outcome.

        Returns the record when the tick should stop, ``None`` to continue.
        """
        definition = self._registry.get(record.workflow_type)
        if definition.is_finished(record.current_step_index):
            return await self._checkpoints.complete(record.workflow_id, record.version)
        step = definition.steps[record.current_step_index]

        started_at = self._clock()
        outcome = await self._run_step(step, record)

        if isinstance(outcome, Success):
            updated = await self._checkpoints.checkpoint(
                record.workflow_id,
                StepResult(
                    step_index=record.current_step_index,
                    step_name=step.name,
                    started_at=started_at,
                    completed_at=max(self._clock(), started_at),
                    result=outcome.result,
                    context_updates=outcome.context_updates,
                ),
                record.version,
            )
            return updated if updated.status != WorkflowStatus.ACTIVE else None

        if isinstance(outcome, RequiresWait):
            pending = self._controller.new_pending_action(
                record.current_step_index, step.name, outcome
            )
            return await self._controller.pause(
                record.workflow_id, pending, record.version
            )

        if isinstance(outcome, RecoverableError):
            return await self._handle_recoverable(record, step, outcome)

        return await self._checkpoints.fail(
            record.workflow_id,
            FailureReason.FATAL_ERROR,
            {"step_name": step.name, "step_index": record.current_step_index, "detail": outcome.detail},
            record.version,
            failed_step=StepResult(
                step_index=record.current_step_index,
                step_name=step.name,
                started_at=started_at,
                completed_at=max(self._clock(), started_at),
                status=StepStatus.FAILED,
                result={"error": outcome.detail},
            ),
        )

    async def _handle_recoverable(
        self, record: WorkflowRecord, step: StepDefinition, error: RecoverableError
    ) -> Optional[WorkflowRecord]:
        failures = record.retry_count + 1
        max_retries = step.max_retries if step.max_retries is not None else record.max_retries
        details = {
            "step_name": step.name,
            "step_index": record.current_step_index,
            "detail": error.detail,
            "error_kind": error.error_kind.value,
            "attempts": failures,
            "max_retries": max_retries,
        }

        if not self._retry_policy.should_retry(failures, max_retries, error.error_kind):
            reason = (
                FailureReason.NON_RETRYABLE_ERROR
                if error.error_kind in self._retry_policy.non_retryable
                else FailureReason.MAX_RETRIES_EXHAUSTED
            )
            return await self._checkpoints.fail(
                record.workflow_id, reason, details, record.version
            )

        delay = self._retry_policy.next_retry_delay(record.retry_count)
        next_attempt_at = self._clock() + delay
        logger.info(
            f"Step {step.name} of workflow {record.workflow_id} failed "
            f"({error.detail}); retry {failures}/{max_retries} in {delay.total_seconds()}s"
        )
        updated = await self._checkpoints.record_retry(
            record.workflow_id, failures, next_attempt_at, details, record.version
        )
        # without inline retries the next run_pending pass picks it up
        return None if self._inline_retries else updated

    async def _run_step(self, step: StepDefinition, record: WorkflowRecord) -> StepOutcome:
        """Invoke step logic and normalize whatever happens into an outcome."""
        ctx = StepContext(
            workflow_id=record.workflow_id,
            workflow_type=record.workflow_type,
            step_index=record.current_step_index,
            step_name=step.name,
            attempt=record.retry_count,
            context=dict(record.context),
            resolution=record.latest_resolution(record.current_step_index),
        )
        try:
            result = await self._invoke(step, ctx)
        except Exception as exc:
            kind = classify_exception(exc)
            logger.warning(
                f"Step {step.name} of workflow {record.workflow_id} raised "
                f"{type(exc).__name__}: {exc}"
            )
            return RecoverableError(detail=f"{type(exc).__name__}: {exc}", error_kind=kind)

        if isinstance(result, _OUTCOME_TYPES):
            return result
        # plain return values are treated as a successful result
        return Success(result=result)

    @staticmethod
    async def _invoke(step: StepDefinition, ctx: StepContext) -> Any:
        if step.timeout is not None and not inspect.iscoroutinefunction(step.handler):
            # a blocking handler runs in a worker thread so the timeout can fire;
            # the thread itself is left to finish in the background
            result = await asyncio.wait_for(
                asyncio.to_thread(step.handler, ctx), timeout=step.timeout
            )
        else:
            result = step.handler(ctx)
        if inspect.isawaitable(result):
            result = await asyncio.wait_for(result, timeout=step.timeout)
        return result

    async def run_pending(self, now: Optional[datetime] = None) -> list[WorkflowRecord]:
        """Tick every active workflow that is due; recovers after restarts."""
        now = now or self._clock()
        results = []
        for workflow_id in await self._store.query_runnable(now):
            try:
                results.append(await self.tick(workflow_id))
            except (NotFoundError, InvalidStateError, VersionConflictError) as exc:
                logger.warning(f"Could not advance workflow {workflow_id}: {exc}")
        return results

    async def start(
        self,
        transport: BaseTransport,
        topic: str = "flowstate.ready",
        lifespan: Optional[float] = None,
        poll_interval: Optional[float] = 5.0,
    ) -> None:
        """Listen for workflow signals and tick each signalled workflow.

        While listening, ``run_pending`` also runs every ``poll_interval``
        seconds so deferred retries and workflows whose signal was lost still
        make progress. Pass ``None`` to rely on signals alone.
        """
        poller = (
            asyncio.create_task(self._poll_pending(poll_interval))
            if poll_interval is not None
            else None
        )
        try:
            async for raw_message, signal in transport.subscribe(topic, lifespan=lifespan):
                await self._handle_signal(signal)
                await transport.ack(raw_message)
        finally:
            if poller is not None:
                poller.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await poller

    async def _poll_pending(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            advanced = await self.run_pending()
            if advanced:
                logger.debug(f"Periodic pass advanced {len(advanced)} workflows")

    async def _handle_signal(self, signal: WorkflowSignal) -> None:
        try:
            record = await self.tick(signal.workflow_id)
        except NotFoundError:
            logger.info(f"Ignoring signal for unknown workflow {signal.workflow_id}")
            return
        except (InvalidStateError, VersionConflictError) as exc:
            logger.warning(f"Could not advance workflow {signal.workflow_id}: {exc}")
            return
        logger.info(
            f"Workflow {record.workflow_id} is {record.status.value} after {signal.reason} signal"
        )
