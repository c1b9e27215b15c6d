"""High-level facade wiring the engine components together."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from .audit import AuditLog, LoggingAuditLog
from .checkpoint import CheckpointManager
from .config import FlowstateConfig, load_config
from .control import PauseResumeController
from .dispatch import WorkflowDispatcher
from .errors import NotFoundError, StaleResumeError
from .execute import WorkflowExecutor
from .persistence import WorkflowStore, get_store
from .persistence.models import ResumeOutcome, WorkflowRecord, WorkflowStatus, utcnow
from .registry import REGISTRY, WorkflowRegistry
from .transports import BaseTransport, get_transport
from .utils.retry import RetryPolicy

logger = logging.getLogger(__name__)


class WorkflowEngine:
    """Single entry point for starting, resuming and maintaining workflows.

    Usage:
        engine = WorkflowEngine(InMemoryWorkflowStore(), registry)
        record = await engine.start_workflow("onboarding", {"user": "ada"})
        await engine.resume(record.workflow_id, token, "approved")
    """

    def __init__(
        self,
        store: WorkflowStore,
        registry: WorkflowRegistry | None = None,
        transport: BaseTransport | None = None,
        audit: AuditLog | None = None,
        config: FlowstateConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.config = config or FlowstateConfig()
        self.store = store
        self.registry = registry if registry is not None else REGISTRY
        self.transport = transport
        self.audit = audit or LoggingAuditLog()
        self._clock = clock

        retry = self.config.retry
        self.retry_policy = RetryPolicy(base_delay=retry.base_delay, max_delay=retry.max_delay)
        self.checkpoints = CheckpointManager(
            store, self.audit, conflict_retries=self.config.conflict_retries, clock=clock
        )
        self.controller = PauseResumeController(
            store,
            self.audit,
            transport=transport,
            signal_topic=self.config.transport.signal_topic,
            default_wait_timeout=self.config.default_wait_timeout,
            conflict_retries=self.config.conflict_retries,
            clock=clock,
        )
        self.executor = WorkflowExecutor(
            store,
            self.registry,
            self.checkpoints,
            self.controller,
            retry_policy=self.retry_policy,
            inline_retries=self.config.inline_retries,
            max_conflicts=self.config.conflict_retries,
            clock=clock,
            sleep=sleep,
        )
        self.dispatcher = WorkflowDispatcher(
            store,
            self.registry,
            transport=transport,
            signal_topic=self.config.transport.signal_topic,
            default_max_retries=retry.max_retries,
            audit=self.audit,
        )

    @classmethod
    def from_config(
        cls,
        config: FlowstateConfig | None = None,
        registry: WorkflowRegistry | None = None,
    ) -> "WorkflowEngine":
        """Build an engine using the configured store and transport."""
        config = config or load_config()
        return cls(
            get_store(config=config),
            registry=registry,
            transport=get_transport(config=config),
            config=config,
        )

    # ------------------------------------------------------------------
    # Workflow lifecycle
    # ------------------------------------------------------------------

    async def start_workflow(
        self,
        workflow_type: str,
        context: Optional[Dict[str, Any]] = None,
        workflow_id: Optional[str] = None,
        run: bool = True,
    ) -> WorkflowRecord:
        """Create a workflow and, with ``run``, advance it in this process.

        Pass ``run=False`` when separate workers consume the start signal.
        """
        workflow_id = await self.dispatcher.dispatch_workflow(
            workflow_type, context, workflow_id=workflow_id
        )
        if run:
            return await self.executor.tick(workflow_id)
        return await self.store.get(workflow_id)

    async def run(self, workflow_id: str) -> WorkflowRecord:
        return await self.executor.tick(workflow_id)

    async def get(self, workflow_id: str) -> WorkflowRecord:
        return await self.store.get(workflow_id)

    async def list_workflows(
        self, status: WorkflowStatus | None = None
    ) -> list[WorkflowRecord]:
        return await self.store.list_workflows(status)

    async def resume(
        self,
        workflow_id: str,
        resume_token: str,
        outcome: Union[ResumeOutcome, str],
        payload: Optional[Dict[str, Any]] = None,
        run: bool = True,
    ) -> WorkflowRecord:
        """Deliver an external approval or callback result.

        Invalid tokens are logged and ignored; the current record is
        returned either way.
        """
        try:
            record = await self.controller.resume(workflow_id, resume_token, outcome, payload)
        except StaleResumeError as exc:
            logger.warning(f"Ignoring resume: {exc}")
            return await self.store.get(workflow_id)
        if run and record.status == WorkflowStatus.ACTIVE:
            return await self.executor.tick(workflow_id)
        return record

    async def cancel(self, workflow_id: str, reason: Optional[str] = None) -> WorkflowRecord:
        return await self.controller.cancel(workflow_id, reason)

    # ------------------------------------------------------------------
    # Maintenance sweeps
    # ------------------------------------------------------------------

    async def sweep_expired(self, now: Optional[datetime] = None) -> list[WorkflowRecord]:
        return await self.controller.sweep_expired(now)

    async def run_pending(self, now: Optional[datetime] = None) -> list[WorkflowRecord]:
        return await self.executor.run_pending(now)

    async def archive(self, workflow_id: str) -> None:
        await self.store.archive(workflow_id)
        logger.info(f"Archived workflow {workflow_id}")

    async def archive_terminal(
        self,
        older_than: Optional[timedelta] = None,
        now: Optional[datetime] = None,
    ) -> list[str]:
        """Retention sweep: archive terminal workflows finished long enough ago."""
        if older_than is None:
            older_than = timedelta(seconds=self.config.retention)
        before = (now or self._clock()) - older_than
        archived = []
        for workflow_id in await self.store.query_terminal(before):
            try:
                await self.archive(workflow_id)
            except NotFoundError:
                continue
            archived.append(workflow_id)
        return archived

    async def start_worker(self, lifespan: Optional[float] = None) -> None:
        """Run the signal-driven worker loop on the engine's transport."""
        if self.transport is None:
            raise ValueError("A transport is required to run a worker")
        await self.executor.start(
            self.transport,
            topic=self.config.transport.signal_topic,
            lifespan=lifespan,
            poll_interval=self.config.poll_interval,
        )
