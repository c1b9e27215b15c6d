"""Workflow dispatcher for flowstate."""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, Optional

from .audit import AuditLog, LoggingAuditLog, emit
from .persistence import WorkflowStore
from .persistence.models import WorkflowRecord
from .registry import WorkflowRegistry
from .transports import BaseTransport

logger = logging.getLogger(__name__)


class WorkflowDispatcher:
    """Service responsible for creating new workflow instances."""

    def __init__(
        self,
        store: WorkflowStore,
        registry: WorkflowRegistry,
        transport: BaseTransport | None = None,
        signal_topic: str = "flowstate.ready",
        default_max_retries: int = 3,
        audit: AuditLog | None = None,
    ) -> None:
        self._store = store
        self._registry = registry
        self._transport = transport
        self._signal_topic = signal_topic
        self._default_max_retries = default_max_retries
        self._audit = audit or LoggingAuditLog()

    async def dispatch_workflow(
        self,
        workflow_type: str,
        context: Optional[Dict[str, Any]] = None,
        workflow_id: Optional[str] = None,
        max_retries: Optional[int] = None,
    ) -> str:
        """Create an active workflow record and announce it to executors.

        Args:
            workflow_type: Registered definition to run.
            context: Initial business data visible to step logic.
            workflow_id: Optional caller-chosen id; a uuid4 is used otherwise.
            max_retries: Per-step failure limit, overriding the definition.

        Returns:
            Identifier for tracking the workflow.
        """
        definition = self._registry.get(workflow_type)
        if max_retries is None:
            max_retries = (
                definition.max_retries
                if definition.max_retries is not None
                else self._default_max_retries
            )
        record = WorkflowRecord(
            workflow_id=workflow_id or str(uuid.uuid4()),
            workflow_type=workflow_type,
            context=dict(context or {}),
            max_retries=max_retries,
        )
        await self._store.create(record)
        logger.info(
            f"Dispatched workflow {record.workflow_id} of type {workflow_type} "
            f"({len(definition.steps)} steps)"
        )
        await emit(self._audit, "workflow_created", record.workflow_id, workflow_type=workflow_type)

        if self._transport is not None:
            await self._transport.signal(self._signal_topic, record.workflow_id, "started")
        return record.workflow_id
