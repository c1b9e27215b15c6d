"""Audit trail of workflow state transitions."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Protocol

from pydantic import BaseModel, Field

from .persistence.models import utcnow

logger = logging.getLogger(__name__)


class AuditEvent(BaseModel):
    event: str
    workflow_id: str
    timestamp: datetime = Field(default_factory=utcnow)
    details: Dict[str, Any] = Field(default_factory=dict)


class AuditLog(Protocol):
    """Receives an event for every persisted workflow transition."""

    async def record(self, event: AuditEvent) -> None:
        """Persist an audit log entry."""


class LoggingAuditLog(AuditLog):
    """Write audit events to the ``flowstate.audit`` logger."""

    async def record(self, event: AuditEvent) -> None:
        logger.info(
            f"{event.event} workflow_id={event.workflow_id} "
            f"at={event.timestamp.isoformat()} details={event.details}"
        )


class InMemoryAuditLog(AuditLog):
    """Collect audit events in a list; used by tests."""

    def __init__(self) -> None:
        self.events: List[AuditEvent] = []

    async def record(self, event: AuditEvent) -> None:
        self.events.append(event)

    def names(self, workflow_id: str | None = None) -> list[str]:
        return [
            e.event
            for e in self.events
            if workflow_id is None or e.workflow_id == workflow_id
        ]


async def emit(audit: AuditLog, event: str, workflow_id: str, **details: Any) -> None:
    """Record an audit event; a failing collaborator never fails a transition."""
    try:
        await audit.record(AuditEvent(event=event, workflow_id=workflow_id, details=details))
    except Exception as exc:
        logger.warning(f"Failed to record audit event {event} for {workflow_id}: {exc}")
