"""Readiness signal transports.

A transport only tells executors that a workflow may have work to do. The
workflow store stays the source of truth, so a lost signal delays a workflow
until the next ``run_pending`` pass and a duplicate signal ticks a workflow
that has nothing left to run.
"""

from __future__ import annotations

import abc
import asyncio
from typing import AsyncIterator, Generic, Optional, Tuple, TypeVar

from ..contracts import SignalReason, WorkflowSignal

RawMessageT = TypeVar("RawMessageT")


def subscription_deadline(lifespan: Optional[float]) -> Optional[float]:
    """Loop time at which a subscription with ``lifespan`` seconds ends."""
    if lifespan is None:
        return None
    return asyncio.get_running_loop().time() + lifespan


def time_left(deadline: Optional[float]) -> Optional[float]:
    """Seconds until ``deadline``; ``None`` means no deadline, ``0`` means expired."""
    if deadline is None:
        return None
    return max(deadline - asyncio.get_running_loop().time(), 0.0)


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Delivers ``WorkflowSignal`` notices from dispatchers to executors.

    ``RawMessageT`` is whatever the backend hands back for acknowledgement.
    """

    async def connect(self) -> None:
        """Open the backend connection (no-op by default)."""

    async def disconnect(self) -> None:
        """Close the backend connection (no-op by default)."""

    async def signal(
        self, topic: str, workflow_id: str, reason: SignalReason
    ) -> WorkflowSignal:
        """Announce that ``workflow_id`` is ready to run."""
        notice = WorkflowSignal(workflow_id=workflow_id, reason=reason)
        await self.publish(topic, notice)
        return notice

    @abc.abstractmethod
    async def publish(self, topic: str, signal: WorkflowSignal) -> None:
        """Enqueue ``signal`` for executors listening on ``topic``."""
        raise NotImplementedError

    @abc.abstractmethod
    def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, WorkflowSignal]]:
        """Yield ``(raw_message, signal)`` pairs as signals arrive.

        The iterator ends once ``lifespan`` seconds have passed; with no
        lifespan it runs until cancelled. Malformed messages are dropped.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        """Confirm that the workflow named by ``raw_message`` was ticked."""
        raise NotImplementedError
