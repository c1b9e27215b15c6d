"""Process-local signal queues for tests and single-process deployments."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, Optional, Tuple

from ..contracts import WorkflowSignal
from .base import BaseTransport, subscription_deadline, time_left


class InMemoryTransport(BaseTransport[WorkflowSignal]):
    """One FIFO of signals per topic.

    Subscribers wait on an event instead of polling, so a published signal
    is delivered as soon as the worker is idle.
    """

    def __init__(self) -> None:
        self._queues: Dict[str, Deque[WorkflowSignal]] = defaultdict(deque)
        self._arrivals: Dict[str, asyncio.Event] = defaultdict(asyncio.Event)

    async def publish(self, topic: str, signal: WorkflowSignal) -> None:
        self._queues[topic].append(signal)
        self._arrivals[topic].set()

    def pending(self, topic: str) -> list[WorkflowSignal]:
        """Signals published to ``topic`` and not yet delivered."""
        return list(self._queues[topic])

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[WorkflowSignal, WorkflowSignal]]:
        queue = self._queues[topic]
        arrived = self._arrivals[topic]
        deadline = subscription_deadline(lifespan)

        while True:
            remaining = time_left(deadline)
            if remaining == 0:
                return
            if queue:
                signal = queue.popleft()
                yield signal, signal
                continue
            arrived.clear()
            try:
                await asyncio.wait_for(arrived.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                return

    async def ack(self, raw_message: WorkflowSignal) -> None:
        """Delivery already removed the signal from its queue."""
