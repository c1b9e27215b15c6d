"""Redis transport for cross-process signalling."""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Optional, Tuple

import redis.asyncio as redis
from pydantic import ValidationError

from ..contracts import WorkflowSignal
from .base import BaseTransport, subscription_deadline, time_left

logger = logging.getLogger(__name__)


class RedisTransport(BaseTransport[str]):
    """Redis list-based transport for distributed workers."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self._redis: Optional[Any] = None

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    @staticmethod
    def queue_name(topic: str) -> str:
        return f"flowstate:{topic}"

    async def publish(self, topic: str, signal: WorkflowSignal) -> None:
        """Push signal onto a Redis list acting as a queue."""
        if not self._redis:
            await self.connect()
        await self._redis.lpush(self.queue_name(topic), signal.to_json())

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[str, WorkflowSignal]]:
        """Subscribe to signals from a Redis queue."""
        if not self._redis:
            await self.connect()

        queue_name = self.queue_name(topic)
        deadline = subscription_deadline(lifespan)

        while True:
            remaining = time_left(deadline)
            if remaining == 0:
                break
            result = await self._redis.brpop(queue_name, timeout=1)
            if result:
                _, message_json = result
                try:
                    signal = WorkflowSignal.from_json(message_json)
                except ValidationError as e:
                    logger.warning(f"Dropping malformed signal on {queue_name}: {e}")
                    continue
                yield message_json, signal

    async def ack(self, raw_message: str) -> None:
        """No-op acknowledgment; BRPOP already removed the message."""
        pass
