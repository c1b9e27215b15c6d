"""Retry classification and exponential backoff for step failures."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from enum import Enum
from typing import FrozenSet

import httpx
from pydantic import BaseModel, Field, ValidationError


class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    TIMEOUT = "timeout"
    VALIDATION = "validation"
    UNKNOWN = "unknown"


RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


def compute_backoff(
    retry_count: int, base: float = 1.0, max_delay: float = 60.0
) -> float:
    """Compute capped exponential backoff in seconds."""
    if retry_count < 0:
        raise ValueError("retry_count must not be negative")
    return min(base * 2 ** retry_count, max_delay)


class RetryPolicy(BaseModel):
    """Pure retry decisions, independent of any step's business logic."""

    base_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=60.0, ge=0)
    non_retryable: FrozenSet[ErrorKind] = frozenset({ErrorKind.VALIDATION})

    def next_retry_delay(self, retry_count: int) -> timedelta:
        return timedelta(
            seconds=compute_backoff(retry_count, self.base_delay, self.max_delay)
        )

    def should_retry(
        self, retry_count: int, max_retries: int, error_kind: ErrorKind
    ) -> bool:
        if retry_count >= max_retries:
            return False
        return error_kind not in self.non_retryable


def classify_exception(exc: BaseException) -> ErrorKind:
    """Map an exception raised by step logic onto an ``ErrorKind``."""
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException)):
        return ErrorKind.TIMEOUT
    if isinstance(exc, httpx.HTTPStatusError):
        if exc.response.status_code in RETRYABLE_STATUS_CODES:
            return ErrorKind.TRANSIENT
        return ErrorKind.VALIDATION
    if isinstance(exc, (httpx.TransportError, ConnectionError)):
        return ErrorKind.TRANSIENT
    if isinstance(exc, (ValidationError, ValueError, TypeError)):
        return ErrorKind.VALIDATION
    return ErrorKind.UNKNOWN
