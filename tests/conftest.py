"""Shared fixtures for flowstate tests."""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from flowstate.audit import InMemoryAuditLog
from flowstate.config import FlowstateConfig, RetryConfig
from flowstate.engine import WorkflowEngine
from flowstate.persistence import InMemoryWorkflowStore, SQLiteWorkflowStore
from flowstate.persistence.models import utcnow
from flowstate.registry import WorkflowRegistry


class FakeClock:
    """Controllable clock; ``sleep`` advances time instead of waiting."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or utcnow()
        self.sleeps: list[float] = []

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def audit() -> InMemoryAuditLog:
    return InMemoryAuditLog()


@pytest.fixture
def registry() -> WorkflowRegistry:
    return WorkflowRegistry()


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        yield InMemoryWorkflowStore()
    else:
        sqlite_store = SQLiteWorkflowStore(tmp_path / "flowstate.db")
        yield sqlite_store
        sqlite_store.close()


@pytest.fixture
def make_engine(clock, audit, registry):
    def _make(store, **config_overrides) -> WorkflowEngine:
        config = FlowstateConfig(
            retry=RetryConfig(base_delay=1.0, max_delay=60.0, max_retries=3),
            **config_overrides,
        )
        return WorkflowEngine(
            store,
            registry=registry,
            audit=audit,
            config=config,
            clock=clock,
            sleep=clock.sleep,
        )

    return _make
