"""Persistence layer for flowstate workflows."""

from __future__ import annotations

import os
from typing import Optional

from ..config import FlowstateConfig, load_config
from .archive import ArchivedStep, ArchivedWorkflow, ArchiveSink, InMemoryArchiveSink
from .inmemory import InMemoryWorkflowStore
from .models import (
    FailureReason,
    PendingAction,
    PendingActionType,
    Resolution,
    ResumeOutcome,
    StepRecord,
    StepStatus,
    WorkflowRecord,
    WorkflowStatus,
)
from .repository import Mutator, WorkflowStore
from .postgres import PostgresWorkflowStore
from .sqlite import SQLiteWorkflowStore

_store_instance: WorkflowStore | None = None


def get_archive_sink(
    archive_url: Optional[str] = None, config: Optional[FlowstateConfig] = None
) -> ArchiveSink:
    """Return the cold-storage sink configured by ``archive_url``.

    Without an archive database, archived workflows are kept in memory.
    """

    config = config or load_config()
    archive_url = archive_url or config.archive_url
    if not archive_url:
        return InMemoryArchiveSink()

    from ..db import ArchiveDB

    return ArchiveDB(archive_url)


def get_store(
    database_url: Optional[str] = None, config: Optional[FlowstateConfig] = None
) -> WorkflowStore:
    """Factory function to obtain a workflow store.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``FLOWSTATE_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory store is returned.
    """

    global _store_instance
    if _store_instance is not None and database_url is None and config is None:
        return _store_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("FLOWSTATE_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or getattr(config, "database_url", None)
    )
    archive_sink = get_archive_sink(config=config)

    if not database_url:
        _store_instance = InMemoryWorkflowStore(archive_sink)
        return _store_instance

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _store_instance = SQLiteWorkflowStore(path, archive_sink)
    elif database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        _store_instance = PostgresWorkflowStore(database_url, archive_sink)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _store_instance


__all__ = [
    "ArchivedStep",
    "ArchivedWorkflow",
    "ArchiveSink",
    "FailureReason",
    "InMemoryArchiveSink",
    "InMemoryWorkflowStore",
    "Mutator",
    "PendingAction",
    "PendingActionType",
    "PostgresWorkflowStore",
    "Resolution",
    "ResumeOutcome",
    "SQLiteWorkflowStore",
    "StepRecord",
    "StepStatus",
    "WorkflowRecord",
    "WorkflowStatus",
    "WorkflowStore",
    "get_archive_sink",
    "get_store",
]
