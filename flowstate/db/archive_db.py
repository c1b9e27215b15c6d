from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlmodel import SQLModel, select

from ..persistence.archive import ArchivedStep, ArchivedWorkflow, ArchiveSink
from .models import ArchivedWorkflowRow


class ArchiveDB(ArchiveSink):
    """Async SQL cold storage for archived workflows."""

    def __init__(self, database_url: str) -> None:
        connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
        self.engine = create_async_engine(
            database_url, echo=False, future=True, connect_args=connect_args
        )
        self._initialized = False

    async def init_db(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        self._initialized = True

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        if not self._initialized:
            await self.init_db()
        async with AsyncSession(self.engine) as session:
            yield session

    async def write(self, archived: ArchivedWorkflow) -> None:
        data = archived.model_dump(mode="json")
        row = ArchivedWorkflowRow(
            workflow_id=archived.workflow_id,
            workflow_type=archived.workflow_type,
            status=archived.status.value,
            failure_reason=archived.failure_reason.value if archived.failure_reason else None,
            error_details=data["error_details"],
            steps=data["steps"],
            context=data["context"],
            created_at=archived.created_at,
            completed_at=archived.completed_at,
            archived_at=archived.archived_at,
            version=archived.version,
        )
        async with self.session() as session:
            await session.merge(row)
            await session.commit()

    async def get(self, workflow_id: str) -> ArchivedWorkflow | None:
        async with self.session() as session:
            row = await session.get(ArchivedWorkflowRow, workflow_id)
            if row is None:
                return None
            return self._to_model(row)

    async def list_archived(self, workflow_type: str | None = None) -> list[ArchivedWorkflow]:
        statement = select(ArchivedWorkflowRow)
        if workflow_type is not None:
            statement = statement.where(ArchivedWorkflowRow.workflow_type == workflow_type)
        async with self.session() as session:
            result = await session.execute(statement)
            return [self._to_model(row) for row in result.scalars().all()]

    @staticmethod
    def _to_model(row: ArchivedWorkflowRow) -> ArchivedWorkflow:
        return ArchivedWorkflow(
            workflow_id=row.workflow_id,
            workflow_type=row.workflow_type,
            status=row.status,
            failure_reason=row.failure_reason,
            error_details=row.error_details,
            steps=[ArchivedStep(**step) for step in row.steps or []],
            context=row.context or {},
            created_at=row.created_at,
            completed_at=row.completed_at,
            archived_at=row.archived_at,
            version=row.version,
        )

    async def dispose(self) -> None:
        await self.engine.dispose()
