from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


class ArchivedWorkflowRow(SQLModel, table=True):
    """Cold-storage row for a workflow removed from hot storage."""

    __tablename__ = "archived_workflow"

    workflow_id: str = Field(primary_key=True)
    workflow_type: str = Field(index=True)
    status: str
    failure_reason: Optional[str] = None
    error_details: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    steps: list = Field(default_factory=list, sa_column=Column(JSON))
    context: dict = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime
    completed_at: Optional[datetime] = None
    archived_at: datetime
    version: int
