import pytest

from flowstate.db import ArchiveDB
from flowstate.persistence import InMemoryWorkflowStore, get_archive_sink
from flowstate.persistence.archive import InMemoryArchiveSink, compact
from flowstate.persistence.models import (
    FailureReason,
    StepRecord,
    WorkflowRecord,
    WorkflowStatus,
    utcnow,
)


def _failed_record(workflow_type: str = "billing") -> WorkflowRecord:
    now = utcnow()
    return WorkflowRecord(
        workflow_type=workflow_type,
        status=WorkflowStatus.FAILED,
        failure_reason=FailureReason.DENIED,
        error_details={"step_name": "approve"},
        current_step_index=1,
        steps_completed=[
            StepRecord(step_index=0, step_name="draft", started_at=now, completed_at=now, result="x")
        ],
        context={"invoice": 42},
        completed_at=now,
    )


@pytest.mark.asyncio
async def test_archive_db_write_and_read(tmp_path):
    db = ArchiveDB(f"sqlite+aiosqlite:///{tmp_path / 'archive.db'}")
    store = InMemoryWorkflowStore(archive_sink=db)

    record = _failed_record()
    await store.create(record)
    await store.archive(record.workflow_id)

    archived = await db.get(record.workflow_id)
    assert archived is not None
    assert archived.status == WorkflowStatus.FAILED
    assert archived.failure_reason == FailureReason.DENIED
    assert archived.context == {"invoice": 42}
    assert archived.steps[0].step_name == "draft"

    other = _failed_record("shipping")
    await store.create(other)
    await store.archive(other.workflow_id)
    assert [a.workflow_id for a in await db.list_archived("shipping")] == [other.workflow_id]
    assert len(await db.list_archived()) == 2
    await db.dispose()


@pytest.mark.asyncio
async def test_archive_db_write_is_an_upsert(tmp_path):
    db = ArchiveDB(f"sqlite+aiosqlite:///{tmp_path / 'archive.db'}")
    archived = compact(_failed_record())
    await db.write(archived)
    await db.write(archived)
    assert len(await db.list_archived()) == 1
    await db.dispose()


def test_get_archive_sink_defaults_to_memory(monkeypatch, tmp_path):
    monkeypatch.setenv("FLOWSTATE_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.delenv("FLOWSTATE_ARCHIVE_URL", raising=False)
    assert isinstance(get_archive_sink(), InMemoryArchiveSink)
    sink = get_archive_sink(f"sqlite+aiosqlite:///{tmp_path / 'a.db'}")
    assert isinstance(sink, ArchiveDB)
