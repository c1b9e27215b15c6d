import asyncio
from datetime import timedelta

import pytest
from typer.testing import CliRunner

import flowstate.persistence as persistence
from flowstate.cli import app
from flowstate.persistence import InMemoryWorkflowStore
from flowstate.persistence.models import (
    PendingAction,
    PendingActionType,
    WorkflowRecord,
    WorkflowStatus,
    utcnow,
)


@pytest.fixture(autouse=True)
def _isolated_config(tmp_path, monkeypatch):
    monkeypatch.setenv("FLOWSTATE_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.delenv("FLOWSTATE_TRANSPORT", raising=False)
    yield
    persistence._store_instance = None


def _setup_store() -> InMemoryWorkflowStore:
    store = InMemoryWorkflowStore()
    persistence._store_instance = store
    return store


def _paused_record(timeout=timedelta(hours=1)) -> WorkflowRecord:
    now = utcnow()
    return WorkflowRecord(
        workflow_type="expense",
        status=WorkflowStatus.PAUSED,
        pending_action=PendingAction(
            type=PendingActionType.HUMAN_APPROVAL,
            step_index=0,
            step_name="approve",
            submitted_at=now - timedelta(hours=2),
            timeout_at=now - timedelta(hours=2) + timeout,
        ),
    )


def _completed_record() -> WorkflowRecord:
    return WorkflowRecord(
        workflow_type="expense",
        status=WorkflowStatus.COMPLETED,
        completed_at=utcnow() - timedelta(days=30),
    )


def test_workflow_list_shows_workflows_and_filters():
    store = _setup_store()
    active = WorkflowRecord(workflow_type="expense")
    done = _completed_record()
    asyncio.run(store.create(active))
    asyncio.run(store.create(done))

    runner = CliRunner()
    result = runner.invoke(app, ["workflow", "list"])
    assert result.exit_code == 0, result.stdout
    assert active.workflow_id in result.stdout
    assert done.workflow_id in result.stdout

    result = runner.invoke(app, ["workflow", "list", "--status", "completed"])
    assert result.exit_code == 0, result.stdout
    assert active.workflow_id not in result.stdout
    assert done.workflow_id in result.stdout


def test_workflow_list_empty():
    _setup_store()
    result = CliRunner().invoke(app, ["workflow", "list"])
    assert result.exit_code == 0
    assert "No workflows found" in result.stdout


def test_workflow_show_details_and_missing():
    store = _setup_store()
    record = _paused_record(timeout=timedelta(hours=3))
    asyncio.run(store.create(record))

    runner = CliRunner()
    result = runner.invoke(app, ["workflow", "show", record.workflow_id])
    assert result.exit_code == 0, result.stdout
    assert "paused" in result.stdout
    assert record.pending_action.resume_token in result.stdout

    missing = runner.invoke(app, ["workflow", "show", "missing-id"])
    assert missing.exit_code == 1
    assert "Workflow not found" in missing.stdout


def test_workflow_show_reports_step_retry_limit():
    store = _setup_store()
    record = WorkflowRecord(
        workflow_type="sync",
        max_retries=3,
        retry_count=1,
        error_details={"step_name": "push", "attempts": 1, "max_retries": 5},
    )
    asyncio.run(store.create(record))

    result = CliRunner().invoke(app, ["workflow", "show", record.workflow_id])
    assert result.exit_code == 0, result.stdout
    assert "Retries: 1/5" in result.stdout


def test_workflow_resume_and_stale_token():
    store = _setup_store()
    record = _paused_record(timeout=timedelta(hours=3))
    asyncio.run(store.create(record))
    runner = CliRunner()

    stale = runner.invoke(app, ["workflow", "resume", record.workflow_id, "wrong-token"])
    assert stale.exit_code == 0, stale.stdout
    assert "paused" in stale.stdout

    result = runner.invoke(
        app,
        [
            "workflow",
            "resume",
            record.workflow_id,
            record.pending_action.resume_token,
            "--outcome",
            "approved",
            "--payload",
            '{"approver": "bob"}',
        ],
    )
    assert result.exit_code == 0, result.stdout
    assert "active" in result.stdout
    stored = asyncio.run(store.get(record.workflow_id))
    assert stored.resolutions[0].payload == {"approver": "bob"}


def test_workflow_resume_rejects_bad_payload():
    store = _setup_store()
    record = _paused_record()
    asyncio.run(store.create(record))
    result = CliRunner().invoke(
        app, ["workflow", "resume", record.workflow_id, "t", "--payload", "{nope"]
    )
    assert result.exit_code == 2


def test_workflow_cancel():
    store = _setup_store()
    record = WorkflowRecord(workflow_type="expense")
    asyncio.run(store.create(record))

    result = CliRunner().invoke(app, ["workflow", "cancel", record.workflow_id, "--reason", "typo"])
    assert result.exit_code == 0, result.stdout
    assert "failed" in result.stdout
    stored = asyncio.run(store.get(record.workflow_id))
    assert stored.error_details["reason"] == "typo"


def test_workflow_archive():
    store = _setup_store()
    done = _completed_record()
    active = WorkflowRecord(workflow_type="expense")
    asyncio.run(store.create(done))
    asyncio.run(store.create(active))
    runner = CliRunner()

    result = runner.invoke(app, ["workflow", "archive", done.workflow_id])
    assert result.exit_code == 0, result.stdout
    assert asyncio.run(store.archive_sink.get(done.workflow_id)) is not None

    refused = runner.invoke(app, ["workflow", "archive", active.workflow_id])
    assert refused.exit_code == 1


def test_sweep_times_out_and_archives():
    store = _setup_store()
    expired = _paused_record(timeout=timedelta(hours=1))
    old = _completed_record()
    asyncio.run(store.create(expired))
    asyncio.run(store.create(old))

    result = CliRunner().invoke(app, ["sweep"])
    assert result.exit_code == 0, result.stdout
    assert "Timed out 1 workflows" in result.stdout
    assert "Archived 1 workflows" in result.stdout

    timed_out = asyncio.run(store.get(expired.workflow_id))
    assert timed_out.failure_reason.value == "timeout"


def test_worker_run_advances_pending_workflows(tmp_path, monkeypatch):
    store = _setup_store()
    (tmp_path / "cli_worker_workflows.py").write_text(
        "from flowstate import REGISTRY, Success\n"
        "REGISTRY.workflow('cli_greeting', [('greet', lambda ctx: Success(result='hello'))], replace=True)\n"
    )
    monkeypatch.syspath_prepend(str(tmp_path))
    record = WorkflowRecord(workflow_type="cli_greeting")
    asyncio.run(store.create(record))

    result = CliRunner().invoke(
        app, ["worker", "run", "cli_worker_workflows", "--lifespan", "0.1"]
    )
    assert result.exit_code == 0, result.stdout
    assert "cli_greeting" in result.stdout
    stored = asyncio.run(store.get(record.workflow_id))
    assert stored.status == WorkflowStatus.COMPLETED
    assert stored.steps_completed[0].result == "hello"


def test_worker_run_unknown_module():
    _setup_store()
    result = CliRunner().invoke(app, ["worker", "run", "no_such_module_here"])
    assert result.exit_code == 1
