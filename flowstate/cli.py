"""Command line interface for operating flowstate workflows."""

from __future__ import annotations

import asyncio
import importlib
import json
import logging
import sys
from datetime import timedelta
from typing import Optional

import typer

from .config import load_config
from .engine import WorkflowEngine
from .errors import FlowstateError, NotFoundError
from .persistence import get_store
from .persistence.models import ResumeOutcome, WorkflowRecord, WorkflowStatus
from .registry import REGISTRY
from .transports import get_transport

app = typer.Typer(help="CLI for flowstate workflows")

# Command groups
workflow_app = typer.Typer(help="Commands for inspecting and steering workflows")
worker_app = typer.Typer(help="Commands for running workers")

app.add_typer(workflow_app, name="workflow")
app.add_typer(worker_app, name="worker")


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(None, help="Logging level override"),
) -> None:
    """Flowstate CLI entry point."""
    config = load_config()
    logging.basicConfig(
        level=(log_level or config.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _engine() -> WorkflowEngine:
    config = load_config()
    return WorkflowEngine(
        get_store(),
        registry=REGISTRY,
        transport=get_transport(config=config),
        config=config,
    )


def _echo_record(record: WorkflowRecord) -> None:
    typer.echo(f"Workflow {record.workflow_id}: {record.status.value}")
    typer.echo(f"Type: {record.workflow_type}")
    typer.echo(f"Step: {record.current_step_index} (version {record.version})")
    if record.context:
        typer.echo(f"Context: {json.dumps(record.context, default=str)}")
    if record.pending_action is not None:
        pending = record.pending_action
        typer.echo(
            f"Waiting for {pending.type.value} at {pending.step_name} "
            f"until {pending.timeout_at.isoformat()}"
        )
        typer.echo(f"Resume token: {pending.resume_token}")
    if record.retry_count:
        # a step may override the workflow-level limit
        limit = (record.error_details or {}).get("max_retries", record.max_retries)
        typer.echo(f"Retries: {record.retry_count}/{limit}")
    if record.failure_reason is not None:
        typer.echo(f"Failure: {record.failure_reason.value} {record.error_details}")
    for step in record.steps_completed:
        typer.echo(
            f"- {step.step_name}: {step.status.value} "
            f"({step.started_at.isoformat()} -> {step.completed_at.isoformat()})"
        )


def _run_or_exit(coro) -> WorkflowRecord:
    try:
        return asyncio.run(coro)
    except NotFoundError:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)


@workflow_app.command("list")
def workflow_list(
    status: Optional[WorkflowStatus] = typer.Option(None, help="Only show this status"),
) -> None:
    """
    List workflows with their status and current step.

    Example:
        flowstate workflow list
        flowstate workflow list --status paused
    """
    workflows = asyncio.run(_engine().list_workflows(status))
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        typer.echo(
            f"{wf.workflow_id}\t{wf.workflow_type}\t{wf.status.value}\t{wf.current_step_index}"
        )


@workflow_app.command("show")
def workflow_show(workflow_id: str) -> None:
    """
    Show the stored state of a workflow, including any resume token.

    Example:
        flowstate workflow show 5c0e...
    """
    record = _run_or_exit(_engine().get(workflow_id))
    _echo_record(record)


@workflow_app.command("resume")
def workflow_resume(
    workflow_id: str,
    resume_token: str,
    outcome: ResumeOutcome = typer.Option(ResumeOutcome.APPROVED, help="Resolution of the wait"),
    payload: Optional[str] = typer.Option(None, help="JSON payload handed to the step"),
) -> None:
    """
    Resolve a paused workflow's pending action.

    Approved and success outcomes signal workers to continue the workflow;
    denied and timeout fail it.

    Example:
        flowstate workflow resume 5c0e... tok_abc --outcome approved
        flowstate workflow resume 5c0e... tok_abc --outcome denied --payload '{"by": "ops"}'
    """
    if outcome == ResumeOutcome.CANCELLED:
        typer.secho("Use 'workflow cancel' to cancel a workflow", fg=typer.colors.RED)
        raise typer.Exit(code=2)
    try:
        data = json.loads(payload) if payload else None
    except json.JSONDecodeError as exc:
        typer.secho(f"Invalid payload: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=2)

    record = _run_or_exit(
        _engine().resume(workflow_id, resume_token, outcome, data, run=False)
    )
    typer.echo(f"Workflow {record.workflow_id}: {record.status.value}")


@workflow_app.command("cancel")
def workflow_cancel(
    workflow_id: str,
    reason: Optional[str] = typer.Option(None, help="Recorded in error details"),
) -> None:
    """Cancel a workflow that has not finished yet."""
    record = _run_or_exit(_engine().cancel(workflow_id, reason))
    typer.echo(f"Workflow {record.workflow_id}: {record.status.value}")


@workflow_app.command("archive")
def workflow_archive(workflow_id: str) -> None:
    """Move a completed or failed workflow to cold storage."""
    try:
        asyncio.run(_engine().archive(workflow_id))
    except NotFoundError:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)
    except FlowstateError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Archived workflow {workflow_id}")


@app.command("sweep")
def sweep(
    retention: Optional[float] = typer.Option(
        None, help="Archive terminal workflows older than this many seconds"
    ),
    skip_archive: bool = typer.Option(False, help="Only fail timed-out waits"),
) -> None:
    """
    Run maintenance: time out expired waits and archive old terminal workflows.

    Example:
        flowstate sweep
        flowstate sweep --retention 86400
    """
    engine = _engine()

    async def _sweep() -> tuple[int, int]:
        timed_out = await engine.sweep_expired()
        archived: list[str] = []
        if not skip_archive:
            older_than = timedelta(seconds=retention) if retention is not None else None
            archived = await engine.archive_terminal(older_than)
        return len(timed_out), len(archived)

    timed_out, archived = asyncio.run(_sweep())
    typer.echo(f"Timed out {timed_out} workflows")
    typer.echo(f"Archived {archived} workflows")


@worker_app.command("run")
def worker_run(
    module: str,
    lifespan: Optional[float] = typer.Option(
        None, help="Worker timeout in seconds (default: run indefinitely)"
    ),
) -> None:
    """
    Run a worker that executes signalled workflows.

    ``module`` is imported first so it can register its workflow definitions
    on the default registry. Due workflows left over from a previous run are
    advanced before the worker starts listening.

    Example:
        flowstate worker run myapp.workflows --lifespan 300
    """
    if "" not in sys.path:
        sys.path.insert(0, "")
    try:
        importlib.import_module(module)
    except ImportError as exc:
        typer.secho(f"Cannot import {module}: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    if not REGISTRY.types():
        typer.secho(f"Module {module} registered no workflows", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    engine = _engine()
    typer.echo(f"Starting worker for: {', '.join(REGISTRY.types())}")

    async def _run() -> None:
        await engine.run_pending()
        await engine.start_worker(lifespan=lifespan)

    asyncio.run(_run())


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
