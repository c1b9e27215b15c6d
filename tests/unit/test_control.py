"""Tests for the pause/resume controller."""

import pytest

from flowstate.contracts import RequiresWait
from flowstate.control import PauseResumeController
from flowstate.errors import InvalidStateError, StaleResumeError
from flowstate.persistence.models import (
    FailureReason,
    PendingActionType,
    ResumeOutcome,
    WorkflowRecord,
    WorkflowStatus,
)
from flowstate.transports import InMemoryTransport


async def _paused(store, controller, timeout=3600.0, action=PendingActionType.HUMAN_APPROVAL):
    record = WorkflowRecord(workflow_type="t")
    await store.create(record)
    pending = controller.new_pending_action(0, "approve", RequiresWait(type=action, timeout=timeout))
    return await controller.pause(record.workflow_id, pending, 1)


@pytest.mark.asyncio
async def test_pause_persists_pending_action(store, clock, audit):
    controller = PauseResumeController(store, audit, clock=clock)
    paused = await _paused(store, controller, timeout=60)

    assert paused.status == WorkflowStatus.PAUSED
    assert paused.pending_action.submitted_at == clock()
    assert (paused.pending_action.timeout_at - clock()).total_seconds() == 60
    assert paused.pending_action.resume_token
    assert audit.names(paused.workflow_id) == ["workflow_paused"]


@pytest.mark.asyncio
async def test_pause_uses_default_timeout(store, clock):
    controller = PauseResumeController(store, clock=clock, default_wait_timeout=120)
    record = WorkflowRecord(workflow_type="t")
    await store.create(record)
    pending = controller.new_pending_action(0, "cb", RequiresWait(type=PendingActionType.ASYNC_CALLBACK))
    assert (pending.timeout_at - pending.submitted_at).total_seconds() == 120


@pytest.mark.asyncio
async def test_pause_requires_active_workflow(store, clock):
    controller = PauseResumeController(store, clock=clock)
    paused = await _paused(store, controller)
    pending = controller.new_pending_action(0, "again", RequiresWait())
    with pytest.raises(InvalidStateError):
        await controller.pause(paused.workflow_id, pending, paused.version)


@pytest.mark.asyncio
async def test_approve_reactivates_and_signals(store, clock, audit):
    transport = InMemoryTransport()
    controller = PauseResumeController(store, audit, transport=transport, signal_topic="ready", clock=clock)
    paused = await _paused(store, controller)
    token = paused.pending_action.resume_token

    resumed = await controller.resume(paused.workflow_id, token, "approved", {"by": "ops"})
    assert resumed.status == WorkflowStatus.ACTIVE
    assert resumed.pending_action is None
    assert resumed.resolution_for(token).payload == {"by": "ops"}
    assert [(s.workflow_id, s.reason) for s in transport.pending("ready")] == [
        (paused.workflow_id, "resumed")
    ]
    assert audit.names(paused.workflow_id)[-1] == "workflow_resumed"


@pytest.mark.asyncio
async def test_duplicate_resume_is_a_noop(store, clock):
    controller = PauseResumeController(store, clock=clock)
    paused = await _paused(store, controller)
    token = paused.pending_action.resume_token

    first = await controller.resume(paused.workflow_id, token, ResumeOutcome.SUCCESS)
    second = await controller.resume(paused.workflow_id, token, ResumeOutcome.DENIED)
    assert second.version == first.version
    assert second.status == WorkflowStatus.ACTIVE


@pytest.mark.asyncio
async def test_unknown_token_is_stale(store, clock):
    controller = PauseResumeController(store, clock=clock)
    paused = await _paused(store, controller)
    with pytest.raises(StaleResumeError):
        await controller.resume(paused.workflow_id, "not-the-token", "approved")
    assert (await store.get(paused.workflow_id)).status == WorkflowStatus.PAUSED


@pytest.mark.asyncio
async def test_resume_active_workflow_is_stale(store, clock):
    controller = PauseResumeController(store, clock=clock)
    record = WorkflowRecord(workflow_type="t")
    await store.create(record)
    with pytest.raises(StaleResumeError):
        await controller.resume(record.workflow_id, "anything", "approved")


@pytest.mark.asyncio
async def test_denied_fails_workflow(store, clock, audit):
    controller = PauseResumeController(store, audit, clock=clock)
    paused = await _paused(store, controller)

    failed = await controller.resume(
        paused.workflow_id, paused.pending_action.resume_token, "denied", {"note": "no"}
    )
    assert failed.status == WorkflowStatus.FAILED
    assert failed.failure_reason == FailureReason.DENIED
    assert failed.pending_action is None
    assert failed.error_details["payload"] == {"note": "no"}
    assert failed.completed_at == clock()
    assert audit.names(paused.workflow_id)[-1] == "workflow_failed"


@pytest.mark.asyncio
async def test_resume_rejects_cancelled_outcome(store, clock):
    controller = PauseResumeController(store, clock=clock)
    paused = await _paused(store, controller)
    with pytest.raises(ValueError):
        await controller.resume(paused.workflow_id, paused.pending_action.resume_token, "cancelled")


@pytest.mark.asyncio
async def test_sweep_times_out_expired_waits(store, clock):
    controller = PauseResumeController(store, clock=clock)
    short = await _paused(store, controller, timeout=60)
    long = await _paused(store, controller, timeout=7200)

    assert await controller.sweep_expired() == []
    clock.advance(3600)
    timed_out = await controller.sweep_expired()

    assert [r.workflow_id for r in timed_out] == [short.workflow_id]
    assert timed_out[0].failure_reason == FailureReason.TIMEOUT
    assert (await store.get(long.workflow_id)).status == WorkflowStatus.PAUSED

    # a callback arriving after the timeout is a duplicate of the consumed token
    late = await controller.resume(short.workflow_id, short.pending_action.resume_token, "success")
    assert late.status == WorkflowStatus.FAILED


@pytest.mark.asyncio
async def test_resume_wins_over_sweep_when_first(store, clock):
    controller = PauseResumeController(store, clock=clock)
    paused = await _paused(store, controller, timeout=60)
    await controller.resume(paused.workflow_id, paused.pending_action.resume_token, "approved")

    clock.advance(120)
    assert await controller.sweep_expired() == []
    assert (await store.get(paused.workflow_id)).status == WorkflowStatus.ACTIVE


@pytest.mark.asyncio
async def test_approval_after_deadline_before_sweep_times_out(store, clock, audit):
    transport = InMemoryTransport()
    controller = PauseResumeController(store, audit, transport=transport, signal_topic="ready", clock=clock)
    paused = await _paused(store, controller, timeout=60)
    token = paused.pending_action.resume_token

    clock.advance(120)
    late = await controller.resume(paused.workflow_id, token, "approved", {"by": "ops"})

    assert late.status == WorkflowStatus.FAILED
    assert late.failure_reason == FailureReason.TIMEOUT
    assert late.resolution_for(token).outcome == ResumeOutcome.TIMEOUT
    assert transport.pending("ready") == []
    assert audit.names(paused.workflow_id)[-1] == "workflow_failed"
    assert await controller.sweep_expired() == []


@pytest.mark.asyncio
async def test_approval_just_before_deadline_still_resumes(store, clock):
    controller = PauseResumeController(store, clock=clock)
    paused = await _paused(store, controller, timeout=60)

    clock.advance(59)
    resumed = await controller.resume(
        paused.workflow_id, paused.pending_action.resume_token, "approved"
    )
    assert resumed.status == WorkflowStatus.ACTIVE


@pytest.mark.asyncio
async def test_cancel_paused_workflow_consumes_token(store, clock, audit):
    controller = PauseResumeController(store, audit, clock=clock)
    paused = await _paused(store, controller)
    token = paused.pending_action.resume_token

    cancelled = await controller.cancel(paused.workflow_id, reason="user request")
    assert cancelled.status == WorkflowStatus.FAILED
    assert cancelled.failure_reason == FailureReason.CANCELLED
    assert cancelled.error_details["previous_status"] == "paused"
    assert cancelled.resolution_for(token).outcome == ResumeOutcome.CANCELLED

    late = await controller.resume(paused.workflow_id, token, "approved")
    assert late.status == WorkflowStatus.FAILED
    assert late.failure_reason == FailureReason.CANCELLED

    again = await controller.cancel(paused.workflow_id)
    assert again.version == cancelled.version
    assert audit.names(paused.workflow_id).count("workflow_cancelled") == 1


@pytest.mark.asyncio
async def test_cancel_active_workflow(store, clock):
    controller = PauseResumeController(store, clock=clock)
    record = WorkflowRecord(workflow_type="t", current_step_index=0)
    await store.create(record)
    cancelled = await controller.cancel(record.workflow_id)
    assert cancelled.status == WorkflowStatus.FAILED
    assert cancelled.error_details["previous_status"] == "active"
