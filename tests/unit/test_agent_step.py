"""Tests for running agents as workflow steps."""

import pytest
from pydantic import BaseModel
from pydantic_ai import Agent
from pydantic_ai.exceptions import ModelHTTPError, UnexpectedModelBehavior, UserError
from pydantic_ai.models.test import TestModel as CannedModel

from flowstate.agent import agent_step
from flowstate.contracts import FatalError, RecoverableError, StepContext, Success
from flowstate.utils.retry import ErrorKind


class Verdict(BaseModel):
    approved: bool
    reason: str


class _Result:
    def __init__(self, output):
        self.output = output


class DummyAgent:
    """Records prompts and returns canned output or raises."""

    name = "dummy"

    def __init__(self, output=None, error=None):
        self.output = output
        self.error = error
        self.calls = []

    async def run(self, prompt, deps=None):
        self.calls.append((prompt, deps))
        if self.error is not None:
            raise self.error
        return _Result(self.output)


def _ctx(**context) -> StepContext:
    return StepContext(
        workflow_id="wf-1",
        workflow_type="review",
        step_index=0,
        step_name="judge",
        context=context,
    )


@pytest.mark.asyncio
async def test_prompt_is_formatted_from_context():
    agent = DummyAgent(output="looks good")
    handler = agent_step(agent, "Review order {order_id} for {customer}", deps={"k": 1})

    outcome = await handler(_ctx(order_id=7, customer="ada"))

    assert isinstance(outcome, Success)
    assert outcome.result == "looks good"
    assert agent.calls == [("Review order 7 for ada", {"k": 1})]
    assert handler.__name__ == "dummy"


@pytest.mark.asyncio
async def test_structured_output_is_stored_as_json_and_merged():
    agent = DummyAgent(output=Verdict(approved=True, reason="fine"))
    handler = agent_step(agent, lambda ctx: f"judge {ctx.workflow_id}", output_key="verdict")

    outcome = await handler(_ctx())

    assert outcome.result == {"approved": True, "reason": "fine"}
    assert outcome.context_updates == {"verdict": {"approved": True, "reason": "fine"}}
    assert agent.calls[0][0] == "judge wf-1"


@pytest.mark.asyncio
async def test_deps_factory_receives_context():
    agent = DummyAgent(output="ok")
    handler = agent_step(agent, "go", deps=lambda ctx: {"key": ctx.idempotency_key})
    await handler(_ctx())
    assert agent.calls[0][1] == {"key": "wf-1:0"}


@pytest.mark.asyncio
async def test_missing_context_key_is_fatal():
    handler = agent_step(DummyAgent(output="x"), "Hello {name}")
    outcome = await handler(_ctx())
    assert isinstance(outcome, FatalError)
    assert "name" in outcome.detail


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error, expected",
    [
        (ModelHTTPError(status_code=503, model_name="m"), RecoverableError),
        (UnexpectedModelBehavior("garbled"), RecoverableError),
        (ConnectionError("reset"), RecoverableError),
        (UserError("misconfigured"), FatalError),
    ],
)
async def test_agent_errors_are_classified(error, expected):
    handler = agent_step(DummyAgent(error=error), "go")
    outcome = await handler(_ctx())
    assert isinstance(outcome, expected)
    if isinstance(outcome, RecoverableError):
        assert outcome.error_kind == ErrorKind.TRANSIENT


@pytest.mark.asyncio
async def test_client_error_status_is_not_retryable():
    handler = agent_step(DummyAgent(error=ModelHTTPError(status_code=400, model_name="m")), "go")
    outcome = await handler(_ctx())
    assert isinstance(outcome, RecoverableError)
    assert outcome.error_kind == ErrorKind.VALIDATION


@pytest.mark.asyncio
async def test_runs_real_pydantic_ai_agent():
    agent = Agent(CannedModel(), name="summariser")
    handler = agent_step(agent, "Summarise {doc}")
    outcome = await handler(_ctx(doc="a long text"))
    assert isinstance(outcome, Success)
    assert isinstance(outcome.result, str)
