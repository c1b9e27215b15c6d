"""Run a pydantic-ai agent as a durable workflow step.

Start a worker for this module with:

    flowstate worker run guides.agent_workflow

and dispatch with ``python guides/agent_workflow.py``.
"""

import asyncio

from pydantic import BaseModel
from pydantic_ai import Agent

from flowstate import REGISTRY, WorkflowEngine, agent_step, require_approval


class Triage(BaseModel):
    severity: str
    summary: str


triage_agent = Agent(
    "openai:gpt-4o",
    output_type=Triage,
    name="triage_agent",
    instructions="Classify the incident severity as low, medium or high.",
)

REGISTRY.workflow(
    "incident",
    [
        ("triage", agent_step(triage_agent, "Incident report: {report}", output_key="triage")),
        ("on_call_review", require_approval(timeout=900)),
    ],
    replace=True,
)


async def main():
    """Record the workflow and let a worker pick it up."""
    engine = WorkflowEngine.from_config()
    record = await engine.start_workflow(
        "incident", {"report": "checkout latency above 5s"}, run=False
    )
    print(f"✅ Workflow dispatched: {record.workflow_id}")
    print("🔗 Start a worker with: flowstate worker run guides.agent_workflow")


if __name__ == "__main__":
    asyncio.run(main())
