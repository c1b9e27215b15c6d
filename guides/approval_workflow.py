"""Expense approval workflow with a human-in-the-loop pause."""

import asyncio

from flowstate import (
    InMemoryWorkflowStore,
    Success,
    WorkflowEngine,
    WorkflowRegistry,
    require_approval,
)

registry = WorkflowRegistry()


def validate_expense(ctx):
    if ctx.context["amount"] <= 0:
        raise ValueError("amount must be positive")
    return Success(context_updates={"validated": True})


async def reimburse(ctx):
    # stable across retries of this step
    return {"payout_ref": f"payout-{ctx.idempotency_key}", "amount": ctx.context["amount"]}


registry.workflow(
    "expense",
    [
        validate_expense,
        ("manager_approval", require_approval(timeout=3600, details={"queue": "finance"})),
        reimburse,
    ],
)


async def main():
    """Start an expense workflow, approve it and watch it finish."""
    engine = WorkflowEngine(InMemoryWorkflowStore(), registry=registry)

    record = await engine.start_workflow("expense", {"employee": "ada", "amount": 120})
    print(f"✅ Workflow {record.workflow_id} is {record.status.value}")
    print(f"⏸️  Waiting on: {record.pending_action.step_name}")

    token = record.pending_action.resume_token
    record = await engine.resume(record.workflow_id, token, "approved", {"approver": "grace"})
    print(f"✅ Workflow {record.workflow_id} is {record.status.value}")
    for step in record.steps_completed:
        print(f"  - {step.step_name}: {step.result}")


if __name__ == "__main__":
    asyncio.run(main())
