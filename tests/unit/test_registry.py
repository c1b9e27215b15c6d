import pytest

from flowstate.contracts import StepDefinition, Success, WorkflowDefinition
from flowstate.errors import UnknownWorkflowTypeError
from flowstate.registry import WorkflowRegistry


def validate(ctx):
    return Success()


def test_workflow_builds_steps_from_mixed_inputs(registry):
    definition = registry.workflow(
        "order",
        [
            validate,
            ("charge", lambda ctx: None),
            StepDefinition(name="ship", handler=validate, timeout=5, max_retries=1),
        ],
        max_retries=2,
    )
    assert [step.name for step in definition.steps] == ["validate", "charge", "ship"]
    assert definition.steps[2].timeout == 5
    assert definition.max_retries == 2
    assert registry.get("order") is definition
    assert "order" in registry
    assert registry.types() == ["order"]


def test_duplicate_registration_requires_replace(registry):
    registry.register(WorkflowDefinition(workflow_type="a"))
    with pytest.raises(ValueError):
        registry.register(WorkflowDefinition(workflow_type="a"))
    replacement = WorkflowDefinition(workflow_type="a", steps=[StepDefinition(name="x", handler=validate)])
    registry.register(replacement, replace=True)
    assert registry.get("a") is replacement


def test_unknown_type_raises():
    with pytest.raises(UnknownWorkflowTypeError):
        WorkflowRegistry().get("nope")


def test_non_callable_step_rejected(registry):
    with pytest.raises(TypeError):
        registry.workflow("bad", [42])


def test_is_finished():
    definition = WorkflowDefinition(
        workflow_type="two", steps=[StepDefinition(name=n, handler=validate) for n in "ab"]
    )
    assert not definition.is_finished(1)
    assert definition.is_finished(2)
