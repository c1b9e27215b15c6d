"""Registry of workflow definitions keyed by workflow type."""

from __future__ import annotations

from typing import Any, Dict, Iterable, Optional, Union

from ..contracts import StepDefinition, WorkflowDefinition
from ..errors import UnknownWorkflowTypeError


class WorkflowRegistry:
    """Maps workflow types to their step sequences.

    Definitions are code, not state: workers in different processes build
    the same registry by importing the same modules.
    """

    def __init__(self) -> None:
        self._definitions: Dict[str, WorkflowDefinition] = {}

    def register(self, definition: WorkflowDefinition, replace: bool = False) -> None:
        if definition.workflow_type in self._definitions and not replace:
            raise ValueError(
                f"Workflow type '{definition.workflow_type}' is already registered"
            )
        self._definitions[definition.workflow_type] = definition

    def get(self, workflow_type: str) -> WorkflowDefinition:
        try:
            return self._definitions[workflow_type]
        except KeyError:
            raise UnknownWorkflowTypeError(workflow_type) from None

    def __contains__(self, workflow_type: str) -> bool:
        return workflow_type in self._definitions

    def types(self) -> list[str]:
        return sorted(self._definitions)

    def workflow(
        self,
        workflow_type: str,
        steps: Iterable[Union[StepDefinition, tuple, Any]],
        max_retries: Optional[int] = None,
        replace: bool = False,
    ) -> WorkflowDefinition:
        """Build and register a definition.

        ``steps`` may mix ``StepDefinition`` objects, ``(name, handler)``
        tuples and bare callables (named after ``__name__``).
        """
        definition = WorkflowDefinition(
            workflow_type=workflow_type,
            steps=[_as_step(step) for step in steps],
            max_retries=max_retries,
        )
        self.register(definition, replace=replace)
        return definition


def _as_step(step: Union[StepDefinition, tuple, Any]) -> StepDefinition:
    if isinstance(step, StepDefinition):
        return step
    if isinstance(step, tuple):
        name, handler = step
        return StepDefinition(name=name, handler=handler)
    if callable(step):
        return StepDefinition(name=getattr(step, "__name__", repr(step)), handler=step)
    raise TypeError(f"Cannot build a workflow step from {step!r}")


# Default registry used by the CLI worker; modules passed to
# ``flowstate worker run`` register their workflows here.
REGISTRY = WorkflowRegistry()


def register_workflow(definition: WorkflowDefinition, replace: bool = False) -> None:
    """Add ``definition`` to the default ``REGISTRY``."""
    REGISTRY.register(definition, replace=replace)


__all__ = [
    "WorkflowRegistry",
    "REGISTRY",
    "register_workflow",
]
