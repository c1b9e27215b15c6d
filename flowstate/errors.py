"""Exception taxonomy for the flowstate engine."""

from __future__ import annotations


class FlowstateError(Exception):
    """Base class for all engine errors."""


class DuplicateIdError(FlowstateError):
    """Raised when creating a workflow whose id already exists."""

    def __init__(self, workflow_id: str) -> None:
        self.workflow_id = workflow_id
        super().__init__(f"Workflow {workflow_id} already exists")


class NotFoundError(FlowstateError):
    """Raised when a workflow is not present in hot storage."""

    def __init__(self, workflow_id: str) -> None:
        self.workflow_id = workflow_id
        super().__init__(f"Workflow {workflow_id} not found")


class VersionConflictError(FlowstateError):
    """Raised when the stored version differs from the expected one.

    Callers must reload the record and recompute their mutation; retrying the
    same mutation blindly can double-apply a step.
    """

    def __init__(
        self, workflow_id: str, expected_version: int, actual_version: int | None
    ) -> None:
        self.workflow_id = workflow_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Version conflict for workflow {workflow_id}: "
            f"expected {expected_version}, found {actual_version}"
        )


class StaleResumeError(FlowstateError):
    """Raised when a resume token does not match the outstanding pause."""

    def __init__(self, workflow_id: str, resume_token: str) -> None:
        self.workflow_id = workflow_id
        self.resume_token = resume_token
        super().__init__(
            f"Resume token does not match a pending action for workflow {workflow_id}"
        )


class InvalidStateError(FlowstateError):
    """Raised when an operation is not allowed in the record's current status."""


class InvariantViolationError(InvalidStateError):
    """Raised when a mutation would break a WorkflowRecord invariant."""


class UnknownWorkflowTypeError(FlowstateError):
    """Raised when no definition is registered for a workflow type."""

    def __init__(self, workflow_type: str) -> None:
        self.workflow_type = workflow_type
        super().__init__(f"No workflow definition registered for '{workflow_type}'")


__all__ = [
    "FlowstateError",
    "DuplicateIdError",
    "NotFoundError",
    "VersionConflictError",
    "StaleResumeError",
    "InvalidStateError",
    "InvariantViolationError",
    "UnknownWorkflowTypeError",
]
