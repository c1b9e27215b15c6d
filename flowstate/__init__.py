"""Flowstate: durable, resumable workflow state engine."""

from .agent import agent_step
from .checkpoint import CheckpointManager, StepResult
from .contracts import (
    FatalError,
    RecoverableError,
    RequiresWait,
    StepContext,
    StepDefinition,
    Success,
    WorkflowDefinition,
    await_callback,
    require_approval,
)
from .control import PauseResumeController
from .dispatch import WorkflowDispatcher
from .engine import WorkflowEngine
from .errors import (
    DuplicateIdError,
    FlowstateError,
    InvalidStateError,
    NotFoundError,
    StaleResumeError,
    UnknownWorkflowTypeError,
    VersionConflictError,
)
from .execute import WorkflowExecutor
from .persistence import (
    FailureReason,
    InMemoryWorkflowStore,
    ResumeOutcome,
    WorkflowRecord,
    WorkflowStatus,
    get_store,
)
from .registry import REGISTRY, WorkflowRegistry, register_workflow
from .transports import get_transport
from .utils.retry import ErrorKind, RetryPolicy

__version__ = "0.1.0"
__all__ = [
    "CheckpointManager",
    "DuplicateIdError",
    "ErrorKind",
    "FailureReason",
    "FatalError",
    "FlowstateError",
    "InMemoryWorkflowStore",
    "InvalidStateError",
    "NotFoundError",
    "PauseResumeController",
    "REGISTRY",
    "RecoverableError",
    "RequiresWait",
    "ResumeOutcome",
    "RetryPolicy",
    "StaleResumeError",
    "StepContext",
    "StepDefinition",
    "StepResult",
    "Success",
    "UnknownWorkflowTypeError",
    "VersionConflictError",
    "WorkflowDefinition",
    "WorkflowDispatcher",
    "WorkflowEngine",
    "WorkflowExecutor",
    "WorkflowRecord",
    "WorkflowRegistry",
    "WorkflowStatus",
    "agent_step",
    "await_callback",
    "get_store",
    "get_transport",
    "register_workflow",
    "require_approval",
]
