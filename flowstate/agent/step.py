"""Run pydantic-ai agents as workflow steps."""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional, Union

from pydantic import BaseModel
from pydantic_ai.exceptions import (
    ModelHTTPError,
    UnexpectedModelBehavior,
    UsageLimitExceeded,
    UserError,
)

from ..contracts import FatalError, RecoverableError, StepContext, StepOutcome, Success
from ..utils.retry import RETRYABLE_STATUS_CODES, ErrorKind, classify_exception

logger = logging.getLogger(__name__)

PromptSource = Union[str, Callable[[StepContext], str]]


def _render_prompt(prompt: PromptSource, ctx: StepContext) -> str:
    if callable(prompt):
        return prompt(ctx)
    return prompt.format(**ctx.context)


def _jsonable(output: Any) -> Any:
    if isinstance(output, BaseModel):
        return output.model_dump(mode="json")
    return output


def _outcome_for_exception(exc: Exception) -> StepOutcome:
    """Translate an agent failure into a step outcome."""
    if isinstance(exc, (UserError, UsageLimitExceeded)):
        return FatalError(detail=f"{type(exc).__name__}: {exc}")
    if isinstance(exc, ModelHTTPError):
        kind = (
            ErrorKind.TRANSIENT
            if exc.status_code in RETRYABLE_STATUS_CODES
            else ErrorKind.VALIDATION
        )
        return RecoverableError(detail=f"ModelHTTPError: {exc}", error_kind=kind)
    if isinstance(exc, UnexpectedModelBehavior):
        return RecoverableError(
            detail=f"UnexpectedModelBehavior: {exc}", error_kind=ErrorKind.TRANSIENT
        )
    return RecoverableError(
        detail=f"{type(exc).__name__}: {exc}", error_kind=classify_exception(exc)
    )


def agent_step(
    agent: Any,
    prompt: PromptSource,
    deps: Any = None,
    output_key: Optional[str] = None,
) -> Callable[[StepContext], Any]:
    """Wrap ``agent`` into a step handler.

    Args:
        agent: A ``pydantic_ai.Agent`` or any object exposing
            ``async run(prompt, deps=None)`` returning a result with ``output``.
        prompt: Format string over the workflow context, or a callable
            receiving the ``StepContext``.
        deps: Dependencies passed to the agent run. A callable is invoked with
            the ``StepContext`` to build them per step.
        output_key: When set, the agent output is also merged into the
            workflow context under this key.

    Example:
        registry.workflow("summarise", [
            ("summary", agent_step(summariser, "Summarise {document}", output_key="summary")),
        ])
    """

    async def run_agent(ctx: StepContext) -> StepOutcome:
        try:
            rendered = _render_prompt(prompt, ctx)
        except KeyError as exc:
            return FatalError(detail=f"Prompt references missing context key {exc}")
        run_deps = deps(ctx) if callable(deps) else deps

        logger.debug(
            f"Running agent {getattr(agent, 'name', None)} for workflow "
            f"{ctx.workflow_id} step {ctx.step_name}"
        )
        try:
            result = await agent.run(rendered, deps=run_deps)
        except Exception as exc:
            logger.warning(
                f"Agent step {ctx.step_name} of workflow {ctx.workflow_id} failed: {exc}"
            )
            return _outcome_for_exception(exc)

        output = _jsonable(result.output)
        updates = {output_key: output} if output_key else {}
        return Success(result=output, context_updates=updates)

    run_agent.__name__ = getattr(agent, "name", None) or "agent_step"
    return run_agent
