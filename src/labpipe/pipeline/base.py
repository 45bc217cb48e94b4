"""Abstract base protocol for step handlers.

This module defines the protocol that every step handler must satisfy,
enabling the executor to dispatch each ``StepDef`` variant to a handler
registered for its ``kind``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from labpipe.pipeline.executor import StepExecutor
    from labpipe.pipeline.models import RunContext, StepResult


@runtime_checkable
class StepHandler(Protocol):
    """Protocol defining the interface for step handlers.

    Handlers for composite steps (dir, retry) run their nested steps
    through the ``executor`` they receive.

    Examples:
        >>> def run_step(handler: StepHandler, step, ctx, executor) -> StepResult:
        ...     return handler.execute(step, ctx, executor)
    """

    def execute(
        self,
        step: Any,
        ctx: RunContext,
        executor: StepExecutor,
    ) -> StepResult:
        """Execute a step.

        Args:
            step: Step definition of the kind this handler serves.
            ctx: Context of the current run.
            executor: Executor used to run nested steps.

        Returns:
            StepResult with status, stdout, stderr, duration, etc.
        """
        ...


__all__ = [
    "StepHandler",
]
