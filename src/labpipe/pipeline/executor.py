"""Step executor: dispatch each step variant to its handler.

Adding a step kind means adding a ``StepDef`` variant and registering a
handler for its ``StepKind`` here, nothing else.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping

from labpipe.pipeline.base import StepHandler
from labpipe.pipeline.exceptions import PipelineConfigError
from labpipe.pipeline.models import RunContext, StepDef, StepKind, StepResult, StepStatus
from labpipe.pipeline.steps import (
    HttpCheckStepHandler,
    LogStepHandler,
    RetryStepHandler,
    ScopedDirStepHandler,
    ShellStepHandler,
    SleepStepHandler,
)
from labpipe.pipeline.steps.shell import DEFAULT_SHELL

logger = logging.getLogger(__name__)


def default_handlers(shell: str = DEFAULT_SHELL) -> dict[StepKind, StepHandler]:
    """Return the built-in handler for every step kind."""
    return {
        StepKind.LOG: LogStepHandler(),
        StepKind.SHELL: ShellStepHandler(shell),
        StepKind.DIR: ScopedDirStepHandler(),
        StepKind.RETRY: RetryStepHandler(),
        StepKind.SLEEP: SleepStepHandler(),
        StepKind.HTTP: HttpCheckStepHandler(),
    }


class StepExecutor:
    """Execute step definitions against a run context.

    Args:
        handlers: Override or extend the handler registry.
        shell: Shell used by the default shell handler.

    Examples:
        >>> from labpipe.pipeline.models import LogStep, RunContext, RunMetadata
        >>> meta = RunMetadata(run_id=1)
        >>> ctx = RunContext(metadata=meta, environment={}, workdir=meta.workdir)
        >>> StepExecutor().execute(LogStep("hello"), ctx).status
        <StepStatus.SUCCESS: 'success'>
    """

    def __init__(
        self,
        handlers: Mapping[StepKind, StepHandler] | None = None,
        *,
        shell: str = DEFAULT_SHELL,
    ) -> None:
        self._handlers = default_handlers(shell)
        if handlers:
            self._handlers.update(handlers)

    def execute(self, step: StepDef, ctx: RunContext) -> StepResult:
        """Execute one step.

        A step reached after the run was cancelled is not started and
        reports ``timeout``. An exception escaping a handler is reported
        as a ``failed`` step.

        Raises:
            PipelineConfigError: If no handler is registered for the step kind.
        """
        if ctx.cancel.cancelled:
            return StepResult(
                name=step.label,
                kind=step.kind,
                status=StepStatus.TIMEOUT,
                error=f"Not started: {ctx.cancel.reason}",
            )

        handler = self._handlers.get(step.kind)
        if handler is None:
            raise PipelineConfigError(f"No handler registered for step kind {step.kind.value!r}")

        try:
            result = handler.execute(step, ctx, self)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            logger.exception("Step '%s' raised", step.label)
            result = StepResult(
                name=step.label,
                kind=step.kind,
                status=StepStatus.FAILED,
                error=f"{type(exc).__name__}: {exc}",
            )
        logger.debug("Step '%s' -> %s (%.3fs)", result.name, result.status.value, result.duration)
        return result

    def run_sequence(self, steps: Iterable[StepDef], ctx: RunContext) -> list[StepResult]:
        """Execute steps in order, stopping after the first failure.

        Returns:
            Results of the steps that ran; the last one is the failure, if any.
        """
        results: list[StepResult] = []
        for step in steps:
            result = self.execute(step, ctx)
            results.append(result)
            if not result.ok:
                break
        return results


__all__ = [
    "StepExecutor",
    "default_handlers",
]
