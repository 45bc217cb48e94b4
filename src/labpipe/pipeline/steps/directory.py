"""Scoped directory step handler (``dir``)."""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING

from labpipe.pipeline.environment import substitute
from labpipe.pipeline.models import RunContext, ScopedDirStep, StepResult, StepStatus

if TYPE_CHECKING:
    from labpipe.pipeline.executor import StepExecutor

logger = logging.getLogger(__name__)


class ScopedDirStepHandler:
    """Run nested steps inside a subdirectory of the current working directory.

    The directory is created when missing. The previous working directory
    is restored on every exit path, including a failing nested step.
    Nested steps stop at the first failure.
    """

    def execute(
        self,
        step: ScopedDirStep,
        ctx: RunContext,
        executor: StepExecutor,
    ) -> StepResult:
        target = ctx.workdir / substitute(step.path, ctx.environment)
        start = time.monotonic()

        if not ctx.dry_run:
            try:
                target.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                logger.exception("dir '%s' cannot be created", target)
                return StepResult(
                    name=step.label,
                    kind=step.kind,
                    status=StepStatus.FAILED,
                    duration=time.monotonic() - start,
                    error=str(exc),
                )

        logger.debug("Entering %s", target)
        with ctx.pushd(target):
            children = executor.run_sequence(step.steps, ctx)

        failure = next((c for c in children if not c.ok), None)
        return StepResult(
            name=step.label,
            kind=step.kind,
            status=failure.status if failure else StepStatus.SUCCESS,
            duration=time.monotonic() - start,
            error=failure.error if failure else None,
            children=children,
        )


__all__ = [
    "ScopedDirStepHandler",
]
