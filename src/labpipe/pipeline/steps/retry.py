"""Retry and sleep step handlers.

``retry`` re-runs its nested steps until an attempt succeeds, sleeping a
fixed delay between attempts. Combined with an ``http`` check it is the
bounded readiness probe used after starting a container::

    - type: retry
      count: 10
      delay: 1
      steps:
        - {type: http, url: "http://localhost:3000/health"}
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING

from labpipe.pipeline.models import RetryStep, RunContext, SleepStep, StepResult, StepStatus

if TYPE_CHECKING:
    from labpipe.pipeline.executor import StepExecutor

logger = logging.getLogger(__name__)


def _cancelled_result(
    step: RetryStep | SleepStep,
    ctx: RunContext,
    start: float,
    children: list[StepResult] | None = None,
) -> StepResult:
    return StepResult(
        name=step.label,
        kind=step.kind,
        status=StepStatus.TIMEOUT,
        duration=time.monotonic() - start,
        error=f"Cancelled: {ctx.cancel.reason}",
        children=children or [],
    )


class RetryStepHandler:
    """Run nested steps up to ``count`` attempts."""

    def execute(
        self,
        step: RetryStep,
        ctx: RunContext,
        executor: StepExecutor,
    ) -> StepResult:
        start = time.monotonic()
        children: list[StepResult] = []
        last_error: str | None = None

        for attempt in range(1, step.count + 1):
            results = executor.run_sequence(step.steps, ctx)
            children.extend(results)
            failure = next((r for r in results if not r.ok), None)
            if failure is None:
                if attempt > 1:
                    logger.info("%s succeeded on attempt %d", step.label, attempt)
                return StepResult(
                    name=step.label,
                    kind=step.kind,
                    status=StepStatus.SUCCESS,
                    duration=time.monotonic() - start,
                    children=children,
                )

            last_error = failure.error or failure.status.value
            if ctx.cancel.cancelled:
                return _cancelled_result(step, ctx, start, children=children)
            if attempt < step.count:
                logger.warning(
                    "%s attempt %d/%d failed: %s (retrying in %.1fs)",
                    step.label,
                    attempt,
                    step.count,
                    last_error,
                    step.delay,
                )
                if step.delay and ctx.cancel.wait(step.delay):
                    return _cancelled_result(step, ctx, start, children=children)

        return StepResult(
            name=step.label,
            kind=step.kind,
            status=StepStatus.FAILED,
            duration=time.monotonic() - start,
            error=f"Failed after {step.count} attempt(s): {last_error}",
            children=children,
        )


class SleepStepHandler:
    """Wait on the run's cancel token for a fixed duration."""

    def execute(
        self,
        step: SleepStep,
        ctx: RunContext,
        executor: StepExecutor,
    ) -> StepResult:
        start = time.monotonic()
        if ctx.dry_run:
            return StepResult(
                name=step.label,
                kind=step.kind,
                status=StepStatus.SKIPPED,
                stdout=f"[dry-run] would sleep {step.seconds:g}s",
            )
        if ctx.cancel.wait(step.seconds):
            return _cancelled_result(step, ctx, start)
        return StepResult(
            name=step.label,
            kind=step.kind,
            status=StepStatus.SUCCESS,
            duration=time.monotonic() - start,
        )


__all__ = [
    "RetryStepHandler",
    "SleepStepHandler",
]
