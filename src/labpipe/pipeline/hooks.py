"""Lifecycle hook dispatcher for ``post`` blocks.

Hooks run after the stage sequence, in the fixed order ``always`` then
exactly one of ``success`` / ``failure``. Hook execution is best effort:
a failing hook step is logged and the remaining steps still run, so that
cleanup (container teardown, image pruning) is always attempted.
"""

from __future__ import annotations

import logging

from labpipe.pipeline.exceptions import HookStepFailure
from labpipe.pipeline.executor import StepExecutor
from labpipe.pipeline.models import (
    HookCondition,
    HookResult,
    PipelineDocument,
    RunContext,
    RunStatus,
    StepDef,
    StepResult,
    StepStatus,
)

logger = logging.getLogger(__name__)


class HookDispatcher:
    """Run the ``post`` hook sets of a document.

    Args:
        executor: Step executor used for hook steps.
    """

    def __init__(self, executor: StepExecutor | None = None) -> None:
        self._executor = executor or StepExecutor()

    def dispatch(self, document: PipelineDocument, ctx: RunContext) -> list[HookResult]:
        """Run ``always`` then the hook set matching the run status.

        The run status must already be final; hooks never change it.

        Returns:
            Two hook results: ``always`` and one of ``success`` / ``failure``.
        """
        outcome = HookCondition.SUCCESS if ctx.status == RunStatus.SUCCEEDED else HookCondition.FAILURE
        return [
            self._run_set(HookCondition.ALWAYS, document.post.always, ctx),
            self._run_set(outcome, document.post.for_condition(outcome), ctx),
        ]

    def _run_set(
        self,
        condition: HookCondition,
        steps: tuple[StepDef, ...],
        ctx: RunContext,
    ) -> HookResult:
        hook_result = HookResult(condition=condition)
        if steps:
            logger.info("Running post '%s' hooks (%d steps)", condition.value, len(steps))

        for step in steps:
            try:
                result = self._executor.execute(step, ctx)
            except Exception as exc:  # pylint: disable=broad-exception-caught
                logger.exception("Post '%s' step '%s' raised", condition.value, step.label)
                result = StepResult(
                    name=step.label,
                    kind=step.kind,
                    status=StepStatus.FAILED,
                    error=f"{type(exc).__name__}: {exc}",
                )
            hook_result.steps.append(result)

            if not result.ok:
                failure = HookStepFailure(condition.value, result.name, result.error or result.status.value)
                logger.warning("%s", failure)

        return hook_result


__all__ = [
    "HookDispatcher",
]
