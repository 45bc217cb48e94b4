"""Log step handler (``echo``)."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from labpipe.pipeline.environment import substitute
from labpipe.pipeline.models import LogStep, RunContext, StepResult, StepStatus

if TYPE_CHECKING:
    from labpipe.pipeline.executor import StepExecutor

logger = logging.getLogger(__name__)


class LogStepHandler:
    """Record a message as an always-successful step.

    Placeholders are expanded, so ``"Image: ${IMAGE_NAME}:${IMAGE_TAG}"``
    logs the resolved image reference. Log steps also run in dry-run mode.
    """

    def execute(
        self,
        step: LogStep,
        ctx: RunContext,
        executor: StepExecutor,
    ) -> StepResult:
        message = substitute(step.message, ctx.environment)
        logger.info("%s", message)
        return StepResult(
            name=step.label,
            kind=step.kind,
            status=StepStatus.SUCCESS,
            stdout=message,
        )


__all__ = [
    "LogStepHandler",
]
