"""HTTP check step handler.

Probes an endpoint of the deployed artifact (``/`` or ``/health``) with
``httpx`` and compares the response status with the expected one.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING

import httpx

from labpipe.pipeline.environment import substitute
from labpipe.pipeline.models import HttpCheckStep, RunContext, StepResult, StepStatus

if TYPE_CHECKING:
    from labpipe.pipeline.executor import StepExecutor

logger = logging.getLogger(__name__)


class HttpCheckStepHandler:
    """Issue a GET request and check the status code."""

    def execute(
        self,
        step: HttpCheckStep,
        ctx: RunContext,
        executor: StepExecutor,
    ) -> StepResult:
        url = substitute(step.url, ctx.environment)
        if ctx.dry_run:
            logger.info("[DRY RUN] GET %s", url)
            return StepResult(
                name=step.label,
                kind=step.kind,
                status=StepStatus.SKIPPED,
                stdout=f"[dry-run] would GET: {url}",
            )

        start = time.monotonic()
        try:
            response = httpx.get(url, timeout=step.timeout, follow_redirects=True)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            logger.warning("HTTP check %s failed: %s", url, exc)
            return StepResult(
                name=step.label,
                kind=step.kind,
                status=StepStatus.FAILED,
                duration=time.monotonic() - start,
                error=f"{type(exc).__name__}: {exc}",
            )

        duration = time.monotonic() - start
        ok = response.status_code == step.expect_status
        if not ok:
            logger.warning("HTTP check %s returned %d (expected %d)", url, response.status_code, step.expect_status)
        return StepResult(
            name=step.label,
            kind=step.kind,
            status=StepStatus.SUCCESS if ok else StepStatus.FAILED,
            stdout=response.text,
            return_code=response.status_code,
            duration=duration,
            error=None if ok else f"HTTP {response.status_code} (expected {step.expect_status})",
        )


__all__ = [
    "HttpCheckStepHandler",
]
