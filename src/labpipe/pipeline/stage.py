"""Stage runner: evaluate a stage's guard and run its steps or branches."""

from __future__ import annotations

import logging
import os
import time
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timezone

from labpipe.pipeline.environment import resolve_templates
from labpipe.pipeline.exceptions import UnresolvedVariableError
from labpipe.pipeline.executor import StepExecutor
from labpipe.pipeline.models import RunContext, StageDef, StageResult, StageStatus

logger = logging.getLogger(__name__)


class StageRunner:
    """Run a single stage against a run context.

    A stage whose ``when`` guard is false is skipped without running any
    step. Otherwise its steps run in order and the first failing step
    fails the stage. A parallel stage runs its branches on a worker pool
    and fails if any branch fails.

    Args:
        executor: Step executor used for every step.
        max_workers: Upper bound on concurrent parallel branches.
        fallback: Process-level fallback for stage environment templates.
    """

    def __init__(
        self,
        executor: StepExecutor | None = None,
        *,
        max_workers: int | None = None,
        fallback: Mapping[str, str] | None = None,
    ) -> None:
        self._executor = executor or StepExecutor()
        self._max_workers = max_workers
        self._fallback = fallback

    def run(self, stage: StageDef, ctx: RunContext) -> StageResult:
        """Run a stage.

        Args:
            stage: Stage definition.
            ctx: Context of the current run.

        Returns:
            StageResult with the status and the results of executed steps.
        """
        started_at = datetime.now(timezone.utc)
        start = time.monotonic()
        result = StageResult(name=stage.name, status=StageStatus.SUCCEEDED, started_at=started_at)

        stage_ctx = ctx
        if stage.environment:
            try:
                environment = resolve_templates(
                    stage.environment,
                    ctx.environment,
                    os.environ if self._fallback is None else self._fallback,
                )
            except UnresolvedVariableError as exc:
                logger.error("Stage '%s': %s", stage.name, exc)
                result.status = StageStatus.FAILED
                result.error = str(exc)
                return self._finish(result, start)
            stage_ctx = ctx.fork(environment=environment)

        if stage.when is not None and not stage.when.evaluate(stage_ctx.environment, stage_ctx.metadata):
            logger.info("Stage '%s' skipped (when %s)", stage.name, stage.when.describe())
            result.status = StageStatus.SKIPPED
            return self._finish(result, start)

        logger.info("Stage '%s' started", stage.name)
        if stage.is_parallel:
            self._run_parallel(stage, stage_ctx, result)
        else:
            result.steps = self._executor.run_sequence(stage.steps, stage_ctx)
            failure = next((s for s in result.steps if not s.ok), None)
            if failure is not None:
                result.status = StageStatus.FAILED
                result.error = failure.error or failure.status.value

        self._finish(result, start)
        logger.info("Stage '%s' -> %s (%.3fs)", result.name, result.status.value, result.duration)
        return result

    def _run_parallel(self, stage: StageDef, ctx: RunContext, result: StageResult) -> None:
        """Run parallel branches and wait for all of them."""
        group = ctx.cancel.child()
        workers = min(len(stage.parallel), self._max_workers or len(stage.parallel))
        branch_results: dict[str, StageResult] = {}

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="labpipe-branch") as pool:
            futures = {pool.submit(self.run, branch, ctx.fork(cancel=group)): branch.name for branch in stage.parallel}
            for future in as_completed(futures):
                branch_result = future.result()
                branch_results[futures[future]] = branch_result
                if branch_result.status == StageStatus.FAILED and stage.fail_fast:
                    group.cancel(f"branch '{branch_result.name}' failed")

        result.branches = [branch_results[b.name] for b in stage.parallel]
        failed = [b.name for b in result.branches if b.status == StageStatus.FAILED]
        if failed:
            result.status = StageStatus.FAILED
            result.error = f"Parallel branch(es) failed: {', '.join(failed)}"

    @staticmethod
    def _finish(result: StageResult, start: float) -> StageResult:
        result.finished_at = datetime.now(timezone.utc)
        result.duration = time.monotonic() - start
        return result


__all__ = [
    "StageRunner",
]
