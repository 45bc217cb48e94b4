"""Pipeline engine: run a document's stages and then its ``post`` hooks.

A run has two phases. Phase 1 runs the stages in declared order and stops
at the first failed stage (fail-fast); skipped stages do not stop it.
Phase 2 dispatches the ``post`` hooks and is guaranteed to run on every
exit path from phase 1, including a pipeline timeout.

Run status goes ``running -> succeeded | failed`` and is frozen before the
hooks run. Failed steps are never retried implicitly; use a ``retry`` step.
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
from collections.abc import Mapping
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

from labpipe.pipeline.cancel import CancelToken
from labpipe.pipeline.environment import builtin_variables, resolve_environment
from labpipe.pipeline.exceptions import (
    ConcurrentRunError,
    PipelineError,
    PipelineTimeoutError,
    StepFailure,
    UnresolvedVariableError,
)
from labpipe.pipeline.executor import StepExecutor
from labpipe.pipeline.hooks import HookDispatcher
from labpipe.pipeline.models import (
    PipelineDocument,
    RunContext,
    RunMetadata,
    RunRecord,
    RunStatus,
    StageStatus,
    StepKind,
)
from labpipe.pipeline.stage import StageRunner

if TYPE_CHECKING:
    from labpipe.pipeline.history import RunHistory

logger = logging.getLogger(__name__)

# Run locks keyed by pipeline name, shared by every engine in the process
_RUN_LOCKS: dict[str, threading.Lock] = {}
_RUN_LOCKS_GUARD = threading.Lock()


def _acquire_run_lock(pipeline: str) -> threading.Lock:
    """Take the run lock of a pipeline without blocking.

    Raises:
        ConcurrentRunError: If another run holds the lock.
    """
    with _RUN_LOCKS_GUARD:
        lock = _RUN_LOCKS.setdefault(pipeline, threading.Lock())
    if not lock.acquire(blocking=False):
        raise ConcurrentRunError(pipeline)
    return lock


class PipelineEngine:
    """Execute a pipeline document.

    Args:
        document: Pipeline definition.
        executor: Step executor shared by stages and hooks.
        history: Archive receiving the record of every run.
        default_timeout: Timeout used when the document sets none.
        serialize_runs: Enforce one run at a time even if the document allows more.
        max_workers: Upper bound on concurrent parallel branches.
        fallback: Process-level fallback for environment templates.

    Examples:
        >>> from labpipe.pipeline.models import PipelineDocument, StageDef, ShellStep
        >>> doc = PipelineDocument(
        ...     name="demo",
        ...     stages=(StageDef(name="Build", steps=(ShellStep("echo build"),)),),
        ... )
        >>> record = PipelineEngine(doc).run()  # doctest: +SKIP
        >>> record.status  # doctest: +SKIP
        <RunStatus.SUCCEEDED: 'succeeded'>

        Load from a YAML document:

        >>> engine = PipelineEngine.from_file("pipelines/docker-build.yml")  # doctest: +SKIP
    """

    def __init__(  # noqa: PLR0913
        self,
        document: PipelineDocument,
        *,
        executor: StepExecutor | None = None,
        history: RunHistory | None = None,
        default_timeout: float | None = None,
        serialize_runs: bool = False,
        max_workers: int | None = None,
        fallback: Mapping[str, str] | None = None,
    ) -> None:
        self._document = document
        self._executor = executor or StepExecutor()
        self._history = history
        self._default_timeout = default_timeout
        self._serialize_runs = serialize_runs
        self._fallback = fallback
        self._stage_runner = StageRunner(self._executor, max_workers=max_workers, fallback=fallback)
        self._hooks = HookDispatcher(self._executor)
        self._run_counter = itertools.count(1)

    @property
    def document(self) -> PipelineDocument:
        """Return the pipeline document."""
        return self._document

    @classmethod
    def from_file(cls, path: str | Path, **kwargs: Any) -> PipelineEngine:
        """Create an engine from a YAML or JSON document file."""
        from labpipe.pipeline.loader import load_document  # pylint: disable=import-outside-toplevel

        return cls(load_document(path), **kwargs)

    @classmethod
    def from_config(cls, name: str, **kwargs: Any) -> PipelineEngine:
        """Create an engine from ``pipeline.pipelines.<name>`` in ``labpipe.conf.yml``.

        Engine settings not given in ``kwargs`` are taken from the
        ``pipeline`` section of the configuration.
        """
        # Lazy imports to avoid circular dependencies
        from labpipe.config import get_config  # pylint: disable=import-outside-toplevel
        from labpipe.pipeline.loader import load_document_from_config  # pylint: disable=import-outside-toplevel

        settings = get_config().pipeline
        kwargs.setdefault("default_timeout", settings.default_timeout)
        kwargs.setdefault("serialize_runs", settings.serialize_runs)
        kwargs.setdefault("executor", StepExecutor(shell=settings.shell))
        return cls(load_document_from_config(name), **kwargs)

    def run(
        self,
        metadata: RunMetadata | None = None,
        *,
        dry_run: bool = False,
        raise_on_error: bool = False,
    ) -> RunRecord:
        """Execute the pipeline.

        Args:
            metadata: Run metadata; a new build number is allocated when None.
            dry_run: Log shell/http/sleep steps instead of executing them.
            raise_on_error: Re-raise the run error after hooks have run.

        Returns:
            RunRecord of the run.

        Raises:
            ConcurrentRunError: If concurrent runs are disabled and one is active.
            PipelineError: With ``raise_on_error``, the error that failed the run.
        """
        doc = self._document
        lock = None
        if doc.options.disable_concurrent or self._serialize_runs:
            lock = _acquire_run_lock(doc.name)

        try:
            meta = metadata or RunMetadata(run_id=self._next_run_id(), job_name=doc.name)
            record, error = self._execute(meta, dry_run)
        finally:
            if lock is not None:
                lock.release()

        if self._history is not None:
            self._history.archive(record, retain=doc.options.retain_runs)

        if raise_on_error and error is not None:
            raise error
        return record

    def _next_run_id(self) -> int:
        if self._history is not None:
            return self._history.reserve_run_id(self._document.name)
        return next(self._run_counter)

    def _execute(self, meta: RunMetadata, dry_run: bool) -> tuple[RunRecord, PipelineError | None]:
        doc = self._document
        token = CancelToken()
        ctx = RunContext(
            metadata=meta,
            environment=builtin_variables(meta),
            workdir=meta.workdir,
            cancel=token,
            dry_run=dry_run,
        )
        record = RunRecord(
            pipeline=doc.name,
            run_id=meta.run_id,
            branch=meta.branch,
            stages=ctx.stages,
            started_at=datetime.now(timezone.utc),
        )
        timeout = doc.options.timeout or self._default_timeout
        timer: threading.Timer | None = None
        error: PipelineError | None = None
        completed = False
        start = time.monotonic()

        logger.info(
            "Pipeline '%s' run %s started (%d stages, branch=%s%s)",
            doc.name,
            meta.run_id,
            len(doc.stages),
            meta.branch or "-",
            ", dry_run=True" if dry_run else "",
        )

        try:
            ctx.environment = resolve_environment(doc.environment, meta, self._fallback)
            if timeout:
                timer = threading.Timer(timeout, token.cancel, kwargs={"reason": f"pipeline timeout of {timeout}s"})
                timer.daemon = True
                timer.start()
            error = self._run_stages(ctx, timeout)
            completed = True
        except UnresolvedVariableError as exc:
            logger.error("Pipeline '%s': %s", doc.name, exc)
            error = exc
            completed = True
        finally:
            if timer is not None:
                timer.cancel()
            ctx.status = RunStatus.SUCCEEDED if completed and error is None else RunStatus.FAILED
            self._finalize(record, ctx, error)
            hook_ctx = ctx.fork(cancel=CancelToken(), workdir=meta.workdir)
            record.hooks = self._hooks.dispatch(doc, hook_ctx)
            record.finished_at = datetime.now(timezone.utc)
            record.duration = time.monotonic() - start
            logger.info(
                "Pipeline '%s' run %s %s in %.3fs",
                doc.name,
                meta.run_id,
                record.status.value,
                record.duration,
            )

        return record, error

    def _run_stages(self, ctx: RunContext, timeout: float | None) -> PipelineError | None:
        """Run stages in order until one fails or the run is cancelled."""
        for stage in self._document.stages:
            if ctx.cancel.cancelled:
                return PipelineTimeoutError(timeout or 0.0)

            result = self._stage_runner.run(stage, ctx)
            ctx.stages.append(result)

            if result.status != StageStatus.FAILED:
                continue
            if ctx.cancel.cancelled:
                return PipelineTimeoutError(timeout or 0.0, stage.name)
            failed = result.failed_step()
            if failed is None:
                return StepFailure(stage.name, stage.name, reason=result.error)
            return StepFailure(
                stage.name,
                failed.name,
                return_code=failed.return_code,
                stderr=failed.stderr,
                reason=None if failed.kind == StepKind.SHELL else failed.error,
            )
        return None

    @staticmethod
    def _finalize(record: RunRecord, ctx: RunContext, error: PipelineError | None) -> None:
        record.status = ctx.status
        if error is None:
            return
        record.error = str(error)
        if isinstance(error, PipelineTimeoutError):
            record.timed_out = True
            record.failed_stage = error.stage_name
        elif isinstance(error, StepFailure):
            record.failed_stage = error.stage_name
            record.failed_step = error.step_name
        if record.failed_stage is not None:
            stage = record.stage(record.failed_stage)
            failed = stage.failed_step() if stage is not None else None
            if failed is not None:
                record.failed_step = failed.name


def run_pipeline(
    document: PipelineDocument,
    metadata: RunMetadata | None = None,
    **kwargs: Any,
) -> RunRecord:
    """Run a document once with a fresh engine.

    Args:
        document: Pipeline definition.
        metadata: Run metadata.
        **kwargs: Passed to ``PipelineEngine.run`` (``dry_run``, ``raise_on_error``).
    """
    return PipelineEngine(document).run(metadata, **kwargs)


__all__ = [
    "PipelineEngine",
    "run_pipeline",
]
