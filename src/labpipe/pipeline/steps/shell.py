"""Shell step handler.

Runs the script with ``<shell> -e -c <script>`` so a multi-line script
stops at its first failing command, in the current working directory and
with the resolved run environment exported. The process is polled rather
than waited on so that a cancelled run (pipeline timeout) kills it.

Multi-line scripts are supported natively via YAML folded (``>-``) or
literal (``|``) block scalars.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import time
from typing import TYPE_CHECKING

from labpipe.pipeline.cancel import POLL_INTERVAL
from labpipe.pipeline.environment import substitute
from labpipe.pipeline.models import RunContext, ShellStep, StepResult, StepStatus

if TYPE_CHECKING:
    from labpipe.pipeline.executor import StepExecutor

logger = logging.getLogger(__name__)

#: Default shell used to run scripts.
DEFAULT_SHELL = "/bin/sh"

#: Grace period to collect output after killing a process.
KILL_GRACE_PERIOD = 5.0


def _kill(proc: subprocess.Popen[str]) -> None:
    """Kill the process and its group (best effort)."""
    try:
        if os.name == "posix":
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except (ProcessLookupError, PermissionError):
        proc.kill()


class ShellStepHandler:
    """Execute a shell script as a pipeline step.

    Args:
        shell: Shell executable used to run scripts.

    Examples:
        >>> from labpipe.pipeline.models import ShellStep
        >>> handler = ShellStepHandler()
        >>> result = handler.execute(ShellStep("echo hello"), ctx, executor)  # doctest: +SKIP
        >>> result.status  # doctest: +SKIP
        <StepStatus.SUCCESS: 'success'>
    """

    def __init__(self, shell: str = DEFAULT_SHELL) -> None:
        self.shell = shell

    def execute(
        self,
        step: ShellStep,
        ctx: RunContext,
        executor: StepExecutor,
    ) -> StepResult:
        """Run a shell script.

        Args:
            step: Shell step definition.
            ctx: Run context providing environment, workdir and cancel token.
            executor: Unused, shell steps have no nested steps.

        Returns:
            StepResult with captured stdout, stderr, return code, and duration.
        """
        script = substitute(step.script, ctx.environment)
        logger.debug("ShellStep '%s': cwd=%s script=%r", step.label, ctx.workdir, script)

        if ctx.dry_run:
            logger.info("[DRY RUN] %s", step.label)
            return StepResult(
                name=step.label,
                kind=step.kind,
                status=StepStatus.SKIPPED,
                stdout=f"[dry-run] would execute: {script}",
            )

        env = {**os.environ, **ctx.environment}
        start = time.monotonic()
        deadline = start + step.timeout if step.timeout else None

        try:
            proc = subprocess.Popen(  # noqa: S603
                [self.shell, "-e", "-c", script],
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                env=env,
                cwd=ctx.workdir,
                start_new_session=os.name == "posix",
            )
        except OSError as exc:
            logger.exception("ShellStep '%s' OS error", step.label)
            return StepResult(
                name=step.label,
                kind=step.kind,
                status=StepStatus.FAILED,
                duration=time.monotonic() - start,
                error=str(exc),
            )

        interrupted: str | None = None
        while True:
            try:
                stdout, stderr = proc.communicate(timeout=POLL_INTERVAL)
                break
            except subprocess.TimeoutExpired:
                if ctx.cancel.cancelled:
                    interrupted = f"Cancelled: {ctx.cancel.reason}"
                elif deadline is not None and time.monotonic() >= deadline:
                    interrupted = f"Timed out after {step.timeout}s"
                else:
                    continue
            _kill(proc)
            try:
                stdout, stderr = proc.communicate(timeout=KILL_GRACE_PERIOD)
            except subprocess.TimeoutExpired:
                stdout, stderr = "", ""
            break

        duration = time.monotonic() - start

        if interrupted is not None:
            logger.warning("ShellStep '%s' interrupted after %.1fs: %s", step.label, duration, interrupted)
            return StepResult(
                name=step.label,
                kind=step.kind,
                status=StepStatus.TIMEOUT,
                stdout=stdout or "",
                stderr=stderr or "",
                return_code=proc.returncode,
                duration=duration,
                error=interrupted,
            )

        status = StepStatus.SUCCESS if proc.returncode == 0 else StepStatus.FAILED
        error = None
        if status == StepStatus.FAILED:
            error = stderr.strip() or f"exit code {proc.returncode}"
            logger.warning(
                "ShellStep '%s' failed (rc=%d): %s",
                step.label,
                proc.returncode,
                stderr.strip() or "(no stderr)",
            )

        return StepResult(
            name=step.label,
            kind=step.kind,
            status=status,
            stdout=stdout,
            stderr=stderr,
            return_code=proc.returncode,
            duration=duration,
            error=error,
        )


__all__ = [
    "DEFAULT_SHELL",
    "ShellStepHandler",
]
