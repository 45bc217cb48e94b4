"""Specialized exceptions raised by the labpipe.pipeline module.

Exception hierarchy::

    LabpipeError
        PipelineError (base for all pipeline errors)
            PipelineConfigError (invalid document, also ValueError)
            UnresolvedVariableError (environment placeholder without a value)
            StepFailure (a step failed inside the stage sequence)
            PipelineTimeoutError (pipeline-wide timeout, also TimeoutError)
            HookStepFailure (a post hook step failed, logged only)
            ConcurrentRunError (another run of the same pipeline is active)
"""

from __future__ import annotations

from collections.abc import Iterable

from labpipe.exceptions import LabpipeError


class PipelineError(LabpipeError):
    """Base exception for all pipeline module errors.

    All pipeline-specific exceptions inherit from this class,
    allowing for easy catching of any pipeline error.
    """


class PipelineConfigError(PipelineError, ValueError):
    """Pipeline document is invalid.

    Raised when the document, a stage, or a step contains invalid
    values, missing required fields, or constraint violations.
    """


class UnresolvedVariableError(PipelineError):
    """Environment templates reference placeholders with no value.

    Attributes:
        names: Sorted names of every unresolved placeholder.
    """

    def __init__(self, names: Iterable[str]) -> None:
        """Initialize UnresolvedVariableError.

        Args:
            names: Names of the placeholders that could not be resolved.
        """
        self.names = sorted(set(names))
        super().__init__(f"Unresolved environment variable(s): {', '.join(self.names)}")


class StepFailure(PipelineError):
    """A step failed inside the main stage sequence.

    Attributes:
        stage_name: Name of the stage containing the step.
        step_name: Label of the failed step.
        return_code: Exit code of the step, if it ran a process.
        stderr: Captured standard error of the step.
    """

    def __init__(
        self,
        stage_name: str,
        step_name: str,
        *,
        return_code: int | None = None,
        stderr: str = "",
        reason: str | None = None,
    ) -> None:
        """Initialize StepFailure.

        Args:
            stage_name: Name of the stage containing the step.
            step_name: Label of the failed step.
            return_code: Exit code of the step.
            stderr: Captured standard error.
            reason: Optional description used instead of the exit code.
        """
        detail = reason or (f"exit code {return_code}" if return_code is not None else "failed")
        super().__init__(f"Stage '{stage_name}' failed at step '{step_name}': {detail}")
        self.stage_name = stage_name
        self.step_name = step_name
        self.return_code = return_code
        self.stderr = stderr


class PipelineTimeoutError(PipelineError, TimeoutError):
    """The pipeline exceeded its wall-clock budget.

    Attributes:
        timeout: The timeout value in seconds.
        stage_name: Stage that was running when the timer fired, if any.
    """

    def __init__(self, timeout: float, stage_name: str | None = None) -> None:
        """Initialize PipelineTimeoutError.

        Args:
            timeout: The timeout value in seconds.
            stage_name: Stage in flight when the timeout elapsed.
        """
        where = f" during stage '{stage_name}'" if stage_name else ""
        super().__init__(f"Pipeline exceeded timeout of {timeout}s{where}")
        self.timeout = timeout
        self.stage_name = stage_name


class HookStepFailure(PipelineError):
    """A lifecycle hook step failed.

    Never propagated by the dispatcher: it is logged and recorded so
    that the remaining hook steps still run.

    Attributes:
        condition: Hook set the step belongs to (always, success, failure).
        step_name: Label of the failed step.
    """

    def __init__(self, condition: str, step_name: str, reason: str) -> None:
        """Initialize HookStepFailure.

        Args:
            condition: Hook set name.
            step_name: Label of the failed step.
            reason: Description of the failure.
        """
        super().__init__(f"Hook '{condition}' step '{step_name}' failed: {reason}")
        self.condition = condition
        self.step_name = step_name
        self.reason = reason


class ConcurrentRunError(PipelineError):
    """Another run of the same pipeline is already in progress.

    Attributes:
        pipeline: Pipeline identity holding the run lock.
    """

    def __init__(self, pipeline: str) -> None:
        """Initialize ConcurrentRunError.

        Args:
            pipeline: Pipeline identity holding the run lock.
        """
        super().__init__(f"Pipeline '{pipeline}' is already running (concurrent runs disabled)")
        self.pipeline = pipeline


__all__ = [
    "ConcurrentRunError",
    "HookStepFailure",
    "PipelineConfigError",
    "PipelineError",
    "PipelineTimeoutError",
    "StepFailure",
    "UnresolvedVariableError",
]
