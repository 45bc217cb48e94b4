"""Data models for the labpipe.pipeline module.

This module defines the core data structures used by the pipeline engine:

- StepKind: Enum tagging each step variant (log, shell, dir, retry, sleep, http)
- StepStatus / StageStatus / RunStatus / HookCondition: result enums
- LogStep, ShellStep, ScopedDirStep, RetryStep, SleepStep, HttpCheckStep:
  frozen step definitions forming the ``StepDef`` tagged union
- StageDef, Options, PostHooks, PipelineDocument: frozen pipeline document
- RunMetadata: caller-injected facts about a run (build number, branch, ...)
- RunContext: mutable state of one run, owned by the engine
- StepResult, StageResult, HookResult, RunRecord: mutable run results
"""

from __future__ import annotations

import contextlib
from collections.abc import Iterator
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import ClassVar, Union

from labpipe.pipeline.cancel import CancelToken
from labpipe.pipeline.exceptions import PipelineConfigError
from labpipe.pipeline.guards import WhenGuard
from labpipe.pipeline.validators import (
    MAX_PARALLEL_BRANCHES,
    MAX_RETRY_COUNT,
    MAX_STEP_NESTING,
    validate_dir_path,
    validate_env,
    validate_pipeline_name,
    validate_script,
    validate_stage_count,
    validate_stage_name,
    validate_timeout,
)


class StepKind(str, Enum):
    """Discriminator of the ``StepDef`` union.

    Attributes:
        LOG: Record a message (``echo``).
        SHELL: Run a shell script (``sh``).
        DIR: Run nested steps in a subdirectory (``dir``).
        RETRY: Re-run nested steps until they succeed (``retry``).
        SLEEP: Wait a fixed number of seconds (``sleep``).
        HTTP: Probe an HTTP endpoint for an expected status.
    """

    LOG = "log"
    SHELL = "shell"
    DIR = "dir"
    RETRY = "retry"
    SLEEP = "sleep"
    HTTP = "http"


class StepStatus(str, Enum):
    """Result status of a single step.

    Attributes:
        SUCCESS: Step completed successfully (exit code 0).
        FAILED: Step failed (non-zero exit code or error).
        SKIPPED: Step did not act (dry run).
        TIMEOUT: Step was cut short by a timeout or cancellation.
    """

    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    TIMEOUT = "timeout"


class StageStatus(str, Enum):
    """Result status of a stage."""

    SKIPPED = "skipped"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class RunStatus(str, Enum):
    """Status of a pipeline run: ``running`` then one terminal value."""

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class HookCondition(str, Enum):
    """Post hook set selector."""

    ALWAYS = "always"
    SUCCESS = "success"
    FAILURE = "failure"


# ============================================================================
# Step definitions
# ============================================================================


def _first_line(text: str, limit: int = 60) -> str:
    line = text.strip().splitlines()[0] if text.strip() else ""
    return line if len(line) <= limit else line[: limit - 3] + "..."


def _check_nested(owner: str, steps: tuple[StepDef, ...]) -> None:
    if not steps:
        raise PipelineConfigError(f"{owner} requires at least one nested step")
    if _nesting_depth(steps) > MAX_STEP_NESTING:
        raise PipelineConfigError(f"{owner}: steps nested too deeply (max {MAX_STEP_NESTING})")


def _nesting_depth(steps: tuple[StepDef, ...]) -> int:
    depth = 0
    for step in steps:
        if isinstance(step, (ScopedDirStep, RetryStep)):
            depth = max(depth, 1 + _nesting_depth(step.steps))
    return depth


@dataclass(frozen=True, slots=True)
class LogStep:
    """Record an informational message.

    Examples:
        >>> LogStep("Building application...").label
        'echo: Building application...'
    """

    message: str
    kind: ClassVar[StepKind] = StepKind.LOG

    def __post_init__(self) -> None:
        validate_script(self.message, what="Log message")

    @property
    def label(self) -> str:
        return f"echo: {_first_line(self.message)}"


@dataclass(frozen=True, slots=True)
class ShellStep:
    """Run a shell script with ``${NAME}`` placeholders.

    Attributes:
        script: Script text, possibly multi-line.
        timeout: Optional per-step timeout in seconds.
        name: Optional label shown in run records instead of the script.
    """

    script: str
    timeout: float | None = None
    name: str | None = None
    kind: ClassVar[StepKind] = StepKind.SHELL

    def __post_init__(self) -> None:
        validate_script(self.script)
        validate_timeout(self.timeout, what="Shell step timeout")

    @property
    def label(self) -> str:
        return self.name or f"sh: {_first_line(self.script)}"


@dataclass(frozen=True, slots=True)
class ScopedDirStep:
    """Run nested steps with a subdirectory as working directory."""

    path: str
    steps: tuple[StepDef, ...]
    kind: ClassVar[StepKind] = StepKind.DIR

    def __post_init__(self) -> None:
        validate_dir_path(self.path)
        _check_nested(f"dir({self.path!r})", self.steps)

    @property
    def label(self) -> str:
        return f"dir: {self.path}"


@dataclass(frozen=True, slots=True)
class RetryStep:
    """Run nested steps up to ``count`` times until one attempt succeeds.

    A fixed ``delay`` is slept between attempts, which also makes this the
    bounded readiness probe used after starting a container.
    """

    count: int
    steps: tuple[StepDef, ...]
    delay: float = 0.0
    kind: ClassVar[StepKind] = StepKind.RETRY

    def __post_init__(self) -> None:
        if not 1 <= self.count <= MAX_RETRY_COUNT:
            raise PipelineConfigError(f"Retry count must be between 1 and {MAX_RETRY_COUNT}, got {self.count}")
        if self.delay < 0:
            raise PipelineConfigError(f"Retry delay cannot be negative, got {self.delay}")
        _check_nested("retry", self.steps)

    @property
    def label(self) -> str:
        return f"retry({self.count})"


@dataclass(frozen=True, slots=True)
class SleepStep:
    """Wait for a fixed number of seconds (cancellable)."""

    seconds: float
    kind: ClassVar[StepKind] = StepKind.SLEEP

    def __post_init__(self) -> None:
        if self.seconds < 0:
            raise PipelineConfigError(f"Sleep duration cannot be negative, got {self.seconds}")

    @property
    def label(self) -> str:
        return f"sleep: {self.seconds:g}s"


@dataclass(frozen=True, slots=True)
class HttpCheckStep:
    """Issue a GET request and expect a given status code."""

    url: str
    expect_status: int = 200
    timeout: float = 5.0
    kind: ClassVar[StepKind] = StepKind.HTTP

    def __post_init__(self) -> None:
        if not self.url:
            raise PipelineConfigError("HTTP check requires a 'url'")
        if not 100 <= self.expect_status <= 599:
            raise PipelineConfigError(f"Invalid expected HTTP status {self.expect_status}")
        validate_timeout(self.timeout, what="HTTP check timeout")

    @property
    def label(self) -> str:
        return f"http: {self.url}"


StepDef = Union[LogStep, ShellStep, ScopedDirStep, RetryStep, SleepStep, HttpCheckStep]


# ============================================================================
# Pipeline document
# ============================================================================


@dataclass(frozen=True, slots=True)
class StageDef:
    """A named stage: ordered steps, or a set of parallel branches.

    Attributes:
        name: Stage name, unique within the document.
        steps: Ordered steps (mutually exclusive with ``parallel``).
        when: Optional guard; the stage is skipped when it evaluates false.
        parallel: Branch stages run concurrently by a worker pool.
        environment: Stage-scoped variable templates layered over the run environment.
        fail_fast: For parallel stages, cancel sibling branches once one fails.

    Examples:
        >>> stage = StageDef(name="Build", steps=(ShellStep("make"),))
        >>> stage.is_parallel
        False
    """

    name: str
    steps: tuple[StepDef, ...] = ()
    when: WhenGuard | None = None
    parallel: tuple[StageDef, ...] = ()
    environment: dict[str, str] = field(default_factory=dict)
    fail_fast: bool = False

    def __post_init__(self) -> None:
        validate_stage_name(self.name)
        if self.steps and self.parallel:
            raise PipelineConfigError(f"Stage '{self.name}': declare either 'steps' or 'parallel', not both")
        if not self.steps and not self.parallel:
            raise PipelineConfigError(f"Stage '{self.name}' has no steps")
        if self.steps:
            _check_nested(f"Stage '{self.name}'", self.steps)
        if len(self.parallel) > MAX_PARALLEL_BRANCHES:
            raise PipelineConfigError(f"Stage '{self.name}': too many parallel branches (max {MAX_PARALLEL_BRANCHES})")
        if self.environment:
            validate_env(self.environment)

    @property
    def is_parallel(self) -> bool:
        return bool(self.parallel)


@dataclass(frozen=True, slots=True)
class Options:
    """Pipeline-level options.

    Attributes:
        timeout: Pipeline-wide wall-clock budget in seconds.
        retain_runs: Number of archived run records to keep.
        disable_concurrent: Allow at most one run of this pipeline at a time.
    """

    timeout: float | None = None
    retain_runs: int | None = None
    disable_concurrent: bool = False

    def __post_init__(self) -> None:
        validate_timeout(self.timeout, what="Pipeline timeout")
        if self.retain_runs is not None and self.retain_runs < 1:
            raise PipelineConfigError(f"retain_runs must be at least 1, got {self.retain_runs}")


@dataclass(frozen=True, slots=True)
class PostHooks:
    """Lifecycle hook sets run after the stage sequence."""

    always: tuple[StepDef, ...] = ()
    success: tuple[StepDef, ...] = ()
    failure: tuple[StepDef, ...] = ()

    def for_condition(self, condition: HookCondition) -> tuple[StepDef, ...]:
        """Return the steps of one hook set."""
        if condition == HookCondition.ALWAYS:
            return self.always
        if condition == HookCondition.SUCCESS:
            return self.success
        return self.failure


@dataclass(frozen=True, slots=True)
class PipelineDocument:
    """Immutable definition of a pipeline.

    Examples:
        >>> doc = PipelineDocument(
        ...     name="basic",
        ...     stages=(
        ...         StageDef(name="Build", steps=(ShellStep("echo build"),)),
        ...         StageDef(name="Test", steps=(ShellStep("echo test"),)),
        ...     ),
        ... )
        >>> [s.name for s in doc.stages]
        ['Build', 'Test']
    """

    name: str
    stages: tuple[StageDef, ...]
    environment: dict[str, str] = field(default_factory=dict)
    options: Options = field(default_factory=Options)
    post: PostHooks = field(default_factory=PostHooks)

    def __post_init__(self) -> None:
        """Validate the document.

        Raises:
            PipelineConfigError: If the document is invalid.
        """
        validate_pipeline_name(self.name)
        validate_stage_count(len(self.stages))
        if self.environment:
            validate_env(self.environment)

        # Stage names are unique across the document, parallel branches included
        seen: set[str] = set()
        for stage in self._all_stages(self.stages):
            if stage.name in seen:
                raise PipelineConfigError(f"Duplicate stage name: {stage.name!r}")
            seen.add(stage.name)

    @staticmethod
    def _all_stages(stages: tuple[StageDef, ...]) -> Iterator[StageDef]:
        for stage in stages:
            yield stage
            yield from PipelineDocument._all_stages(stage.parallel)


# ============================================================================
# Run state
# ============================================================================


@dataclass(frozen=True, slots=True)
class RunMetadata:
    """Facts about a run injected by the caller.

    Attributes:
        run_id: Build number (monotonic integer) or UUID string.
        branch: Source branch name.
        started_at: Run start time (timezone-aware).
        workdir: Working directory root of the run.
        job_name: Name of the job, defaults to the pipeline name.
    """

    run_id: int | str
    branch: str = ""
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    workdir: Path = field(default_factory=Path.cwd)
    job_name: str = ""


@dataclass(slots=True)
class RunContext:
    """Mutable state of one run, threaded explicitly through every component."""

    metadata: RunMetadata
    environment: dict[str, str]
    workdir: Path
    cancel: CancelToken = field(default_factory=CancelToken)
    stages: list[StageResult] = field(default_factory=list)
    status: RunStatus = RunStatus.RUNNING
    dry_run: bool = False

    @contextlib.contextmanager
    def pushd(self, path: Path) -> Iterator[Path]:
        """Temporarily switch the working directory; always restored."""
        previous = self.workdir
        self.workdir = path
        try:
            yield path
        finally:
            self.workdir = previous

    def fork(
        self,
        *,
        environment: dict[str, str] | None = None,
        cancel: CancelToken | None = None,
        workdir: Path | None = None,
    ) -> RunContext:
        """Return a context sharing metadata but with its own mutable state."""
        return replace(
            self,
            environment=dict(self.environment if environment is None else environment),
            cancel=self.cancel if cancel is None else cancel,
            workdir=self.workdir if workdir is None else workdir,
            stages=[],
        )


@dataclass(slots=True)
class StepResult:
    """Result of a single step execution.

    Attributes:
        name: Step label.
        kind: Step variant that produced the result.
        status: Execution result status.
        stdout: Standard output (or the message for log steps).
        stderr: Standard error captured from the step.
        return_code: Process exit code (shell steps) or HTTP status.
        duration: Execution duration in seconds.
        error: Error message if the step failed.
        children: Results of nested steps (dir, retry).

    Examples:
        >>> result = StepResult(name="sh: make", kind=StepKind.SHELL, status=StepStatus.SUCCESS)
        >>> result.ok
        True
    """

    name: str
    kind: StepKind
    status: StepStatus
    stdout: str = ""
    stderr: str = ""
    return_code: int | None = None
    duration: float = 0.0
    error: str | None = None
    children: list[StepResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        """Whether the step did not fail or time out."""
        return self.status in (StepStatus.SUCCESS, StepStatus.SKIPPED)

    def innermost_failure(self) -> StepResult:
        """Follow nested results down to the step that actually failed."""
        for child in reversed(self.children):
            if not child.ok:
                return child.innermost_failure()
        return self


@dataclass(slots=True)
class StageResult:
    """Result of a stage.

    Attributes:
        name: Stage name.
        status: Skipped, succeeded or failed.
        steps: Results of executed steps, in order.
        branches: Results of parallel branches, in declared order.
        started_at: Wall-clock start time.
        finished_at: Wall-clock end time.
        duration: Duration in seconds.
        error: Description of the failure.
    """

    name: str
    status: StageStatus
    steps: list[StepResult] = field(default_factory=list)
    branches: list[StageResult] = field(default_factory=list)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    duration: float = 0.0
    error: str | None = None

    def failed_step(self) -> StepResult | None:
        """Return the innermost failed step, searching branches too.

        A ``failed`` step wins over a ``timeout`` one, so a branch cancelled
        by a failing sibling is not reported as the cause.
        """
        candidates = [step.innermost_failure() for step in self.steps if not step.ok]
        candidates.extend(found for found in (b.failed_step() for b in self.branches) if found is not None)
        return next((s for s in candidates if s.status == StepStatus.FAILED), candidates[0] if candidates else None)


@dataclass(slots=True)
class HookResult:
    """Outcome of one post hook set."""

    condition: HookCondition
    steps: list[StepResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(step.ok for step in self.steps)


@dataclass(slots=True)
class RunRecord:
    """Aggregate result of a pipeline run.

    Attributes:
        pipeline: Pipeline name.
        run_id: Build number or UUID.
        branch: Branch the run was made for.
        status: Final run status.
        stages: Results of stages that were reached, in declared order.
        hooks: Results of post hook sets, ``always`` first.
        started_at: Wall-clock start time.
        finished_at: Wall-clock end time.
        duration: Total duration in seconds.
        error: Description of the failure.
        timed_out: Whether the pipeline-wide timeout ended the run.
        failed_stage: Name of the failed stage.
        failed_step: Label of the failed step.

    Examples:
        >>> record = RunRecord(pipeline="basic", run_id=1)
        >>> record.status
        <RunStatus.RUNNING: 'running'>
    """

    pipeline: str
    run_id: int | str
    branch: str = ""
    status: RunStatus = RunStatus.RUNNING
    stages: list[StageResult] = field(default_factory=list)
    hooks: list[HookResult] = field(default_factory=list)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    duration: float = 0.0
    error: str | None = None
    timed_out: bool = False
    failed_stage: str | None = None
    failed_step: str | None = None

    @property
    def success(self) -> bool:
        """Whether the run finished with status ``succeeded``."""
        return self.status == RunStatus.SUCCEEDED

    @property
    def failed_stages(self) -> list[StageResult]:
        return [s for s in self.stages if s.status == StageStatus.FAILED]

    @property
    def skipped_stages(self) -> list[StageResult]:
        return [s for s in self.stages if s.status == StageStatus.SKIPPED]

    def stage(self, name: str) -> StageResult | None:
        """Return the result of the named stage, if it was reached."""
        return next((s for s in self.stages if s.name == name), None)

    def hook(self, condition: HookCondition) -> HookResult | None:
        """Return the result of a hook set, if it ran."""
        return next((h for h in self.hooks if h.condition == condition), None)


__all__ = [
    "HookCondition",
    "HookResult",
    "HttpCheckStep",
    "LogStep",
    "Options",
    "PipelineDocument",
    "PostHooks",
    "RetryStep",
    "RunContext",
    "RunMetadata",
    "RunRecord",
    "RunStatus",
    "ScopedDirStep",
    "ShellStep",
    "SleepStep",
    "StageDef",
    "StageResult",
    "StageStatus",
    "StepDef",
    "StepKind",
    "StepResult",
    "StepStatus",
]
