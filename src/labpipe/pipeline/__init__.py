"""Declarative stage-based pipeline execution.

A pipeline document declares an environment, options, ordered stages of
steps, and ``post`` hooks. The engine runs the stages in order with ``when``
guards, environment templating, a pipeline-wide timeout and fail-fast
semantics, then always runs the ``post`` hooks.

Examples:
    Programmatic pipeline:

    >>> from labpipe.pipeline import PipelineDocument, PipelineEngine, ShellStep, StageDef
    >>> doc = PipelineDocument(
    ...     name="demo",
    ...     stages=(
    ...         StageDef(name="Build", steps=(ShellStep("echo build"),)),
    ...         StageDef(name="Test", steps=(ShellStep("echo test"),)),
    ...     ),
    ... )
    >>> record = PipelineEngine(doc).run()  # doctest: +SKIP

    Document-driven pipeline:

    >>> engine = PipelineEngine.from_file("pipelines/docker-build.yml")  # doctest: +SKIP
    >>> record = engine.run(RunMetadata(run_id=42, branch="main"))  # doctest: +SKIP
"""

from labpipe.pipeline.cancel import CancelToken
from labpipe.pipeline.engine import PipelineEngine, run_pipeline
from labpipe.pipeline.environment import resolve_environment, substitute
from labpipe.pipeline.exceptions import (
    ConcurrentRunError,
    HookStepFailure,
    PipelineConfigError,
    PipelineError,
    PipelineTimeoutError,
    StepFailure,
    UnresolvedVariableError,
)
from labpipe.pipeline.executor import StepExecutor
from labpipe.pipeline.guards import (
    AllOfGuard,
    AnyOfGuard,
    BranchGuard,
    EnvironmentGuard,
    NotGuard,
    parse_guard,
)
from labpipe.pipeline.history import RunHistory
from labpipe.pipeline.hooks import HookDispatcher
from labpipe.pipeline.loader import load_document, load_document_from_config, parse_document
from labpipe.pipeline.models import (
    HookCondition,
    HookResult,
    HttpCheckStep,
    LogStep,
    Options,
    PipelineDocument,
    PostHooks,
    RetryStep,
    RunContext,
    RunMetadata,
    RunRecord,
    RunStatus,
    ScopedDirStep,
    ShellStep,
    SleepStep,
    StageDef,
    StageResult,
    StageStatus,
    StepKind,
    StepResult,
    StepStatus,
)
from labpipe.pipeline.report import record_to_dict, record_to_json, render_record
from labpipe.pipeline.stage import StageRunner

__all__ = [
    "AllOfGuard",
    "AnyOfGuard",
    "BranchGuard",
    "CancelToken",
    "ConcurrentRunError",
    "EnvironmentGuard",
    "HookCondition",
    "HookDispatcher",
    "HookResult",
    "HookStepFailure",
    "HttpCheckStep",
    "LogStep",
    "NotGuard",
    "Options",
    "PipelineConfigError",
    "PipelineDocument",
    "PipelineEngine",
    "PipelineError",
    "PipelineTimeoutError",
    "PostHooks",
    "RetryStep",
    "RunContext",
    "RunHistory",
    "RunMetadata",
    "RunRecord",
    "RunStatus",
    "ScopedDirStep",
    "ShellStep",
    "SleepStep",
    "StageDef",
    "StageResult",
    "StageRunner",
    "StageStatus",
    "StepExecutor",
    "StepFailure",
    "StepKind",
    "StepResult",
    "StepStatus",
    "UnresolvedVariableError",
    "load_document",
    "load_document_from_config",
    "parse_document",
    "parse_guard",
    "record_to_dict",
    "record_to_json",
    "render_record",
    "resolve_environment",
    "run_pipeline",
    "substitute",
]
