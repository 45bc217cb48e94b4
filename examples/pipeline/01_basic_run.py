"""Basic pipeline example.

Builds a three-stage document in Python and runs it.

Usage:
    python examples/pipeline/01_basic_run.py
"""

from __future__ import annotations

from labpipe.pipeline import (
    LogStep,
    PipelineDocument,
    PipelineEngine,
    PostHooks,
    RunMetadata,
    ShellStep,
    StageDef,
)


def main() -> None:
    """Run a basic pipeline."""
    document = PipelineDocument(
        name="basic",
        environment={"GREETING": "Hello from build ${BUILD_NUMBER}"},
        stages=(
            StageDef(name="Build", steps=(LogStep("Building..."), ShellStep("echo ${GREETING}"))),
            StageDef(name="Test", steps=(ShellStep('python -c "import platform; print(platform.platform())"'),)),
            StageDef(name="Deploy", steps=(ShellStep("echo deployed"),)),
        ),
        post=PostHooks(always=(LogStep("Cleaning up..."),)),
    )

    record = PipelineEngine(document).run(RunMetadata(run_id=1, branch="main"))

    print(f"\nPipeline '{record.pipeline}' {record.status.value} in {record.duration:.3f}s")
    for stage in record.stages:
        print(f"  [{stage.status.value.upper():>9}] {stage.name} ({stage.duration:.3f}s)")
        for step in stage.steps:
            for line in step.stdout.strip().splitlines():
                print(f"              {line}")


if __name__ == "__main__":
    main()
