"""Tests for the labpipe.pipeline.engine module."""

from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any

import pytest

from labpipe.config import load_config
from labpipe.pipeline.engine import PipelineEngine, _acquire_run_lock, run_pipeline
from labpipe.pipeline.exceptions import (
    ConcurrentRunError,
    PipelineTimeoutError,
    StepFailure,
    UnresolvedVariableError,
)
from labpipe.pipeline.guards import BranchGuard
from labpipe.pipeline.history import RunHistory
from labpipe.pipeline.loader import parse_document
from labpipe.pipeline.models import (
    HookCondition,
    HttpCheckStep,
    LogStep,
    Options,
    PipelineDocument,
    PostHooks,
    RunMetadata,
    RunStatus,
    ShellStep,
    SleepStep,
    StageDef,
    StageStatus,
)


def _meta(tmp_path: Path, run_id: int | str = 1, branch: str = "main") -> RunMetadata:
    return RunMetadata(run_id=run_id, branch=branch, workdir=tmp_path)


def _build_test_deploy(test_script: str = "exit 1") -> PipelineDocument:
    return PipelineDocument(
        name="btd",
        stages=(
            StageDef(name="Build", steps=(ShellStep("echo build"),)),
            StageDef(name="Test", steps=(ShellStep(test_script),)),
            StageDef(name="Deploy", steps=(ShellStep("echo deploy"),)),
        ),
        post=PostHooks(
            always=(LogStep("cleanup"),),
            success=(LogStep("ok"),),
            failure=(LogStep("alert"),),
        ),
    )


class TestRunSuccess:
    """Tests for successful runs."""

    def test_all_stages_succeed(self, tmp_path: Path) -> None:
        """Stages run in order and success hooks fire."""
        record = PipelineEngine(_build_test_deploy("echo test")).run(_meta(tmp_path))
        assert record.status == RunStatus.SUCCEEDED
        assert record.success
        assert [s.name for s in record.stages] == ["Build", "Test", "Deploy"]
        assert [h.condition for h in record.hooks] == [HookCondition.ALWAYS, HookCondition.SUCCESS]
        assert record.error is None
        assert record.finished_at is not None

    def test_environment_and_builtins(self, tmp_path: Path, sample_document: dict[str, Any]) -> None:
        """Global environment templates resolve against run metadata."""
        document = parse_document(sample_document)
        record = PipelineEngine(document, fallback={}).run(_meta(tmp_path, run_id=42))
        build = record.stage("Build")
        assert build is not None
        assert build.steps[0].stdout.strip() == "build app:42"

    def test_run_id_allocated(self) -> None:
        """Runs without metadata get increasing build numbers."""
        doc = PipelineDocument(name="counter", stages=(StageDef(name="Log", steps=(LogStep("x"),)),))
        engine = PipelineEngine(doc)
        assert [engine.run().run_id for _ in range(3)] == [1, 2, 3]


class TestRunFailure:
    """Tests for failing runs."""

    def test_fail_fast(self, tmp_path: Path) -> None:
        """A failed stage stops the run; later stages are not reached."""
        record = PipelineEngine(_build_test_deploy()).run(_meta(tmp_path))
        assert record.status == RunStatus.FAILED
        assert [s.name for s in record.stages] == ["Build", "Test"]
        assert record.stage("Deploy") is None
        assert record.failed_stage == "Test"
        assert record.failed_step == "sh: exit 1"
        assert not record.timed_out
        assert [h.condition for h in record.hooks] == [HookCondition.ALWAYS, HookCondition.FAILURE]

    def test_http_step_with_placeholder_url(self, tmp_path: Path) -> None:
        """An unexpanded placeholder in an http URL fails the run, which is still archived."""
        doc = PipelineDocument(
            name="health",
            stages=(StageDef(name="Check", steps=(HttpCheckStep("http://localhost:${APP_PORT}/health"),)),),
            post=PostHooks(failure=(LogStep("alert"),)),
        )
        history = RunHistory(tmp_path / "runs")
        record = PipelineEngine(doc, history=history, fallback={}).run()
        assert record.status == RunStatus.FAILED
        assert record.failed_stage == "Check"
        assert record.stage("Check").steps[0].error.startswith("InvalidURL: ")
        assert record.hooks[-1].condition == HookCondition.FAILURE
        assert history.load("health", record.run_id)["status"] == "failed"

    def test_raise_on_error_after_hooks(self, tmp_path: Path) -> None:
        """raise_on_error re-raises once hooks have run."""
        engine = PipelineEngine(_build_test_deploy("echo nope >&2; exit 3"))
        with pytest.raises(StepFailure) as exc_info:
            engine.run(_meta(tmp_path), raise_on_error=True)
        assert exc_info.value.stage_name == "Test"
        assert exc_info.value.return_code == 3
        assert "nope" in exc_info.value.stderr

    def test_skipped_stage_does_not_fail(self, tmp_path: Path) -> None:
        """A stage whose guard is false is skipped and the run continues."""
        doc = PipelineDocument(
            name="guarded",
            stages=(
                StageDef(name="Build", steps=(LogStep("build"),)),
                StageDef(name="Push", steps=(ShellStep("exit 1"),), when=BranchGuard("main")),
                StageDef(name="Report", steps=(LogStep("report"),)),
            ),
        )
        record = PipelineEngine(doc).run(_meta(tmp_path, branch="develop"))
        assert record.success
        assert [s.name for s in record.skipped_stages] == ["Push"]
        assert record.stage("Report") is not None

    def test_unresolved_environment(self, tmp_path: Path) -> None:
        """Unresolvable templates fail the run before any stage; hooks still run."""
        doc = PipelineDocument(
            name="unresolved",
            stages=(StageDef(name="Build", steps=(LogStep("build"),)),),
            environment={"TARGET": "${TARGET_IMAGE}"},
            post=PostHooks(always=(LogStep("cleanup"),)),
        )
        engine = PipelineEngine(doc, fallback={})
        record = engine.run(_meta(tmp_path))
        assert record.status == RunStatus.FAILED
        assert record.stages == []
        assert "TARGET_IMAGE" in (record.error or "")
        always = record.hook(HookCondition.ALWAYS)
        assert always is not None
        assert always.steps[0].stdout == "cleanup"

        with pytest.raises(UnresolvedVariableError):
            engine.run(_meta(tmp_path, run_id=2), raise_on_error=True)

    def test_fallback_supplies_values(self, tmp_path: Path) -> None:
        """The fallback mapping feeds environment templates."""
        doc = PipelineDocument(
            name="fallback",
            stages=(StageDef(name="Scan", steps=(ShellStep("echo $TARGET"),)),),
            environment={"TARGET": "${TARGET_IMAGE}"},
        )
        record = PipelineEngine(doc, fallback={"TARGET_IMAGE": "nginx:latest"}).run(_meta(tmp_path))
        assert record.success
        assert record.stages[0].steps[0].stdout.strip() == "nginx:latest"


class TestTimeout:
    """Tests for the pipeline-wide timeout."""

    @pytest.mark.slow
    def test_timeout_kills_running_step(self, tmp_path: Path) -> None:
        """The timeout interrupts the step, fails the run, and hooks still run."""
        doc = PipelineDocument(
            name="slow",
            stages=(
                StageDef(name="Wait", steps=(ShellStep("sleep 10"),)),
                StageDef(name="After", steps=(LogStep("never"),)),
            ),
            options=Options(timeout=1),
            post=PostHooks(always=(ShellStep("echo cleanup"),)),
        )
        start = time.monotonic()
        record = PipelineEngine(doc).run(_meta(tmp_path))
        assert time.monotonic() - start < 8
        assert record.status == RunStatus.FAILED
        assert record.timed_out
        assert record.failed_stage == "Wait"
        assert record.stage("After") is None
        always = record.hook(HookCondition.ALWAYS)
        assert always is not None
        assert always.ok

    @pytest.mark.slow
    def test_default_timeout_raises(self, tmp_path: Path) -> None:
        """The engine default timeout applies when the document has none."""
        doc = PipelineDocument(name="slow-default", stages=(StageDef(name="Wait", steps=(ShellStep("sleep 10"),)),))
        with pytest.raises(PipelineTimeoutError):
            PipelineEngine(doc, default_timeout=0.5).run(_meta(tmp_path), raise_on_error=True)


class TestConcurrency:
    """Tests for the per-pipeline run lock."""

    def test_concurrent_run_rejected(self, tmp_path: Path) -> None:
        """A second run of a non-concurrent pipeline is refused."""
        doc = PipelineDocument(
            name="exclusive",
            stages=(StageDef(name="Build", steps=(LogStep("b"),)),),
            options=Options(disable_concurrent=True),
        )
        lock = _acquire_run_lock("exclusive")
        try:
            with pytest.raises(ConcurrentRunError):
                PipelineEngine(doc).run(_meta(tmp_path))
        finally:
            lock.release()
        assert PipelineEngine(doc).run(_meta(tmp_path)).success

    def test_concurrent_allowed_by_default(self, tmp_path: Path) -> None:
        """Without the option, held locks are ignored."""
        doc = PipelineDocument(name="shared", stages=(StageDef(name="Build", steps=(LogStep("b"),)),))
        lock = _acquire_run_lock("shared")
        try:
            assert PipelineEngine(doc).run(_meta(tmp_path)).success
        finally:
            lock.release()


class TestHistoryIntegration:
    """Tests for archiving runs."""

    def test_archive_and_retention(self, tmp_path: Path) -> None:
        """Each run is archived; only retain_runs records remain."""
        doc = PipelineDocument(
            name="archived",
            stages=(StageDef(name="Build", steps=(LogStep("b"),)),),
            options=Options(retain_runs=2),
        )
        history = RunHistory(tmp_path / "runs")
        engine = PipelineEngine(doc, history=history)
        for _ in range(3):
            engine.run()
        runs = history.list_runs("archived")
        assert [r["run_id"] for r in runs] == [2, 3]
        assert history.next_run_id("archived") == 4

    def test_concurrent_runs_get_distinct_ids(self, tmp_path: Path) -> None:
        """Runs started together never share a build number."""
        doc = PipelineDocument(name="parallel-runs", stages=(StageDef(name="Wait", steps=(SleepStep(0.3),)),))
        history = RunHistory(tmp_path / "runs")
        engine = PipelineEngine(doc, history=history)
        with ThreadPoolExecutor(max_workers=2) as pool:
            records = list(pool.map(lambda _: engine.run(), range(2)))
        assert sorted(r.run_id for r in records) == [1, 2]
        assert [r["status"] for r in history.list_runs("parallel-runs")] == ["succeeded", "succeeded"]


class TestFactories:
    """Tests for engine constructors and run_pipeline."""

    def test_from_file(self, write_file: Any, tmp_path: Path) -> None:
        """Engines load YAML documents."""
        path = write_file("demo.yml", "stages:\n  - name: Build\n    steps:\n      - echo: hi\n")
        engine = PipelineEngine.from_file(path)
        assert engine.document.name == "demo"
        assert engine.run(_meta(tmp_path)).success

    def test_from_config(self, write_file: Any, monkeypatch: pytest.MonkeyPatch) -> None:
        """Engines load documents declared in the configuration file."""
        path = write_file(
            "labpipe.conf.yml",
            "pipeline:\n  default_timeout: 30\n  pipelines:\n    nightly:\n      stages:\n"
            "        - name: Build\n          steps:\n            - echo: nightly\n",
        )
        monkeypatch.setenv("LABPIPE_CONFIG", str(path))
        assert load_config().pipeline.default_timeout == 30
        engine = PipelineEngine.from_config("nightly")
        assert engine.document.name == "nightly"

    def test_run_pipeline(self, tmp_path: Path) -> None:
        """run_pipeline runs a document once."""
        record = run_pipeline(_build_test_deploy("echo test"), _meta(tmp_path), dry_run=True)
        assert record.success
        assert record.stages[0].status == StageStatus.SUCCEEDED
