"""Tests for the labpipe CLI application."""

from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path

import pytest
from typer.testing import CliRunner

from labpipe import meta
from labpipe.cli.app import app
from labpipe.pipeline.engine import _acquire_run_lock

# Mark all tests in this module as CLI tests
# Run with: pytest -m cli
pytestmark = pytest.mark.cli

runner = CliRunner()

BUNDLED = Path(__file__).resolve().parents[2] / "pipelines"

PASSING = """\
name: demo
environment:
  IMAGE_TAG: "${BUILD_NUMBER}"
stages:
  - name: Build
    steps:
      - echo: building
      - sh: echo "tag ${IMAGE_TAG}"
  - name: Push
    when: {branch: main}
    steps:
      - echo: pushing
post:
  always:
    - echo: cleanup
"""

FAILING = """\
name: broken
stages:
  - name: Build
    steps:
      - sh: echo ok
  - name: Test
    steps:
      - sh: |
          echo "assertion failed" >&2
          exit 3
  - name: Deploy
    steps:
      - sh: echo deploy
"""


@pytest.fixture(autouse=True)
def in_tmp_path(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Run every command from the temp directory so history stays there."""
    monkeypatch.chdir(tmp_path)
    return tmp_path


@pytest.fixture
def passing(write_file: Callable[[str, str], Path]) -> Path:
    return write_file("demo.yml", PASSING)


@pytest.fixture
def failing(write_file: Callable[[str, str], Path]) -> Path:
    return write_file("broken.yml", FAILING)


def test_app_help() -> None:
    """Test that --help lists the commands."""
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    assert "run" in result.stdout
    assert "validate" in result.stdout
    assert "history" in result.stdout


def test_app_version() -> None:
    """Test that --version displays the version."""
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert meta.__version__ in result.stdout


class TestRun:
    """Tests for ``labpipe run``."""

    def test_success(self, passing: Path, tmp_path: Path) -> None:
        """A passing pipeline exits 0 and is archived."""
        result = runner.invoke(app, ["run", str(passing), "--branch", "main"])
        assert result.exit_code == 0, result.output
        assert "SUCCEEDED" in result.stdout
        assert (tmp_path / ".labpipe" / "runs" / "demo" / "1.json").is_file()

    def test_failure_exit_code(self, failing: Path) -> None:
        """A failed stage exits 1 and shows where it failed."""
        result = runner.invoke(app, ["run", str(failing)])
        assert result.exit_code == 1
        assert "FAILED" in result.stdout
        assert "stage: Test" in result.stdout
        assert "assertion failed" in result.stdout

    def test_json_output(self, passing: Path) -> None:
        """--json prints the run record."""
        result = runner.invoke(app, ["run", str(passing), "--json", "--run-id", "42", "-b", "main"])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["status"] == "succeeded"
        assert data["run_id"] == 42
        build = data["stages"][0]
        assert build["steps"][1]["stdout"].strip() == "tag 42"
        assert [h["condition"] for h in data["hooks"]] == ["always", "success"]

    def test_json_failure(self, failing: Path) -> None:
        """A failed run reports stage and step in JSON."""
        result = runner.invoke(app, ["run", str(failing), "--json", "--no-history"])
        assert result.exit_code == 1
        data = json.loads(result.stdout)
        assert data["failed_stage"] == "Test"
        assert [s["name"] for s in data["stages"]] == ["Build", "Test"]

    def test_branch_guard(self, passing: Path) -> None:
        """Stages guarded on another branch are skipped."""
        result = runner.invoke(app, ["run", str(passing), "--json", "--branch", "feature/login"])
        data = json.loads(result.stdout)
        assert data["stages"][1]["status"] == "skipped"

    def test_env_option(self, write_file: Callable[[str, str], Path]) -> None:
        """--env values feed environment templates."""
        path = write_file(
            "scan.yml",
            'name: scan\nenvironment:\n  TARGET: "${TARGET_IMAGE}"\nstages:\n'
            "  - name: Scan\n    steps:\n      - sh: echo scanning ${TARGET}\n",
        )
        result = runner.invoke(app, ["run", str(path), "--json", "-e", "TARGET_IMAGE=nginx:latest"])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["stages"][0]["steps"][0]["stdout"].strip() == "scanning nginx:latest"

    def test_invalid_env_option(self, passing: Path) -> None:
        result = runner.invoke(app, ["run", str(passing), "-e", "NOEQUALS"])
        assert result.exit_code == 2

    def test_dry_run(self, failing: Path) -> None:
        """Dry run executes nothing, so nothing fails."""
        result = runner.invoke(app, ["run", str(failing), "--dry-run", "--no-history"])
        assert result.exit_code == 0

    def test_missing_file(self) -> None:
        """An unknown target exits 2."""
        result = runner.invoke(app, ["run", "nowhere.yml"])
        assert result.exit_code == 2
        assert "Error:" in result.stdout

    def test_invalid_document(self, write_file: Callable[[str, str], Path]) -> None:
        """Invalid documents exit 2."""
        path = write_file("bad.yml", "name: bad\nstages:\n  - name: A\n    steps:\n      - type: teleport\n")
        result = runner.invoke(app, ["run", str(path)])
        assert result.exit_code == 2
        assert "unknown step type" in result.stdout

    def test_configured_pipeline(self, write_file: Callable[[str, str], Path]) -> None:
        """Names of pipelines declared in the config file are accepted."""
        conf = write_file(
            "labpipe.conf.yml",
            "pipeline:\n  pipelines:\n    nightly:\n      stages:\n"
            "        - name: Build\n          steps:\n            - echo: nightly build\n",
        )
        result = runner.invoke(app, ["-c", str(conf), "run", "nightly", "--json"])
        assert result.exit_code == 0
        assert json.loads(result.stdout)["pipeline"] == "nightly"

    def test_refused_run_releases_build_number(self, write_file: Callable[[str, str], Path], tmp_path: Path) -> None:
        """A run refused by the concurrency lock leaves no reserved record behind."""
        path = write_file(
            "exclusive.yml",
            "name: exclusive\n"
            "options: {disable_concurrent: true}\n"
            "stages:\n  - name: Build\n    steps:\n      - echo: b\n",
        )
        lock = _acquire_run_lock("exclusive")
        try:
            result = runner.invoke(app, ["run", str(path)])
        finally:
            lock.release()
        assert result.exit_code == 1
        assert not (tmp_path / ".labpipe" / "runs" / "exclusive" / "1.json").exists()
        assert runner.invoke(app, ["run", str(path)]).exit_code == 0
        assert (tmp_path / ".labpipe" / "runs" / "exclusive" / "1.json").is_file()

    def test_bad_config(self, passing: Path, tmp_path: Path) -> None:
        """An explicit config file that cannot be read exits 2."""
        result = runner.invoke(app, ["-c", str(tmp_path / "absent.yml"), "run", str(passing)])
        assert result.exit_code == 2


class TestValidate:
    """Tests for ``labpipe validate``."""

    def test_bundled_document(self) -> None:
        """Options of the docker-build document are summarized."""
        result = runner.invoke(app, ["validate", str(BUNDLED / "docker-build.yml")])
        assert result.exit_code == 0
        assert "Push to Registry" in result.stdout
        assert "branch == 'main'" in result.stdout
        assert "timeout 1800s" in result.stdout
        assert "keep 10 run(s)" in result.stdout
        assert "no concurrent runs" in result.stdout

    def test_parallel_branches(self) -> None:
        result = runner.invoke(app, ["validate", str(BUNDLED / "security-scan.yml")])
        assert result.exit_code == 0
        assert "4 branches" in result.stdout

    def test_invalid(self, write_file: Callable[[str, str], Path]) -> None:
        path = write_file("dup.yml", "stages:\n  - name: A\n    steps: [ls]\n  - name: A\n    steps: [ls]\n")
        result = runner.invoke(app, ["validate", str(path)])
        assert result.exit_code == 2
        assert "Duplicate stage name" in result.stdout


class TestHistory:
    """Tests for ``labpipe history``."""

    def test_lists_runs(self, passing: Path, failing: Path) -> None:
        """Archived runs are listed with their status."""
        runner.invoke(app, ["run", str(passing)])
        runner.invoke(app, ["run", str(passing)])
        result = runner.invoke(app, ["history", "demo"])
        assert result.exit_code == 0
        assert "succeeded" in result.stdout

        runner.invoke(app, ["run", str(failing)])
        result = runner.invoke(app, ["history", "broken"])
        assert "failed" in result.stdout
        assert "Test" in result.stdout

    def test_show(self, passing: Path) -> None:
        """--show prints one record as JSON."""
        runner.invoke(app, ["run", str(passing)])
        result = runner.invoke(app, ["history", "demo", "--show", "1"])
        assert result.exit_code == 0
        assert json.loads(result.stdout)["run_id"] == 1

    def test_show_missing(self) -> None:
        result = runner.invoke(app, ["history", "demo", "--show", "99"])
        assert result.exit_code == 1

    def test_empty(self) -> None:
        result = runner.invoke(app, ["history", "demo"])
        assert result.exit_code == 0
        assert "No archived runs" in result.stdout

    def test_invalid_name(self) -> None:
        result = runner.invoke(app, ["history", "../etc"])
        assert result.exit_code == 2
