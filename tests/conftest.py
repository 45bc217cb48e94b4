"""Shared pytest fixtures for the labpipe test suite."""

from __future__ import annotations

# Disable Rich colors and force wide terminal BEFORE any imports
# Rich checks these at import time
import os

os.environ["NO_COLOR"] = "1"
os.environ["TERM"] = "dumb"
os.environ["FORCE_COLOR"] = "0"
os.environ["COLUMNS"] = "200"  # Prevent text wrapping in CLI output

from collections.abc import Callable, Generator
from pathlib import Path
from typing import Any

import pytest

import labpipe.config as _config_module
from labpipe.pipeline.executor import StepExecutor
from labpipe.pipeline.models import RunContext, RunMetadata

# pylint: disable=redefined-outer-name


@pytest.fixture
def executor() -> StepExecutor:
    """Return a step executor with the default handlers."""
    return StepExecutor()


@pytest.fixture
def make_ctx(tmp_path: Path) -> Callable[..., RunContext]:
    """Build run contexts rooted in the pytest temp directory."""

    def _make(
        environment: dict[str, str] | None = None,
        *,
        branch: str = "main",
        run_id: int | str = 1,
        dry_run: bool = False,
    ) -> RunContext:
        meta = RunMetadata(run_id=run_id, branch=branch, workdir=tmp_path, job_name="test")
        return RunContext(
            metadata=meta,
            environment=dict(environment or {}),
            workdir=tmp_path,
            dry_run=dry_run,
        )

    return _make


@pytest.fixture
def ctx(make_ctx: Callable[..., RunContext]) -> RunContext:
    """Return a plain run context on branch ``main``."""
    return make_ctx()


@pytest.fixture
def write_file(tmp_path: Path) -> Callable[[str, str], Path]:
    """Write a text file into the pytest temp directory."""

    def _write(name: str, content: str) -> Path:
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        return path

    return _write


@pytest.fixture(autouse=True)
def reset_config_cache(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    """Isolate tests from a user configuration and from each other."""
    monkeypatch.delenv(_config_module.CONFIG_ENV_VAR, raising=False)
    _config_module.reset_config()
    yield
    _config_module.reset_config()


@pytest.fixture
def sample_document() -> dict[str, Any]:
    """Return a small valid pipeline document."""
    return {
        "name": "sample",
        "environment": {"IMAGE_NAME": "app", "IMAGE_TAG": "${BUILD_NUMBER}"},
        "stages": [
            {"name": "Build", "steps": [{"sh": "echo build ${IMAGE_NAME}:${IMAGE_TAG}"}]},
            {"name": "Test", "steps": [{"echo": "testing"}, {"sh": "echo test"}]},
        ],
        "post": {"always": [{"echo": "cleanup"}]},
    }
