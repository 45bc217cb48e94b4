"""Tests for the labpipe.pipeline.environment module."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest

from labpipe.pipeline.environment import (
    BUILTIN_VARIABLES,
    builtin_variables,
    resolve_environment,
    resolve_templates,
    substitute,
)
from labpipe.pipeline.exceptions import UnresolvedVariableError
from labpipe.pipeline.models import RunMetadata


@pytest.fixture
def meta(tmp_path: Path) -> RunMetadata:
    """Run metadata with fixed values."""
    return RunMetadata(
        run_id=42,
        branch="main",
        started_at=datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc),
        workdir=tmp_path,
        job_name="docker-build",
    )


class TestBuiltinVariables:
    """Tests for builtin_variables."""

    def test_all_present(self, meta: RunMetadata, tmp_path: Path) -> None:
        """Every built-in variable is derived from metadata."""
        env = builtin_variables(meta)
        assert set(env) == set(BUILTIN_VARIABLES)
        assert env["BUILD_NUMBER"] == "42"
        assert env["BUILD_ID"] == "42"
        assert env["BRANCH_NAME"] == "main"
        assert env["BUILD_TIMESTAMP"] == "2024-05-01T12:00:00+00:00"
        assert env["WORKSPACE"] == str(tmp_path)
        assert env["JOB_NAME"] == "docker-build"

    def test_uuid_run_id(self, tmp_path: Path) -> None:
        """A string run id is used as-is."""
        env = builtin_variables(RunMetadata(run_id="3f2a9c", workdir=tmp_path))
        assert env["BUILD_NUMBER"] == "3f2a9c"


class TestResolveEnvironment:
    """Tests for resolve_environment."""

    def test_build_number_template(self, meta: RunMetadata) -> None:
        """IMAGE_TAG resolves from the build number."""
        env = resolve_environment({"IMAGE_NAME": "devsecops-app", "IMAGE_TAG": "${BUILD_NUMBER}"}, meta, {})
        assert env["IMAGE_TAG"] == "42"
        assert env["IMAGE_NAME"] == "devsecops-app"

    def test_earlier_entries_visible(self, meta: RunMetadata) -> None:
        """Later entries may reference earlier ones."""
        env = resolve_environment({"NAME": "app", "TAG": "${BUILD_NUMBER}", "IMAGE": "${NAME}:${TAG}"}, meta, {})
        assert env["IMAGE"] == "app:42"

    def test_fallback_then_default(self, meta: RunMetadata) -> None:
        """Fallback wins over the inline default, default fills the gap."""
        templates = {"REGISTRY": "${REGISTRY_HOST:-docker.io}", "USER": "${CI_USER:-nobody}"}
        env = resolve_environment(templates, meta, {"REGISTRY_HOST": "registry.local"})
        assert env["REGISTRY"] == "registry.local"
        assert env["USER"] == "nobody"

    def test_literal_values_untouched(self, meta: RunMetadata) -> None:
        """Values without placeholders are kept verbatim."""
        env = resolve_environment({"FORMAT": "{{.State.Status}}", "PRICE": "$5"}, meta, {})
        assert env["FORMAT"] == "{{.State.Status}}"
        assert env["PRICE"] == "$5"

    def test_escaped_placeholder(self, meta: RunMetadata) -> None:
        """$${NAME} yields a literal ${NAME}."""
        env = resolve_environment({"RAW": "$${BUILD_NUMBER}"}, meta, {})
        assert env["RAW"] == "${BUILD_NUMBER}"

    def test_unresolved_collects_all(self, meta: RunMetadata) -> None:
        """Every missing name is reported at once."""
        with pytest.raises(UnresolvedVariableError) as exc_info:
            resolve_environment({"A": "${MISSING_ONE}", "B": "${MISSING_TWO}-${MISSING_ONE}"}, meta, {})
        assert exc_info.value.names == ["MISSING_ONE", "MISSING_TWO"]

    def test_idempotent(self, meta: RunMetadata) -> None:
        """Resolving twice with the same inputs yields identical mappings."""
        templates = {"IMAGE_NAME": "app", "IMAGE_TAG": "${BUILD_NUMBER}", "REF": "${IMAGE_NAME}:${IMAGE_TAG}"}
        fallback = {"HOME": "/root"}
        assert resolve_environment(templates, meta, fallback) == resolve_environment(templates, meta, fallback)

    def test_os_environ_fallback(self, meta: RunMetadata, monkeypatch: pytest.MonkeyPatch) -> None:
        """os.environ is the default fallback."""
        monkeypatch.setenv("LABPIPE_TEST_TOKEN", "s3cret")
        env = resolve_environment({"TOKEN": "${LABPIPE_TEST_TOKEN}"}, meta)
        assert env["TOKEN"] == "s3cret"

    def test_resolve_templates_layers(self) -> None:
        """resolve_templates layers a block over a resolved base."""
        env = resolve_templates({"URL": "http://${HOST}:3000"}, {"HOST": "localhost"}, {})
        assert env == {"HOST": "localhost", "URL": "http://localhost:3000"}


class TestSubstitute:
    """Tests for substitute."""

    def test_known_names(self) -> None:
        """Known placeholders are expanded."""
        assert substitute("docker build -t ${IMAGE}:${TAG} .", {"IMAGE": "app", "TAG": "7"}) == "docker build -t app:7 ."

    def test_unknown_names_left_for_shell(self) -> None:
        """Unknown placeholders stay for the shell."""
        assert substitute("echo ${HOME} ${X:-d}", {}) == "echo ${HOME} ${X:-d}"

    def test_shell_syntax_untouched(self) -> None:
        """Command substitution and plain $VAR are not placeholders."""
        script = "echo $(date -u +'%Y') $USER"
        assert substitute(script, {"USER": "x"}) == script
