"""Pipeline document parsing.

Documents are YAML (or JSON) mappings::

    name: docker-build
    environment:
      IMAGE_NAME: devsecops-app
      IMAGE_TAG: "${BUILD_NUMBER}"
    options:
      timeout: {time: 30, unit: MINUTES}
      buildDiscarder: {numToKeep: 10}
    stages:
      - name: Build Docker Image
        steps:
          - type: dir
            path: apps/nodejs-app
            steps:
              - sh: docker build --tag ${IMAGE_NAME}:${IMAGE_TAG} .
      - name: Push to Registry
        when: {branch: main}
        steps:
          - echo: Push to registry skipped
    post:
      always:
        - sh: docker image prune -f
      failure:
        - echo: Docker build pipeline failed!

Step encodings: ``{type: shell, script}``, ``{type: log, message}``,
``{type: dir, path, steps}``, ``{type: retry, count, delay, steps}``,
``{type: sleep, seconds}``, ``{type: http, url, expect_status, timeout}``,
the shorthands ``{sh: ...}``, ``{echo: ...}``, ``{dir: ..., steps: [...]}``,
``{retry: 3, steps: [...]}``, ``{sleep: 5}``, ``{http: url}``, and a bare
string for a shell script.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

from labpipe.pipeline.exceptions import PipelineConfigError
from labpipe.pipeline.guards import parse_guard
from labpipe.pipeline.models import (
    HttpCheckStep,
    LogStep,
    Options,
    PipelineDocument,
    PostHooks,
    RetryStep,
    ScopedDirStep,
    ShellStep,
    SleepStep,
    StageDef,
    StepDef,
)

# shorthand key -> (step type, field receiving the shorthand value)
_SHORTHANDS: dict[str, tuple[str, str]] = {
    "sh": ("shell", "script"),
    "shell": ("shell", "script"),
    "echo": ("log", "message"),
    "log": ("log", "message"),
    "dir": ("dir", "path"),
    "retry": ("retry", "count"),
    "sleep": ("sleep", "seconds"),
    "http": ("http", "url"),
}

_TIME_UNITS = {
    "SECONDS": 1.0,
    "MINUTES": 60.0,
    "HOURS": 3600.0,
}

_POST_CONDITIONS = ("always", "success", "failure")


# ============================================================================
# Scalar helpers
# ============================================================================


def _float(value: Any, where: str, field_name: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise PipelineConfigError(f"{where}: invalid {field_name} {value!r}") from None


def _int(value: Any, where: str, field_name: str) -> int:
    if isinstance(value, bool):
        raise PipelineConfigError(f"{where}: invalid {field_name} {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise PipelineConfigError(f"{where}: invalid {field_name} {value!r}") from None


def _str(value: Any, where: str, field_name: str) -> str:
    if not isinstance(value, str):
        raise PipelineConfigError(f"{where}: '{field_name}' must be a string")
    return value


def _mapping(value: Any, where: str) -> dict[str, Any]:
    if not isinstance(value, Mapping):
        raise PipelineConfigError(f"{where} must be a mapping, got {type(value).__name__}")
    return dict(value)


def _parse_environment(raw: Any, where: str) -> dict[str, str]:
    """Coerce YAML scalars (ints, booleans) to template strings."""
    if raw is None:
        return {}
    env: dict[str, str] = {}
    for key, value in _mapping(raw, f"{where} 'environment'").items():
        if isinstance(value, bool):
            env[str(key)] = "true" if value else "false"
        elif isinstance(value, (str, int, float)):
            env[str(key)] = str(value)
        else:
            raise PipelineConfigError(f"{where}: environment variable {key!r} must be a scalar")
    return env


# ============================================================================
# Steps
# ============================================================================


def _normalize_step(data: Any, where: str) -> dict[str, Any]:
    if isinstance(data, str):
        return {"type": "shell", "script": data}
    step = _mapping(data, where)
    if "type" not in step:
        for key, (step_type, field_name) in _SHORTHANDS.items():
            if key in step:
                step = {k: v for k, v in step.items() if k != key}
                step.update({"type": step_type, field_name: data[key]})
                break
        else:
            raise PipelineConfigError(f"{where}: missing step 'type'")
    return step


def _parse_steps(raw: Any, where: str) -> tuple[StepDef, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise PipelineConfigError(f"{where}: 'steps' must be a list")
    return tuple(parse_step(item, f"{where} step {i}") for i, item in enumerate(raw))


def parse_step(data: Any, where: str = "step") -> StepDef:
    """Parse one step from its document encoding.

    Args:
        data: Step mapping or bare shell script string.
        where: Location used in error messages.

    Returns:
        The parsed step definition.

    Raises:
        PipelineConfigError: If the step is invalid.

    Examples:
        >>> parse_step({"sh": "make test"})
        ShellStep(script='make test', timeout=None, name=None)
        >>> parse_step({"echo": "Deploying..."})
        LogStep(message='Deploying...')
    """
    step = _normalize_step(data, where)
    step_type = step["type"]

    try:
        if step_type == "shell":
            script = step.get("script", step.get("command"))
            timeout = step.get("timeout")
            return ShellStep(
                script=_str(script, where, "script"),
                timeout=None if timeout is None else _float(timeout, where, "timeout"),
                name=step.get("name") or step.get("label"),
            )
        if step_type == "log":
            return LogStep(message=str(step.get("message", "")))
        if step_type == "dir":
            return ScopedDirStep(
                path=_str(step.get("path"), where, "path"),
                steps=_parse_steps(step.get("steps"), where),
            )
        if step_type == "retry":
            return RetryStep(
                count=_int(step.get("count"), where, "count"),
                delay=_float(step.get("delay", 0.0), where, "delay"),
                steps=_parse_steps(step.get("steps"), where),
            )
        if step_type == "sleep":
            return SleepStep(seconds=_float(step.get("seconds"), where, "seconds"))
        if step_type == "http":
            return HttpCheckStep(
                url=_str(step.get("url"), where, "url"),
                expect_status=_int(step.get("expect_status", 200), where, "expect_status"),
                timeout=_float(step.get("timeout", 5.0), where, "timeout"),
            )
    except PipelineConfigError as exc:
        if str(exc).startswith(where):
            raise
        raise PipelineConfigError(f"{where}: {exc}") from exc

    raise PipelineConfigError(f"{where}: unknown step type {step_type!r}")


# ============================================================================
# Stages, options, hooks
# ============================================================================


def _parse_parallel(raw: Any, where: str) -> tuple[StageDef, ...]:
    if isinstance(raw, Mapping):
        # Jenkins style: branch name -> branch body
        items = [{"name": name, **_mapping(body, f"{where} branch {name!r}")} for name, body in raw.items()]
    elif isinstance(raw, list):
        items = raw
    else:
        raise PipelineConfigError(f"{where}: 'parallel' must be a list or a mapping")
    return tuple(parse_stage(item, f"{where} branch {i}") for i, item in enumerate(items))


def parse_stage(data: Any, where: str = "stage") -> StageDef:
    """Parse one stage.

    Raises:
        PipelineConfigError: If the stage is invalid.
    """
    stage = _mapping(data, where)
    name = stage.get("name")
    if not name:
        raise PipelineConfigError(f"{where}: missing 'name'")
    where = f"stage {name!r}"

    when = stage.get("when")
    try:
        return StageDef(
            name=str(name),
            steps=_parse_steps(stage.get("steps"), where),
            when=None if when is None else parse_guard(when),
            parallel=_parse_parallel(stage["parallel"], where) if "parallel" in stage else (),
            environment=_parse_environment(stage.get("environment"), where),
            fail_fast=bool(stage.get("fail_fast", stage.get("failFast", False))),
        )
    except PipelineConfigError as exc:
        if str(exc).startswith(where) or str(exc).startswith("Stage"):
            raise
        raise PipelineConfigError(f"{where}: {exc}") from exc


def _parse_timeout(raw: Any) -> float | None:
    if raw is None:
        return None
    if isinstance(raw, Mapping):
        unit = str(raw.get("unit", "MINUTES")).upper()
        if unit not in _TIME_UNITS:
            raise PipelineConfigError(f"options: invalid timeout unit {unit!r}")
        return _float(raw.get("time"), "options", "timeout time") * _TIME_UNITS[unit]
    return _float(raw, "options", "timeout")


def parse_options(data: Any) -> Options:
    """Parse the ``options`` block.

    ``timeout`` is seconds or ``{time, unit}``; ``retain_runs`` may also be
    given as ``buildDiscarder: {numToKeep: N}``; ``disable_concurrent`` as
    ``disableConcurrentBuilds``.
    """
    if data is None:
        return Options()
    options = _mapping(data, "options")

    retain = options.get("retain_runs")
    discarder = options.get("buildDiscarder")
    if retain is None and isinstance(discarder, Mapping):
        retain = discarder.get("numToKeep")

    return Options(
        timeout=_parse_timeout(options.get("timeout")),
        retain_runs=None if retain is None else _int(retain, "options", "retain_runs"),
        disable_concurrent=bool(options.get("disable_concurrent", options.get("disableConcurrentBuilds", False))),
    )


def parse_post(data: Any) -> PostHooks:
    """Parse the ``post`` block (``always``, ``success``, ``failure``)."""
    if data is None:
        return PostHooks()
    post = _mapping(data, "post")
    unknown = sorted(set(post) - set(_POST_CONDITIONS))
    if unknown:
        raise PipelineConfigError(f"post: unknown condition(s) {', '.join(unknown)}")
    return PostHooks(**{cond: _parse_steps(post.get(cond), f"post {cond}") for cond in _POST_CONDITIONS})


# ============================================================================
# Documents
# ============================================================================


def parse_document(data: Any, name: str | None = None) -> PipelineDocument:
    """Parse a pipeline document from a mapping.

    Args:
        data: Raw document mapping.
        name: Pipeline name used when the document has no ``name`` key.

    Returns:
        Validated PipelineDocument.

    Raises:
        PipelineConfigError: If the document is invalid.
    """
    doc = _mapping(data, "Pipeline document")
    doc_name = doc.get("name") or name
    if not doc_name:
        raise PipelineConfigError("Pipeline document has no 'name'")

    raw_stages = doc.get("stages")
    if not isinstance(raw_stages, list):
        raise PipelineConfigError(f"Pipeline '{doc_name}': 'stages' must be a list")

    return PipelineDocument(
        name=str(doc_name),
        stages=tuple(parse_stage(s, f"stage {i}") for i, s in enumerate(raw_stages)),
        environment=_parse_environment(doc.get("environment"), f"Pipeline '{doc_name}'"),
        options=parse_options(doc.get("options")),
        post=parse_post(doc.get("post")),
    )


def load_document(path: str | Path) -> PipelineDocument:
    """Load a document from a YAML or ``.json`` file.

    The file stem is used as pipeline name when the document has none.

    Raises:
        PipelineConfigError: If the file cannot be read or parsed.
    """
    file_path = Path(path)
    try:
        content = file_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise PipelineConfigError(f"Cannot read pipeline file {file_path}: {exc}") from exc

    try:
        data = json.loads(content) if file_path.suffix == ".json" else yaml.safe_load(content)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise PipelineConfigError(f"Invalid pipeline file {file_path}: {exc}") from exc

    return parse_document(data, name=file_path.stem)


def load_document_from_config(name: str, config: Mapping[str, Any] | None = None) -> PipelineDocument:
    """Load ``pipeline.pipelines.<name>`` from ``labpipe.conf.yml``.

    Args:
        name: Pipeline name, also used as document name when it has none.
        config: Loaded configuration; the cached ``get_config()`` when None.

    Raises:
        PipelineConfigError: If the pipeline is not found or invalid.
    """
    if config is None:
        from labpipe.config import get_config  # pylint: disable=import-outside-toplevel

        config = get_config()

    pipelines = config["pipeline"]["pipelines"] or {}
    if name not in pipelines:
        available = ", ".join(sorted(pipelines.keys())) or "(none)"
        raise PipelineConfigError(f"Pipeline '{name}' not found in config. Available: {available}")

    raw = pipelines[name]
    if not isinstance(raw, Mapping):
        raise PipelineConfigError(f"Pipeline '{name}' must be a mapping, got {type(raw).__name__}")
    data = raw.to_dict() if hasattr(raw, "to_dict") else dict(raw)
    return parse_document(data, name=name)


__all__ = [
    "load_document",
    "load_document_from_config",
    "parse_document",
    "parse_options",
    "parse_post",
    "parse_stage",
    "parse_step",
]
