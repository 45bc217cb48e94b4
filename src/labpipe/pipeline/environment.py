"""Environment resolution and placeholder substitution.

Templates use ``${NAME}`` and ``${NAME:-default}`` placeholders. The
pipeline ``environment`` block is resolved once per run, left to right,
so later entries may reference earlier ones::

    environment:
      IMAGE_NAME: devsecops-app
      IMAGE_TAG: "${BUILD_NUMBER}"
      IMAGE: "${IMAGE_NAME}:${IMAGE_TAG}"

Lookup order for a placeholder: built-in run variables and entries resolved
earlier in the block, then the process environment fallback, then the
inline default. Anything still missing raises ``UnresolvedVariableError``
once the whole block has been processed.
"""

from __future__ import annotations

import os
import re
from collections.abc import Callable, Mapping

from labpipe.pipeline.exceptions import UnresolvedVariableError
from labpipe.pipeline.models import RunMetadata

# $${NAME} is an escape for a literal ${NAME}
_PLACEHOLDER_PATTERN = re.compile(r"(\$?)\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")

#: Variables derived from run metadata, available to every template.
BUILTIN_VARIABLES = (
    "BUILD_NUMBER",
    "BUILD_ID",
    "BRANCH_NAME",
    "BUILD_TIMESTAMP",
    "WORKSPACE",
    "JOB_NAME",
)


def builtin_variables(metadata: RunMetadata) -> dict[str, str]:
    """Return the built-in variables of a run.

    Examples:
        >>> from pathlib import Path
        >>> env = builtin_variables(RunMetadata(run_id=42, branch="main", workdir=Path("/ws")))
        >>> env["BUILD_NUMBER"], env["BRANCH_NAME"], env["WORKSPACE"]
        ('42', 'main', '/ws')
    """
    run_id = str(metadata.run_id)
    return {
        "BUILD_NUMBER": run_id,
        "BUILD_ID": run_id,
        "BRANCH_NAME": metadata.branch,
        "BUILD_TIMESTAMP": metadata.started_at.isoformat(timespec="seconds"),
        "WORKSPACE": str(metadata.workdir),
        "JOB_NAME": metadata.job_name,
    }


def _expand(template: str, lookup: Callable[[str, str | None], str | None]) -> str:
    def replacer(match: re.Match[str]) -> str:
        escape, name, default = match.groups()
        if escape:
            return match.group(0)[1:]
        value = lookup(name, default)
        return match.group(0) if value is None else value

    return _PLACEHOLDER_PATTERN.sub(replacer, template)


def resolve_templates(
    templates: Mapping[str, str],
    base: Mapping[str, str],
    fallback: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Resolve a block of templates on top of an already resolved mapping.

    Args:
        templates: Name to template string, resolved in iteration order.
        base: Already resolved variables (consulted first).
        fallback: Process-level fallback, ``os.environ`` when None.

    Returns:
        A new mapping containing ``base`` plus every resolved template.

    Raises:
        UnresolvedVariableError: If placeholders remain without a value.
    """
    env_fallback: Mapping[str, str] = os.environ if fallback is None else fallback
    resolved = dict(base)
    missing: list[str] = []

    def lookup(name: str, default: str | None) -> str | None:
        if name in resolved:
            return resolved[name]
        if name in env_fallback:
            return env_fallback[name]
        if default is not None:
            return default
        missing.append(name)
        return None

    for name, template in templates.items():
        resolved[name] = _expand(template, lookup)

    if missing:
        raise UnresolvedVariableError(missing)
    return resolved


def resolve_environment(
    global_env: Mapping[str, str],
    metadata: RunMetadata,
    fallback: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Build the effective environment of a run.

    Pure function of its inputs: resolving the same block with the same
    metadata and fallback always yields an identical mapping.

    Args:
        global_env: The pipeline ``environment`` block.
        metadata: Run metadata providing the built-in variables.
        fallback: Process-level fallback, ``os.environ`` when None.

    Returns:
        Built-in variables plus the resolved block.

    Raises:
        UnresolvedVariableError: If a placeholder has no value.

    Examples:
        >>> meta = RunMetadata(run_id=7)
        >>> env = resolve_environment({"TAG": "${BUILD_NUMBER}", "IMAGE": "app:${TAG}"}, meta, {})
        >>> env["IMAGE"]
        'app:7'
    """
    return resolve_templates(global_env, builtin_variables(metadata), fallback)


def substitute(template: str, environment: Mapping[str, str]) -> str:
    """Expand placeholders whose names are known in ``environment``.

    Unknown placeholders are left untouched so the shell can expand them
    from the exported process environment. ``$${NAME}`` yields ``${NAME}``.

    Examples:
        >>> substitute("docker build -t ${IMAGE}:${TAG} .", {"IMAGE": "app", "TAG": "3"})
        'docker build -t app:3 .'
        >>> substitute("echo ${HOME_DIR}", {})
        'echo ${HOME_DIR}'
    """
    return _expand(template, lambda name, _default: environment.get(name))


__all__ = [
    "BUILTIN_VARIABLES",
    "builtin_variables",
    "resolve_environment",
    "resolve_templates",
    "substitute",
]
