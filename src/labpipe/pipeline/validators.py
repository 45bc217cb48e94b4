"""Input validation for labpipe.pipeline module.

This module provides validation functions for pipeline documents,
implementing deep defense against malformed or oversized input.
"""

from __future__ import annotations

import re
from collections.abc import Mapping

from labpipe.pipeline.exceptions import PipelineConfigError

# ============================================================================
# Constants - Hard Limits
# ============================================================================

#: Maximum stage or step label length.
MAX_STAGE_NAME_LENGTH = 128

#: Pattern for valid stage names ("Build Docker Image", "SAST - Static Analysis").
STAGE_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9 _.:/()-]*$")

#: Pattern for valid pipeline names (used as history directory names).
PIPELINE_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")

#: Maximum pipeline name length.
MAX_PIPELINE_NAME_LENGTH = 64

#: Maximum number of stages in a single pipeline.
MAX_PIPELINE_STAGES = 100

#: Maximum number of parallel branches in a single stage.
MAX_PARALLEL_BRANCHES = 16

#: Maximum nesting depth of dir/retry steps.
MAX_STEP_NESTING = 8

#: Maximum number of attempts of a retry step.
MAX_RETRY_COUNT = 100

#: Pattern for valid environment variable names.
ENV_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

#: Maximum length of a shell script or log message.
MAX_SCRIPT_LENGTH = 65536

#: Maximum length of a directory path.
MAX_PATH_LENGTH = 4096


# ============================================================================
# Validation Functions
# ============================================================================


def validate_pipeline_name(name: str) -> str:
    """Validate and return a pipeline name.

    Args:
        name: Pipeline name to validate.

    Returns:
        The validated name (unchanged).

    Raises:
        PipelineConfigError: If name is invalid.

    Examples:
        >>> validate_pipeline_name("docker-build")
        'docker-build'
    """
    if not name:
        raise PipelineConfigError("Pipeline name cannot be empty")
    if len(name) > MAX_PIPELINE_NAME_LENGTH:
        raise PipelineConfigError(f"Pipeline name too long (max {MAX_PIPELINE_NAME_LENGTH} chars)")
    if not PIPELINE_NAME_PATTERN.match(name):
        raise PipelineConfigError(
            f"Invalid pipeline name {name!r}: use letters, digits, dot, underscore or hyphen"
        )
    return name


def validate_stage_name(name: str) -> str:
    """Validate and return a stage name.

    Rules:
    - Cannot be empty
    - Max 128 characters (hard limit)
    - Must start with a letter or digit
    - Letters, digits, spaces and ``_ . : / ( ) -`` allowed

    Args:
        name: Stage name to validate.

    Returns:
        The validated stage name (unchanged).

    Raises:
        PipelineConfigError: If name is invalid.

    Examples:
        >>> validate_stage_name("Build Docker Image")
        'Build Docker Image'
        >>> validate_stage_name("")
        Traceback (most recent call last):
            ...
        labpipe.pipeline.exceptions.PipelineConfigError: Stage name cannot be empty
    """
    if not name:
        raise PipelineConfigError("Stage name cannot be empty")
    if len(name) > MAX_STAGE_NAME_LENGTH:
        raise PipelineConfigError(f"Stage name too long (max {MAX_STAGE_NAME_LENGTH} chars)")
    if not STAGE_NAME_PATTERN.match(name):
        raise PipelineConfigError(f"Invalid stage name {name!r}")
    return name


def validate_env(env: Mapping[str, object]) -> Mapping[str, object]:
    """Validate environment variable names and template values.

    Args:
        env: Mapping of variable name to template string.

    Returns:
        The validated mapping (unchanged).

    Raises:
        PipelineConfigError: If a name is invalid or a value is not a string.

    Examples:
        >>> validate_env({"IMAGE_TAG": "${BUILD_NUMBER}"})
        {'IMAGE_TAG': '${BUILD_NUMBER}'}
    """
    for key, value in env.items():
        if not isinstance(key, str) or not ENV_NAME_PATTERN.match(key):
            raise PipelineConfigError(f"Invalid environment variable name: {key!r}")
        if not isinstance(value, str):
            raise PipelineConfigError(f"Environment variable {key!r} must be a string, got {type(value).__name__}")
    return env


def validate_script(script: str, *, what: str = "Shell script") -> str:
    """Validate a shell script or log message.

    Args:
        script: Text to validate.
        what: Label used in error messages.

    Returns:
        The validated text (unchanged).

    Raises:
        PipelineConfigError: If text is empty, too long or contains NUL bytes.
    """
    if not script or not script.strip():
        raise PipelineConfigError(f"{what} cannot be empty")
    if len(script) > MAX_SCRIPT_LENGTH:
        raise PipelineConfigError(f"{what} too long (max {MAX_SCRIPT_LENGTH} chars)")
    if "\x00" in script:
        raise PipelineConfigError(f"{what} contains a NUL byte")
    return script


def validate_dir_path(path: str) -> str:
    """Validate the path of a scoped directory step.

    Args:
        path: Relative or absolute directory path.

    Returns:
        The validated path (unchanged).

    Raises:
        PipelineConfigError: If path is empty, too long or contains NUL bytes.
    """
    if not path:
        raise PipelineConfigError("Directory path cannot be empty")
    if len(path) > MAX_PATH_LENGTH:
        raise PipelineConfigError(f"Directory path too long (max {MAX_PATH_LENGTH} chars)")
    if "\x00" in path:
        raise PipelineConfigError("Directory path contains a NUL byte")
    return path


def validate_timeout(value: float | None, *, what: str = "timeout") -> float | None:
    """Validate an optional positive duration in seconds.

    Raises:
        PipelineConfigError: If value is zero or negative.
    """
    if value is not None and value <= 0:
        raise PipelineConfigError(f"{what} must be positive, got {value}")
    return value


def validate_stage_count(count: int) -> None:
    """Validate the number of stages in a document.

    Raises:
        PipelineConfigError: If there are no stages or too many.
    """
    if count == 0:
        raise PipelineConfigError("Pipeline must have at least one stage")
    if count > MAX_PIPELINE_STAGES:
        raise PipelineConfigError(f"Too many stages (max {MAX_PIPELINE_STAGES})")


__all__ = [
    "ENV_NAME_PATTERN",
    "MAX_PARALLEL_BRANCHES",
    "MAX_PATH_LENGTH",
    "MAX_PIPELINE_NAME_LENGTH",
    "MAX_PIPELINE_STAGES",
    "MAX_RETRY_COUNT",
    "MAX_SCRIPT_LENGTH",
    "MAX_STAGE_NAME_LENGTH",
    "MAX_STEP_NESTING",
    "PIPELINE_NAME_PATTERN",
    "STAGE_NAME_PATTERN",
    "validate_dir_path",
    "validate_env",
    "validate_pipeline_name",
    "validate_script",
    "validate_stage_count",
    "validate_stage_name",
    "validate_timeout",
]
