"""Stage ``when`` guards.

Guards are pure predicates evaluated against the run environment and
metadata. They never touch the filesystem or run commands, so a guard
can be evaluated any number of times with the same outcome.

Supported document encodings::

    when: {branch: "main"}
    when: {branch: "release/*"}
    when: {environment: {name: DEPLOY, value: "true"}}
    when: {not: {branch: "main"}}
    when: {allOf: [{branch: "main"}, {environment: {name: CI, value: "1"}}]}
    when: {anyOf: [...]}
    when: 'branch == "main"'
"""

from __future__ import annotations

import fnmatch
import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, Union, runtime_checkable

from labpipe.pipeline.exceptions import PipelineConfigError

if TYPE_CHECKING:
    from labpipe.pipeline.models import RunMetadata

_EXPRESSION_PATTERN = re.compile(
    r"""^\s*(?P<lhs>branch|env\.[A-Za-z_][A-Za-z0-9_]*)\s*(?P<op>==|!=)\s*(?P<q>["']?)(?P<rhs>[^"']*)(?P=q)\s*$"""
)


@runtime_checkable
class Guard(Protocol):
    """Interface shared by every ``when`` guard."""

    def evaluate(self, environment: Mapping[str, str], metadata: RunMetadata) -> bool:
        """Return True if the guarded stage should run."""
        ...

    def describe(self) -> str:
        """Return a short human-readable form for logs."""
        ...


@dataclass(frozen=True, slots=True)
class BranchGuard:
    """Match the run branch against a glob pattern.

    Examples:
        >>> from labpipe.pipeline.models import RunMetadata
        >>> BranchGuard("main").evaluate({}, RunMetadata(run_id=1, branch="develop"))
        False
    """

    pattern: str

    def evaluate(self, environment: Mapping[str, str], metadata: RunMetadata) -> bool:
        return fnmatch.fnmatchcase(metadata.branch, self.pattern)

    def describe(self) -> str:
        return f"branch == {self.pattern!r}"


@dataclass(frozen=True, slots=True)
class EnvironmentGuard:
    """Compare a resolved environment variable with a value."""

    name: str
    value: str

    def evaluate(self, environment: Mapping[str, str], metadata: RunMetadata) -> bool:
        return environment.get(self.name) == self.value

    def describe(self) -> str:
        return f"env.{self.name} == {self.value!r}"


@dataclass(frozen=True, slots=True)
class NotGuard:
    """Negate another guard."""

    guard: WhenGuard

    def evaluate(self, environment: Mapping[str, str], metadata: RunMetadata) -> bool:
        return not self.guard.evaluate(environment, metadata)

    def describe(self) -> str:
        return f"not ({self.guard.describe()})"


@dataclass(frozen=True, slots=True)
class AllOfGuard:
    """True when every nested guard is true."""

    guards: tuple[WhenGuard, ...]

    def evaluate(self, environment: Mapping[str, str], metadata: RunMetadata) -> bool:
        return all(g.evaluate(environment, metadata) for g in self.guards)

    def describe(self) -> str:
        return " and ".join(f"({g.describe()})" for g in self.guards)


@dataclass(frozen=True, slots=True)
class AnyOfGuard:
    """True when at least one nested guard is true."""

    guards: tuple[WhenGuard, ...]

    def evaluate(self, environment: Mapping[str, str], metadata: RunMetadata) -> bool:
        return any(g.evaluate(environment, metadata) for g in self.guards)

    def describe(self) -> str:
        return " or ".join(f"({g.describe()})" for g in self.guards)


WhenGuard = Union[BranchGuard, EnvironmentGuard, NotGuard, AllOfGuard, AnyOfGuard]


def parse_guard_expression(expression: str) -> WhenGuard:
    """Parse the ``branch == "main"`` / ``env.NAME != "x"`` shorthand.

    Raises:
        PipelineConfigError: If the expression is not recognised.

    Examples:
        >>> parse_guard_expression('branch == "main"')
        BranchGuard(pattern='main')
        >>> parse_guard_expression("env.DEPLOY != 'no'")
        NotGuard(guard=EnvironmentGuard(name='DEPLOY', value='no'))
    """
    match = _EXPRESSION_PATTERN.match(expression)
    if match is None:
        raise PipelineConfigError(f"Unsupported when expression: {expression!r}")
    lhs, rhs = match.group("lhs"), match.group("rhs")
    if not match.group("q"):
        rhs = rhs.strip()
    guard: WhenGuard = BranchGuard(rhs) if lhs == "branch" else EnvironmentGuard(lhs[4:], rhs)
    if match.group("op") == "!=":
        return NotGuard(guard)
    return guard


def parse_guard(data: Any) -> WhenGuard:
    """Build a guard from its document encoding.

    Args:
        data: A mapping with exactly one guard key, or an expression string.

    Returns:
        The parsed guard.

    Raises:
        PipelineConfigError: If the encoding is invalid.
    """
    if isinstance(data, str):
        return parse_guard_expression(data)
    if not isinstance(data, Mapping) or len(data) != 1:
        raise PipelineConfigError(f"'when' must be an expression string or a mapping with one key, got {data!r}")

    key, value = next(iter(data.items()))
    if key == "branch":
        if not isinstance(value, str) or not value:
            raise PipelineConfigError("'when.branch' must be a non-empty string")
        return BranchGuard(value)
    if key == "environment":
        if not isinstance(value, Mapping) or "name" not in value or "value" not in value:
            raise PipelineConfigError("'when.environment' requires 'name' and 'value'")
        return EnvironmentGuard(str(value["name"]), str(value["value"]))
    if key == "not":
        return NotGuard(parse_guard(value))
    if key in ("allOf", "anyOf"):
        if not isinstance(value, list) or not value:
            raise PipelineConfigError(f"'when.{key}' must be a non-empty list")
        guards = tuple(parse_guard(item) for item in value)
        return AllOfGuard(guards) if key == "allOf" else AnyOfGuard(guards)
    raise PipelineConfigError(f"Unknown when condition {key!r}")


__all__ = [
    "AllOfGuard",
    "AnyOfGuard",
    "BranchGuard",
    "EnvironmentGuard",
    "Guard",
    "NotGuard",
    "WhenGuard",
    "parse_guard",
    "parse_guard_expression",
]
