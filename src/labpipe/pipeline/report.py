"""Run record rendering: plain dicts, JSON, and rich console output.

The dict form is what gets archived by ``RunHistory`` and printed by
``labpipe run --json``. Captured output is truncated to keep records small.
"""

from __future__ import annotations

import json
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from labpipe.pipeline.models import (
    HookResult,
    RunRecord,
    StageResult,
    StageStatus,
    StepResult,
    StepStatus,
)

#: Default maximum number of characters kept per captured stream.
DEFAULT_OUTPUT_LIMIT = 4000

_STAGE_STYLES = {
    StageStatus.SUCCEEDED: "green",
    StageStatus.FAILED: "red",
    StageStatus.SKIPPED: "dim",
}

_STEP_STYLES = {
    StepStatus.SUCCESS: "green",
    StepStatus.FAILED: "red",
    StepStatus.TIMEOUT: "magenta",
    StepStatus.SKIPPED: "dim",
}


def truncate(text: str, limit: int = DEFAULT_OUTPUT_LIMIT) -> str:
    """Keep the tail of ``text``, where failures usually show up.

    Examples:
        >>> truncate("abcdef", 3)
        '... [truncated 3 chars]\\ndef'
        >>> truncate("abc", 10)
        'abc'
    """
    if limit <= 0 or len(text) <= limit:
        return text
    return f"... [truncated {len(text) - limit} chars]\n{text[-limit:]}"


def step_to_dict(result: StepResult, output_limit: int = DEFAULT_OUTPUT_LIMIT) -> dict[str, Any]:
    """Convert a step result to a JSON-serializable dict."""
    data: dict[str, Any] = {
        "name": result.name,
        "kind": result.kind.value,
        "status": result.status.value,
        "return_code": result.return_code,
        "duration": round(result.duration, 3),
        "stdout": truncate(result.stdout, output_limit),
        "stderr": truncate(result.stderr, output_limit),
        "error": result.error,
    }
    if result.children:
        data["children"] = [step_to_dict(c, output_limit) for c in result.children]
    return data


def stage_to_dict(result: StageResult, output_limit: int = DEFAULT_OUTPUT_LIMIT) -> dict[str, Any]:
    """Convert a stage result to a JSON-serializable dict."""
    data: dict[str, Any] = {
        "name": result.name,
        "status": result.status.value,
        "started_at": result.started_at.isoformat() if result.started_at else None,
        "finished_at": result.finished_at.isoformat() if result.finished_at else None,
        "duration": round(result.duration, 3),
        "error": result.error,
        "steps": [step_to_dict(s, output_limit) for s in result.steps],
    }
    if result.branches:
        data["branches"] = [stage_to_dict(b, output_limit) for b in result.branches]
    return data


def hook_to_dict(result: HookResult, output_limit: int = DEFAULT_OUTPUT_LIMIT) -> dict[str, Any]:
    """Convert a hook result to a JSON-serializable dict."""
    return {
        "condition": result.condition.value,
        "ok": result.ok,
        "steps": [step_to_dict(s, output_limit) for s in result.steps],
    }


def record_to_dict(record: RunRecord, output_limit: int = DEFAULT_OUTPUT_LIMIT) -> dict[str, Any]:
    """Convert a run record to a JSON-serializable dict.

    Args:
        record: Run record.
        output_limit: Maximum characters kept per stdout/stderr stream.
    """
    return {
        "pipeline": record.pipeline,
        "run_id": record.run_id,
        "branch": record.branch,
        "status": record.status.value,
        "started_at": record.started_at.isoformat() if record.started_at else None,
        "finished_at": record.finished_at.isoformat() if record.finished_at else None,
        "duration": round(record.duration, 3),
        "error": record.error,
        "timed_out": record.timed_out,
        "failed_stage": record.failed_stage,
        "failed_step": record.failed_step,
        "stages": [stage_to_dict(s, output_limit) for s in record.stages],
        "hooks": [hook_to_dict(h, output_limit) for h in record.hooks],
    }


def record_to_json(record: RunRecord, output_limit: int = DEFAULT_OUTPUT_LIMIT, indent: int | None = 2) -> str:
    """Serialize a run record to JSON."""
    return json.dumps(record_to_dict(record, output_limit), indent=indent, ensure_ascii=False)


def _stage_rows(table: Table, stage: StageResult, prefix: str = "") -> None:
    style = _STAGE_STYLES[stage.status]
    table.add_row(
        f"{prefix}{stage.name}",
        f"[{style}]{stage.status.value}[/]",
        f"{stage.duration:.2f}s",
        str(len(stage.steps)),
        stage.error or "",
    )
    for branch in stage.branches:
        _stage_rows(table, branch, prefix=f"{prefix}  ")


def render_record(
    record: RunRecord,
    console: Console | None = None,
    output_limit: int = DEFAULT_OUTPUT_LIMIT,
) -> None:
    """Print a run record as a table, followed by failure details.

    Shows which stage and step failed, its captured stderr, and whether
    the run failed on a timeout or on a non-zero exit.
    """
    console = console or Console()
    table = Table(title=f"{record.pipeline} #{record.run_id}", show_lines=False)
    table.add_column("Stage", style="cyan")
    table.add_column("Status", justify="center")
    table.add_column("Duration", justify="right")
    table.add_column("Steps", justify="right")
    table.add_column("Error", style="dim")
    for stage in record.stages:
        _stage_rows(table, stage)
    console.print(table)

    for hook in record.hooks:
        if not hook.steps:
            continue
        marks = " ".join(f"[{_STEP_STYLES[s.status]}]{s.status.value}[/]" for s in hook.steps)
        console.print(f"[dim]post {hook.condition.value}:[/] {marks}")

    if record.success:
        console.print(f"[green]SUCCEEDED[/] in {record.duration:.2f}s")
        return

    kind = "timeout" if record.timed_out else "failure"
    lines = [f"[bold]{kind}[/]: {record.error or 'run failed'}"]
    if record.failed_stage:
        lines.append(f"stage: {record.failed_stage}")
    if record.failed_step:
        lines.append(f"step: {record.failed_step}")
    stage = record.stage(record.failed_stage) if record.failed_stage else None
    failed = stage.failed_step() if stage is not None else None
    if failed is not None:
        if failed.return_code is not None:
            lines.append(f"return code: {failed.return_code}")
        if failed.stderr.strip():
            lines.append("stderr:\n" + truncate(failed.stderr.rstrip(), output_limit))
    console.print(Panel("\n".join(lines), title="[red]FAILED[/]", border_style="red"))


__all__ = [
    "DEFAULT_OUTPUT_LIMIT",
    "hook_to_dict",
    "record_to_dict",
    "record_to_json",
    "render_record",
    "stage_to_dict",
    "step_to_dict",
    "truncate",
]
