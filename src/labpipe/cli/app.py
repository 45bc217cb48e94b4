"""labpipe command-line application."""

from __future__ import annotations

import json
import os
import sys
import uuid
from pathlib import Path
from typing import Annotated, Any

import typer
from box import Box
from rich.table import Table

from labpipe import meta
from labpipe.cli.common import EXIT_CONFIG_ERROR, EXIT_FAILURE, console, exit_error
from labpipe.config import load_config
from labpipe.exceptions import ConfigError
from labpipe.logging import init_logging
from labpipe.pipeline.engine import PipelineEngine
from labpipe.pipeline.exceptions import ConcurrentRunError, PipelineConfigError
from labpipe.pipeline.executor import StepExecutor
from labpipe.pipeline.history import RunHistory
from labpipe.pipeline.loader import load_document, load_document_from_config
from labpipe.pipeline.models import PipelineDocument, RunMetadata
from labpipe.pipeline.report import record_to_json, render_record

app = typer.Typer(
    name=meta.__app_name__,
    help=meta.__description__,
    no_args_is_help=True,
    add_completion=False,
)

_RUN_STYLES = {"succeeded": "green", "running": "yellow"}


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"{meta.__app_name__} {meta.__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
    ctx: typer.Context,
    config: Annotated[
        Path | None,
        typer.Option("--config", "-c", help="Configuration file (default: $LABPIPE_CONFIG or ./labpipe.conf.yml)."),
    ] = None,
    version: Annotated[  # pylint: disable=unused-argument
        bool,
        typer.Option("--version", help="Show version and exit.", callback=_version_callback, is_eager=True),
    ] = False,
) -> None:
    """Declarative stage-based pipeline runner."""
    ctx.obj = {"config_path": config}


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────


def _settings(ctx: typer.Context) -> Box:
    path = (ctx.obj or {}).get("config_path")
    try:
        return load_config(path)
    except ConfigError as exc:
        exit_error(str(exc), code=EXIT_CONFIG_ERROR)


def _setup_logging(settings: Box, verbose: bool, quiet: bool) -> None:
    overrides: dict[str, Any] = settings.logging.to_dict()
    if quiet:
        # keep stdout/stderr clean for machine-readable output
        overrides.pop("preset", None)
        overrides.update({"output": "console", "console": {"level": "CRITICAL"}})
        init_logging(config=overrides)
    else:
        init_logging(config=overrides, preset="debug" if verbose else None)


def _load_pipeline(target: str, settings: Box) -> PipelineDocument:
    """Load a document from a file path, else from ``pipeline.pipelines``."""
    try:
        if Path(target).is_file() or target not in settings.pipeline.pipelines:
            return load_document(target)
        return load_document_from_config(target, settings)
    except PipelineConfigError as exc:
        exit_error(str(exc), code=EXIT_CONFIG_ERROR)


def _parse_env(pairs: list[str] | None) -> dict[str, str]:
    values: dict[str, str] = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            exit_error(f"Invalid --env value {pair!r}, expected KEY=VALUE", code=EXIT_CONFIG_ERROR)
        values[key] = value
    return values


def _parse_run_id(value: str | None) -> int | str | None:
    if value is None:
        return None
    return int(value) if value.isdigit() else value


# ─────────────────────────────────────────────────────────────────────────────
# Commands
# ─────────────────────────────────────────────────────────────────────────────


@app.command()
def run(  # noqa: PLR0913
    ctx: typer.Context,
    target: Annotated[str, typer.Argument(help="Pipeline file (YAML/JSON) or name of a configured pipeline.")],
    branch: Annotated[str, typer.Option("--branch", "-b", help="Branch name used by 'when' guards.")] = "",
    run_id: Annotated[
        str | None,
        typer.Option("--run-id", help="Build number or id (default: next number from history)."),
    ] = None,
    workdir: Annotated[
        Path | None,
        typer.Option("--workdir", "-C", help="Working directory of the run (default: current directory)."),
    ] = None,
    env: Annotated[
        list[str] | None,
        typer.Option("--env", "-e", help="Extra KEY=VALUE available to environment templates. Repeatable."),
    ] = None,
    dry_run: Annotated[bool, typer.Option("--dry-run", help="Show shell/http/sleep steps without running them.")] = False,
    json_output: Annotated[bool, typer.Option("--json", help="Print the run record as JSON.")] = False,
    history_dir: Annotated[
        Path | None,
        typer.Option("--history-dir", help="Run history directory (default: pipeline.history_dir)."),
    ] = None,
    no_history: Annotated[bool, typer.Option("--no-history", help="Do not archive the run record.")] = False,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Debug logging.")] = False,
) -> None:
    """Run a pipeline.

    Exit code is 0 when the run succeeds, 1 when it fails or times out,
    and 2 when the document or configuration is invalid.

    Examples:
        # Run a document for the main branch
        labpipe run pipelines/docker-build.yml --branch main

        # Override a variable used by environment templates
        labpipe run pipelines/security-scan.yml -e TARGET_IMAGE=nginx:latest

        # Show what would run
        labpipe run pipelines/basic-pipeline.yml --dry-run
    """
    settings = _settings(ctx)
    _setup_logging(settings, verbose, quiet=json_output)
    document = _load_pipeline(target, settings)
    fallback = {**os.environ, **_parse_env(env)}

    history = None
    if not no_history:
        history = RunHistory(
            history_dir or settings.pipeline.history_dir,
            output_limit=settings.pipeline.output_limit,
        )

    resolved_id = _parse_run_id(run_id)
    reserved = resolved_id is None and history is not None
    if resolved_id is None:
        resolved_id = history.reserve_run_id(document.name) if history is not None else uuid.uuid4().hex[:12]

    metadata = RunMetadata(
        run_id=resolved_id,
        branch=branch,
        workdir=(workdir or Path.cwd()).resolve(),
        job_name=document.name,
    )
    engine = PipelineEngine(
        document,
        executor=StepExecutor(shell=settings.pipeline.shell),
        history=history,
        default_timeout=settings.pipeline.default_timeout,
        serialize_runs=settings.pipeline.serialize_runs,
        fallback=fallback,
    )

    try:
        record = engine.run(metadata, dry_run=dry_run)
    except PipelineConfigError as exc:
        if reserved:
            history.release(document.name, resolved_id)
        exit_error(str(exc), code=EXIT_CONFIG_ERROR)
    except ConcurrentRunError as exc:
        if reserved:
            history.release(document.name, resolved_id)
        exit_error(str(exc), code=EXIT_FAILURE)

    if json_output:
        sys.stdout.write(record_to_json(record, settings.pipeline.output_limit) + "\n")
    else:
        render_record(record, console, settings.pipeline.output_limit)

    if not record.success:
        raise typer.Exit(code=EXIT_FAILURE)


@app.command()
def validate(
    ctx: typer.Context,
    target: Annotated[str, typer.Argument(help="Pipeline file (YAML/JSON) or name of a configured pipeline.")],
) -> None:
    """Parse a pipeline and list its stages."""
    settings = _settings(ctx)
    document = _load_pipeline(target, settings)

    table = Table(title=f"Pipeline '{document.name}'", show_lines=False)
    table.add_column("Stage", style="cyan")
    table.add_column("Steps", justify="right")
    table.add_column("When", style="dim")
    for stage in document.stages:
        if stage.is_parallel:
            steps = f"{len(stage.parallel)} branches"
        else:
            steps = str(len(stage.steps))
        table.add_row(stage.name, steps, stage.when.describe() if stage.when else "")
    console.print(table)

    options = document.options
    details = [f"{len(document.stages)} stage(s)"]
    if options.timeout:
        details.append(f"timeout {options.timeout:g}s")
    if options.retain_runs:
        details.append(f"keep {options.retain_runs} run(s)")
    if options.disable_concurrent:
        details.append("no concurrent runs")
    console.print(f"[green]valid[/]: {', '.join(details)}")


@app.command()
def history(
    ctx: typer.Context,
    name: Annotated[str, typer.Argument(help="Pipeline name.")],
    history_dir: Annotated[
        Path | None,
        typer.Option("--history-dir", help="Run history directory (default: pipeline.history_dir)."),
    ] = None,
    show: Annotated[str | None, typer.Option("--show", help="Print one archived run as JSON.")] = None,
    limit: Annotated[int, typer.Option("--limit", "-n", help="Number of most recent runs to list.")] = 20,
) -> None:
    """List archived runs of a pipeline.

    Examples:
        labpipe history docker-build
        labpipe history docker-build --show 42
    """
    settings = _settings(ctx)
    store = RunHistory(history_dir or settings.pipeline.history_dir)

    try:
        if show is not None:
            sys.stdout.write(json.dumps(store.load(name, show), indent=2, ensure_ascii=False) + "\n")
            return
        runs = store.list_runs(name)
    except PipelineConfigError as exc:
        exit_error(str(exc), code=EXIT_CONFIG_ERROR)
    except FileNotFoundError:
        exit_error(f"No run {show!r} archived for '{name}'")

    if not runs:
        console.print(f"[dim]No archived runs for '{name}'[/]")
        return

    table = Table(title=f"Runs of '{name}'", show_lines=False)
    table.add_column("Run", style="cyan", justify="right")
    table.add_column("Status", justify="center")
    table.add_column("Branch")
    table.add_column("Started")
    table.add_column("Duration", justify="right")
    table.add_column("Failed at", style="dim")
    for data in runs[-limit:]:
        style = _RUN_STYLES.get(data["status"], "red")
        failed_at = " / ".join(p for p in (data.get("failed_stage"), data.get("failed_step")) if p)
        if data.get("timed_out"):
            failed_at = f"timeout {failed_at}".strip()
        table.add_row(
            str(data["run_id"]),
            f"[{style}]{data['status']}[/]",
            data.get("branch") or "-",
            data.get("started_at") or "-",
            f"{data.get('duration', 0.0):.2f}s",
            failed_at,
        )
    console.print(table)


__all__ = [
    "app",
]
