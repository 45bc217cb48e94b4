"""Shared helpers for CLI commands."""

from __future__ import annotations

from typing import NoReturn

import typer
from rich.console import Console

console = Console()

#: Exit code of a run that failed (step failure or timeout).
EXIT_FAILURE = 1

#: Exit code of an invalid document or configuration.
EXIT_CONFIG_ERROR = 2


def exit_error(message: str, code: int = EXIT_FAILURE) -> NoReturn:
    """Print an error message and exit with ``code``."""
    console.print(f"[red]Error:[/] {message}")
    raise typer.Exit(code=code)


__all__ = [
    "EXIT_CONFIG_ERROR",
    "EXIT_FAILURE",
    "console",
    "exit_error",
]
