"""Command-line interface for labpipe."""

from labpipe.cli.app import app

__all__ = ["app"]
