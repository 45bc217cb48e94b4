"""Root exceptions shared by every labpipe module.

Exception hierarchy::

    LabpipeError
        ConfigError (configuration file cannot be loaded or is invalid)
        PipelineError (see ``labpipe.pipeline.exceptions``)
"""

from __future__ import annotations


class LabpipeError(Exception):
    """Base exception for all labpipe errors."""


class ConfigError(LabpipeError):
    """Configuration file is missing, unreadable, or malformed."""


__all__ = [
    "ConfigError",
    "LabpipeError",
]
