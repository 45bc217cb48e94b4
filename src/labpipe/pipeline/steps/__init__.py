"""Step handler implementations.

Provides one handler per ``StepKind``:

- LogStepHandler: record a message (``echo``)
- ShellStepHandler: run a shell script via ``<shell> -e -c``
- ScopedDirStepHandler: run nested steps in a subdirectory (``dir``)
- RetryStepHandler: re-run nested steps until they succeed (``retry``)
- SleepStepHandler: cancellable fixed wait (``sleep``)
- HttpCheckStepHandler: probe an HTTP endpoint
"""

from labpipe.pipeline.steps.directory import ScopedDirStepHandler
from labpipe.pipeline.steps.http import HttpCheckStepHandler
from labpipe.pipeline.steps.log import LogStepHandler
from labpipe.pipeline.steps.retry import RetryStepHandler, SleepStepHandler
from labpipe.pipeline.steps.shell import ShellStepHandler

__all__ = [
    "HttpCheckStepHandler",
    "LogStepHandler",
    "RetryStepHandler",
    "ScopedDirStepHandler",
    "ShellStepHandler",
    "SleepStepHandler",
]
