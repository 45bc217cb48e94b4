"""labpipe: declarative stage-based pipeline runner.

Examples:
    >>> import labpipe
    >>> engine = labpipe.PipelineEngine.from_file("pipelines/basic-pipeline.yml")  # doctest: +SKIP
    >>> record = engine.run(labpipe.RunMetadata(run_id=1, branch="main"))  # doctest: +SKIP
"""

from labpipe.exceptions import ConfigError, LabpipeError
from labpipe.meta import __app_name__, __version__
from labpipe.pipeline import (
    PipelineDocument,
    PipelineEngine,
    PipelineError,
    RunHistory,
    RunMetadata,
    RunRecord,
    load_document,
    parse_document,
    run_pipeline,
)

__all__ = [
    "ConfigError",
    "LabpipeError",
    "PipelineDocument",
    "PipelineEngine",
    "PipelineError",
    "RunHistory",
    "RunMetadata",
    "RunRecord",
    "__app_name__",
    "__version__",
    "load_document",
    "parse_document",
    "run_pipeline",
]
