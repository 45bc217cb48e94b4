"""Config-driven pipeline example.

Loads the ``example-pipeline`` document declared in ``labpipe.conf.yml`` with
PipelineEngine.from_config().

Usage:
    cd examples/pipeline
    python 03_config_driven.py
"""

from __future__ import annotations

from labpipe.logging import init_logging
from labpipe.pipeline import PipelineEngine, StepFailure


def main() -> None:
    """Run a config-driven pipeline."""
    init_logging(preset="dev")
    engine = PipelineEngine.from_config("example-pipeline")

    print(f"Pipeline: {engine.document.name}")
    print(f"Stages: {len(engine.document.stages)}")
    print(f"Timeout: {engine.document.options.timeout}s")
    print()

    try:
        record = engine.run(raise_on_error=True)
        print(f"\nCompleted in {record.duration:.3f}s")
    except StepFailure as e:
        print(f"\nFailed in stage '{e.stage_name}' at step '{e.step_name}'")


if __name__ == "__main__":
    main()
