"""Guards, failures and post hooks.

Runs the same document for two branches: the ``Deploy`` stage only runs on
``main``, and a failing ``Test`` stage stops the run before it while the
``failure`` hook still fires.

Usage:
    python examples/pipeline/02_guards_and_hooks.py
"""

from __future__ import annotations

from labpipe.pipeline import parse_document, run_pipeline
from labpipe.pipeline.models import RunMetadata

DOCUMENT = {
    "name": "guards",
    "stages": [
        {"name": "Build", "steps": [{"echo": "Building ${BRANCH_NAME}"}]},
        {"name": "Test", "steps": [{"sh": 'test "${BRANCH_NAME}" != "broken"'}]},
        {"name": "Deploy", "when": {"branch": "main"}, "steps": [{"echo": "Deploying"}]},
    ],
    "post": {
        "success": [{"echo": "Pipeline completed successfully!"}],
        "failure": [{"echo": "Pipeline failed!"}],
    },
}


def main() -> None:
    """Run the document for several branches."""
    document = parse_document(DOCUMENT)
    for run_id, branch in enumerate(("main", "feature/login", "broken"), start=1):
        record = run_pipeline(document, RunMetadata(run_id=run_id, branch=branch))
        stages = ", ".join(f"{s.name}={s.status.value}" for s in record.stages)
        hooks = [step.stdout for hook in record.hooks for step in hook.steps]
        print(f"{branch:<14} {record.status.value:<9} {stages}")
        print(f"{'':<14} hooks: {hooks}")
        if record.error:
            print(f"{'':<14} error: {record.error}")


if __name__ == "__main__":
    main()
