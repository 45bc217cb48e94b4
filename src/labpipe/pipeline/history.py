"""Archive of run records with retention.

Records are stored as JSON at ``<root>/<pipeline>/<run_id>.json``. Build
numbers allocated by ``reserve_run_id`` are monotonic per pipeline and are
claimed when allocated. ``archive`` keeps only the newest ``retain``
records, like a build discarder keeping the last N builds.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from labpipe.pipeline.exceptions import PipelineConfigError
from labpipe.pipeline.models import RunRecord, RunStatus
from labpipe.pipeline.report import DEFAULT_OUTPUT_LIMIT, record_to_dict
from labpipe.pipeline.validators import PIPELINE_NAME_PATTERN, validate_pipeline_name

logger = logging.getLogger(__name__)


def _sort_key(path: Path) -> tuple[int, float, str]:
    """Numeric build numbers first in numeric order, then others by age."""
    stem = path.stem
    if stem.isdigit():
        return (0, float(stem), stem)
    return (1, path.stat().st_mtime, stem)


class RunHistory:
    """Store and prune archived run records.

    Args:
        root: Directory holding one subdirectory per pipeline.
        output_limit: Maximum characters kept per captured stream.

    Examples:
        >>> history = RunHistory(".labpipe/runs")  # doctest: +SKIP
        >>> history.reserve_run_id("docker-build")  # doctest: +SKIP
        1
    """

    def __init__(self, root: str | Path, *, output_limit: int = DEFAULT_OUTPUT_LIMIT) -> None:
        self.root = Path(root)
        self.output_limit = output_limit

    def _dir(self, pipeline: str) -> Path:
        return self.root / validate_pipeline_name(pipeline)

    def _files(self, pipeline: str) -> list[Path]:
        directory = self._dir(pipeline)
        if not directory.is_dir():
            return []
        return sorted(directory.glob("*.json"), key=_sort_key)

    def next_run_id(self, pipeline: str) -> int:
        """Return the next build number: highest archived number plus one.

        The number is not claimed; use ``reserve_run_id`` to start a run.
        """
        numbers = [int(p.stem) for p in self._files(pipeline) if p.stem.isdigit()]
        return max(numbers, default=0) + 1

    def reserve_run_id(self, pipeline: str) -> int:
        """Allocate the next build number and claim its record file.

        The record file is created exclusively with a ``running``
        placeholder, so concurrent runs never share a number. ``archive``
        replaces the placeholder with the finished record.

        Returns:
            The reserved build number.
        """
        directory = self._dir(pipeline)
        directory.mkdir(parents=True, exist_ok=True)
        run_id = self.next_run_id(pipeline)
        while True:
            path = directory / f"{run_id}.json"
            try:
                with path.open("x", encoding="utf-8") as handle:
                    json.dump({"pipeline": pipeline, "run_id": run_id, "status": RunStatus.RUNNING.value}, handle)
            except FileExistsError:
                run_id += 1
                continue
            logger.debug("Reserved run %d of '%s'", run_id, pipeline)
            return run_id

    def release(self, pipeline: str, run_id: int | str) -> None:
        """Drop the placeholder of a reserved build number that never ran."""
        path = self._dir(pipeline) / f"{run_id}.json"
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return
        if data.get("status") == RunStatus.RUNNING.value:
            path.unlink(missing_ok=True)

    def archive(self, record: RunRecord, retain: int | None = None) -> Path:
        """Write a run record, then prune records beyond ``retain``.

        Returns:
            Path of the written record.
        """
        if not PIPELINE_NAME_PATTERN.match(str(record.run_id)):
            raise PipelineConfigError(f"Run id {record.run_id!r} cannot be used as a file name")
        directory = self._dir(record.pipeline)
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / f"{record.run_id}.json"
        path.write_text(
            json.dumps(record_to_dict(record, self.output_limit), indent=2, ensure_ascii=False),
            encoding="utf-8",
        )
        logger.debug("Archived run %s of '%s' to %s", record.run_id, record.pipeline, path)
        if retain is not None:
            self.prune(record.pipeline, retain)
        return path

    def prune(self, pipeline: str, retain: int) -> list[Path]:
        """Delete the oldest records so that at most ``retain`` remain.

        Returns:
            Paths of deleted records.
        """
        files = self._files(pipeline)
        removed = files[: max(len(files) - retain, 0)]
        for path in removed:
            path.unlink(missing_ok=True)
        if removed:
            logger.info("Discarded %d old run(s) of '%s'", len(removed), pipeline)
        return removed

    def list_runs(self, pipeline: str) -> list[dict[str, Any]]:
        """Return archived records of a pipeline, oldest first."""
        return [json.loads(p.read_text(encoding="utf-8")) for p in self._files(pipeline)]

    def load(self, pipeline: str, run_id: int | str) -> dict[str, Any]:
        """Return one archived record.

        Raises:
            FileNotFoundError: If no such record exists.
        """
        path = self._dir(pipeline) / f"{run_id}.json"
        return json.loads(path.read_text(encoding="utf-8"))


__all__ = [
    "RunHistory",
]
