"""Logging setup for labpipe.

Library modules only call ``logging.getLogger(__name__)``; handlers are
installed on the ``labpipe`` logger by ``init_logging``, usually from the
CLI. ``LogManager`` builds a ``rich`` console handler and an optional file
handler from a preset (``dev``, ``prod``, ``debug``) and an override dict,
typically the ``logging`` section of ``labpipe.conf.yml``.

Two extra levels are registered: ``TRACE`` (5) for per-step detail and
``SUCCESS`` (25) for run outcomes.

Examples:
    >>> from labpipe.logging import init_logging
    >>> log = init_logging(preset="prod")  # doctest: +SKIP
    >>> log.success("Pipeline finished", pipeline="docker-build", run_id=42)  # doctest: +SKIP
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Mapping
from pathlib import Path
from types import SimpleNamespace
from typing import Any

from rich.console import Console
from rich.logging import RichHandler

TRACE_LEVEL = 5
SUCCESS_LEVEL = 25

logging.addLevelName(TRACE_LEVEL, "TRACE")
logging.addLevelName(SUCCESS_LEVEL, "SUCCESS")

LOGGING_LEVEL = SimpleNamespace(
    TRACE=TRACE_LEVEL,
    DEBUG=logging.DEBUG,
    INFO=logging.INFO,
    SUCCESS=SUCCESS_LEVEL,
    WARNING=logging.WARNING,
    ERROR=logging.ERROR,
    CRITICAL=logging.CRITICAL,
)

#: Name of the logger receiving handlers.
ROOT_LOGGER_NAME = "labpipe"

_ALLOWED_LOG_SUFFIXES = frozenset({"", ".log", ".txt", ".json"})
_MAX_LOG_PATH_LENGTH = 4096
_MAX_LOG_NAME_LENGTH = 255

FALLBACK_DEFAULTS: dict[str, Any] = {
    "output": "console",
    "console": {
        "level": "INFO",
        "show_path": False,
        "show_time": True,
        "rich_tracebacks": True,
        "tracebacks_show_locals": False,
    },
    "file": {
        "level": "DEBUG",
        "file_path": ".labpipe/labpipe.log",
        "auto_create_dir": True,
        "format": "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    },
}

FALLBACK_PRESETS: dict[str, dict[str, Any]] = {
    "dev": {
        "output": "console",
        "console": {"level": "DEBUG", "show_path": True},
    },
    "prod": {
        "output": "both",
        "console": {"level": "INFO", "show_path": False, "tracebacks_show_locals": False},
        "file": {"level": "INFO"},
    },
    "debug": {
        "output": "both",
        "console": {"level": "TRACE", "show_path": True, "tracebacks_show_locals": True},
        "file": {"level": "TRACE"},
    },
}

_root_logger: LogManager | None = None


def _merge(base: dict[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
    return base


def _parse_level(level: str | int) -> int:
    if isinstance(level, int):
        return level
    value = getattr(LOGGING_LEVEL, str(level).upper(), None)
    if value is None:
        raise ValueError(f"Unknown log level: {level!r}")
    return int(value)


def _validate_log_file_path(path: str | Path) -> Path:
    """Check a log file path and return it resolved.

    Raises:
        ValueError: If the path holds ``..`` or ``~``, is too long, or has a
            suffix other than ``.log``, ``.txt``, ``.json`` or none.
    """
    file_path = Path(path)
    for part in file_path.parts:
        if part in ("..", "~") or part.startswith("~"):
            raise ValueError(f"Log file path contains forbidden component {part!r}")
    if len(str(file_path)) > _MAX_LOG_PATH_LENGTH:
        raise ValueError(f"Log file path exceeds maximum length of {_MAX_LOG_PATH_LENGTH}")
    if len(file_path.name) > _MAX_LOG_NAME_LENGTH:
        raise ValueError(f"Log file name exceeds maximum length of {_MAX_LOG_NAME_LENGTH}")
    if file_path.suffix.lower() not in _ALLOWED_LOG_SUFFIXES:
        raise ValueError(f"Log file extension {file_path.suffix!r} is not allowed")
    return file_path.resolve()


def _with_context(msg: str, context: Mapping[str, Any]) -> str:
    if not context:
        return msg
    return msg + " | " + " ".join(f"{k}={v}" for k, v in context.items())


class LogManager(logging.Logger):
    """Logger configured from a preset and an override dict.

    Args:
        name: Logger name.
        config: Overrides merged over the preset (``output``, ``console``, ``file``).
        preset: One of ``dev``, ``prod``, ``debug``. Also read from ``config["preset"]``.

    Examples:
        >>> log = LogManager(config={"output": "console", "console": {"level": "WARNING"}})
        >>> log.isEnabledFor(TRACE_LEVEL)
        True
    """

    def __init__(
        self,
        name: str = ROOT_LOGGER_NAME,
        config: Mapping[str, Any] | None = None,
        preset: str | None = None,
    ) -> None:
        super().__init__(name, level=TRACE_LEVEL)
        self.config = self._build_config(config or {}, preset)
        self._setup_handlers()

    @staticmethod
    def _build_config(config: Mapping[str, Any], preset: str | None) -> dict[str, Any]:
        overrides = dict(config)
        preset = preset or overrides.pop("preset", None)
        overrides.pop("preset", None)
        merged = copy.deepcopy(FALLBACK_DEFAULTS)
        if preset is not None:
            if preset not in FALLBACK_PRESETS:
                raise ValueError(f"Unknown logging preset {preset!r}. Available: {', '.join(FALLBACK_PRESETS)}")
            _merge(merged, FALLBACK_PRESETS[preset])
        return _merge(merged, overrides)

    def _setup_handlers(self) -> None:
        output = self.config["output"]
        if output not in ("console", "file", "both"):
            raise ValueError(f"Invalid logging output {output!r}")
        if output in ("console", "both"):
            self.addHandler(self._console_handler(self.config["console"]))
        if output in ("file", "both"):
            self.addHandler(self._file_handler(self.config["file"]))

    @staticmethod
    def _console_handler(settings: Mapping[str, Any]) -> RichHandler:
        handler = RichHandler(
            console=Console(stderr=True),
            show_path=bool(settings.get("show_path", False)),
            show_time=bool(settings.get("show_time", True)),
            rich_tracebacks=bool(settings.get("rich_tracebacks", True)),
            tracebacks_show_locals=bool(settings.get("tracebacks_show_locals", False)),
            markup=False,
        )
        handler.setLevel(_parse_level(settings.get("level", "INFO")))
        return handler

    @staticmethod
    def _file_handler(settings: Mapping[str, Any]) -> logging.FileHandler:
        file_path = _validate_log_file_path(settings["file_path"])
        if settings.get("auto_create_dir", True):
            file_path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(file_path, encoding="utf-8")
        handler.setFormatter(logging.Formatter(settings.get("format", FALLBACK_DEFAULTS["file"]["format"])))
        handler.setLevel(_parse_level(settings.get("level", "DEBUG")))
        return handler

    def trace(self, msg: str, *args: Any, **context: Any) -> None:
        """Log at TRACE level, appending ``key=value`` context."""
        if self.isEnabledFor(TRACE_LEVEL):
            self._log(TRACE_LEVEL, _with_context(msg, context), args)

    def success(self, msg: str, *args: Any, **context: Any) -> None:
        """Log at SUCCESS level, appending ``key=value`` context."""
        if self.isEnabledFor(SUCCESS_LEVEL):
            self._log(SUCCESS_LEVEL, _with_context(msg, context), args)


def init_logging(config: Mapping[str, Any] | None = None, preset: str | None = None) -> LogManager:
    """Install handlers on the ``labpipe`` logger.

    Handlers from a previous call are removed and closed first, so the CLI
    can call this once per invocation.

    Returns:
        The LogManager whose handlers were installed.
    """
    global _root_logger  # pylint: disable=global-statement
    std_logger = logging.getLogger(ROOT_LOGGER_NAME)

    if _root_logger is not None:
        for handler in _root_logger.handlers:
            std_logger.removeHandler(handler)
            handler.close()

    manager = LogManager(config=config, preset=preset)
    std_logger.setLevel(TRACE_LEVEL)
    for handler in manager.handlers:
        std_logger.addHandler(handler)
    _root_logger = manager
    return manager


def get_logger(name: str | None = None) -> logging.Logger:
    """Return a logger under the ``labpipe`` namespace.

    ``get_logger()`` returns the LogManager of ``init_logging`` if any.
    """
    if name is None:
        return _root_logger or logging.getLogger(ROOT_LOGGER_NAME)
    if name == ROOT_LOGGER_NAME or name.startswith(ROOT_LOGGER_NAME + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


__all__ = [
    "FALLBACK_DEFAULTS",
    "FALLBACK_PRESETS",
    "LOGGING_LEVEL",
    "SUCCESS_LEVEL",
    "TRACE_LEVEL",
    "LogManager",
    "get_logger",
    "init_logging",
]
