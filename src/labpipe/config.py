"""Configuration loading for labpipe.

Settings are read from ``labpipe.conf.yml``, located in this order:

1. the ``path`` argument of ``load_config``
2. the ``LABPIPE_CONFIG`` environment variable
3. ``labpipe.conf.yml`` in the current directory

The file is optional. Its content is deep-merged over built-in defaults and
returned as a ``Box`` for attribute access::

    pipeline:
      default_timeout: 1800
      history_dir: .labpipe/runs
      pipelines:
        nightly:
          stages:
            - name: Build
              steps:
                - sh: make
    logging:
      preset: prod

Placeholders such as ``${BUILD_NUMBER}`` are kept as-is: they belong to
pipeline documents and are resolved per run.
"""

from __future__ import annotations

import copy
import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from box import Box

from labpipe.exceptions import ConfigError

logger = logging.getLogger(__name__)

#: Default configuration file name searched in the current directory.
CONFIG_FILENAME = "labpipe.conf.yml"

#: Environment variable pointing to an explicit configuration file.
CONFIG_ENV_VAR = "LABPIPE_CONFIG"

DEFAULTS: dict[str, Any] = {
    "pipeline": {
        "default_timeout": None,
        "output_limit": 4000,
        "serialize_runs": False,
        "history_dir": ".labpipe/runs",
        "shell": "/bin/sh",
        "pipelines": {},
    },
    "logging": {
        "preset": "dev",
    },
}

_config: Box | None = None


def _deep_merge(base: dict[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    """Merge ``override`` into ``base`` recursively, returning ``base``.

    Examples:
        >>> _deep_merge({"a": {"x": 1, "y": 2}}, {"a": {"y": 3}})
        {'a': {'x': 1, 'y': 3}}
    """
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(base.get(key), dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def _locate(path: str | Path | None) -> Path | None:
    if path is not None:
        return Path(path)
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        return Path(env_path)
    candidate = Path.cwd() / CONFIG_FILENAME
    return candidate if candidate.is_file() else None


def load_config(path: str | Path | None = None) -> Box:
    """Load the configuration, merged over defaults.

    Args:
        path: Explicit configuration file. When None, ``LABPIPE_CONFIG``
            then ``./labpipe.conf.yml`` are tried; a missing default file
            yields the built-in defaults.

    Returns:
        Configuration as a Box.

    Raises:
        ConfigError: If an explicit file is missing, unreadable, or not a YAML mapping.
    """
    data = copy.deepcopy(DEFAULTS)
    config_path = _locate(path)

    if config_path is not None:
        try:
            raw = yaml.safe_load(config_path.read_text(encoding="utf-8"))
        except OSError as exc:
            raise ConfigError(f"Cannot read configuration file {config_path}: {exc}") from exc
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in {config_path}: {exc}") from exc

        if raw is None:
            raw = {}
        if not isinstance(raw, Mapping):
            raise ConfigError(f"Configuration file {config_path} must contain a mapping")
        _deep_merge(data, raw)
        logger.debug("Loaded configuration from %s", config_path)

    return Box(data, default_box=False)


def get_config(force_reload: bool = False) -> Box:
    """Return the cached configuration, loading it on first use.

    Args:
        force_reload: Reload from disk even if a configuration is cached.
    """
    global _config  # pylint: disable=global-statement
    if _config is None or force_reload:
        _config = load_config()
    return _config


def reset_config() -> None:
    """Drop the cached configuration."""
    global _config  # pylint: disable=global-statement
    _config = None


__all__ = [
    "CONFIG_ENV_VAR",
    "CONFIG_FILENAME",
    "DEFAULTS",
    "get_config",
    "load_config",
    "reset_config",
]
