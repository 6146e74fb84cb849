"""Centralized path and service configuration for Taskrail.

Respects ``TASKRAIL_HOME`` env var, then ``XDG_DATA_HOME/taskrail``,
and falls back to ``~/.taskrail``.
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field


@lru_cache(maxsize=1)
def get_home_dir() -> Path:
    """Return the Taskrail data directory.

    Resolution order:
    1. ``TASKRAIL_HOME`` environment variable
    2. ``XDG_DATA_HOME/taskrail`` (if ``XDG_DATA_HOME`` is set)
    3. ``~/.taskrail``
    """
    env = os.environ.get("TASKRAIL_HOME")
    if env:
        return Path(env)
    xdg = os.environ.get("XDG_DATA_HOME")
    if xdg:
        return Path(xdg) / "taskrail"
    return Path.home() / ".taskrail"


def get_db_path() -> Path:
    return get_home_dir() / "taskrail.db"


def get_settings_path() -> Path:
    return get_home_dir() / "settings.yaml"


class SettingsLoadError(Exception):
    """Raised when the settings file cannot be loaded or validated."""


class ServiceSettings(BaseModel):
    """Process-wide knobs for the run service."""

    # Global ceiling on concurrently active runs per pipeline; 0 means unlimited.
    run_parallelism_limit: int = Field(default=0, ge=0)
    # How long a coordinator blocks on its event queue before re-checking stop flags.
    event_poll_seconds: float = Field(default=0.5, gt=0)
    default_namespace: str = "default"


def load_settings(path: Path | None = None) -> ServiceSettings:
    """Load settings from *path* (default: ``settings.yaml`` in the home dir).

    A missing file yields defaults. ``TASKRAIL_RUN_PARALLELISM_LIMIT`` overrides
    the file value.
    """
    from taskrail._yaml import load_yaml_model

    path = path or get_settings_path()
    if path.exists():
        settings = load_yaml_model(path, ServiceSettings, SettingsLoadError)
    else:
        settings = ServiceSettings()

    env_limit = os.environ.get("TASKRAIL_RUN_PARALLELISM_LIMIT")
    if env_limit:
        try:
            limit = int(env_limit)
        except ValueError:
            raise SettingsLoadError(
                f"TASKRAIL_RUN_PARALLELISM_LIMIT must be an integer, got {env_limit!r}"
            ) from None
        if limit < 0:
            raise SettingsLoadError("TASKRAIL_RUN_PARALLELISM_LIMIT must be >= 0")
        settings = settings.model_copy(update={"run_parallelism_limit": limit})
    return settings
