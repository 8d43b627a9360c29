"""Canonical filesystem paths for provegate configuration and state."""

from __future__ import annotations

import os
from pathlib import Path

PROJECT_DIR_NAME = ".provegate"

REFS_NAMESPACE = "refs/worktree/provegate"


def state_dir() -> Path:
    """Return the per-user state directory (``PROVEGATE_DIR`` wins)."""
    env_dir = os.environ.get("PROVEGATE_DIR")
    if env_dir:
        return Path(env_dir).expanduser()
    return Path.home() / ".config" / "provegate"


def global_config_path() -> Path:
    return state_dir() / "config.toml"


def project_config_path(project_dir: str | Path) -> Path:
    return Path(project_dir) / PROJECT_DIR_NAME / "config.toml"


def local_config_path(project_dir: str | Path) -> Path:
    return Path(project_dir) / PROJECT_DIR_NAME / "config.local.toml"


def local_state_path(project_dir: str | Path) -> Path:
    """Per-project state file holding cached run records."""
    return Path(project_dir) / PROJECT_DIR_NAME / "state.local.json"


def sessions_dir(base: str | Path | None = None) -> Path:
    return Path(base) / "sessions" if base is not None else state_dir() / "sessions"
