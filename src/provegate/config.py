"""Layered TOML configuration.

Resolution order, later wins (tables merge, arrays replace):

1. built-in defaults
2. ``~/.config/provegate/config.toml`` (``$PROVEGATE_DIR/config.toml``)
3. every ``.provegate/config.toml`` from the filesystem root down to the
   project directory
4. ``<project>/.provegate/config.local.toml``

Example::

    sources = ["src/**/*.py", "tests/**/*.py"]

    [[tasks]]
    name = "full-tests"
    event = "stop"
    command = "./script/test"
    when = { linesChanged = 500 }
"""

from __future__ import annotations

import copy
import logging
import tomllib
from pathlib import Path
from typing import Any

from jsonschema import Draft7Validator

from provegate.conditions import condition_error
from provegate.paths import global_config_path, local_config_path, project_config_path

log = logging.getLogger(__name__)

EVENTS = ("edit", "stop", "session-start", "pre-commit", "pre-push")

DEFAULT_FILE_EDITING_TOOLS = ("Write", "Edit", "MultiEdit", "NotebookEdit")

_STR_LIST = {"type": "array", "items": {"type": "string"}}

TASK_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["name"],
    "properties": {
        "name": {"type": "string", "minLength": 1},
        "event": {"type": "string", "enum": list(EVENTS)},
        "command": {"type": "string"},
        "when": {"type": "object"},
        "reset_on_fail": {"type": "boolean"},
        "mtime": {"type": "boolean"},
        "enabled": {"type": "boolean"},
        "sources": _STR_LIST,
    },
    "additionalProperties": False,
}

CONFIG_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "enabled": {"type": "boolean"},
        "sources": _STR_LIST,
        "ignored_paths": _STR_LIST,
        "file_editing_tools": _STR_LIST,
        "tasks": {"type": "array", "items": TASK_SCHEMA},
    },
    "additionalProperties": False,
}

_VALIDATOR = Draft7Validator(CONFIG_SCHEMA)


class ConfigError(ValueError):
    """The effective configuration is unreadable or invalid."""


def default_config() -> dict[str, Any]:
    return {
        "enabled": True,
        "sources": [],
        "ignored_paths": [],
        "file_editing_tools": list(DEFAULT_FILE_EDITING_TOOLS),
        "tasks": [],
    }


def merge_deep(base: Any, override: Any) -> Any:
    if override is None:
        return base
    if isinstance(base, dict) and isinstance(override, dict):
        merged = dict(base)
        for key, value in override.items():
            merged[key] = merge_deep(base.get(key), value)
        return merged
    return copy.deepcopy(override)


def _read_toml(path: Path) -> dict[str, Any] | None:
    """Parse one config file; None when it does not exist."""
    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except FileNotFoundError:
        return None
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"{path}: {exc}") from None
    except OSError as exc:
        raise ConfigError(f"{path}: cannot read ({exc})") from None


def config_paths(project_dir: str | Path) -> list[Path]:
    """Candidate config files in merge order (most general first)."""
    project = Path(project_dir).resolve()
    ancestors = [project, *project.parents]
    paths = [global_config_path()]
    paths.extend(project_config_path(d) for d in reversed(ancestors))
    paths.append(local_config_path(project))
    return paths


def validation_errors(cfg: dict[str, Any]) -> list[str]:
    errors = []
    for error in sorted(_VALIDATOR.iter_errors(cfg), key=lambda e: list(map(str, e.path))):
        location = ".".join(str(p) for p in error.path) or "(root)"
        errors.append(f"{location}: {error.message}")
    names = [t.get("name") for t in cfg.get("tasks", []) if isinstance(t, dict)]
    duplicates = sorted({n for n in names if isinstance(n, str) and names.count(n) > 1})
    errors.extend(f'tasks: duplicate task name "{n}"' for n in duplicates)
    return errors


def condition_errors(cfg: dict[str, Any]) -> list[str]:
    """Problems in each task's ``when`` table.

    Loading tolerates these (the task is skipped with the same message at
    evaluation time); ``provegate validate`` reports them.
    """
    errors = []
    for index, task in enumerate(cfg.get("tasks", [])):
        if not isinstance(task, dict) or "when" not in task:
            continue
        error = condition_error(task["when"])
        if error:
            errors.append(f"tasks.{index}.when ({task.get('name')}): {error}")
    return errors


def load_effective_config(project_dir: str | Path) -> dict[str, Any]:
    """Merge every config layer for *project_dir* and validate the result.

    Raises ``ConfigError`` listing every problem found.
    """
    cfg = default_config()
    seen: set[Path] = set()
    for path in config_paths(project_dir):
        if path in seen:
            continue
        seen.add(path)
        layer = _read_toml(path)
        if layer is not None:
            log.debug("Loaded config layer %s", path)
            cfg = merge_deep(cfg, layer)

    errors = validation_errors(cfg)
    if errors:
        raise ConfigError("Invalid provegate config:\n  " + "\n  ".join(errors))
    return cfg


def is_ignored_path(project_dir: str | Path, ignored_paths: list[str]) -> bool:
    """Whether *project_dir* sits at or below one of the ignored paths."""
    project = Path(project_dir).expanduser().resolve()
    for ignored in ignored_paths:
        root = Path(ignored).expanduser().resolve()
        if project == root or root in project.parents:
            return True
    return False
