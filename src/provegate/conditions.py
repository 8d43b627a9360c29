"""Condition evaluation: should a task run now, or be skipped?

A task's ``when`` table mixes two kinds of keys:

- prerequisites (``fileExists``, ``envSet``, ``envNotSet``,
  ``variablesPresent``) are ANDed. The first one that fails decides the
  skip reason and triggers are never consulted.
- triggers (``linesChanged``, ``linesWritten``, ``sessionLinesWritten``,
  ``sourcesModifiedSinceLastRun``, ``sourceFilesEdited``, ``toolsUsed``,
  ``signal``) are ORed. With at least one declared, the task runs only if
  one of them is met; otherwise the skip reason lists every trigger's
  measured value against its threshold.

Evaluation reads the watermark store, the result cache and session state
but never advances them.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from jsonschema import Draft7Validator

from provegate.globs import is_source_file, latest_mtime_ms
from provegate.paths import local_state_path
from provegate.run_cache import RunCache
from provegate.session import VALID_SIGNALS, SessionState
from provegate.variables import VariableResolver
from provegate.watermarks import WatermarkStore

log = logging.getLogger(__name__)

PREREQUISITE_KEYS = ("fileExists", "envSet", "envNotSet", "variablesPresent")
TRIGGER_KEYS = (
    "linesChanged",
    "linesWritten",
    "sessionLinesWritten",
    "sourcesModifiedSinceLastRun",
    "sourceFilesEdited",
    "toolsUsed",
    "signal",
)

_POSITIVE_INT = {"type": "integer", "exclusiveMinimum": 0}
_NON_EMPTY_STR = {"type": "string", "minLength": 1}
_STR_LIST = {"type": "array", "items": {"type": "string"}}

CONDITIONS_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "fileExists": _NON_EMPTY_STR,
        "envSet": _NON_EMPTY_STR,
        "envNotSet": _NON_EMPTY_STR,
        "variablesPresent": _STR_LIST,
        "linesChanged": _POSITIVE_INT,
        "linesWritten": _POSITIVE_INT,
        "sessionLinesWritten": _POSITIVE_INT,
        "sourcesModifiedSinceLastRun": {"type": "boolean"},
        "sourceFilesEdited": {"type": "boolean"},
        "toolsUsed": _STR_LIST,
        "signal": {"type": "string", "enum": list(VALID_SIGNALS)},
    },
    "additionalProperties": False,
}

_VALIDATOR = Draft7Validator(CONDITIONS_SCHEMA)


@dataclass
class EvalContext:
    """Everything an evaluation may look at, passed in explicitly."""

    root_dir: str
    project_dir: str | None = None
    session_id: str | None = None
    sources: list[str] | None = None
    tool_name: str | None = None
    tool_input: Mapping[str, Any] | None = None
    test_output: str = ""
    env: Mapping[str, str] = field(default_factory=lambda: os.environ)
    watermarks: WatermarkStore | None = None
    run_cache: RunCache | None = None
    sessions: SessionState | None = None

    def __post_init__(self) -> None:
        if self.project_dir is None:
            self.project_dir = self.root_dir
        if self.watermarks is None:
            self.watermarks = WatermarkStore(self.root_dir)
        if self.run_cache is None:
            self.run_cache = RunCache(local_state_path(self.project_dir))
        if self.sessions is None:
            self.sessions = SessionState()


@dataclass(frozen=True)
class Decision:
    run: bool
    reason: str | None = None
    progress: str | None = None

    def as_result(self) -> bool | str:
        return True if self.run else (self.reason or "skipped")


@dataclass(frozen=True)
class _TriggerReading:
    met: bool
    detail: str
    progress: str | None = None


def condition_error(conditions: object) -> str | None:
    """Return a skip reason for malformed conditions, naming the bad key."""
    if not isinstance(conditions, Mapping):
        return "invalid conditions: expected an object"
    for key in conditions:
        if key not in CONDITIONS_SCHEMA["properties"]:
            return f'unknown condition "{key}"'
    errors = sorted(_VALIDATOR.iter_errors(dict(conditions)), key=lambda e: list(e.path))
    if errors:
        first = errors[0]
        key = first.path[0] if first.path else "?"
        return f'invalid condition "{key}": {first.message}'
    return None


def explain(
    conditions: Mapping[str, Any] | None,
    context: EvalContext,
    task_name: str | None = None,
) -> Decision:
    """Evaluate *conditions* and keep the measured trigger progress."""
    if not conditions:
        return Decision(run=True)
    error = condition_error(conditions)
    if error:
        return Decision(run=False, reason=error)

    resolver = VariableResolver(context, task_name)
    for key, value in conditions.items():
        if key in PREREQUISITE_KEYS:
            failure = _check_prerequisite(key, value, context, resolver)
            if failure:
                return Decision(run=False, reason=failure)

    readings = _read_triggers(conditions, context, task_name)
    if not readings:
        return Decision(run=True)
    progress = ", ".join(r.progress for r in readings if r.progress) or None
    if any(r.met for r in readings):
        return Decision(run=True, progress=progress)
    reason = "Skipped because " + "; ".join(r.detail for r in readings)
    return Decision(run=False, reason=reason, progress=progress)


def evaluate(
    conditions: Mapping[str, Any] | None,
    context: EvalContext,
    task_name: str | None = None,
) -> bool | str:
    """Return True to run, or a one-line reason to skip."""
    return explain(conditions, context, task_name).as_result()


def trigger_progress(
    conditions: Mapping[str, Any] | None,
    context: EvalContext,
    task_name: str | None = None,
) -> str | None:
    """Compact threshold progress for logs, e.g. ``linesChanged: 388/500``.

    Prerequisites are not checked, so progress is reported even for a task
    that would be skipped on a prerequisite.
    """
    if not conditions or condition_error(conditions):
        return None
    readings = _read_triggers(conditions, context, task_name)
    return ", ".join(r.progress for r in readings if r.progress) or None


def _read_triggers(
    conditions: Mapping[str, Any], context: EvalContext, task_name: str | None
) -> list[_TriggerReading]:
    return [
        _TRIGGERS[key](value, context, task_name)
        for key, value in conditions.items()
        if key in TRIGGER_KEYS and value is not False
    ]


# ---------------------------------------------------------------------------
# Prerequisites
# ---------------------------------------------------------------------------


def _check_prerequisite(
    key: str, value: Any, context: EvalContext, resolver: VariableResolver
) -> str | None:
    if key == "fileExists":
        if not Path(context.root_dir, value).exists():
            return f"{value} does not exist"
    elif key == "envSet":
        if not context.env.get(value):
            return f"${value} was not set"
    elif key == "envNotSet":
        if context.env.get(value):
            return f"${value} was set"
    elif key == "variablesPresent":
        for name in value:
            if not resolver.is_known(name):
                return f"{{{{{name}}}}} is not a known variable"
            if not resolver.resolve(name).strip():
                return f"{{{{{name}}}}} was not present"
    return None


# ---------------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------------


def _threshold(
    key: str, measured: int, threshold: int, description: str
) -> _TriggerReading:
    return _TriggerReading(
        met=measured >= threshold,
        detail=f"only {measured} of {threshold} {description}",
        progress=f"{key}: {measured}/{threshold}",
    )


def _no_task(key: str) -> _TriggerReading:
    return _TriggerReading(met=False, detail=f"{key} needs a task name")


def _lines_changed(threshold: int, context: EvalContext, task: str | None) -> _TriggerReading:
    if not task:
        return _no_task("linesChanged")
    churn = context.watermarks.net_churn_since(task, context.sources)
    return _threshold("linesChanged", churn, threshold, "lines changed since last run")


def _lines_written(threshold: int, context: EvalContext, task: str | None) -> _TriggerReading:
    if not task:
        return _no_task("linesWritten")
    churn = context.watermarks.gross_churn_since(task)
    return _threshold("linesWritten", churn, threshold, "gross lines changed since last run")


def _session_lines(threshold: int, context: EvalContext, task: str | None) -> _TriggerReading:
    if not task:
        return _no_task("sessionLinesWritten")
    written = context.sessions.since_last_run(context.session_id, task)
    return _threshold(
        "sessionLinesWritten", written, threshold, "lines written this session since last run"
    )


def _sources_modified(_value: bool, context: EvalContext, task: str | None) -> _TriggerReading:
    record = context.run_cache.last_run(task) if task else None
    if record is None:
        return _TriggerReading(met=True, detail="never run before")
    modified = latest_mtime_ms(context.root_dir, context.sources) >= record.at
    return _TriggerReading(met=modified, detail="no sources modified since last run")


def _source_files_edited(
    _value: bool, context: EvalContext, _task: str | None
) -> _TriggerReading:
    files = context.sessions.turn_edits(context.session_id)["files"]
    edited = any(is_source_file(f, context.root_dir, context.sources) for f in files)
    return _TriggerReading(met=edited, detail="no source files edited this turn")


def _tools_used(tools: list[str], context: EvalContext, _task: str | None) -> _TriggerReading:
    used = set(context.sessions.turn_edits(context.session_id)["tools"])
    return _TriggerReading(
        met=bool(used.intersection(tools)),
        detail=f"none of {', '.join(tools) or '(no tools)'} used this turn",
    )


def _signal(kind: str, context: EvalContext, _task: str | None) -> _TriggerReading:
    current = context.sessions.get_signal(context.session_id)
    active = current is not None and current.get("type") == kind
    return _TriggerReading(met=active, detail=f'no "{kind}" signal set')


_TRIGGERS: dict[str, Callable[[Any, EvalContext, str | None], _TriggerReading]] = {
    "linesChanged": _lines_changed,
    "linesWritten": _lines_written,
    "sessionLinesWritten": _session_lines,
    "sourcesModifiedSinceLastRun": _sources_modified,
    "sourceFilesEdited": _source_files_edited,
    "toolsUsed": _tools_used,
    "signal": _signal,
}
