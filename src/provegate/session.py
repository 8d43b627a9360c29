"""Session-scoped state: write counters, turn edits, signals, decision log.

Everything here is keyed by the host's session id and only needs to
outlive that session. Calls without a session id read as empty and
write nothing.
"""

from __future__ import annotations

import hashlib
import logging
import time
from pathlib import Path
from typing import Any

from provegate.git_ops import sanitize_ref_name
from provegate.paths import sessions_dir
from provegate.state_io import append_jsonl, load_json, write_json_atomic

log = logging.getLogger(__name__)

VALID_SIGNALS = ("done", "stuck", "idle")


def project_log_name(project_dir: str) -> str:
    digest = hashlib.sha256(project_dir.encode()).hexdigest()[:12]
    return f"_project_{digest}.jsonl"


class SessionState:
    def __init__(self, base_dir: str | Path | None = None):
        self.sessions_dir = sessions_dir(base_dir)

    def _state_path(self, session_id: str) -> Path:
        return self.sessions_dir / f"{sanitize_ref_name(session_id)}.json"

    def load(self, session_id: str | None) -> dict[str, Any]:
        if not session_id:
            return {}
        return load_json(self._state_path(session_id)) or {}

    def get(self, session_id: str | None, key: str) -> Any:
        return self.load(session_id).get(key)

    def put(self, session_id: str | None, key: str, value: Any) -> None:
        if not session_id:
            return
        data = self.load(session_id)
        data[key] = value
        path = self._state_path(session_id)
        try:
            write_json_atomic(path, data)
        except OSError as exc:
            log.warning("Could not write session state %s: %s", path, exc)

    # -- write counter -----------------------------------------------------

    def record_write(self, session_id: str | None, line_count: int) -> None:
        """Add *line_count* lines to the session's running total."""
        if not session_id or line_count <= 0:
            return
        total = _as_int(self.get(session_id, "lines_written"))
        self.put(session_id, "lines_written", total + line_count)

    def record_task_run(self, session_id: str | None, task_key: str) -> None:
        """Zero the counter for one (session, task) pair; other tasks keep theirs."""
        if not session_id:
            return
        data = self.load(session_id)
        baselines = data.get("task_baselines")
        if not isinstance(baselines, dict):
            baselines = {}
        baselines[task_key] = _as_int(data.get("lines_written"))
        self.put(session_id, "task_baselines", baselines)

    def since_last_run(self, session_id: str | None, task_key: str) -> int:
        if not session_id:
            return 0
        data = self.load(session_id)
        baselines = data.get("task_baselines")
        baseline = 0
        if isinstance(baselines, dict):
            baseline = _as_int(baselines.get(task_key))
        return max(0, _as_int(data.get("lines_written")) - baseline)

    # -- turn tracking -----------------------------------------------------

    def record_file_edit(self, session_id: str | None, tool_name: str, file_path: str) -> None:
        if not session_id or not tool_name or not file_path:
            return
        current = self.turn_edits(session_id)
        tools = list(dict.fromkeys([*current["tools"], tool_name]))
        files = list(dict.fromkeys([*current["files"], file_path]))
        self.put(session_id, "turn_edits", {"tools": tools, "files": files})

    def turn_edits(self, session_id: str | None) -> dict[str, list[str]]:
        raw = self.get(session_id, "turn_edits")
        if not isinstance(raw, dict):
            return {"tools": [], "files": []}
        return {
            "tools": [t for t in raw.get("tools", []) if isinstance(t, str)],
            "files": [f for f in raw.get("files", []) if isinstance(f, str)],
        }

    def reset_turn(self, session_id: str | None) -> None:
        self.put(session_id, "turn_edits", None)

    # -- signals -----------------------------------------------------------

    def set_signal(self, session_id: str | None, kind: str, message: str | None = None) -> bool:
        if not session_id or kind not in VALID_SIGNALS:
            return False
        self.put(
            session_id,
            "signal",
            {"type": kind, "message": message, "at": int(time.time() * 1000)},
        )
        return True

    def get_signal(self, session_id: str | None) -> dict[str, Any] | None:
        raw = self.get(session_id, "signal")
        return raw if isinstance(raw, dict) else None

    def clear_signal(self, session_id: str | None) -> None:
        self.put(session_id, "signal", None)

    # -- decision log ------------------------------------------------------

    def log_decision(
        self,
        session_id: str | None,
        project_dir: str,
        task_name: str,
        status: str,
        reason: str | None = None,
        **extra: Any,
    ) -> None:
        """Append one RUN/SKIP/PASS/FAIL entry to the session's JSONL log."""
        if session_id:
            name = f"{sanitize_ref_name(session_id)}.jsonl"
        else:
            name = project_log_name(project_dir)
        entry: dict[str, Any] = {
            "at": int(time.time() * 1000),
            "task": task_name,
            "status": status,
            "reason": reason,
            "projectDir": project_dir,
            "sessionId": session_id,
        }
        entry.update({k: v for k, v in extra.items() if v is not None})
        try:
            append_jsonl(self.sessions_dir / name, entry)
        except OSError as exc:
            log.warning("Could not append decision log %s: %s", name, exc)


def _as_int(value: object) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        return 0
    return value
