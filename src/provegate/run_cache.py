"""Mtime-based result cache for idempotent checks.

Records live in the project's local state file under ``runs``::

    {"runs": {"full-tests": {"at": 1718000000000, "result": "pass"}}}

A record stays valid while every tracked file is older than it. Older
state files stored ``{"at": ..., "pass": true}``; both shapes are read.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

from provegate.globs import latest_mtime_ms
from provegate.state_io import load_json, write_json_atomic

log = logging.getLogger(__name__)

CacheStatus = Literal["hit-pass", "hit-fail", "miss"]


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class RunRecord:
    at: float
    passed: bool

    @property
    def result(self) -> str:
        return "pass" if self.passed else "fail"

    def to_dict(self) -> dict[str, Any]:
        return {"at": self.at, "result": self.result}


@dataclass(frozen=True)
class CacheLookup:
    status: CacheStatus
    record: RunRecord | None

    @property
    def hit(self) -> bool:
        return self.status != "miss"


def parse_run_record(raw: object) -> RunRecord | None:
    """Decode either record shape; None for anything malformed."""
    if not isinstance(raw, dict):
        return None
    at = raw.get("at")
    if isinstance(at, bool) or not isinstance(at, (int, float)):
        return None
    result = raw.get("result")
    if result in ("pass", "fail"):
        return RunRecord(at=at, passed=result == "pass")
    legacy = raw.get("pass")
    if isinstance(legacy, bool):
        return RunRecord(at=at, passed=legacy)
    return None


class RunCache:
    """Cached verdicts for one project, keyed by task name."""

    def __init__(self, state_path: str | Path, clock: Callable[[], float] = _now_ms):
        self.state_path = Path(state_path)
        self._clock = clock

    def _runs(self) -> dict[str, Any]:
        data = load_json(self.state_path) or {}
        runs = data.get("runs")
        return runs if isinstance(runs, dict) else {}

    def last_run(self, task_name: str) -> RunRecord | None:
        return parse_run_record(self._runs().get(task_name))

    def lookup(
        self,
        task_name: str,
        root_dir: str | Path,
        sources: Sequence[str] | None,
        *,
        enabled: bool = True,
    ) -> CacheLookup:
        """Return a hit when the stored verdict still covers every tracked file.

        A cached failure is a hit too: re-running untouched, known-broken
        code gains nothing, so the caller re-announces it instead.
        """
        if not enabled:
            return CacheLookup("miss", None)
        record = self.last_run(task_name)
        if record is None:
            return CacheLookup("miss", None)
        if record.at <= latest_mtime_ms(root_dir, sources):
            return CacheLookup("miss", record)
        return CacheLookup("hit-pass" if record.passed else "hit-fail", record)

    def record(self, task_name: str, passed: bool) -> RunRecord:
        record = RunRecord(at=self._clock(), passed=passed)
        data = load_json(self.state_path) or {}
        runs = data.get("runs")
        if not isinstance(runs, dict):
            runs = {}
        runs[task_name] = record.to_dict()
        data["runs"] = runs
        try:
            write_json_atomic(self.state_path, data)
        except OSError as exc:
            log.warning("Could not write run cache %s: %s", self.state_path, exc)
            return record
        log.debug("Recorded %s for %s at %s", record.result, task_name, record.at)
        return record
