"""Dispatcher: resolve the tasks for an event, decide, and settle afterwards.

The host calls :meth:`Gate.plan` before running anything, runs the tasks
whose action is ``run`` itself, then reports each verdict back through
:meth:`Gate.settle` so watermarks, cached results and session counters
move according to the task's policy:

- pass: the watermark advances to a snapshot of the working tree and
  gross churn resets;
- fail: everything stays frozen, unless the task sets ``reset_on_fail``,
  in which case the watermark is forced onto the working-tree snapshot.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from provegate import git_ops
from provegate.conditions import Decision, EvalContext, explain
from provegate.config import is_ignored_path, load_effective_config
from provegate.paths import local_state_path
from provegate.run_cache import CacheLookup, RunCache
from provegate.session import SessionState
from provegate.watermarks import WatermarkStore

log = logging.getLogger(__name__)

Action = Literal["run", "skip", "cached-pass", "cached-fail"]

CHURN_TRIGGERS = ("linesChanged", "linesWritten")
CHANGES_VARIABLE = "changes_since_last_run"


@dataclass(frozen=True)
class Task:
    name: str
    event: str | None = None
    command: str | None = None
    when: Mapping[str, Any] | None = None
    reset_on_fail: bool = False
    mtime: bool = True
    enabled: bool = True
    sources: tuple[str, ...] | None = None

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> Task:
        sources = raw.get("sources")
        return cls(
            name=raw["name"],
            event=raw.get("event"),
            command=raw.get("command"),
            when=raw.get("when"),
            reset_on_fail=bool(raw.get("reset_on_fail", False)),
            mtime=bool(raw.get("mtime", True)),
            enabled=bool(raw.get("enabled", True)),
            sources=tuple(sources) if sources is not None else None,
        )

    @property
    def key(self) -> str:
        return git_ops.sanitize_ref_name(self.name)

    def declares(self, *condition_keys: str) -> bool:
        when = self.when if isinstance(self.when, Mapping) else {}
        return any(when.get(k) for k in condition_keys)

    @property
    def tracks_watermark(self) -> bool:
        """Whether settling moves this task's watermark ref.

        True for churn-gated tasks and for tasks that read
        ``{{changes_since_last_run}}``, which diffs against the ref.
        """
        if self.declares(*CHURN_TRIGGERS):
            return True
        when = self.when if isinstance(self.when, Mapping) else {}
        present = when.get("variablesPresent")
        return isinstance(present, list) and CHANGES_VARIABLE in present


@dataclass
class TaskPlan:
    task: Task
    action: Action
    decision: Decision
    cache: CacheLookup | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "task": self.task.name,
            "action": self.action,
            "reason": self.decision.reason,
            "progress": self.decision.progress,
        }
        if self.task.command:
            payload["command"] = self.task.command
        if self.cache and self.cache.record:
            payload["cached"] = self.cache.record.to_dict()
        return payload


@dataclass
class SettleResult:
    task: str
    passed: bool
    watermark: Literal["advanced", "reset", "frozen", "untracked"]
    ref: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "task": self.task,
            "passed": self.passed,
            "watermark": self.watermark,
            "ref": self.ref,
            **self.extra,
        }


def compute_write_lines(tool_name: str | None, tool_input: Mapping[str, Any] | None) -> int:
    """Estimate lines written by one tool call from its input alone.

    Known tools are read by schema. Any other editing tool is measured by
    its longest string argument.
    """
    if not tool_input:
        return 0

    def count(value: object) -> int:
        return len(value.split("\n")) if isinstance(value, str) else 0

    if tool_name == "Write":
        return count(tool_input.get("content"))
    if tool_name == "Edit":
        return count(tool_input.get("old_string")) + count(tool_input.get("new_string"))
    if tool_name == "MultiEdit":
        edits = tool_input.get("edits")
        if not isinstance(edits, list):
            return 0
        return sum(
            count(e.get("old_string")) + count(e.get("new_string"))
            for e in edits
            if isinstance(e, Mapping)
        )
    if tool_name == "NotebookEdit":
        if tool_input.get("edit_mode", "replace") == "delete":
            return 0
        return count(tool_input.get("new_source"))
    strings = [v for v in tool_input.values() if isinstance(v, str)]
    return count(max(strings, key=len)) if strings else 0


def resolve_root(project_dir: str | Path) -> str:
    """The repository root containing *project_dir*, or the dir itself."""
    return git_ops.git_root(project_dir) or str(Path(project_dir).resolve())


class Gate:
    """All gate state for one project and (optionally) one host session."""

    def __init__(
        self,
        project_dir: str | Path,
        *,
        session_id: str | None = None,
        config: Mapping[str, Any] | None = None,
        state_dir: str | Path | None = None,
        env: Mapping[str, str] | None = None,
        clock: Callable[[], float] | None = None,
    ):
        self.project_dir = str(Path(project_dir).resolve())
        self.root_dir = resolve_root(self.project_dir)
        self.session_id = session_id or None
        self.config = dict(config) if config is not None else load_effective_config(project_dir)
        self.env = env
        self.watermarks = WatermarkStore(self.root_dir)
        cache_path = local_state_path(self.project_dir)
        self.run_cache = RunCache(cache_path, clock) if clock else RunCache(cache_path)
        self.sessions = SessionState(state_dir)

    @property
    def tasks(self) -> list[Task]:
        return [Task.from_dict(raw) for raw in self.config.get("tasks", [])]

    def task(self, name: str) -> Task | None:
        return next((t for t in self.tasks if t.name == name), None)

    def inactive_reason(self) -> str | None:
        env = self.env if self.env is not None else os.environ
        if env.get("PROVEGATE_DISABLED"):
            return "disabled by $PROVEGATE_DISABLED"
        if self.config.get("enabled") is False:
            return "disabled in config"
        if is_ignored_path(self.project_dir, self.config.get("ignored_paths", [])):
            return "project is in ignored_paths"
        return None

    def sources_for(self, task: Task) -> list[str] | None:
        if task.sources is not None:
            return list(task.sources)
        return list(self.config.get("sources") or []) or None

    def context_for(
        self,
        task: Task,
        *,
        tool_name: str | None = None,
        tool_input: Mapping[str, Any] | None = None,
    ) -> EvalContext:
        extra: dict[str, Any] = {}
        if self.env is not None:
            extra["env"] = self.env
        return EvalContext(
            root_dir=self.root_dir,
            project_dir=self.project_dir,
            session_id=self.session_id,
            sources=self.sources_for(task),
            tool_name=tool_name,
            tool_input=tool_input,
            watermarks=self.watermarks,
            run_cache=self.run_cache,
            sessions=self.sessions,
            **extra,
        )

    # -- before running ----------------------------------------------------

    def plan(
        self,
        event: str,
        *,
        tool_name: str | None = None,
        tool_input: Mapping[str, Any] | None = None,
    ) -> list[TaskPlan]:
        """Decide, for every enabled task bound to *event*, what to do now."""
        if self.inactive_reason():
            return []
        plans = []
        for task in self.tasks:
            if task.event != event or not task.enabled:
                continue
            plans.append(self.plan_task(task, tool_name=tool_name, tool_input=tool_input))
        return plans

    def plan_task(
        self,
        task: Task,
        *,
        tool_name: str | None = None,
        tool_input: Mapping[str, Any] | None = None,
    ) -> TaskPlan:
        context = self.context_for(task, tool_name=tool_name, tool_input=tool_input)
        decision = explain(task.when, context, task.name)
        if not decision.run:
            plan = TaskPlan(task, "skip", decision)
        else:
            lookup = self.run_cache.lookup(
                task.name, self.root_dir, context.sources, enabled=task.mtime
            )
            if lookup.status == "hit-pass":
                plan = TaskPlan(task, "cached-pass", decision, lookup)
            elif lookup.status == "hit-fail":
                plan = TaskPlan(task, "cached-fail", decision, lookup)
            else:
                plan = TaskPlan(task, "run", decision, lookup)
        self.sessions.log_decision(
            self.session_id,
            self.project_dir,
            task.name,
            plan.action.upper(),
            decision.reason,
            triggerProgress=decision.progress,
        )
        return plan

    # -- after running -----------------------------------------------------

    def settle(self, task: Task, passed: bool) -> SettleResult:
        """Apply the post-run policy for one verdict."""
        if task.mtime:
            self.run_cache.record(task.name, passed)
        self.sessions.record_task_run(self.session_id, task.name)
        self.sessions.log_decision(
            self.session_id, self.project_dir, task.name, "PASS" if passed else "FAIL"
        )

        if not task.tracks_watermark:
            return SettleResult(task.name, passed, "untracked")
        sources = self.sources_for(task)
        log.debug("Settling %s (passed=%s)", task.name, passed)
        if passed:
            target = self.watermarks.snapshot_working_tree(sources)
            if target and self.watermarks.advance(task.name, target):
                return SettleResult(task.name, passed, "advanced", target)
            return SettleResult(task.name, passed, "frozen", self.watermarks.read(task.name))
        if task.reset_on_fail:
            snapshot = self.watermarks.snapshot_reset(task.name, sources)
            if snapshot:
                return SettleResult(task.name, passed, "reset", snapshot)
        return SettleResult(task.name, passed, "frozen", self.watermarks.read(task.name))

    def record_tool_write(
        self, tool_name: str | None, tool_input: Mapping[str, Any] | None
    ) -> int:
        """Account for one file-editing tool call; returns lines counted."""
        editing_tools: Sequence[str] = self.config.get("file_editing_tools", [])
        if not tool_name or tool_name not in editing_tools:
            return 0
        lines = compute_write_lines(tool_name, tool_input)
        file_path = ""
        if tool_input:
            file_path = tool_input.get("file_path") or tool_input.get("notebook_path") or ""
        if isinstance(file_path, str) and file_path:
            self.sessions.record_file_edit(self.session_id, tool_name, file_path)
        if lines <= 0:
            return 0
        self.sessions.record_write(self.session_id, lines)
        for task in self.tasks:
            if task.enabled and task.declares("linesWritten"):
                self.watermarks.increment_gross(task.name, lines)
        return lines
