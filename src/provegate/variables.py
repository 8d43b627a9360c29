"""Lazily resolved contextual variables (``{{staged_diff}}`` and friends)."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING, Any

from provegate.git_ops import git_head, git_output

if TYPE_CHECKING:
    from provegate.conditions import EvalContext


def _git_text(root_dir: str, *args: str) -> str:
    return git_output(root_dir, *args) or ""


_RESOLVERS: dict[str, Callable[[EvalContext, str | None], str]] = {
    "staged_diff": lambda ctx, _t: _git_text(ctx.root_dir, "diff", "--cached"),
    "staged_files": lambda ctx, _t: _git_text(ctx.root_dir, "diff", "--cached", "--name-only"),
    "working_diff": lambda ctx, _t: _git_text(ctx.root_dir, "diff"),
    "changed_files": lambda ctx, _t: _git_text(ctx.root_dir, "diff", "--name-only", "HEAD"),
    "changes_since_last_run": lambda ctx, task: (
        ctx.watermarks.diff_stat_since(task, ctx.sources) if task else ""
    ),
    "session_id": lambda ctx, _t: ctx.session_id or "",
    "project_dir": lambda ctx, _t: ctx.project_dir or "",
    "root_dir": lambda ctx, _t: ctx.root_dir or "",
    "git_head": lambda ctx, _t: git_head(ctx.root_dir) or "",
    "tool_command": lambda ctx, _t: _tool_field(ctx.tool_input, "command"),
    "file_path": lambda ctx, _t: (
        _tool_field(ctx.tool_input, "file_path") or _tool_field(ctx.tool_input, "notebook_path")
    ),
    "test_output": lambda ctx, _t: ctx.test_output or "",
}

KNOWN_VARIABLES: tuple[str, ...] = tuple(sorted(_RESOLVERS))


def _tool_field(tool_input: Mapping[str, Any] | None, key: str) -> str:
    if not tool_input:
        return ""
    value = tool_input.get(key)
    return value if isinstance(value, str) else ""


class VariableResolver:
    """Resolves each variable at most once per evaluation."""

    def __init__(self, context: EvalContext, task_name: str | None = None):
        self._context = context
        self._task_name = task_name
        self._cache: dict[str, str] = {}

    def is_known(self, name: str) -> bool:
        return name in _RESOLVERS

    def resolve(self, name: str) -> str:
        """Return the variable's value; raises KeyError for unknown names."""
        if name not in self._cache:
            self._cache[name] = _RESOLVERS[name](self._context, self._task_name)
        return self._cache[name]
