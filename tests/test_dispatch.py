"""Tests for planning and settling tasks."""

import shutil
from pathlib import Path

import pytest

from provegate.config import default_config
from provegate.dispatch import Gate, Task, compute_write_lines

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")


def _lines(n: int) -> str:
    return "".join(f"line {i}\n" for i in range(n))


def _gate(project: Path, tasks: list[dict], session_id: str | None = "s1", **kwargs) -> Gate:
    cfg = default_config()
    cfg["sources"] = ["**/*.js"]
    cfg["tasks"] = tasks
    kwargs.setdefault("env", {})
    return Gate(project, session_id=session_id, config=cfg, **kwargs)


class TestComputeWriteLines:
    def test_write(self) -> None:
        assert compute_write_lines("Write", {"content": "a\nb\nc"}) == 3

    def test_edit_counts_both_sides(self) -> None:
        assert compute_write_lines("Edit", {"old_string": "a\nb", "new_string": "c"}) == 3

    def test_multi_edit(self) -> None:
        edits = [{"old_string": "a", "new_string": "b\nc"}, {"old_string": "d", "new_string": ""}]
        assert compute_write_lines("MultiEdit", {"edits": edits}) == 5

    def test_notebook_edit(self) -> None:
        assert compute_write_lines("NotebookEdit", {"new_source": "x\ny"}) == 2
        assert compute_write_lines("NotebookEdit", {"edit_mode": "delete", "new_source": "x"}) == 0

    def test_unknown_tool_uses_longest_string(self) -> None:
        assert compute_write_lines("mcp__fs__write", {"path": "a", "body": "1\n2\n3\n4"}) == 4

    def test_empty_input(self) -> None:
        assert compute_write_lines("Write", None) == 0
        assert compute_write_lines("Write", {"content": 12}) == 0


class TestTask:
    def test_from_dict_defaults(self) -> None:
        task = Task.from_dict({"name": "full tests", "sources": ["a/**"]})
        assert task.mtime is True
        assert task.reset_on_fail is False
        assert task.sources == ("a/**",)
        assert task.key == "full_tests"

    def test_declares(self) -> None:
        task = Task.from_dict({"name": "t", "when": {"linesChanged": 5, "linesWritten": False}})
        assert task.declares("linesChanged")
        assert not task.declares("linesWritten")


class TestPlan:
    def test_only_enabled_tasks_for_event(self, tmp_path: Path) -> None:
        gate = _gate(
            tmp_path,
            [
                {"name": "a", "event": "stop"},
                {"name": "b", "event": "stop", "enabled": False},
                {"name": "c", "event": "edit"},
            ],
        )
        assert [p.task.name for p in gate.plan("stop")] == ["a"]

    def test_skip_carries_reason_and_progress(self, tmp_path: Path) -> None:
        gate = _gate(tmp_path, [{"name": "t", "event": "stop", "when": {"sessionLinesWritten": 9}}])
        gate.sessions.record_write("s1", 4)
        (plan,) = gate.plan("stop")
        assert plan.action == "skip"
        assert plan.to_dict() == {
            "task": "t",
            "action": "skip",
            "reason": "Skipped because only 4 of 9 lines written this session since last run",
            "progress": "sessionLinesWritten: 4/9",
        }

    def test_cached_pass_and_sticky_failure(self, tmp_path: Path) -> None:
        gate = _gate(tmp_path, [{"name": "t", "event": "stop", "command": "make test"}])
        (plan,) = gate.plan("stop")
        assert plan.action == "run"
        assert plan.to_dict()["command"] == "make test"

        gate.settle(gate.task("t"), passed=True)
        assert gate.plan("stop")[0].action == "cached-pass"
        gate.settle(gate.task("t"), passed=False)
        (plan,) = gate.plan("stop")
        assert plan.action == "cached-fail"
        assert plan.to_dict()["cached"]["result"] == "fail"

    def test_mtime_opt_out_always_runs(self, tmp_path: Path) -> None:
        gate = _gate(tmp_path, [{"name": "t", "event": "stop", "mtime": False}])
        gate.settle(gate.task("t"), passed=True)
        assert gate.plan("stop")[0].action == "run"

    def test_disabled_by_env(self, tmp_path: Path) -> None:
        gate = _gate(tmp_path, [{"name": "t", "event": "stop"}], env={"PROVEGATE_DISABLED": "1"})
        assert gate.inactive_reason() == "disabled by $PROVEGATE_DISABLED"
        assert gate.plan("stop") == []

    def test_ignored_path(self, tmp_path: Path) -> None:
        gate = _gate(tmp_path, [{"name": "t", "event": "stop"}])
        gate.config["ignored_paths"] = [str(tmp_path)]
        assert gate.plan("stop") == []

    def test_decisions_are_logged(self, tmp_path: Path) -> None:
        gate = _gate(tmp_path, [{"name": "t", "event": "stop", "when": {"signal": "done"}}])
        gate.plan("stop")
        log_file = gate.sessions.sessions_dir / "s1.jsonl"
        assert '"status": "SKIP"' in log_file.read_text()


class TestRecordToolWrite:
    def test_ignores_non_editing_tools(self, tmp_path: Path) -> None:
        gate = _gate(tmp_path, [])
        assert gate.record_tool_write("Bash", {"command": "ls\npwd"}) == 0
        assert gate.sessions.turn_edits("s1") == {"tools": [], "files": []}

    def test_counts_session_lines_and_turn_edits(self, tmp_path: Path) -> None:
        gate = _gate(tmp_path, [])
        lines = gate.record_tool_write("Write", {"file_path": "a.js", "content": "1\n2\n3"})
        assert lines == 3
        assert gate.sessions.since_last_run("s1", "anything") == 3
        assert gate.sessions.turn_edits("s1") == {"tools": ["Write"], "files": ["a.js"]}

    def test_unwritable_state_does_not_raise(self, tmp_path: Path) -> None:
        project = tmp_path / "project"
        project.mkdir()
        (project / ".provegate").write_text("")
        blocker = tmp_path / "blocker"
        blocker.write_text("")
        gate = _gate(project, [{"name": "t", "event": "stop"}], state_dir=blocker)

        assert gate.record_tool_write("Write", {"file_path": "a.js", "content": "1\n2"}) == 2
        result = gate.settle(gate.task("t"), passed=True)

        assert result.watermark == "untracked"
        assert gate.sessions.since_last_run("s1", "t") == 0
        assert gate.plan("stop")[0].action == "run"


@pytest.mark.slow
@requires_git
class TestSettle:
    def test_pass_advances_to_working_tree(self, repo: Path) -> None:
        gate = _gate(repo, [{"name": "t", "event": "stop", "when": {"linesChanged": 10}}])
        assert gate.plan("stop")[0].action == "skip"
        (repo / "a.js").write_text(_lines(20))
        assert gate.plan("stop")[0].action == "run"

        result = gate.settle(gate.task("t"), passed=True)

        assert result.watermark == "advanced"
        assert result.ref == gate.watermarks.read("t")
        assert gate.plan("stop")[0].decision.progress == "linesChanged: 0/10"

    def test_fail_freezes_by_default(self, repo: Path) -> None:
        gate = _gate(repo, [{"name": "t", "event": "stop", "when": {"linesChanged": 10}}])
        gate.plan("stop")
        before = gate.watermarks.read("t")
        (repo / "a.js").write_text(_lines(20))

        result = gate.settle(gate.task("t"), passed=False)

        assert result.watermark == "frozen"
        assert gate.watermarks.read("t") == before
        assert gate.plan("stop")[0].decision.progress == "linesChanged: 20/10"

    def test_reset_on_fail_snapshots(self, repo: Path) -> None:
        task = {"name": "t", "event": "stop", "reset_on_fail": True, "when": {"linesChanged": 10}}
        gate = _gate(repo, [task])
        gate.plan("stop")
        (repo / "a.js").write_text(_lines(20))

        result = gate.settle(gate.task("t"), passed=False)

        assert result.watermark == "reset"
        (plan,) = gate.plan("stop")
        assert plan.action == "skip"
        assert plan.decision.progress == "linesChanged: 0/10"

    def test_tasks_without_churn_triggers_leave_refs_alone(self, repo: Path) -> None:
        gate = _gate(repo, [{"name": "t", "event": "stop"}])
        assert gate.settle(gate.task("t"), passed=True).watermark == "untracked"
        assert gate.watermarks.read("t") is None

    def test_changes_variable_task_advances_on_pass(self, repo: Path) -> None:
        task = {
            "name": "review",
            "event": "stop",
            "mtime": False,
            "when": {"variablesPresent": ["changes_since_last_run"]},
        }
        gate = _gate(repo, [task])
        assert gate.plan("stop")[0].action == "skip"

        result = gate.settle(gate.task("review"), passed=True)
        assert result.watermark == "advanced"
        assert gate.plan("stop")[0].action == "skip"

        (repo / "a.js").write_text(_lines(5))
        assert gate.plan("stop")[0].action == "run"

    def test_record_tool_write_feeds_gross_counters(self, repo: Path) -> None:
        gate = _gate(
            repo,
            [
                {"name": "gross", "event": "stop", "when": {"linesWritten": 5}},
                {"name": "net", "event": "stop", "when": {"linesChanged": 5}},
            ],
        )
        edit = {"file_path": "a.js", "old_string": "a\nb", "new_string": "c\nd\ne"}
        gate.record_tool_write("Edit", edit)
        assert gate.watermarks.gross_churn_since("gross") == 5
        assert gate.watermarks.gross_churn_since("net") == 0

        plans = {p.task.name: p for p in gate.plan("stop")}
        assert plans["gross"].action == "run"
        assert plans["net"].action == "skip"

    def test_session_counter_resets_for_settled_task_only(self, repo: Path) -> None:
        gate = _gate(
            repo,
            [
                {"name": "a", "event": "stop", "when": {"sessionLinesWritten": 5}},
                {"name": "b", "event": "stop", "when": {"sessionLinesWritten": 5}},
            ],
        )
        gate.record_tool_write("Write", {"file_path": "x.js", "content": _lines(6)})
        gate.settle(gate.task("a"), passed=True)
        assert gate.sessions.since_last_run("s1", "a") == 0
        assert gate.sessions.since_last_run("s1", "b") == 7
