"""Per-task churn watermarks.

Each task owns two independent values, both stored in git under
``refs/worktree/provegate/``:

- ``<key>`` points at the commit (or synthetic working-tree snapshot)
  that the task has already accounted for. Net churn is the numstat diff
  between it and the current working tree.
- ``<key>.__gross_lines`` points at a blob holding an integer: lines
  written since the watermark was last reset, reverted lines included.

Outside a git repository every task reads as zero churn.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from pathlib import Path

from provegate import git_ops
from provegate.git_ops import sanitize_ref_name

log = logging.getLogger(__name__)

GROSS_SUFFIX = ".__gross_lines"
CAS_ATTEMPTS = 3


class WatermarkStore:
    """Reads and advances the watermarks of one repository."""

    def __init__(self, root_dir: str | Path):
        self.root_dir = str(root_dir)
        self._is_repo: bool | None = None

    @property
    def is_repo(self) -> bool:
        if self._is_repo is None:
            self._is_repo = git_ops.is_git_repo(self.root_dir)
        return self._is_repo

    # -- net churn ---------------------------------------------------------

    def read(self, task_key: str) -> str | None:
        if not self.is_repo:
            return None
        return git_ops.read_ref(self.root_dir, sanitize_ref_name(task_key))

    def net_churn_since(self, task_key: str, patterns: Sequence[str] | None) -> int:
        """Lines added + removed since the watermark, working tree included.

        A task without a watermark is bootstrapped at HEAD, so edits that
        are already uncommitted count on the first reading. With no commits
        at all the diff is taken against the empty tree.
        """
        if not self.is_repo:
            return 0
        key = sanitize_ref_name(task_key)
        base = git_ops.read_ref(self.root_dir, key)
        if base is None:
            head = git_ops.git_head(self.root_dir)
            if head is None:
                return git_ops.numstat_churn(self.root_dir, git_ops.EMPTY_TREE, patterns)
            git_ops.update_ref(self.root_dir, key, head)
            log.debug("Bootstrapped watermark %s at %s", key, head[:12])
            base = head
        return git_ops.numstat_churn(self.root_dir, base, patterns)

    def diff_stat_since(self, task_key: str, patterns: Sequence[str] | None) -> str:
        base = self.read(task_key)
        if base is None:
            return ""
        return git_ops.diff_stat(self.root_dir, base, patterns)

    def advance(self, task_key: str, to_commit: str | None = None) -> bool:
        """Move the watermark to *to_commit* (default HEAD), zeroing gross churn.

        Refuses to move back to an ancestor of the current watermark while
        that watermark is still part of HEAD's history. A watermark left
        behind by a rewind or rebase, or a synthetic snapshot, may move.
        """
        if not self.is_repo:
            return False
        target = to_commit or git_ops.git_head(self.root_dir)
        if not target:
            return False
        key = sanitize_ref_name(task_key)
        current = git_ops.read_ref(self.root_dir, key)
        if current and current != target and self._would_regress(current, target):
            log.info(
                "Refusing to move watermark %s back from %s to %s", key, current[:12], target[:12]
            )
            return False
        if not git_ops.update_ref(self.root_dir, key, target):
            return False
        self._write_gross(key, 0)
        return True

    def snapshot_reset(self, task_key: str, patterns: Sequence[str] | None) -> str | None:
        """Force the watermark onto a snapshot of the current working tree.

        Used after a failed reset-on-fail task: uncommitted edits are
        counted as accounted for, so the same failure is not re-offered
        until new changes arrive.
        """
        if not self.is_repo:
            return None
        snapshot = git_ops.snapshot_working_tree(self.root_dir, patterns)
        if snapshot is None:
            return None
        key = sanitize_ref_name(task_key)
        if not git_ops.update_ref(self.root_dir, key, snapshot):
            return None
        self._write_gross(key, 0)
        return snapshot

    def snapshot_working_tree(self, patterns: Sequence[str] | None) -> str | None:
        if not self.is_repo:
            return None
        return git_ops.snapshot_working_tree(self.root_dir, patterns)

    def _would_regress(self, current: str, target: str) -> bool:
        if not git_ops.is_ancestor(self.root_dir, target, current):
            return False
        head = git_ops.git_head(self.root_dir)
        return head is not None and git_ops.is_ancestor(self.root_dir, current, head)

    # -- gross churn -------------------------------------------------------

    def gross_churn_since(self, task_key: str) -> int:
        if not self.is_repo:
            return 0
        key = sanitize_ref_name(task_key)
        sha = git_ops.read_ref(self.root_dir, key + GROSS_SUFFIX)
        if sha is None:
            self._write_gross(key, 0)
            return 0
        return git_ops.read_int_blob(self.root_dir, sha)

    def increment_gross(self, task_key: str, n: int) -> None:
        """Add *n* written lines, retrying when a racing writer wins the CAS."""
        if n <= 0 or not self.is_repo:
            return
        ref_name = sanitize_ref_name(task_key) + GROSS_SUFFIX
        for _ in range(CAS_ATTEMPTS):
            old_sha = git_ops.read_ref(self.root_dir, ref_name)
            value = git_ops.read_int_blob(self.root_dir, old_sha) + n
            new_sha = git_ops.write_blob(self.root_dir, str(value))
            if new_sha is None:
                return
            # An empty old value asserts the ref does not exist yet.
            if git_ops.update_ref(self.root_dir, ref_name, new_sha, old_sha or ""):
                return
        log.warning("Gave up incrementing %s after %d attempts", ref_name, CAS_ATTEMPTS)

    def _write_gross(self, key: str, value: int) -> None:
        sha = git_ops.write_blob(self.root_dir, str(value))
        if sha is not None:
            git_ops.update_ref(self.root_dir, key + GROSS_SUFFIX, sha)

    # -- maintenance -------------------------------------------------------

    def status(self, task_keys: Iterable[str]) -> list[dict[str, object]]:
        """Describe each task's watermark without bootstrapping anything."""
        rows: list[dict[str, object]] = []
        for task_key in task_keys:
            gross_ref = sanitize_ref_name(task_key) + GROSS_SUFFIX
            gross_sha = git_ops.read_ref(self.root_dir, gross_ref) if self.is_repo else None
            rows.append(
                {
                    "task": task_key,
                    "ref": self.read(task_key),
                    "gross_lines": git_ops.read_int_blob(self.root_dir, gross_sha),
                }
            )
        return rows

    def delete_all(self) -> int:
        """Drop every provegate watermark; returns how many refs went away."""
        if not self.is_repo:
            return 0
        return git_ops.delete_refs(self.root_dir, git_ops.list_refs(self.root_dir))
