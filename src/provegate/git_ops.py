"""Git operations backing the watermark store and contextual variables.

Query helpers never raise: a missing ``git`` binary, a non-repository
directory or a failing command all come back as None, "" or 0 so callers
can degrade to "nothing changed" instead of blocking the host.
"""

from __future__ import annotations

import contextlib
import logging
import re
import subprocess
from collections.abc import Iterator, Sequence
from pathlib import Path

from provegate.paths import REFS_NAMESPACE

log = logging.getLogger(__name__)

GIT_TIMEOUT_SECONDS = 30

# The object id git uses for a tree with no entries.
EMPTY_TREE = "4b825dc642cb6eb9a060e54bf8d69288fbee4904"

_REF_UNSAFE_RE = re.compile(r"[^A-Za-z0-9._-]")


def _git(
    cwd: str | Path,
    *args: str,
    stdin: str | None = None,
) -> subprocess.CompletedProcess[str] | None:
    """Run ``git -C cwd args...``; None when git itself could not run."""
    try:
        return subprocess.run(
            ["git", "-C", str(cwd), *args],
            input=stdin,
            capture_output=True,
            text=True,
            timeout=GIT_TIMEOUT_SECONDS,
        )
    except FileNotFoundError:
        log.debug("git binary not found")
        return None
    except subprocess.TimeoutExpired:
        log.warning("git %s timed out after %ss in %s", args[0], GIT_TIMEOUT_SECONDS, cwd)
        return None
    except OSError as exc:
        log.warning("git %s failed to start in %s: %s", args[0], cwd, exc)
        return None


def git_output(cwd: str | Path, *args: str) -> str | None:
    """Return stripped stdout of a successful git command, else None."""
    result = _git(cwd, *args)
    if result is None or result.returncode != 0:
        return None
    return result.stdout.strip()


def is_git_repo(directory: str | Path) -> bool:
    return git_output(directory, "rev-parse", "--is-inside-work-tree") == "true"


def git_root(directory: str | Path) -> str | None:
    return git_output(directory, "rev-parse", "--show-toplevel") or None


def git_head(directory: str | Path) -> str | None:
    """Return the HEAD commit sha, or None (non-repo or unborn branch)."""
    return git_output(directory, "rev-parse", "--verify", "--quiet", "HEAD") or None


def tracked_files(directory: str | Path) -> list[str]:
    out = git_output(directory, "ls-files")
    if not out:
        return []
    return [line for line in out.splitlines() if line]


# ---------------------------------------------------------------------------
# Refs
# ---------------------------------------------------------------------------


def sanitize_ref_name(task_name: str | None) -> str:
    """Map a task name onto a ref-safe key (``[A-Za-z0-9._-]``, rest ``_``)."""
    return _REF_UNSAFE_RE.sub("_", task_name or "")


def full_ref(ref_name: str) -> str:
    return f"{REFS_NAMESPACE}/{ref_name}"


def read_ref(directory: str | Path, ref_name: str) -> str | None:
    """Return the object id a provegate ref points at, or None."""
    return git_output(directory, "rev-parse", "--verify", "--quiet", full_ref(ref_name)) or None


def update_ref(
    directory: str | Path,
    ref_name: str,
    sha: str,
    old_sha: str | None = None,
) -> bool:
    """Point a provegate ref at *sha*.

    With *old_sha* the update is a compare-and-swap: git refuses it when the
    ref moved in the meantime. Returns False (and logs) on any failure.
    """
    args = ["update-ref", full_ref(ref_name), sha]
    if old_sha is not None:
        args.append(old_sha)
    result = _git(directory, *args)
    if result is None or result.returncode != 0:
        stderr = result.stderr.strip() if result is not None else "git unavailable"
        log.debug("update-ref %s -> %s failed: %s", ref_name, sha[:12], stderr)
        return False
    return True


def list_refs(directory: str | Path) -> list[str]:
    """Return full names of every ref under the provegate namespace."""
    out = git_output(directory, "for-each-ref", "--format=%(refname)", f"{REFS_NAMESPACE}/")
    if not out:
        return []
    return [line for line in out.splitlines() if line]


def delete_refs(directory: str | Path, refs: Sequence[str]) -> int:
    deleted = 0
    for ref in refs:
        result = _git(directory, "update-ref", "-d", ref)
        if result is not None and result.returncode == 0:
            deleted += 1
        else:
            log.warning("Failed to delete ref %s", ref)
    return deleted


def is_ancestor(directory: str | Path, ancestor: str, descendant: str) -> bool:
    """True when *ancestor* is reachable from *descendant* (or equal)."""
    result = _git(directory, "merge-base", "--is-ancestor", ancestor, descendant)
    return result is not None and result.returncode == 0


# ---------------------------------------------------------------------------
# Counter blobs
# ---------------------------------------------------------------------------


def write_blob(directory: str | Path, text: str) -> str | None:
    result = _git(directory, "hash-object", "-w", "--stdin", stdin=text)
    if result is None or result.returncode != 0 or not result.stdout.strip():
        return None
    return result.stdout.strip()


def read_int_blob(directory: str | Path, sha: str | None) -> int:
    """Parse a blob's content as an integer; 0 when missing or malformed."""
    if not sha:
        return 0
    out = git_output(directory, "cat-file", "blob", sha)
    if out is None:
        return 0
    try:
        return int(out)
    except ValueError:
        log.warning("Counter blob %s is not an integer: %r", sha[:12], out[:40])
        return 0


# ---------------------------------------------------------------------------
# Working-tree diffs
# ---------------------------------------------------------------------------


def source_pathspecs(globs: Sequence[str] | None) -> list[str]:
    """Build ``:(glob)`` pathspecs; no globs means every path."""
    patterns = list(globs) if globs else ["**"]
    return [f":(glob){pattern}" for pattern in patterns]


def find_untracked_sources(directory: str | Path, globs: Sequence[str] | None) -> list[str]:
    out = git_output(
        directory, "ls-files", "--others", "--exclude-standard", "--", *source_pathspecs(globs)
    )
    if not out:
        return []
    return [line for line in out.splitlines() if line]


def _unstage(directory: str | Path, files: Sequence[str]) -> None:
    """Return temporarily added files to the untracked state."""
    if not files:
        return
    if git_head(directory):
        result = _git(directory, "reset", "-q", "--", *files)
    else:
        result = _git(directory, "rm", "--cached", "-q", "-f", "--", *files)
    if result is None or result.returncode != 0:
        log.warning("Failed to restore %d untracked file(s) in %s", len(files), directory)


@contextlib.contextmanager
def untracked_included(
    directory: str | Path,
    globs: Sequence[str] | None,
    *,
    intent_only: bool = True,
) -> Iterator[list[str]]:
    """Temporarily add untracked source files to the index.

    ``intent_only`` uses ``git add -N`` so ``git diff`` sees the files;
    ``git stash create`` needs real content, so snapshots pass False.
    The index is restored on exit.
    """
    untracked = find_untracked_sources(directory, globs)
    if untracked:
        flag = ["-N"] if intent_only else []
        _git(directory, "add", *flag, "--", *untracked)
    try:
        yield untracked
    finally:
        _unstage(directory, untracked)


def parse_numstat(text: str) -> int:
    """Sum additions and deletions from ``git diff --numstat`` output.

    Binary files report ``-`` and contribute nothing.
    """
    total = 0
    for line in text.splitlines():
        parts = line.split("\t")
        if len(parts) < 3:
            continue
        for value in parts[:2]:
            if value.isdigit():
                total += int(value)
    return total


def numstat_churn(directory: str | Path, base: str, globs: Sequence[str] | None) -> int:
    """Lines added + removed between *base* and the working tree."""
    with untracked_included(directory, globs):
        result = _git(directory, "diff", "--numstat", base, "--", *source_pathspecs(globs))
    if result is None or result.returncode != 0:
        if result is not None:
            log.debug("diff --numstat %s failed: %s", base[:12], result.stderr.strip())
        return 0
    return parse_numstat(result.stdout)


def diff_stat(directory: str | Path, base: str, globs: Sequence[str] | None) -> str:
    with untracked_included(directory, globs):
        result = _git(directory, "diff", "--stat", base, "--", *source_pathspecs(globs))
    if result is None or result.returncode != 0:
        return ""
    return result.stdout.strip()


def snapshot_working_tree(directory: str | Path, globs: Sequence[str] | None) -> str | None:
    """Return a commit id capturing the current working tree.

    Staged, unstaged and untracked source files are all included, without
    touching the stash list or the working tree. A clean tree yields HEAD.
    """
    with untracked_included(directory, globs, intent_only=False):
        result = _git(directory, "stash", "create")
    if result is not None and result.returncode == 0 and result.stdout.strip():
        return result.stdout.strip()
    return git_head(directory)
