"""Source glob matching and modification-time queries."""

from __future__ import annotations

import functools
import logging
import os
import re
from collections.abc import Sequence
from pathlib import Path

from provegate.git_ops import tracked_files

log = logging.getLogger(__name__)

_SKIPPED_DIRS = frozenset({"node_modules", "__pycache__"})


@functools.lru_cache(maxsize=256)
def glob_to_regex(glob: str) -> re.Pattern[str]:
    """Compile a path glob (``*``, ``?``, ``**``) into an anchored regex.

    ``*`` stays inside one path segment, ``**/`` matches zero or more
    directories and a bare ``**`` matches anything.
    """
    out: list[str] = []
    i = 0
    while i < len(glob):
        if glob.startswith("**/", i):
            out.append("(?:.*/)?")
            i += 3
        elif glob.startswith("**", i):
            out.append(".*")
            i += 2
        elif glob[i] == "*":
            out.append("[^/]*")
            i += 1
        elif glob[i] == "?":
            out.append("[^/]")
            i += 1
        else:
            out.append(re.escape(glob[i]))
            i += 1
    return re.compile("^" + "".join(out) + "$")


def expand_globs(root_dir: str | Path, globs: Sequence[str]) -> list[str]:
    """Return root-relative POSIX paths of files matching any glob.

    Hidden directories and dependency folders are not descended into.
    """
    root = Path(root_dir)
    patterns = [glob_to_regex(g) for g in globs]
    matches: list[str] = []
    for current, dirnames, filenames in os.walk(root, onerror=_log_walk_error):
        dirnames[:] = sorted(
            d for d in dirnames if not d.startswith(".") and d not in _SKIPPED_DIRS
        )
        for filename in sorted(filenames):
            rel = Path(current, filename).relative_to(root).as_posix()
            if any(p.match(rel) for p in patterns):
                matches.append(rel)
    return matches


def _log_walk_error(exc: OSError) -> None:
    log.debug("Skipping unreadable directory: %s", exc)


def is_source_file(file_path: str, root_dir: str | Path, sources: Sequence[str] | None) -> bool:
    """Whether *file_path* (absolute or root-relative) matches the source globs.

    With no globs configured every file under the root counts as source.
    """
    path = Path(file_path)
    if path.is_absolute():
        try:
            rel = path.relative_to(Path(root_dir)).as_posix()
        except ValueError:
            return False
    else:
        rel = path.as_posix()
        if rel.startswith(".."):
            return False
    if not sources:
        return True
    return any(glob_to_regex(g).match(rel) for g in sources)


def latest_mtime_ms(root_dir: str | Path, sources: Sequence[str] | None) -> float:
    """Newest modification time (epoch ms) across the tracked file set.

    The set is the source globs when configured, otherwise every
    git-tracked file. Returns 0 when no file could be stat'ed.
    """
    files = expand_globs(root_dir, sources) if sources else tracked_files(root_dir)
    newest = 0.0
    for rel in files:
        try:
            mtime = os.stat(Path(root_dir, rel)).st_mtime_ns / 1_000_000
        except OSError as exc:
            log.debug("stat failed for %s: %s", rel, exc)
            continue
        newest = max(newest, mtime)
    return newest
