import os
from pathlib import Path

from provegate.globs import expand_globs, glob_to_regex, is_source_file, latest_mtime_ms


class TestGlobToRegex:
    def test_star_stays_in_segment(self) -> None:
        pattern = glob_to_regex("src/*.py")
        assert pattern.match("src/a.py")
        assert not pattern.match("src/pkg/a.py")

    def test_double_star_slash_matches_zero_or_more_dirs(self) -> None:
        pattern = glob_to_regex("**/*.js")
        assert pattern.match("a.js")
        assert pattern.match("web/app/a.js")
        assert not pattern.match("a.jsx")

    def test_bare_double_star(self) -> None:
        assert glob_to_regex("docs/**").match("docs/a/b/c.md")

    def test_question_mark_and_literals(self) -> None:
        pattern = glob_to_regex("v?.txt")
        assert pattern.match("v1.txt")
        assert not pattern.match("v10.txt")
        assert not glob_to_regex("a.b").match("aXb")


class TestExpandGlobs:
    def test_skips_hidden_and_dependency_dirs(self, tmp_path: Path) -> None:
        for rel in ["src/a.py", "src/sub/b.py", ".venv/c.py", "node_modules/d.py", "e.txt"]:
            path = tmp_path / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text("x")
        assert expand_globs(tmp_path, ["**/*.py"]) == ["src/a.py", "src/sub/b.py"]


class TestIsSourceFile:
    def test_relative_and_absolute(self, tmp_path: Path) -> None:
        assert is_source_file("src/a.py", tmp_path, ["src/**/*.py"])
        assert is_source_file(str(tmp_path / "src" / "a.py"), tmp_path, ["src/**/*.py"])
        assert not is_source_file("README.md", tmp_path, ["src/**/*.py"])

    def test_outside_root_is_never_source(self, tmp_path: Path) -> None:
        assert not is_source_file("/elsewhere/a.py", tmp_path, None)
        assert not is_source_file("../a.py", tmp_path, None)

    def test_no_globs_means_everything(self, tmp_path: Path) -> None:
        assert is_source_file("anything.bin", tmp_path, None)


class TestLatestMtime:
    def test_newest_matching_file(self, tmp_path: Path) -> None:
        old = tmp_path / "old.py"
        new = tmp_path / "new.py"
        other = tmp_path / "other.txt"
        for path in (old, new, other):
            path.write_text("x")
        os.utime(old, (1_000, 1_000))
        os.utime(new, (2_000, 2_000))
        os.utime(other, (9_000, 9_000))
        assert latest_mtime_ms(tmp_path, ["*.py"]) == 2_000_000

    def test_nothing_tracked_is_zero(self, tmp_path: Path) -> None:
        assert latest_mtime_ms(tmp_path, ["*.py"]) == 0
        # Not a repository and no globs: git lists nothing.
        assert latest_mtime_ms(tmp_path, None) == 0
