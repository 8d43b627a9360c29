import json
import threading
from pathlib import Path
from unittest.mock import patch

import pytest

from provegate.state_io import append_jsonl, load_json, write_json_atomic


class TestLoadJson:
    def test_missing_is_none(self, tmp_path: Path) -> None:
        assert load_json(tmp_path / "nope.json") is None

    @pytest.mark.parametrize("text", ["{truncated", "[1, 2]", '"text"'])
    def test_malformed_is_none(self, tmp_path: Path, text: str) -> None:
        path = tmp_path / "state.json"
        path.write_text(text)
        assert load_json(path) is None


class TestWriteJsonAtomic:
    def test_creates_parents_and_round_trips(self, tmp_path: Path) -> None:
        path = tmp_path / "a" / "b" / "state.json"
        write_json_atomic(path, {"runs": {"t": {"at": 1, "result": "pass"}}})
        assert load_json(path) == {"runs": {"t": {"at": 1, "result": "pass"}}}

    def test_racing_writers_leave_one_whole_record(self, tmp_path: Path) -> None:
        path = tmp_path / "state.json"

        def writer(n: int) -> None:
            for i in range(20):
                write_json_atomic(path, {"writer": n, "i": i, "pad": "x" * 2000})

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        data = json.loads(path.read_text())
        assert data["i"] == 19
        assert [p.name for p in tmp_path.iterdir()] == ["state.json"]

    def test_failed_write_removes_temp_file(self, tmp_path: Path) -> None:
        path = tmp_path / "state.json"
        path.write_text('{"old": true}')
        with patch("provegate.state_io.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(OSError):
                write_json_atomic(path, {"new": True})
        assert load_json(path) == {"old": True}
        assert [p.name for p in tmp_path.iterdir()] == ["state.json"]


def test_append_jsonl(tmp_path: Path) -> None:
    path = tmp_path / "logs" / "s1.jsonl"
    append_jsonl(path, {"status": "RUN"})
    append_jsonl(path, {"status": "PASS"})
    assert [json.loads(line)["status"] for line in path.read_text().splitlines()] == [
        "RUN",
        "PASS",
    ]
