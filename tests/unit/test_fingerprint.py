"""Tests for partial log file fingerprints."""

import tempfile
from pathlib import Path

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from diagbundle.adapters.filesystem.fingerprint import fingerprint, head_lines, tail_lines

pytestmark = [pytest.mark.tier(1), pytest.mark.tra("Adapter.Filesystem.Fingerprint")]


def _write(path: Path, lines: list[str]) -> Path:
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


class TestHeadTail:
    """Tests for reading the ends of a file."""

    @pytest.mark.logs
    def test_head_lines(self, tmp_path: Path) -> None:
        path = _write(tmp_path / "a.log", [f"line {i}" for i in range(10)])

        assert head_lines(path, 3) == ["line 0", "line 1", "line 2"]

    @pytest.mark.logs
    def test_tail_lines(self, tmp_path: Path) -> None:
        path = _write(tmp_path / "a.log", [f"line {i}" for i in range(10)])

        assert tail_lines(path, 3) == ["line 7", "line 8", "line 9"]

    @pytest.mark.logs
    def test_tail_crosses_block_boundaries(self, tmp_path: Path) -> None:
        """Lines longer than a read block are returned whole."""
        lines = ["x" * 5000 + str(i) for i in range(6)]
        path = _write(tmp_path / "a.log", lines)

        assert tail_lines(path, 4) == lines[-4:]

    @pytest.mark.logs
    def test_short_file_returns_every_line(self, tmp_path: Path) -> None:
        path = _write(tmp_path / "a.log", ["only"])

        assert head_lines(path, 100) == ["only"]
        assert tail_lines(path, 100) == ["only"]

    @pytest.mark.logs
    def test_file_without_final_newline(self, tmp_path: Path) -> None:
        path = tmp_path / "a.log"
        path.write_text("a\nb\nc", encoding="utf-8")

        assert tail_lines(path, 2) == ["b", "c"]


class TestFingerprint:
    """Tests for fingerprint()."""

    @pytest.mark.logs
    def test_same_content_same_fingerprint(self, tmp_path: Path, system_log: str) -> None:
        """A copied (e.g. re-rotated) file has the fingerprint of the original."""
        first = tmp_path / "system.log"
        second = tmp_path / "system.log.1"
        first.write_text(system_log, encoding="utf-8")
        second.write_text(system_log, encoding="utf-8")

        assert fingerprint(first) == fingerprint(second)

    @pytest.mark.logs
    def test_different_ends_differ(self, tmp_path: Path) -> None:
        first = _write(tmp_path / "a.log", ["a", "b", "c"])
        second = _write(tmp_path / "b.log", ["a", "b", "d"])

        assert fingerprint(first, lines=1) != fingerprint(second, lines=1)

    @pytest.mark.logs
    @settings(max_examples=25, deadline=None)
    @given(
        middle=st.integers(min_value=10, max_value=239),
        text=st.text(alphabet="abc xyz", min_size=1, max_size=20),
    )
    def test_middle_edits_do_not_change_fingerprint(self, middle: int, text: str) -> None:
        """Only the first and last lines are hashed."""
        lines = [f"INFO line {i}" for i in range(250)]
        edited = list(lines)
        edited[middle] = f"edited {text}"

        with tempfile.TemporaryDirectory() as tmp:
            original = _write(Path(tmp) / "a.log", lines)
            changed = _write(Path(tmp) / "b.log", edited)

            assert fingerprint(original, lines=10) == fingerprint(changed, lines=10)
