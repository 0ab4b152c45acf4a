"""Tests for transactional note file writes."""
import os
import stat

import pytest

from notevault.exceptions import ErrorCode, NoteNotFoundError, StorageError
from notevault.storage import file_writer
from notevault.storage.file_writer import atomic_write, read_note_text, sibling_path


class TestRead:
    """Tests for read_note_text."""

    def test_preserves_line_endings(self, tmp_path):
        path = tmp_path / "a.md"
        path.write_bytes(b"one\r\ntwo")

        assert read_note_text(path) == "one\r\ntwo"

    def test_missing_file(self, tmp_path):
        with pytest.raises(NoteNotFoundError):
            read_note_text(tmp_path / "missing.md")

    def test_invalid_utf8(self, tmp_path):
        path = tmp_path / "bad.md"
        path.write_bytes(b"\xff\xfe\x00\xc3(")

        with pytest.raises(StorageError) as exc_info:
            read_note_text(path)
        assert exc_info.value.code == ErrorCode.STORAGE_READ_FAILED


class TestAtomicWrite:
    """Tests for atomic_write."""

    def test_sibling_path(self, tmp_path):
        assert sibling_path(tmp_path / "a.md", ".bak") == tmp_path / "a.md.bak"

    def test_creates_new_file(self, tmp_path):
        path = tmp_path / "new.md"

        atomic_write(path, "hello")

        assert path.read_text(encoding="utf-8") == "hello"
        assert sorted(p.name for p in tmp_path.iterdir()) == ["new.md"]

    def test_replaces_and_removes_backup(self, tmp_path):
        path = tmp_path / "a.md"
        path.write_text("old", encoding="utf-8")

        atomic_write(path, "new\ncontent")

        assert path.read_bytes() == b"new\ncontent"
        assert sorted(p.name for p in tmp_path.iterdir()) == ["a.md"]

    def test_keeps_file_mode(self, tmp_path):
        path = tmp_path / "a.md"
        path.write_text("old", encoding="utf-8")
        os.chmod(path, 0o640)

        atomic_write(path, "new")

        assert stat.S_IMODE(path.stat().st_mode) == 0o640

    def test_custom_suffixes(self, tmp_path, monkeypatch):
        path = tmp_path / "a.md"
        path.write_text("old", encoding="utf-8")
        seen = []
        real_replace = os.replace

        def recording_replace(src, dst):
            seen.append(os.path.basename(src))
            return real_replace(src, dst)

        monkeypatch.setattr(file_writer.os, "replace", recording_replace)

        atomic_write(path, "new", backup_suffix=".orig", temp_suffix=".part")

        assert seen == ["a.md.part"]
        assert path.read_text(encoding="utf-8") == "new"

    def test_failed_replace_restores_original(self, tmp_path, monkeypatch):
        path = tmp_path / "a.md"
        path.write_text("original", encoding="utf-8")
        real_replace = os.replace

        def failing_replace(src, dst):
            if str(src).endswith(".tmp"):
                raise OSError("disk full")
            return real_replace(src, dst)

        monkeypatch.setattr(file_writer.os, "replace", failing_replace)

        with pytest.raises(StorageError) as exc_info:
            atomic_write(path, "replacement")

        assert exc_info.value.code == ErrorCode.STORAGE_WRITE_FAILED
        assert path.read_text(encoding="utf-8") == "original"
        assert sorted(p.name for p in tmp_path.iterdir()) == ["a.md"]

    def test_failed_restore_is_reported(self, tmp_path, monkeypatch):
        path = tmp_path / "a.md"
        path.write_text("original", encoding="utf-8")

        def always_failing_replace(src, dst):
            raise OSError("read-only file system")

        monkeypatch.setattr(file_writer.os, "replace", always_failing_replace)

        with pytest.raises(StorageError) as exc_info:
            atomic_write(path, "replacement")

        assert exc_info.value.code == ErrorCode.STORAGE_RESTORE_FAILED
        assert path.read_text(encoding="utf-8") == "original"
        assert (tmp_path / "a.md.bak").read_text(encoding="utf-8") == "original"

    def test_failed_write_of_new_file(self, tmp_path):
        path = tmp_path / "missing-dir" / "a.md"

        with pytest.raises(StorageError) as exc_info:
            atomic_write(path, "text")

        assert exc_info.value.code == ErrorCode.STORAGE_WRITE_FAILED
        assert not path.exists()
