"""Tests for the SyncManager event mapping and queue processing.

Handlers are called directly and the queue is drained with
process_pending(), so these tests need no real file system watcher.
"""
import os
import time

import pytest

from notevault.config import config
from notevault.models.schema import SyncOperation, SyncOperationType
from notevault.storage import note as note_module


def _record_operations(sync_manager, monkeypatch):
    recorded = []
    monkeypatch.setattr(sync_manager, "process", recorded.append)
    return recorded


def _wait_for(condition, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.02)
    return condition()


class TestPathLocking:
    """Tests for self-write suppression."""

    def test_locked_path_suppresses_change(self, sync_manager, vault_dir):
        path = vault_dir / "a.md"

        with sync_manager.locked_path(path):
            sync_manager.on_changed(path)
            assert sync_manager.is_locked(path)

        assert sync_manager.pending_count == 0
        sync_manager.on_changed(path)
        assert sync_manager.pending_count == 1

    def test_locks_nest(self, sync_manager, vault_dir):
        path = vault_dir / "a.md"

        with sync_manager.locked_path(path):
            with sync_manager.locked_path(path):
                pass
            assert sync_manager.is_locked(path)
        assert not sync_manager.is_locked(path)

    def test_grace_period(self, sync_manager, vault_dir, monkeypatch):
        monkeypatch.setattr(config, "write_lock_grace", 60.0)
        path = vault_dir / "a.md"

        with sync_manager.locked_path(path):
            pass

        assert sync_manager.is_locked(path)
        sync_manager.on_created(path)
        sync_manager.on_deleted(path)
        assert sync_manager.pending_count == 0

    def test_external_edit_during_grace_is_queued(self, sync_manager, write_file, monkeypatch):
        monkeypatch.setattr(config, "write_lock_grace", 60.0)
        path = write_file("a.md", "written by us")
        with sync_manager.locked_path(path):
            pass

        sync_manager.on_changed(path)
        assert sync_manager.pending_count == 0

        path.write_text("edited by someone else", encoding="utf-8")
        sync_manager.on_changed(path)
        assert sync_manager.pending_count == 1

    def test_delete_during_grace_is_queued(self, sync_manager, write_file, monkeypatch):
        monkeypatch.setattr(config, "write_lock_grace", 60.0)
        path = write_file("a.md", "written by us")
        with sync_manager.locked_path(path):
            pass
        path.unlink()

        sync_manager.on_deleted(path)

        assert sync_manager.pending_count == 1

    def test_edit_after_save_reaches_note(self, registry, sync_manager, write_file, monkeypatch):
        """An external edit right after an API save is reloaded, not dropped."""
        monkeypatch.setattr(config, "write_lock_grace", 1.0)
        path = write_file("a.md", "# A\noriginal")
        note = registry.add_note(path)
        note.body = "# A\nsaved by api"
        sync_manager.on_changed(path)
        assert sync_manager.pending_count == 0

        text = path.read_text(encoding="utf-8")
        path.write_text(text.replace("saved by api", "external edit #ext"), encoding="utf-8")
        sync_manager.on_changed(path)
        sync_manager.process_pending()

        assert note.body == "# A\nexternal edit #ext"
        assert note.tags == {"ext"}

    def test_locked_rename_source_ignored(self, sync_manager, vault_dir):
        src, dest = vault_dir / "a.md", vault_dir / "b.md"

        with sync_manager.locked_path(src):
            sync_manager.on_renamed(src, dest)

        assert sync_manager.pending_count == 0

    def test_save_runs_with_path_locked(self, registry, sync_manager, write_file, monkeypatch):
        """The note file is locked for the duration of a save."""
        path = write_file("a.md", "# A\ntext")
        note = registry.add_note(path)
        locked_during_write = []
        real_atomic_write = note_module.atomic_write

        def observing_write(target, content, *args, **kwargs):
            locked_during_write.append(sync_manager.is_locked(target))
            return real_atomic_write(target, content, *args, **kwargs)

        monkeypatch.setattr(note_module, "atomic_write", observing_write)
        note.body = "# A\nchanged"

        assert locked_during_write == [True]
        assert not sync_manager.is_locked(path)


class TestEventMapping:
    """Tests for mapping watcher events to queued operations."""

    def test_basic_mapping(self, sync_manager, vault_dir, monkeypatch):
        recorded = _record_operations(sync_manager, monkeypatch)
        a, b, c = (vault_dir / name for name in ("a.md", "b.md", "c.md"))

        sync_manager.on_changed(a)
        sync_manager.on_created(b)
        sync_manager.on_deleted(c)
        sync_manager.process_pending()

        assert recorded == [
            SyncOperation(SyncOperationType.UPDATE, a),
            SyncOperation(SyncOperationType.INDEX, b),
            SyncOperation(SyncOperationType.DELETE, c),
        ]

    def test_rename_is_delete_then_index(self, sync_manager, vault_dir, monkeypatch):
        recorded = _record_operations(sync_manager, monkeypatch)
        src, dest = vault_dir / "a.md", vault_dir / "b.md"

        sync_manager.on_renamed(src, dest)
        sync_manager.process_pending()

        assert recorded == [
            SyncOperation(SyncOperationType.DELETE, src),
            SyncOperation(SyncOperationType.INDEX, dest),
        ]

    def test_rename_onto_note_is_update(self, sync_manager, vault_dir, monkeypatch):
        """Editors save by renaming a temp file over the note."""
        recorded = _record_operations(sync_manager, monkeypatch)
        note = vault_dir / "a.md"

        sync_manager.on_renamed(vault_dir / "a.md.swp", note)
        sync_manager.process_pending()

        assert recorded == [SyncOperation(SyncOperationType.UPDATE, note)]

    def test_rename_to_non_note_is_delete(self, sync_manager, vault_dir, monkeypatch):
        recorded = _record_operations(sync_manager, monkeypatch)
        note = vault_dir / "a.md"

        sync_manager.on_renamed(note, vault_dir / "a.txt")
        sync_manager.process_pending()

        assert recorded == [SyncOperation(SyncOperationType.DELETE, note)]

    def test_non_note_files_ignored(self, sync_manager, vault_dir):
        sync_manager.on_created(vault_dir / "image.png")
        sync_manager.on_changed(vault_dir / "a.md.tmp")
        sync_manager.on_deleted(vault_dir / "a.md.bak")
        sync_manager.on_renamed(vault_dir / "x.tmp", vault_dir / "y.tmp")

        assert sync_manager.pending_count == 0

    def test_inactive_manager_ignores_events(self, sync_manager, vault_dir):
        sync_manager.active = False

        sync_manager.on_created(vault_dir / "a.md")

        assert sync_manager.pending_count == 0

    def test_paused_restores_active(self, sync_manager, vault_dir):
        with sync_manager.paused():
            sync_manager.on_created(vault_dir / "a.md")
            assert not sync_manager.active

        assert sync_manager.active
        assert sync_manager.pending_count == 0

    def test_fifo_order(self, sync_manager, vault_dir, monkeypatch):
        recorded = _record_operations(sync_manager, monkeypatch)
        paths = [vault_dir / f"n{i}.md" for i in range(20)]

        for path in paths:
            sync_manager.on_changed(path)
        processed = sync_manager.process_pending()

        assert processed == 20
        assert [op.path for op in recorded] == paths


class TestProcessing:
    """Tests for applying operations to the registry."""

    def test_created_file_is_indexed(self, registry, sync_manager, write_file, fake_index):
        path = write_file("a.md", "# A\nFirst line\n```\ncode line\n```\n1234\nLast line")

        sync_manager.on_created(path)
        sync_manager.process_pending()

        note = registry.get_from_path(path)
        assert note is not None
        assert fake_index.texts_for(note.id) == ["# A", "First line", "Last line"]
        content, metadata, index_name = fake_index.entries[f"{note.id}|1"]
        assert metadata["note_id"] == note.id
        assert index_name == config.index_name

    def test_update_reloads_and_notifies(self, registry, sync_manager, write_file, fake_index):
        path = write_file("a.md", "# A\nold #old")
        note = registry.add_note(path)
        received = []
        registry.subscribe(note.id, received.append)
        text = path.read_text(encoding="utf-8").replace("old #old", "new #new")
        path.write_text(text, encoding="utf-8")

        sync_manager.on_changed(path)
        sync_manager.process_pending()
        registry.callback_manager.tick()

        assert note.tags == {"new"}
        assert received == [note]
        assert fake_index.texts_for(note.id) == ["# A", "new #new"]

    def test_update_of_unknown_file_indexes_it(self, registry, sync_manager, write_file):
        path = write_file("a.md", "# A")

        sync_manager.on_changed(path)
        sync_manager.process_pending()

        assert registry.get_from_path(path) is not None

    def test_delete_removes_note_and_index_entries(
        self, registry, sync_manager, write_file, fake_index
    ):
        path = write_file("a.md", "# A\ntext")
        sync_manager.on_created(path)
        sync_manager.process_pending()
        note = registry.get_from_path(path)
        assert fake_index.keys_for(note.id)
        path.unlink()

        sync_manager.on_deleted(path)
        sync_manager.process_pending()

        assert registry.get_from_id(note.id) is None
        assert fake_index.keys_for(note.id) == []

    def test_delete_skipped_when_file_exists(self, registry, sync_manager, write_file):
        path = write_file("a.md", "# A")
        note = registry.add_note(path)

        sync_manager.on_deleted(path)
        sync_manager.process_pending()

        assert registry.get_from_id(note.id) is note

    def test_rename_keeps_identity(self, registry, sync_manager, write_file, vault_dir, fake_index):
        src = write_file("a.md", "# A\ntext")
        sync_manager.on_created(src)
        sync_manager.process_pending()
        note_id = registry.get_from_path(src).id
        dest = vault_dir / "renamed.md"
        os.rename(src, dest)

        sync_manager.on_renamed(src, dest)
        sync_manager.process_pending()

        assert registry.get_from_path(src) is None
        moved = registry.get_from_path(dest)
        assert moved.id == note_id
        assert registry.get_from_id(note_id) is moved
        assert fake_index.texts_for(note_id) == ["# A", "text"]

    def test_errors_do_not_stop_the_queue(self, registry, sync_manager, write_file, vault_dir):
        bad = vault_dir / "bad.md"
        bad.write_bytes(b"\xff\xfe\x00\xc3(")
        good = write_file("good.md", "# Good")

        sync_manager.on_created(bad)
        sync_manager.on_created(good)
        processed = sync_manager.process_pending()

        assert processed == 2
        assert registry.get_from_path(bad) is None
        assert registry.get_from_path(good) is not None


class TestWorker:
    """Tests for the background worker thread."""

    def test_tick_starts_worker(self, registry, sync_manager, write_file):
        path = write_file("a.md", "# A")

        sync_manager.tick()
        sync_manager.on_created(path)

        assert _wait_for(lambda: registry.get_from_path(path) is not None)
        sync_manager.stop()
        assert not sync_manager.active

    def test_tick_does_nothing_when_inactive(self, sync_manager):
        sync_manager.active = False

        sync_manager.tick()

        assert sync_manager._worker is None

    def test_process_pending_waits_for_worker(self, registry, sync_manager, write_file):
        path = write_file("a.md", "# A")
        sync_manager.tick()
        assert _wait_for(sync_manager._consumer_lock.locked)
        sync_manager.on_created(path)

        assert sync_manager.process_pending() == 0
        assert registry.get_from_path(path) is not None
        sync_manager.stop()


@pytest.mark.parametrize("event", ["on_changed", "on_created", "on_deleted"])
def test_handler_errors_are_logged(sync_manager, monkeypatch, event, caplog):
    def broken(operation):
        raise RuntimeError("queue broken")

    monkeypatch.setattr(sync_manager, "enqueue", broken)

    getattr(sync_manager, event)("/somewhere/a.md")

    assert "queue broken" in caplog.text
