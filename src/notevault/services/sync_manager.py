"""Keeps a NoteRegistry in step with the files on disk.

A watchdog observer reports file system events for the vault. Events are
mapped to Index, Update and Delete operations and put on a FIFO queue,
which a single consumer drains in order. Paths the registry is writing
itself are locked so the resulting events do not bounce back as reloads.
"""
import contextlib
import logging
import os
import queue
import threading
import time
import weakref
from pathlib import Path
from typing import TYPE_CHECKING, Dict, Iterator, Optional, Tuple, Union

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.polling import PollingObserver

from notevault.config import config
from notevault.exceptions import ErrorCode, PathValidationError, SyncError
from notevault.models.schema import SyncOperation, SyncOperationType
from notevault.observability import timed_operation
from notevault.services.document_index import (
    DocumentIndex,
    note_key_prefix,
    note_to_index_lines,
)
from notevault.utils import canonical_path

if TYPE_CHECKING:
    from notevault.storage.note import Note
    from notevault.storage.note_registry import NoteRegistry

logger = logging.getLogger(__name__)

# (inode, size, mtime in ns) of a file as a writer left it
FileSignature = Tuple[int, int, int]


class VaultEventHandler(FileSystemEventHandler):
    """Forwards watchdog file events to a SyncManager.

    Runs on the observer thread, so it only ever enqueues.
    """

    def __init__(self, sync_manager: "SyncManager"):
        super().__init__()
        self._sync = sync_manager

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._sync.on_created(os.fsdecode(event.src_path))

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._sync.on_changed(os.fsdecode(event.src_path))

    def on_deleted(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._sync.on_deleted(os.fsdecode(event.src_path))

    def on_moved(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._sync.on_renamed(
                os.fsdecode(event.src_path), os.fsdecode(event.dest_path)
            )


class SyncManager:
    """Watches a vault and applies file changes to its registry."""

    def __init__(
        self,
        registry: "NoteRegistry",
        document_index: Optional[DocumentIndex] = None,
        use_polling: Optional[bool] = None,
    ):
        """Initialize the sync manager. The watcher is not started yet.

        Args:
            registry: Registry to keep in sync. Only a weak reference is kept.
            document_index: Optional external index fed with note text.
            use_polling: Use the stat-polling observer. Defaults to config.

        Raises:
            PathValidationError: If the registry's vault directory is missing.
        """
        self._registry_ref = weakref.ref(registry)
        self.vault_path = canonical_path(registry.vault_path)
        if not self.vault_path.is_dir():
            raise PathValidationError(
                f"Vault path does not exist: {self.vault_path}",
                path=str(self.vault_path),
                code=ErrorCode.PATH_NOT_FOUND,
            )
        self.document_index = document_index
        self.use_polling = config.use_polling_observer if use_polling is None else use_polling

        # Gates event handling; cleared during bulk scans
        self.active = False

        self._queue: "queue.Queue[SyncOperation]" = queue.Queue()
        # Only one thread may drain the queue at a time, so operations
        # apply in FIFO order.
        self._consumer_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._worker: Optional[threading.Thread] = None
        self._observer = None

        # Multiset of paths being written, plus post-release grace deadlines
        self._locked_paths: Dict[Path, int] = {}
        self._grace_until: Dict[Path, Tuple[float, Optional[FileSignature]]] = {}
        self._paths_lock = threading.Lock()

    @property
    def registry(self) -> Optional["NoteRegistry"]:
        return self._registry_ref()

    @property
    def is_watching(self) -> bool:
        return self._observer is not None and self._observer.is_alive()

    @property
    def pending_count(self) -> int:
        """Approximate number of queued operations."""
        return self._queue.qsize()

    def __enter__(self) -> "SyncManager":
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()

    # Watcher lifecycle

    def start(self) -> None:
        """Start the file system observer and enable event handling.

        Raises:
            SyncError: If the observer cannot be started.
        """
        if self.is_watching:
            self.active = True
            return
        if self.use_polling:
            observer = PollingObserver(timeout=config.polling_interval)
        else:
            observer = Observer()
        try:
            observer.schedule(VaultEventHandler(self), str(self.vault_path), recursive=True)
            observer.daemon = True
            observer.start()
        except OSError as e:
            raise SyncError(
                f"Failed to start watcher for {self.vault_path}",
                operation="start",
                original_error=e,
            ) from e
        self._observer = observer
        self._stop_event.clear()
        self.active = True
        logger.info(
            f"SyncManager watching {self.vault_path} "
            f"({'polling' if self.use_polling else 'native'} observer)"
        )

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        """Stop the worker and the observer.

        An operation already being applied completes; anything still queued
        stays queued.
        """
        self.active = False
        self._stop_event.set()
        worker = self._worker
        if worker is not None and worker.is_alive() and worker is not threading.current_thread():
            worker.join(timeout)
            if worker.is_alive():
                logger.warning("Sync worker did not stop within timeout")
        self._worker = None

        observer = self._observer
        if observer is not None:
            observer.stop()
            observer.join(timeout)
            self._observer = None
        logger.info(f"SyncManager stopped for {self.vault_path}")

    @contextlib.contextmanager
    def paused(self) -> Iterator[None]:
        """Ignore file system events for the duration of the block."""
        was_active = self.active
        self.active = False
        try:
            yield
        finally:
            self.active = was_active

    # Self-write suppression

    @staticmethod
    def _file_signature(path: Path) -> Optional[FileSignature]:
        try:
            st = path.stat()
        except OSError:
            return None
        return st.st_ino, st.st_size, st.st_mtime_ns

    @contextlib.contextmanager
    def locked_path(self, path: Union[str, Path]) -> Iterator[Path]:
        """Suppress watcher reactions to *path* while it is being written.

        Locks nest: a path stays locked until every holder has released it.
        For ``config.write_lock_grace`` seconds afterwards, events are still
        swallowed as long as the file looks exactly as the last writer left
        it, so late events for our own write are ignored but a genuine edit
        in that window is not.
        """
        key = canonical_path(path)
        with self._paths_lock:
            self._locked_paths[key] = self._locked_paths.get(key, 0) + 1
        try:
            yield key
        finally:
            signature = self._file_signature(key)
            with self._paths_lock:
                remaining = self._locked_paths[key] - 1
                if remaining:
                    self._locked_paths[key] = remaining
                else:
                    del self._locked_paths[key]
                if config.write_lock_grace > 0:
                    self._grace_until[key] = (
                        time.monotonic() + config.write_lock_grace,
                        signature,
                    )

    def is_locked(self, path: Union[str, Path]) -> bool:
        """True if *path* is being written, or was just written and is unchanged."""
        key = canonical_path(path)
        now = time.monotonic()
        with self._paths_lock:
            if key in self._locked_paths:
                return True
            grace = self._grace_until.get(key)
            if grace is None:
                return False
            deadline, signature = grace
            if deadline <= now:
                del self._grace_until[key]
                return False
        return self._file_signature(key) == signature

    # Event mapping

    def enqueue(self, operation: SyncOperation) -> None:
        self._queue.put(operation)
        logger.debug(f"Enqueued {operation}; queue size {self._queue.qsize()}")

    def on_changed(self, path: Union[str, Path]) -> None:
        """Handle a content change of *path*."""
        if not self.active:
            return
        try:
            resolved = canonical_path(path)
            if not config.is_note_file(resolved):
                return
            if self.is_locked(resolved):
                logger.debug(f"Ignoring change to locked file: {resolved}")
                return
            logger.info(f"File changed: {resolved}")
            self.enqueue(SyncOperation(SyncOperationType.UPDATE, resolved))
        except Exception as e:
            logger.error(f"Error handling file change for {path}: {e}", exc_info=True)

    def on_created(self, path: Union[str, Path]) -> None:
        """Handle creation of *path*."""
        if not self.active:
            return
        try:
            resolved = canonical_path(path)
            if not config.is_note_file(resolved):
                return
            if self.is_locked(resolved):
                logger.debug(f"Ignoring creation of locked file: {resolved}")
                return
            logger.info(f"File created: {resolved}")
            self.enqueue(SyncOperation(SyncOperationType.INDEX, resolved))
        except Exception as e:
            logger.error(f"Error handling file creation for {path}: {e}", exc_info=True)

    def on_deleted(self, path: Union[str, Path]) -> None:
        """Handle deletion of *path*."""
        if not self.active:
            return
        try:
            resolved = canonical_path(path)
            if not config.is_note_file(resolved):
                return
            if self.is_locked(resolved):
                logger.debug(f"Ignoring deletion of locked file: {resolved}")
                return
            logger.info(f"File deleted: {resolved}")
            self.enqueue(SyncOperation(SyncOperationType.DELETE, resolved))
        except Exception as e:
            logger.error(f"Error handling file deletion for {path}: {e}", exc_info=True)

    def on_renamed(self, src_path: Union[str, Path], dest_path: Union[str, Path]) -> None:
        """Handle a rename of *src_path* to *dest_path*.

        A rename between two notes becomes Delete(src) followed by
        Index(dest). Editors that save by renaming a temp file over the note
        produce a rename onto a note from a non-note, which is an Update.
        """
        if not self.active:
            return
        try:
            src = canonical_path(src_path)
            dest = canonical_path(dest_path)
            src_is_note = config.is_note_file(src)
            dest_is_note = config.is_note_file(dest)

            if src_is_note and dest_is_note:
                if self.is_locked(src):
                    logger.debug(f"Ignoring rename of locked file: {src} -> {dest}")
                    return
                logger.info(f"File renamed: {src} -> {dest}")
                self.enqueue(SyncOperation(SyncOperationType.DELETE, src))
                self.enqueue(SyncOperation(SyncOperationType.INDEX, dest))
            elif dest_is_note:
                if self.is_locked(dest):
                    logger.debug(f"Ignoring replacement of locked file: {dest}")
                    return
                logger.info(f"File replaced: {dest}")
                self.enqueue(SyncOperation(SyncOperationType.UPDATE, dest))
            elif src_is_note:
                if self.is_locked(src):
                    logger.debug(f"Ignoring rename of locked file: {src} -> {dest}")
                    return
                logger.info(f"Note renamed to non-note file: {src} -> {dest}")
                self.enqueue(SyncOperation(SyncOperationType.DELETE, src))
        except Exception as e:
            logger.error(
                f"Error handling file rename from {src_path} to {dest_path}: {e}",
                exc_info=True,
            )

    # Queue consumption

    def tick(self) -> None:
        """Make sure the worker thread is draining the queue. Never blocks."""
        if not self.active:
            return
        if self._worker is None or not self._worker.is_alive():
            self._stop_event.clear()
            self._worker = threading.Thread(
                target=self._run, name="notevault-sync", daemon=True
            )
            self._worker.start()

    def _run(self) -> None:
        logger.info("Starting sync queue processing")
        with self._consumer_lock:
            while not self._stop_event.is_set():
                try:
                    operation = self._queue.get(timeout=config.queue_poll_interval)
                except queue.Empty:
                    continue
                try:
                    self.process(operation)
                finally:
                    self._queue.task_done()
        logger.info("Sync queue processing stopped")

    def process_pending(self) -> int:
        """Drain the queue on the calling thread.

        If the worker thread is running, waits for it to drain the queue
        instead.

        Returns:
            Number of operations processed on the calling thread.
        """
        if not self._consumer_lock.acquire(blocking=False):
            self._wait_for_worker()
            return 0
        processed = 0
        try:
            while True:
                try:
                    operation = self._queue.get_nowait()
                except queue.Empty:
                    break
                try:
                    self.process(operation)
                finally:
                    self._queue.task_done()
                processed += 1
        finally:
            self._consumer_lock.release()
        return processed

    def _wait_for_worker(self) -> None:
        done = self._queue.all_tasks_done
        with done:
            while self._queue.unfinished_tasks and self._worker is not None and self._worker.is_alive():
                done.wait(config.queue_poll_interval)

    def process(self, operation: SyncOperation) -> None:
        """Apply one operation to the registry. Errors are logged, not raised."""
        registry = self.registry
        if registry is None:
            logger.warning(f"Registry gone; dropping {operation}")
            return
        try:
            with timed_operation(f"sync_{operation.type.value}", path=operation.path.name):
                if operation.type == SyncOperationType.INDEX:
                    self._index_note(registry, operation.path)
                elif operation.type == SyncOperationType.UPDATE:
                    self._update_note(registry, operation.path)
                elif operation.type == SyncOperationType.DELETE:
                    self._delete_note(registry, operation.path)
        except Exception as e:
            logger.error(f"Failed to process {operation}: {e}", exc_info=True)

    def _index_note(self, registry: "NoteRegistry", path: Path) -> None:
        if not path.is_file():
            logger.debug(f"Skipping index of vanished file: {path}")
            return
        note = registry.get_from_path(path)
        if note is not None:
            note.reload()
        else:
            note = registry.add_note(path)
        logger.info(f"Indexed note {note.filename} ({note.id})")
        self._index_document(note)

    def _update_note(self, registry: "NoteRegistry", path: Path) -> None:
        note = registry.get_from_path(path)
        if note is None:
            self._index_note(registry, path)
            return
        if not path.is_file():
            logger.debug(f"Skipping update of vanished file: {path}")
            return
        note.reload()
        logger.info(f"Updated note {note.filename}")
        self._index_document(note)

    def _delete_note(self, registry: "NoteRegistry", path: Path) -> None:
        if path.exists():
            logger.debug(f"Skipping delete; file still exists: {path}")
            return
        note = registry.get_from_path(path)
        if note is None:
            logger.debug(f"Deleted file was not registered: {path}")
            return
        self._purge_document(note.id)
        registry.remove_note(note)
        logger.info(f"Removed note {note.filename} ({note.id})")

    # Document index feeding

    def _purge_document(self, note_id: str) -> int:
        if self.document_index is None or not note_id:
            return 0
        prefix = note_key_prefix(note_id)
        removed = self.document_index.purge(lambda key: key.startswith(prefix))
        logger.debug(f"Purged {removed} index entries for note {note_id}")
        return removed

    def _index_document(self, note: "Note") -> None:
        if self.document_index is None:
            return
        self._purge_document(note.id)
        entries = note_to_index_lines(note)
        for key, text in entries:
            self.document_index.index_document(
                text,
                metadata={"note_id": note.id, "title": note.title, "path": str(note.path)},
                key=key,
                index_name=config.index_name,
            )
        logger.debug(f"Indexed {len(entries)} lines of {note.filename}")
