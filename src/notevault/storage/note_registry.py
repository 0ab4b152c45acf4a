"""Registry of the notes in one vault.

The registry owns every Note of a vault and indexes them by ID, by path,
and by lower-cased title and filename stem for link resolution. It also
owns the vault's SyncManager and CallbackManager.
"""
import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, ContextManager, Dict, Iterable, List, Optional, Tuple, Union

from notevault.config import config
from notevault.exceptions import (
    ErrorCode,
    NoteNotFoundError,
    NoteVaultError,
    PathValidationError,
    StorageError,
    ValidationError,
)
from notevault.models.schema import (
    HASH_KEY,
    ID_KEY,
    Backlink,
    Document,
    Frontmatter,
    generate_id,
)
from notevault.observability import timed_operation
from notevault.services.callback_manager import CallbackManager, NoteCallback
from notevault.services.document_index import DocumentIndex
from notevault.services.sync_manager import SyncManager
from notevault.storage.content_hash import compute_hash
from notevault.storage.extractor import find_backlinks, resolve_links
from notevault.storage.file_writer import atomic_write
from notevault.storage.markdown_parser import MarkdownParser, split_lines
from notevault.storage.note import Note
from notevault.utils import canonical_path, is_within_directory

logger = logging.getLogger(__name__)


class NoteRegistry:
    """In-memory index of a vault's notes, kept in sync with disk.

    Note methods are never called while the registry lock is held; notes
    call back into the registry from their own lock.
    """

    def __init__(
        self,
        vault_path: Optional[Union[str, Path]] = None,
        document_index: Optional[DocumentIndex] = None,
        watch: bool = True,
        use_polling: Optional[bool] = None,
        parser: Optional[MarkdownParser] = None,
    ):
        """Initialize the registry. Call ``scan_notes()`` to load the vault.

        Args:
            vault_path: Vault root. Defaults to ``config.vault_path``.
            document_index: Optional external index fed by the sync manager.
            watch: Start watching the vault for changes immediately.
            use_polling: Use the stat-polling observer. Defaults to config.
            parser: Parser shared by all notes.

        Raises:
            ValidationError: If no vault path is given or configured.
            PathValidationError: If the vault directory does not exist.
            SyncError: If the watcher cannot be started.
        """
        if vault_path is None:
            vault_path = config.get_vault_path()
        if vault_path is None or not str(vault_path).strip():
            raise ValidationError(
                "No vault path given and NOTEVAULT_VAULT_PATH is not set",
                field="vault_path",
                code=ErrorCode.EMPTY_IDENTIFIER,
            )
        self.vault_path = canonical_path(vault_path)
        if not self.vault_path.is_dir():
            raise PathValidationError(
                f"Vault path does not exist: {self.vault_path}",
                path=str(self.vault_path),
                code=ErrorCode.PATH_NOT_FOUND,
            )
        self.name = self.vault_path.name
        self.parser = parser or MarkdownParser()

        self._lock = threading.RLock()
        self._by_id: Dict[str, Note] = {}
        self._by_path: Dict[Path, Note] = {}
        # Lower-cased title / filename stem -> note IDs, rebuilt lazily
        self._by_title: Dict[str, List[str]] = {}
        self._by_stem: Dict[str, List[str]] = {}
        self._names_dirty = True
        # Note ID -> (path, title key) as of its last registration
        self._indexed_names: Dict[str, Tuple[Path, Optional[str]]] = {}

        self.callback_manager = CallbackManager(self.get_from_id)
        self.sync_manager = SyncManager(self, document_index, use_polling)
        if watch:
            self.sync_manager.start()
        logger.info(f"NoteRegistry opened for vault {self.vault_path}")

    def __enter__(self) -> "NoteRegistry":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_id)

    def __repr__(self) -> str:
        return f"NoteRegistry(vault_path={str(self.vault_path)!r}, notes={len(self)})"

    # Hooks used by Note

    def write_lock(self, path: Union[str, Path]) -> ContextManager[Path]:
        """Suppress watcher reactions to *path* while it is written."""
        return self.sync_manager.locked_path(path)

    def notify_changed(self, note_id: str) -> None:
        """Queue a change notification for the note's subscribers."""
        self.callback_manager.enqueue_update(note_id)

    # Indices

    @staticmethod
    def _name_key(note: Note) -> Tuple[Path, Optional[str]]:
        return note.path, note.title.lower() if note.title else None

    def _register(self, note: Note) -> None:
        self._by_id[note.id] = note
        self._by_path[note.path] = note
        self._indexed_names[note.id] = self._name_key(note)
        self._names_dirty = True

    def _unregister(self, note: Note) -> None:
        if self._by_id.get(note.id) is note:
            del self._by_id[note.id]
            self._indexed_names.pop(note.id, None)
        if self._by_path.get(note.path) is note:
            del self._by_path[note.path]
        self._names_dirty = True

    def _rebuild_name_indices(self) -> None:
        by_title: Dict[str, List[str]] = {}
        by_stem: Dict[str, List[str]] = {}
        for note_id, note in self._by_id.items():
            if note.title:
                by_title.setdefault(note.title.lower(), []).append(note_id)
            by_stem.setdefault(note.path.stem.lower(), []).append(note_id)
        self._by_title = by_title
        self._by_stem = by_stem
        self._names_dirty = False

    def resolve_link_target(self, target: str) -> Optional[str]:
        """Resolve a wiki-link target to a note ID.

        Matches titles case-insensitively first, then filename stems.
        """
        key = target.strip().lower()
        if not key:
            return None
        with self._lock:
            if self._names_dirty:
                self._rebuild_name_indices()
            ids = self._by_title.get(key) or self._by_stem.get(key)
            return ids[0] if ids else None

    def refresh_links(self, notes: Optional[Iterable[Note]] = None) -> int:
        """Re-resolve the internal links of *notes* (all notes by default).

        Returns:
            Number of links whose resolution changed.
        """
        if notes is None:
            notes = self.get_notes()
        changed = 0
        for note in notes:
            changed += resolve_links(note.internal_links, self.resolve_link_target)
        if changed:
            logger.debug(f"Re-resolved {changed} internal links")
        return changed

    def reindex_note(
        self, note: Note, old_path: Optional[Path] = None, old_id: Optional[str] = None
    ) -> None:
        """Update the indices after *note* was reloaded, moved, or saved.

        Other notes' links are re-resolved only when the note's title,
        path, or ID changed.
        """
        old_path = old_path or note.path
        old_id = old_id or note.id
        with self._lock:
            if self._by_id.get(old_id) is not note and self._by_path.get(old_path) is not note:
                return
            previous = self._indexed_names.get(old_id)
            names_changed = old_id != note.id or previous != self._name_key(note)
            if self._by_path.get(old_path) is note:
                del self._by_path[old_path]
            if self._by_id.get(old_id) is note:
                del self._by_id[old_id]
                self._indexed_names.pop(old_id, None)
            self._register(note)
        if names_changed:
            self.refresh_links()

    # Lookup

    def get_notes(self) -> List[Note]:
        """Return a snapshot of all registered notes."""
        with self._lock:
            return list(self._by_id.values())

    def get_from_id(self, note_id: str) -> Optional[Note]:
        with self._lock:
            return self._by_id.get(note_id)

    def get_from_path(self, path: Union[str, Path]) -> Optional[Note]:
        key = canonical_path(path)
        with self._lock:
            return self._by_path.get(key)

    def get_from_title(self, title: str) -> Optional[Note]:
        """Return the note whose title matches *title*, ignoring case."""
        note_id = self.resolve_link_target(title)
        return self.get_from_id(note_id) if note_id else None

    def find_by_tag(self, tag: str) -> List[Note]:
        """Return notes carrying *tag*; ``work`` also matches ``work/client``."""
        tag = tag.strip().lstrip("#")
        return [note for note in self.get_notes() if tag in note.tags]

    def get_backlinks(self, note_id: str) -> List[Backlink]:
        """Return every link from another note that resolves to *note_id*."""
        return find_backlinks(note_id, self.get_notes())

    # Mutation

    def _discover_files(self) -> List[Path]:
        files = []
        for root, dirs, names in os.walk(self.vault_path):
            # Hidden folders (.obsidian, .git, .trash) hold no notes
            dirs[:] = sorted(d for d in dirs if not d.startswith("."))
            for name in sorted(names):
                path = Path(root) / name
                if config.is_note_file(path):
                    files.append(canonical_path(path))
        return files

    def _load_note(self, path: Path) -> Note:
        note = Note(path, registry=self, parser=self.parser)
        with self._lock:
            owner = self._by_id.get(note.id)
            duplicate = owner is not None and owner is not note and owner.path != note.path
        if not duplicate:
            return note
        if owner.path.exists():
            logger.warning(
                f"{note.filename} duplicates id {note.id} of {owner.filename}; "
                "assigning a new id"
            )
            note.assign_new_id()
        else:
            # Moved before the delete of its old path was processed
            logger.info(f"Note {note.id} moved from {owner.filename} to {note.filename}")
            with self._lock:
                self._unregister(owner)
            owner.dispose()
        return note

    def scan_notes(self) -> int:
        """Rebuild the registry from the files in the vault.

        Notes that are already registered are reloaded in place, so callers
        holding them keep valid references. Files that cannot be loaded are
        logged and skipped; notes whose files are gone are removed.

        Returns:
            Number of notes registered after the scan.
        """
        with timed_operation("scan_notes", vault=self.name) as op:
            with self.sync_manager.paused():
                files = self._discover_files()
                logger.info(f"Found {len(files)} note files in {self.vault_path}")
                found = set()
                for path in files:
                    try:
                        existing = self.get_from_path(path)
                        if existing is not None:
                            existing.reload()
                            note = existing
                        else:
                            note = self._load_note(path)
                            with self._lock:
                                self._register(note)
                        found.add(note.path)
                    except NoteNotFoundError:
                        logger.warning(f"Note vanished during scan: {path.name}")
                    except NoteVaultError as e:
                        logger.error(f"Skipping {path.name}: {e}")
                    except Exception as e:
                        logger.error(f"Unexpected error loading {path.name}: {e}", exc_info=True)

                with self._lock:
                    stale = [n for p, n in self._by_path.items() if p not in found]
                    for note in stale:
                        self._unregister(note)
                for note in stale:
                    logger.info(f"Note no longer on disk: {note.filename}")
                    note.dispose()

            self.refresh_links()
            op["note_count"] = len(self)
        return len(self)

    def add_note(self, path: Union[str, Path]) -> Note:
        """Load the file at *path* and register it.

        Raises:
            PathValidationError: If *path* is outside the vault.
            ValidationError: If the path is already registered or not a note.
            NoteNotFoundError: If the file does not exist.
        """
        resolved = canonical_path(path)
        if not is_within_directory(resolved, self.vault_path):
            raise PathValidationError(
                f"Path {resolved} is outside the vault", path=str(resolved)
            )
        if self.get_from_path(resolved) is not None:
            raise ValidationError(
                f"Note already registered: {resolved.name}",
                field="path",
                value=str(resolved),
                code=ErrorCode.NOTE_ALREADY_EXISTS,
            )
        note = self._load_note(resolved)
        with self._lock:
            self._register(note)
        self.refresh_links()
        logger.info(f"Added note {note.filename} ({note.id})")
        return note

    def _resolve_new_path(self, path: Union[str, Path]) -> Path:
        candidate = Path(path)
        if not candidate.is_absolute():
            candidate = self.vault_path / candidate
        if candidate.suffix.lower() != config.note_extension.lower():
            candidate = candidate.with_name(candidate.name + config.note_extension)
        resolved = canonical_path(candidate)
        if not is_within_directory(resolved, self.vault_path) or resolved == self.vault_path:
            raise PathValidationError(
                f"Path {resolved} is outside the vault", path=str(resolved)
            )
        return resolved

    def create_note(
        self,
        path: Union[str, Path],
        body: str = "",
        frontmatter: Optional[Frontmatter] = None,
    ) -> Note:
        """Write a new note file and register it.

        Args:
            path: Location relative to the vault root (or absolute inside it).
                The note extension is appended when missing.
            body: Markdown body.
            frontmatter: Initial frontmatter; ``guid`` and ``hash`` are added.

        Raises:
            ValidationError: If the file already exists.
            PathValidationError: If the path is outside the vault.
            StorageError: If the file cannot be written.
        """
        resolved = self._resolve_new_path(path)
        if resolved.exists():
            raise ValidationError(
                f"File already exists: {resolved.name}",
                field="path",
                value=str(resolved),
                code=ErrorCode.NOTE_ALREADY_EXISTS,
            )

        body = "\n".join(split_lines(body))
        header: Frontmatter = {ID_KEY: [generate_id()], HASH_KEY: [compute_hash(body)]}
        for key, values in (frontmatter or {}).items():
            if key not in header:
                header[key] = list(values) if values else None
        content = self.parser.serialize(Document(frontmatter=header, body=body))

        try:
            resolved.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(
                f"Failed to create folder for {resolved.name}",
                operation="create",
                path=str(resolved),
                code=ErrorCode.STORAGE_WRITE_FAILED,
                original_error=e,
            ) from e
        with self.write_lock(resolved):
            atomic_write(resolved, content)
        logger.info(f"Created note file {resolved.name}")
        return self.add_note(resolved)

    def remove_note(self, note: Union[Note, str]) -> bool:
        """Unregister a note (given as Note or ID) and dispose it.

        The file on disk is not touched.

        Returns:
            True if the note was registered.
        """
        with self._lock:
            if isinstance(note, str):
                target = self._by_id.get(note)
            else:
                registered = (
                    self._by_id.get(note.id) is note or self._by_path.get(note.path) is note
                )
                target = note if registered else None
            if target is None:
                return False
            self._unregister(target)
        target.dispose()
        self.refresh_links()
        logger.info(f"Removed note {target.filename} from registry")
        return True

    # Host integration

    def subscribe(self, note_id: str, callback: NoteCallback) -> None:
        """Call *callback* with the note whenever its content changes."""
        self.callback_manager.subscribe(note_id, callback)

    def tick(self) -> int:
        """Keep sync processing alive and deliver pending notifications.

        Call periodically (``config.tick_interval``) from the host loop.

        Returns:
            Number of callbacks fired.
        """
        self.sync_manager.tick()
        return self.callback_manager.tick()

    def close(self) -> None:
        """Stop watching the vault."""
        self.sync_manager.stop()

    # Export

    def to_dict(self, include_body: bool = True) -> Dict[str, Any]:
        """Return a JSON-serializable dump of the vault."""
        notes = sorted(self.get_notes(), key=lambda n: str(n.path))
        dumped = []
        for note in notes:
            entry = note.to_dict(include_body=include_body)
            entry["backlinks"] = [b.model_dump() for b in self.get_backlinks(note.id)]
            dumped.append(entry)
        return {"vault_path": str(self.vault_path), "name": self.name, "notes": dumped}

    def export_json(self, path: Optional[Union[str, Path]] = None, indent: int = 2) -> str:
        """Serialize ``to_dict()`` as JSON, writing it to *path* if given."""
        text = json.dumps(self.to_dict(), indent=indent, ensure_ascii=False)
        if path is not None:
            atomic_write(Path(path), text)
            logger.info(f"Exported {len(self)} notes to {path}")
        return text
