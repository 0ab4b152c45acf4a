"""The Note entity: one markdown file's parsed state.

A Note is loaded eagerly on construction. Loading guarantees the file
carries a ``guid`` and a ``hash`` in its frontmatter, inserting them in
place when they are missing. The body is read lazily and cached;
assigning to ``body`` saves the note.
"""
import contextlib
import datetime
import logging
import threading
import weakref
from pathlib import Path
from typing import TYPE_CHECKING, Any, ContextManager, Dict, List, Optional, Set, Union

from notevault.config import config
from notevault.exceptions import (
    ConsistencyError,
    ErrorCode,
    PathValidationError,
    ValidationError,
)
from notevault.models.schema import (
    DATE_MODIFIED_KEY,
    HASH_KEY,
    ID_KEY,
    Document,
    ExternalLink,
    Frontmatter,
    InternalLink,
    NoteState,
    generate_id,
)
from notevault.storage.content_hash import compute_hash, hash_lines, hash_matches, with_hash
from notevault.storage.extractor import (
    extract_external_links,
    extract_internal_links,
    extract_tags,
)
from notevault.storage.file_writer import atomic_write, read_note_text
from notevault.storage.markdown_parser import (
    MarkdownParser,
    body_lines,
    find_frontmatter_bounds,
    insert_frontmatter_entry,
    replace_frontmatter_entry,
    split_lines,
)
from notevault.utils import canonical_path, is_within_directory

if TYPE_CHECKING:
    from notevault.storage.note_registry import NoteRegistry

logger = logging.getLogger(__name__)


class Note:
    """A markdown note backed by a file in the vault.

    Attributes:
        path: Canonical absolute path of the file.
        filename: File name including extension.
        title: First H1 heading, or the filename stem.
        frontmatter: Insertion-ordered frontmatter mapping.
        tags: Tag set with hierarchical tags expanded.
        internal_links: ``[[wiki]]`` links found in the body.
        external_links: ``[text](url)`` links found in the body.
        state: Lifecycle state.
    """

    def __init__(
        self,
        path: Union[str, Path],
        registry: Optional["NoteRegistry"] = None,
        parser: Optional[MarkdownParser] = None,
    ):
        """Load a note from disk.

        Args:
            path: Path of the note file.
            registry: Owning registry. Only a weak reference is kept.
            parser: Parser to use; a fresh MarkdownParser by default.

        Raises:
            NoteNotFoundError: If the file does not exist.
            StorageError: If the file cannot be read or written.
            PathValidationError: If the path is outside the registry's vault.
            ValidationError: If the path lacks the note extension.
        """
        self._registry_ref = weakref.ref(registry) if registry is not None else None
        self._parser = parser or MarkdownParser()
        self._lock = threading.RLock()

        self.path = self._validate_path(path)
        self.filename = self.path.name
        self.title: Optional[str] = None
        self.frontmatter: Frontmatter = {}
        self.tags: Set[str] = set()
        self.internal_links: List[InternalLink] = []
        self.external_links: List[ExternalLink] = []
        self.state = NoteState.UNLOADED
        self._body_cache: Optional[str] = None

        self._load()
        self.state = NoteState.LOADED
        logger.debug(
            f"Loaded note {self.filename} (id={self.id}, {len(self.tags)} tags, "
            f"{len(self.internal_links)} internal links)"
        )

    def __repr__(self) -> str:
        return f"Note(path={str(self.path)!r}, state={self.state.value})"

    @property
    def registry(self) -> Optional["NoteRegistry"]:
        """The owning registry, or None if detached or garbage-collected."""
        if self._registry_ref is None:
            return None
        return self._registry_ref()

    @property
    def id(self) -> str:
        """The note's GUID as stored in the ``guid`` frontmatter key."""
        values = self.frontmatter.get(ID_KEY)
        return values[0] if values else ""

    @property
    def hash(self) -> str:
        """The stored body hash as of the last load, save, or validation."""
        values = self.frontmatter.get(HASH_KEY)
        return values[0] if values else ""

    @property
    def body(self) -> str:
        """The text after the frontmatter block, read lazily and cached."""
        with self._lock:
            self._ensure_active()
            if self._body_cache is None:
                self._body_cache = self._read_body()
            return self._body_cache

    @body.setter
    def body(self, value: str) -> None:
        with self._lock:
            self._ensure_active()
            self._body_cache = value
        self.save()

    def _ensure_active(self) -> None:
        if self.state == NoteState.DISPOSED:
            raise ValidationError(
                f"Note {self.filename} has been disposed",
                field="state",
                value=self.state.value,
                code=ErrorCode.NOTE_DISPOSED,
            )

    def _validate_path(self, path: Union[str, Path], must_exist: bool = False) -> Path:
        resolved = canonical_path(path)
        if not config.is_note_file(resolved):
            raise ValidationError(
                f"Not a note file: {resolved.name}",
                field="path",
                value=str(resolved),
                code=ErrorCode.INVALID_EXTENSION,
            )
        registry = self.registry
        if registry is not None and not is_within_directory(resolved, registry.vault_path):
            raise PathValidationError(
                f"Path {resolved} is outside the vault", path=str(resolved)
            )
        if must_exist and not resolved.is_file():
            raise PathValidationError(
                f"Path {resolved} does not exist",
                path=str(resolved),
                code=ErrorCode.PATH_NOT_FOUND,
            )
        return resolved

    def _write_lock(self) -> ContextManager[Any]:
        registry = self.registry
        if registry is None:
            return contextlib.nullcontext()
        return registry.write_lock(self.path)

    def _write(self, content: str) -> None:
        with self._write_lock():
            atomic_write(self.path, content)

    def _read_lines(self) -> List[str]:
        return split_lines(read_note_text(self.path))

    def _read_body(self) -> str:
        return "\n".join(body_lines(self._read_lines()))

    def _parse(self, lines: List[str]) -> Document:
        return self._parser.parse_lines(lines, self.path)

    def _load(self, known_id: Optional[str] = None) -> None:
        """Read the file and bring its guid and hash up to date.

        Args:
            known_id: ID to reinsert if the file lost its ``guid`` line.
        """
        lines = self._read_lines()
        document = self._parse(lines)

        if not document.first_value(ID_KEY):
            note_id = known_id or generate_id()
            lines = replace_frontmatter_entry(
                lines, ID_KEY, note_id
            ) or insert_frontmatter_entry(lines, ID_KEY, note_id)
            self._write("\n".join(lines))
            document = self._parse(lines)
            logger.info(f"Assigned id {note_id} to {self.filename}")
        elif known_id and document.first_value(ID_KEY) != known_id:
            logger.warning(
                f"Note {self.filename} changed id on disk from {known_id} "
                f"to {document.first_value(ID_KEY)}"
            )

        self.title = document.title
        self.frontmatter = document.frontmatter

        if HASH_KEY in self.frontmatter:
            self._validate_hash_lines(lines)
        else:
            digest = hash_lines(lines)
            lines = insert_frontmatter_entry(lines, HASH_KEY, digest)
            self._write("\n".join(lines))
            self.frontmatter = self._parse(lines).frontmatter
            logger.debug(f"Inserted hash into {self.filename}")

        self._extract_metadata(document.body)

    def _extract_metadata(self, body: str) -> None:
        registry = self.registry
        resolver = registry.resolve_link_target if registry is not None else None
        self.tags = extract_tags(Document(frontmatter=self.frontmatter, body=body))
        self.internal_links = extract_internal_links(body, resolver)
        self.external_links = extract_external_links(body)

    def _validate_hash_lines(self, lines: List[str]) -> bool:
        if find_frontmatter_bounds(lines) is None:
            raise ConsistencyError(
                f"Note {self.filename} has no frontmatter block",
                path=str(self.path),
            )
        stored = self._parse(lines).frontmatter
        if HASH_KEY not in stored:
            raise ConsistencyError(
                f"Note {self.filename} has no hash line",
                path=str(self.path),
                code=ErrorCode.HASH_LINE_MISSING,
            )

        stored_values = stored[HASH_KEY]
        if hash_matches(lines, stored_values[0] if stored_values else None):
            return True

        digest = hash_lines(lines)
        updated = with_hash(lines, digest)
        if updated is None:
            raise ConsistencyError(
                f"Note {self.filename} has no hash line",
                path=str(self.path),
                code=ErrorCode.HASH_LINE_MISSING,
            )
        self._write("\n".join(updated))
        self.frontmatter[HASH_KEY] = [digest]
        self._body_cache = None
        logger.info(f"Content of {self.filename} changed; hash updated")

        registry = self.registry
        if registry is not None and self.id:
            registry.notify_changed(self.id)
        return False

    def validate_hash(self) -> bool:
        """Compare the stored hash with the hash of the body on disk.

        On mismatch only the ``hash:`` line is rewritten and subscribers of
        this note are notified.

        Returns:
            True if the hash was current, False if it had to be updated.

        Raises:
            ConsistencyError: If the frontmatter block or hash line is missing.
            NoteNotFoundError: If the file no longer exists.
        """
        with self._lock:
            self._ensure_active()
            return self._validate_hash_lines(self._read_lines())

    def assign_new_id(self) -> str:
        """Replace the note's GUID with a freshly generated one.

        Used when a copied file carries the GUID of another note.

        Raises:
            ConsistencyError: If the file has lost its ``guid`` line.
        """
        with self._lock:
            self._ensure_active()
            new_id = generate_id()
            updated = replace_frontmatter_entry(self._read_lines(), ID_KEY, new_id)
            if updated is None:
                raise ConsistencyError(
                    f"Note {self.filename} has no guid line", path=str(self.path)
                )
            self._write("\n".join(updated))
            old_id = self.id
            self.frontmatter[ID_KEY] = [new_id]
        logger.info(f"Reassigned id of {self.filename} from {old_id} to {new_id}")
        return new_id

    def _snapshot(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "filename": self.filename,
            "title": self.title,
            "frontmatter": {
                k: list(v) if v is not None else None for k, v in self.frontmatter.items()
            },
            "tags": set(self.tags),
            "internal_links": list(self.internal_links),
            "external_links": list(self.external_links),
            "body_cache": self._body_cache,
            "state": self.state,
        }

    def _restore(self, snapshot: Dict[str, Any]) -> None:
        self.path = snapshot["path"]
        self.filename = snapshot["filename"]
        self.title = snapshot["title"]
        self.frontmatter = snapshot["frontmatter"]
        self.tags = snapshot["tags"]
        self.internal_links = snapshot["internal_links"]
        self.external_links = snapshot["external_links"]
        self._body_cache = snapshot["body_cache"]
        self.state = snapshot["state"]

    def reload(self, path: Optional[Union[str, Path]] = None) -> None:
        """Re-read the note from disk, optionally from a new location.

        On any failure the note is left exactly as it was before the call.

        Args:
            path: New location after a rename. Must exist inside the vault.

        Raises:
            NoteNotFoundError: If the file no longer exists.
            PathValidationError: If *path* is missing or outside the vault.
            StorageError: On I/O failure.
        """
        with self._lock:
            self._ensure_active()
            snapshot = self._snapshot()
            old_path = self.path
            old_id = self.id
            self.state = NoteState.RELOADING
            try:
                if path is not None:
                    self.path = self._validate_path(path, must_exist=True)
                    self.filename = self.path.name
                self._body_cache = None
                self._load(known_id=old_id)
            except Exception:
                self._restore(snapshot)
                raise
            self.state = NoteState.LOADED

        logger.debug(f"Reloaded note {self.filename}")
        registry = self.registry
        if registry is not None:
            registry.reindex_note(self, old_path=old_path, old_id=old_id)

    def save(self) -> None:
        """Write the note back to disk.

        Refreshes ``date modified`` when the note carries one and stores the
        hash of the body being written.

        Raises:
            StorageError: If the write fails; the original file is restored.
        """
        with self._lock:
            self._ensure_active()
            if self._body_cache is None:
                self._body_cache = self._read_body()
            snapshot = self._snapshot()
            body = "\n".join(split_lines(self._body_cache))

            try:
                if DATE_MODIFIED_KEY in self.frontmatter:
                    self.frontmatter[DATE_MODIFIED_KEY] = [
                        datetime.datetime.now().strftime(config.date_modified_format)
                    ]
                self.frontmatter[HASH_KEY] = [compute_hash(body)]

                document = Document(
                    title=self.title,
                    frontmatter=self.frontmatter,
                    body=body,
                    has_frontmatter=True,
                )
                self._write(self._parser.serialize(document))
            except Exception:
                self._restore(snapshot)
                raise

            self._body_cache = body
            self.title = self._parser.extract_title(split_lines(body), self.path)
            self._extract_metadata(body)
            self._validate_hash_lines(self._read_lines())

        logger.debug(f"Saved note {self.filename}")
        registry = self.registry
        if registry is not None:
            registry.reindex_note(self, old_path=self.path, old_id=self.id)

    def dispose(self) -> None:
        """Mark the note as no longer usable and drop its cached body."""
        with self._lock:
            self.state = NoteState.DISPOSED
            self._body_cache = None

    def to_dict(self, include_body: bool = False) -> Dict[str, Any]:
        """Return a JSON-serializable view of the note."""
        result: Dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "path": str(self.path),
            "filename": self.filename,
            "hash": self.hash,
            "frontmatter": dict(self.frontmatter),
            "tags": sorted(self.tags),
            "internal_links": [link.model_dump() for link in self.internal_links],
            "external_links": [link.model_dump() for link in self.external_links],
        }
        if include_body:
            result["body"] = self.body
        return result
