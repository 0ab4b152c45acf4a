"""Contract for the external document (vector) index.

The sync manager keeps an optional document index in step with the vault.
Each note is fed line by line; every line is keyed ``"<note id>|<line>"``
so all of a note's entries can be purged with a prefix predicate.
"""
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Dict,
    List,
    Optional,
    Protocol,
    Tuple,
    runtime_checkable,
)

from notevault.utils import contains_plaintext, remove_block

if TYPE_CHECKING:
    from notevault.storage.note import Note

KEY_SEPARATOR = "|"
CODE_FENCE = "```"


@runtime_checkable
class DocumentIndex(Protocol):
    """Contract for a searchable store of text fragments."""

    def index_document(
        self,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
        key: Optional[str] = None,
        index_name: str = "Default",
    ) -> None:
        """Add one text fragment to the index.

        Args:
            content: Text to index.
            metadata: Arbitrary metadata stored alongside the text.
            key: Identifier of the fragment, used by ``purge``.
            index_name: Name of the target index.
        """
        ...

    def purge(self, predicate: Callable[[str], bool]) -> int:
        """Remove every fragment whose key satisfies *predicate*.

        Returns:
            Number of fragments removed.
        """
        ...


def note_key_prefix(note_id: str) -> str:
    """Return the key prefix shared by all of a note's fragments."""
    return f"{note_id}{KEY_SEPARATOR}"


def note_to_index_lines(note: "Note") -> List[Tuple[str, str]]:
    """Split a note's body into ``(key, text)`` pairs for indexing.

    Fenced code blocks are dropped and lines without any letters are
    skipped. Line numbers count lines of the body after code removal,
    starting at 1.
    """
    text = remove_block(note.body, CODE_FENCE, CODE_FENCE)
    prefix = note_key_prefix(note.id)
    entries: List[Tuple[str, str]] = []
    for line_number, line in enumerate(text.split("\n"), start=1):
        line = line.strip()
        if not contains_plaintext(line):
            continue
        entries.append((f"{prefix}{line_number}", line))
    return entries
