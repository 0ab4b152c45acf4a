"""Storage layer for NoteVault."""

from notevault.storage.markdown_parser import MarkdownParser
from notevault.storage.note import Note
from notevault.storage.note_registry import NoteRegistry

__all__ = [
    "MarkdownParser",
    "Note",
    "NoteRegistry",
]
