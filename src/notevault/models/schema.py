"""Data models for NoteVault."""

import uuid
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

# Frontmatter keys owned by NoteVault
ID_KEY = "guid"
HASH_KEY = "hash"
TAGS_KEY = "tags"
DATE_MODIFIED_KEY = "date modified"

# Line that opens and closes the frontmatter block
FRONTMATTER_DELIMITER = "---"

# A frontmatter value is absent (None), a single string, or a list of strings.
# Single strings are stored as one-element lists.
FrontmatterValue = Optional[List[str]]
Frontmatter = Dict[str, FrontmatterValue]


def generate_id() -> str:
    """Generate a new random GUID for a note."""
    return str(uuid.uuid4())


class Document(BaseModel):
    """A parsed note file: title, frontmatter mapping, and raw body."""

    title: Optional[str] = Field(default=None, description="First H1 heading or filename stem")
    frontmatter: Frontmatter = Field(
        default_factory=dict, description="Insertion-ordered frontmatter mapping"
    )
    body: str = Field(default="", description="Text after the closing delimiter")
    has_frontmatter: bool = Field(
        default=False, description="Whether a delimited block was found"
    )

    def first_value(self, key: str) -> Optional[str]:
        """Return the first value stored under *key*, if any."""
        values = self.frontmatter.get(key)
        if not values:
            return None
        return values[0]


class InternalLink(BaseModel):
    """A ``[[Title]]`` or ``[[Title|Display]]`` wiki link."""

    title: str = Field(..., description="Link target as written")
    display_text: Optional[str] = Field(default=None, description="Alias after '|'")
    resolved_note_id: Optional[str] = Field(
        default=None, description="ID of the note the target resolved to"
    )

    model_config = {"validate_assignment": True}

    @property
    def target(self) -> str:
        """Link target without a ``#heading`` or ``^block`` suffix."""
        return self.title.split("#", 1)[0].split("^", 1)[0].strip()


class ExternalLink(BaseModel):
    """A standard markdown ``[Display](URL)`` link."""

    display_text: str = Field(..., description="Link text")
    url: str = Field(..., description="Link destination")

    model_config = {"frozen": True}


class Backlink(BaseModel):
    """A reference from another note to the target note."""

    title: str = Field(..., description="Link target as written in the source note")
    display_text: Optional[str] = Field(default=None, description="Alias used in the source")
    source_note_id: str = Field(..., description="ID of the linking note")

    model_config = {"frozen": True}


class NoteState(str, Enum):
    """Lifecycle states of a Note."""

    UNLOADED = "unloaded"
    LOADED = "loaded"
    RELOADING = "reloading"
    DISPOSED = "disposed"


class SyncOperationType(str, Enum):
    """Kinds of work queued by the sync manager."""

    INDEX = "index"  # A note appeared (create, or rename target)
    UPDATE = "update"  # A note's content changed
    DELETE = "delete"  # A note disappeared (delete, or rename source)


@dataclass(frozen=True)
class SyncOperation:
    """A single queued synchronization operation.

    Attributes:
        type: What to do.
        path: Canonical path of the file the operation applies to.
    """

    type: SyncOperationType
    path: Path

    def __str__(self) -> str:
        return f"{self.type.value}({self.path})"
