"""Tag and link extraction from parsed notes.

Tags come from the frontmatter ``tags`` key and from inline ``#tokens`` in
the body. Hierarchical tags (``work/client/project``) are expanded into all
of their prefixes so that filtering on ``work`` finds the note too.
"""
import logging
import re
from typing import TYPE_CHECKING, Callable, Iterable, List, Optional, Sequence, Set

from notevault.models.schema import (
    TAGS_KEY,
    Backlink,
    Document,
    ExternalLink,
    Frontmatter,
    InternalLink,
)

if TYPE_CHECKING:
    from notevault.storage.note import Note

logger = logging.getLogger(__name__)

# "#" at line start or after whitespace, followed by non-whitespace
_INLINE_TAG_RE = re.compile(r"(?:^|(?<=\s))#(\S+)")
# [[Target]] or [[Target|Display]]
_WIKILINK_RE = re.compile(r"\[\[([^\[\]|]+)(?:\|([^\[\]]*))?\]\]")
# [Display](URL), but not ![alt](image)
_MARKDOWN_LINK_RE = re.compile(r"(?<!!)\[([^\[\]]*)\]\(\s*<?([^()\s<>]+)>?(?:\s+\"[^\"]*\")?\s*\)")
_FENCE_RE = re.compile(r"^(```|~~~)")
_TAG_SEPARATORS_RE = re.compile(r"[/\\]")

# Punctuation that ends a sentence rather than belonging to a tag
_TAG_TRAILING_PUNCTUATION = ",.!?;:"

# Resolves a link target to a note ID, or None
LinkResolver = Callable[[str], Optional[str]]


def _clean_tag(raw: str) -> str:
    return raw.strip().strip("#").rstrip(_TAG_TRAILING_PUNCTUATION).strip()


def frontmatter_tags(frontmatter: Frontmatter) -> List[str]:
    """Return tags listed under the frontmatter ``tags`` key.

    A single comma-separated string (``tags: a, b``) is split into tags, and
    an inline list (``tags: [a, "b"]``) is unwrapped.
    """
    values = frontmatter.get(TAGS_KEY) or []
    tags: List[str] = []
    for value in values:
        value = value.strip()
        if value.startswith("[") and value.endswith("]") and not value.startswith("[["):
            value = value[1:-1]
        for part in value.split(","):
            tag = _clean_tag(part.strip().strip("'\""))
            if tag:
                tags.append(tag)
    return tags


def inline_tags(body: str) -> List[str]:
    """Return ``#tag`` tokens found in the body, in order of appearance.

    Headings (``# Title``), bare heading markers (``##``), and lines inside
    fenced code blocks are skipped.
    """
    tags: List[str] = []
    in_fence = False
    for raw_line in body.split("\n"):
        line = raw_line.strip()
        if _FENCE_RE.match(line):
            in_fence = not in_fence
            continue
        if in_fence or not line or line.startswith("# "):
            continue
        for match in _INLINE_TAG_RE.finditer(line):
            tag = _clean_tag(match.group(1))
            if tag:
                tags.append(tag)
    return tags


def expand_hierarchical_tag(tag: str) -> List[str]:
    """Expand ``a/b/c`` into ``["a", "a/b", "a/b/c"]``.

    Backslashes count as separators and are normalised to ``/``. Tags without
    a separator yield an empty list.
    """
    if not _TAG_SEPARATORS_RE.search(tag):
        return []
    tokens = [t for t in _TAG_SEPARATORS_RE.split(tag) if t]
    return ["/".join(tokens[: i + 1]) for i in range(len(tokens))]


def expand_tags(tags: Iterable[str]) -> Set[str]:
    """Return the tag set with every hierarchical tag expanded.

    Expansion only adds prefixes. Bare tags are kept as collected; a tag
    with separators is replaced by its normalised prefixes.
    """
    expanded: Set[str] = set()
    for tag in tags:
        prefixes = expand_hierarchical_tag(tag)
        if prefixes:
            expanded.update(prefixes)
        else:
            expanded.add(tag)
    return expanded


def extract_tags(document: Document) -> Set[str]:
    """Return the full tag set of a parsed note."""
    return expand_tags(frontmatter_tags(document.frontmatter) + inline_tags(document.body))


def extract_internal_links(
    body: str, resolver: Optional[LinkResolver] = None
) -> List[InternalLink]:
    """Return wiki links in the body, resolved through *resolver* if given."""
    links: List[InternalLink] = []
    for match in _WIKILINK_RE.finditer(body):
        title = match.group(1).strip()
        if not title:
            continue
        display = match.group(2)
        link = InternalLink(
            title=title,
            display_text=display.strip() if display and display.strip() else None,
        )
        if resolver is not None:
            link.resolved_note_id = resolver(link.target)
        links.append(link)
    return links


def extract_external_links(body: str) -> List[ExternalLink]:
    """Return standard markdown links in the body."""
    return [
        ExternalLink(display_text=match.group(1).strip(), url=match.group(2))
        for match in _MARKDOWN_LINK_RE.finditer(body)
    ]


def resolve_links(links: Sequence[InternalLink], resolver: LinkResolver) -> int:
    """Re-resolve *links* in place.

    Returns:
        Number of links whose resolved note ID changed.
    """
    changed = 0
    for link in links:
        resolved = resolver(link.target)
        if resolved != link.resolved_note_id:
            link.resolved_note_id = resolved
            changed += 1
    return changed


def find_backlinks(target_id: str, notes: Iterable["Note"]) -> List[Backlink]:
    """Collect links from other notes that resolve to *target_id*.

    Reads each note's link list without locking; callers pass a snapshot.
    """
    backlinks: List[Backlink] = []
    for note in notes:
        source_id = note.id
        if source_id == target_id:
            continue
        for link in note.internal_links:
            if link.resolved_note_id == target_id:
                backlinks.append(
                    Backlink(
                        title=link.title,
                        display_text=link.display_text,
                        source_note_id=source_id,
                    )
                )
    return backlinks
