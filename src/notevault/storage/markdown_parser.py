"""Markdown parsing and serialization for vault notes.

Handles conversion between note files and Document objects. A note file
is an optional frontmatter block delimited by ``---`` lines followed by
the markdown body::

    ---
    guid: 5f0c...
    tags:
      - work/client
    ---
    # Title
    Body text

Only flat mappings are understood: each key holds nothing, a single
string, or a list of strings. Values are never coerced to numbers or
booleans, and key order is preserved so a parsed file can be written
back without reshuffling.
"""
import logging
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

from notevault.models.schema import FRONTMATTER_DELIMITER, Document, Frontmatter

logger = logging.getLogger(__name__)


def split_lines(text: str) -> List[str]:
    """Split file content into lines, normalising Windows line endings.

    Unlike ``str.splitlines`` a trailing newline yields a final empty
    element, so ``"\\n".join(split_lines(text)) == text`` for LF text.
    """
    return text.replace("\r\n", "\n").replace("\r", "\n").split("\n")


def is_delimiter(line: str) -> bool:
    """True if *line* is a frontmatter delimiter."""
    return line.strip() == FRONTMATTER_DELIMITER


def find_frontmatter_bounds(lines: Sequence[str]) -> Optional[Tuple[int, int]]:
    """Locate the frontmatter block.

    The opening delimiter must be the first non-blank line; a ``---`` further
    down is a horizontal rule, not frontmatter.

    Returns:
        ``(opening_index, closing_index)`` or None if there is no complete block.
    """
    opening = None
    for index, line in enumerate(lines):
        if not line.strip():
            continue
        if is_delimiter(line):
            opening = index
        break
    if opening is None:
        return None

    for index in range(opening + 1, len(lines)):
        if is_delimiter(lines[index]):
            return opening, index
    return None


def body_lines(lines: Sequence[str]) -> List[str]:
    """Return the body region of a file: everything after the frontmatter."""
    bounds = find_frontmatter_bounds(lines)
    if bounds is None:
        return list(lines)
    return list(lines[bounds[1] + 1:])


def _list_item(line: str) -> Optional[str]:
    """Return the value of a ``- value`` list line, or None if it isn't one."""
    stripped = line.strip()
    if stripped == "-":
        return ""
    if stripped.startswith("- "):
        return stripped[2:].strip()
    return None


class MarkdownParser:
    """Parses and serializes notes as markdown with flat frontmatter."""

    def parse(self, content: str, path: Optional[Union[str, Path]] = None) -> Document:
        """Parse a note from its full text content.

        Args:
            content: Raw file content.
            path: File path, used for the title fallback.

        Returns:
            The parsed Document. Never raises on malformed frontmatter.
        """
        return self.parse_lines(split_lines(content), path)

    def parse_lines(
        self, lines: Sequence[str], path: Optional[Union[str, Path]] = None
    ) -> Document:
        """Parse a note from a list of lines."""
        bounds = find_frontmatter_bounds(lines)
        if bounds is None:
            first = next((line for line in lines if line.strip()), "")
            if is_delimiter(first):
                logger.warning(
                    f"Unterminated frontmatter block in {path or '<text>'}; "
                    "treating whole file as body"
                )
            frontmatter: Frontmatter = {}
            body = list(lines)
        else:
            opening, closing = bounds
            frontmatter = self.parse_frontmatter(lines[opening + 1:closing], path)
            body = list(lines[closing + 1:])

        return Document(
            title=self.extract_title(body, path),
            frontmatter=frontmatter,
            body="\n".join(body),
            has_frontmatter=bounds is not None,
        )

    def parse_frontmatter(
        self, block: Sequence[str], path: Optional[Union[str, Path]] = None
    ) -> Frontmatter:
        """Parse the lines between the delimiters into an ordered mapping.

        Lines that are neither a key nor a list item belonging to a key are
        logged and skipped.
        """
        result: Frontmatter = {}
        current_key: Optional[str] = None

        for line_number, line in enumerate(block, start=1):
            if not line.strip() or line.lstrip().startswith("#"):
                continue

            item = _list_item(line)
            if item is not None and current_key is not None:
                values = result.get(current_key)
                if values is None:
                    values = []
                    result[current_key] = values
                values.append(item)
                continue

            if not line[0].isspace() and ":" in line:
                key, _, raw_value = line.partition(":")
                key = key.strip()
                if not key:
                    logger.warning(
                        f"Empty frontmatter key at line {line_number} in "
                        f"{path or '<text>'}: {line!r}"
                    )
                    current_key = None
                    continue
                if key in result:
                    logger.warning(
                        f"Duplicate frontmatter key '{key}' in {path or '<text>'}; "
                        "last value wins"
                    )
                value = raw_value.strip()
                if not value:
                    # Multi-line list may follow
                    result[key] = None
                    current_key = key
                    continue
                result[key] = [value]
                current_key = None
                continue

            logger.warning(
                f"Skipping unparseable frontmatter line {line_number} in "
                f"{path or '<text>'}: {line!r}"
            )

        return result

    @staticmethod
    def extract_title(
        lines: Sequence[str], path: Optional[Union[str, Path]] = None
    ) -> Optional[str]:
        """Return the first H1 heading, or the filename stem as a fallback."""
        for line in lines:
            if line.strip().startswith("# "):
                return line.replace("#", "").strip()
        if path is None:
            return None
        return Path(path).stem

    @staticmethod
    def serialize_frontmatter(frontmatter: Frontmatter) -> List[str]:
        """Render a frontmatter mapping as delimited block lines."""
        lines = [FRONTMATTER_DELIMITER]
        for key, values in frontmatter.items():
            if not values:
                lines.append(f"{key}:")
            elif len(values) == 1 and values[0]:
                lines.append(f"{key}: {values[0]}")
            else:
                lines.append(f"{key}:")
                lines.extend(f"  - {value}" for value in values)
        lines.append(FRONTMATTER_DELIMITER)
        return lines

    def serialize(self, document: Document) -> str:
        """Render a Document back to file content.

        The body is emitted verbatim after the closing delimiter.
        """
        header = "\n".join(self.serialize_frontmatter(document.frontmatter))
        return f"{header}\n{document.body}"


def insert_frontmatter_entry(lines: Sequence[str], key: str, value: str) -> List[str]:
    """Return *lines* with ``key: value`` added right after the opening delimiter.

    A file without a frontmatter block gets a new block holding only the
    entry; the rest of the file becomes its body unchanged.
    """
    entry = f"{key}: {value}"
    bounds = find_frontmatter_bounds(lines)
    if bounds is None:
        return [FRONTMATTER_DELIMITER, entry, FRONTMATTER_DELIMITER] + list(lines)
    opening, _ = bounds
    result = list(lines)
    result.insert(opening + 1, entry)
    return result


def replace_frontmatter_entry(
    lines: Sequence[str], key: str, value: str
) -> Optional[List[str]]:
    """Return *lines* with the first top-level ``key:`` line set to *value*.

    Only that line changes. Returns None if the block or the key is missing.
    """
    bounds = find_frontmatter_bounds(lines)
    if bounds is None:
        return None
    opening, closing = bounds
    for index in range(opening + 1, closing):
        line = lines[index]
        if line[:1].isspace() or ":" not in line:
            continue
        if line.partition(":")[0].strip() == key:
            result = list(lines)
            result[index] = f"{key}: {value}"
            return result
    return None
