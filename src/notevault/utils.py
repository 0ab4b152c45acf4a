"""Utility functions for NoteVault."""
import os
from pathlib import Path
from typing import Union


def canonical_path(path: Union[str, Path]) -> Path:
    """Return the absolute, symlink-resolved form of *path*.

    Works for paths that no longer exist (e.g. the source of a delete
    event), in which case only the existing parent components are resolved.
    """
    return Path(os.path.abspath(os.path.expanduser(str(path)))).resolve()


def is_within_directory(path: Union[str, Path], root: Union[str, Path]) -> bool:
    """True if *path* is *root* itself or lies somewhere beneath it.

    Both arguments are canonicalised first, so ``..`` segments and
    symlinks cannot be used to escape the root.
    """
    resolved = canonical_path(path)
    resolved_root = canonical_path(root)
    return resolved == resolved_root or resolved_root in resolved.parents


def remove_block(text: str, opening_tag: str, closing_tag: str) -> str:
    """Remove every ``opening_tag ... closing_tag`` block from *text*.

    An opening tag without a matching closing tag is left in place.

    Examples:
        >>> remove_block("a ```code``` b", "```", "```")
        'a  b'
    """
    result = text
    offset = 0
    while True:
        opening = result.find(opening_tag, offset)
        if opening == -1:
            return result
        closing = result.find(closing_tag, opening + len(opening_tag))
        if closing == -1:
            # Unterminated block; skip past this opening tag
            offset = opening + len(opening_tag)
            continue
        result = result[:opening] + result[closing + len(closing_tag):]
        offset = opening


def contains_plaintext(text: str) -> bool:
    """True if *text* contains at least one letter."""
    return any(c.isalpha() for c in text)
