"""Content hashing for change detection.

The hash covers the body only, so rewriting frontmatter (GUID insertion,
hash updates, ``date modified`` refreshes) never changes it. Lines are
joined with ``\\n`` before hashing; the digest is only ever compared with
digests produced here, never with an external reference.
"""
import base64
import hashlib
from typing import List, Optional, Sequence

from notevault.models.schema import HASH_KEY
from notevault.storage.markdown_parser import body_lines, replace_frontmatter_entry


def compute_hash(body: str) -> str:
    """Return the base64-encoded MD5 digest of *body*'s UTF-8 bytes."""
    digest = hashlib.md5(body.encode("utf-8")).digest()
    return base64.b64encode(digest).decode("ascii")


def hash_lines(lines: Sequence[str]) -> str:
    """Hash the body region of a file given as lines."""
    return compute_hash("\n".join(body_lines(lines)))


def hash_matches(lines: Sequence[str], stored_hash: Optional[str]) -> bool:
    """True if the stored hash equals the hash of the body in *lines*."""
    return stored_hash is not None and stored_hash == hash_lines(lines)


def with_hash(lines: Sequence[str], new_hash: str) -> Optional[List[str]]:
    """Return *lines* with only the ``hash:`` line rewritten.

    Returns None if the frontmatter block or the hash line is missing.
    """
    return replace_frontmatter_entry(lines, HASH_KEY, new_hash)
