"""
NoteVault - keeps an in-memory index of a Markdown vault in sync with disk.
This package watches a directory of Markdown notes, assigns each note a durable
GUID and content hash stored in its frontmatter, and keeps derived metadata
(title, tags, links) current as files change on disk.

File system events are processed on a single background worker thread.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("notevault")
except PackageNotFoundError:
    __version__ = "0.3.0"
