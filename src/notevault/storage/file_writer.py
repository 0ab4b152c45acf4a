"""Transactional file access for note files.

Every write goes through the same discipline: copy the original to a
``.bak`` sibling, write the new content to a ``.tmp`` sibling in the same
directory, then atomically replace the original. On failure the original
is restored from the backup; on success the backup is removed.
"""
import logging
import os
import shutil
from pathlib import Path
from typing import Optional, Union

from notevault.config import config
from notevault.exceptions import ErrorCode, NoteNotFoundError, StorageError

logger = logging.getLogger(__name__)


def sibling_path(path: Path, suffix: str) -> Path:
    """Return ``<path><suffix>`` in the same directory (``note.md.bak``)."""
    return path.with_name(path.name + suffix)


def read_note_text(path: Union[str, Path]) -> str:
    """Read a note file as UTF-8 text.

    Raises:
        NoteNotFoundError: If the file does not exist.
        StorageError: For any other I/O failure.
    """
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8", newline="") as f:
            return f.read()
    except FileNotFoundError as e:
        raise NoteNotFoundError(str(path)) from e
    except (IOError, OSError, UnicodeDecodeError) as e:
        raise StorageError(
            f"Failed to read note file {path.name}",
            operation="read",
            path=str(path),
            code=ErrorCode.STORAGE_READ_FAILED,
            original_error=e,
        ) from e


def _restore_backup(path: Path, backup: Path) -> Optional[Exception]:
    try:
        os.replace(backup, path)
        logger.warning(f"Restored {path.name} from backup after failed write")
        return None
    except OSError as e:
        logger.error(f"Failed to restore {path.name} from backup {backup.name}: {e}")
        return e


def atomic_write(
    path: Union[str, Path],
    content: str,
    backup_suffix: Optional[str] = None,
    temp_suffix: Optional[str] = None,
) -> None:
    """Replace the content of *path* transactionally.

    Args:
        path: Target file. Need not exist yet.
        content: Full new file content.
        backup_suffix: Suffix of the backup sibling. Defaults to config.
        temp_suffix: Suffix of the temporary sibling. Defaults to config.

    Raises:
        StorageError: If the write fails. The original file has been restored
            when possible (``code`` is STORAGE_RESTORE_FAILED otherwise).
    """
    path = Path(path)
    backup = sibling_path(path, backup_suffix or config.backup_suffix)
    temp = sibling_path(path, temp_suffix or config.temp_suffix)
    had_original = path.exists()

    try:
        if had_original:
            shutil.copy2(path, backup)
        with open(temp, "w", encoding="utf-8", newline="\n") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        if had_original:
            shutil.copymode(backup, temp)
        os.replace(temp, path)
    except (IOError, OSError) as e:
        if temp.exists():
            try:
                temp.unlink()
            except OSError as cleanup_error:
                logger.warning(f"Failed to remove temp file {temp.name}: {cleanup_error}")
        restore_error = None
        if had_original and backup.exists():
            restore_error = _restore_backup(path, backup)
        raise StorageError(
            f"Failed to write note file {path.name}",
            operation="write",
            path=str(path),
            code=(
                ErrorCode.STORAGE_RESTORE_FAILED
                if restore_error
                else ErrorCode.STORAGE_WRITE_FAILED
            ),
            original_error=e,
        ) from e

    if had_original:
        try:
            backup.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            # The write itself succeeded; a stale backup is harmless
            logger.warning(f"Failed to remove backup {backup.name}: {e}")
