"""Configuration module for NoteVault."""

import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

# Load environment variables from the project root .env file.
# Anchored to __file__ so it works regardless of the process CWD.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# User-level config, shared by every vault opened by this user
_USER_ENV = Path.home() / ".notevault" / ".env"
load_dotenv(_USER_ENV)


logger = logging.getLogger(__name__)


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


class NoteVaultConfig(BaseModel):
    """Configuration for a NoteVault registry and its sync manager."""

    # Vault root; may also be passed explicitly to NoteRegistry
    vault_path: Optional[Path] = Field(
        default_factory=lambda: (
            Path(os.getenv("NOTEVAULT_VAULT_PATH"))
            if os.getenv("NOTEVAULT_VAULT_PATH")
            else None
        )
    )
    # Only files with this extension are treated as notes
    note_extension: str = Field(
        default_factory=lambda: os.getenv("NOTEVAULT_NOTE_EXTENSION", ".md")
    )
    # Sibling suffixes used by the transactional writer
    backup_suffix: str = Field(
        default_factory=lambda: os.getenv("NOTEVAULT_BACKUP_SUFFIX", ".bak")
    )
    temp_suffix: str = Field(
        default_factory=lambda: os.getenv("NOTEVAULT_TEMP_SUFFIX", ".tmp")
    )
    # Seconds between calls to NoteRegistry.tick() in long-running hosts
    tick_interval: float = Field(
        default_factory=lambda: float(os.getenv("NOTEVAULT_TICK_INTERVAL", "1.0"))
    )
    # How long the queue worker blocks waiting for an operation
    queue_poll_interval: float = Field(
        default_factory=lambda: float(
            os.getenv("NOTEVAULT_QUEUE_POLL_INTERVAL", "0.1")
        )
    )
    # Watcher events arrive asynchronously, so a path stays suppressed for
    # this many seconds after a self-initiated write completes.
    write_lock_grace: float = Field(
        default_factory=lambda: float(
            os.getenv("NOTEVAULT_WRITE_LOCK_GRACE", "1.0")
        )
    )
    # Stat-polling observer for file systems without native change events
    use_polling_observer: bool = Field(
        default_factory=lambda: _env_flag("NOTEVAULT_USE_POLLING_OBSERVER")
    )
    polling_interval: float = Field(
        default_factory=lambda: float(os.getenv("NOTEVAULT_POLLING_INTERVAL", "1.0"))
    )
    # strftime format written to the "date modified" frontmatter field
    date_modified_format: str = Field(
        default_factory=lambda: os.getenv(
            "NOTEVAULT_DATE_MODIFIED_FORMAT", "%A, %B %d %Y, %I:%M:%S %p"
        )
    )
    # Name of the index used when feeding the external document index
    index_name: str = Field(
        default_factory=lambda: os.getenv("NOTEVAULT_INDEX_NAME", "Default")
    )
    log_level: str = Field(
        default_factory=lambda: os.getenv("NOTEVAULT_LOG_LEVEL", "INFO")
    )

    model_config = {"validate_assignment": True}

    @model_validator(mode="after")
    def _validate_settings(self) -> "NoteVaultConfig":
        """Reject settings that would break the watcher or writer."""
        if not self.note_extension.startswith("."):
            raise ValueError("note_extension must start with '.'")
        if self.backup_suffix == self.temp_suffix:
            raise ValueError("backup_suffix and temp_suffix must differ")
        for name in ("tick_interval", "queue_poll_interval", "polling_interval"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0")
        if self.write_lock_grace < 0:
            raise ValueError("write_lock_grace must be >= 0")
        return self

    def get_vault_path(self) -> Optional[Path]:
        """Get the absolute vault path, or None if not configured."""
        if self.vault_path is None:
            return None
        return self.vault_path.expanduser().resolve()

    def is_note_file(self, path: Path) -> bool:
        """True if *path* has the configured note extension."""
        return Path(path).suffix.lower() == self.note_extension.lower()


# Create a global config instance
config = NoteVaultConfig()
