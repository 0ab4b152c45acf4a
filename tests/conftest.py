"""Common test fixtures for NoteVault."""

import tempfile
from pathlib import Path

import pytest

from notevault.config import config
from notevault.storage.note_registry import NoteRegistry
from tests.fakes import FakeDocumentIndex


@pytest.fixture
def vault_dir():
    """Create a temporary vault directory."""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield Path(temp_dir).resolve()


@pytest.fixture
def test_config(vault_dir, monkeypatch):
    """Point config at the temporary vault (auto-restored even on crash)."""
    monkeypatch.setattr(config, "vault_path", vault_dir)
    # Direct handler calls in tests must not be swallowed by the grace period
    monkeypatch.setattr(config, "write_lock_grace", 0.0)
    monkeypatch.setattr(config, "queue_poll_interval", 0.01)
    monkeypatch.setattr(config, "polling_interval", 0.1)
    yield config


@pytest.fixture
def write_file(vault_dir):
    """Write a file relative to the vault and return its path."""

    def _write(relative: str, content: str) -> Path:
        path = vault_dir / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        return path

    return _write


@pytest.fixture
def fake_index():
    """Create an in-memory document index."""
    return FakeDocumentIndex()


@pytest.fixture
def registry(test_config, vault_dir, fake_index):
    """Create a registry for the temporary vault without a live watcher."""
    note_registry = NoteRegistry(vault_dir, document_index=fake_index, watch=False)
    yield note_registry
    note_registry.close()


@pytest.fixture
def sync_manager(registry):
    """The registry's sync manager with event handling enabled."""
    manager = registry.sync_manager
    manager.active = True
    yield manager
    manager.active = False
