"""Tests for the CallbackManager."""
from types import SimpleNamespace

import pytest

from notevault.services.callback_manager import CallbackManager


@pytest.fixture
def notes():
    return {
        "n1": SimpleNamespace(id="n1", title="One"),
        "n2": SimpleNamespace(id="n2", title="Two"),
    }


@pytest.fixture
def manager(notes):
    return CallbackManager(notes.get)


class TestSubscriptions:
    """Tests for subscribe and unsubscribe."""

    def test_enqueue_requires_subscriber(self, manager):
        assert manager.enqueue_update("n1") is False
        assert manager.pending == []

    def test_enqueue_deduplicates(self, manager):
        manager.subscribe("n1", lambda note: None)

        assert manager.enqueue_update("n1") is True
        assert manager.enqueue_update("n1") is False
        assert manager.pending == ["n1"]

    def test_unsubscribe_single_callback(self, manager):
        first, second = [], []
        manager.subscribe("n1", first.append)
        manager.subscribe("n1", second.append)

        assert manager.unsubscribe("n1", first.append) is True
        manager.enqueue_update("n1")
        manager.tick()

        assert first == []
        assert len(second) == 1

    def test_unsubscribe_all(self, manager):
        manager.subscribe("n1", lambda note: None)

        assert manager.unsubscribe("n1") is True
        assert manager.has_subscribers("n1") is False
        assert manager.unsubscribe("n1") is False

    def test_clear(self, manager):
        manager.subscribe("n1", lambda note: None)
        manager.enqueue_update("n1")

        manager.clear()

        assert manager.pending == []
        assert not manager.has_subscribers("n1")


class TestTick:
    """Tests for deferred delivery."""

    def test_tick_delivers_in_order(self, manager, notes):
        received = []
        manager.subscribe("n2", received.append)
        manager.subscribe("n1", received.append)
        manager.enqueue_update("n2")
        manager.enqueue_update("n1")

        assert manager.tick() == 2
        assert received == [notes["n2"], notes["n1"]]
        assert manager.tick() == 0

    def test_failing_callback_does_not_block_others(self, manager, notes):
        received = []

        def broken(note):
            raise RuntimeError("subscriber bug")

        manager.subscribe("n1", broken)
        manager.subscribe("n1", received.append)
        manager.enqueue_update("n1")

        assert manager.tick() == 1
        assert received == [notes["n1"]]

    def test_vanished_note_drops_subscriptions(self, manager, notes):
        received = []
        manager.subscribe("n1", received.append)
        manager.enqueue_update("n1")
        del notes["n1"]

        assert manager.tick() == 0
        assert received == []
        assert not manager.has_subscribers("n1")

    def test_callback_may_resubscribe_during_tick(self, manager, notes):
        received = []

        def resubscribe(note):
            received.append(note)
            manager.subscribe(note.id, received.append)

        manager.subscribe("n1", resubscribe)
        manager.enqueue_update("n1")

        assert manager.tick() == 1
        manager.enqueue_update("n1")
        assert manager.tick() == 2

    def test_trigger_callbacks_fires_immediately(self, manager, notes):
        received = []
        manager.subscribe("n1", received.append)

        assert manager.trigger_callbacks(notes["n1"]) == 1
        assert received == [notes["n1"]]
        assert manager.trigger_callbacks(notes["n2"]) == 0
