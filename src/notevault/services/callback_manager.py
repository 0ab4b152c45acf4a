"""Per-note change notifications.

Subscribers register a callback for a note ID. When a note's content hash
drifts the note ID is queued; queued IDs are delivered on the next
``tick()``, so callbacks run on the host's thread rather than on the
watcher or worker thread that detected the change.
"""
import logging
import threading
from typing import TYPE_CHECKING, Callable, Dict, List, Optional

if TYPE_CHECKING:
    from notevault.storage.note import Note

logger = logging.getLogger(__name__)

NoteCallback = Callable[["Note"], None]
NoteResolver = Callable[[str], Optional["Note"]]


class CallbackManager:
    """Pub/sub of note updates keyed by note ID."""

    def __init__(self, resolver: NoteResolver):
        """Initialize the manager.

        Args:
            resolver: Returns the live Note for an ID, or None if it is gone.
        """
        self._resolver = resolver
        self._subscriptions: Dict[str, List[NoteCallback]] = {}
        self._pending: List[str] = []
        self._lock = threading.Lock()

    def subscribe(self, note_id: str, callback: NoteCallback) -> None:
        """Call *callback* with the note whenever *note_id* changes."""
        with self._lock:
            self._subscriptions.setdefault(note_id, []).append(callback)
        logger.debug(f"Subscribed callback to note {note_id}")

    def unsubscribe(self, note_id: str, callback: Optional[NoteCallback] = None) -> bool:
        """Remove one callback, or every callback when *callback* is None.

        Returns:
            True if anything was removed.
        """
        with self._lock:
            callbacks = self._subscriptions.get(note_id)
            if not callbacks:
                return False
            if callback is None:
                del self._subscriptions[note_id]
                return True
            try:
                callbacks.remove(callback)
            except ValueError:
                return False
            if not callbacks:
                del self._subscriptions[note_id]
            return True

    def has_subscribers(self, note_id: str) -> bool:
        with self._lock:
            return bool(self._subscriptions.get(note_id))

    @property
    def pending(self) -> List[str]:
        """IDs waiting for the next tick, in arrival order."""
        with self._lock:
            return list(self._pending)

    def enqueue_update(self, note_id: str) -> bool:
        """Queue *note_id* for delivery on the next tick.

        Ignored when nobody subscribes to the note or it is already queued.

        Returns:
            True if the ID was queued.
        """
        with self._lock:
            if not self._subscriptions.get(note_id) or note_id in self._pending:
                return False
            self._pending.append(note_id)
            return True

    def _invoke(self, note: "Note", callbacks: List[NoteCallback]) -> int:
        fired = 0
        for callback in callbacks:
            try:
                callback(note)
                fired += 1
            except Exception as e:
                logger.error(
                    f"Callback for note {note.id} ({note.title}) raised: {e}",
                    exc_info=True,
                )
        return fired

    def tick(self) -> int:
        """Deliver queued updates.

        IDs that no longer resolve to a note lose their subscriptions.

        Returns:
            Number of callbacks that completed without raising.
        """
        with self._lock:
            pending, self._pending = self._pending, []
        if not pending:
            return 0

        fired = 0
        for note_id in pending:
            with self._lock:
                callbacks = list(self._subscriptions.get(note_id, []))
            if not callbacks:
                continue
            note = self._resolver(note_id)
            if note is None:
                with self._lock:
                    self._subscriptions.pop(note_id, None)
                logger.info(f"Dropped subscriptions for vanished note {note_id}")
                continue
            logger.info(f"Triggering {len(callbacks)} callback(s) for {note.title}")
            fired += self._invoke(note, callbacks)
        return fired

    def trigger_callbacks(self, note: "Note") -> int:
        """Fire *note*'s callbacks immediately, bypassing the queue."""
        with self._lock:
            callbacks = list(self._subscriptions.get(note.id, []))
        if not callbacks:
            return 0
        logger.info(f"Triggering {len(callbacks)} callback(s) for {note.title}")
        return self._invoke(note, callbacks)

    def clear(self) -> None:
        """Drop every subscription and pending update."""
        with self._lock:
            self._subscriptions.clear()
            self._pending.clear()
