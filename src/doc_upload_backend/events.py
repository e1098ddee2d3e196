"""
Snapshot broadcast to queue observers.

Listeners receive the full ``QueueSnapshot`` after every mutating scheduler
operation. Delivery happens on the thread that performed the mutation, in
registration order, with no bus lock held. Snapshots are versioned; a snapshot
older than the last one accepted is dropped, and a round stops as soon as a
newer snapshot is accepted. Listeners may miss intermediate states. When two
threads publish at the same moment their callbacks can overlap, so a listener
that needs strict ordering compares ``version`` itself.
"""

from __future__ import annotations

import logging
from threading import RLock
from typing import Callable, Dict

from .models import QueueSnapshot

logger = logging.getLogger(__name__)

Listener = Callable[[QueueSnapshot], None]
Unsubscribe = Callable[[], None]


class EventBus:
    def __init__(self) -> None:
        # Re-entrant so unsubscribe works from inside a callback.
        self._lock = RLock()
        self._listeners: Dict[int, Listener] = {}
        self._next_token = 0
        self._last_version = -1
        self._delivered: Dict[int, int] = {}

    def subscribe(self, listener: Listener) -> Unsubscribe:
        """
        Register a listener for future snapshots.

        No snapshot is pushed on subscribe; the first delivery happens on the
        next mutation.

        Returns:
            A callable that removes the listener. Safe to call more than once
            and from within a listener callback.
        """
        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._listeners[token] = listener

        def unsubscribe() -> None:
            with self._lock:
                self._listeners.pop(token, None)
                self._delivered.pop(token, None)

        return unsubscribe

    @property
    def listener_count(self) -> int:
        with self._lock:
            return len(self._listeners)

    def publish(self, snapshot: QueueSnapshot) -> None:
        """
        Deliver a snapshot to every current listener.

        The version check and the listener list are taken under the lock;
        the callbacks run outside it, so a slow or blocking listener never
        holds up publishes from other threads.
        """
        with self._lock:
            if snapshot.version <= self._last_version:
                logger.debug(f"Dropping stale snapshot v{snapshot.version} (last delivered v{self._last_version})")
                return
            self._last_version = snapshot.version
            listeners = list(self._listeners.items())

        for token, listener in listeners:
            with self._lock:
                # A newer snapshot has been accepted since this round started.
                if self._last_version != snapshot.version:
                    break
                # Removed by an earlier callback, or already handed a newer version.
                if token not in self._listeners or self._delivered.get(token, -1) >= snapshot.version:
                    continue
                self._delivered[token] = snapshot.version
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Upload queue listener raised; continuing with remaining listeners")
