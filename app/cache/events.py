"""
Subscription channel for cache change notifications.

UI code observes cache changes here instead of being called from inside
mutation logic.
"""
import logging
import threading
from typing import Callable, List

from .core import CacheEvent

logger = logging.getLogger("cache.events")

Listener = Callable[[CacheEvent], None]


class CacheEventBus:
    """Thread-safe fan-out of CacheEvents to registered listeners."""

    def __init__(self):
        self._listeners: List[Listener] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """
        Register a listener.

        Returns:
            A function that removes the listener again
        """
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def publish(self, event: CacheEvent) -> None:
        """
        Deliver an event to every listener.

        A failing listener is logged and does not stop delivery to the rest.
        """
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception(f"Cache listener failed for {event.kind.value} {event.full_key}")

    @property
    def listener_count(self) -> int:
        with self._lock:
            return len(self._listeners)

    def clear(self) -> None:
        with self._lock:
            self._listeners.clear()
