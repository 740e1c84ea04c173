"""
Request coalescing to prevent duplicate remote reads.

When multiple concurrent requests ask for the same data, only one
remote call is made and all requesters share the result.
"""
import threading
import time
import logging
from typing import Dict, Optional, Callable, Any
from dataclasses import dataclass, field

from .core import MISSING

logger = logging.getLogger("cache.coalescer")


@dataclass
class InFlightRequest:
    """Tracks an in-progress remote request."""
    event: threading.Event = field(default_factory=threading.Event)
    result: Optional[Any] = None
    error: Optional[BaseException] = None
    started_at: float = field(default_factory=time.time)
    waiter_count: int = 0


class RequestCoalescer:
    """
    Ensures concurrent requests for the same cache key share one remote call.

    Pattern:
    - First request for a key initiates the fetch
    - Subsequent requests for the same key wait on the Event
    - When the fetch settles, the registry entry is removed and all
      waiters receive the same result (or the same exception)
    - Thread-safe via key-level management

    The lock may be shared with the owning cache so that the cache lookup,
    the registry check and the post-fetch store happen in one critical
    section.

    Usage:
        coalescer = RequestCoalescer()
        result = coalescer.get_or_fetch(
            cache_key="products:42",
            fetch_fn=lambda: store.get("products", "42"),
        )
    """

    def __init__(
        self,
        lock: Optional[threading.RLock] = None,
        timeout: Optional[float] = None,
    ):
        """
        Initialize the coalescer.

        Args:
            lock: Lock guarding the registry (a private one when omitted)
            timeout: Max seconds a waiter blocks; None waits for the fetch to settle
        """
        self._in_flight: Dict[str, InFlightRequest] = {}
        self._lock = lock if lock is not None else threading.RLock()
        self._timeout = timeout
        self._coalesced = 0

    def get_or_fetch(
        self,
        cache_key: str,
        fetch_fn: Callable[[], Any],
        lookup: Optional[Callable[[], Any]] = None,
        on_result: Optional[Callable[[Any], None]] = None,
    ) -> Any:
        """
        Either join an existing in-flight request or initiate a new one.

        Args:
            cache_key: Unique key for this request
            fetch_fn: Function to call if we need to fetch
            lookup: Called under the lock before joining; a value other than
                MISSING is returned without fetching
            on_result: Called under the lock with a successful result, just
                before the registry entry is removed

        Returns:
            The fetched data (shared among all concurrent callers)

        Raises:
            TimeoutError: If a timeout is configured and waiting exceeds it
            Exception: Any error from fetch_fn is propagated to every caller
        """
        with self._lock:
            if lookup is not None:
                hit = lookup()
                if hit is not MISSING:
                    return hit

            if cache_key in self._in_flight:
                # Join existing request
                in_flight = self._in_flight[cache_key]
                in_flight.waiter_count += 1
                self._coalesced += 1
                logger.debug(
                    f"Coalescing request for {cache_key} "
                    f"(waiters: {in_flight.waiter_count})"
                )
                is_initiator = False
            else:
                # Start new request
                in_flight = InFlightRequest()
                self._in_flight[cache_key] = in_flight
                is_initiator = True
                logger.debug(f"Initiating fetch for {cache_key}")

        if is_initiator:
            try:
                in_flight.result = fetch_fn()
            except Exception as e:
                in_flight.error = e
                logger.warning(f"Fetch failed for {cache_key}: {e}")
            finally:
                with self._lock:
                    try:
                        if in_flight.error is None and on_result is not None:
                            on_result(in_flight.result)
                    except Exception as e:
                        in_flight.error = e
                    finally:
                        if self._in_flight.get(cache_key) is in_flight:
                            del self._in_flight[cache_key]
                        # Signal completion to all waiters
                        in_flight.event.set()

            if in_flight.error is not None:
                raise in_flight.error
            return in_flight.result

        # We're a waiter - wait for the initiator to complete
        completed = in_flight.event.wait(timeout=self._timeout)

        if not completed:
            logger.error(f"Timeout waiting for coalesced request: {cache_key}")
            raise TimeoutError(f"Request for {cache_key} timed out after {self._timeout}s")

        if in_flight.error is not None:
            raise in_flight.error

        return in_flight.result

    def is_pending(self, cache_key: str) -> bool:
        with self._lock:
            return cache_key in self._in_flight

    @property
    def active_requests(self) -> int:
        """Number of currently in-flight requests."""
        with self._lock:
            return len(self._in_flight)

    def get_stats(self) -> Dict[str, Any]:
        """Get coalescer statistics."""
        with self._lock:
            return {
                "active_requests": len(self._in_flight),
                "active_keys": list(self._in_flight.keys()),
                "coalesced_requests": self._coalesced,
            }
