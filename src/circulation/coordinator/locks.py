"""Per-item mutual exclusion.

Each item gets its own lock so that borrows, returns and sweeps on one item
are serialized while unrelated items proceed in parallel.
"""

import logging
import threading
import weakref
from contextlib import contextmanager
from typing import Generator

from ..errors import ConcurrencyConflict

logger = logging.getLogger(__name__)


class ItemLockRegistry:
    """Lazily created locks keyed by item ID.

    Locks are held weakly: an item's lock lives only while some thread holds
    it or waits on it, so the registry does not grow with the catalog.
    """

    def __init__(self, max_attempts: int = 5, initial_backoff: float = 0.05):
        """Initialize lock registry.

        Args:
            max_attempts: Acquisition attempts before giving up
            initial_backoff: Wait of the first attempt in seconds, doubled
                after every failed attempt
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.initial_backoff = initial_backoff
        self._locks: weakref.WeakValueDictionary[str, threading.Lock] = (
            weakref.WeakValueDictionary()
        )
        self._guard = threading.Lock()

    def _lock_for(self, item_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(item_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[item_id] = lock
            return lock

    def lock_count(self) -> int:
        """Number of item locks currently in use."""
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, item_id: str) -> Generator[None, None, None]:
        """Hold the item's lock for the duration of the block.

        Raises:
            ConcurrencyConflict: If the lock could not be acquired in time
        """
        lock = self._lock_for(item_id)
        wait = self.initial_backoff
        for attempt in range(1, self.max_attempts + 1):
            if lock.acquire(timeout=wait):
                break
            logger.debug(
                "Item %s busy (attempt %d/%d)", item_id, attempt, self.max_attempts
            )
            wait *= 2
        else:
            raise ConcurrencyConflict(item_id, self.max_attempts)

        try:
            yield
        finally:
            lock.release()

    def is_locked(self, item_id: str) -> bool:
        """Check whether some thread currently holds the item's lock."""
        with self._guard:
            lock = self._locks.get(item_id)
        return lock is not None and lock.locked()
