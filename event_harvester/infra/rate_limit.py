"""Per-host minimum spacing between outgoing requests."""

from __future__ import annotations

import time
from threading import Lock
from typing import Callable, Dict


class RateLimiter:
    """Hand out request slots at least ``interval`` seconds apart per key.

    ``reserve`` books the next slot and returns how long the caller must
    wait before using it; the waiting itself happens at the caller so it can
    honour a job deadline.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._next_slot: Dict[str, float] = {}
        self._lock = Lock()

    def reserve(self, key: str, interval: float) -> float:
        with self._lock:
            now = self._clock()
            slot = max(now, self._next_slot.get(key, now))
            self._next_slot[key] = slot + max(0.0, interval)
            return slot - now

    def reset(self, key: str | None = None) -> None:
        with self._lock:
            if key is None:
                self._next_slot.clear()
            else:
                self._next_slot.pop(key, None)


__all__ = ["RateLimiter"]
