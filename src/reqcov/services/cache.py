"""Short-lived read cache for repeated backend lookups.

One cache object is owned by each backend client; entries expire by age only.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Hashable
from typing import Any

logger = logging.getLogger(__name__)


class TTLCache:
    """Key/value cache whose entries expire `ttl_seconds` after being stored.

    Args:
        ttl_seconds: Entry lifetime. Zero disables caching.
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(self, ttl_seconds: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[Hashable, tuple[float, Any]] = {}

    def get(self, key: Hashable) -> Any | None:
        """Return the cached value, or None when absent or expired."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    def put(self, key: Hashable, value: Any) -> None:
        if self._ttl <= 0:
            return
        self._entries[key] = (self._clock() + self._ttl, value)

    def clear(self) -> None:
        self._entries.clear()
        logger.debug("Backend read cache cleared")

    def __len__(self) -> int:
        return len(self._entries)
