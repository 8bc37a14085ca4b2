from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Optional, Tuple

from gatehouse.logging import get_logger

logger = get_logger(__name__)

# Returns the stored token version, or None for a missing/inactive user.
TokenVersionLoader = Callable[[str], Optional[int]]


class TokenVersionCache:
    """TTL cache of user id -> current token version.

    Reads take no lock: a fresh entry is served straight from the dict. Only
    refreshes and invalidations take ``_lock``. Every invalidation bumps a
    per-user generation, and a refresh that started before it is discarded
    instead of stored, so no read that begins after ``invalidate`` returns
    can observe the old version.
    """

    def __init__(
        self,
        loader: TokenVersionLoader,
        *,
        ttl_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._loader = loader
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        # user_id -> (version, fetched_at)
        self._entries: Dict[str, Tuple[int, float]] = {}
        self._generations: Dict[str, int] = {}
        self._epoch = 0
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def _generation(self, user_id: str) -> Tuple[int, int]:
        return self._epoch, self._generations.get(user_id, 0)

    def get(self, user_id: str) -> Optional[int]:
        entry = self._entries.get(user_id)
        if entry is not None and self._clock() - entry[1] < self.ttl_seconds:
            return entry[0]

        with self._lock:
            generation = self._generation(user_id)
        version = self._loader(user_id)
        fetched_at = self._clock()
        with self._lock:
            if version is None:
                self._entries.pop(user_id, None)
            elif self._generation(user_id) == generation:
                self._entries[user_id] = (version, fetched_at)
            else:
                logger.debug("token_version_refresh_discarded", user_id=user_id)
        return version

    def invalidate(self, user_id: str) -> None:
        with self._lock:
            self._entries.pop(user_id, None)
            self._generations[user_id] = self._generations.get(user_id, 0) + 1
        logger.info("token_version_invalidated", user_id=user_id)

    def reset(self) -> None:
        """Drop every entry; refreshes already in flight are discarded."""
        with self._lock:
            self._entries.clear()
            self._generations.clear()
            self._epoch += 1
