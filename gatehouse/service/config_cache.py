from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple

from gatehouse.logging import get_logger

logger = get_logger(__name__)

DIRECTORY_CONFIG_KEY = "directory_config"


class ConfigCache:
    """Short-lived cache for configuration read from the store.

    Holds the directory configuration, section defaults and the kill switch
    so that hot paths do not hit the store on every call. Admin writes call
    ``invalidate`` for the key they touched.
    """

    def __init__(
        self,
        ttl_seconds: float = 60.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[Any, float]] = {}
        self._lock = threading.Lock()

    def get(self, key: str, loader: Callable[[], Any]) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and self._clock() - entry[1] < self.ttl_seconds:
                return entry[0]
        value = loader()
        with self._lock:
            self._entries[key] = (value, self._clock())
        return value

    def invalidate(self, key: Optional[str] = None) -> None:
        with self._lock:
            if key is None:
                self._entries.clear()
            else:
                self._entries.pop(key, None)
        logger.debug("config_cache_invalidated", key=key or "*")

    def reset(self) -> None:
        self.invalidate()
