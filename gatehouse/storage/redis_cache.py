from __future__ import annotations

from typing import Optional

from redis import Redis

from gatehouse.logging import get_logger
from gatehouse.service.token_cache import TokenVersionLoader

logger = get_logger(__name__)


class RedisTokenVersionCache:
    """Token version cache shared by every worker through Redis.

    Same contract as the in-process ``TokenVersionCache``. Entries only ever
    move forward: the Lua script refuses to replace a cached version with a
    lower one, and ``invalidate`` writes the authoritative version through
    instead of just deleting the key, so a slow refresh from another worker
    cannot resurrect a revoked version.
    """

    KEY_PREFIX = "gatehouse:token_version:"

    _SET_IF_NEWER_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if current and tonumber(current) > tonumber(ARGV[1]) then
  return 0
end
redis.call('SET', KEYS[1], ARGV[1], 'EX', ARGV[2])
return 1
"""

    def __init__(
        self,
        loader: TokenVersionLoader,
        redis_url: Optional[str] = None,
        *,
        ttl_seconds: float = 60.0,
        socket_timeout: float = 5.0,
        client: Optional[Redis] = None,
    ) -> None:
        if client is None:
            if not redis_url:
                raise ValueError("redis_url or client is required")
            client = Redis.from_url(
                redis_url,
                decode_responses=True,
                socket_timeout=socket_timeout,
                socket_connect_timeout=socket_timeout,
            )
        self.client = client
        self._loader = loader
        self.ttl_seconds = ttl_seconds
        self._set_if_newer = self.client.register_script(self._SET_IF_NEWER_SCRIPT)

    def _key(self, user_id: str) -> str:
        return f"{self.KEY_PREFIX}{user_id}"

    @property
    def _ttl(self) -> int:
        return max(1, int(self.ttl_seconds))

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self.client.ping()

    def get(self, user_id: str) -> Optional[int]:
        raw = self.client.get(self._key(user_id))
        if raw is not None:
            return int(raw)
        version = self._loader(user_id)
        if version is not None:
            self._set_if_newer(keys=[self._key(user_id)], args=[version, self._ttl])
        return version

    def invalidate(self, user_id: str) -> None:
        version = self._loader(user_id)
        if version is None:
            self.client.delete(self._key(user_id))
        else:
            self._set_if_newer(keys=[self._key(user_id)], args=[version, self._ttl])
        logger.info("token_version_invalidated", user_id=user_id, backend="redis")

    def reset(self) -> None:
        keys = list(self.client.scan_iter(match=f"{self.KEY_PREFIX}*"))
        if keys:
            self.client.delete(*keys)
