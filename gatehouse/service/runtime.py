from __future__ import annotations

import time
from typing import Callable, Optional, Union
from urllib.parse import urlparse, urlunparse

from gatehouse.config import DirectoryConfig, Settings, get_settings
from gatehouse.logging import get_logger
from gatehouse.service.access import AccessPolicyResolver, RolePermissionTable
from gatehouse.service.audit import AuditLog, LoggingAuditLog
from gatehouse.service.auth import AuthService
from gatehouse.service.config_cache import DIRECTORY_CONFIG_KEY, ConfigCache
from gatehouse.service.directory import (
    CircuitBreaker,
    DirectoryAuthenticator,
    DirectoryClientFactory,
    LdapDirectoryClient,
)
from gatehouse.service.local import LocalCredentialVerifier
from gatehouse.service.strategy import StrategyResolver
from gatehouse.service.token_cache import TokenVersionCache
from gatehouse.service.tokens import SessionTokenService
from gatehouse.storage.memory import MemoryStore
from gatehouse.storage.redis_cache import RedisTokenVersionCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    redis://:secret@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Explicitly constructed owner of every service handle and cache.

    Callers build one ``Runtime`` and pass it where it is needed; there is no
    module-level instance. ``reset()`` clears the token version cache, the
    config cache and the directory circuit breaker.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[MemoryStore] = None,
        audit: Optional[AuditLog] = None,
        permissions: Optional[RolePermissionTable] = None,
        directory_client_factory: Optional[DirectoryClientFactory] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        if store is None and not self.settings.use_memory_store:
            raise RuntimeError("only the memory store is available; set USE_MEMORY_STORE=true")
        self.store = store or MemoryStore(
            fs_root=self.settings.shared_fs_root,
            persist=self.settings.persist_memory_store,
        )
        self.audit = audit or LoggingAuditLog()
        self.config_cache = ConfigCache(self.settings.directory_config_cache_ttl_seconds)
        self.token_cache = self._build_token_cache()

        self.breaker = CircuitBreaker(
            failure_threshold=self.settings.directory_breaker_failure_threshold,
            cooldown_seconds=self.settings.directory_breaker_cooldown_seconds,
            half_open_max_attempts=self.settings.directory_breaker_half_open_max_attempts,
        )
        self._sleep = sleep
        self.local = LocalCredentialVerifier(
            self.store,
            time_cost=self.settings.argon2_time_cost,
            memory_cost=self.settings.argon2_memory_cost,
            parallelism=self.settings.argon2_parallelism,
        )
        self.directory = DirectoryAuthenticator(
            self.store,
            self.directory_config,
            directory_client_factory or self._ldap_client,
            role_sync=self.settings.directory_role_sync,
            on_revocation=self.token_cache.invalidate,
        )
        self.strategy = StrategyResolver(self.local, self.directory, self.directory_config)
        self.tokens = SessionTokenService(
            self.settings.root_key,
            issuer=self.settings.token_issuer,
            audience=self.settings.token_audience,
            ttl_seconds=self.settings.session_token_ttl_seconds,
            clock_skew_seconds=self.settings.token_clock_skew_seconds,
        )
        self.access = AccessPolicyResolver(
            self.store,
            permissions,
            config_cache=self.config_cache,
            protected_sections=self.settings.protected_sections,
        )
        self.auth = AuthService(
            self.store,
            self.settings,
            strategy=self.strategy,
            local=self.local,
            tokens=self.tokens,
            token_cache=self.token_cache,
            access=self.access,
            audit=self.audit,
            config_cache=self.config_cache,
        )
        logger.info("runtime_init_completed")

    def _build_token_cache(self) -> Union[TokenVersionCache, RedisTokenVersionCache]:
        loader = self.store.get_active_token_version
        ttl = self.settings.token_version_cache_ttl_seconds
        if self.settings.redis_url:
            try:
                cache = RedisTokenVersionCache(
                    loader, self.settings.redis_url, ttl_seconds=ttl
                )
                cache.verify_connection()
                return cache
            except Exception as exc:
                if not self.settings.test_mode:
                    raise RuntimeError(
                        "Redis is unreachable; unset REDIS_URL to use the in-process token cache"
                    ) from exc
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                )
        return TokenVersionCache(loader, ttl_seconds=ttl)

    def directory_config(self) -> DirectoryConfig:
        return self.config_cache.get(DIRECTORY_CONFIG_KEY, self.store.get_directory_config)

    def _ldap_client(self, config: DirectoryConfig) -> LdapDirectoryClient:
        return LdapDirectoryClient(
            config,
            breaker=self.breaker,
            connect_timeout=self.settings.directory_connect_timeout_seconds,
            operation_timeout=self.settings.directory_operation_timeout_seconds,
            max_retries=self.settings.directory_max_retries,
            retry_base_delay_ms=self.settings.directory_retry_base_delay_ms,
            sleep=self._sleep,
        )

    def reset(self) -> None:
        self.token_cache.reset()
        self.config_cache.reset()
        self.breaker.reset()
        logger.info("runtime_reset")
