from __future__ import annotations

import json
import os
import secrets
from enum import Enum
from pathlib import Path
from typing import Any, List, Optional, Tuple

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from gatehouse.logging import get_logger

logger = get_logger(__name__)

_MIN_ROOT_KEY_LENGTH = 32


class AuthStrategy(str, Enum):
    """Order and fallback policy between local and directory authentication.

    Values match the strings operators store in the config store.
    """

    LOCAL_ONLY = "local-only"
    DIRECTORY_ONLY = "ldap-only"
    LOCAL_FIRST = "local-first"
    DIRECTORY_FIRST = "ldap-first"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra["env"] = env
    return Field(default, json_schema_extra=extra, **kwargs)


class DirectoryConfig(BaseModel):
    """Directory (LDAP) connection and mapping settings.

    Owned by the config store; placeholders ``${username}`` and ``${userDN}``
    are substituted (escaped) at search time.
    """

    enabled: bool = False
    url: str = ""
    bind_dn: str = ""
    bind_password: str = ""
    search_base: str = ""
    search_filter: str = ""
    group_search_base: str = ""
    group_search_filter: str = ""
    # Ordered: the first entry whose group the user belongs to wins.
    role_mapping: List[Tuple[str, str]] = Field(default_factory=list)
    strategy: AuthStrategy = AuthStrategy.LOCAL_FIRST

    model_config = ConfigDict(extra="ignore")

    @field_validator("role_mapping", mode="before")
    @classmethod
    def _coerce_role_mapping(cls, value: Any) -> Any:
        if value is None or value == "":
            return []
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                logger.warning("directory_role_mapping_unparseable")
                return []
        if isinstance(value, dict):
            return list(value.items())
        return value

    @field_validator("strategy", mode="before")
    @classmethod
    def _coerce_strategy(cls, value: Any) -> AuthStrategy:
        if value is None or value == "":
            return AuthStrategy.LOCAL_FIRST
        return AuthStrategy(value)

    @property
    def has_service_account(self) -> bool:
        return bool(self.bind_dn and self.bind_password)

    @property
    def has_group_search(self) -> bool:
        return bool(self.group_search_base and self.group_search_filter)

    def missing_fields(self) -> List[str]:
        """Names of required fields that are empty."""
        return [
            name
            for name in ("url", "search_base", "search_filter")
            if not getattr(self, name)
        ]


class Settings(BaseModel):
    root_key: str = env_field(None, "ROOT_KEY", validate_default=True)
    shared_fs_root: str = env_field("/srv/gatehouse", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(True, "USE_MEMORY_STORE")
    persist_memory_store: bool = env_field(
        False,
        "PERSIST_MEMORY_STORE",
        description="Write the memory store to SHARED_FS_ROOT/state after each commit",
    )
    test_mode: bool = env_field(False, "TEST_MODE")
    redis_url: Optional[str] = env_field(None, "REDIS_URL")

    token_issuer: str = env_field("urn:gatehouse", "TOKEN_ISSUER")
    token_audience: str = env_field("gatehouse.api", "TOKEN_AUDIENCE")
    session_token_ttl_seconds: int = env_field(
        7 * 24 * 60 * 60, "SESSION_TOKEN_TTL_SECONDS"
    )
    token_clock_skew_seconds: int = env_field(30, "TOKEN_CLOCK_SKEW_SECONDS")
    token_version_cache_ttl_seconds: float = env_field(
        60.0,
        "TOKEN_VERSION_CACHE_TTL_SECONDS",
        description="Upper bound on revocation latency for passive token checks",
    )

    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST")
    argon2_memory_cost: int = env_field(65536, "ARGON2_MEMORY_COST")
    argon2_parallelism: int = env_field(1, "ARGON2_PARALLELISM")

    directory_connect_timeout_seconds: float = env_field(
        5.0, "DIRECTORY_CONNECT_TIMEOUT_SECONDS"
    )
    directory_operation_timeout_seconds: float = env_field(
        10.0, "DIRECTORY_OPERATION_TIMEOUT_SECONDS"
    )
    directory_max_retries: int = env_field(2, "DIRECTORY_MAX_RETRIES")
    directory_retry_base_delay_ms: int = env_field(200, "DIRECTORY_RETRY_BASE_DELAY_MS")
    directory_breaker_failure_threshold: int = env_field(
        5, "DIRECTORY_BREAKER_FAILURE_THRESHOLD"
    )
    directory_breaker_cooldown_seconds: float = env_field(
        30.0, "DIRECTORY_BREAKER_COOLDOWN_SECONDS"
    )
    directory_breaker_half_open_max_attempts: int = env_field(
        1, "DIRECTORY_BREAKER_HALF_OPEN_MAX_ATTEMPTS"
    )
    directory_role_sync: bool = env_field(
        False,
        "DIRECTORY_ROLE_SYNC",
        description="Re-derive a returning directory user's role from groups on every login",
    )
    directory_config_cache_ttl_seconds: float = env_field(
        60.0, "DIRECTORY_CONFIG_CACHE_TTL_SECONDS"
    )

    password_reset_ttl_minutes: int = env_field(15, "PASSWORD_RESET_TTL_MINUTES")
    protected_sections: List[str] = env_field(
        ["settings"],
        "PROTECTED_SECTIONS",
        description="Sections whose role defaults may never strand every administrator",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("protected_sections", mode="before")
    @classmethod
    def _split_sections(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value

    @field_validator("root_key", mode="before")
    @classmethod
    def _ensure_root_key(cls, value: str | None) -> str:
        if value:
            if len(value) < _MIN_ROOT_KEY_LENGTH:
                raise ValueError(
                    f"ROOT_KEY must be at least {_MIN_ROOT_KEY_LENGTH} characters"
                )
            return value
        # Persist a generated root key so issued tokens survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/gatehouse"))
        key_path = fs_root / ".root_key"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
            pass
        except OSError as exc:
            logger.warning(
                "root_key_dir_setup",
                error=str(exc),
                path=str(fs_root),
            )

        if key_path.exists() and not key_path.is_symlink():
            try:
                persisted = key_path.read_text().strip()
                if persisted and len(persisted) >= _MIN_ROOT_KEY_LENGTH:
                    return persisted
            except OSError as exc:
                logger.error("root_key_read_failed", error=str(exc), path=str(key_path))

        generated = secrets.token_urlsafe(64)
        import tempfile

        tmp_path: str | None = None
        try:
            # Atomic write: temp file then rename
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".root_key_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(key_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error("root_key_persist_failed", error=str(exc), path=str(key_path))
            raise RuntimeError(
                "Unable to persist root key; set ROOT_KEY or make SHARED_FS_ROOT writable"
            ) from exc
        logger.warning("root_key_generated", path=str(key_path))
        return generated


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
