from __future__ import annotations

import random
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar, Union

from ldap3 import NONE, SUBTREE, Connection, Server
from ldap3.core.exceptions import (
    LDAPBindError,
    LDAPCommunicationError,
    LDAPException,
    LDAPInvalidFilterError,
    LDAPSocketOpenError,
)
from ldap3.utils.conv import escape_filter_chars

from gatehouse.config import DirectoryConfig
from gatehouse.logging import get_logger
from gatehouse.service.errors import (
    DirectoryConfigurationError,
    DirectoryConnectionError,
    DirectoryError,
    GroupLookupDegraded,
)
from gatehouse.storage.errors import ConstraintViolation
from gatehouse.storage.memory import MemoryStore
from gatehouse.storage.models import LOWEST_ROLE, PROVIDER_DIRECTORY, ROLES, User

logger = get_logger(__name__)

T = TypeVar("T")

RESULT_SUCCESS = 0
RESULT_NO_SUCH_OBJECT = 32

PLACEHOLDER_EMAIL_DOMAIN = "ldap.local"

USER_ATTRIBUTES = (
    "cn",
    "mail",
    "uid",
    "displayName",
    "givenName",
    "sn",
    "firstName",
    "lastName",
    "userPrincipalName",
)

_TRANSPORT_ERRORS = (LDAPSocketOpenError, LDAPCommunicationError)


def _first_value(attributes: Dict[str, Any], *names: str) -> Optional[str]:
    for name in names:
        value = attributes.get(name)
        if isinstance(value, (list, tuple)):
            value = value[0] if value else None
        if isinstance(value, bytes):
            value = value.decode("utf-8", errors="replace")
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


@dataclass
class DirectoryProfile:
    """Typed view of a directory user entry."""

    dn: str
    email: Optional[str] = None
    given_name: Optional[str] = None
    surname: Optional[str] = None
    display_name: Optional[str] = None

    @classmethod
    def from_attributes(cls, dn: str, attributes: Dict[str, Any]) -> "DirectoryProfile":
        common_name = _first_value(attributes, "cn")
        cn_parts = common_name.split(" ") if common_name else []
        given_name = _first_value(attributes, "givenName", "firstName")
        if given_name is None and cn_parts:
            given_name = cn_parts[0] or None
        surname = _first_value(attributes, "sn", "lastName")
        if surname is None and len(cn_parts) > 1:
            surname = " ".join(cn_parts[1:]) or None
        return cls(
            dn=dn,
            email=_first_value(attributes, "mail", "userPrincipalName"),
            given_name=given_name,
            surname=surname,
            display_name=_first_value(attributes, "displayName", "cn"),
        )

    def email_for(self, username: str) -> str:
        return self.email or f"{username}@{PLACEHOLDER_EMAIL_DOMAIN}"


@dataclass(frozen=True)
class DirectoryAuthenticated:
    user: User
    groups: Tuple[str, ...] = ()
    degraded: bool = False


@dataclass(frozen=True)
class DirectoryRejected:
    """Definitive "not authenticated". Never justifies trying another method."""

    reason: str


@dataclass(frozen=True)
class DirectoryUnavailable:
    """Infrastructure or configuration failure; fallback-eligible."""

    reason: str
    error: Optional[DirectoryError] = field(default=None, compare=False)


DirectoryOutcome = Union[DirectoryAuthenticated, DirectoryRejected, DirectoryUnavailable]


def map_groups_to_role(
    groups: Sequence[str], role_mapping: Sequence[Tuple[str, str]]
) -> str:
    """First mapping entry (in table order) whose group the user is in wins."""
    member_of = {g.casefold() for g in groups}
    for group_dn, role in role_mapping:
        if role in ROLES and group_dn.casefold() in member_of:
            return role
    return LOWEST_ROLE


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Process-wide breaker in front of every directory operation.

    closed -> open after ``failure_threshold`` consecutive transport failures;
    open -> half-open once ``cooldown_seconds`` have passed; half-open ->
    closed after ``half_open_max_attempts`` successes, or straight back to
    open on any failure.
    """

    def __init__(
        self,
        *,
        failure_threshold: int = 5,
        cooldown_seconds: float = 30.0,
        half_open_max_attempts: int = 1,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self.half_open_max_attempts = half_open_max_attempts
        self._clock = clock
        self._lock = threading.Lock()
        self.reset()

    @property
    def state(self) -> BreakerState:
        return self._state

    def reset(self) -> None:
        with self._lock:
            self._state = BreakerState.CLOSED
            self._failures = 0
            self._half_open_successes = 0
            self._opened_at = 0.0

    def before_call(self) -> None:
        with self._lock:
            if self._state != BreakerState.OPEN:
                return
            if self._clock() - self._opened_at >= self.cooldown_seconds:
                self._state = BreakerState.HALF_OPEN
                self._half_open_successes = 0
                logger.info("directory_breaker_half_open")
                return
        logger.warning("directory_breaker_rejected")
        raise DirectoryConnectionError("directory temporarily unavailable")

    def record_success(self) -> None:
        with self._lock:
            self._failures = 0
            if self._state == BreakerState.HALF_OPEN:
                self._half_open_successes += 1
                if self._half_open_successes >= self.half_open_max_attempts:
                    self._state = BreakerState.CLOSED
                    logger.info("directory_breaker_closed")

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            if self._state == BreakerState.HALF_OPEN:
                self._state = BreakerState.OPEN
                self._opened_at = self._clock()
                logger.warning("directory_breaker_opened", cause="half_open_failure")
            elif (
                self._state == BreakerState.CLOSED
                and self._failures >= self.failure_threshold
            ):
                self._state = BreakerState.OPEN
                self._opened_at = self._clock()
                logger.warning(
                    "directory_breaker_opened",
                    cause="threshold",
                    failures=self._failures,
                )


def backoff_delay(attempt: int, base_delay_ms: int) -> float:
    """Exponential backoff with up to 10% jitter, capped at 5s (seconds)."""
    exponential = base_delay_ms * (2 ** attempt)
    jitter = random.uniform(0, 0.1 * exponential)
    return min(exponential + jitter, 5000) / 1000.0


def _default_connection_factory(
    url: str, connect_timeout: float, receive_timeout: float
) -> Connection:
    server = Server(url, connect_timeout=connect_timeout, get_info=NONE)
    return Connection(
        server,
        receive_timeout=receive_timeout,
        raise_exceptions=False,
        auto_bind=False,
    )


class LdapDirectoryClient:
    """One directory session: open, bind, search, close.

    Transport failures are retried with backoff and counted by the shared
    breaker. Results that prove the server is reachable (wrong password,
    invalid filter) are never retried and never trip the breaker.
    """

    def __init__(
        self,
        config: DirectoryConfig,
        *,
        breaker: CircuitBreaker,
        connect_timeout: float = 5.0,
        operation_timeout: float = 10.0,
        max_retries: int = 2,
        retry_base_delay_ms: int = 200,
        sleep: Callable[[float], None] = time.sleep,
        connection_factory: Callable[[str, float, float], Any] = _default_connection_factory,
    ) -> None:
        self.config = config
        self.breaker = breaker
        self.connect_timeout = connect_timeout
        self.operation_timeout = operation_timeout
        self.max_retries = max_retries
        self.retry_base_delay_ms = retry_base_delay_ms
        self._sleep = sleep
        self._connection_factory = connection_factory
        self._conn = None

    def _call(self, operation: str, fn: Callable[[], T]) -> T:
        self.breaker.before_call()
        attempt = 0
        while True:
            try:
                result = fn()
            except _TRANSPORT_ERRORS as exc:
                if attempt >= self.max_retries:
                    self.breaker.record_failure()
                    raise DirectoryConnectionError(
                        f"directory {operation} failed",
                        detail={"operation": operation, "attempts": attempt + 1},
                    ) from exc
                delay = backoff_delay(attempt, self.retry_base_delay_ms)
                logger.info(
                    "directory_retry",
                    operation=operation,
                    attempt=attempt + 1,
                    delay=round(delay, 3),
                    error=type(exc).__name__,
                )
                self._sleep(delay)
                attempt += 1
            except DirectoryConnectionError:
                self.breaker.record_failure()
                raise
            except Exception:
                self.breaker.record_success()
                raise
            else:
                self.breaker.record_success()
                return result

    def open(self) -> None:
        def _open() -> None:
            conn = self._connection_factory(
                self.config.url, self.connect_timeout, self.operation_timeout
            )
            conn.open()
            self._conn = conn

        self._call("connect", _open)

    def _bind_as(self, dn: str, password: str) -> bool:
        try:
            bound = self._conn.rebind(user=dn, password=password)
        except LDAPBindError:
            return False
        return bool(bound)

    def bind_service(self) -> None:
        def _bind() -> bool:
            return self._bind_as(self.config.bind_dn, self.config.bind_password)

        if not self._call("service_bind", _bind):
            # The service account is operator configuration, not user input
            raise DirectoryConnectionError(
                "directory service bind failed",
                detail={"result": self._result_code()},
            )

    def verify_password(self, dn: str, password: str) -> bool:
        if not password:
            return False
        return self._call("user_bind", lambda: self._bind_as(dn, password))

    def _result_code(self) -> Optional[int]:
        result = getattr(self._conn, "result", None) or {}
        return result.get("result") if isinstance(result, dict) else None

    def search(
        self, base: str, search_filter: str, attributes: Sequence[str]
    ) -> List[Tuple[str, Dict[str, Any]]]:
        def _search() -> List[Tuple[str, Dict[str, Any]]]:
            try:
                found = self._conn.search(
                    search_base=base,
                    search_filter=search_filter,
                    search_scope=SUBTREE,
                    attributes=list(attributes),
                )
            except LDAPInvalidFilterError as exc:
                raise DirectoryConfigurationError(
                    "invalid directory search filter"
                ) from exc
            if not found:
                code = self._result_code()
                if code in (None, RESULT_SUCCESS, RESULT_NO_SUCH_OBJECT):
                    return []
                raise DirectoryConnectionError(
                    "directory search failed", detail={"result": code}
                )
            return [
                (entry["dn"], dict(entry.get("attributes") or {}))
                for entry in (self._conn.response or [])
                if entry.get("type") == "searchResEntry"
            ]

        return self._call("search", _search)

    def find_user(self, username: str) -> Optional[DirectoryProfile]:
        search_filter = self.config.search_filter.replace(
            "${username}", escape_filter_chars(username)
        )
        entries = self.search(self.config.search_base, search_filter, USER_ATTRIBUTES)
        if not entries:
            return None
        # Multiple matches: server ordering decides
        dn, attributes = entries[0]
        return DirectoryProfile.from_attributes(dn, attributes)

    def find_groups(self, user_dn: str) -> List[str]:
        search_filter = self.config.group_search_filter.replace(
            "${userDN}", escape_filter_chars(user_dn)
        )
        try:
            entries = self.search(self.config.group_search_base, search_filter, ["cn"])
        except (DirectoryError, LDAPException) as exc:
            raise GroupLookupDegraded(str(exc)) from exc
        return [dn for dn, _ in entries]

    def close(self) -> None:
        if self._conn is None:
            return
        try:
            self._conn.unbind()
        except LDAPException as exc:
            logger.warning("directory_close_failed", error=str(exc))
        finally:
            self._conn = None


DirectoryClientFactory = Callable[[DirectoryConfig], LdapDirectoryClient]


class DirectoryAuthenticator:
    """Authenticates against the directory and reconciles the local user.

    Returns a ``DirectoryOutcome`` value; infrastructure failures come back as
    ``DirectoryUnavailable`` rather than as exceptions. Anything else that
    escapes is unexpected and propagates.
    """

    def __init__(
        self,
        store: MemoryStore,
        config_loader: Callable[[], DirectoryConfig],
        client_factory: DirectoryClientFactory,
        *,
        role_sync: bool = False,
        on_revocation: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.store = store
        self._config_loader = config_loader
        self._client_factory = client_factory
        self.role_sync = role_sync
        self._on_revocation = on_revocation

    def authenticate(self, username: str, password: str) -> DirectoryOutcome:
        config = self._config_loader()
        if not config.enabled:
            logger.info("directory_disabled")
            return DirectoryRejected("directory_disabled")
        missing = config.missing_fields()
        if missing:
            logger.warning("directory_config_incomplete", missing=missing)
            return DirectoryUnavailable(
                "configuration",
                DirectoryConfigurationError(
                    "directory configuration incomplete", detail={"missing": missing}
                ),
            )
        if not username or not password:
            # An empty password would be an unauthenticated bind
            return DirectoryRejected("empty_credentials")

        client = self._client_factory(config)
        try:
            client.open()
            if config.has_service_account:
                client.bind_service()
            profile = client.find_user(username)
            if profile is None:
                logger.info("directory_user_not_found")
                return DirectoryRejected("user_not_found")
            if not client.verify_password(profile.dn, password):
                logger.info("directory_bind_rejected")
                return DirectoryRejected("invalid_credentials")
            groups, degraded = self._lookup_groups(client, config, profile.dn)
        except DirectoryError as exc:
            reason = (
                "configuration"
                if isinstance(exc, DirectoryConfigurationError)
                else "connection"
            )
            logger.warning("directory_unavailable", reason=reason, error=exc.message)
            return DirectoryUnavailable(reason, exc)
        finally:
            client.close()

        role = map_groups_to_role(groups, config.role_mapping)
        logger.info("directory_role_mapped", role=role, groups=len(groups))
        user = self._reconcile(username, profile, role)
        if user is None:
            return DirectoryRejected("account_inactive")
        return DirectoryAuthenticated(user=user, groups=tuple(groups), degraded=degraded)

    def _lookup_groups(
        self, client: LdapDirectoryClient, config: DirectoryConfig, user_dn: str
    ) -> Tuple[List[str], bool]:
        if not config.has_group_search:
            return [], False
        try:
            return client.find_groups(user_dn), False
        except GroupLookupDegraded as exc:
            logger.warning("directory_group_lookup_degraded", error=str(exc))
            return [], True

    def _reconcile(
        self, username: str, profile: DirectoryProfile, role: str
    ) -> Optional[User]:
        existing = self.store.find_user_by_username(username)
        if existing is None:
            try:
                user = self.store.create_user_with_identity(
                    username,
                    profile.email_for(username),
                    PROVIDER_DIRECTORY,
                    profile.dn,
                    role=role,
                    first_name=profile.given_name,
                    last_name=profile.surname,
                )
            except ConstraintViolation:
                # Created concurrently by another login
                existing = self.store.find_user_by_username(username)
                if existing is None:
                    raise
            else:
                logger.info("directory_user_created", user_id=user.id, role=role)
                return user

        if not existing.is_active:
            logger.info("directory_user_inactive", user_id=existing.id)
            return None
        return self._sync_existing(existing, profile, role)

    def _sync_existing(self, user: User, profile: DirectoryProfile, role: str) -> User:
        changes: Dict[str, Any] = {}
        if (user.first_name, user.last_name) != (profile.given_name, profile.surname):
            changes["first_name"] = profile.given_name
            changes["last_name"] = profile.surname
        role_changed = self.role_sync and user.role != role
        if role_changed:
            changes["role"] = role
        link_identity = self.store.find_identity(user.id, PROVIDER_DIRECTORY) is None
        if not changes and not link_identity:
            return user

        with self.store.transaction():
            if changes:
                user = self.store.update_user(user.id, **changes)
            if role_changed:
                self.store.bump_token_version(user.id)
                user = self.store.get_user(user.id)
            if link_identity:
                self.store.add_identity(user.id, PROVIDER_DIRECTORY, profile.dn)
                logger.info("directory_identity_linked", user_id=user.id)
        if role_changed and self._on_revocation:
            self._on_revocation(user.id)
        if changes:
            logger.info("directory_user_synced", user_id=user.id, fields=sorted(changes))
        return user
