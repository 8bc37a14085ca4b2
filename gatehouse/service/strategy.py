from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, List, Optional

from gatehouse.config import AuthStrategy, DirectoryConfig
from gatehouse.logging import get_logger
from gatehouse.service.directory import (
    DirectoryAuthenticated,
    DirectoryAuthenticator,
    DirectoryRejected,
    DirectoryUnavailable,
)
from gatehouse.service.errors import AccountInactiveError, InvalidCredentialsError
from gatehouse.service.local import LocalCredentialVerifier
from gatehouse.storage.models import User

logger = get_logger(__name__)

METHOD_LOCAL = "local"
METHOD_DIRECTORY = "directory"


@dataclass(frozen=True)
class AuthResult:
    user: User
    method: str
    degraded: bool = False


class StrategyResolver:
    """Runs local and directory authentication in the configured order.

    Methods run one after the other, never concurrently. A directory
    ``Rejected`` is an ordinary result: in the *-first modes it moves on to
    the next method, in the *-only modes it ends the attempt. Only a
    directory ``Unavailable`` is swallowed (``LOCAL_FIRST``) or falls back
    (``DIRECTORY_FIRST``). Unexpected exceptions propagate unchanged.
    """

    def __init__(
        self,
        local: LocalCredentialVerifier,
        directory: DirectoryAuthenticator,
        config_loader: Callable[[], DirectoryConfig],
    ) -> None:
        self.local = local
        self.directory = directory
        self._config_loader = config_loader

    def strategy(self) -> AuthStrategy:
        return self._config_loader().strategy

    def authenticate(self, username: str, password: str) -> AuthResult:
        strategy = self.strategy()
        rejections: List[str] = []
        if strategy == AuthStrategy.LOCAL_ONLY:
            result = self._try_local(username, password)
        elif strategy == AuthStrategy.DIRECTORY_ONLY:
            result = self._try_directory(username, password, rejections)
        elif strategy == AuthStrategy.LOCAL_FIRST:
            result = self._try_local(username, password)
            if result is None:
                result = self._try_directory(username, password, rejections)
        else:
            result = self._try_directory(username, password, rejections, fallback=True)
            if result is None:
                result = self._try_local(username, password)

        if result is None:
            if "account_inactive" in rejections:
                raise AccountInactiveError()
            raise InvalidCredentialsError()
        return result

    def _try_local(self, username: str, password: str) -> Optional[AuthResult]:
        user = self.local.verify(username, password)
        if user is None:
            logger.info("auth_method_failed", method=METHOD_LOCAL)
            return None
        return AuthResult(user=user, method=METHOD_LOCAL)

    def _try_directory(
        self,
        username: str,
        password: str,
        rejections: List[str],
        *,
        fallback: bool = False,
    ) -> Optional[AuthResult]:
        outcome = self.directory.authenticate(username, password)
        if isinstance(outcome, DirectoryAuthenticated):
            return AuthResult(
                user=outcome.user, method=METHOD_DIRECTORY, degraded=outcome.degraded
            )
        if isinstance(outcome, DirectoryUnavailable):
            if fallback:
                logger.warning("auth_fallback", reason=outcome.reason, to=METHOD_LOCAL)
            else:
                logger.warning(
                    "auth_method_failed", method=METHOD_DIRECTORY, reason=outcome.reason
                )
            return None
        if isinstance(outcome, DirectoryRejected):
            rejections.append(outcome.reason)
            logger.info("auth_method_failed", method=METHOD_DIRECTORY, reason=outcome.reason)
            return None
        raise TypeError(f"unexpected directory outcome: {outcome!r}")
