from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple, Union

from gatehouse.config import DirectoryConfig, Settings
from gatehouse.logging import get_logger
from gatehouse.service import audit as audit_actions
from gatehouse.service.access import AccessPolicyResolver
from gatehouse.service.audit import AuditLog
from gatehouse.service.config_cache import DIRECTORY_CONFIG_KEY, ConfigCache
from gatehouse.service.errors import (
    AccountInactiveError,
    ConflictError,
    InvalidCredentialsError,
    LockoutPreventedError,
    NotFoundError,
    TokenInvalidError,
    ValidationError,
)
from gatehouse.service.local import LocalCredentialVerifier
from gatehouse.service.strategy import StrategyResolver
from gatehouse.service.token_cache import TokenVersionCache
from gatehouse.service.tokens import SessionTokenService
from gatehouse.storage.errors import ConstraintViolation
from gatehouse.storage.memory import MemoryStore
from gatehouse.storage.models import (
    DEFAULT_AUTO,
    DEFAULT_DISABLED,
    DEFAULT_ENABLED,
    PROVIDER_LOCAL,
    ROLES,
    SECTIONS,
    PasswordResetToken,
    User,
)

logger = get_logger(__name__)

OVERRIDE_ALLOW = "allow"
OVERRIDE_DENY = "deny"
OVERRIDE_AUTO = "auto"


@dataclass(frozen=True)
class LoginResult:
    user: User
    token: str
    method: str
    degraded: bool = False


def _reset_digest(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class AuthService:
    """Login, token checks, revocation and access administration.

    Every revocation event (logout-all, password change or reset, role
    change, deactivation) bumps the user's token version in the store first
    and then invalidates the token version cache.
    """

    def __init__(
        self,
        store: MemoryStore,
        settings: Settings,
        *,
        strategy: StrategyResolver,
        local: LocalCredentialVerifier,
        tokens: SessionTokenService,
        token_cache: TokenVersionCache,
        access: AccessPolicyResolver,
        audit: AuditLog,
        config_cache: ConfigCache,
    ) -> None:
        self.store = store
        self.settings = settings
        self.strategy = strategy
        self.local = local
        self.tokens = tokens
        self.token_cache = token_cache
        self.access = access
        self.audit = audit
        self.config_cache = config_cache
        self.logger = logger

    # login and tokens
    def login(self, username: str, password: str) -> LoginResult:
        try:
            result = self.strategy.authenticate(username, password)
        except InvalidCredentialsError as exc:
            reason = (
                "account_inactive"
                if isinstance(exc, AccountInactiveError)
                else "invalid_credentials"
            )
            self.audit.record(
                audit_actions.AUTH_LOGIN,
                target_type="user",
                target_id=None,
                result=audit_actions.FAILURE,
                metadata={"username": username, "reason": reason},
            )
            raise
        except Exception as exc:
            self.audit.record(
                audit_actions.AUTH_LOGIN,
                target_type="user",
                target_id=None,
                result=audit_actions.ERROR,
                metadata={
                    "username": username,
                    "error_code": getattr(exc, "error_code", type(exc).__name__),
                },
            )
            raise

        token = self.tokens.issue(result.user)
        self.audit.record(
            audit_actions.AUTH_LOGIN,
            target_type="user",
            target_id=result.user.id,
            result=audit_actions.SUCCESS,
            actor_id=result.user.id,
            metadata={
                "username": result.user.username,
                "method": result.method,
                "degraded": result.degraded,
            },
        )
        self.logger.info(
            "login_succeeded", user_id=result.user.id, method=result.method
        )
        return LoginResult(
            user=result.user, token=token, method=result.method, degraded=result.degraded
        )

    def authenticate_token(self, token: str) -> User:
        """Verify a session token and confirm it has not been revoked.

        Returns the principal described by the token claims.
        """
        payload = self.tokens.verify(token)
        version = payload.get("token_version")
        if not isinstance(version, int) or isinstance(version, bool):
            raise TokenInvalidError()
        user_id = payload["sub"]
        current = self.token_cache.get(user_id)
        if current is None or current != version:
            self.logger.info(
                "token_revoked", user_id=user_id, token_version=version, current_version=current
            )
            raise TokenInvalidError()
        role = payload.get("role")
        if role not in ROLES:
            raise TokenInvalidError()
        return User(
            id=user_id,
            username=payload.get("username") or "",
            email=payload.get("email") or "",
            role=role,
            token_version=version,
        )

    def authorize_section(self, token: str, section: str) -> User:
        user = self.authenticate_token(token)
        self.access.require_section(user, section)
        return user

    def _revoke(self, user_id: str) -> None:
        self.token_cache.invalidate(user_id)

    def logout_all(self, user_id: str, *, actor_id: Optional[str] = None) -> int:
        try:
            version = self.store.bump_token_version(user_id)
        except ConstraintViolation as exc:
            raise NotFoundError("user not found") from exc
        self._revoke(user_id)
        self.audit.record(
            audit_actions.AUTH_LOGOUT_ALL,
            target_type="user",
            target_id=user_id,
            result=audit_actions.SUCCESS,
            actor_id=actor_id or user_id,
        )
        return version

    # passwords
    def _require_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return user

    def _local_identity_id(self, user: User) -> str:
        identity = self.store.find_identity(user.id, PROVIDER_LOCAL)
        if identity is None:
            raise ValidationError("user has no local credential")
        return identity.id

    def change_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> None:
        user = self._require_user(user_id)
        identity_id = self._local_identity_id(user)
        verified = self.local.verify(user.username, current_password)
        if verified is None or verified.id != user.id:
            raise InvalidCredentialsError()
        if not new_password:
            raise ValidationError("password required")
        new_hash = self.local.hash_password(new_password)
        with self.store.transaction():
            self.store.set_credential(identity_id, new_hash)
            self.store.bump_token_version(user.id)
        self._revoke(user.id)
        self.audit.record(
            audit_actions.AUTH_PASSWORD_CHANGED,
            target_type="user",
            target_id=user.id,
            result=audit_actions.SUCCESS,
            actor_id=user.id,
        )

    def request_password_reset(self, username: str) -> str:
        """Create a reset token for a local user.

        The caller delivers the token. Unknown, inactive and directory-only
        users get a random token that is never stored, so the response does
        not reveal whether the account exists.
        """
        token = secrets.token_urlsafe(32)
        user = self.store.find_user_by_username(username)
        identity = (
            self.store.find_identity(user.id, PROVIDER_LOCAL)
            if user and user.is_active
            else None
        )
        if identity is None:
            self.logger.info("password_reset_not_applicable")
            return token
        self.store.create_reset_token(
            PasswordResetToken.new(
                _reset_digest(token),
                user.id,
                ttl_minutes=self.settings.password_reset_ttl_minutes,
            )
        )
        self.logger.info("password_reset_requested", user_id=user.id)
        return token

    def complete_password_reset(self, token: str, new_password: str) -> User:
        if not new_password:
            raise ValidationError("password required")
        digest = _reset_digest(token or "")
        new_hash = self.local.hash_password(new_password)
        with self.store.transaction():
            record = self.store.get_reset_token(digest)
            if record is None or record.expired:
                if record is not None:
                    self.store.delete_reset_token(digest)
                invalid = True
            else:
                invalid = False
                user = self.store.get_user(record.user_id)
                identity = (
                    self.store.find_identity(user.id, PROVIDER_LOCAL) if user else None
                )
                if user is None or not user.is_active or identity is None:
                    self.store.delete_reset_token(digest)
                    invalid = True
                else:
                    self.store.set_credential(identity.id, new_hash)
                    self.store.bump_token_version(user.id)
                    self.store.delete_reset_token(digest)
        if invalid:
            self.logger.warning("password_reset_invalid_token")
            raise TokenInvalidError("invalid reset token")
        self._revoke(user.id)
        self.audit.record(
            audit_actions.AUTH_PASSWORD_RESET,
            target_type="user",
            target_id=user.id,
            result=audit_actions.SUCCESS,
            actor_id=user.id,
        )
        self.logger.info("password_reset_completed", user_id=user.id)
        return self.store.get_user(user.id)

    # user administration
    def create_local_user(
        self,
        username: str,
        email: str,
        password: str,
        *,
        role: str = "viewer",
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> User:
        if not username or not password:
            raise ValidationError("username and password are required")
        if role not in ROLES:
            raise ValidationError("invalid role", detail={"role": role})
        try:
            user = self.store.create_user_with_identity(
                username,
                email,
                PROVIDER_LOCAL,
                username,
                role=role,
                password_hash=self.local.hash_password(password),
                first_name=first_name,
                last_name=last_name,
            )
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        self.audit.record(
            audit_actions.USER_CREATE,
            target_type="user",
            target_id=user.id,
            result=audit_actions.SUCCESS,
            actor_id=actor_id,
            metadata={"username": user.username, "role": user.role, "provider": PROVIDER_LOCAL},
        )
        return user

    def set_user_role(
        self, user_id: str, role: str, *, actor_id: Optional[str] = None
    ) -> User:
        if role not in ROLES:
            raise ValidationError("invalid role", detail={"role": role})
        user = self._require_user(user_id)
        if user.role == role:
            return user
        if user.role == "admin" and user.is_active:
            self.access.ensure_admin_access_preserved(excluding=[user.id])
        with self.store.transaction():
            self.store.update_user(user.id, role=role)
            self.store.bump_token_version(user.id)
        self._revoke(user.id)
        self.audit.record(
            audit_actions.USER_ROLE_CHANGED,
            target_type="user",
            target_id=user.id,
            result=audit_actions.SUCCESS,
            actor_id=actor_id,
            metadata={"previous_role": user.role, "role": role},
        )
        return self.store.get_user(user.id)

    def deactivate_user(self, user_id: str, *, actor_id: Optional[str] = None) -> User:
        user = self._require_user(user_id)
        if not user.is_active:
            return user
        if user.role == "admin":
            self.access.ensure_admin_access_preserved(excluding=[user.id])
        with self.store.transaction():
            self.store.update_user(user.id, is_active=False)
            self.store.bump_token_version(user.id)
        self._revoke(user.id)
        self.audit.record(
            audit_actions.USER_DEACTIVATED,
            target_type="user",
            target_id=user.id,
            result=audit_actions.SUCCESS,
            actor_id=actor_id,
        )
        return self.store.get_user(user.id)

    # access administration
    def _validate_section(self, section: str) -> None:
        if section not in SECTIONS:
            raise ValidationError("unknown section", detail={"section": section})

    def set_section_override(
        self,
        user_id: str,
        section: str,
        value: str,
        *,
        actor_id: Optional[str] = None,
    ) -> None:
        self._validate_section(section)
        if value not in {OVERRIDE_ALLOW, OVERRIDE_DENY, OVERRIDE_AUTO}:
            raise ValidationError("invalid override", detail={"value": value})
        self._require_user(user_id)
        proposed = None if value == OVERRIDE_AUTO else value == OVERRIDE_ALLOW
        try:
            self.access.ensure_admin_access_preserved(
                override_changes={(user_id, section): proposed}
            )
        except LockoutPreventedError as exc:
            self.audit.record(
                audit_actions.SECTION_OVERRIDE_SET,
                target_type="user",
                target_id=user_id,
                result=audit_actions.FAILURE,
                actor_id=actor_id,
                metadata={"section": section, "value": value, "reason": exc.error_code},
            )
            raise
        if value == OVERRIDE_AUTO:
            self.store.clear_override(user_id, section)
            action = audit_actions.SECTION_OVERRIDE_CLEARED
        else:
            self.store.upsert_override(user_id, section, value == OVERRIDE_ALLOW)
            action = audit_actions.SECTION_OVERRIDE_SET
        self.audit.record(
            action,
            target_type="user",
            target_id=user_id,
            result=audit_actions.SUCCESS,
            actor_id=actor_id,
            metadata={"section": section, "value": value},
        )

    def update_section_defaults(
        self,
        changes: Mapping[Tuple[str, str], str],
        *,
        actor_id: Optional[str] = None,
    ) -> Dict[Tuple[str, str], str]:
        """Apply per-role section defaults after the lockout guard passes."""
        for (role, section), value in changes.items():
            if role not in ROLES:
                raise ValidationError("invalid role", detail={"role": role})
            self._validate_section(section)
            if value not in {DEFAULT_ENABLED, DEFAULT_DISABLED, DEFAULT_AUTO}:
                raise ValidationError("invalid section default", detail={"value": value})
        summary = [
            {"role": role, "section": section, "value": value}
            for (role, section), value in sorted(changes.items())
        ]
        try:
            self.access.ensure_admin_access_preserved(changes)
        except LockoutPreventedError as exc:
            self.audit.record(
                audit_actions.RBAC_SECTION_DEFAULTS_UPDATED,
                target_type="section_defaults",
                target_id=exc.detail.get("section"),
                result=audit_actions.FAILURE,
                actor_id=actor_id,
                metadata={"reason": exc.error_code, "changes": summary},
            )
            raise
        self.store.apply_section_defaults(dict(changes))
        self.config_cache.invalidate(AccessPolicyResolver.DEFAULTS_KEY)
        self.audit.record(
            audit_actions.RBAC_SECTION_DEFAULTS_UPDATED,
            target_type="section_defaults",
            target_id=None,
            result=audit_actions.SUCCESS,
            actor_id=actor_id,
            metadata={"changes": summary},
        )
        return self.store.get_section_defaults()

    def set_disabled_sections(
        self, sections: Iterable[str], *, actor_id: Optional[str] = None
    ) -> None:
        sections = set(sections)
        for section in sections:
            self._validate_section(section)
        try:
            self.access.ensure_admin_access_preserved(disabled_sections=sections)
        except LockoutPreventedError as exc:
            self.audit.record(
                audit_actions.SECTION_KILL_SWITCH_UPDATED,
                target_type="sections",
                target_id=exc.detail.get("section"),
                result=audit_actions.FAILURE,
                actor_id=actor_id,
                metadata={"sections": sorted(sections), "reason": exc.error_code},
            )
            raise
        self.store.set_disabled_sections(sections)
        self.config_cache.invalidate(AccessPolicyResolver.DISABLED_KEY)
        self.audit.record(
            audit_actions.SECTION_KILL_SWITCH_UPDATED,
            target_type="sections",
            target_id=None,
            result=audit_actions.SUCCESS,
            actor_id=actor_id,
            metadata={"sections": sorted(sections)},
        )

    def set_directory_config(
        self,
        config: Union[DirectoryConfig, Dict[str, Any]],
        *,
        actor_id: Optional[str] = None,
    ) -> DirectoryConfig:
        if not isinstance(config, DirectoryConfig):
            config = DirectoryConfig(**config)
        self.store.set_directory_config(config)
        self.config_cache.invalidate(DIRECTORY_CONFIG_KEY)
        self.audit.record(
            audit_actions.DIRECTORY_CONFIG_UPDATED,
            target_type="directory_config",
            target_id=None,
            result=audit_actions.SUCCESS,
            actor_id=actor_id,
            metadata={"enabled": config.enabled, "strategy": config.strategy.value},
        )
        return config


__all__ = ["AuthService", "LoginResult"]
