from __future__ import annotations

from typing import Dict, Iterable, Mapping, Optional, Sequence, Tuple

from gatehouse.logging import get_logger
from gatehouse.service.config_cache import ConfigCache
from gatehouse.service.errors import ForbiddenError, LockoutPreventedError
from gatehouse.storage.memory import MemoryStore
from gatehouse.storage.models import (
    DEFAULT_DISABLED,
    DEFAULT_ENABLED,
    SECTIONS,
    User,
)

logger = get_logger(__name__)

SectionDefaults = Mapping[Tuple[str, str], str]

DEFAULT_ROLE_PERMISSIONS: Dict[str, Tuple[str, ...]] = {
    "admin": ("*:*",),
    "editor": (
        "dashboard:read",
        "settings:read",
        "users:read",
        "users:update",
        "config:read",
        "config:update",
        "audit:read",
    ),
    "viewer": (
        "dashboard:read",
        "users:read",
        "config:read",
        "audit:read",
    ),
}


class RolePermissionTable:
    """Static role -> ``resource:action`` permissions with wildcard support.

    ``*:*`` grants everything, ``resource:*`` every action on one resource.
    """

    def __init__(self, mapping: Optional[Mapping[str, Iterable[str]]] = None) -> None:
        source = DEFAULT_ROLE_PERMISSIONS if mapping is None else mapping
        self._permissions = {role: frozenset(perms) for role, perms in source.items()}

    def permissions_for(self, role: str) -> frozenset:
        return self._permissions.get(role, frozenset())

    def has_permission(self, role: str, permission: str) -> bool:
        granted = self.permissions_for(role)
        if not granted:
            return False
        if "*:*" in granted:
            return True
        resource, _, _action = permission.partition(":")
        return f"{resource}:*" in granted or permission in granted

    def grants_section(self, role: str, section: str) -> bool:
        return self.has_permission(role, f"{section}:read")


def effective_access(
    role: str,
    section: str,
    override: Optional[bool],
    permissions: RolePermissionTable,
    role_defaults: SectionDefaults,
    disabled_sections: Iterable[str] = (),
) -> bool:
    """Effective access of one role/override pair to one section.

    Pure: depends only on its arguments. Precedence, highest first: global
    kill switch, override deny, override allow, role permission, per-role
    default, deny.
    """
    if section in disabled_sections:
        return False
    if override is False:
        return False
    if override is True:
        return True
    if permissions.grants_section(role, section):
        return True
    default = role_defaults.get((role, section))
    if default == DEFAULT_DISABLED:
        return False
    if default == DEFAULT_ENABLED:
        return True
    return False


class AccessPolicyResolver:
    """Loads access snapshots from the store and evaluates ``effective_access``."""

    DEFAULTS_KEY = "section_defaults"
    DISABLED_KEY = "disabled_sections"

    def __init__(
        self,
        store: MemoryStore,
        permissions: Optional[RolePermissionTable] = None,
        *,
        config_cache: Optional[ConfigCache] = None,
        protected_sections: Sequence[str] = ("settings",),
    ) -> None:
        self.store = store
        self.permissions = permissions or RolePermissionTable()
        self.config_cache = config_cache or ConfigCache()
        self.protected_sections = tuple(protected_sections)

    def section_defaults(self) -> SectionDefaults:
        return self.config_cache.get(self.DEFAULTS_KEY, self.store.get_section_defaults)

    def disabled_sections(self) -> frozenset:
        return self.config_cache.get(
            self.DISABLED_KEY, lambda: frozenset(self.store.get_disabled_sections())
        )

    def _override_value(self, user_id: str, section: str) -> Optional[bool]:
        override = self.store.get_override(user_id, section)
        return override.enabled if override else None

    def effective_access(self, user: User, section: str) -> bool:
        if section not in SECTIONS or not user.is_active:
            return False
        return effective_access(
            user.role,
            section,
            self._override_value(user.id, section),
            self.permissions,
            self.section_defaults(),
            self.disabled_sections(),
        )

    def section_map(self, user: User) -> Dict[str, bool]:
        return {section: self.effective_access(user, section) for section in SECTIONS}

    def require_section(self, user: User, section: str) -> None:
        if not self.effective_access(user, section):
            logger.info("section_access_denied", user_id=user.id, section=section)
            raise ForbiddenError(
                "section access denied", detail={"section": section}
            )

    def ensure_admin_access_preserved(
        self,
        changes: Optional[Mapping[Tuple[str, str], str]] = None,
        *,
        excluding: Iterable[str] = (),
        override_changes: Optional[Mapping[Tuple[str, str], Optional[bool]]] = None,
        disabled_sections: Optional[Iterable[str]] = None,
    ) -> None:
        """Reject changes that would strand every administrator.

        Simulates the proposed state for each protected section the change
        touches, against every active admin (minus ``excluding``, for
        demotions and deactivations). ``changes`` are section defaults,
        ``override_changes`` maps ``(user_id, section)`` to the new override
        (``None`` clears it) and ``disabled_sections`` replaces the kill
        switch set. Having no active admin at all also counts as a lockout.
        """
        changes = changes or {}
        override_changes = override_changes or {}
        if changes or override_changes or disabled_sections is not None:
            touched = {section for (_role, section) in changes}
            touched.update(section for (_user_id, section) in override_changes)
            if disabled_sections is not None:
                disabled_sections = set(disabled_sections)
                touched.update(disabled_sections)
            sections = [s for s in self.protected_sections if s in touched]
        else:
            sections = list(self.protected_sections)
        if not sections:
            return
        proposed = dict(self.store.get_section_defaults())
        for key, value in changes.items():
            if value in {DEFAULT_ENABLED, DEFAULT_DISABLED}:
                proposed[key] = value
            else:
                proposed.pop(key, None)
        if disabled_sections is None:
            disabled = self.store.get_disabled_sections()
        else:
            disabled = disabled_sections
        skipped = set(excluding)
        admins = [
            admin
            for admin in self.store.list_active_users(role="admin")
            if admin.id not in skipped
        ]

        def override_for(user_id: str, section: str) -> Optional[bool]:
            if (user_id, section) in override_changes:
                return override_changes[(user_id, section)]
            return self._override_value(user_id, section)

        for section in sections:
            if not any(
                effective_access(
                    admin.role,
                    section,
                    override_for(admin.id, section),
                    self.permissions,
                    proposed,
                    disabled,
                )
                for admin in admins
            ):
                logger.warning(
                    "admin_lockout_prevented",
                    section=section,
                    active_admins=len(admins),
                )
                raise LockoutPreventedError(
                    "change would remove every administrator's access",
                    detail={"section": section},
                )
