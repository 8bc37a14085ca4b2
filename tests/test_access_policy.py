"""Tests for the section access precedence rules and the admin lockout guard."""

import pytest

from gatehouse.service.access import (
    AccessPolicyResolver,
    RolePermissionTable,
    effective_access,
)
from gatehouse.service.errors import ForbiddenError, LockoutPreventedError
from gatehouse.storage.models import PROVIDER_DIRECTORY, SECTIONS

# Admin reaches the dashboard only through its role; settings depends on defaults
NARROW_PERMISSIONS = RolePermissionTable(
    {
        "admin": ("dashboard:read",),
        "editor": ("dashboard:read",),
        "viewer": (),
    }
)


def _make_user(store, username, role):
    return store.create_user_with_identity(
        username, f"{username}@example.com", PROVIDER_DIRECTORY, f"uid={username}", role=role
    )


@pytest.fixture
def resolver(memory_store):
    return AccessPolicyResolver(memory_store, NARROW_PERMISSIONS)


class TestRolePermissionTable:
    def test_global_wildcard(self):
        table = RolePermissionTable()

        assert table.has_permission("admin", "anything:delete")

    def test_resource_wildcard(self):
        table = RolePermissionTable({"editor": ("settings:*",)})

        assert table.has_permission("editor", "settings:read")
        assert not table.has_permission("editor", "maintenance:read")

    def test_exact_permission(self):
        table = RolePermissionTable()

        assert table.grants_section("viewer", "dashboard")
        assert not table.grants_section("viewer", "settings")
        assert table.grants_section("editor", "settings")

    def test_unknown_role_has_nothing(self):
        assert not RolePermissionTable().has_permission("guest", "dashboard:read")


class TestPrecedence:
    """effective_access over role x override x default for the settings section."""

    @pytest.mark.parametrize("role", ["admin", "editor", "viewer"])
    @pytest.mark.parametrize("default", ["enabled", "disabled", None])
    def test_override_deny_always_wins(self, role, default):
        defaults = {(role, "settings"): default} if default else {}

        assert effective_access(role, "settings", False, RolePermissionTable(), defaults) is False

    @pytest.mark.parametrize("role", ["admin", "editor", "viewer"])
    @pytest.mark.parametrize("default", ["enabled", "disabled", None])
    def test_override_allow_always_wins(self, role, default):
        defaults = {(role, "settings"): default} if default else {}

        assert effective_access(role, "settings", True, RolePermissionTable(), defaults) is True

    @pytest.mark.parametrize(
        "role,default,expected",
        [
            ("admin", None, True),
            ("admin", "disabled", True),
            ("editor", None, True),
            ("editor", "disabled", True),
            ("viewer", None, False),
            ("viewer", "enabled", True),
            ("viewer", "disabled", False),
        ],
    )
    def test_without_override(self, role, default, expected):
        defaults = {(role, "settings"): default} if default else {}

        assert effective_access(role, "settings", None, RolePermissionTable(), defaults) is expected

    @pytest.mark.parametrize("override", [True, False, None])
    def test_kill_switch_beats_everything(self, override):
        assert (
            effective_access(
                "admin",
                "maintenance",
                override,
                RolePermissionTable(),
                {("admin", "maintenance"): "enabled"},
                disabled_sections={"maintenance"},
            )
            is False
        )

    def test_default_for_other_role_ignored(self):
        defaults = {("editor", "maintenance"): "enabled"}

        assert effective_access("viewer", "maintenance", None, RolePermissionTable(), defaults) is False


class TestResolver:
    def test_inactive_user_has_no_access(self, memory_store, resolver):
        user = _make_user(memory_store, "alice", "admin")
        user.is_active = False

        assert resolver.section_map(user) == {s: False for s in SECTIONS}

    def test_unknown_section_denied(self, memory_store, resolver):
        user = _make_user(memory_store, "alice", "admin")

        assert resolver.effective_access(user, "billing") is False

    def test_override_read_from_store(self, memory_store, resolver):
        user = _make_user(memory_store, "bob", "viewer")
        memory_store.upsert_override(user.id, "maintenance", True)

        assert resolver.effective_access(user, "maintenance") is True

    def test_require_section_raises(self, memory_store, resolver):
        user = _make_user(memory_store, "bob", "viewer")

        with pytest.raises(ForbiddenError) as excinfo:
            resolver.require_section(user, "settings")
        assert excinfo.value.detail == {"section": "settings"}

    def test_defaults_cached_until_invalidated(self, memory_store, resolver):
        user = _make_user(memory_store, "bob", "viewer")
        assert resolver.effective_access(user, "settings") is False

        memory_store.apply_section_defaults({("viewer", "settings"): "enabled"})
        assert resolver.effective_access(user, "settings") is False

        resolver.config_cache.invalidate(resolver.DEFAULTS_KEY)
        assert resolver.effective_access(user, "settings") is True


class TestLockoutGuard:
    def test_disabling_settings_for_every_role_is_rejected(self, memory_store, resolver):
        _make_user(memory_store, "root", "admin")
        memory_store.apply_section_defaults({("admin", "settings"): "enabled"})
        changes = {(role, "settings"): "disabled" for role in ("admin", "editor", "viewer")}

        with pytest.raises(LockoutPreventedError) as excinfo:
            resolver.ensure_admin_access_preserved(changes)
        assert excinfo.value.detail == {"section": "settings"}

    def test_admin_override_keeps_change_allowed(self, memory_store, resolver):
        admin = _make_user(memory_store, "root", "admin")
        memory_store.upsert_override(admin.id, "settings", True)
        changes = {(role, "settings"): "disabled" for role in ("admin", "editor", "viewer")}

        resolver.ensure_admin_access_preserved(changes)

    def test_unprotected_section_never_checked(self, memory_store, resolver):
        changes = {("admin", "maintenance"): "disabled"}

        resolver.ensure_admin_access_preserved(changes)

    def test_one_admin_with_access_is_enough(self, memory_store, resolver):
        first = _make_user(memory_store, "root", "admin")
        second = _make_user(memory_store, "ops", "admin")
        memory_store.upsert_override(first.id, "settings", False)
        memory_store.upsert_override(second.id, "settings", True)

        resolver.ensure_admin_access_preserved({("admin", "settings"): "disabled"})

    def test_excluding_last_admin_is_lockout(self, memory_store):
        admin = _make_user(memory_store, "root", "admin")
        guard = AccessPolicyResolver(memory_store)

        with pytest.raises(LockoutPreventedError):
            guard.ensure_admin_access_preserved(excluding=[admin.id])

    def test_no_admin_at_all_is_lockout(self, memory_store):
        _make_user(memory_store, "eve", "editor")

        with pytest.raises(LockoutPreventedError):
            AccessPolicyResolver(memory_store).ensure_admin_access_preserved(
                {("editor", "settings"): "disabled"}
            )

    def test_default_permissions_protect_admins(self, memory_store):
        _make_user(memory_store, "root", "admin")
        guard = AccessPolicyResolver(memory_store)
        changes = {(role, "settings"): "disabled" for role in ("admin", "editor", "viewer")}

        guard.ensure_admin_access_preserved(changes)

    def test_guard_does_not_write(self, memory_store, resolver):
        _make_user(memory_store, "root", "admin")

        with pytest.raises(LockoutPreventedError):
            resolver.ensure_admin_access_preserved({("admin", "settings"): "disabled"})
        assert memory_store.get_section_defaults() == {}

    def test_proposed_override_is_simulated(self, memory_store):
        admin = _make_user(memory_store, "root", "admin")
        guard = AccessPolicyResolver(memory_store)

        with pytest.raises(LockoutPreventedError):
            guard.ensure_admin_access_preserved(override_changes={(admin.id, "settings"): False})
        guard.ensure_admin_access_preserved(override_changes={(admin.id, "dashboard"): False})
        assert memory_store.get_override(admin.id, "settings") is None

    def test_proposed_kill_switch_is_simulated(self, memory_store):
        _make_user(memory_store, "root", "admin")
        guard = AccessPolicyResolver(memory_store)

        with pytest.raises(LockoutPreventedError):
            guard.ensure_admin_access_preserved(disabled_sections={"settings"})
        guard.ensure_admin_access_preserved(disabled_sections={"maintenance"})
