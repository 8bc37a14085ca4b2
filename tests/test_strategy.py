"""Tests for StrategyResolver ordering and fallback rules."""

import pytest

from gatehouse.config import AuthStrategy
from gatehouse.service.directory import (
    DirectoryAuthenticator,
    DirectoryRejected,
    DirectoryUnavailable,
)
from gatehouse.service.errors import DirectoryConnectionError, InvalidCredentialsError
from gatehouse.service.local import LocalCredentialVerifier
from gatehouse.service.strategy import METHOD_DIRECTORY, METHOD_LOCAL, StrategyResolver
from gatehouse.storage.models import PROVIDER_LOCAL

EDITORS = "cn=editors,ou=groups,dc=example,dc=com"
VIEWERS = "cn=viewers,ou=groups,dc=example,dc=com"


@pytest.fixture
def config_holder(directory_config):
    return {"config": directory_config()}


@pytest.fixture
def local(memory_store):
    return LocalCredentialVerifier(memory_store, time_cost=1, memory_cost=8, parallelism=1)


@pytest.fixture
def resolver(memory_store, fake_directory, config_holder, local):
    loader = lambda: config_holder["config"]  # noqa: E731
    directory = DirectoryAuthenticator(memory_store, loader, fake_directory)
    return StrategyResolver(local, directory, loader)


@pytest.fixture
def use(config_holder, directory_config):
    def _use(strategy, **overrides):
        config_holder["config"] = directory_config(strategy=strategy, **overrides)

    return _use


@pytest.fixture
def local_alice(memory_store, local):
    return memory_store.create_user_with_identity(
        "alice",
        "alice@example.com",
        PROVIDER_LOCAL,
        "alice",
        password_hash=local.hash_password("local-pass"),
    )


class TestLocalOnly:
    def test_local_success(self, resolver, use, local_alice, fake_directory):
        use(AuthStrategy.LOCAL_ONLY)

        result = resolver.authenticate("alice", "local-pass")

        assert result.method == METHOD_LOCAL
        assert result.user.id == local_alice.id
        assert fake_directory.clients == []

    def test_directory_never_consulted(self, resolver, use, fake_directory):
        use(AuthStrategy.LOCAL_ONLY)
        fake_directory.add_user("alice", "dir-pass")

        with pytest.raises(InvalidCredentialsError):
            resolver.authenticate("alice", "dir-pass")
        assert fake_directory.clients == []


class TestDirectoryOnly:
    def test_directory_success(self, resolver, use, fake_directory):
        use(AuthStrategy.DIRECTORY_ONLY)
        fake_directory.add_user("alice", "dir-pass", groups=[EDITORS])

        result = resolver.authenticate("alice", "dir-pass")

        assert result.method == METHOD_DIRECTORY
        assert result.user.role == "editor"

    def test_local_password_not_accepted(self, resolver, use, local_alice, fake_directory):
        use(AuthStrategy.DIRECTORY_ONLY)

        with pytest.raises(InvalidCredentialsError):
            resolver.authenticate("alice", "local-pass")

    def test_unavailable_is_invalid_credentials(self, resolver, use, local_alice, fake_directory):
        use(AuthStrategy.DIRECTORY_ONLY)
        fake_directory.fail_on["open"] = DirectoryConnectionError("down")

        with pytest.raises(InvalidCredentialsError):
            resolver.authenticate("alice", "local-pass")


class TestLocalFirst:
    def test_no_local_user_and_directory_disabled(self, resolver, use, fake_directory):
        use(AuthStrategy.LOCAL_FIRST, enabled=False)

        with pytest.raises(InvalidCredentialsError):
            resolver.authenticate("alice", "whatever")
        assert fake_directory.clients == []

    def test_local_success_skips_directory(self, resolver, use, local_alice, fake_directory):
        use(AuthStrategy.LOCAL_FIRST)

        result = resolver.authenticate("alice", "local-pass")

        assert result.method == METHOD_LOCAL
        assert fake_directory.clients == []

    def test_local_failure_moves_to_directory(self, resolver, use, fake_directory):
        use(AuthStrategy.LOCAL_FIRST)
        fake_directory.add_user("bob", "dir-pass")

        result = resolver.authenticate("bob", "dir-pass")

        assert result.method == METHOD_DIRECTORY

    def test_directory_unavailable_is_swallowed(self, resolver, use, fake_directory):
        use(AuthStrategy.LOCAL_FIRST)
        fake_directory.fail_on["open"] = DirectoryConnectionError("down")

        with pytest.raises(InvalidCredentialsError):
            resolver.authenticate("bob", "dir-pass")

    def test_unexpected_directory_error_propagates(self, resolver, use, fake_directory):
        use(AuthStrategy.LOCAL_FIRST)
        fake_directory.fail_on["find_user"] = RuntimeError("bug")

        with pytest.raises(RuntimeError):
            resolver.authenticate("bob", "dir-pass")


class TestDirectoryFirst:
    def test_editor_mapped_first(self, resolver, use, fake_directory):
        use(AuthStrategy.DIRECTORY_FIRST)
        fake_directory.add_user("carol", "dir-pass", groups=[VIEWERS, EDITORS])

        result = resolver.authenticate("carol", "dir-pass")

        assert result.method == METHOD_DIRECTORY
        assert result.user.role == "editor"

    def test_unavailable_falls_back_to_local(self, resolver, use, local_alice, fake_directory):
        use(AuthStrategy.DIRECTORY_FIRST)
        fake_directory.fail_on["open"] = DirectoryConnectionError("down")

        result = resolver.authenticate("alice", "local-pass")

        assert result.method == METHOD_LOCAL
        assert result.user.id == local_alice.id

    def test_incomplete_config_falls_back_to_local(self, resolver, use, local_alice):
        use(AuthStrategy.DIRECTORY_FIRST, url="")

        assert resolver.authenticate("alice", "local-pass").method == METHOD_LOCAL

    def test_rejected_continues_to_local(self, resolver, use, local_alice, fake_directory):
        use(AuthStrategy.DIRECTORY_FIRST)

        result = resolver.authenticate("alice", "local-pass")

        assert result.method == METHOD_LOCAL
        assert fake_directory.clients[0].calls[-1] == "close"

    def test_unexpected_directory_error_skips_local(
        self, resolver, use, local_alice, fake_directory, local, monkeypatch
    ):
        use(AuthStrategy.DIRECTORY_FIRST)
        fake_directory.fail_on["bind_service"] = ValueError("bug")
        calls = []
        monkeypatch.setattr(local, "verify", lambda *a: calls.append(a))

        with pytest.raises(ValueError):
            resolver.authenticate("alice", "local-pass")
        assert calls == []

    def test_group_degradation_is_reported(self, resolver, use, fake_directory):
        from gatehouse.service.errors import GroupLookupDegraded

        use(AuthStrategy.DIRECTORY_FIRST)
        fake_directory.add_user("dave", "dir-pass", groups=[EDITORS])
        fake_directory.fail_on["find_groups"] = GroupLookupDegraded("timeout")

        result = resolver.authenticate("dave", "dir-pass")

        assert result.degraded is True
        assert result.user.role == "viewer"


class TestOutcomeTypes:
    def test_rejected_and_unavailable_are_values(self):
        assert DirectoryRejected("x") == DirectoryRejected("x")
        assert DirectoryUnavailable("connection") == DirectoryUnavailable(
            "connection", DirectoryConnectionError("down")
        )


class TestInactiveAccounts:
    def test_inactive_directory_user_surfaces_as_invalid_credentials(
        self, resolver, use, fake_directory, memory_store
    ):
        from gatehouse.service.errors import AccountInactiveError

        use(AuthStrategy.DIRECTORY_ONLY)
        fake_directory.add_user("erin", "dir-pass")
        user = resolver.authenticate("erin", "dir-pass").user
        memory_store.update_user(user.id, is_active=False)

        with pytest.raises(InvalidCredentialsError) as excinfo:
            resolver.authenticate("erin", "dir-pass")
        assert isinstance(excinfo.value, AccountInactiveError)
        assert excinfo.value.message == "invalid credentials"
