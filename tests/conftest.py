import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might read settings
_test_tmp_dir = tempfile.mkdtemp(prefix="gatehouse_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ROOT_KEY", "test-root-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from gatehouse.config import AuthStrategy, DirectoryConfig, Settings, reset_settings_cache  # noqa: E402
from gatehouse.service.audit import MemoryAuditLog  # noqa: E402
from gatehouse.service.directory import DirectoryProfile  # noqa: E402
from gatehouse.service.runtime import Runtime  # noqa: E402
from gatehouse.storage.memory import MemoryStore  # noqa: E402

EDITORS_GROUP = "cn=editors,ou=groups,dc=example,dc=com"
VIEWERS_GROUP = "cn=viewers,ou=groups,dc=example,dc=com"
ADMINS_GROUP = "cn=admins,ou=groups,dc=example,dc=com"


class FakeDirectoryClient:
    """Stands in for LdapDirectoryClient; records every step it is asked to run."""

    def __init__(self, directory: "FakeDirectory", config: DirectoryConfig):
        self.directory = directory
        self.config = config
        self.calls = []
        self.closed = False

    def _step(self, name):
        self.calls.append(name)
        exc = self.directory.fail_on.get(name)
        if exc is not None:
            raise exc

    def open(self):
        self._step("open")

    def bind_service(self):
        self._step("bind_service")

    def find_user(self, username):
        self._step("find_user")
        entry = self.directory.entries.get(username)
        return entry[0] if entry else None

    def verify_password(self, dn, password):
        self._step("verify_password")
        return any(
            profile.dn == dn and secret == password
            for profile, secret in self.directory.entries.values()
        )

    def find_groups(self, user_dn):
        self._step("find_groups")
        return list(self.directory.groups.get(user_dn, []))

    def close(self):
        self.calls.append("close")
        self.closed = True


class FakeDirectory:
    """Client factory plus the directory contents the fake clients serve."""

    def __init__(self):
        self.entries = {}
        self.groups = {}
        self.fail_on = {}
        self.clients = []

    def add_user(self, username, password, *, groups=(), **attributes):
        dn = attributes.pop("dn", f"uid={username},ou=people,dc=example,dc=com")
        profile = DirectoryProfile(dn=dn, **attributes)
        self.entries[username] = (profile, password)
        self.groups[dn] = list(groups)
        return profile

    def __call__(self, config):
        client = FakeDirectoryClient(self, config)
        self.clients.append(client)
        return client


def make_directory_config(**overrides) -> DirectoryConfig:
    values = {
        "enabled": True,
        "url": "ldap://directory.test:389",
        "bind_dn": "cn=service,dc=example,dc=com",
        "bind_password": "service-password",
        "search_base": "ou=people,dc=example,dc=com",
        "search_filter": "(uid=${username})",
        "group_search_base": "ou=groups,dc=example,dc=com",
        "group_search_filter": "(member=${userDN})",
        "role_mapping": [
            (ADMINS_GROUP, "admin"),
            (EDITORS_GROUP, "editor"),
            (VIEWERS_GROUP, "viewer"),
        ],
        "strategy": AuthStrategy.LOCAL_FIRST,
    }
    values.update(overrides)
    return DirectoryConfig(**values)


@pytest.fixture(autouse=True)
def reset_settings():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def settings(tmp_path):
    """Settings with cheap Argon2 parameters and no Redis."""
    return Settings(
        root_key="unit-test-root-key-0123456789-abcdefghijklmnop",
        shared_fs_root=str(tmp_path),
        test_mode=True,
        redis_url=None,
        argon2_time_cost=1,
        argon2_memory_cost=8,
        argon2_parallelism=1,
        directory_retry_base_delay_ms=1,
    )


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def audit_log():
    return MemoryAuditLog()


@pytest.fixture
def fake_directory():
    return FakeDirectory()


@pytest.fixture
def directory_config():
    """Factory for an enabled, complete directory configuration."""
    return make_directory_config


@pytest.fixture
def runtime(settings, memory_store, audit_log, fake_directory):
    return Runtime(
        settings,
        store=memory_store,
        audit=audit_log,
        directory_client_factory=fake_directory,
        sleep=lambda _seconds: None,
    )
