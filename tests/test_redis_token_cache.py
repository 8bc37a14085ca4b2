"""Tests for RedisTokenVersionCache against a mocked client."""

from unittest.mock import MagicMock

import pytest

from gatehouse.storage.redis_cache import RedisTokenVersionCache


@pytest.fixture
def client():
    mock = MagicMock()
    mock.get.return_value = None
    mock.scan_iter.return_value = iter([])
    return mock


@pytest.fixture
def versions():
    return {"u1": 3}


@pytest.fixture
def cache(client, versions):
    return RedisTokenVersionCache(versions.get, client=client, ttl_seconds=30)


def _script(client):
    return client.register_script.return_value


class TestGet:
    def test_cached_value_skips_loader(self, cache, client):
        client.get.return_value = "7"

        assert cache.get("u1") == 7
        client.get.assert_called_once_with("gatehouse:token_version:u1")
        _script(client).assert_not_called()

    def test_miss_loads_and_stores_if_newer(self, cache, client):
        assert cache.get("u1") == 3

        _script(client).assert_called_once_with(
            keys=["gatehouse:token_version:u1"], args=[3, 30]
        )

    def test_missing_user_not_stored(self, cache, client):
        assert cache.get("ghost") is None
        _script(client).assert_not_called()


class TestInvalidate:
    def test_writes_current_version_through(self, cache, client, versions):
        versions["u1"] = 4

        cache.invalidate("u1")

        _script(client).assert_called_once_with(
            keys=["gatehouse:token_version:u1"], args=[4, 30]
        )
        client.delete.assert_not_called()

    def test_deletes_key_for_inactive_user(self, cache, client, versions):
        versions.pop("u1")

        cache.invalidate("u1")

        client.delete.assert_called_once_with("gatehouse:token_version:u1")


class TestConstruction:
    def test_requires_url_or_client(self):
        with pytest.raises(ValueError):
            RedisTokenVersionCache(lambda _uid: None)

    def test_reset_deletes_prefixed_keys(self, cache, client):
        client.scan_iter.return_value = iter(
            ["gatehouse:token_version:u1", "gatehouse:token_version:u2"]
        )

        cache.reset()

        client.scan_iter.assert_called_once_with(match="gatehouse:token_version:*")
        client.delete.assert_called_once_with(
            "gatehouse:token_version:u1", "gatehouse:token_version:u2"
        )

    def test_verify_connection_pings(self, cache, client):
        cache.verify_connection()

        client.ping.assert_called_once_with()

    def test_runtime_falls_back_in_test_mode(self, settings, memory_store, monkeypatch):
        from gatehouse.service import runtime as runtime_module
        from gatehouse.service.token_cache import TokenVersionCache

        broken = MagicMock(side_effect=ConnectionError("refused"))
        monkeypatch.setattr(runtime_module, "RedisTokenVersionCache", broken)
        settings.redis_url = "redis://:hunter2@localhost:6379/0"

        rt = runtime_module.Runtime(settings, store=memory_store)

        assert isinstance(rt.token_cache, TokenVersionCache)

    def test_runtime_requires_redis_outside_test_mode(self, settings, memory_store, monkeypatch):
        from gatehouse.service import runtime as runtime_module

        broken = MagicMock(side_effect=ConnectionError("refused"))
        monkeypatch.setattr(runtime_module, "RedisTokenVersionCache", broken)
        settings.redis_url = "redis://localhost:6379/0"
        settings.test_mode = False

        with pytest.raises(RuntimeError):
            runtime_module.Runtime(settings, store=memory_store)

    def test_password_masked_in_url(self):
        from gatehouse.service.runtime import _mask_url_password

        assert (
            _mask_url_password("redis://:hunter2@localhost:6379/0")
            == "redis://:***@localhost:6379/0"
        )
