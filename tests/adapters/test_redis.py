"""Integration tests for the Redis store using testcontainers."""

from unittest.mock import MagicMock

import pytest

# Skip all tests if redis or testcontainers are not installed
pytest.importorskip("redis")
pytest.importorskip("testcontainers")

import redis
from testcontainers.redis import RedisContainer

from infoline import KeyValueStore, StorageError
from infoline.adapters.redis import RedisStore


@pytest.fixture(scope="module")
def redis_container():
    """Start a Redis container for the test module."""
    with RedisContainer() as container:
        yield container


@pytest.fixture
def redis_client(redis_container):
    """Create a sync Redis client."""
    client = redis.Redis(
        host=redis_container.get_container_host_ip(),
        port=redis_container.get_exposed_port(6379),
        decode_responses=False,
    )
    yield client
    client.flushdb()
    client.close()


@pytest.fixture
def redis_store(redis_client) -> RedisStore:
    """Create a RedisStore with a test prefix."""
    return RedisStore(redis_client, prefix="test_")


class TestRedisStore:
    """Integration tests for RedisStore."""

    def test_satisfies_protocol(self, redis_store: RedisStore) -> None:
        assert isinstance(redis_store, KeyValueStore)

    def test_get_nonexistent_returns_none(self, redis_store: RedisStore) -> None:
        """Test that getting a nonexistent key returns None."""
        assert redis_store.get("nonexistent") is None

    def test_set_and_get(self, redis_store: RedisStore, redis_client) -> None:
        """Values are stored under the prefixed key and read back as text."""
        redis_store.set("session", '{"access_token": "t"}')

        assert redis_store.get("session") == '{"access_token": "t"}'
        assert redis_client.get("test_session") == b'{"access_token": "t"}'

    def test_delete(self, redis_store: RedisStore) -> None:
        redis_store.set("session", "{}")
        redis_store.delete("session")
        assert redis_store.get("session") is None

    def test_keys_by_prefix(self, redis_store: RedisStore, redis_client) -> None:
        """Only keys in this store's namespace are listed, without the namespace."""
        redis_store.set("cache:regions", "1")
        redis_store.set("cache:schools", "2")
        redis_store.set("offline_queue", "[]")
        redis_client.set("other_cache:x", "3")

        assert sorted(redis_store.keys("cache:")) == ["cache:regions", "cache:schools"]
        assert sorted(redis_store.keys()) == ["cache:regions", "cache:schools", "offline_queue"]


class TestRedisStoreErrors:
    """Redis failures surface as StorageError."""

    @pytest.fixture
    def broken_client(self) -> MagicMock:
        client = MagicMock()
        client.get.side_effect = redis.ConnectionError("down")
        client.set.side_effect = redis.ConnectionError("down")
        client.delete.side_effect = redis.ConnectionError("down")
        client.scan.side_effect = redis.ConnectionError("down")
        return client

    def test_read_failure(self, broken_client: MagicMock) -> None:
        with pytest.raises(StorageError, match="read failed"):
            RedisStore(broken_client).get("session")

    def test_write_failure(self, broken_client: MagicMock) -> None:
        with pytest.raises(StorageError, match="write failed"):
            RedisStore(broken_client).set("session", "{}")

    def test_scan_failure(self, broken_client: MagicMock) -> None:
        with pytest.raises(StorageError, match="scan failed"):
            RedisStore(broken_client).keys()
