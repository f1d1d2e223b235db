"""Redis-backed key-value store."""

from __future__ import annotations

from typing import Any

import redis

from infoline.errors import StorageError


class RedisStore:
    """Durable store on a sync Redis client.

    Survives process restarts, which the in-memory store does not. Redis
    failures are raised as :class:`StorageError`.
    """

    def __init__(
        self,
        client: Any,  # redis.Redis
        *,
        prefix: str = "infoline_",
    ) -> None:
        self._client = client
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str, *, prefix: str = "infoline_") -> RedisStore:
        return cls(redis.Redis.from_url(url), prefix=prefix)

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def get(self, key: str) -> str | None:
        try:
            data = self._client.get(self._key(key))
        except redis.RedisError as e:
            raise StorageError(f"Redis read failed: {e}") from e
        if data is None:
            return None
        if isinstance(data, bytes):
            return data.decode("utf-8")
        return data

    def set(self, key: str, value: str) -> None:
        try:
            self._client.set(self._key(key), value)
        except redis.RedisError as e:
            raise StorageError(f"Redis write failed: {e}") from e

    def delete(self, key: str) -> None:
        try:
            self._client.delete(self._key(key))
        except redis.RedisError as e:
            raise StorageError(f"Redis delete failed: {e}") from e

    def keys(self, prefix: str = "") -> list[str]:
        """Use SCAN so large keyspaces are not blocked."""
        pattern = f"{self._prefix}{prefix}*"
        found: list[str] = []
        cursor = 0
        try:
            while True:
                cursor, keys = self._client.scan(cursor, match=pattern, count=100)
                for raw in keys:
                    name = raw.decode("utf-8") if isinstance(raw, bytes) else raw
                    found.append(name[len(self._prefix) :])
                if cursor == 0:
                    break
        except redis.RedisError as e:
            raise StorageError(f"Redis scan failed: {e}") from e
        return found

    def close(self) -> None:
        self._client.close()
