"""In-memory key-value store."""

from infoline.errors import StorageQuotaExceeded


class MemoryStore:
    """Process-local store with an optional byte quota.

    The quota mirrors browser storage: a write that would push the total
    size of keys and values past ``max_bytes`` is rejected and leaves the
    previous value in place.
    """

    def __init__(self, *, prefix: str = "infoline_", max_bytes: int | None = None) -> None:
        self._data: dict[str, str] = {}
        self._prefix = prefix
        self._max_bytes = max_bytes

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def _size(self) -> int:
        return sum(len(k) + len(v) for k, v in self._data.items())

    def get(self, key: str) -> str | None:
        return self._data.get(self._key(key))

    def set(self, key: str, value: str) -> None:
        full_key = self._key(key)
        if self._max_bytes is not None:
            current = self._data.get(full_key)
            size = self._size() + len(value) + len(full_key)
            if current is not None:
                size -= len(current) + len(full_key)
            if size > self._max_bytes:
                raise StorageQuotaExceeded(
                    f"Writing {full_key!r} exceeds the {self._max_bytes} byte quota"
                )
        self._data[full_key] = value

    def delete(self, key: str) -> None:
        self._data.pop(self._key(key), None)

    def keys(self, prefix: str = "") -> list[str]:
        start = self._key(prefix)
        return [k[len(self._prefix) :] for k in self._data if k.startswith(start)]

    def clear(self) -> None:
        self._data.clear()
