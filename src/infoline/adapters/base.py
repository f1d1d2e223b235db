"""Base protocols for durable local storage."""

from typing import Protocol, runtime_checkable


@runtime_checkable
class KeyValueStore(Protocol):
    """Synchronous, string-keyed durable store.

    Implementations namespace every key with their prefix, so callers use
    short logical keys such as ``"offline_queue"``.
    """

    def get(self, key: str) -> str | None:
        """Read a value, or ``None`` when the key is absent."""
        ...

    def set(self, key: str, value: str) -> None:
        """Write a value, raising ``StorageError`` when it cannot be stored."""
        ...

    def delete(self, key: str) -> None:
        """Remove a key; missing keys are ignored."""
        ...

    def keys(self, prefix: str = "") -> list[str]:
        """Logical keys (without the namespace) starting with ``prefix``."""
        ...
