"""Storage and platform adapters."""

from contextlib import suppress

from infoline.adapters.base import KeyValueStore
from infoline.adapters.memory import MemoryStore
from infoline.adapters.platform import PlatformClient

# Optional adapters - only available when dependencies are installed
with suppress(ImportError):
    from infoline.adapters.redis import RedisStore

__all__ = [
    "KeyValueStore",
    "MemoryStore",
    "PlatformClient",
    "RedisStore",
]
