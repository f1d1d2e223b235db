"""Response cache - TTL-bounded read cache with stale-while-revalidate.

This module provides the cache consulted by every read:
- get(), set(), delete(): Entry operations with lazy expiry
- query_with_cache(): Cached fetch with offline fallback, background
  refresh on hits and stampede protection on misses
- invalidate(), clear(): Resource-family and full resets

Eviction is FIFO by insertion time, not LRU: when a new key arrives in a
full cache the entry with the oldest ``stored_at`` goes, however often it
was read.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any, TypeVar, cast

from infoline.duration import now_ms, parse_duration, to_seconds
from infoline.errors import NetworkError, NoCachedData, StorageError
from infoline.keys import belongs_to
from infoline.types import CacheEntry, Duration

if TYPE_CHECKING:
    from infoline.adapters.base import KeyValueStore
    from infoline.network import NetworkMonitor

T = TypeVar("T")

logger = logging.getLogger(__name__)

_STORE_PREFIX = "cache:"


def _mark_retrieved(future: asyncio.Future[Any]) -> None:
    # Failed fetches with no waiters must not log "exception never retrieved".
    if not future.cancelled():
        future.exception()


class ResponseCache:
    """In-process response cache.

    Args:
        max_entries: Bound on the number of entries
        default_ttl: TTL used when a call passes none
        revalidate_delay: Pause before a background refresh starts
        network: Monitor consulted for offline reads; ``None`` means online
        store: Optional durable store that entries are written through to
        clock: Millisecond clock, injectable for tests
    """

    def __init__(
        self,
        *,
        max_entries: int = 100,
        default_ttl: Duration = "5m",
        revalidate_delay: Duration = "100ms",
        network: NetworkMonitor | None = None,
        store: KeyValueStore | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self._max_entries = max_entries
        self._default_ttl = parse_duration(default_ttl)
        self._revalidate_delay = parse_duration(revalidate_delay)
        self._network = network
        self._store = store
        self._clock = clock
        self._entries: dict[str, CacheEntry[Any]] = {}
        self._in_flight: dict[str, asyncio.Future[Any]] = {}
        self._refreshing: set[str] = set()
        self._background_tasks: set[asyncio.Task[None]] = set()
        self._generation = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.lookup(key) is not None

    @property
    def max_entries(self) -> int:
        return self._max_entries

    def keys(self) -> list[str]:
        return list(self._entries)

    def lookup(self, key: str) -> CacheEntry[Any] | None:
        """Return the fresh entry for ``key``; expired entries are evicted."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if not entry.is_fresh(self._clock()):
            logger.debug("Cache entry expired: %s", key)
            self._remove(key)
            return None
        return entry

    def get(self, key: str, default: Any = None) -> Any:
        entry = self.lookup(key)
        if entry is None:
            return default
        return entry.value

    def set(self, key: str, value: Any, ttl: Duration | None = None) -> None:
        """Insert or overwrite ``key``.

        A new key in a full cache first evicts the single oldest entry.
        Overwriting never evicts.
        """
        ttl_ms = self._ttl(ttl)
        if key in self._entries:
            del self._entries[key]
        elif len(self._entries) >= self._max_entries:
            oldest = min(self._entries.values(), key=lambda e: e.stored_at)
            logger.debug("Cache full, evicting oldest entry %s", oldest.key)
            self._remove(oldest.key)
        entry: CacheEntry[Any] = CacheEntry(
            key=key, value=value, stored_at=self._clock(), ttl=ttl_ms
        )
        self._entries[key] = entry
        self._persist(entry)

    def delete(self, key: str) -> None:
        self._remove(key)

    def invalidate(self, resource: str) -> int:
        """Drop every entry of a resource family. Returns how many went."""
        doomed = [key for key in self._entries if belongs_to(key, resource)]
        for key in doomed:
            self._remove(key)
        if doomed:
            logger.debug("Invalidated %d cache entries of %s", len(doomed), resource)
        return len(doomed)

    def clear(self) -> None:
        """Remove everything and cancel refreshes started before the reset."""
        self._generation += 1
        self._entries.clear()
        for task in list(self._background_tasks):
            task.cancel()
        if self._store is not None:
            try:
                for key in self._store.keys(_STORE_PREFIX):
                    self._store.delete(key)
            except StorageError as e:
                logger.warning("Could not clear persisted cache: %s", e)
        logger.info("Response cache cleared")

    async def query_with_cache(
        self,
        key: str,
        fetcher: Callable[[], Awaitable[T]],
        ttl: Duration | None = None,
    ) -> T:
        """Serve ``key`` from cache or ``fetcher``.

        Args:
            key: Normalized cache key
            fetcher: Async function fetching fresh data
            ttl: Time to live for a stored result (default: cache default)

        Returns:
            Cached or fresh data

        Raises:
            NoCachedData: Offline with no fresh entry; ``fetcher`` is not called
        """
        ttl_ms = self._ttl(ttl)

        if self._network is not None and self._network.is_offline():
            entry = self.lookup(key)
            if entry is not None:
                logger.info("Offline mode: using cached data for %s", key)
                return cast(T, entry.value)
            logger.warning("Offline mode: no cached data for %s", key)
            raise NoCachedData(f"Offline mode: no cached data available for {key}")

        entry = self.lookup(key)
        if entry is not None:
            logger.debug("Cache hit for %s", key)
            self._schedule_refresh(key, fetcher, ttl_ms)
            return cast(T, entry.value)

        logger.debug("Cache miss for %s, fetching", key)
        generation = self._generation

        async def fetch() -> T:
            value = await fetcher()
            if generation == self._generation:
                self.set(key, value, ttl_ms)
            return value

        return await self._coalesce(key, fetch)

    def load(self) -> int:
        """Hydrate unexpired entries from the durable store.

        Returns the number of entries held afterwards.
        """
        if self._store is None:
            return 0
        now = self._clock()
        loaded = 0
        try:
            stored_keys = self._store.keys(_STORE_PREFIX)
            for store_key in stored_keys:
                raw = self._store.get(store_key)
                if raw is None:
                    continue
                try:
                    data = json.loads(raw)
                    entry: CacheEntry[Any] = CacheEntry(
                        key=store_key[len(_STORE_PREFIX) :],
                        value=data["value"],
                        stored_at=int(data["storedAt"]),
                        ttl=int(data["ttl"]),
                    )
                except (ValueError, KeyError, TypeError):
                    logger.warning("Discarding unreadable cache record %s", store_key)
                    self._store.delete(store_key)
                    continue
                if not entry.is_fresh(now):
                    self._store.delete(store_key)
                    continue
                self._entries[entry.key] = entry
                loaded += 1
        except StorageError as e:
            logger.warning("Could not load persisted cache: %s", e)
        # Keep insertion order equal to stored_at order, then enforce the bound.
        ordered = sorted(self._entries.values(), key=lambda e: e.stored_at)
        self._entries = {e.key: e for e in ordered[-self._max_entries :]}
        logger.info("Loaded %d persisted cache entries", loaded)
        return len(self._entries)

    async def wait_idle(self) -> None:
        """Wait for background refreshes scheduled so far."""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    async def aclose(self) -> None:
        tasks = list(self._background_tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _ttl(self, ttl: Duration | None) -> int:
        ttl_ms = parse_duration(ttl) if ttl is not None else self._default_ttl
        if ttl_ms <= 0:
            raise ValueError("ttl must be positive")
        return ttl_ms

    def _remove(self, key: str) -> None:
        self._entries.pop(key, None)
        if self._store is not None:
            try:
                self._store.delete(f"{_STORE_PREFIX}{key}")
            except StorageError as e:
                logger.warning("Could not remove persisted cache entry %s: %s", key, e)

    def _persist(self, entry: CacheEntry[Any]) -> None:
        if self._store is None:
            return
        try:
            payload = json.dumps(
                {"value": entry.value, "storedAt": entry.stored_at, "ttl": entry.ttl}
            )
        except (TypeError, ValueError):
            logger.debug("Cache value for %s is not JSON serializable, not persisted", entry.key)
            return
        try:
            self._store.set(f"{_STORE_PREFIX}{entry.key}", payload)
        except StorageError as e:
            logger.warning("Could not persist cache entry %s: %s", entry.key, e)

    def _schedule_refresh(
        self,
        key: str,
        fetcher: Callable[[], Awaitable[Any]],
        ttl: int,
    ) -> None:
        """Start a detached refresh of ``key`` unless one is already running."""
        if key in self._refreshing:
            return
        self._refreshing.add(key)
        task = asyncio.get_running_loop().create_task(
            self._refresh(key, fetcher, ttl, self._generation)
        )
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        # A task cancelled before its first step never reaches _refresh's body.
        task.add_done_callback(lambda _: self._refreshing.discard(key))

    async def _refresh(
        self,
        key: str,
        fetcher: Callable[[], Awaitable[Any]],
        ttl: int,
        generation: int,
    ) -> None:
        """Refresh one entry. Failures are logged, never raised."""
        if self._revalidate_delay:
            await asyncio.sleep(to_seconds(self._revalidate_delay))
        if self._network is not None and self._network.is_offline():
            logger.debug("Skipping background refresh of %s while offline", key)
            return
        try:
            value = await fetcher()
        except Exception as e:
            logger.warning("Background refresh of %s failed: %s", key, e)
            return
        if generation != self._generation:
            logger.debug("Cache was reset during refresh of %s, dropping result", key)
            return
        self.set(key, value, ttl)
        logger.debug("Background refresh stored %s", key)

    async def _coalesce(self, key: str, fetch: Callable[[], Awaitable[T]]) -> T:
        """Coalesce concurrent misses for the same key into one fetch."""
        existing = self._in_flight.get(key)
        if existing is not None:
            return cast(T, await asyncio.shield(existing))

        future: asyncio.Future[T] = asyncio.get_running_loop().create_future()
        future.add_done_callback(_mark_retrieved)
        self._in_flight[key] = future
        try:
            result = await fetch()
            future.set_result(result)
            return result
        except asyncio.CancelledError:
            # Joiners were not cancelled themselves; they see a failed fetch.
            future.set_exception(NetworkError(f"Fetch of {key} was cancelled"))
            raise
        except BaseException as e:
            future.set_exception(e)
            raise
        finally:
            del self._in_flight[key]
