"""Request orchestrator - the single entry point for reads and writes."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import TYPE_CHECKING, Any, TypeVar

from infoline.keys import make_cache_key
from infoline.types import Duration, OperationDescriptor, Queued, QueuedOperation

if TYPE_CHECKING:
    from infoline.cache import ResponseCache
    from infoline.operations import OperationRegistry
    from infoline.queue import OfflineQueue
    from infoline.retry import RetryPolicy
    from infoline.types import Principal

R = TypeVar("R")

logger = logging.getLogger(__name__)

ReadKey = str | tuple[str, Mapping[str, Any] | None]


class RequestOrchestrator:
    """Composes the cache, retry policy and offline queue.

    Reads go through :meth:`ResponseCache.query_with_cache`; writes through
    :class:`RetryPolicy`, with the offline queue as fallback. A successful
    write invalidates the cached reads of its resource family.
    """

    def __init__(
        self,
        cache: ResponseCache,
        retry_policy: RetryPolicy,
        queue: OfflineQueue,
        registry: OperationRegistry,
    ) -> None:
        self._cache = cache
        self._retry = retry_policy
        self._queue = queue
        self._registry = registry
        self._principal_id: str | None = None
        queue.on_success(self._on_drained)

    @property
    def cache(self) -> ResponseCache:
        return self._cache

    @property
    def queue(self) -> OfflineQueue:
        return self._queue

    @property
    def registry(self) -> OperationRegistry:
        return self._registry

    @staticmethod
    def key_for(key: ReadKey) -> str:
        if isinstance(key, str):
            return key
        resource, query = key
        return make_cache_key(resource, query)

    async def read(
        self,
        key: ReadKey,
        fetcher: Callable[[], Awaitable[R]],
        ttl: Duration | None = None,
        *,
        max_retries: int | None = None,
    ) -> R:
        """Cached read.

        ``key`` is a cache key or a ``(resource, query)`` pair. Cache
        misses call ``fetcher`` under the retry policy (never queued).
        """
        cache_key = self.key_for(key)

        async def fetch() -> R:
            # Non-queueable calls never return Queued.
            return await self._retry.with_retry(  # type: ignore[return-value]
                fetcher, max_retries=max_retries, name=f"read {cache_key}"
            )

        return await self._cache.query_with_cache(cache_key, fetch, ttl)

    async def write(
        self,
        descriptor: OperationDescriptor,
        *,
        queueable: bool | None = None,
        max_retries: int | None = None,
    ) -> Any | Queued:
        """Run a registered write.

        ``queueable`` defaults to the registration's flag. Returns the
        handler result, or :class:`Queued` when the write was deferred.
        """
        registration = self._registry.get(descriptor.kind)
        if queueable is None:
            queueable = registration.queueable

        result = await self._retry.with_retry(
            self._registry.resolve(descriptor),
            max_retries=max_retries,
            queueable=queueable,
            descriptor=descriptor,
            principal_id=self._principal_id,
            name=descriptor.kind,
        )
        if isinstance(result, Queued):
            return result
        self._invalidate(registration.resource)
        return result

    async def call(
        self,
        operation: Callable[[], Awaitable[R]],
        *,
        resource: str | None = None,
        max_retries: int | None = None,
        name: str | None = None,
    ) -> R:
        """Run a raw mutation that cannot be serialized; it is never queued."""
        result = await self._retry.with_retry(
            operation, max_retries=max_retries, name=name
        )
        self._invalidate(resource)
        return result  # type: ignore[return-value]

    def bind_principal(self, principal: Principal | None) -> None:
        """Start serving a different principal: the cache is reset."""
        self._principal_id = principal.id if principal is not None else None
        self._cache.clear()

    async def aclose(self) -> None:
        await self._cache.aclose()

    def _invalidate(self, resource: str | None) -> None:
        if resource:
            self._cache.invalidate(resource)

    def _on_drained(self, operation: QueuedOperation, _result: Any) -> None:
        if operation.kind in self._registry:
            self._invalidate(self._registry.get(operation.kind).resource)
