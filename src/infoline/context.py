"""The data layer handle: one wired-up set of components per process."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from infoline.adapters.base import KeyValueStore
from infoline.adapters.memory import MemoryStore
from infoline.adapters.platform import PlatformClient
from infoline.cache import ResponseCache
from infoline.duration import now_ms, to_seconds
from infoline.errors import DataAccessError
from infoline.logging_config import setup_logging
from infoline.network import ConnectivityProbe, NetworkMonitor
from infoline.operations import OperationRegistry, register_crud_operations
from infoline.orchestrator import RequestOrchestrator
from infoline.queue import OfflineQueue
from infoline.retry import RetryPolicy
from infoline.session import SessionManager, SessionState
from infoline.settings import Settings, get_settings

logger = logging.getLogger(__name__)


@dataclass
class DataLayer:
    """All components of the data-access layer, wired together.

    Consumers read and write through ``orchestrator`` and ask ``session``
    for authorization decisions. Build it with :func:`create_data_layer`.
    """

    settings: Settings
    store: KeyValueStore
    platform: PlatformClient
    network: NetworkMonitor
    cache: ResponseCache
    retry: RetryPolicy
    registry: OperationRegistry
    queue: OfflineQueue
    orchestrator: RequestOrchestrator
    session: SessionManager
    _unsubscribe: list[Callable[[], None]] = field(default_factory=list, repr=False)

    async def start(
        self, probe: ConnectivityProbe | None = None, *, watch: bool = False
    ) -> None:
        """Bring the layer up.

        Reads connectivity, restores the offline queue (and the persisted
        cache when enabled), restores the session and drains anything left
        over from a previous run.

        Args:
            probe: Synchronous connectivity probe; online when omitted
            watch: Poll ``platform.check_connection`` in the background
        """
        self.network.initialize(probe)
        self.queue.restore()
        if self.settings.cache_persist:
            self.cache.load()
        self._unsubscribe.append(self.network.subscribe(self._on_connectivity))

        try:
            await self.session.restore()
        except DataAccessError as e:
            if not e.retryable:
                raise
            logger.warning("Session restore postponed until the platform is reachable")

        if not self.network.is_offline() and len(self.queue):
            await self.queue.drain()

        if watch:
            self.network.watch(
                self.platform.check_connection,
                to_seconds(self.settings.connectivity_check_interval),
            )

    async def close(self) -> None:
        """Stop background work and release connections."""
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe.clear()
        await self.network.stop()
        await self.orchestrator.aclose()
        await self.platform.disconnect()
        close_store = getattr(self.store, "close", None)
        if callable(close_store):
            close_store()

    async def __aenter__(self) -> DataLayer:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def _on_connectivity(self, is_offline: bool) -> None:
        if is_offline:
            return
        if self.session.state is SessionState.LOADING:
            try:
                await self.session.restore()
            except DataAccessError as e:
                logger.warning("Session restore after reconnect failed: %s", e)
                return
        await self.queue.drain()


def create_data_layer(
    settings: Settings | None = None,
    *,
    store: KeyValueStore | None = None,
    platform: PlatformClient | None = None,
    registry: OperationRegistry | None = None,
    clock: Callable[[], int] = now_ms,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    configure_logging: bool = False,
) -> DataLayer:
    """Build a :class:`DataLayer` from settings.

    Args:
        settings: Configuration (default: read from the environment)
        store: Durable store (default: Redis when ``redis_url`` is set,
            otherwise an in-memory store)
        platform: Platform client (default: built from settings)
        registry: Operation registry (default: CRUD operations of every
            registry resource)
        clock: Millisecond clock shared by the cache and the queue
        sleep: Sleep coroutine used for backoff
        configure_logging: Install the root handler at ``settings.log_level``

    Returns:
        An unstarted DataLayer; call ``start()`` or use it with ``async with``
    """
    settings = settings or get_settings()
    if configure_logging:
        setup_logging(settings.log_level)

    if store is None:
        if settings.redis_url:
            from infoline.adapters.redis import RedisStore

            store = RedisStore.from_url(settings.redis_url, prefix=settings.storage_prefix)
        else:
            store = MemoryStore(prefix=settings.storage_prefix)

    if platform is None:
        platform = PlatformClient(
            settings.platform_url,
            settings.platform_api_key.get_secret_value(),
            timeout=to_seconds(settings.request_timeout),
            application_name=settings.application_name,
        )

    if registry is None:
        registry = OperationRegistry()
        register_crud_operations(registry, platform)

    network = NetworkMonitor()
    retry = RetryPolicy(
        network,
        max_retries=settings.retry_max_retries,
        initial_delay=settings.retry_initial_delay,
        max_delay=settings.retry_max_delay,
        timeout=settings.request_timeout,
        sleep=sleep,
    )
    cache = ResponseCache(
        max_entries=settings.cache_max_entries,
        default_ttl=settings.cache_default_ttl,
        revalidate_delay=settings.revalidate_delay,
        network=network,
        store=store if settings.cache_persist else None,
        clock=clock,
    )
    queue = OfflineQueue(
        registry,
        network,
        retry,
        store=store,
        capacity=settings.queue_capacity,
        max_attempts=settings.queue_max_attempts,
        clock=clock,
    )
    retry.attach_queue(queue)
    orchestrator = RequestOrchestrator(cache, retry, queue, registry)
    session = SessionManager(platform, orchestrator, store=store)

    return DataLayer(
        settings=settings,
        store=store,
        platform=platform,
        network=network,
        cache=cache,
        retry=retry,
        registry=registry,
        queue=queue,
        orchestrator=orchestrator,
        session=session,
    )
