"""Shared pytest fixtures."""

import asyncio
from collections.abc import Mapping
from typing import Any

import pytest

from infoline import (
    MemoryStore,
    NetworkMonitor,
    OfflineQueue,
    OperationRegistry,
    RequestOrchestrator,
    ResponseCache,
    RetryPolicy,
)


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, now: int = 1_000_000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class RecordingSleep:
    """Sleep replacement that records delays and returns at once."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        await asyncio.sleep(0)


class FlakyHandler:
    """Operation handler failing with queued exceptions before succeeding."""

    def __init__(self, *failures: BaseException, result: Any = "ok") -> None:
        self.failures = list(failures)
        self.result = result
        self.calls: list[Mapping[str, Any]] = []

    async def __call__(self, params: Mapping[str, Any]) -> Any:
        self.calls.append(params)
        if self.failures:
            raise self.failures.pop(0)
        return self.result


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def store() -> MemoryStore:
    """Create a fresh MemoryStore for each test."""
    return MemoryStore()


@pytest.fixture
def network() -> NetworkMonitor:
    monitor = NetworkMonitor()
    monitor.initialize()
    return monitor


@pytest.fixture
def retry(network: NetworkMonitor, sleep: RecordingSleep) -> RetryPolicy:
    """Retry policy without jitter whose sleeps return immediately."""
    return RetryPolicy(
        network,
        max_retries=2,
        initial_delay="1s",
        max_delay="10s",
        timeout="5s",
        sleep=sleep,
        rng=lambda low, high: 1.0,
    )


@pytest.fixture
def registry() -> OperationRegistry:
    return OperationRegistry()


@pytest.fixture
def queue(
    registry: OperationRegistry,
    network: NetworkMonitor,
    retry: RetryPolicy,
    store: MemoryStore,
    clock: FakeClock,
) -> OfflineQueue:
    offline_queue = OfflineQueue(
        registry, network, retry, store=store, capacity=5, max_attempts=3, clock=clock
    )
    retry.attach_queue(offline_queue)
    return offline_queue


@pytest.fixture
def cache(network: NetworkMonitor, clock: FakeClock) -> ResponseCache:
    return ResponseCache(
        max_entries=3,
        default_ttl="10s",
        revalidate_delay=0,
        network=network,
        clock=clock,
    )


@pytest.fixture
def orchestrator(
    cache: ResponseCache,
    retry: RetryPolicy,
    queue: OfflineQueue,
    registry: OperationRegistry,
) -> RequestOrchestrator:
    return RequestOrchestrator(cache, retry, queue, registry)


@pytest.fixture
def flaky() -> type[FlakyHandler]:
    """Factory for handlers that fail a set number of times."""
    return FlakyHandler
