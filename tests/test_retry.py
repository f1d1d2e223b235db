"""Tests for the retry policy."""

import asyncio
import random
from types import SimpleNamespace

import httpx
import pytest

from infoline import (
    AuthorizationError,
    NetworkError,
    NetworkMonitor,
    OperationDescriptor,
    Queued,
    RetryPolicy,
    ServerError,
    ValidationError,
)
from infoline.retry import wait_jittered_exponential


def failing_operation(*failures, result="done"):
    """Operation raising ``failures`` in turn, then returning ``result``."""
    pending = list(failures)

    async def operation():
        operation.calls += 1
        if pending:
            raise pending.pop(0)
        return result

    operation.calls = 0
    return operation


DESCRIPTOR = OperationDescriptor("schools.update", {"match": {"id": "s1"}, "values": {"name": "A"}})


class TestBackoff:
    """Jittered exponential backoff schedule."""

    def test_base_delays_grow_by_factor(self, retry: RetryPolicy) -> None:
        assert retry.base_delay(1) == pytest.approx(1.0)
        assert retry.base_delay(2) == pytest.approx(1.5)
        assert retry.base_delay(3) == pytest.approx(2.25)

    def test_base_delays_non_decreasing_and_capped(self, retry: RetryPolicy) -> None:
        delays = [retry.base_delay(n) for n in range(1, 15)]
        assert delays == sorted(delays)
        assert max(delays) == pytest.approx(10.0)

    def test_jitter_within_ten_percent(self) -> None:
        wait = wait_jittered_exponential(2.0, rng=random.Random(7).uniform)
        state = SimpleNamespace(attempt_number=2)
        for _ in range(200):
            assert 2.7 <= wait(state) <= 3.3

    def test_initial_delay_override(self, retry: RetryPolicy) -> None:
        assert retry.backoff("200ms").base(1) == pytest.approx(0.2)


class TestWithRetry:
    """Retry decisions by error classification."""

    async def test_success_first_time(self, retry: RetryPolicy, sleep) -> None:
        operation = failing_operation()
        assert await retry.with_retry(operation) == "done"
        assert operation.calls == 1
        assert sleep.delays == []

    async def test_transient_errors_retried_with_backoff(self, retry: RetryPolicy, sleep) -> None:
        operation = failing_operation(ServerError("503"), ServerError("503"))
        assert await retry.with_retry(operation) == "done"
        assert operation.calls == 3
        assert sleep.delays == [pytest.approx(1.0), pytest.approx(1.5)]

    async def test_fatal_errors_not_retried(self, retry: RetryPolicy, sleep) -> None:
        operation = failing_operation(ValidationError("name is required"))
        with pytest.raises(ValidationError, match="name is required"):
            await retry.with_retry(operation)
        assert operation.calls == 1
        assert sleep.delays == []

    async def test_authorization_errors_not_retried(self, retry: RetryPolicy) -> None:
        operation = failing_operation(AuthorizationError("expired"))
        with pytest.raises(AuthorizationError):
            await retry.with_retry(operation)
        assert operation.calls == 1

    async def test_unknown_errors_propagate_unchanged(self, retry: RetryPolicy) -> None:
        operation = failing_operation(KeyError("missing"))
        with pytest.raises(KeyError):
            await retry.with_retry(operation)
        assert operation.calls == 1

    async def test_exhausted_retries_raise_last_error(self, retry: RetryPolicy, sleep) -> None:
        operation = failing_operation(*(NetworkError("down") for _ in range(5)))
        with pytest.raises(NetworkError):
            await retry.with_retry(operation)
        assert operation.calls == 3
        assert len(sleep.delays) == 2

    async def test_max_retries_override(self, retry: RetryPolicy) -> None:
        operation = failing_operation(*(ServerError() for _ in range(5)))
        with pytest.raises(ServerError):
            await retry.with_retry(operation, max_retries=0)
        assert operation.calls == 1

    async def test_raw_transport_errors_are_wrapped(self, retry: RetryPolicy) -> None:
        cause = httpx.ConnectError("refused")
        operation = failing_operation(cause, cause, cause)
        with pytest.raises(NetworkError) as excinfo:
            await retry.with_retry(operation)
        assert excinfo.value.__cause__ is cause

    async def test_attempt_timeout_is_network_error(self, network: NetworkMonitor) -> None:
        policy = RetryPolicy(network, max_retries=0, timeout="10ms")

        async def hang() -> None:
            await asyncio.sleep(5)

        with pytest.raises(NetworkError, match="timed out"):
            await policy.with_retry(hang)

    async def test_negative_max_retries_rejected(self, network: NetworkMonitor) -> None:
        with pytest.raises(ValueError):
            RetryPolicy(network, max_retries=-1)


class TestOfflineHandOff:
    """Queueable calls go to the offline queue instead of failing."""

    async def test_network_failure_queued_without_retry(self, retry: RetryPolicy, queue, sleep) -> None:
        operation = failing_operation(NetworkError("down"))

        result = await retry.with_retry(operation, queueable=True, descriptor=DESCRIPTOR)

        assert isinstance(result, Queued)
        assert operation.calls == 1
        assert sleep.delays == []
        assert len(queue) == 1
        assert queue.snapshot()[0].attempt_count == 0
        assert queue.snapshot()[0].kind == "schools.update"

    async def test_server_errors_retried_then_queued(self, retry: RetryPolicy, queue) -> None:
        operation = failing_operation(*(ServerError() for _ in range(3)))

        result = await retry.with_retry(operation, queueable=True, descriptor=DESCRIPTOR)

        assert isinstance(result, Queued)
        assert operation.calls == 3
        assert len(queue) == 1

    async def test_fatal_errors_never_queued(self, retry: RetryPolicy, queue) -> None:
        operation = failing_operation(ValidationError("bad"))
        with pytest.raises(ValidationError):
            await retry.with_retry(operation, queueable=True, descriptor=DESCRIPTOR)
        assert len(queue) == 0

    async def test_offline_call_queued_without_attempt(
        self, retry: RetryPolicy, queue, network: NetworkMonitor
    ) -> None:
        network.went_offline()
        operation = failing_operation()

        result = await retry.with_retry(
            operation, queueable=True, descriptor=DESCRIPTOR, principal_id="u1"
        )

        assert isinstance(result, Queued)
        assert result.operation.principal_id == "u1"
        assert operation.calls == 0

    async def test_queueable_requires_descriptor(self, retry: RetryPolicy) -> None:
        with pytest.raises(ValueError, match="descriptor"):
            await retry.with_retry(failing_operation(), queueable=True)

    async def test_no_queue_attached(self, network: NetworkMonitor) -> None:
        policy = RetryPolicy(network)
        network.went_offline()
        with pytest.raises(NetworkError, match="no offline queue"):
            await policy.with_retry(failing_operation(), queueable=True, descriptor=DESCRIPTOR)
