"""Retry policy: tenacity-based backoff with offline hand-off.

Wraps a single async operation:
- Network errors on queueable calls go straight to the offline queue
- Fatal errors (authorization, validation) are raised at once
- Other transient errors are retried with jittered exponential backoff,
  ``initial_delay * 1.5 ** (attempt - 1) * uniform(0.9, 1.1)``
- When retries run out, queueable calls are queued, others raise

Jitter keeps many calls that failed together (a short platform outage)
from retrying in lock-step.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
)
from tenacity.wait import wait_base

from infoline.duration import parse_duration, to_seconds
from infoline.errors import (
    ErrorKind,
    NetworkError,
    as_data_access_error,
    classify_error,
    error_context,
)
from infoline.types import Duration, OperationDescriptor, Queued

if TYPE_CHECKING:
    from infoline.network import NetworkMonitor
    from infoline.queue import OfflineQueue

T = TypeVar("T")

logger = logging.getLogger(__name__)

BACKOFF_FACTOR = 1.5
JITTER = 0.1


class wait_jittered_exponential(wait_base):  # noqa: N801 - tenacity naming
    """``initial * factor ** (attempt - 1)``, capped, times ``uniform(1 - jitter, 1 + jitter)``."""

    def __init__(
        self,
        initial: float,
        *,
        factor: float = BACKOFF_FACTOR,
        jitter: float = JITTER,
        maximum: float | None = None,
        rng: Callable[[float, float], float] = random.uniform,
    ) -> None:
        self.initial = initial
        self.factor = factor
        self.jitter = jitter
        self.maximum = maximum
        self._rng = rng

    def base(self, attempt: int) -> float:
        """Un-jittered delay after failed attempt number ``attempt`` (1-based)."""
        delay = self.initial * self.factor ** (attempt - 1)
        if self.maximum is not None:
            delay = min(delay, self.maximum)
        return delay

    def __call__(self, retry_state: RetryCallState) -> float:
        return self.base(retry_state.attempt_number) * self._rng(
            1 - self.jitter, 1 + self.jitter
        )


class RetryPolicy:
    """Executes operations with retries; stateless between calls.

    Args:
        network: Monitor used to short-circuit queueable calls while offline
        max_retries: Retries after the first attempt
        initial_delay: Delay before the first retry
        max_delay: Cap on the un-jittered delay
        timeout: Bound on each attempt; exceeding it is a ``NetworkError``
        sleep: Sleep coroutine, injectable for tests
    """

    def __init__(
        self,
        network: NetworkMonitor,
        *,
        max_retries: int = 2,
        initial_delay: Duration = "1s",
        max_delay: Duration = "10s",
        timeout: Duration | None = "15s",
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Callable[[float, float], float] = random.uniform,
    ) -> None:
        if max_retries < 0:
            raise ValueError("max_retries must not be negative")
        self._network = network
        self._queue: OfflineQueue | None = None
        self._max_retries = max_retries
        self._initial_delay = parse_duration(initial_delay)
        self._max_delay = parse_duration(max_delay)
        self._timeout = parse_duration(timeout) if timeout is not None else None
        self._sleep = sleep
        self._rng = rng

    def attach_queue(self, queue: OfflineQueue) -> None:
        """Set the queue that receives hand-offs."""
        self._queue = queue

    @staticmethod
    def is_retryable(exc: BaseException) -> bool:
        return classify_error(exc).retryable

    def backoff(self, initial_delay: Duration | None = None) -> wait_jittered_exponential:
        initial = (
            parse_duration(initial_delay)
            if initial_delay is not None
            else self._initial_delay
        )
        return wait_jittered_exponential(
            to_seconds(initial), maximum=to_seconds(self._max_delay), rng=self._rng
        )

    def base_delay(self, attempt: int) -> float:
        """Un-jittered delay in seconds after failed attempt ``attempt``."""
        return self.backoff().base(attempt)

    async def pause(self, attempt: int) -> None:
        """Sleep the jittered backoff delay for ``attempt``."""
        wait = self.backoff()
        await self._sleep(wait.base(attempt) * self._rng(1 - wait.jitter, 1 + wait.jitter))

    async def with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        max_retries: int | None = None,
        initial_delay: Duration | None = None,
        queueable: bool = False,
        descriptor: OperationDescriptor | None = None,
        principal_id: str | None = None,
        name: str | None = None,
    ) -> T | Queued:
        """Run ``operation`` under this policy.

        Args:
            operation: Async callable performing one network call
            max_retries: Override of the policy's retry count
            initial_delay: Override of the first backoff delay
            queueable: Whether the call may be deferred to the offline queue
            descriptor: Serializable form of the call, required when queueable
            principal_id: Owner of the call, recorded on a queued operation
            name: Operation name used in logs

        Returns:
            The operation result, or ``Queued`` when the call was deferred
        """
        if queueable and descriptor is None:
            raise ValueError("queueable operations need a descriptor")
        label = name or (descriptor.kind if descriptor else getattr(operation, "__name__", "operation"))

        if queueable and self._network.is_offline():
            logger.info("Offline: deferring %s to the offline queue", label)
            return self._hand_off(descriptor, principal_id, label, "offline")

        retries = self._max_retries if max_retries is None else max_retries
        total = retries + 1

        def should_retry(exc: BaseException) -> bool:
            kind = classify_error(exc)
            if not kind.retryable:
                return False
            # Network failures of queueable calls are handed off, not retried.
            return not (queueable and kind is ErrorKind.NETWORK)

        def log_retry(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
            logger.warning(
                "Retrying %s (attempt %d/%d failed, %s) in %.2fs: %s",
                label,
                retry_state.attempt_number,
                total,
                classify_error(exc).value if exc else "unknown",
                delay,
                exc,
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(total),
            wait=self.backoff(initial_delay),
            retry=retry_if_exception(should_retry),
            before_sleep=log_retry,
            sleep=self._sleep,
            reraise=True,
        )

        try:
            return await retrying(self.run_once, operation)
        except Exception as exc:
            attempts = retrying.statistics.get("attempt_number", 1)
            kind = classify_error(exc)
            if queueable and kind.retryable:
                logger.warning(
                    "%s failed (attempt %d/%d, %s), deferring to the offline queue: %s",
                    label,
                    attempts,
                    total,
                    kind.value,
                    exc,
                )
                return self._hand_off(descriptor, principal_id, label, kind.value)
            logger.error(
                "%s failed (attempt %d/%d, %s): %s",
                label,
                attempts,
                total,
                kind.value,
                exc,
                extra=error_context(label, attempts, exc),
            )
            if kind is ErrorKind.UNKNOWN:
                raise
            error = as_data_access_error(exc)
            if error is exc:
                raise
            raise error from exc

    async def run_once(self, operation: Callable[[], Awaitable[T]]) -> T:
        """One attempt bounded by the request timeout, without retries."""
        if self._timeout is None:
            return await operation()
        try:
            return await asyncio.wait_for(operation(), to_seconds(self._timeout))
        except asyncio.TimeoutError as e:
            raise NetworkError(
                f"Request timed out after {to_seconds(self._timeout):g}s"
            ) from e

    def _hand_off(
        self,
        descriptor: OperationDescriptor | None,
        principal_id: str | None,
        label: str,
        reason: str,
    ) -> Queued:
        if self._queue is None or descriptor is None:
            raise NetworkError(f"{label} could not be deferred: no offline queue")
        operation = self._queue.enqueue(descriptor, principal_id=principal_id)
        logger.info("Queued %s as %s (%s)", label, operation.id, reason)
        return Queued(operation=operation)
