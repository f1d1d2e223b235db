"""Offline queue - durable FIFO of writes deferred while offline."""

from __future__ import annotations

import inspect
import json
import logging
import uuid
from collections.abc import Callable
from dataclasses import replace
from typing import TYPE_CHECKING, Any

from infoline.duration import now_ms
from infoline.errors import QueueExhausted, StorageError, ValidationError
from infoline.types import DrainReport, OperationDescriptor, QueuedOperation

if TYPE_CHECKING:
    from infoline.adapters.base import KeyValueStore
    from infoline.network import NetworkMonitor
    from infoline.operations import OperationRegistry
    from infoline.retry import RetryPolicy

logger = logging.getLogger(__name__)

SuccessListener = Callable[[QueuedOperation, Any], Any]
FailureListener = Callable[[QueueExhausted], Any]


class OfflineQueue:
    """Bounded queue of operation descriptors, persisted on every change.

    ``drain()`` replays entries in enqueue order. A failed entry goes back
    to the tail with one more attempt counted, so it never blocks the
    entries behind it; once its attempts are used up it is dropped and
    reported to the failure listeners as :class:`QueueExhausted`.
    """

    STORAGE_KEY = "offline_queue"

    def __init__(
        self,
        registry: OperationRegistry,
        network: NetworkMonitor,
        retry_policy: RetryPolicy,
        *,
        store: KeyValueStore | None = None,
        capacity: int = 100,
        max_attempts: int = 3,
        clock: Callable[[], int] = now_ms,
        id_factory: Callable[[], str] = lambda: uuid.uuid4().hex,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._registry = registry
        self._network = network
        self._retry = retry_policy
        self._store = store
        self._capacity = capacity
        self._max_attempts = max_attempts
        self._clock = clock
        self._id_factory = id_factory
        self._entries: list[QueuedOperation] = []
        self._success_listeners: list[SuccessListener] = []
        self._failure_listeners: list[FailureListener] = []
        self._draining = False
        self._rerun = False

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def draining(self) -> bool:
        return self._draining

    def snapshot(self) -> list[QueuedOperation]:
        return list(self._entries)

    def on_success(self, listener: SuccessListener) -> None:
        self._success_listeners.append(listener)

    def on_failure(self, listener: FailureListener) -> None:
        self._failure_listeners.append(listener)

    def enqueue(
        self,
        descriptor: OperationDescriptor,
        *,
        principal_id: str | None = None,
        max_attempts: int | None = None,
    ) -> QueuedOperation:
        """Append a write to the tail, evicting the oldest entry when full."""
        try:
            json.dumps(dict(descriptor.params))
        except (TypeError, ValueError) as e:
            raise ValidationError(
                f"Parameters of {descriptor.kind} are not serializable: {e}"
            ) from e

        operation = QueuedOperation(
            id=self._id_factory(),
            kind=descriptor.kind,
            params=dict(descriptor.params),
            enqueued_at=self._clock(),
            attempt_count=0,
            max_attempts=max_attempts or self._max_attempts,
            principal_id=principal_id,
        )
        if len(self._entries) >= self._capacity:
            evicted = self._entries.pop(0)
            logger.warning(
                "Offline queue full (%d), evicting oldest operation %s (%s)",
                self._capacity,
                evicted.id,
                evicted.kind,
            )
        self._entries.append(operation)
        self._persist()
        logger.info("Enqueued offline operation %s (%s)", operation.id, operation.kind)
        return operation

    def discard_for_principal(self, principal_id: str) -> int:
        """Drop operations owned by ``principal_id``; keep everything else."""
        kept = [op for op in self._entries if op.principal_id != principal_id]
        dropped = len(self._entries) - len(kept)
        if dropped:
            self._entries = kept
            self._persist()
            logger.info(
                "Discarded %d queued operations of principal %s", dropped, principal_id
            )
        return dropped

    def clear(self) -> None:
        self._entries.clear()
        self._persist()

    def restore(self) -> int:
        """Reload persisted entries. Returns how many were restored."""
        if self._store is None:
            return 0
        try:
            raw = self._store.get(self.STORAGE_KEY)
        except StorageError as e:
            logger.error("Could not read the persisted offline queue: %s", e)
            return 0
        if not raw:
            return 0
        try:
            records = json.loads(raw)
        except ValueError:
            logger.error("Persisted offline queue is corrupt, starting empty")
            return 0

        restored: list[QueuedOperation] = []
        for record in records if isinstance(records, list) else []:
            try:
                restored.append(QueuedOperation.from_dict(record))
            except (KeyError, TypeError):
                logger.warning("Skipping unreadable queued operation %r", record)
        known = {op.id for op in self._entries}
        merged = [op for op in restored if op.id not in known] + self._entries
        self._entries = merged[-self._capacity :]
        logger.info("Restored %d offline operations", len(restored))
        return len(restored)

    async def drain(self) -> DrainReport:
        """Replay queued writes; never runs twice at once.

        A call made while a drain is running returns immediately with
        ``coalesced=True`` and makes the running drain go around once more.
        """
        if self._draining:
            self._rerun = True
            logger.debug("Drain already in progress, coalescing request")
            return DrainReport(coalesced=True)

        self._draining = True
        report = DrainReport()
        try:
            self._rerun = True
            while self._rerun:
                self._rerun = False
                await self._drain_passes(report)
        finally:
            self._draining = False

        if report.succeeded or report.failed:
            logger.info(
                "Offline queue drained: %d succeeded, %d failed, %d pending",
                len(report.succeeded),
                len(report.failed),
                len(self._entries),
            )
        return report

    async def _drain_passes(self, report: DrainReport) -> None:
        passes = 0
        while self._entries:
            if self._network.is_offline():
                logger.info("Offline again, pausing drain with %d pending", len(self._entries))
                return
            if passes:
                await self._retry.pause(passes)
            passes += 1
            for operation in list(self._entries):
                if self._network.is_offline():
                    return
                if operation not in self._entries:
                    continue
                await self._run(operation, report)

    async def _run(self, operation: QueuedOperation, report: DrainReport) -> None:
        attempt = operation.attempt_count + 1
        logger.info(
            "Executing offline operation %s (%s), attempt %d/%d",
            operation.id,
            operation.kind,
            attempt,
            operation.max_attempts,
        )
        try:
            result = await self._retry.run_once(
                lambda: self._registry.execute(operation.descriptor)
            )
        except Exception as exc:
            await self._fail(operation, exc, report)
            return

        if operation in self._entries:
            self._entries.remove(operation)
            self._persist()
        report.succeeded.append(operation)
        for listener in list(self._success_listeners):
            await self._call(listener, operation, result)

    async def _fail(
        self, operation: QueuedOperation, exc: Exception, report: DrainReport
    ) -> None:
        if operation not in self._entries:
            logger.info(
                "Offline operation %s (%s) left the queue while running, not requeued: %s",
                operation.id,
                operation.kind,
                exc,
            )
            return
        failed = replace(operation, attempt_count=operation.attempt_count + 1)
        self._entries.remove(operation)
        retryable = self._retry.is_retryable(exc)
        if retryable and failed.attempt_count < failed.max_attempts:
            self._entries.append(failed)
            self._persist()
            report.requeued.append(failed)
            logger.warning(
                "Offline operation %s (%s) failed, requeued (attempt %d/%d): %s",
                failed.id,
                failed.kind,
                failed.attempt_count,
                failed.max_attempts,
                exc,
            )
            return

        self._persist()
        report.failed.append(failed)
        error = QueueExhausted(failed, exc)
        logger.error(
            "Offline operation %s (%s) dropped after %d attempts (%s): %s",
            failed.id,
            failed.kind,
            failed.attempt_count,
            "retryable" if retryable else "fatal",
            exc,
        )
        for listener in list(self._failure_listeners):
            await self._call(listener, error)

    @staticmethod
    async def _call(listener: Callable[..., Any], *args: Any) -> None:
        try:
            result = listener(*args)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Offline queue listener %r failed", listener)

    def _persist(self) -> None:
        if self._store is None:
            return
        payload = json.dumps([op.to_dict() for op in self._entries])
        try:
            self._store.set(self.STORAGE_KEY, payload)
        except StorageError as e:
            logger.error("Could not persist the offline queue: %s", e)
