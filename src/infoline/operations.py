"""Operation registry - resolves serializable write descriptors to handlers.

Queued writes are stored as ``OperationDescriptor(kind, params)``; the
registry maps each ``kind`` back to an async handler at execution time, so
the offline queue can be rebuilt after a restart.

    registry = OperationRegistry()

    @registry.operation("notifications.mark_read", resource="notifications")
    async def mark_read(params):
        await platform.update("notifications", {"id": params["id"]}, {"is_read": True})

    await registry.execute(OperationDescriptor("notifications.mark_read", {"id": "n1"}))
"""

from __future__ import annotations

import uuid
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from infoline.errors import ValidationError
from infoline.types import OperationDescriptor

if TYPE_CHECKING:
    from infoline.adapters.platform import PlatformClient

Handler = Callable[[Mapping[str, Any]], Awaitable[Any]]

REGISTRY_RESOURCES = (
    "regions",
    "sectors",
    "schools",
    "users",
    "categories",
    "columns",
    "data",
    "notifications",
)


@dataclass(frozen=True, slots=True)
class Registration:
    """A handler and the write policy of its kind."""

    kind: str
    handler: Handler
    resource: str | None = None
    queueable: bool = True


class OperationRegistry:
    """Lookup table from descriptor kind to handler."""

    def __init__(self) -> None:
        self._registrations: dict[str, Registration] = {}

    def __contains__(self, kind: object) -> bool:
        return kind in self._registrations

    def kinds(self) -> list[str]:
        return sorted(self._registrations)

    def register(
        self,
        kind: str,
        handler: Handler,
        *,
        resource: str | None = None,
        queueable: bool = True,
    ) -> Registration:
        """Register ``handler`` for ``kind``.

        ``resource`` names the cache family invalidated after a successful
        write. ``queueable=False`` marks calls that must not be replayed
        later (non-idempotent side effects).
        """
        if kind in self._registrations:
            raise ValueError(f"Operation kind already registered: {kind}")
        registration = Registration(
            kind=kind, handler=handler, resource=resource, queueable=queueable
        )
        self._registrations[kind] = registration
        return registration

    def operation(
        self,
        kind: str,
        *,
        resource: str | None = None,
        queueable: bool = True,
    ) -> Callable[[Handler], Handler]:
        """Decorator form of :meth:`register`."""

        def decorator(fn: Handler) -> Handler:
            self.register(kind, fn, resource=resource, queueable=queueable)
            return fn

        return decorator

    def get(self, kind: str) -> Registration:
        try:
            return self._registrations[kind]
        except KeyError:
            raise ValidationError(f"Unknown operation kind: {kind}") from None

    def resolve(self, descriptor: OperationDescriptor) -> Callable[[], Awaitable[Any]]:
        """Bind a descriptor to its handler as a zero-argument coroutine function."""
        registration = self.get(descriptor.kind)
        params = descriptor.params

        async def run() -> Any:
            return await registration.handler(params)

        run.__name__ = descriptor.kind
        return run

    async def execute(self, descriptor: OperationDescriptor) -> Any:
        return await self.resolve(descriptor)()


# Descriptor builders for registry resources. Creates carry a client-side id
# so replaying a queued create cannot insert the row twice.


def create(resource: str, values: Mapping[str, Any]) -> OperationDescriptor:
    row = dict(values)
    row.setdefault("id", str(uuid.uuid4()))
    return OperationDescriptor(kind=f"{resource}.create", params={"values": row})


def update(
    resource: str, match: Mapping[str, Any], values: Mapping[str, Any]
) -> OperationDescriptor:
    return OperationDescriptor(
        kind=f"{resource}.update",
        params={"match": dict(match), "values": dict(values)},
    )


def delete(resource: str, match: Mapping[str, Any]) -> OperationDescriptor:
    return OperationDescriptor(kind=f"{resource}.delete", params={"match": dict(match)})


def register_crud_operations(
    registry: OperationRegistry,
    platform: PlatformClient,
    resources: Iterable[str] = REGISTRY_RESOURCES,
) -> None:
    """Register ``<resource>.create|update|delete`` for each resource."""
    for resource in resources:

        async def create_row(
            params: Mapping[str, Any], _table: str = resource
        ) -> dict[str, Any] | None:
            return await platform.insert(_table, params["values"])

        async def update_row(
            params: Mapping[str, Any], _table: str = resource
        ) -> list[dict[str, Any]]:
            return await platform.update(_table, params["match"], params["values"])

        async def delete_row(params: Mapping[str, Any], _table: str = resource) -> None:
            await platform.delete(_table, params["match"])

        registry.register(f"{resource}.create", create_row, resource=resource)
        registry.register(f"{resource}.update", update_row, resource=resource)
        registry.register(f"{resource}.delete", delete_row, resource=resource)
