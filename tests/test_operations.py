"""Tests for the operation registry."""

import json

import httpx
import pytest
import respx

from infoline import OperationDescriptor, OperationRegistry, PlatformClient, ValidationError
from infoline.operations import REGISTRY_RESOURCES, create, delete, register_crud_operations, update

BASE_URL = "https://platform.test"


class TestRegistry:
    """Lookup from descriptor kind to handler."""

    async def test_execute_passes_params(self, registry: OperationRegistry) -> None:
        @registry.operation("notifications.mark_read", resource="notifications")
        async def mark_read(params):
            return f"read {params['id']}"

        result = await registry.execute(OperationDescriptor("notifications.mark_read", {"id": "n1"}))

        assert result == "read n1"
        assert registry.get("notifications.mark_read").resource == "notifications"

    def test_registration_defaults_to_queueable(self, registry: OperationRegistry) -> None:
        async def handler(params):
            return None

        assert registry.register("a", handler).queueable
        assert not registry.register("b", handler, queueable=False).queueable
        assert registry.kinds() == ["a", "b"]
        assert "a" in registry

    def test_duplicate_kind_rejected(self, registry: OperationRegistry) -> None:
        async def handler(params):
            return None

        registry.register("a", handler)
        with pytest.raises(ValueError, match="already registered"):
            registry.register("a", handler)

    def test_unknown_kind(self, registry: OperationRegistry) -> None:
        with pytest.raises(ValidationError, match="Unknown operation kind"):
            registry.get("missing")


class TestDescriptorBuilders:
    """CRUD descriptors are plain JSON."""

    def test_create_assigns_id(self) -> None:
        descriptor = create("schools", {"name": "School 1"})
        assert descriptor.kind == "schools.create"
        assert descriptor.params["values"]["name"] == "School 1"
        assert descriptor.params["values"]["id"]
        json.dumps(dict(descriptor.params))

    def test_create_keeps_given_id(self) -> None:
        assert create("schools", {"id": "s1"}).params == {"values": {"id": "s1"}}

    def test_update_and_delete(self) -> None:
        assert update("regions", {"id": "r1"}, {"name": "X"}) == OperationDescriptor(
            "regions.update", {"match": {"id": "r1"}, "values": {"name": "X"}}
        )
        assert delete("regions", {"id": "r1"}) == OperationDescriptor(
            "regions.delete", {"match": {"id": "r1"}}
        )


class TestCrudOperations:
    """Registered CRUD handlers call the platform REST API."""

    @pytest.fixture
    async def platform(self):
        client = PlatformClient(BASE_URL, "anon-key")
        yield client
        await client.disconnect()

    async def test_every_resource_registered(self, registry: OperationRegistry, platform) -> None:
        register_crud_operations(registry, platform)
        for resource in REGISTRY_RESOURCES:
            for action in ("create", "update", "delete"):
                assert registry.get(f"{resource}.{action}").resource == resource

    @respx.mock
    async def test_create_inserts_row(self, registry: OperationRegistry, platform) -> None:
        route = respx.post(f"{BASE_URL}/rest/v1/schools").mock(
            return_value=httpx.Response(201, json=[{"id": "s1", "name": "School 1"}])
        )
        register_crud_operations(registry, platform, ["schools"])

        row = await registry.execute(create("schools", {"id": "s1", "name": "School 1"}))

        assert row == {"id": "s1", "name": "School 1"}
        assert json.loads(route.calls[0].request.content) == {"id": "s1", "name": "School 1"}

    @respx.mock
    async def test_update_filters_by_match(self, registry: OperationRegistry, platform) -> None:
        route = respx.patch(f"{BASE_URL}/rest/v1/regions").mock(
            return_value=httpx.Response(200, json=[{"id": "r1", "name": "X"}])
        )
        register_crud_operations(registry, platform, ["regions"])

        await registry.execute(update("regions", {"id": "r1"}, {"name": "X"}))

        assert route.calls[0].request.url.params["id"] == "eq.r1"

    @respx.mock
    async def test_delete_filters_by_match(self, registry: OperationRegistry, platform) -> None:
        route = respx.delete(f"{BASE_URL}/rest/v1/sectors").mock(
            return_value=httpx.Response(204)
        )
        register_crud_operations(registry, platform, ["sectors"])

        await registry.execute(delete("sectors", {"id": "x"}))

        assert route.calls[0].request.url.params["id"] == "eq.x"
