"""Integration tests for the complete data layer."""

import json

import httpx
import pytest
import respx

from infoline import (
    DataLayer,
    MemoryStore,
    OperationDescriptor,
    OperationRegistry,
    Outcome,
    Queued,
    SessionState,
    Settings,
    create_data_layer,
)

BASE_URL = "https://platform.test"


@pytest.fixture
def settings() -> Settings:
    """Settings independent of the environment, with a single attempt per call."""
    return Settings(
        _env_file=None,
        platform_url=BASE_URL,
        platform_api_key="anon-key",
        retry_max_retries=0,
        revalidate_delay=0,
    )


def build_layer(settings, store, registry, clock, sleep) -> DataLayer:
    return create_data_layer(
        settings, store=store, registry=registry, clock=clock, sleep=sleep
    )


class TestOfflineWrites:
    """Writes made offline are replayed once connectivity returns."""

    async def test_queued_write_replayed_on_reconnect(
        self, settings, store, registry, clock, sleep, flaky
    ) -> None:
        handler = flaky(result={"id": "n1"})
        registry.register("notes.create", handler, resource="notes")
        layer = build_layer(settings, store, registry, clock, sleep)
        await layer.start(probe=lambda: False)

        result = await layer.orchestrator.write(
            OperationDescriptor("notes.create", {"text": "hello"})
        )

        assert isinstance(result, Queued)
        assert [op.attempt_count for op in layer.queue.snapshot()] == [0]
        assert handler.calls == []

        layer.network.went_online()
        await layer.network.wait_idle()

        assert handler.calls == [{"text": "hello"}]
        assert len(layer.queue) == 0
        assert json.loads(store.get("offline_queue")) == []
        await layer.close()

    async def test_reconnect_without_pending_writes(
        self, settings, store, registry, clock, sleep, flaky
    ) -> None:
        handler = flaky()
        registry.register("notes.create", handler, resource="notes")
        layer = build_layer(settings, store, registry, clock, sleep)
        await layer.start(probe=lambda: False)

        layer.network.went_online()
        await layer.network.wait_idle()

        assert handler.calls == []
        await layer.close()

    async def test_queue_survives_restart(self, settings, clock, sleep, flaky) -> None:
        """A write queued before shutdown runs when the next process starts online."""
        store = MemoryStore()
        first_registry = OperationRegistry()
        first_registry.register("notes.create", flaky(), resource="notes")
        first = build_layer(settings, store, first_registry, clock, sleep)
        await first.start(probe=lambda: False)
        await first.orchestrator.write(OperationDescriptor("notes.create", {"text": "later"}))
        await first.close()

        handler = flaky()
        second_registry = OperationRegistry()
        second_registry.register("notes.create", handler, resource="notes")
        second = build_layer(settings, store, second_registry, clock, sleep)
        await second.start()

        assert handler.calls == [{"text": "later"}]
        assert len(second.queue) == 0
        await second.close()

    async def test_successful_replay_invalidates_cached_reads(
        self, settings, store, registry, clock, sleep, flaky
    ) -> None:
        registry.register("notes.create", flaky(), resource="notes")
        layer = build_layer(settings, store, registry, clock, sleep)
        await layer.start()
        fetches = []

        async def fetch_notes():
            fetches.append(1)
            return ["note"]

        await layer.orchestrator.read(("notes", {"limit": 10}), fetch_notes)
        layer.network.went_offline()
        await layer.orchestrator.write(OperationDescriptor("notes.create", {"text": "x"}))
        layer.network.went_online()
        await layer.network.wait_idle()

        await layer.orchestrator.read(("notes", {"limit": 10}), fetch_notes)

        assert len(fetches) == 2
        await layer.cache.wait_idle()
        await layer.close()


class TestSessionLifecycle:
    """Session restore through the platform client."""

    @pytest.fixture
    def stored_session(self, store: MemoryStore) -> MemoryStore:
        store.set(
            "session",
            json.dumps(
                {
                    "accessToken": "access",
                    "refreshToken": "refresh",
                    "expiresAt": None,
                    "userId": "u1",
                }
            ),
        )
        return store

    @respx.mock
    async def test_restore_retried_after_reconnect(
        self, settings, stored_session, registry, clock, sleep
    ) -> None:
        respx.get(f"{BASE_URL}/auth/v1/user").mock(
            side_effect=[
                httpx.ConnectError("refused"),
                httpx.Response(200, json={"id": "u1", "email": "admin@example.com"}),
            ]
        )
        respx.get(f"{BASE_URL}/rest/v1/users").mock(
            return_value=httpx.Response(
                200,
                json=[
                    {
                        "id": "u1",
                        "email": "admin@example.com",
                        "full_name": "Region Admin",
                        "region_id": "r1",
                        "roles": {"name": "region-admin"},
                    }
                ],
            )
        )
        layer = build_layer(settings, stored_session, registry, clock, sleep)

        await layer.start()

        assert layer.session.state is SessionState.LOADING
        assert layer.session.decide(["region-admin"], "/schools").outcome is Outcome.SHOW_LOADING

        layer.network.went_offline()
        layer.network.went_online()
        await layer.network.wait_idle()

        assert layer.session.state is SessionState.AUTHENTICATED
        assert layer.session.principal.scope.id == "r1"
        assert layer.session.decide(["region-admin"], "/schools").outcome is Outcome.ALLOW
        await layer.close()

    @respx.mock
    async def test_rejected_session_clears_storage(
        self, settings, stored_session, registry, clock, sleep
    ) -> None:
        respx.get(f"{BASE_URL}/auth/v1/user").mock(
            return_value=httpx.Response(401, json={"message": "JWT expired"})
        )
        respx.post(f"{BASE_URL}/auth/v1/token").mock(
            return_value=httpx.Response(400, json={"error": "invalid_grant"})
        )
        layer = build_layer(settings, stored_session, registry, clock, sleep)

        await layer.start()

        assert layer.session.state is SessionState.UNAUTHENTICATED
        assert stored_session.get("session") is None
        decision = layer.session.decide(["region-admin"], "/schools")
        assert decision.outcome is Outcome.REDIRECT_TO_LOGIN
        assert decision.return_to == "/schools"
        await layer.close()

    async def test_context_manager(self, settings, store, registry, clock, sleep) -> None:
        async with build_layer(settings, store, registry, clock, sleep) as layer:
            assert layer.network.initialized
            assert layer.session.state is SessionState.UNAUTHENTICATED
