"""Tests for the polling dispatcher."""

import pytest

from portforward.config import AnnotationKeys
from portforward.poller import ServicePoller
from portforward.reconciler import ServiceReconciler
from portforward.records import ChangeContext
from portforward.store import InMemoryResourceStore, StoreError
from router_mock import FakeClock, MockRouter, make_service, managed_service

KEY = "default/web"


@pytest.fixture
def poller(
    store: InMemoryResourceStore,
    reconciler: ServiceReconciler,
    keys: AnnotationKeys,
    clock: FakeClock,
) -> ServicePoller:
    return ServicePoller(
        store=store,
        reconciler=reconciler,
        keys=keys,
        interval_seconds=10,
        retry_delay=30,
        clock=clock.monotonic,
    )


async def poll(poller: ServicePoller) -> None:
    await poller.poll_once()
    await poller.wait_idle()


class TestPollOnce:
    @pytest.mark.asyncio
    async def test_new_service_is_managed_in_one_poll(
        self, poller: ServicePoller, store: InMemoryResourceStore, router: MockRouter
    ) -> None:
        store.put(make_service())

        await poll(poller)

        # The finalizer requeue is dispatched right away
        assert router.get(80).owned_by(KEY)
        assert poller.pending == {}

    @pytest.mark.asyncio
    async def test_unchanged_services_are_not_redispatched(
        self, poller: ServicePoller, store: InMemoryResourceStore, router: MockRouter
    ) -> None:
        store.put(managed_service())
        await poll(poller)
        router.calls.clear()

        await poll(poller)
        await poll(poller)

        assert router.calls == []

    @pytest.mark.asyncio
    async def test_ip_change_is_recorded_and_applied(
        self,
        poller: ServicePoller,
        store: InMemoryResourceStore,
        router: MockRouter,
        keys: AnnotationKeys,
    ) -> None:
        store.put(managed_service())
        await poll(poller)

        current = store.get("default", "web")
        store.put(current.model_copy(update={"load_balancer_ip": "10.0.0.9"}))
        await poll(poller)

        assert router.get(80).destination_ip == "10.0.0.9"
        context = ChangeContext.from_json(store.get("default", "web").annotations[keys.change_context])
        assert context.ip_changed
        assert (context.old_ip, context.new_ip) == ("192.168.1.100", "10.0.0.9")
        assert context.port_forward_rules == ["80:80/tcp"]

    @pytest.mark.asyncio
    async def test_deletion_is_dispatched(
        self, poller: ServicePoller, store: InMemoryResourceStore, router: MockRouter
    ) -> None:
        store.put(managed_service())
        await poll(poller)

        store.delete("default", "web")
        await poll(poller)

        assert router.rules() == []
        assert store.get("default", "web") is None

    @pytest.mark.asyncio
    async def test_failed_key_retried_after_delay(
        self,
        poller: ServicePoller,
        store: InMemoryResourceStore,
        router: MockRouter,
        clock: FakeClock,
    ) -> None:
        store.put(managed_service())
        router.fail_on("add", 80)

        await poll(poller)

        assert poller.pending == {KEY: clock.monotonic() + 30}
        attempts = len(router.calls_of("add"))

        await poll(poller)
        assert len(router.calls_of("add")) == attempts

        router.clear_faults()
        clock.advance(31)
        await poll(poller)

        assert router.get(80) is not None
        assert poller.pending == {}

    @pytest.mark.asyncio
    async def test_list_failure_is_survived(
        self,
        poller: ServicePoller,
        store: InMemoryResourceStore,
        router: MockRouter,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        def broken() -> list:
            raise StoreError("api unavailable")

        monkeypatch.setattr(store, "list", broken)

        await poll(poller)

        assert router.calls == []
