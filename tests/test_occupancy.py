"""Tests for the occupancy controller."""

from __future__ import annotations

import httpx
import pytest

from phonepool.models import (
    AlreadyOccupiedError,
    DeviceNotFoundError,
    MirroringError,
    NotAuthorizedError,
    ServiceUnavailableError,
)
from phonepool.occupancy import OccupancyController
from phonepool.registry import DeviceRegistry, StatusClient

from conftest import FakeLauncher


@pytest.fixture
async def occupancy(registry, launcher):
    occupancy = OccupancyController(registry, launcher)
    yield occupancy
    await occupancy.close()


@pytest.fixture
async def other_registry(status_client):
    """A second client's view of the same service."""
    registry = DeviceRegistry(status_client)
    await registry.refresh()
    return registry


class TestClaim:
    """Claiming devices."""

    async def test_claim_sets_holder(self, occupancy, store):
        device = await occupancy.claim("D1", "alice", "eng")

        assert device.held_by("alice")
        assert occupancy.registry.get("D1").held_by("alice")
        assert store.get("D1").holder.user_name == "alice"
        assert store.get("D1").holder.department == "eng"

    async def test_claim_starts_mirroring(self, occupancy, launcher):
        await occupancy.claim("D1", "alice")

        assert len(launcher.sessions) == 1
        session = occupancy.session_for("D1")
        assert session is launcher.sessions[0]
        assert session.address == "10.0.0.11"
        assert not session.readonly

    async def test_second_claimer_is_refused(self, occupancy, other_registry, store):
        await occupancy.claim("D1", "alice")
        bob = OccupancyController(other_registry, FakeLauncher())

        with pytest.raises(AlreadyOccupiedError):
            await bob.claim("D1", "bob")
        assert store.get("D1").holder.user_name == "alice"

    async def test_claim_refused_by_cached_holder_names_holder(self, occupancy, other_registry):
        await occupancy.claim("D1", "alice")
        await other_registry.refresh()
        bob = OccupancyController(other_registry)

        with pytest.raises(AlreadyOccupiedError) as exc_info:
            await bob.claim("D1", "bob")
        assert exc_info.value.holder == "alice"

    async def test_claim_own_device_is_refused(self, occupancy):
        await occupancy.claim("D1", "alice")
        with pytest.raises(AlreadyOccupiedError):
            await occupancy.claim("D1", "alice")

    async def test_claim_unknown_device(self, occupancy):
        with pytest.raises(DeviceNotFoundError):
            await occupancy.claim("NOPE", "alice")

    async def test_claim_drops_own_request(self, occupancy, store):
        await store.request("D1", "alice")
        await occupancy.registry.refresh()

        device = await occupancy.claim("D1", "alice")
        assert device.requests == []

    async def test_mirroring_failure_keeps_claim(self, registry, store):
        occupancy = OccupancyController(registry, FakeLauncher(fail=True))

        with pytest.raises(MirroringError):
            await occupancy.claim("D1", "alice")
        assert store.get("D1").holder.user_name == "alice"
        assert occupancy.session_for("D1") is None

    async def test_claim_without_launcher(self, registry):
        occupancy = OccupancyController(registry)
        await occupancy.claim("D1", "alice")
        assert occupancy.session_for("D1") is None


class TestRelease:
    """Releasing devices."""

    async def test_release_frees_device_and_records_history(self, occupancy, store):
        await occupancy.claim("D1", "alice", "eng")
        await occupancy.release("D1", "alice")

        device = store.get("D1")
        assert device.holder is None
        assert len(device.access_logs) == 1
        assert device.access_logs[0].user == "alice"
        assert occupancy.registry.get("D1").holder is None

    async def test_release_stops_mirroring_without_callback_release(self, occupancy, launcher, store):
        await occupancy.claim("D1", "alice")
        session = occupancy.session_for("D1")

        await occupancy.release("D1", "alice")

        assert launcher.processes[0].terminated
        assert not session.running
        assert occupancy.session_for("D1") is None
        assert len(store.get("D1").access_logs) == 1

    async def test_release_is_idempotent(self, occupancy, store):
        await occupancy.claim("D1", "alice")
        await occupancy.release("D1", "alice")
        await occupancy.release("D1", "alice")
        assert len(store.get("D1").access_logs) == 1

    async def test_release_free_device_is_noop(self, occupancy, store):
        await occupancy.release("D2", "alice")
        assert store.get("D2").access_logs == []

    async def test_release_when_unreachable(self):
        def handler(request):
            raise httpx.ConnectError("down", request=request)

        async with StatusClient("http://test", transport=httpx.MockTransport(handler)) as client:
            occupancy = OccupancyController(DeviceRegistry(client))
            with pytest.raises(ServiceUnavailableError):
                await occupancy.release("D1", "alice")

    async def test_release_from_cache_still_needs_service(self):
        state = {"up": True}
        phones = {"phones": [{"id": "D1", "status": "busy", "currentUser": "alice",
                              "currentStartAt": "2026-03-02T09:00:00+00:00"}]}

        def handler(request):
            if not state["up"]:
                raise httpx.ConnectError("down", request=request)
            return httpx.Response(200, json=phones)

        async with StatusClient("http://test", transport=httpx.MockTransport(handler)) as client:
            registry = DeviceRegistry(client)
            await registry.refresh()
            state["up"] = False
            with pytest.raises(ServiceUnavailableError) as exc_info:
                await OccupancyController(registry).release("D1", "alice")
        assert exc_info.value.operation == "release"
        assert registry.get("D1").held_by("alice")

    async def test_window_close_releases_once(self, occupancy, launcher, store):
        await occupancy.claim("D1", "alice")
        session = occupancy.session_for("D1")

        launcher.processes[0].exit(0)
        await session.wait_closed()

        assert store.get("D1").holder is None
        assert len(store.get("D1").access_logs) == 1
        assert occupancy.session_for("D1") is None

    async def test_release_after_window_close_does_nothing_more(self, occupancy, launcher, store):
        await occupancy.claim("D1", "alice")
        session = occupancy.session_for("D1")
        launcher.processes[0].exit(0)
        await session.wait_closed()

        await occupancy.release("D1", "alice")
        assert len(store.get("D1").access_logs) == 1

    async def test_release_by_non_holder_is_refused(self, occupancy, other_registry, store):
        await occupancy.claim("D1", "alice")
        carol = OccupancyController(other_registry)

        with pytest.raises(NotAuthorizedError) as exc_info:
            await carol.release("D1", "carol")

        assert exc_info.value.operation == "release"
        assert store.get("D1").holder.user_name == "alice"
        assert store.get("D1").access_logs == []
        assert other_registry.get("D1").held_by("alice")

    async def test_release_after_holder_changed_is_refused(self, occupancy, store):
        await occupancy.claim("D1", "alice")
        await store.force_release("D1", "admin-pc")
        await store.occupy("D1", "bob")

        with pytest.raises(NotAuthorizedError):
            await occupancy.release("D1", "alice")

        assert store.get("D1").holder.user_name == "bob"
        assert [a.user for a in store.get("D1").access_logs] == ["alice"]

    async def test_release_refused_by_service(self):
        phones = {"phones": [{"id": "D1", "status": "busy", "currentUser": "alice",
                              "currentStartAt": "2026-03-02T09:00:00+00:00"}]}

        def handler(request):
            if request.url.path == "/release":
                return httpx.Response(200, json={"success": False})
            return httpx.Response(200, json=phones)

        async with StatusClient("http://test", transport=httpx.MockTransport(handler)) as client:
            registry = DeviceRegistry(client)
            with pytest.raises(NotAuthorizedError):
                await OccupancyController(registry).release("D1", "alice")
        assert registry.get("D1").held_by("alice")


class TestForceRelease:
    """Admin force-release."""

    async def test_admin_releases_any_device(self, occupancy, other_registry, store):
        await occupancy.claim("D1", "alice")
        admin = OccupancyController(other_registry)

        await admin.force_release("D1", "admin-pc")

        assert store.get("D1").holder is None
        assert len(store.get("D1").access_logs) == 1

    async def test_non_admin_is_refused(self, occupancy, other_registry, store):
        await occupancy.claim("D1", "alice")
        bob = OccupancyController(other_registry)

        with pytest.raises(NotAuthorizedError):
            await bob.force_release("D1", "bob-pc")
        assert store.get("D1").holder.user_name == "alice"

    async def test_force_release_drops_local_session(self, registry, store):
        occupancy = OccupancyController(registry, FakeLauncher())
        await occupancy.claim("D1", "admin-pc")

        await occupancy.force_release("D1", "admin-pc")

        assert occupancy.session_for("D1") is None
        assert len(store.get("D1").access_logs) == 1


class TestViewAndClose:
    async def test_view_is_readonly_and_does_not_claim(self, occupancy, launcher, store):
        session = await occupancy.view("D2")

        assert session.readonly
        assert store.get("D2").holder is None
        assert occupancy.session_for("D2") is None

    async def test_view_without_launcher(self, registry):
        with pytest.raises(MirroringError):
            await OccupancyController(registry).view("D1")

    async def test_closing_viewer_releases_nothing(self, occupancy, launcher, store):
        await occupancy.claim("D1", "alice")
        session = await occupancy.view("D2")
        launcher.processes[1].exit(0)
        await session.wait_closed()

        assert store.get("D1").holder.user_name == "alice"

    async def test_drop_session(self, occupancy, store):
        await occupancy.claim("D1", "alice")

        assert await occupancy.drop_session("D1")
        assert not await occupancy.drop_session("D1")
        assert store.get("D1").holder.user_name == "alice"

    async def test_close_stops_everything_without_release(self, occupancy, launcher, store):
        await occupancy.claim("D1", "alice")
        await occupancy.view("D2")

        await occupancy.close()

        assert all(p.terminated for p in launcher.processes)
        assert store.get("D1").holder.user_name == "alice"
