"""Tests for the return-request queue."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from phonepool.models import (
    AlreadyQueuedError,
    Device,
    DeviceNotFoundError,
    DeviceStatus,
    Holder,
    ReturnRequest,
)
from phonepool.waitlist import ReturnRequestQueue, active_requests, is_waiting, queue_position

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def _held(requests, holder="alice"):
    return Device(
        id="D1",
        name="Galaxy S23",
        status=DeviceStatus.OCCUPIED,
        holder=Holder(user_name=holder, occupied_since=T0),
        requests=requests,
    )


def _req(user, minutes):
    return ReturnRequest(requester=user, requested_at=T0 + timedelta(minutes=minutes))


class TestActiveRequests:
    """Lazy expiry and ordering of the waiting list."""

    def test_active_after_five_minutes(self):
        device = _held([_req("bob", 0)])
        active = active_requests(device, T0 + timedelta(minutes=5))
        assert [r.requester for r in active] == ["bob"]

    def test_expired_after_eleven_minutes(self):
        device = _held([_req("bob", 0)])
        assert active_requests(device, T0 + timedelta(minutes=11)) == []

    def test_expiry_boundary_is_exclusive(self):
        device = _held([_req("bob", 0)])
        assert active_requests(device, T0 + timedelta(minutes=10)) == []
        assert len(active_requests(device, T0 + timedelta(minutes=9, seconds=59))) == 1

    def test_oldest_first(self):
        device = _held([_req("carol", 3), _req("bob", 1), _req("dave", 2)])
        active = active_requests(device, T0 + timedelta(minutes=4))
        assert [r.requester for r in active] == ["bob", "dave", "carol"]

    def test_duplicates_collapse_to_oldest(self):
        device = _held([_req("bob", 2), _req("bob", 1)])
        active = active_requests(device, T0 + timedelta(minutes=3))
        assert len(active) == 1
        assert active[0].requested_at == T0 + timedelta(minutes=1)

    def test_holder_does_not_see_own_request(self):
        device = _held([_req("alice", 0), _req("bob", 1)])
        active = active_requests(device, T0 + timedelta(minutes=2), viewer="alice")
        assert [r.requester for r in active] == ["bob"]

    def test_non_holder_sees_every_request(self):
        device = _held([_req("alice", 0), _req("bob", 1)])
        active = active_requests(device, T0 + timedelta(minutes=2), viewer="carol")
        assert [r.requester for r in active] == ["alice", "bob"]

    def test_custom_expiry(self):
        device = _held([_req("bob", 0)])
        now = T0 + timedelta(minutes=2)
        assert active_requests(device, now, expiry=timedelta(minutes=1)) == []


class TestQueuePosition:
    def test_is_waiting(self):
        device = _held([_req("bob", 0)])
        now = T0 + timedelta(minutes=1)
        assert is_waiting(device, "bob", now)
        assert not is_waiting(device, "carol", now)

    def test_expired_request_is_not_waiting(self):
        device = _held([_req("bob", 0)])
        assert not is_waiting(device, "bob", T0 + timedelta(minutes=15))

    def test_positions_are_one_based(self):
        device = _held([_req("bob", 0), _req("carol", 1)])
        now = T0 + timedelta(minutes=2)
        assert queue_position(device, "bob", now) == 1
        assert queue_position(device, "carol", now) == 2
        assert queue_position(device, "dave", now) is None


class TestReturnRequestQueue:
    """Requests through the status service."""

    async def test_request_is_visible_immediately(self, registry):
        queue = ReturnRequestQueue(registry)
        await queue.request_return("D1", "bob")

        assert [r.requester for r in queue.active_for("D1")] == ["bob"]

    async def test_request_reaches_service(self, registry, store):
        queue = ReturnRequestQueue(registry)
        await queue.request_return("D1", "bob")

        assert [r.requester for r in store.get("D1").requests] == ["bob"]

    async def test_duplicate_request_rejected(self, registry, store):
        queue = ReturnRequestQueue(registry)
        await queue.request_return("D1", "bob")

        with pytest.raises(AlreadyQueuedError):
            await queue.request_return("D1", "bob")
        assert len(store.get("D1").requests) == 1

    async def test_duplicate_rejected_by_service_when_cache_is_stale(self, registry, store):
        await store.request("D1", "bob")
        queue = ReturnRequestQueue(registry)

        with pytest.raises(AlreadyQueuedError):
            await queue.request_return("D1", "bob")

    async def test_cancel_removes_request(self, registry, store):
        queue = ReturnRequestQueue(registry)
        await queue.request_return("D1", "bob")
        await queue.cancel_request("D1", "bob")

        assert queue.active_for("D1") == []
        assert store.get("D1").requests == []

    async def test_cancel_without_request_is_noop(self, registry):
        queue = ReturnRequestQueue(registry)
        await queue.cancel_request("D1", "bob")
        assert queue.active_for("D1") == []

    async def test_unknown_device(self, registry):
        queue = ReturnRequestQueue(registry)
        with pytest.raises(DeviceNotFoundError):
            await queue.request_return("NOPE", "bob")
        with pytest.raises(DeviceNotFoundError):
            queue.active_for("NOPE")
