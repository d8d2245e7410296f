"""Return-request queue: who is waiting for a device, and in what order.

Expiry is evaluated lazily on every read. Stale entries are filtered out
here and physically pruned by the status service on its next write, so the
client never rewrites the stored queue.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from phonepool.config import REQUEST_EXPIRY
from phonepool.models import (
    AlreadyQueuedError,
    Device,
    DeviceNotFoundError,
    ReturnRequest,
)
from phonepool.registry import DeviceRegistry

logger = logging.getLogger("phonepool.waitlist")


def active_requests(
    device: Device,
    now: datetime,
    viewer: str | None = None,
    expiry: timedelta = REQUEST_EXPIRY,
) -> list[ReturnRequest]:
    """Return the unexpired requests for a device, oldest first.

    A holder viewing their own device never sees their own request, and
    duplicate entries for one requester collapse to the oldest.
    """
    holder_is_viewer = viewer is not None and device.held_by(viewer)
    seen: set[str] = set()
    result = []
    for req in sorted(device.requests, key=lambda r: r.requested_at):
        if now - req.requested_at >= expiry:
            continue
        if holder_is_viewer and req.requester == viewer:
            continue
        if req.requester in seen:
            continue
        seen.add(req.requester)
        result.append(req)
    return result


def is_waiting(device: Device, identity: str, now: datetime) -> bool:
    """True if ``identity`` has an unexpired request queued for the device."""
    return any(r.requester == identity for r in active_requests(device, now, viewer=identity))


def queue_position(device: Device, identity: str, now: datetime) -> int | None:
    """1-based position of ``identity`` in the waiting list, or None."""
    for i, req in enumerate(active_requests(device, now, viewer=identity), start=1):
        if req.requester == identity:
            return i
    return None


class ReturnRequestQueue:
    """Queues and cancels return requests through the status service."""

    def __init__(self, registry: DeviceRegistry) -> None:
        self.registry = registry

    async def request_return(
        self,
        device_id: str,
        requester: str,
        at: datetime | None = None,
    ) -> None:
        """Ask the current holder to return the device.

        Raises:
            AlreadyQueuedError: If an unexpired request from ``requester``
                is already queued.
            DeviceNotFoundError: If the device is unknown.
            ServiceUnavailableError: On transient network failure.
        """
        at = at or datetime.now(timezone.utc)
        device = self.registry.get(device_id)
        if device is not None and is_waiting(device, requester, at):
            raise AlreadyQueuedError(
                f"{requester} is already waiting for {device_id}", operation="request",
            )

        ok = await self.registry.client.request_return(device_id, requester)
        if not ok:
            raise AlreadyQueuedError(
                f"{requester} is already waiting for {device_id}", operation="request",
            )

        if device is not None:
            queued = ReturnRequest(requester=requester, requested_at=at)
            self.registry.assume(device.model_copy(update={"requests": [*device.requests, queued]}))
        logger.info("Return requested: %s by %s", device_id, requester)

    async def cancel_request(self, device_id: str, requester: str) -> None:
        """Withdraw ``requester``'s pending request. Idempotent."""
        await self.registry.client.cancel_request(device_id, requester)

        device = self.registry.get(device_id)
        if device is not None:
            remaining = [r for r in device.requests if r.requester != requester]
            self.registry.assume(device.model_copy(update={"requests": remaining}))
        logger.info("Return request cancelled: %s by %s", device_id, requester)

    def active_for(self, device_id: str, viewer: str | None = None) -> list[ReturnRequest]:
        """Active requests for a cached device."""
        device = self.registry.get(device_id)
        if device is None:
            raise DeviceNotFoundError(f"Device {device_id} not found in pool", operation="request")
        return active_requests(device, datetime.now(timezone.utc), viewer=viewer)
