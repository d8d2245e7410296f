"""Occupancy controller: claim, release and force-release devices."""

from __future__ import annotations

import functools
import logging
from datetime import datetime, timezone

from phonepool.mirroring import BaseMirrorLauncher, MirrorSession
from phonepool.models import (
    AccessRecord,
    AlreadyOccupiedError,
    Device,
    DeviceNotFoundError,
    DeviceStatus,
    Holder,
    MirroringError,
    NotAuthorizedError,
    ServiceUnavailableError,
)
from phonepool.registry import DeviceRegistry

logger = logging.getLogger("phonepool.occupancy")


class OccupancyController:
    """Claims and releases devices against the status service.

    Owns the local mirroring sessions. A session that ends on its own
    (the user closed the window) releases its device; sessions stopped by
    this controller never do.
    """

    def __init__(
        self,
        registry: DeviceRegistry,
        launcher: BaseMirrorLauncher | None = None,
    ) -> None:
        self.registry = registry
        self.launcher = launcher
        self._sessions: dict[str, MirrorSession] = {}
        self._viewers: dict[str, MirrorSession] = {}

    # ----------------------------------------------------------------
    # Public API
    # ----------------------------------------------------------------

    def session_for(self, device_id: str) -> MirrorSession | None:
        return self._sessions.get(device_id)

    async def claim(self, device_id: str, identity: str, department: str = "") -> Device:
        """Take exclusive hold of a device and start mirroring it.

        Returns:
            The device as assumed after the claim (the next poll is canonical).

        Raises:
            DeviceNotFoundError: If the device is not in the pool.
            AlreadyOccupiedError: If the device is held, locally known or
                reported by the service.
            MirroringError: If mirroring failed to start. The claim stands
                and the device must be released explicitly.
            ServiceUnavailableError: On transient network failure.
        """
        device = await self._lookup(device_id, "claim")
        if device.holder is not None:
            raise AlreadyOccupiedError(
                f"Device {device_id} ({device.name}) is already occupied by {device.holder.user_name}",
                holder=device.holder.user_name,
            )

        ok = await self.registry.client.occupy(device_id, identity, department)
        if not ok:
            raise AlreadyOccupiedError(f"Device {device_id} ({device.name}) is already occupied")

        claimed = device.model_copy(update={
            "status": DeviceStatus.OCCUPIED,
            "holder": Holder(
                user_name=identity,
                department=department,
                occupied_since=datetime.now(timezone.utc),
            ),
            "requests": [r for r in device.requests if r.requester != identity],
        })
        self.registry.assume(claimed)
        logger.info("Device claimed: %s (%s) by %s", device_id, device.name, identity)

        if self.launcher is not None:
            session = await self._start_mirroring(self.launcher, claimed, readonly=False)
            session.add_closed_callback(functools.partial(self._on_session_closed, identity))
            self._sessions[device_id] = session
        return claimed

    async def release(self, device_id: str, identity: str) -> None:
        """Return a device held by ``identity`` to the pool. Idempotent.

        The local mirroring session is stopped first. The holder's recorded
        session is read from a fresh snapshot (the cached one if the service
        is unreachable) so the access history gets the real start time.

        Raises:
            NotAuthorizedError: If someone other than ``identity`` holds the
                device; nothing is released in that case.
        """
        session = self._sessions.pop(device_id, None)
        if session is not None:
            await session.stop()

        _, reachable = await self.registry.refresh()
        device = self.registry.get(device_id)
        if device is None:
            if not reachable:
                raise ServiceUnavailableError(
                    f"Cannot release {device_id}: status service unreachable", operation="release",
                )
            raise DeviceNotFoundError(f"Device {device_id} not found in pool", operation="release")
        if not reachable:
            logger.warning("Status service unreachable, releasing %s from cached state", device_id)
        if device.holder is None:
            logger.warning("Device %s was not occupied, ignoring release", device_id)
            return
        holder = device.holder
        if holder.user_name != identity:
            logger.warning(
                "Release of %s by %s refused: held by %s", device_id, identity, holder.user_name,
            )
            raise NotAuthorizedError(
                f"Device {device_id} is held by {holder.user_name}, not {identity}",
                operation="release",
            )

        ok = await self.registry.client.release(
            device_id, identity, holder.department, holder.occupied_since,
        )
        if not ok:
            raise NotAuthorizedError(
                f"Release of {device_id} by {identity} refused by status service",
                operation="release",
            )

        self.registry.assume(_released(device, holder))
        logger.info("Device released: %s (%s) from %s", device_id, device.name, holder.user_name)

    async def force_release(self, device_id: str, admin_identity: str) -> None:
        """Release a device regardless of who holds it.

        Raises:
            NotAuthorizedError: If ``admin_identity`` is not an admin; no
                state changes in that case.
        """
        if not await self.registry.client.check_admin(admin_identity):
            raise NotAuthorizedError(
                f"{admin_identity} is not allowed to force-release devices",
                operation="force-release",
            )
        result = await self.registry.client.force_release(device_id, admin_identity)
        if not result.success:
            raise NotAuthorizedError(
                result.error or f"Force release of {device_id} refused",
                operation="force-release",
            )

        await self.drop_session(device_id)
        device = self.registry.get(device_id)
        if device is not None and device.holder is not None:
            self.registry.assume(_released(device, device.holder))
        logger.info("Device force-released: %s by %s", device_id, admin_identity)

    async def view(self, device_id: str) -> MirrorSession:
        """Mirror a device read-only without claiming it."""
        device = await self._lookup(device_id, "view")
        if self.launcher is None:
            raise MirroringError("No mirroring launcher configured", operation="view")

        existing = self._viewers.pop(device_id, None)
        if existing is not None:
            await existing.stop()
        session = await self._start_mirroring(self.launcher, device, readonly=True)
        session.add_closed_callback(self._on_viewer_closed)
        self._viewers[device_id] = session
        return session

    async def drop_session(self, device_id: str) -> bool:
        """Stop the local mirroring session for a device without releasing it."""
        session = self._sessions.pop(device_id, None)
        if session is None:
            return False
        await session.stop()
        logger.info("Local mirroring session for %s stopped", device_id)
        return True

    async def close(self) -> None:
        """Stop every local session without releasing."""
        for device_id in list(self._sessions):
            await self.drop_session(device_id)
        for device_id, session in list(self._viewers.items()):
            del self._viewers[device_id]
            await session.stop()

    # ----------------------------------------------------------------
    # Internals
    # ----------------------------------------------------------------

    async def _lookup(self, device_id: str, operation: str) -> Device:
        device = self.registry.get(device_id)
        if device is None:
            await self.registry.refresh()
            device = self.registry.get(device_id)
        if device is None:
            raise DeviceNotFoundError(f"Device {device_id} not found in pool", operation=operation)
        return device

    async def _start_mirroring(
        self, launcher: BaseMirrorLauncher, device: Device, readonly: bool,
    ) -> MirrorSession:
        try:
            return await launcher.start(device.address, device.id, readonly=readonly)
        except MirroringError:
            logger.error("Mirroring failed to start for %s", device.id)
            raise

    async def _on_session_closed(self, identity: str, session: MirrorSession) -> None:
        if self._sessions.get(session.device_id) is not session:
            return
        del self._sessions[session.device_id]
        logger.info("Mirroring window for %s closed, releasing", session.device_id)
        try:
            await self.release(session.device_id, identity)
        except (ServiceUnavailableError, DeviceNotFoundError, NotAuthorizedError) as e:
            logger.warning("Release after window close failed for %s: %s", session.device_id, e)

    async def _on_viewer_closed(self, session: MirrorSession) -> None:
        if self._viewers.get(session.device_id) is session:
            del self._viewers[session.device_id]


def _released(device: Device, holder: Holder) -> Device:
    """The device as it looks after ``holder``'s session is closed out."""
    record = AccessRecord(
        user=holder.user_name,
        department=holder.department,
        started_at=holder.occupied_since,
        ended_at=datetime.now(timezone.utc),
    )
    return device.model_copy(update={
        "status": DeviceStatus.AVAILABLE,
        "holder": None,
        "access_logs": [*device.access_logs, record],
    })
