"""Client-side cache of the device pool snapshot."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from phonepool.models import Device, ServiceUnavailableError
from phonepool.registry.client import StatusClient

logger = logging.getLogger("phonepool.registry")


class DeviceRegistry:
    """Holds the last snapshot fetched from the status service.

    The service is canonical: a successful refresh replaces the cache
    wholesale. A failed refresh keeps the previous snapshot for display
    only and reports the service as unreachable.
    """

    def __init__(self, client: StatusClient) -> None:
        self.client = client
        self._devices: list[Device] = []
        self._reachable: bool = False
        self.last_refreshed_at: datetime | None = None

    @property
    def devices(self) -> list[Device]:
        return list(self._devices)

    @property
    def reachable(self) -> bool:
        return self._reachable

    def get(self, device_id: str) -> Device | None:
        for device in self._devices:
            if device.id == device_id:
                return device
        return None

    async def refresh(self) -> tuple[list[Device], bool]:
        """Fetch a fresh snapshot. Returns (devices, reachable)."""
        try:
            devices = await self.client.list_phones()
        except ServiceUnavailableError as e:
            if self._reachable:
                logger.warning("Status service unreachable: %s", e)
            else:
                logger.debug("Status service still unreachable: %s", e)
            self._reachable = False
            return self.devices, False

        if not self._reachable:
            logger.info("Status service reachable (%d devices)", len(devices))
        self._devices = devices
        self._reachable = True
        self.last_refreshed_at = datetime.now(timezone.utc)
        return self.devices, True

    def assume(self, device: Device) -> None:
        """Store a locally assumed post-mutation state until the next refresh."""
        for i, existing in enumerate(self._devices):
            if existing.id == device.id:
                self._devices[i] = device
                return
        self._devices.append(device)
