"""In-process phone store backing the reference status service.

All writes go through one asyncio lock, which makes claim an atomic
check-and-set: of two concurrent claims for the same phone exactly one
wins. Expired return requests are pruned on every write.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path

from phonepool.config import REQUEST_EXPIRY
from phonepool.models import (
    AccessRecord,
    Device,
    DeviceNotFoundError,
    DeviceStatus,
    Holder,
    ReturnRequest,
)

logger = logging.getLogger("phonepool.service.store")

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PhoneStore:
    """Canonical occupancy state of the phone pool."""

    def __init__(
        self,
        devices: list[Device] | None = None,
        admin_hostnames: list[str] | None = None,
        request_expiry: timedelta = REQUEST_EXPIRY,
        state_file: Path | None = None,
        clock: Clock = _utcnow,
    ) -> None:
        self._devices: dict[str, Device] = {d.id: d for d in devices or []}
        self.admin_hostnames = set(admin_hostnames or [])
        self.request_expiry = request_expiry
        self._state_file = state_file
        self._clock = clock
        self._lock = asyncio.Lock()

    @classmethod
    def from_file(cls, path: Path, **kwargs) -> PhoneStore:
        """Load the pool from a JSON file (a list of phones or {"phones": [...]}).

        Writes are saved back to the same file.
        """
        devices: list[Device] = []
        if path.exists():
            try:
                data = json.loads(path.read_text())
                if isinstance(data, dict):
                    data = data.get("phones", [])
                devices = [Device.model_validate(item) for item in data]
            except (json.JSONDecodeError, OSError, ValueError) as e:
                logger.warning("Failed to read phones file %s: %s", path, e)
        else:
            logger.warning("Phones file %s not found, starting with an empty pool", path)
        logger.info("Loaded %d phones from %s", len(devices), path)
        return cls(devices, state_file=path, **kwargs)

    # ----------------------------------------------------------------
    # Reads
    # ----------------------------------------------------------------

    def list_phones(self) -> list[Device]:
        return list(self._devices.values())

    def get(self, phone_id: str) -> Device:
        device = self._devices.get(phone_id)
        if device is None:
            raise DeviceNotFoundError(f"Phone {phone_id} not found", operation="lookup")
        return device

    def is_admin(self, hostname: str) -> bool:
        return hostname in self.admin_hostnames

    # ----------------------------------------------------------------
    # Writes
    # ----------------------------------------------------------------

    async def occupy(self, phone_id: str, user_name: str, user_dept: str = "") -> bool:
        async with self._lock:
            device = self.get(phone_id)
            if device.is_occupied:
                logger.info(
                    "Claim of %s by %s refused: held by %s",
                    phone_id, user_name, device.holder.user_name if device.holder else "?",
                )
                return False

            now = self._clock()
            requests = [r for r in self._pruned(device, now) if r.requester != user_name]
            self._put(device.model_copy(update={
                "status": DeviceStatus.OCCUPIED,
                "holder": Holder(user_name=user_name, department=user_dept, occupied_since=now),
                "requests": requests,
            }))
            logger.info("Phone %s occupied by %s", phone_id, user_name)
            return True

    async def release(self, phone_id: str, user_name: str | None = None) -> bool:
        """Close out the holder's session. Releasing a free phone is a no-op.

        Returns False when ``user_name`` is given and is not the holder.
        """
        async with self._lock:
            device = self.get(phone_id)
            if device.holder is None:
                return True
            if user_name and device.holder.user_name != user_name:
                logger.info(
                    "Release of %s by %s refused: held by %s",
                    phone_id, user_name, device.holder.user_name,
                )
                return False
            self._release(device, device.holder)
            return True

    async def request(self, phone_id: str, user_name: str) -> bool:
        async with self._lock:
            device = self.get(phone_id)
            now = self._clock()
            requests = self._pruned(device, now)
            if any(r.requester == user_name for r in requests):
                return False
            requests.append(ReturnRequest(requester=user_name, requested_at=now))
            self._put(device.model_copy(update={"requests": requests}))
            logger.info("Return of %s requested by %s", phone_id, user_name)
            return True

    async def cancel(self, phone_id: str, user_name: str) -> bool:
        async with self._lock:
            device = self.get(phone_id)
            requests = [
                r for r in self._pruned(device, self._clock()) if r.requester != user_name
            ]
            self._put(device.model_copy(update={"requests": requests}))
            return True

    async def force_release(self, phone_id: str, admin_hostname: str) -> tuple[bool, str | None]:
        async with self._lock:
            if not self.is_admin(admin_hostname):
                logger.warning("Force release of %s by non-admin %s refused", phone_id, admin_hostname)
                return False, "Not authorized"
            device = self.get(phone_id)
            if device.holder is not None:
                self._release(device, device.holder)
                logger.info("Phone %s force-released by %s", phone_id, admin_hostname)
            return True, None

    # ----------------------------------------------------------------
    # Internals (call with the lock held)
    # ----------------------------------------------------------------

    def _pruned(self, device: Device, now: datetime) -> list[ReturnRequest]:
        return [r for r in device.requests if now - r.requested_at < self.request_expiry]

    def _release(self, device: Device, holder: Holder) -> None:
        now = self._clock()
        record = AccessRecord(
            user=holder.user_name,
            department=holder.department,
            started_at=holder.occupied_since,
            ended_at=now,
        )
        self._put(device.model_copy(update={
            "status": DeviceStatus.AVAILABLE,
            "holder": None,
            "requests": self._pruned(device, now),
            "access_logs": [*device.access_logs, record],
        }))
        logger.info("Phone %s released by %s", device.id, record.user)

    def _put(self, device: Device) -> None:
        self._devices[device.id] = device
        if self._state_file is None:
            return
        try:
            self._state_file.parent.mkdir(parents=True, exist_ok=True)
            payload = {"phones": [d.to_wire() for d in self._devices.values()]}
            self._state_file.write_text(json.dumps(payload, indent=2) + "\n")
        except OSError as e:
            logger.warning("Failed to save phones file %s: %s", self._state_file, e)
