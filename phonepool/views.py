"""Display state derived from a snapshot for one viewer."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from phonepool.models import AccessRecord, Device, ReturnRequest
from phonepool.waitlist import active_requests, queue_position


@dataclass(frozen=True)
class DeviceView:
    device: Device
    is_mine: bool
    is_waiting: bool
    queue_position: int | None
    waiting: list[ReturnRequest] = field(default_factory=list)
    history: list[AccessRecord] = field(default_factory=list)

    @property
    def holder_name(self) -> str | None:
        return self.device.holder.user_name if self.device.holder else None


def build_view(device: Device, viewer: str, now: datetime) -> DeviceView:
    """Everything a screen showing ``device`` to ``viewer`` needs."""
    waiting = active_requests(device, now, viewer=viewer)
    position = queue_position(device, viewer, now)
    history = sorted(device.access_logs, key=lambda a: a.started_at, reverse=True)
    return DeviceView(
        device=device,
        is_mine=device.held_by(viewer),
        is_waiting=position is not None,
        queue_position=position,
        waiting=waiting,
        history=history,
    )


def build_views(devices: list[Device], viewer: str, now: datetime) -> list[DeviceView]:
    return [build_view(d, viewer, now) for d in devices]
