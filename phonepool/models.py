"""Core data models for the shared phone pool and its error taxonomy.

The status service speaks the wire format of the desktop launcher
(camelCase keys, a flat current-user block, ``busy`` for occupied phones).
These models accept that shape and expose a snake_case view with the
holder folded into a single optional object.
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def _as_aware(value: datetime) -> datetime:
    """Interpret naive timestamps as local time."""
    if value.tzinfo is None:
        return value.astimezone()
    return value


class DeviceStatus(str, enum.Enum):
    """Occupancy status of a device."""

    AVAILABLE = "available"
    OCCUPIED = "occupied"


class WireModel(BaseModel):
    """Base for models that round-trip through the status service."""

    model_config = ConfigDict(populate_by_name=True)


class Holder(WireModel):
    """Who currently holds a device and since when."""

    user_name: str
    department: str = ""
    occupied_since: datetime

    @field_validator("occupied_since")
    @classmethod
    def _aware_since(cls, v: datetime) -> datetime:
        return _as_aware(v)


class ReturnRequest(WireModel):
    """A waiting user's request for the holder to return a device."""

    requester: str = Field(alias="user")
    requested_at: datetime = Field(alias="time")

    @field_validator("requested_at")
    @classmethod
    def _aware_time(cls, v: datetime) -> datetime:
        return _as_aware(v)

    @property
    def request_id(self) -> str:
        """Identifier used to suppress repeat prompts for the same request."""
        return f"{self.requester}@{self.requested_at.isoformat()}"


class AccessRecord(WireModel):
    """A completed occupancy session."""

    user: str
    department: str = Field(default="", alias="dept")
    started_at: datetime = Field(alias="startTime")
    ended_at: datetime = Field(alias="endTime")

    @field_validator("started_at", "ended_at")
    @classmethod
    def _aware_times(cls, v: datetime) -> datetime:
        return _as_aware(v)


class Device(WireModel):
    """A shared phone and its occupancy snapshot."""

    id: str
    name: str = ""
    address: str = Field(default="", alias="ip")
    status: DeviceStatus = DeviceStatus.AVAILABLE
    holder: Holder | None = None
    requests: list[ReturnRequest] = Field(default_factory=list)
    access_logs: list[AccessRecord] = Field(default_factory=list, alias="accessLogs")

    @model_validator(mode="before")
    @classmethod
    def _fold_holder(cls, data: Any) -> Any:
        """Fold the flat currentUser* wire fields into ``holder``."""
        if not isinstance(data, dict) or "holder" in data:
            return data
        data = dict(data)
        user = data.pop("currentUser", None)
        dept = data.pop("currentUserDept", None)
        since = data.pop("currentStartAt", None)
        if user:
            data["holder"] = {
                "user_name": user,
                "department": dept or "",
                "occupied_since": since,
            }
        return data

    @field_validator("status", mode="before")
    @classmethod
    def _busy_is_occupied(cls, v: Any) -> Any:
        # The launcher's service reports occupied phones as "busy"
        if isinstance(v, str) and v.lower() == "busy":
            return DeviceStatus.OCCUPIED
        return v

    @model_validator(mode="after")
    def _check_occupancy(self) -> Device:
        if self.status == DeviceStatus.OCCUPIED and self.holder is None:
            raise ValueError(f"device {self.id} is occupied but has no holder")
        if self.status == DeviceStatus.AVAILABLE and self.holder is not None:
            raise ValueError(f"device {self.id} is available but has a holder")
        return self

    @property
    def is_occupied(self) -> bool:
        return self.status == DeviceStatus.OCCUPIED

    def held_by(self, identity: str) -> bool:
        return self.holder is not None and self.holder.user_name == identity

    def to_wire(self) -> dict[str, Any]:
        """Dump in the service's wire format."""
        data: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "ip": self.address,
            "status": self.status.value,
            "currentUser": None,
            "currentUserDept": None,
            "currentStartAt": None,
            "requests": [r.model_dump(mode="json", by_alias=True) for r in self.requests],
            "accessLogs": [a.model_dump(mode="json", by_alias=True) for a in self.access_logs],
        }
        if self.holder is not None:
            data["currentUser"] = self.holder.user_name
            data["currentUserDept"] = self.holder.department
            data["currentStartAt"] = self.holder.occupied_since.isoformat()
        return data


# ---------------------------------------------------------------------------
# Status service request / response bodies
# ---------------------------------------------------------------------------


class PhoneListResponse(WireModel):
    """Response from GET /phones."""

    phones: list[Device] = Field(default_factory=list)


class OccupyBody(WireModel):
    phone_id: str = Field(alias="phoneId")
    user_name: str = Field(alias="userName")
    user_dept: str = Field(default="", alias="userDept")


class ReleaseBody(WireModel):
    phone_id: str = Field(alias="phoneId")
    user_name: str | None = Field(default=None, alias="userName")
    user_dept: str | None = Field(default=None, alias="userDept")
    start_time: datetime | None = Field(default=None, alias="startTime")


class RequestBody(WireModel):
    phone_id: str = Field(alias="phoneId")
    user_name: str = Field(alias="userName")


class ForceReleaseBody(WireModel):
    phone_id: str = Field(alias="phoneId")
    admin_hostname: str = Field(alias="adminHostname")


class SuccessResponse(WireModel):
    success: bool
    error: str | None = None


class AdminCheckResponse(WireModel):
    is_admin: bool = Field(alias="isAdmin")


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class PoolError(Exception):
    """Base error for phone pool operations."""

    def __init__(self, message: str, operation: str = "unknown") -> None:
        super().__init__(message)
        self.operation = operation


class ServiceUnavailableError(PoolError):
    """The status service could not be reached or answered garbage."""


class DeviceNotFoundError(PoolError):
    """No device with the given id exists in the pool."""


class AlreadyOccupiedError(PoolError):
    """The device is held by someone else."""

    def __init__(self, message: str, holder: str | None = None, operation: str = "claim") -> None:
        super().__init__(message, operation=operation)
        self.holder = holder


class AlreadyQueuedError(PoolError):
    """The requester already has a pending request for the device."""


class NotAuthorizedError(PoolError):
    """The caller lacks the admin role required for the operation."""


class MirroringError(PoolError):
    """The screen mirroring process could not be started."""
