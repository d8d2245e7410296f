"""Hand-off protocol: request → acknowledge / timeout → release.

``step`` is the single transition function. It takes the current client
session and one event and returns the next session plus a list of effects
for the caller to carry out. It performs no I/O of its own.

    Idle ──snapshot with unacknowledged request──▶ AwaitingAck(60)
    AwaitingAck ──tick──▶ AwaitingAck(n-1)
    AwaitingAck ──tick at 1──▶ Idle  + ReleaseDevice + auto-returned notice
    AwaitingAck ──acknowledge──▶ Idle  (request suppressed for the session)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Union

from phonepool.config import HANDOFF_SECONDS, REQUEST_EXPIRY
from phonepool.models import Device
from phonepool.session import IDLE, AwaitingAck, ClientSession
from phonepool.waitlist import active_requests

logger = logging.getLogger("phonepool.handoff")


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SnapshotObserved:
    """A fresh, authoritative snapshot arrived from the status service."""

    devices: list[Device]


@dataclass(frozen=True)
class CountdownTick:
    """One second of the acknowledgment window elapsed."""


@dataclass(frozen=True)
class Acknowledge:
    """The holder chose to keep using the device."""


Event = Union[SnapshotObserved, CountdownTick, Acknowledge]


# ---------------------------------------------------------------------------
# Effects
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PromptReturn:
    device_id: str
    requester: str
    remaining: int


@dataclass(frozen=True)
class CountdownUpdated:
    device_id: str
    remaining: int


@dataclass(frozen=True)
class DismissPrompt:
    device_id: str


@dataclass(frozen=True)
class ReleaseDevice:
    """Return the device on behalf of ``holder``, if they still hold it."""

    device_id: str
    reason: str
    holder: str


@dataclass(frozen=True)
class StopMirroring:
    """The service no longer shows the local user holding this device."""

    device_id: str


@dataclass(frozen=True)
class Notify:
    kind: str  # "auto_returned", "remote_release", "connectivity", "error"
    message: str
    device_id: str | None = None


Effect = Union[PromptReturn, CountdownUpdated, DismissPrompt, ReleaseDevice, StopMirroring, Notify]


# ---------------------------------------------------------------------------
# Transition function
# ---------------------------------------------------------------------------


def step(
    session: ClientSession,
    event: Event,
    now: datetime,
    handoff_seconds: int = HANDOFF_SECONDS,
    expiry: timedelta = REQUEST_EXPIRY,
) -> tuple[ClientSession, list[Effect]]:
    """Advance the hand-off state machine by one event."""
    if isinstance(event, SnapshotObserved):
        return _on_snapshot(session, event.devices, now, handoff_seconds, expiry)
    if isinstance(event, CountdownTick):
        return _on_tick(session)
    if isinstance(event, Acknowledge):
        return _on_acknowledge(session)
    raise TypeError(f"Unknown hand-off event: {event!r}")


def _on_snapshot(
    session: ClientSession,
    devices: list[Device],
    now: datetime,
    handoff_seconds: int,
    expiry: timedelta,
) -> tuple[ClientSession, list[Effect]]:
    identity = session.local_identity
    held_now = frozenset(d.id for d in devices if d.held_by(identity))
    effects: list[Effect] = [StopMirroring(device_id) for device_id in sorted(session.held - held_now)]
    session = replace(session, held=held_now)

    handoff = session.handoff
    if isinstance(handoff, AwaitingAck):
        if handoff.device_id not in held_now:
            # Nothing left to hand off
            logger.info(
                "Hand-off for %s abandoned: %s no longer holds it", handoff.device_id, identity,
            )
            effects.append(DismissPrompt(handoff.device_id))
            return replace(session, handoff=IDLE), effects
        return session, effects

    for device in devices:
        if device.id not in held_now:
            continue
        for request in active_requests(device, now, viewer=identity, expiry=expiry):
            if request.request_id in session.acknowledged:
                continue
            logger.info(
                "Return of %s requested by %s, awaiting acknowledgment (%ds)",
                device.id, request.requester, handoff_seconds,
            )
            awaiting = AwaitingAck(
                device_id=device.id,
                request=request,
                remaining=handoff_seconds,
                deadline=now + timedelta(seconds=handoff_seconds),
            )
            effects.append(PromptReturn(device.id, request.requester, handoff_seconds))
            return replace(session, handoff=awaiting), effects
    return session, effects


def _on_tick(session: ClientSession) -> tuple[ClientSession, list[Effect]]:
    handoff = session.handoff
    if not isinstance(handoff, AwaitingAck):
        return session, []

    remaining = handoff.remaining - 1
    if remaining > 0:
        return (
            replace(session, handoff=replace(handoff, remaining=remaining)),
            [CountdownUpdated(handoff.device_id, remaining)],
        )

    logger.info(
        "Hand-off for %s timed out, returning it for %s",
        handoff.device_id, handoff.request.requester,
    )
    session = replace(
        session,
        handoff=IDLE,
        acknowledged=session.acknowledged | {handoff.request.request_id},
    )
    return session, [
        DismissPrompt(handoff.device_id),
        ReleaseDevice(
            handoff.device_id, reason="handoff-timeout", holder=session.local_identity,
        ),
        Notify(
            kind="auto_returned",
            message=f"No response in time: {handoff.device_id} was returned automatically",
            device_id=handoff.device_id,
        ),
    ]


def _on_acknowledge(session: ClientSession) -> tuple[ClientSession, list[Effect]]:
    handoff = session.handoff
    if not isinstance(handoff, AwaitingAck):
        return session, []

    logger.info(
        "Return request from %s for %s acknowledged, keeping device",
        handoff.request.requester, handoff.device_id,
    )
    session = replace(
        session,
        handoff=IDLE,
        acknowledged=session.acknowledged | {handoff.request.request_id},
    )
    return session, [DismissPrompt(handoff.device_id)]
