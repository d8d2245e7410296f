"""Per-client session state.

One value per running client, replaced (never mutated) on every
transition. The hand-off state is a tagged variant: a countdown cannot
exist without the request it is counting down for.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Union

from phonepool.models import ReturnRequest


@dataclass(frozen=True)
class Idle:
    """No hand-off in progress."""


@dataclass(frozen=True)
class AwaitingAck:
    """The holder has been asked to return a device and has not answered."""

    device_id: str
    request: ReturnRequest
    remaining: int
    deadline: datetime


HandoffState = Union[Idle, AwaitingAck]

IDLE = Idle()


@dataclass(frozen=True)
class ClientSession:
    local_identity: str
    acknowledged: frozenset[str] = field(default_factory=frozenset)
    handoff: HandoffState = IDLE
    # Devices the local identity held in the last authoritative snapshot
    held: frozenset[str] = field(default_factory=frozenset)

    @property
    def awaiting_ack(self) -> bool:
        return isinstance(self.handoff, AwaitingAck)
