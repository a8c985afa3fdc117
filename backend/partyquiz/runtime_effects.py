from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union

from .runtime_types import TimerKey


@dataclass(frozen=True)
class PersistParty:
    """Write the draft party; ``create`` inserts, ``rename_from`` also moves the record's code."""

    create: bool = False
    rename_from: str | None = None


@dataclass(frozen=True)
class CloseParty:
    reason: str | None = None


@dataclass(frozen=True)
class Broadcast:
    event: str
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class BroadcastState:
    pass


@dataclass(frozen=True)
class SendTo:
    connection_id: str
    event: str
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SendState:
    connection_id: str


@dataclass(frozen=True)
class JoinRoom:
    connection_id: str


@dataclass(frozen=True)
class LeaveRoom:
    connection_id: str


@dataclass(frozen=True)
class MoveRoom:
    old_code: str
    new_code: str


@dataclass(frozen=True)
class ForceDisconnect:
    connection_id: str


@dataclass(frozen=True)
class ScheduleTimer:
    key: TimerKey
    delay_ms: int


@dataclass(frozen=True)
class CancelTimer:
    key: TimerKey


Effect = Union[
    PersistParty,
    CloseParty,
    Broadcast,
    BroadcastState,
    SendTo,
    SendState,
    JoinRoom,
    LeaveRoom,
    MoveRoom,
    ForceDisconnect,
    ScheduleTimer,
    CancelTimer,
]


def is_store_effect(effect: Effect) -> bool:
    return isinstance(effect, (PersistParty, CloseParty))
