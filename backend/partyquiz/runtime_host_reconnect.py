from __future__ import annotations

import logging

from .runtime_constants import HOST_DISCONNECTED_MESSAGE, HOST_GONE_REASON
from .runtime_effects import (
    Broadcast,
    BroadcastState,
    CancelTimer,
    CloseParty,
    Effect,
    PersistParty,
    ScheduleTimer,
)
from .runtime_types import Party, Player

logger = logging.getLogger(__name__)


def mark_host_disconnected(party: Party, *, now: int, grace_ms: int) -> list[Effect]:
    party.game.host_disconnected = True
    party.game.host_disconnected_at = now
    host = party.host
    logger.warning(
        "[HOST_GRACE] party=%s host=%s timeout_ms=%s",
        party.code,
        host.name if host else "-",
        grace_ms,
    )
    return [
        PersistParty(),
        BroadcastState(),
        Broadcast(
            "host_disconnected",
            {
                "message": HOST_DISCONNECTED_MESSAGE,
                "timeoutMs": grace_ms,
                "hostDisconnectedAt": now,
            },
        ),
        ScheduleTimer("hostGrace", grace_ms),
    ]


def restore_host(party: Party) -> list[Effect]:
    if not party.game.host_disconnected:
        return []
    party.game.host_disconnected = False
    party.game.host_disconnected_at = None
    logger.info("[HOST_RESUMED] party=%s host=%s", party.code, party.host.name if party.host else "-")
    return [CancelTimer("hostGrace")]


def promote_next_host(party: Party) -> Player | None:
    if len(party.players) < 2:
        return None
    new_host = party.players.pop(1)
    party.players.insert(0, new_host)
    return new_host


def expire_host_grace(party: Party) -> list[Effect]:
    if not party.game.host_disconnected:
        return []

    previous_host = party.host
    new_host = promote_next_host(party)
    if new_host is None:
        logger.warning("[HOST_GONE] party=%s closing, no players left", party.code)
        return [CloseParty(HOST_GONE_REASON)]

    party.game.host_disconnected = False
    party.game.host_disconnected_at = None
    logger.warning(
        "[HOST_PROMOTED] party=%s old_host=%s new_host=%s",
        party.code,
        previous_host.name if previous_host else "-",
        new_host.name,
    )
    return [
        PersistParty(),
        Broadcast(
            "host_promoted",
            {"newHostId": new_host.connection_id, "newHostName": new_host.name},
        ),
        BroadcastState(),
    ]
