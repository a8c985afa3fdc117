from __future__ import annotations

import logging
from typing import Any

from fastapi import WebSocket

logger = logging.getLogger(__name__)

KICKED_CLOSE_CODE = 4000


class ConnectionRegistry:
    """Live sockets by connection id, grouped into one room per party code."""

    def __init__(self) -> None:
        self.connections: dict[str, WebSocket] = {}
        self.rooms: dict[str, set[str]] = {}
        self.memberships: dict[str, set[str]] = {}
        self.send_failures = 0

    def register(self, connection_id: str, websocket: WebSocket) -> None:
        self.connections[connection_id] = websocket
        self.memberships.setdefault(connection_id, set())

    def unregister(self, connection_id: str) -> set[str]:
        self.connections.pop(connection_id, None)
        codes = self.memberships.pop(connection_id, set())
        for code in codes:
            members = self.rooms.get(code)
            if members is None:
                continue
            members.discard(connection_id)
            if not members:
                self.rooms.pop(code, None)
        return codes

    def is_connected(self, connection_id: str) -> bool:
        return connection_id in self.connections

    def join_room(self, connection_id: str, code: str) -> None:
        self.rooms.setdefault(code, set()).add(connection_id)
        self.memberships.setdefault(connection_id, set()).add(code)

    def leave_room(self, connection_id: str, code: str) -> None:
        members = self.rooms.get(code)
        if members is not None:
            members.discard(connection_id)
            if not members:
                self.rooms.pop(code, None)
        codes = self.memberships.get(connection_id)
        if codes is not None:
            codes.discard(code)

    def room_members(self, code: str) -> list[str]:
        return sorted(self.rooms.get(code, ()))

    def rooms_for(self, connection_id: str) -> set[str]:
        return set(self.memberships.get(connection_id, ()))

    def move_room(self, old_code: str, new_code: str) -> int:
        members = self.rooms.pop(old_code, set())
        if not members:
            return 0
        self.rooms.setdefault(new_code, set()).update(members)
        for connection_id in members:
            codes = self.memberships.setdefault(connection_id, set())
            codes.discard(old_code)
            codes.add(new_code)
        return len(members)

    def clear_room(self, code: str) -> None:
        for connection_id in self.rooms.pop(code, set()):
            codes = self.memberships.get(connection_id)
            if codes is not None:
                codes.discard(code)

    async def _send_safe(self, connection_id: str, data: dict[str, Any]) -> bool:
        websocket = self.connections.get(connection_id)
        if websocket is None:
            return False
        try:
            await websocket.send_json(data)
            return True
        except Exception as exc:
            # Socket may already be closed.
            self.send_failures += 1
            logger.debug(
                "[SEND_FAIL] connection=%s type=%s reason=%s",
                connection_id,
                data.get("type"),
                repr(exc),
            )
            return False

    async def send_to(self, connection_id: str, event: str, payload: dict[str, Any] | None = None) -> bool:
        return await self._send_safe(connection_id, {"type": event, **(payload or {})})

    async def broadcast(self, code: str, event: str, payload: dict[str, Any] | None = None) -> int:
        message = {"type": event, **(payload or {})}
        delivered = 0
        for connection_id in self.room_members(code):
            if await self._send_safe(connection_id, message):
                delivered += 1
        return delivered

    async def force_disconnect(self, connection_id: str) -> None:
        websocket = self.connections.get(connection_id)
        if websocket is None:
            return
        try:
            await websocket.close(code=KICKED_CLOSE_CODE)
        except Exception as exc:
            logger.debug("[CLOSE_FAIL] connection=%s reason=%s", connection_id, repr(exc))
