from __future__ import annotations

from typing import Any

from fastapi import APIRouter

from partyquiz.database import ping_db
from partyquiz.redis_cache import is_redis_configured, ping_redis
from partyquiz.runtime import runtime

router = APIRouter(tags=["system"])

_HEALTH_COUNTERS = ("activeConnections", "peakConnections", "storeFailures", "sendFailures")


async def _redis_status() -> str:
    if not is_redis_configured():
        return "disabled"
    return "up" if await ping_redis() else "down"


@router.get("/api/health")
async def health() -> dict[str, Any]:
    db_ok = await ping_db()
    counters = (await runtime.get_ws_stats())["stats"]
    return {
        "ok": db_ok,
        "database": "up" if db_ok else "down",
        "redis": await _redis_status(),
        "activeParties": runtime.active_parties_count,
        "websocket": {key: int(counters.get(key, 0)) for key in _HEALTH_COUNTERS},
    }


@router.get("/api/ws-stats")
async def websocket_stats() -> dict[str, Any]:
    return await runtime.get_ws_stats()
