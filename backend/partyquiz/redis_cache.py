from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

from redis.asyncio import Redis
from redis.asyncio import from_url as redis_from_url

from .config import settings

logger = logging.getLogger(__name__)

_redis: Redis | None = None


def is_redis_configured() -> bool:
    return bool(settings.redis_url)


def _normalize_code(code: str) -> str:
    return code.strip().upper()[:10]


def _party_key(code: str) -> str:
    return f"pq:party:{_normalize_code(code)}"


def _party_ttl_seconds() -> int:
    return max(60, int(settings.redis_party_ttl_seconds))


def _normalize_iso(dt: datetime | None) -> str:
    if dt is None:
        return datetime.now(timezone.utc).isoformat()
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


async def init_redis() -> bool:
    global _redis
    if _redis is not None:
        return True

    if not settings.redis_url:
        logger.info("Redis URL is not configured, cache disabled")
        return False

    client = redis_from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
    )
    try:
        await client.ping()
    except Exception:
        logger.exception("Failed to connect to Redis %s", settings.redis_url)
        await client.aclose()
        return False

    _redis = client
    logger.info("Redis cache connected")
    return True


async def close_redis() -> None:
    global _redis
    if _redis is None:
        return
    try:
        await _redis.aclose()
    finally:
        _redis = None


async def ping_redis() -> bool:
    if _redis is None:
        return False
    try:
        await _redis.ping()
        return True
    except Exception:
        logger.exception("Redis ping failed")
        return False


async def get_party_record(code: str) -> dict[str, Any] | None:
    """Cached copy of a party row, or None on a miss or any Redis problem."""
    if _redis is None:
        return None
    key = _party_key(code)
    try:
        raw = await _redis.get(key)
    except Exception:
        logger.exception("Redis read failed for party %s", code)
        return None
    if not raw:
        return None
    try:
        payload = json.loads(raw)
    except ValueError:
        logger.warning("Dropping unreadable cache entry %s", key)
        await delete_party_records(code)
        return None
    return payload if isinstance(payload, dict) else None


async def set_party_record(
    *,
    party_id: int,
    code: str,
    players: list[Any],
    game: dict[str, Any],
    version: int,
    updated_at: datetime | None,
) -> None:
    if _redis is None:
        return
    payload = {
        "id": int(party_id),
        "code": _normalize_code(code),
        "players": players if isinstance(players, list) else [],
        "game": game if isinstance(game, dict) else {},
        "version": int(version),
        "updatedAt": _normalize_iso(updated_at),
    }
    try:
        await _redis.set(
            _party_key(code),
            json.dumps(payload, ensure_ascii=False),
            ex=_party_ttl_seconds(),
        )
    except Exception:
        logger.exception("Redis write failed for party %s (version %s)", code, version)


async def delete_party_records(*codes: str) -> None:
    if _redis is None or not codes:
        return
    keys = [_party_key(code) for code in codes]
    try:
        await _redis.delete(*keys)
    except Exception:
        logger.exception("Redis eviction failed for parties %s", ", ".join(codes))
