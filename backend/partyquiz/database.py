from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

import asyncpg
from sqlalchemy.dialects import postgresql
from sqlalchemy.schema import CreateIndex, CreateTable

from .config import settings
from .database_parties import PartyRecord
from .database_parties import (
    delete_all_parties as delete_all_parties_impl,
    delete_party as delete_party_impl,
    fetch_all_parties as fetch_all_parties_impl,
    fetch_party_by_code as fetch_party_by_code_impl,
    fetch_party_by_id as fetch_party_by_id_impl,
    insert_party as insert_party_impl,
    update_party_fields as update_party_fields_impl,
)
from .models import Base
from .redis_cache import delete_party_records as delete_cached_parties
from .redis_cache import get_party_record as get_cached_party
from .redis_cache import set_party_record as set_cached_party
from .runtime_errors import PartyStoreError, StaleWriteError

logger = logging.getLogger(__name__)

_pool: asyncpg.Pool | None = None


def _normalized_database_url() -> str:
    url = settings.database_url.strip()
    if url.startswith("postgresql+asyncpg://"):
        return "postgresql://" + url[len("postgresql+asyncpg://") :]
    return url


async def _get_pool() -> asyncpg.Pool:
    global _pool
    if _pool is None:
        _pool = await asyncpg.create_pool(dsn=_normalized_database_url(), min_size=1, max_size=10)
    return _pool


def schema_statements() -> list[str]:
    dialect = postgresql.dialect()
    statements: list[str] = []
    for table in Base.metadata.sorted_tables:
        statements.append(str(CreateTable(table, if_not_exists=True).compile(dialect=dialect)))
        for index in sorted(table.indexes, key=lambda item: item.name or ""):
            statements.append(str(CreateIndex(index, if_not_exists=True).compile(dialect=dialect)))
    return statements


async def init_db() -> None:
    pool = await _get_pool()
    async with pool.acquire() as conn:
        for statement in schema_statements():
            await conn.execute(statement)


async def close_db() -> None:
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None


async def ping_db() -> bool:
    try:
        pool = await _get_pool()
        async with pool.acquire() as conn:
            await conn.fetchval("SELECT 1")
        return True
    except Exception:  # pragma: no cover
        logger.exception("Database ping failed")
        return False


def _parse_cached_record(cached: dict[str, Any]) -> PartyRecord | None:
    try:
        party_id = int(cached["id"])
        code = str(cached.get("code") or "").upper()[:10]
        players = cached.get("players")
        game = cached.get("game")
        version = int(cached.get("version") or 0)
        updated_raw = cached.get("updatedAt")
        if isinstance(updated_raw, str) and updated_raw.strip():
            updated_at = datetime.fromisoformat(updated_raw.replace("Z", "+00:00"))
            if updated_at.tzinfo is None:
                updated_at = updated_at.replace(tzinfo=timezone.utc)
        else:
            updated_at = datetime.now(timezone.utc)
    except (KeyError, TypeError, ValueError):
        return None

    if not code or not isinstance(players, list) or not isinstance(game, dict):
        return None

    return PartyRecord(
        id=party_id,
        code=code,
        players=players,
        game=game,
        version=version,
        updated_at=updated_at,
    )


async def _cache_record(record: PartyRecord) -> None:
    await set_cached_party(
        party_id=record.id,
        code=record.code,
        players=record.players,
        game=record.game,
        version=record.version,
        updated_at=record.updated_at,
    )


class PostgresPartyStore:
    """Party records in PostgreSQL with a Redis write-through copy.

    Every asyncpg failure surfaces as :class:`PartyStoreError`; Redis failures are
    logged by the cache module and never fail an operation.
    """

    async def get_by_code(self, code: str) -> PartyRecord | None:
        cached = await get_cached_party(code)
        if isinstance(cached, dict):
            cached_record = _parse_cached_record(cached)
            if cached_record is not None and cached_record.code == code:
                return cached_record

        try:
            pool = await _get_pool()
            record = await fetch_party_by_code_impl(pool, code)
        except (asyncpg.PostgresError, OSError) as exc:
            raise PartyStoreError(f"get_by_code {code} failed: {exc!r}") from exc
        if record is not None:
            await _cache_record(record)
        return record

    async def get_by_id(self, party_id: int) -> PartyRecord | None:
        try:
            pool = await _get_pool()
            return await fetch_party_by_id_impl(pool, party_id)
        except (asyncpg.PostgresError, OSError) as exc:
            raise PartyStoreError(f"get_by_id {party_id} failed: {exc!r}") from exc

    async def insert(self, code: str, players: list[Any], game: dict[str, Any]) -> PartyRecord:
        try:
            pool = await _get_pool()
            record = await insert_party_impl(pool, code=code, players=players, game=game)
        except (asyncpg.PostgresError, OSError) as exc:
            raise PartyStoreError(f"insert {code} failed: {exc!r}") from exc
        await _cache_record(record)
        return record

    async def update_fields(
        self,
        code: str,
        *,
        players: list[Any] | None = None,
        game: dict[str, Any] | None = None,
        new_code: str | None = None,
        expected_version: int | None = None,
    ) -> PartyRecord:
        try:
            pool = await _get_pool()
            record = await update_party_fields_impl(
                pool,
                code,
                players=players,
                game=game,
                new_code=new_code,
                expected_version=expected_version,
            )
        except (asyncpg.PostgresError, OSError) as exc:
            await delete_cached_parties(code)
            raise PartyStoreError(f"update_fields {code} failed: {exc!r}") from exc

        if record is None:
            await delete_cached_parties(code)
            if expected_version is not None:
                raise StaleWriteError(code, expected_version)
            raise PartyStoreError(f"update_fields {code} failed: record missing")

        if new_code is not None and new_code != code:
            await delete_cached_parties(code)
        await _cache_record(record)
        return record

    async def delete_by_code(self, code: str) -> bool:
        await delete_cached_parties(code)
        try:
            pool = await _get_pool()
            return await delete_party_impl(pool, code)
        except (asyncpg.PostgresError, OSError) as exc:
            raise PartyStoreError(f"delete_by_code {code} failed: {exc!r}") from exc

    async def list_all(self) -> list[PartyRecord]:
        try:
            pool = await _get_pool()
            return await fetch_all_parties_impl(pool)
        except (asyncpg.PostgresError, OSError) as exc:
            raise PartyStoreError(f"list_all failed: {exc!r}") from exc

    async def delete_all(self) -> int:
        try:
            pool = await _get_pool()
            records = await fetch_all_parties_impl(pool)
            await delete_cached_parties(*(record.code for record in records))
            return await delete_all_parties_impl(pool)
        except (asyncpg.PostgresError, OSError) as exc:
            raise PartyStoreError(f"delete_all failed: {exc!r}") from exc
