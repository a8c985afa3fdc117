from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import asyncpg

_PARTY_COLUMNS = "id, code, players, game, version, created_at, updated_at"


@dataclass
class PartyRecord:
    id: int
    code: str
    players: list[Any]
    game: dict[str, Any]
    version: int
    created_at: datetime | None = None
    updated_at: datetime | None = None


def _load_json(raw: Any, fallback: Any) -> Any:
    if raw is None:
        return fallback
    if isinstance(raw, (dict, list)):
        return raw
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        return fallback
    return value if isinstance(value, type(fallback)) else fallback


def _record_from_row(row: asyncpg.Record) -> PartyRecord:
    return PartyRecord(
        id=int(row["id"]),
        code=str(row["code"]),
        players=_load_json(row["players"], []),
        game=_load_json(row["game"], {}),
        version=int(row["version"] or 0),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


async def fetch_party_by_code(pool: asyncpg.Pool, code: str) -> PartyRecord | None:
    async with pool.acquire() as conn:
        row = await conn.fetchrow(
            f"SELECT {_PARTY_COLUMNS} FROM parties WHERE code = $1",
            code,
        )
    return _record_from_row(row) if row is not None else None


async def fetch_party_by_id(pool: asyncpg.Pool, party_id: int) -> PartyRecord | None:
    async with pool.acquire() as conn:
        row = await conn.fetchrow(
            f"SELECT {_PARTY_COLUMNS} FROM parties WHERE id = $1",
            int(party_id),
        )
    return _record_from_row(row) if row is not None else None


async def fetch_all_parties(pool: asyncpg.Pool) -> list[PartyRecord]:
    async with pool.acquire() as conn:
        rows = await conn.fetch(f"SELECT {_PARTY_COLUMNS} FROM parties ORDER BY id")
    return [_record_from_row(row) for row in rows]


async def insert_party(
    pool: asyncpg.Pool,
    *,
    code: str,
    players: list[Any],
    game: dict[str, Any],
) -> PartyRecord:
    async with pool.acquire() as conn:
        row = await conn.fetchrow(
            f"""
            INSERT INTO parties (code, players, game, version)
            VALUES ($1, $2, $3, 1)
            RETURNING {_PARTY_COLUMNS}
            """,
            code,
            json.dumps(players, ensure_ascii=False),
            json.dumps(game, ensure_ascii=False),
        )
    return _record_from_row(row)


async def update_party_fields(
    pool: asyncpg.Pool,
    code: str,
    *,
    players: list[Any] | None = None,
    game: dict[str, Any] | None = None,
    new_code: str | None = None,
    expected_version: int | None = None,
) -> PartyRecord | None:
    assignments = ["version = version + 1", "updated_at = NOW()"]
    params: list[Any] = [code]
    if players is not None:
        params.append(json.dumps(players, ensure_ascii=False))
        assignments.append(f"players = ${len(params)}")
    if game is not None:
        params.append(json.dumps(game, ensure_ascii=False))
        assignments.append(f"game = ${len(params)}")
    if new_code is not None:
        params.append(new_code)
        assignments.append(f"code = ${len(params)}")

    condition = "code = $1"
    if expected_version is not None:
        params.append(int(expected_version))
        condition += f" AND version = ${len(params)}"

    async with pool.acquire() as conn:
        row = await conn.fetchrow(
            f"""
            UPDATE parties
            SET {", ".join(assignments)}
            WHERE {condition}
            RETURNING {_PARTY_COLUMNS}
            """,
            *params,
        )
    return _record_from_row(row) if row is not None else None


async def delete_party(pool: asyncpg.Pool, code: str) -> bool:
    async with pool.acquire() as conn:
        result = await conn.execute("DELETE FROM parties WHERE code = $1", code)
    return result.endswith(" 1")


async def delete_all_parties(pool: asyncpg.Pool) -> int:
    async with pool.acquire() as conn:
        result = await conn.execute("DELETE FROM parties")
    try:
        return int(result.rsplit(" ", 1)[-1])
    except ValueError:
        return 0
