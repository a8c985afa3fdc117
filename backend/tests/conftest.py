"""
Shared fixtures: an in-memory party store, mock WebSockets and a runtime wired to both
with short timer values.
"""
from __future__ import annotations

import asyncio
import copy
import random
from typing import Any

import pytest
import pytest_asyncio

from partyquiz.database_parties import PartyRecord
from partyquiz.runtime import PartyRuntime
from partyquiz.runtime_errors import PartyStoreError, StaleWriteError
from partyquiz.runtime_types import GameSettings, GameState, Party, Player


# ---------------------------------------------------------------------------
# In-memory record store
# ---------------------------------------------------------------------------

class MemoryPartyStore:
    def __init__(self) -> None:
        self.records: dict[str, PartyRecord] = {}
        self._next_id = 1
        self.fail_reads = False
        self.fail_writes = False
        self.calls: list[str] = []

    def _check_write(self) -> None:
        if self.fail_writes:
            raise PartyStoreError("store offline")

    async def get_by_code(self, code: str) -> PartyRecord | None:
        self.calls.append("get_by_code")
        if self.fail_reads:
            raise PartyStoreError("store offline")
        record = self.records.get(code)
        return copy.deepcopy(record)

    async def get_by_id(self, party_id: int) -> PartyRecord | None:
        for record in self.records.values():
            if record.id == party_id:
                return copy.deepcopy(record)
        return None

    async def insert(self, code: str, players: list[Any], game: dict[str, Any]) -> PartyRecord:
        self.calls.append("insert")
        self._check_write()
        if code in self.records:
            raise PartyStoreError(f"duplicate code {code}")
        record = PartyRecord(
            id=self._next_id,
            code=code,
            players=copy.deepcopy(players),
            game=copy.deepcopy(game),
            version=1,
        )
        self._next_id += 1
        self.records[code] = record
        return copy.deepcopy(record)

    async def update_fields(
        self,
        code: str,
        *,
        players: list[Any] | None = None,
        game: dict[str, Any] | None = None,
        new_code: str | None = None,
        expected_version: int | None = None,
    ) -> PartyRecord:
        self.calls.append("update_fields")
        self._check_write()
        record = self.records.get(code)
        if record is None or (expected_version is not None and record.version != expected_version):
            if expected_version is not None:
                raise StaleWriteError(code, expected_version)
            raise PartyStoreError(f"missing {code}")
        if players is not None:
            record.players = copy.deepcopy(players)
        if game is not None:
            record.game = copy.deepcopy(game)
        if new_code is not None and new_code != code:
            del self.records[code]
            record.code = new_code
            self.records[new_code] = record
        record.version += 1
        return copy.deepcopy(record)

    async def delete_by_code(self, code: str) -> bool:
        self.calls.append("delete_by_code")
        self._check_write()
        return self.records.pop(code, None) is not None

    async def list_all(self) -> list[PartyRecord]:
        return [copy.deepcopy(record) for record in self.records.values()]

    async def delete_all(self) -> int:
        self._check_write()
        count = len(self.records)
        self.records.clear()
        return count


# ---------------------------------------------------------------------------
# Mock WebSocket
# ---------------------------------------------------------------------------

class MockWebSocket:
    """Lightweight mock for fastapi.WebSocket."""

    def __init__(self) -> None:
        self.sent_messages: list[dict] = []
        self.closed = False
        self.close_code: int | None = None

    async def send_json(self, data: dict) -> None:
        if self.closed:
            raise RuntimeError("socket closed")
        self.sent_messages.append(data)

    async def close(self, code: int = 1000) -> None:
        self.closed = True
        self.close_code = code

    async def accept(self) -> None:
        pass

    def last(self, msg_type: str) -> dict | None:
        for msg in reversed(self.sent_messages):
            if msg.get("type") == msg_type:
                return msg
        return None

    def all(self, msg_type: str) -> list[dict]:
        return [m for m in self.sent_messages if m.get("type") == msg_type]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def make_bank() -> list[dict[str, Any]]:
    bank: list[dict[str, Any]] = []
    for category in ("Geography", "Science"):
        for difficulty in ("easy", "medium", "hard"):
            for i in range(3):
                bank.append(
                    {
                        "category": category,
                        "difficulty": difficulty,
                        "type": "text",
                        "question": f"{category} {difficulty} #{i}?",
                        "answer": f"{category}-{difficulty}-{i}",
                        "answerFr": f"{category}-{difficulty}-{i}-fr",
                    }
                )
    return bank


def make_party(
    *names: str,
    questions: int = 0,
    current_question: int = 0,
    difficulty: str = "easy",
) -> Party:
    players = [Player(connection_id=f"c-{name}", name=name) for name in names]
    bank = [q for q in make_bank() if q["category"] == "Geography"]
    game = GameState(
        type="quiz",
        settings=GameSettings(
            difficulty=difficulty,  # type: ignore[arg-type]
            time_per_question=10,
            num_questions=max(1, questions),
            categories=["Geography"],
        ),
        current_question=current_question,
        questions=copy.deepcopy(bank[:questions]),
    )
    return Party(code="ABC123", players=players, game=game, id=1, version=1)


def connect(runtime: PartyRuntime, connection_id: str) -> MockWebSocket:
    ws = MockWebSocket()
    runtime.connections.register(connection_id, ws)
    return ws


async def settle(seconds: float) -> None:
    await asyncio.sleep(seconds)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def store() -> MemoryPartyStore:
    return MemoryPartyStore()


@pytest_asyncio.fixture
async def runtime(store: MemoryPartyStore):
    party_runtime = PartyRuntime(
        store,
        bank=make_bank(),
        rng=random.Random(7),
        host_grace_ms=200,
        close_delay_ms=100,
        rematch_delay_ms=60,
        cleanup_on_startup=True,
    )
    yield party_runtime
    await party_runtime.shutdown()
