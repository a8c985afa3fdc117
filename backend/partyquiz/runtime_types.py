from __future__ import annotations

import asyncio
import copy
from dataclasses import dataclass, field
from typing import Any, Literal

Difficulty = Literal["easy", "medium", "hard"]
PartyPhase = Literal["lobby", "playing", "validating", "finished", "closed"]
TimerKey = Literal["question", "hostGrace", "close", "rematch"]


@dataclass
class Player:
    connection_id: str
    name: str
    score: int = 0


@dataclass
class GameSettings:
    difficulty: Difficulty
    time_per_question: float
    num_questions: int
    categories: list[str] = field(default_factory=list)


@dataclass
class PlayerAnswer:
    player_id: str
    player_name: str
    question_index: int
    answer: Any = ""
    validated: bool = False
    is_correct: bool = False


@dataclass
class GameState:
    type: str
    settings: GameSettings
    current_question: int = 0
    questions: list[dict[str, Any]] = field(default_factory=list)
    player_answers: list[PlayerAnswer] = field(default_factory=list)
    current_question_answers_received: dict[int, int] = field(default_factory=dict)
    rematch_votes: list[str] = field(default_factory=list)
    start_time: int | None = None
    host_disconnected: bool = False
    host_disconnected_at: int | None = None


@dataclass
class Party:
    code: str
    players: list[Player]
    game: GameState
    id: int | None = None
    version: int = 0

    @property
    def host(self) -> Player | None:
        return self.players[0] if self.players else None

    def find_player(self, connection_id: str) -> Player | None:
        for player in self.players:
            if player.connection_id == connection_id:
                return player
        return None

    def player_index(self, connection_id: str) -> int:
        for index, player in enumerate(self.players):
            if player.connection_id == connection_id:
                return index
        return -1

    def clone(self) -> "Party":
        return copy.deepcopy(self)


@dataclass
class PartySession:
    party: Party
    timers: dict[str, asyncio.Task[None] | None] = field(default_factory=dict)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    closed: bool = False

    @property
    def code(self) -> str:
        return self.party.code
