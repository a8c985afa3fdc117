from __future__ import annotations

from typing import Any

from .runtime_constants import ANSWER_FIELDS
from .runtime_ledger import is_fully_validated
from .runtime_snapshot import serialize_game, serialize_players
from .runtime_types import GameState, Party, PartyPhase


def party_phase(party: Party, *, closed: bool = False) -> PartyPhase:
    if closed:
        return "closed"
    game = party.game
    if not game.questions:
        return "lobby"
    if game.current_question < len(game.questions):
        return "playing"
    if is_fully_validated(party):
        return "finished"
    return "validating"


def should_reveal_answers(game: GameState) -> bool:
    # Lobby has no questions, so nothing is revealed before the first run ends.
    return bool(game.questions) and game.current_question >= len(game.questions)


def redact_question(question: dict[str, Any] | None) -> dict[str, Any] | None:
    if question is None:
        return None
    return {key: value for key, value in question.items() if key not in ANSWER_FIELDS}


def build_party_snapshot(party: Party, *, closed: bool = False) -> dict[str, Any]:
    """Client-facing view of a party, identical for every room member."""
    game_payload = serialize_game(party.game)
    include_answers = should_reveal_answers(party.game)
    if not include_answers:
        game_payload["questions"] = [redact_question(q) for q in game_payload["questions"]]

    return {
        "code": party.code,
        "phase": party_phase(party, closed=closed),
        "players": serialize_players(party.players),
        "game": game_payload,
        "answersRevealed": include_answers,
        "version": party.version,
    }


def build_question_payload(party: Party) -> dict[str, Any]:
    game = party.game
    index = game.current_question
    question = game.questions[index] if 0 <= index < len(game.questions) else None
    return {
        "question": redact_question(question),
        "questionIndex": index,
        "timePerQuestion": game.settings.time_per_question,
        "startTime": game.start_time,
    }
