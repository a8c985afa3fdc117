from __future__ import annotations

from typing import Any

from .runtime_constants import ANSWER_INDEX_TOLERANCE
from .runtime_types import GameState, Party, Player, PlayerAnswer


def is_question_index_accepted(
    game: GameState,
    question_index: int,
    tolerance: int = ANSWER_INDEX_TOLERANCE,
) -> bool:
    if question_index < 0 or question_index >= len(game.questions):
        return False
    return game.current_question - tolerance <= question_index <= game.current_question


def find_answer(game: GameState, player_id: str, question_index: int) -> PlayerAnswer | None:
    for entry in game.player_answers:
        if entry.player_id == player_id and entry.question_index == question_index:
            return entry
    return None


def upsert_answer(
    game: GameState,
    *,
    player_id: str,
    player_name: str,
    question_index: int,
    answer: Any,
) -> tuple[PlayerAnswer, bool]:
    """Store ``answer`` for ``(player_id, question_index)``; returns ``(entry, created)``.

    A resubmission overwrites the stored answer in place and keeps its verdict fields.
    """
    existing = find_answer(game, player_id, question_index)
    if existing is not None:
        existing.answer = answer
        existing.player_name = player_name
        return existing, False

    entry = PlayerAnswer(
        player_id=player_id,
        player_name=player_name,
        question_index=question_index,
        answer=answer,
    )
    game.player_answers.append(entry)
    return entry, True


def record_submission(game: GameState, question_index: int) -> int:
    count = int(game.current_question_answers_received.get(question_index, 0)) + 1
    game.current_question_answers_received[question_index] = count
    return count


def rebind_player_answers(game: GameState, old_player_id: str, new_player_id: str) -> int:
    migrated = 0
    for entry in game.player_answers:
        if entry.player_id == old_player_id:
            entry.player_id = new_player_id
            migrated += 1
    return migrated


def drop_player_answers(game: GameState, player_id: str) -> int:
    before = len(game.player_answers)
    game.player_answers = [entry for entry in game.player_answers if entry.player_id != player_id]
    return before - len(game.player_answers)


def apply_verdict(entry: PlayerAnswer, player: Player | None, is_correct: bool) -> int:
    """Mark ``entry`` validated and move the player's score by the verdict change.

    Returns the score delta actually applied (``-1``, ``0`` or ``1``).
    """
    previously_correct = bool(entry.is_correct)
    entry.validated = True
    entry.is_correct = bool(is_correct)

    if player is None or previously_correct == entry.is_correct:
        return 0
    if entry.is_correct:
        player.score = max(0, int(player.score or 0)) + 1
        return 1
    before = max(0, int(player.score or 0))
    player.score = max(0, before - 1)
    return player.score - before


def expected_answer_count(party: Party) -> int:
    return len(party.players) * len(party.game.questions)


def is_fully_validated(party: Party) -> bool:
    answers = party.game.player_answers
    if not party.game.questions:
        return False
    return all(entry.validated for entry in answers) and len(answers) == expected_answer_count(party)


def answers_per_question(game: GameState) -> dict[int, int]:
    breakdown: dict[int, int] = {}
    for entry in game.player_answers:
        breakdown[entry.question_index] = breakdown.get(entry.question_index, 0) + 1
    return breakdown
