from __future__ import annotations

from typing import Any

from .runtime_types import GameSettings, GameState, Party, Player, PlayerAnswer
from .runtime_utils import clamp_num_questions, normalize_categories, normalize_difficulty


def as_optional_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _as_int(value: Any, default: int = 0) -> int:
    parsed = as_optional_int(value)
    return default if parsed is None else parsed


def _as_time_per_question(value: Any) -> float:
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return 30.0
    if seconds <= 0:
        return 30.0
    return int(seconds) if seconds.is_integer() else seconds


def serialize_players(players: list[Player]) -> list[dict[str, Any]]:
    return [
        {"id": player.connection_id, "name": player.name, "score": int(player.score)}
        for player in players
    ]


def serialize_settings(settings: GameSettings) -> dict[str, Any]:
    return {
        "difficulty": settings.difficulty,
        "timePerQuestion": settings.time_per_question,
        "numQuestions": settings.num_questions,
        "categories": list(settings.categories),
    }


def serialize_answer(entry: PlayerAnswer) -> dict[str, Any]:
    return {
        "playerId": entry.player_id,
        "playerName": entry.player_name,
        "questionIndex": entry.question_index,
        "answer": entry.answer,
        "validated": entry.validated,
        "isCorrect": entry.is_correct,
    }


def serialize_game(game: GameState) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "type": game.type,
        "settings": serialize_settings(game.settings),
        "currentQuestion": game.current_question,
        "questions": [dict(question) for question in game.questions],
        "playerAnswers": [serialize_answer(entry) for entry in game.player_answers],
        "currentQuestionAnswersReceived": {
            str(index): count for index, count in game.current_question_answers_received.items()
        },
        "rematchVotes": list(game.rematch_votes),
        "hostDisconnected": game.host_disconnected,
    }
    if game.start_time is not None:
        payload["startTime"] = game.start_time
    if game.host_disconnected_at is not None:
        payload["hostDisconnectedAt"] = game.host_disconnected_at
    return payload


def parse_players(raw: Any) -> list[Player]:
    if not isinstance(raw, list):
        return []

    players: list[Player] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        connection_id = str(item.get("id") or "").strip()
        name = str(item.get("name") or "").strip()
        if not connection_id or not name:
            continue
        players.append(
            Player(
                connection_id=connection_id,
                name=name,
                score=max(0, _as_int(item.get("score"))),
            )
        )
    return players


def parse_settings(raw: Any) -> GameSettings:
    data = raw if isinstance(raw, dict) else {}
    return GameSettings(
        difficulty=normalize_difficulty(data.get("difficulty")),
        time_per_question=_as_time_per_question(data.get("timePerQuestion")),
        num_questions=clamp_num_questions(data.get("numQuestions")),
        categories=normalize_categories(data.get("categories")),
    )


def _parse_answers(raw: Any, question_count: int) -> list[PlayerAnswer]:
    if not isinstance(raw, list):
        return []

    answers: list[PlayerAnswer] = []
    seen: set[tuple[str, int]] = set()
    for item in raw:
        if not isinstance(item, dict):
            continue
        player_id = str(item.get("playerId") or "").strip()
        question_index = as_optional_int(item.get("questionIndex"))
        if not player_id or question_index is None:
            continue
        if question_index < 0 or question_index >= question_count:
            continue
        if (player_id, question_index) in seen:
            continue
        seen.add((player_id, question_index))
        answer = item.get("answer")
        answers.append(
            PlayerAnswer(
                player_id=player_id,
                player_name=str(item.get("playerName") or "Unknown"),
                question_index=question_index,
                answer="" if answer is None else answer,
                validated=bool(item.get("validated")),
                is_correct=bool(item.get("isCorrect")),
            )
        )
    return answers


def parse_game(raw: Any) -> GameState:
    data = raw if isinstance(raw, dict) else {}
    questions_raw = data.get("questions")
    questions = [dict(q) for q in questions_raw if isinstance(q, dict)] if isinstance(questions_raw, list) else []

    received_raw = data.get("currentQuestionAnswersReceived")
    received: dict[int, int] = {}
    if isinstance(received_raw, dict):
        for key, value in received_raw.items():
            index = as_optional_int(key)
            if index is not None:
                received[index] = max(0, _as_int(value))

    votes_raw = data.get("rematchVotes")
    votes = (
        list(dict.fromkeys(str(vote) for vote in votes_raw if vote))
        if isinstance(votes_raw, list)
        else []
    )

    current_question = max(0, _as_int(data.get("currentQuestion")))
    if questions:
        current_question = min(current_question, len(questions))

    host_disconnected = bool(data.get("hostDisconnected"))
    return GameState(
        type=str(data.get("type") or "quiz"),
        settings=parse_settings(data.get("settings")),
        current_question=current_question,
        questions=questions,
        player_answers=_parse_answers(data.get("playerAnswers"), len(questions)),
        current_question_answers_received=received,
        rematch_votes=votes,
        start_time=as_optional_int(data.get("startTime")),
        host_disconnected=host_disconnected,
        host_disconnected_at=as_optional_int(data.get("hostDisconnectedAt")) if host_disconnected else None,
    )


def party_from_record(
    *,
    code: str,
    players: Any,
    game: Any,
    record_id: int | None = None,
    version: int = 0,
) -> Party:
    return Party(
        code=code,
        players=parse_players(players),
        game=parse_game(game),
        id=record_id,
        version=max(0, int(version or 0)),
    )
