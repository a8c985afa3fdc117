from __future__ import annotations

import logging
import random
from typing import Any, Iterable

from .runtime_constants import (
    ANSWER_INDEX_TOLERANCE,
    FINAL_RESULTS_CLOSE_DELAY_MS,
    HOST_GRACE_MS,
    HOST_LEFT_REASON,
    KICKED_REASON,
    MAX_PLAYERS,
    REMATCH_TRIGGER_DELAY_MS,
)
from .runtime_effects import (
    Broadcast,
    BroadcastState,
    CancelTimer,
    CloseParty,
    Effect,
    ForceDisconnect,
    JoinRoom,
    LeaveRoom,
    MoveRoom,
    PersistParty,
    ScheduleTimer,
    SendState,
    SendTo,
)
from .runtime_errors import PartyActionRejected
from .runtime_host_reconnect import mark_host_disconnected, restore_host
from .runtime_ledger import (
    answers_per_question,
    apply_verdict,
    drop_player_answers,
    expected_answer_count,
    find_answer,
    is_fully_validated,
    is_question_index_accepted,
    rebind_player_answers,
    record_submission,
    upsert_answer,
)
from .runtime_questions import select_questions
from .runtime_types import GameSettings, GameState, Party, Player
from .runtime_visibility import build_question_payload, party_phase

logger = logging.getLogger(__name__)


def _question_delay_ms(game: GameState) -> int:
    return int(game.settings.time_per_question * 1000)


def _play_is_over(game: GameState) -> bool:
    return bool(game.questions) and game.current_question >= len(game.questions)


def ensure_host(party: Party, connection_id: str) -> Player:
    host = party.host
    if host is None or host.connection_id != connection_id:
        raise PartyActionRejected("not_host")
    return host


def ensure_member(party: Party, connection_id: str) -> Player:
    player = party.find_player(connection_id)
    if player is None:
        raise PartyActionRejected("not_member")
    return player


def _rematch_threshold_met(party: Party) -> bool:
    votes = party.game.rematch_votes
    return bool(votes) and len(votes) >= len(party.players)


def _final_results(party: Party, close_delay_ms: int) -> list[Effect]:
    final_scores = [{"name": player.name, "score": player.score} for player in party.players]
    logger.info("All answers validated for party %s, closing in %sms", party.code, close_delay_ms)
    return [
        Broadcast("final_game_over", {"finalScores": final_scores}),
        ScheduleTimer("close", close_delay_ms),
    ]


def _rematch_starting(party: Party, trigger_delay_ms: int) -> list[Effect]:
    logger.info("All %s players voted for a rematch in party %s", len(party.players), party.code)
    return [Broadcast("rematch_starting"), ScheduleTimer("rematch", trigger_delay_ms)]


def _remove_player(
    party: Party,
    index: int,
    *,
    close_delay_ms: int,
    trigger_delay_ms: int,
) -> list[Effect]:
    """Drop ``players[index]`` together with their answers and rematch vote.

    Returns the follow-up effects when the removal completes validation or the rematch vote.
    """
    was_validated = is_fully_validated(party)
    was_rematch_ready = _rematch_threshold_met(party)

    removed = party.players.pop(index)
    dropped = drop_player_answers(party.game, removed.connection_id)
    if removed.connection_id in party.game.rematch_votes:
        party.game.rematch_votes.remove(removed.connection_id)
    logger.info(
        "Player %s removed from party %s (dropped %s answers)",
        removed.name,
        party.code,
        dropped,
    )

    if not _play_is_over(party.game) or was_validated:
        return []
    if is_fully_validated(party):
        return _final_results(party, close_delay_ms)
    if not was_rematch_ready and _rematch_threshold_met(party):
        return _rematch_starting(party, trigger_delay_ms)
    return []


def new_party(
    code: str,
    connection_id: str,
    *,
    player_name: str,
    game_type: str,
    settings: GameSettings,
) -> tuple[Party, list[Effect]]:
    party = Party(
        code=code,
        players=[Player(connection_id=connection_id, name=player_name, score=0)],
        game=GameState(type=game_type, settings=settings),
    )
    return party, [PersistParty(create=True), JoinRoom(connection_id), BroadcastState()]


def request_state(party: Party, connection_id: str) -> list[Effect]:
    return [JoinRoom(connection_id), SendState(connection_id)]


def join_party(
    party: Party,
    connection_id: str,
    player_name: str,
    *,
    max_players: int = MAX_PLAYERS,
) -> list[Effect]:
    effects: list[Effect] = []
    existing_index = next(
        (index for index, player in enumerate(party.players) if player.name == player_name),
        -1,
    )

    if existing_index != -1:
        player = party.players[existing_index]
        bound = party.find_player(connection_id)
        if bound is not None and bound is not player:
            logger.warning(
                "Connection %s already plays as %s in party %s, ignoring join as %s",
                connection_id,
                bound.name,
                party.code,
                player_name,
            )
            return []
        old_id = player.connection_id
        if old_id != connection_id:
            player.connection_id = connection_id
            migrated = rebind_player_answers(party.game, old_id, connection_id)
            party.game.rematch_votes = [
                connection_id if vote == old_id else vote for vote in party.game.rematch_votes
            ]
            if migrated:
                logger.info(
                    "Migrated %s answers from %s to %s for party %s",
                    migrated,
                    old_id,
                    connection_id,
                    party.code,
                )
        if existing_index == 0:
            effects.extend(restore_host(party))
    else:
        if party.find_player(connection_id) is not None:
            return []
        if len(party.players) >= max_players:
            raise PartyActionRejected("party_full")
        party.players.append(Player(connection_id=connection_id, name=player_name, score=0))

    effects.extend([PersistParty(), JoinRoom(connection_id), BroadcastState()])
    return effects


def start_game(
    party: Party,
    connection_id: str,
    *,
    is_rematch: bool,
    bank: Iterable[dict[str, Any]],
    now: int,
    rng: random.Random | None = None,
) -> list[Effect]:
    ensure_host(party, connection_id)
    game = party.game

    questions = select_questions(bank, game.settings, rng)
    if not questions:
        raise PartyActionRejected("no_questions")

    game.current_question = 0
    game.questions = questions
    game.start_time = now
    game.player_answers = []
    game.current_question_answers_received = {}
    game.rematch_votes = []
    if not is_rematch:
        for player in party.players:
            player.score = 0

    logger.info(
        "Game started for party %s: %s questions, difficulty=%s rematch=%s",
        party.code,
        len(questions),
        game.settings.difficulty,
        is_rematch,
    )
    return [
        CancelTimer("close"),
        CancelTimer("rematch"),
        PersistParty(),
        BroadcastState(),
        Broadcast("game_started", build_question_payload(party)),
        ScheduleTimer("question", _question_delay_ms(game)),
    ]


def advance_question(party: Party, *, now: int) -> list[Effect]:
    game = party.game
    if not game.questions or game.current_question >= len(game.questions):
        return []

    game.current_question += 1
    game.start_time = now

    if game.current_question < len(game.questions):
        return [
            PersistParty(),
            BroadcastState(),
            Broadcast("next_question", build_question_payload(party)),
            ScheduleTimer("question", _question_delay_ms(game)),
        ]

    logger.info(
        "All questions finished for party %s. playerAnswers count=%s expected=%s per_question=%s",
        party.code,
        len(game.player_answers),
        expected_answer_count(party),
        answers_per_question(game),
    )
    return [
        PersistParty(),
        BroadcastState(),
        Broadcast("game_over", {"validationRequired": True}),
    ]


def submit_answer(
    party: Party,
    connection_id: str,
    question_index: int,
    answer: Any,
    *,
    tolerance: int = ANSWER_INDEX_TOLERANCE,
) -> list[Effect]:
    player = ensure_member(party, connection_id)
    game = party.game
    if not is_question_index_accepted(game, question_index, tolerance):
        raise PartyActionRejected(
            "stale_submission",
            f"received index={question_index} current={game.current_question}",
        )

    _, created = upsert_answer(
        game,
        player_id=connection_id,
        player_name=player.name,
        question_index=question_index,
        answer="" if answer is None else answer,
    )
    received = record_submission(game, question_index)
    logger.info(
        "Player %s answered question %s in party %s (created=%s submissions=%s stored=%s)",
        player.name,
        question_index,
        party.code,
        created,
        received,
        len(game.player_answers),
    )
    return [PersistParty(), BroadcastState()]


def submit_validation(
    party: Party,
    connection_id: str,
    target_player_id: str,
    target_question_index: int,
    is_correct: bool,
    *,
    close_delay_ms: int = FINAL_RESULTS_CLOSE_DELAY_MS,
) -> list[Effect]:
    ensure_host(party, connection_id)
    if not _play_is_over(party.game):
        raise PartyActionRejected("not_finished")

    entry = find_answer(party.game, target_player_id, target_question_index)
    if entry is None:
        logger.info(
            "No answer to validate for player %s question %s in party %s",
            target_player_id,
            target_question_index,
            party.code,
        )
        return []

    delta = apply_verdict(entry, party.find_player(target_player_id), is_correct)
    logger.info(
        "Validated player %s question %s in party %s: correct=%s delta=%s",
        entry.player_name,
        target_question_index,
        party.code,
        entry.is_correct,
        delta,
    )

    effects: list[Effect] = [PersistParty(), BroadcastState()]
    if is_fully_validated(party):
        effects.extend(_final_results(party, close_delay_ms))
    return effects


def advance_validation(
    party: Party,
    connection_id: str,
    question_index: int,
    player_index: int,
) -> list[Effect]:
    ensure_host(party, connection_id)
    if not _play_is_over(party.game):
        raise PartyActionRejected("not_finished")
    return [
        Broadcast(
            "validation_advanced",
            {"questionIndex": question_index, "playerIndex": player_index},
        )
    ]


def leave_party(
    party: Party,
    connection_id: str,
    *,
    close_delay_ms: int = FINAL_RESULTS_CLOSE_DELAY_MS,
    trigger_delay_ms: int = REMATCH_TRIGGER_DELAY_MS,
) -> list[Effect]:
    index = party.player_index(connection_id)
    if index == -1:
        return []
    if index == 0:
        logger.info("Host left party %s intentionally", party.code)
        return [CloseParty(HOST_LEFT_REASON)]

    follow_up = _remove_player(
        party, index, close_delay_ms=close_delay_ms, trigger_delay_ms=trigger_delay_ms
    )
    return [PersistParty(), LeaveRoom(connection_id), BroadcastState(), *follow_up]


def kick_player(
    party: Party,
    connection_id: str,
    target_id: str,
    *,
    close_delay_ms: int = FINAL_RESULTS_CLOSE_DELAY_MS,
    trigger_delay_ms: int = REMATCH_TRIGGER_DELAY_MS,
) -> list[Effect]:
    ensure_host(party, connection_id)
    index = party.player_index(target_id)
    if index == -1:
        raise PartyActionRejected("player_not_found")
    if index == 0:
        raise PartyActionRejected("cannot_kick_host")

    follow_up = _remove_player(
        party, index, close_delay_ms=close_delay_ms, trigger_delay_ms=trigger_delay_ms
    )
    return [
        PersistParty(),
        SendTo(target_id, "kicked", {"reason": KICKED_REASON}),
        LeaveRoom(target_id),
        ForceDisconnect(target_id),
        BroadcastState(),
        *follow_up,
    ]


def connection_lost(
    party: Party,
    connection_id: str,
    *,
    now: int,
    grace_ms: int = HOST_GRACE_MS,
    close_delay_ms: int = FINAL_RESULTS_CLOSE_DELAY_MS,
    trigger_delay_ms: int = REMATCH_TRIGGER_DELAY_MS,
) -> list[Effect]:
    index = party.player_index(connection_id)
    if index == -1:
        return []
    if index == 0:
        return mark_host_disconnected(party, now=now, grace_ms=grace_ms)

    follow_up = _remove_player(
        party, index, close_delay_ms=close_delay_ms, trigger_delay_ms=trigger_delay_ms
    )
    return [PersistParty(), BroadcastState(), *follow_up]


def rename_party(party: Party, connection_id: str, new_code: str) -> list[Effect]:
    ensure_host(party, connection_id)
    old_code = party.code
    party.code = new_code
    logger.info("Party code changed %s -> %s", old_code, new_code)
    return [PersistParty(rename_from=old_code), MoveRoom(old_code, new_code), BroadcastState()]


def submit_rematch_vote(
    party: Party,
    connection_id: str,
    *,
    trigger_delay_ms: int = REMATCH_TRIGGER_DELAY_MS,
) -> list[Effect]:
    ensure_member(party, connection_id)
    game = party.game
    if not _play_is_over(game):
        raise PartyActionRejected("not_finished")

    if connection_id not in game.rematch_votes:
        game.rematch_votes.append(connection_id)

    if _rematch_threshold_met(party):
        return [PersistParty(), *_rematch_starting(party, trigger_delay_ms)]

    return [
        PersistParty(),
        Broadcast(
            "rematch_vote_received",
            {"votesReceived": len(game.rematch_votes), "totalPlayers": len(party.players)},
        ),
    ]


def trigger_rematch(party: Party) -> list[Effect]:
    host = party.host
    if host is None:
        return []
    return [SendTo(host.connection_id, "trigger_rematch", {"partyCode": party.code})]


def close_after_results(party: Party) -> list[Effect]:
    logger.info("Closing party %s after final results", party.code)
    return [CloseParty()]


def recovered_timers(
    party: Party,
    *,
    now: int,
    grace_ms: int = HOST_GRACE_MS,
    close_delay_ms: int = FINAL_RESULTS_CLOSE_DELAY_MS,
) -> list[Effect]:
    """Timers to re-arm for a party loaded back from the store."""
    game = party.game
    effects: list[Effect] = []
    phase = party_phase(party)

    if phase == "playing":
        started_at = game.start_time if game.start_time is not None else now
        remaining = started_at + _question_delay_ms(game) - now
        effects.append(ScheduleTimer("question", max(0, remaining)))
    elif phase == "finished":
        effects.append(ScheduleTimer("close", close_delay_ms))

    if game.host_disconnected:
        disconnected_at = game.host_disconnected_at if game.host_disconnected_at is not None else now
        effects.append(ScheduleTimer("hostGrace", max(0, disconnected_at + grace_ms - now)))

    return effects
