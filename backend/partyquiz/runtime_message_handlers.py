from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from pydantic import BaseModel, ValidationError

from .runtime_utils import now_ms
from .schemas.parties import (
    AdvanceValidationMessage,
    CreatePartyMessage,
    GetPartyStateMessage,
    JoinPartyMessage,
    KickPlayerMessage,
    LeavePartyMessage,
    RematchVoteMessage,
    ResetPartyCodeMessage,
    StartGameMessage,
    SubmitAnswerMessage,
    SubmitValidationMessage,
)

if TYPE_CHECKING:
    from .runtime import PartyRuntime

logger = logging.getLogger(__name__)


async def _create_party(runtime: "PartyRuntime", connection_id: str, msg: CreatePartyMessage) -> None:
    await runtime.create_party(
        connection_id,
        player_name=msg.playerName,
        game_type=msg.gameId,
        difficulty=msg.difficulty,
        time_per_question=msg.timePerQuestion,
        num_questions=msg.numQuestions,
        categories=msg.categories,
        request_id=msg.requestId,
    )


async def _get_party_state(runtime: "PartyRuntime", connection_id: str, msg: GetPartyStateMessage) -> None:
    await runtime.get_party_state(connection_id, msg.partyCode, request_id=msg.requestId)


async def _join_party(runtime: "PartyRuntime", connection_id: str, msg: JoinPartyMessage) -> None:
    await runtime.join_party(connection_id, msg.partyCode, msg.playerName, request_id=msg.requestId)


async def _start_game(runtime: "PartyRuntime", connection_id: str, msg: StartGameMessage) -> None:
    await runtime.start_game(
        connection_id,
        msg.partyCode,
        is_rematch=msg.isRematch,
        request_id=msg.requestId,
    )


async def _submit_answer(runtime: "PartyRuntime", connection_id: str, msg: SubmitAnswerMessage) -> None:
    await runtime.submit_answer(
        connection_id,
        msg.partyCode,
        msg.questionIndex,
        msg.answer,
        request_id=msg.requestId,
    )


async def _submit_validation(
    runtime: "PartyRuntime",
    connection_id: str,
    msg: SubmitValidationMessage,
) -> None:
    await runtime.submit_validation(
        connection_id,
        msg.partyCode,
        msg.targetPlayerId,
        msg.targetQuestionIndex,
        msg.isCorrect,
        request_id=msg.requestId,
    )


async def _advance_validation(
    runtime: "PartyRuntime",
    connection_id: str,
    msg: AdvanceValidationMessage,
) -> None:
    await runtime.advance_validation(
        connection_id,
        msg.partyCode,
        msg.questionIndex,
        msg.playerIndex,
        request_id=msg.requestId,
    )


async def _leave_party(runtime: "PartyRuntime", connection_id: str, msg: LeavePartyMessage) -> None:
    await runtime.leave_party(connection_id, msg.partyCode, request_id=msg.requestId)


async def _kick_player(runtime: "PartyRuntime", connection_id: str, msg: KickPlayerMessage) -> None:
    await runtime.kick_player(connection_id, msg.partyCode, msg.playerId, request_id=msg.requestId)


async def _reset_party_code(
    runtime: "PartyRuntime",
    connection_id: str,
    msg: ResetPartyCodeMessage,
) -> None:
    await runtime.reset_party_code(connection_id, msg.partyCode, request_id=msg.requestId)


async def _submit_rematch_vote(runtime: "PartyRuntime", connection_id: str, msg: RematchVoteMessage) -> None:
    await runtime.submit_rematch_vote(connection_id, msg.partyCode, request_id=msg.requestId)


Handler = Callable[["PartyRuntime", str, Any], Awaitable[None]]

MESSAGE_HANDLERS: dict[str, tuple[type[BaseModel], Handler]] = {
    "create_party": (CreatePartyMessage, _create_party),
    "get_party_state": (GetPartyStateMessage, _get_party_state),
    "join_party": (JoinPartyMessage, _join_party),
    "start_game": (StartGameMessage, _start_game),
    "submit_answer": (SubmitAnswerMessage, _submit_answer),
    "submit_validation": (SubmitValidationMessage, _submit_validation),
    "advance_validation": (AdvanceValidationMessage, _advance_validation),
    "leave_party": (LeavePartyMessage, _leave_party),
    "kick_player": (KickPlayerMessage, _kick_player),
    "reset_party_code": (ResetPartyCodeMessage, _reset_party_code),
    "submit_rematch_vote": (RematchVoteMessage, _submit_rematch_vote),
}


async def handle_message(
    runtime: "PartyRuntime",
    connection_id: str,
    data: dict[str, Any],
) -> None:
    message_type = data.get("type")

    if message_type == "ping":
        runtime._increment_stat("pingReceived")
        await runtime.connections.send_to(connection_id, "pong", {"serverTime": now_ms()})
        return

    entry = MESSAGE_HANDLERS.get(str(message_type or ""))
    if entry is None:
        logger.debug("Ignoring unknown message type %r from %s", message_type, connection_id)
        return

    schema, handler = entry
    try:
        msg = schema.model_validate(data)
    except ValidationError as exc:
        runtime._increment_stat("invalidPayload")
        runtime._log_party_event(
            "invalid_payload",
            level=logging.WARNING,
            connectionId=connection_id,
            messageType=message_type,
            errors=exc.error_count(),
        )
        await runtime.send_error(
            connection_id,
            "INVALID_PAYLOAD",
            f"Invalid {message_type} payload",
        )
        return

    await handler(runtime, connection_id, msg)
