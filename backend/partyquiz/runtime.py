from __future__ import annotations

import asyncio
import json
import logging
import random
from typing import Any, Callable, Iterable, Protocol

from fastapi import WebSocket, WebSocketDisconnect

from .config import settings
from .database import PostgresPartyStore
from .database_parties import PartyRecord
from .runtime_connections import ConnectionRegistry
from .runtime_constants import (
    ANSWER_INDEX_TOLERANCE,
    FINAL_RESULTS_CLOSE_DELAY_MS,
    HOST_GRACE_MS,
    MAX_PLAYERS,
    MIN_TIMER_DELAY_MS,
    PARTY_CODE_ATTEMPTS,
    PARTY_CODE_LENGTH,
    QUESTION_BANK,
    QUESTION_CATEGORIES,
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
    is_store_effect,
)
from .runtime_errors import PartyActionRejected, PartyNotFound, PartyStoreError
from .runtime_host_reconnect import expire_host_grace, mark_host_disconnected
from .runtime_message_handlers import handle_message as handle_party_message
from .runtime_party_flow import (
    advance_question,
    advance_validation as advance_party_validation,
    close_after_results,
    connection_lost,
    ensure_host,
    join_party as join_party_flow,
    kick_player as kick_party_player,
    leave_party as leave_party_flow,
    new_party,
    recovered_timers,
    rename_party,
    request_state,
    start_game as start_party_game,
    submit_answer as submit_party_answer,
    submit_rematch_vote as submit_party_rematch_vote,
    submit_validation as submit_party_validation,
    trigger_rematch,
)
from .runtime_snapshot import party_from_record, serialize_game, serialize_players
from .runtime_types import GameSettings, Party, PartySession, TimerKey
from .runtime_utils import (
    clamp_num_questions,
    normalize_categories,
    normalize_difficulty,
    now_ms,
    random_id,
    random_party_code,
    sanitize_answer,
)
from .runtime_visibility import build_party_snapshot, party_phase

logger = logging.getLogger(__name__)

Transition = Callable[[Party], list[Effect]]

# Rejections that the caller hears about as an error event, not only through an ack.
_REJECTION_ERRORS: dict[str, tuple[str, str]] = {
    "party_full": ("PARTY_FULL", "The party is full"),
    "no_questions": ("NO_QUESTIONS", "No questions match the selected categories"),
}


class PartyStore(Protocol):
    async def get_by_code(self, code: str) -> PartyRecord | None: ...

    async def get_by_id(self, party_id: int) -> PartyRecord | None: ...

    async def insert(self, code: str, players: list[Any], game: dict[str, Any]) -> PartyRecord: ...

    async def update_fields(
        self,
        code: str,
        *,
        players: list[Any] | None = None,
        game: dict[str, Any] | None = None,
        new_code: str | None = None,
        expected_version: int | None = None,
    ) -> PartyRecord: ...

    async def delete_by_code(self, code: str) -> bool: ...

    async def list_all(self) -> list[PartyRecord]: ...

    async def delete_all(self) -> int: ...


class PartyRuntime:
    def __init__(
        self,
        store: PartyStore | None = None,
        *,
        connections: ConnectionRegistry | None = None,
        bank: Iterable[dict[str, Any]] | None = None,
        rng: random.Random | None = None,
        host_grace_ms: int = HOST_GRACE_MS,
        close_delay_ms: int = FINAL_RESULTS_CLOSE_DELAY_MS,
        rematch_delay_ms: int = REMATCH_TRIGGER_DELAY_MS,
        answer_tolerance: int = ANSWER_INDEX_TOLERANCE,
        max_players: int = MAX_PLAYERS,
        code_length: int = PARTY_CODE_LENGTH,
        cleanup_on_startup: bool = settings.cleanup_parties_on_startup,
    ) -> None:
        self.store: PartyStore = store if store is not None else PostgresPartyStore()
        self.connections = connections if connections is not None else ConnectionRegistry()
        self.bank = list(QUESTION_BANK if bank is None else bank)
        self.categories = (
            tuple(dict.fromkeys(str(q.get("category")) for q in self.bank))
            if bank is not None
            else QUESTION_CATEGORIES
        )
        self.rng = rng or random.Random()
        self.host_grace_ms = host_grace_ms
        self.close_delay_ms = close_delay_ms
        self.rematch_delay_ms = rematch_delay_ms
        self.answer_tolerance = answer_tolerance
        self.max_players = max_players
        self.code_length = code_length
        self.cleanup_on_startup = cleanup_on_startup
        self.sessions: dict[str, PartySession] = {}
        self.sessions_lock = asyncio.Lock()
        self._timer_transitions: dict[TimerKey, Transition] = {
            "question": lambda draft: advance_question(draft, now=now_ms()),
            "hostGrace": expire_host_grace,
            "close": close_after_results,
            "rematch": trigger_rematch,
        }
        self._ws_stats: dict[str, int] = {
            "connectSuccess": 0,
            "disconnects": 0,
            "messageReceived": 0,
            "pingReceived": 0,
            "invalidPayload": 0,
            "partyNotFound": 0,
            "rejected": 0,
            "storeFailures": 0,
            "timersFired": 0,
            "partiesCreated": 0,
            "partiesClosed": 0,
            "partiesRecovered": 0,
            "codeResets": 0,
            "activeConnections": 0,
            "peakConnections": 0,
        }

    @property
    def active_parties_count(self) -> int:
        return len(self.sessions)

    def _increment_stat(self, key: str, amount: int = 1) -> None:
        self._ws_stats[key] = int(self._ws_stats.get(key, 0)) + amount

    def _on_connect(self) -> None:
        self._increment_stat("connectSuccess")
        active_connections = int(self._ws_stats.get("activeConnections", 0)) + 1
        self._ws_stats["activeConnections"] = active_connections
        if active_connections > int(self._ws_stats.get("peakConnections", 0)):
            self._ws_stats["peakConnections"] = active_connections

    def _on_disconnect(self) -> None:
        self._increment_stat("disconnects")
        active_connections = max(0, int(self._ws_stats.get("activeConnections", 0)) - 1)
        self._ws_stats["activeConnections"] = active_connections

    def _log_party_event(self, event: str, level: int = logging.INFO, **fields: object) -> None:
        logger.log(
            level,
            "party.%s %s",
            event,
            json.dumps(fields, ensure_ascii=False, separators=(",", ":"), default=str),
        )

    async def get_ws_stats(self) -> dict[str, Any]:
        async with self.sessions_lock:
            party_summaries = [
                {
                    "code": session.code,
                    "players": len(session.party.players),
                    "phase": party_phase(session.party),
                }
                for session in self.sessions.values()
            ]

        party_summaries.sort(key=lambda item: int(item.get("players", 0)), reverse=True)

        stats = dict(self._ws_stats)
        stats["sendFailures"] = self.connections.send_failures
        return {
            "generatedAt": now_ms(),
            "activeParties": len(party_summaries),
            "stats": stats,
            "parties": party_summaries[:50],
        }

    async def startup(self) -> None:
        if not self.cleanup_on_startup:
            self._log_party_event("startup", recovery="lazy")
            return
        try:
            removed = await self.store.delete_all()
        except PartyStoreError:
            logger.exception("Failed to clean up stored parties on startup")
            return
        self._log_party_event("startup", recovery="cleanup", removed=removed)

    async def shutdown(self) -> None:
        async with self.sessions_lock:
            sessions = list(self.sessions.values())
            self.sessions.clear()

        for session in sessions:
            async with session.lock:
                self._clear_timers(session)

        self._ws_stats["activeConnections"] = 0

    async def snapshot_for_code(self, code: str) -> dict[str, Any] | None:
        session = await self._get_session(code)
        if session is None:
            return None
        return build_party_snapshot(session.party)

    # Connection lifecycle

    async def handle_websocket(self, websocket: WebSocket) -> None:
        await websocket.accept()

        connection_id = random_id()
        self.connections.register(connection_id, websocket)
        self._on_connect()
        await self.connections.send_to(connection_id, "connected", {"connectionId": connection_id})
        self._log_party_event("connect", connectionId=connection_id)

        disconnect_code: int | None = None
        disconnect_reason = "unknown"
        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    data = json.loads(raw)
                except json.JSONDecodeError:
                    continue
                if not isinstance(data, dict):
                    continue
                self._increment_stat("messageReceived")
                try:
                    await handle_party_message(self, connection_id, data)
                except Exception:
                    logger.exception(
                        "Unhandled error for message %s from %s",
                        data.get("type"),
                        connection_id,
                    )
        except WebSocketDisconnect as exc:
            disconnect_code = exc.code
            disconnect_reason = "websocket_disconnect"
        except Exception:
            disconnect_reason = "server_error"
            logger.exception("Unexpected websocket error for connection %s", connection_id)
        finally:
            self._on_disconnect()
            self._log_party_event(
                "disconnect",
                connectionId=connection_id,
                reason=disconnect_reason,
                closeCode=disconnect_code,
            )
            await self.handle_disconnect(connection_id)

    async def handle_disconnect(self, connection_id: str) -> None:
        self.connections.unregister(connection_id)

        async with self.sessions_lock:
            sessions = list(self.sessions.values())

        for session in sessions:
            if session.party.find_player(connection_id) is None:
                continue
            async with session.lock:
                if session.closed or session.party.find_player(connection_id) is None:
                    continue
                try:
                    await self._run(
                        session,
                        "disconnect",
                        lambda draft: connection_lost(
                            draft,
                            connection_id,
                            now=now_ms(),
                            grace_ms=self.host_grace_ms,
                            close_delay_ms=self.close_delay_ms,
                            trigger_delay_ms=self.rematch_delay_ms,
                        ),
                        connection_id=connection_id,
                    )
                except PartyStoreError:
                    self._log_party_event(
                        "disconnect_failed",
                        level=logging.WARNING,
                        code=session.code,
                        connectionId=connection_id,
                    )

    # Inbound events

    async def create_party(
        self,
        connection_id: str,
        *,
        player_name: str,
        game_type: str,
        difficulty: str,
        time_per_question: float,
        num_questions: int,
        categories: list[str],
        request_id: str | None = None,
    ) -> str | None:
        game_settings = GameSettings(
            difficulty=normalize_difficulty(difficulty),
            time_per_question=time_per_question,
            num_questions=clamp_num_questions(num_questions),
            categories=normalize_categories(categories) or list(self.categories),
        )
        code = await self._generate_unique_code()
        party, effects = new_party(
            code,
            connection_id,
            player_name=player_name,
            game_type=game_type,
            settings=game_settings,
        )
        session = PartySession(party=party)

        async with self.sessions_lock:
            if code in self.sessions:
                code = ""
            else:
                self.sessions[code] = session
        if not code:
            await self._ack(connection_id, request_id, False, error="code_collision")
            return None

        async with session.lock:
            try:
                await self._apply(session, party.clone(), effects, "create_party", connection_id)
            except PartyStoreError:
                session.closed = True
                async with self.sessions_lock:
                    self.sessions.pop(code, None)
                await self._ack(connection_id, request_id, False, error="store_failure")
                return None

        self._increment_stat("partiesCreated")
        await self._ack(connection_id, request_id, True, partyCode=code)
        return code

    async def get_party_state(
        self,
        connection_id: str,
        code: str,
        *,
        request_id: str | None = None,
    ) -> None:
        await self._handle_party_event(
            code,
            "get_party_state",
            connection_id,
            lambda draft: request_state(draft, connection_id),
            request_id=request_id,
        )

    async def join_party(
        self,
        connection_id: str,
        code: str,
        player_name: str,
        *,
        request_id: str | None = None,
    ) -> None:
        await self._handle_party_event(
            code,
            "join_party",
            connection_id,
            lambda draft: join_party_flow(
                draft,
                connection_id,
                player_name,
                max_players=self.max_players,
            ),
            request_id=request_id,
        )

    async def start_game(
        self,
        connection_id: str,
        code: str,
        *,
        is_rematch: bool = False,
        request_id: str | None = None,
    ) -> None:
        await self._handle_party_event(
            code,
            "start_game",
            connection_id,
            lambda draft: start_party_game(
                draft,
                connection_id,
                is_rematch=is_rematch,
                bank=self.bank,
                now=now_ms(),
                rng=self.rng,
            ),
            request_id=request_id,
        )

    async def submit_answer(
        self,
        connection_id: str,
        code: str,
        question_index: int,
        answer: Any,
        *,
        request_id: str | None = None,
    ) -> None:
        clean_answer = sanitize_answer(answer)
        await self._handle_party_event(
            code,
            "submit_answer",
            connection_id,
            lambda draft: submit_party_answer(
                draft,
                connection_id,
                question_index,
                clean_answer,
                tolerance=self.answer_tolerance,
            ),
            request_id=request_id,
        )

    async def submit_validation(
        self,
        connection_id: str,
        code: str,
        target_player_id: str,
        target_question_index: int,
        is_correct: bool,
        *,
        request_id: str | None = None,
    ) -> None:
        await self._handle_party_event(
            code,
            "submit_validation",
            connection_id,
            lambda draft: submit_party_validation(
                draft,
                connection_id,
                target_player_id,
                target_question_index,
                is_correct,
                close_delay_ms=self.close_delay_ms,
            ),
            request_id=request_id,
        )

    async def advance_validation(
        self,
        connection_id: str,
        code: str,
        question_index: int,
        player_index: int,
        *,
        request_id: str | None = None,
    ) -> None:
        await self._handle_party_event(
            code,
            "advance_validation",
            connection_id,
            lambda draft: advance_party_validation(draft, connection_id, question_index, player_index),
            request_id=request_id,
        )

    async def leave_party(
        self,
        connection_id: str,
        code: str,
        *,
        request_id: str | None = None,
    ) -> None:
        await self._handle_party_event(
            code,
            "leave_party",
            connection_id,
            lambda draft: leave_party_flow(
                draft,
                connection_id,
                close_delay_ms=self.close_delay_ms,
                trigger_delay_ms=self.rematch_delay_ms,
            ),
            request_id=request_id,
        )

    async def kick_player(
        self,
        connection_id: str,
        code: str,
        target_id: str,
        *,
        request_id: str | None = None,
    ) -> bool:
        return await self._handle_party_event(
            code,
            "kick_player",
            connection_id,
            lambda draft: kick_party_player(
                draft,
                connection_id,
                target_id,
                close_delay_ms=self.close_delay_ms,
                trigger_delay_ms=self.rematch_delay_ms,
            ),
            request_id=request_id,
        )

    async def reset_party_code(
        self,
        connection_id: str,
        code: str,
        *,
        request_id: str | None = None,
    ) -> str | None:
        try:
            session = await self._require_session(code)
        except PartyNotFound as exc:
            await self._party_not_found(connection_id, exc.code, request_id)
            return None

        async with session.lock:
            old_code = session.code
            try:
                if session.closed:
                    raise PartyNotFound(code)
                ensure_host(session.party, connection_id)
                new_code = await self._generate_unique_code()
                await self._run(
                    session,
                    "reset_party_code",
                    lambda draft: rename_party(draft, connection_id, new_code),
                    connection_id=connection_id,
                )
            except PartyNotFound as exc:
                await self._party_not_found(connection_id, exc.code, request_id)
                return None
            except PartyActionRejected as exc:
                self._log_rejection(old_code, "reset_party_code", connection_id, exc)
                await self._ack(connection_id, request_id, False, error=exc.reason)
                return None
            except PartyStoreError:
                await self._ack(connection_id, request_id, False, error="store_failure")
                return None

        self._increment_stat("codeResets")
        await self._ack(connection_id, request_id, True, newCode=new_code)
        return new_code

    async def submit_rematch_vote(
        self,
        connection_id: str,
        code: str,
        *,
        request_id: str | None = None,
    ) -> None:
        await self._handle_party_event(
            code,
            "submit_rematch_vote",
            connection_id,
            lambda draft: submit_party_rematch_vote(
                draft,
                connection_id,
                trigger_delay_ms=self.rematch_delay_ms,
            ),
            request_id=request_id,
        )

    # Event execution

    async def _handle_party_event(
        self,
        code: str,
        operation: str,
        connection_id: str,
        transition: Transition,
        *,
        request_id: str | None = None,
    ) -> bool:
        try:
            session = await self._require_session(code)
        except PartyNotFound as exc:
            await self._party_not_found(connection_id, exc.code, request_id)
            return False

        async with session.lock:
            try:
                if session.closed:
                    raise PartyNotFound(code)
                await self._run(session, operation, transition, connection_id=connection_id)
            except PartyNotFound as exc:
                await self._party_not_found(connection_id, exc.code, request_id)
                return False
            except PartyActionRejected as exc:
                self._log_rejection(session.code, operation, connection_id, exc)
                error = _REJECTION_ERRORS.get(exc.reason)
                if error is not None:
                    await self.connections.send_to(
                        connection_id,
                        "error",
                        {"code": error[0], "message": error[1]},
                    )
                await self._ack(connection_id, request_id, False, error=exc.reason)
                return False
            except PartyStoreError:
                await self._ack(connection_id, request_id, False, error="store_failure")
                return False

        await self._ack(connection_id, request_id, True)
        return True

    async def _run(
        self,
        session: PartySession,
        operation: str,
        transition: Transition,
        *,
        connection_id: str | None = None,
    ) -> list[Effect]:
        """Apply one event to a party; the caller holds ``session.lock``."""
        draft = session.party.clone()
        effects = transition(draft)
        await self._apply(session, draft, effects, operation, connection_id)
        return effects

    async def _apply(
        self,
        session: PartySession,
        draft: Party,
        effects: list[Effect],
        operation: str,
        connection_id: str | None = None,
    ) -> None:
        live_code = session.code
        closing = any(isinstance(effect, CloseParty) for effect in effects)

        if closing:
            try:
                await self.store.delete_by_code(live_code)
            except PartyStoreError:
                # The party still closes; a leftover record is removed by the next startup cleanup.
                self._increment_stat("storeFailures")
                logger.exception("Failed to delete party %s during %s", live_code, operation)
        else:
            try:
                for effect in effects:
                    if isinstance(effect, PersistParty):
                        await self._persist(draft, effect)
            except PartyStoreError:
                self._increment_stat("storeFailures")
                logger.exception(
                    "Store write failed for party %s during %s (connection %s)",
                    live_code,
                    operation,
                    connection_id or "-",
                )
                raise

        session.party = draft
        if draft.code != live_code:
            async with self.sessions_lock:
                if self.sessions.get(live_code) is session:
                    self.sessions.pop(live_code, None)
                self.sessions[draft.code] = session

        for effect in effects:
            if is_store_effect(effect) and not isinstance(effect, CloseParty):
                continue
            await self._execute(session, effect)

        self._log_party_event(
            operation,
            code=session.code,
            connectionId=connection_id,
            version=session.party.version,
            effects=[type(effect).__name__ for effect in effects],
        )

    async def _persist(self, draft: Party, effect: PersistParty) -> None:
        players = serialize_players(draft.players)
        game = serialize_game(draft.game)
        if effect.create:
            record = await self.store.insert(draft.code, players, game)
            draft.id = record.id
        else:
            record = await self.store.update_fields(
                effect.rename_from or draft.code,
                players=players,
                game=game,
                new_code=draft.code if effect.rename_from else None,
                expected_version=draft.version,
            )
        draft.version = record.version

    async def _execute(self, session: PartySession, effect: Effect) -> None:
        code = session.code
        if isinstance(effect, Broadcast):
            await self.connections.broadcast(code, effect.event, effect.payload)
        elif isinstance(effect, BroadcastState):
            await self.connections.broadcast(code, "party_state", {"party": build_party_snapshot(session.party)})
        elif isinstance(effect, SendTo):
            await self.connections.send_to(effect.connection_id, effect.event, effect.payload)
        elif isinstance(effect, SendState):
            await self.connections.send_to(
                effect.connection_id,
                "party_state",
                {"party": build_party_snapshot(session.party)},
            )
        elif isinstance(effect, JoinRoom):
            self.connections.join_room(effect.connection_id, code)
        elif isinstance(effect, LeaveRoom):
            self.connections.leave_room(effect.connection_id, code)
        elif isinstance(effect, MoveRoom):
            moved = self.connections.move_room(effect.old_code, effect.new_code)
            self._log_party_event("room_moved", oldCode=effect.old_code, newCode=effect.new_code, members=moved)
        elif isinstance(effect, ForceDisconnect):
            await self.connections.force_disconnect(effect.connection_id)
        elif isinstance(effect, ScheduleTimer):
            self._schedule_timer(session, effect.key, effect.delay_ms)
        elif isinstance(effect, CancelTimer):
            self._cancel_timer(session, effect.key)
        elif isinstance(effect, CloseParty):
            await self._close_session(session, effect.reason)

    async def _close_session(self, session: PartySession, reason: str | None) -> None:
        code = session.code
        session.closed = True
        self._clear_timers(session)
        if reason:
            await self.connections.broadcast(code, "party_closed", {"reason": reason})
        self.connections.clear_room(code)
        async with self.sessions_lock:
            if self.sessions.get(code) is session:
                self.sessions.pop(code, None)
        self._increment_stat("partiesClosed")
        self._log_party_event("closed", code=code, reason=reason)

    # Timers

    def _cancel_timer(self, session: PartySession, key: str) -> None:
        task = session.timers.get(key)
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
        session.timers[key] = None

    def _clear_timers(self, session: PartySession) -> None:
        for key in list(session.timers):
            self._cancel_timer(session, key)

    def _schedule_timer(self, session: PartySession, key: TimerKey, delay_ms: int) -> None:
        self._cancel_timer(session, key)
        delay_s = max(MIN_TIMER_DELAY_MS, delay_ms or 0) / 1000

        async def runner() -> None:
            try:
                await asyncio.sleep(delay_s)
            except asyncio.CancelledError:
                return
            async with session.lock:
                if session.closed or session.timers.get(key) is not asyncio.current_task():
                    return
                session.timers[key] = None
                await self._on_timer(session, key)

        session.timers[key] = asyncio.create_task(runner(), name=f"{session.code}:{key}")

    async def _on_timer(self, session: PartySession, key: TimerKey) -> None:
        self._increment_stat("timersFired")
        try:
            await self._run(session, f"timer_{key}", self._timer_transitions[key])
        except PartyActionRejected as exc:
            self._log_rejection(session.code, f"timer_{key}", None, exc)
        except PartyStoreError:
            self._log_party_event("timer_failed", level=logging.WARNING, code=session.code, timer=key)

    # Sessions

    async def _get_session(self, code: str) -> PartySession | None:
        async with self.sessions_lock:
            session = self.sessions.get(code)
        if session is not None or self.cleanup_on_startup:
            return session
        return await self._recover_session(code)

    async def _require_session(self, code: str) -> PartySession:
        session = await self._get_session(code)
        if session is None:
            raise PartyNotFound(code)
        return session

    async def _recover_session(self, code: str) -> PartySession | None:
        try:
            record = await self.store.get_by_code(code)
        except PartyStoreError:
            self._increment_stat("storeFailures")
            logger.exception("Failed to load party %s from store", code)
            return None
        if record is None:
            return None

        party = party_from_record(
            code=record.code,
            players=record.players,
            game=record.game,
            record_id=record.id,
            version=record.version,
        )
        if not party.players:
            return None
        session = PartySession(party=party)

        async with self.sessions_lock:
            existing = self.sessions.get(code)
            if existing is not None:
                return existing
            self.sessions[code] = session

        async with session.lock:
            now = now_ms()
            timers = recovered_timers(
                party,
                now=now,
                grace_ms=self.host_grace_ms,
                close_delay_ms=self.close_delay_ms,
            )
            for effect in timers:
                await self._execute(session, effect)
            host = party.host
            if host is not None and not party.game.host_disconnected and not self.connections.is_connected(host.connection_id):
                try:
                    await self._run(
                        session,
                        "recover_host",
                        lambda draft: mark_host_disconnected(draft, now=now, grace_ms=self.host_grace_ms),
                    )
                except PartyStoreError:
                    self._log_party_event("recover_host_failed", level=logging.WARNING, code=code)

        self._increment_stat("partiesRecovered")
        self._log_party_event(
            "recovered",
            code=code,
            phase=party_phase(session.party),
            version=session.party.version,
        )
        return session

    async def _code_in_use(self, code: str) -> bool:
        async with self.sessions_lock:
            if code in self.sessions:
                return True
        return await self.store.get_by_code(code) is not None

    async def _generate_unique_code(self) -> str:
        candidate = ""
        for attempt in range(PARTY_CODE_ATTEMPTS):
            candidate = random_party_code(self.code_length)
            try:
                if not await self._code_in_use(candidate):
                    return candidate
            except PartyStoreError:
                logger.warning(
                    "Code uniqueness check failed on attempt %s, using %s best-effort",
                    attempt + 1,
                    candidate,
                )
                return candidate
        logger.warning("No free party code after %s attempts, using %s", PARTY_CODE_ATTEMPTS, candidate)
        return candidate

    # Replies

    def _log_rejection(
        self,
        code: str,
        operation: str,
        connection_id: str | None,
        exc: PartyActionRejected,
    ) -> None:
        self._increment_stat("rejected")
        self._log_party_event(
            "rejected",
            level=logging.WARNING,
            code=code,
            operation=operation,
            connectionId=connection_id,
            reason=exc.reason,
            detail=str(exc),
        )

    async def _party_not_found(self, connection_id: str, code: str, request_id: str | None) -> None:
        self._increment_stat("partyNotFound")
        self._log_party_event("not_found", level=logging.WARNING, code=code, connectionId=connection_id)
        await self.connections.send_to(connection_id, "party_not_found", {"partyCode": code})
        await self._ack(connection_id, request_id, False, error="party_not_found")

    async def _ack(
        self,
        connection_id: str,
        request_id: str | None,
        ok: bool,
        **fields: Any,
    ) -> None:
        if request_id is None:
            return
        await self.connections.send_to(connection_id, "ack", {"requestId": request_id, "ok": ok, **fields})

    async def send_error(self, connection_id: str, code: str, message: str) -> None:
        await self.connections.send_to(connection_id, "error", {"code": code, "message": message})


runtime = PartyRuntime()
