from __future__ import annotations

import pytest

from conftest import MockWebSocket, connect
from partyquiz.runtime_connections import ConnectionRegistry
from partyquiz.runtime_message_handlers import handle_message


class TestConnectionRegistry:
    def test_rooms_and_memberships(self):
        registry = ConnectionRegistry()
        registry.register("a", MockWebSocket())
        registry.join_room("a", "ROOM1")
        registry.join_room("a", "ROOM2")
        assert registry.rooms_for("a") == {"ROOM1", "ROOM2"}
        registry.leave_room("a", "ROOM1")
        assert registry.room_members("ROOM1") == []
        assert registry.unregister("a") == {"ROOM2"}
        assert registry.room_members("ROOM2") == []

    def test_move_room_keeps_every_member(self):
        registry = ConnectionRegistry()
        for name in ("a", "b"):
            registry.register(name, MockWebSocket())
            registry.join_room(name, "OLD")
        assert registry.move_room("OLD", "NEW") == 2
        assert registry.room_members("NEW") == ["a", "b"]
        assert registry.rooms_for("b") == {"NEW"}

    @pytest.mark.asyncio
    async def test_broadcast_skips_dead_sockets(self):
        registry = ConnectionRegistry()
        alive, dead = MockWebSocket(), MockWebSocket()
        registry.register("alive", alive)
        registry.register("dead", dead)
        for name in ("alive", "dead"):
            registry.join_room(name, "ROOM")
        dead.closed = True

        delivered = await registry.broadcast("ROOM", "hello", {"n": 1})

        assert delivered == 1
        assert alive.last("hello") == {"type": "hello", "n": 1}
        assert registry.send_failures == 1

    @pytest.mark.asyncio
    async def test_force_disconnect_closes_socket(self):
        registry = ConnectionRegistry()
        ws = MockWebSocket()
        registry.register("a", ws)
        await registry.force_disconnect("a")
        assert ws.closed and ws.close_code == 4000
        assert await registry.send_to("missing", "x") is False


class TestMessageDispatch:
    @pytest.mark.asyncio
    async def test_ping(self, runtime):
        ws = connect(runtime, "c1")
        await handle_message(runtime, "c1", {"type": "ping"})
        assert ws.last("pong")["serverTime"] > 0

    @pytest.mark.asyncio
    async def test_invalid_payload(self, runtime):
        ws = connect(runtime, "c1")
        await handle_message(runtime, "c1", {"type": "join_party", "partyCode": "ABC123"})
        assert ws.last("error")["code"] == "INVALID_PAYLOAD"

    @pytest.mark.asyncio
    async def test_unknown_type_is_ignored(self, runtime):
        ws = connect(runtime, "c1")
        await handle_message(runtime, "c1", {"type": "dance"})
        assert ws.sent_messages == []

    @pytest.mark.asyncio
    async def test_full_round_through_messages(self, runtime):
        host = connect(runtime, "host")
        guest = connect(runtime, "guest")
        await handle_message(
            runtime,
            "host",
            {
                "type": "create_party",
                "requestId": "1",
                "playerName": "  Host  ",
                "gameId": "quiz",
                "difficulty": "EASY",
                "timePerQuestion": 30,
                "numQuestions": 2,
                "categories": ["Geography"],
            },
        )
        code = host.last("ack")["partyCode"]
        await handle_message(runtime, "guest", {"type": "join_party", "partyCode": code.lower(), "playerName": "Guest"})
        await handle_message(runtime, "host", {"type": "start_game", "partyCode": code})
        await handle_message(
            runtime,
            "guest",
            {"type": "submit_answer", "partyCode": code, "questionIndex": 0, "answer": "x"},
        )

        party = runtime.sessions[code].party
        assert [p.name for p in party.players] == ["Host", "Guest"]
        assert party.game.settings.difficulty == "easy"
        assert party.game.player_answers[0].player_id == "guest"

    @pytest.mark.asyncio
    async def test_validation_accepts_both_field_spellings(self, runtime):
        host = connect(runtime, "host")
        await handle_message(runtime, "host", {"type": "submit_validation", "partyCode": "ZZZ999",
                                               "validatedPlayerId": "p", "validatedQuestionIndex": 0,
                                               "isCorrect": True})
        await handle_message(runtime, "host", {"type": "submit_validation", "partyCode": "ZZZ999",
                                               "targetPlayerId": "p", "targetQuestionIndex": 0,
                                               "isCorrect": True})
        assert len(host.all("party_not_found")) == 2
        assert host.last("error") is None
