"""
Pure transition tests: each event applied to a Party draft, asserting both the new
state and the effects handed back to the runtime.
"""
from __future__ import annotations

import random

import pytest

from conftest import make_bank, make_party
from partyquiz.runtime_effects import (
    Broadcast,
    BroadcastState,
    CancelTimer,
    CloseParty,
    ForceDisconnect,
    JoinRoom,
    LeaveRoom,
    MoveRoom,
    PersistParty,
    ScheduleTimer,
    SendTo,
)
from partyquiz.runtime_errors import PartyActionRejected
from partyquiz.runtime_host_reconnect import expire_host_grace
from partyquiz.runtime_party_flow import (
    advance_question,
    advance_validation,
    connection_lost,
    join_party,
    kick_player,
    leave_party,
    new_party,
    recovered_timers,
    rename_party,
    start_game,
    submit_answer,
    submit_rematch_vote,
    submit_validation,
    trigger_rematch,
)
from partyquiz.runtime_types import GameSettings


def _events(effects) -> list[str]:
    return [effect.event for effect in effects if isinstance(effect, Broadcast)]


class TestNewParty:
    def test_creator_is_host_in_lobby(self):
        settings = GameSettings(difficulty="easy", time_per_question=5, num_questions=2, categories=["Geography"])
        party, effects = new_party("ABC123", "c-host", player_name="Host", game_type="quiz", settings=settings)
        assert party.host.name == "Host"
        assert party.game.questions == []
        assert effects == [PersistParty(create=True), JoinRoom("c-host"), BroadcastState()]


class TestJoin:
    def test_new_player_is_appended(self):
        party = make_party("Host")
        effects = join_party(party, "c-guest", "Guest")
        assert [p.name for p in party.players] == ["Host", "Guest"]
        assert JoinRoom("c-guest") in effects

    def test_duplicate_connection_is_noop(self):
        party = make_party("Host", "Guest")
        assert join_party(party, "c-Guest", "Someone Else") == []
        assert len(party.players) == 2

    def test_member_cannot_take_another_players_name(self):
        party = make_party("Alice", "Bob")
        assert join_party(party, "c-Bob", "Alice") == []
        assert [p.connection_id for p in party.players] == ["c-Alice", "c-Bob"]
        assert [p.name for p in party.players] == ["Alice", "Bob"]

    def test_reconnect_by_name_rebinds_and_migrates_answers(self):
        party = make_party("Host", "Guest", questions=2)
        submit_answer(party, "c-Guest", 0, "Paris")
        party.game.rematch_votes = ["c-Guest"]

        join_party(party, "c-new", "Guest")

        assert len(party.players) == 2
        assert party.players[1].connection_id == "c-new"
        assert [a.player_id for a in party.game.player_answers] == ["c-new"]
        assert party.game.rematch_votes == ["c-new"]

    def test_host_rejoin_clears_grace_window(self):
        party = make_party("Host", "Guest")
        connection_lost(party, "c-Host", now=1000, grace_ms=15000)
        effects = join_party(party, "c-host-2", "Host")
        assert party.game.host_disconnected is False
        assert party.game.host_disconnected_at is None
        assert CancelTimer("hostGrace") in effects
        assert party.host.connection_id == "c-host-2"

    def test_full_party_rejects_new_player(self):
        party = make_party("Host", "Guest")
        with pytest.raises(PartyActionRejected) as exc:
            join_party(party, "c-x", "Late", max_players=2)
        assert exc.value.reason == "party_full"


class TestStartGame:
    def test_only_host_may_start(self):
        party = make_party("Host", "Guest")
        with pytest.raises(PartyActionRejected) as exc:
            start_game(party, "c-Guest", is_rematch=False, bank=make_bank(), now=0)
        assert exc.value.reason == "not_host"

    def test_start_selects_questions_and_schedules_first_timer(self):
        party = make_party("Host", "Guest", questions=0)
        party.game.settings.num_questions = 2
        party.players[1].score = 4
        effects = start_game(party, "c-Host", is_rematch=False, bank=make_bank(), now=5000, rng=random.Random(1))

        assert len(party.game.questions) == 2
        assert party.game.current_question == 0
        assert party.game.start_time == 5000
        assert party.players[1].score == 0
        assert ScheduleTimer("question", 10000) in effects
        started = next(e for e in effects if isinstance(e, Broadcast) and e.event == "game_started")
        assert "answer" not in started.payload["question"]
        assert started.payload["questionIndex"] == 0

    def test_rematch_keeps_scores_and_resets_run(self):
        party = make_party("Host", "Guest", questions=2, current_question=2)
        party.players[1].score = 3
        party.game.rematch_votes = ["c-Host", "c-Guest"]
        submit_answer_count = len(party.game.player_answers)
        start_game(party, "c-Host", is_rematch=True, bank=make_bank(), now=0, rng=random.Random(2))
        assert party.players[1].score == 3
        assert party.game.rematch_votes == []
        assert party.game.current_question == 0
        assert len(party.game.player_answers) == submit_answer_count == 0

    def test_empty_selection_is_rejected(self):
        party = make_party("Host")
        party.game.settings.categories = ["Nothing"]
        with pytest.raises(PartyActionRejected) as exc:
            start_game(party, "c-Host", is_rematch=False, bank=make_bank(), now=0)
        assert exc.value.reason == "no_questions"
        assert party.game.questions == []


class TestAdvanceQuestion:
    def test_advances_and_reschedules(self):
        party = make_party("Host", questions=3)
        effects = advance_question(party, now=42)
        assert party.game.current_question == 1
        assert party.game.start_time == 42
        assert "next_question" in _events(effects)
        assert any(isinstance(e, ScheduleTimer) and e.key == "question" for e in effects)

    def test_last_question_requests_validation(self):
        party = make_party("Host", questions=2, current_question=1)
        effects = advance_question(party, now=0)
        assert party.game.current_question == 2
        assert _events(effects) == ["game_over"]
        assert not any(isinstance(e, ScheduleTimer) for e in effects)

    def test_cursor_never_passes_question_count(self):
        party = make_party("Host", questions=2, current_question=2)
        assert advance_question(party, now=0) == []
        assert party.game.current_question == 2


class TestSubmitAnswer:
    def test_resubmission_overwrites_in_place(self):
        party = make_party("Host", "Guest", questions=2)
        submit_answer(party, "c-Guest", 0, "Lyon")
        submit_answer(party, "c-Guest", 0, "Paris")
        assert len(party.game.player_answers) == 1
        assert party.game.player_answers[0].answer == "Paris"
        assert party.game.current_question_answers_received[0] == 2

    def test_previous_question_is_accepted(self):
        party = make_party("Host", questions=3, current_question=1)
        submit_answer(party, "c-Host", 0, "late")
        assert party.game.player_answers[0].question_index == 0

    def test_older_or_future_question_is_rejected(self):
        party = make_party("Host", questions=3, current_question=2)
        for index in (0, 3):
            with pytest.raises(PartyActionRejected) as exc:
                submit_answer(party, "c-Host", index, "x")
            assert exc.value.reason == "stale_submission"
        assert party.game.player_answers == []

    def test_missing_answer_stored_as_empty(self):
        party = make_party("Host", questions=1)
        submit_answer(party, "c-Host", 0, None)
        assert party.game.player_answers[0].answer == ""

    def test_non_member_is_rejected(self):
        party = make_party("Host", questions=1)
        with pytest.raises(PartyActionRejected) as exc:
            submit_answer(party, "c-stranger", 0, "x")
        assert exc.value.reason == "not_member"


class TestValidation:
    def _finished_party(self):
        party = make_party("Host", "Guest", questions=1)
        submit_answer(party, "c-Host", 0, "a")
        submit_answer(party, "c-Guest", 0, "b")
        party.game.current_question = 1
        return party

    def test_rejected_before_play_is_over(self):
        party = make_party("Host", "Guest", questions=2)
        with pytest.raises(PartyActionRejected) as exc:
            submit_validation(party, "c-Host", "c-Guest", 0, True)
        assert exc.value.reason == "not_finished"

    def test_non_host_cannot_validate(self):
        party = self._finished_party()
        with pytest.raises(PartyActionRejected):
            submit_validation(party, "c-Guest", "c-Guest", 0, True)

    def test_missing_record_is_noop(self):
        party = self._finished_party()
        assert submit_validation(party, "c-Host", "c-Guest", 5, True) == []

    def test_toggle_nets_zero(self):
        party = self._finished_party()
        submit_validation(party, "c-Host", "c-Guest", 0, True)
        submit_validation(party, "c-Host", "c-Guest", 0, False)
        submit_validation(party, "c-Host", "c-Guest", 0, True)
        assert party.players[1].score == 1

    def test_final_results_when_fully_validated(self):
        party = self._finished_party()
        first = submit_validation(party, "c-Host", "c-Host", 0, False)
        assert "final_game_over" not in _events(first)

        effects = submit_validation(party, "c-Host", "c-Guest", 0, True, close_delay_ms=2000)
        final = next(e for e in effects if isinstance(e, Broadcast) and e.event == "final_game_over")
        assert final.payload["finalScores"] == [{"name": "Host", "score": 0}, {"name": "Guest", "score": 1}]
        assert ScheduleTimer("close", 2000) in effects

    def test_missing_answers_block_completion(self):
        party = make_party("Host", "Guest", questions=1)
        submit_answer(party, "c-Host", 0, "a")
        party.game.current_question = 1
        effects = submit_validation(party, "c-Host", "c-Host", 0, True)
        assert "final_game_over" not in _events(effects)

    def test_advance_validation_is_broadcast(self):
        party = self._finished_party()
        effects = advance_validation(party, "c-Host", 0, 1)
        assert effects == [Broadcast("validation_advanced", {"questionIndex": 0, "playerIndex": 1})]


class TestLeaveKickDrop:
    def test_host_leave_closes_party(self):
        party = make_party("Host", "Guest")
        effects = leave_party(party, "c-Host")
        assert effects == [CloseParty("Host left the game")]

    def test_guest_leave_drops_answers_and_vote(self):
        party = make_party("Host", "Guest", questions=1)
        submit_answer(party, "c-Guest", 0, "x")
        party.game.rematch_votes = ["c-Guest"]
        effects = leave_party(party, "c-Guest")
        assert [p.name for p in party.players] == ["Host"]
        assert party.game.player_answers == []
        assert party.game.rematch_votes == []
        assert LeaveRoom("c-Guest") in effects

    def test_kick_sends_notice_and_disconnects(self):
        party = make_party("Host", "Guest")
        effects = kick_player(party, "c-Host", "c-Guest")
        assert isinstance(effects[1], SendTo) and effects[1].event == "kicked"
        assert ForceDisconnect("c-Guest") in effects
        assert len(party.players) == 1

    @pytest.mark.parametrize(
        "caller,target,reason",
        [
            ("c-Guest", "c-Host", "not_host"),
            ("c-Host", "c-nobody", "player_not_found"),
            ("c-Host", "c-Host", "cannot_kick_host"),
        ],
    )
    def test_kick_rejections(self, caller, target, reason):
        party = make_party("Host", "Guest")
        with pytest.raises(PartyActionRejected) as exc:
            kick_player(party, caller, target)
        assert exc.value.reason == reason

    def test_guest_drop_removes_immediately(self):
        party = make_party("Host", "Guest")
        connection_lost(party, "c-Guest", now=0)
        assert [p.name for p in party.players] == ["Host"]

    @staticmethod
    def _validated_except_last():
        party = make_party("Host", "G1", "G2", questions=1)
        for cid in ("c-Host", "c-G1", "c-G2"):
            submit_answer(party, cid, 0, "x")
        party.game.current_question = 1
        submit_validation(party, "c-Host", "c-Host", 0, True)
        submit_validation(party, "c-Host", "c-G1", 0, False)
        return party

    def test_drop_completing_validation_sends_final_results(self):
        party = self._validated_except_last()
        effects = connection_lost(party, "c-G2", now=0, close_delay_ms=2000)
        final = next(e for e in effects if isinstance(e, Broadcast) and e.event == "final_game_over")
        assert final.payload["finalScores"] == [{"name": "Host", "score": 1}, {"name": "G1", "score": 0}]
        assert ScheduleTimer("close", 2000) in effects

    @pytest.mark.parametrize("remove", ["leave", "kick"])
    def test_leave_or_kick_completing_validation_sends_final_results(self, remove):
        party = self._validated_except_last()
        if remove == "leave":
            effects = leave_party(party, "c-G2", close_delay_ms=2000)
        else:
            effects = kick_player(party, "c-Host", "c-G2", close_delay_ms=2000)
        assert "final_game_over" in _events(effects)
        assert ScheduleTimer("close", 2000) in effects

    def test_removal_during_play_has_no_follow_up(self):
        party = make_party("Host", "G1", "G2", questions=2)
        effects = connection_lost(party, "c-G2", now=0)
        assert effects == [PersistParty(), BroadcastState()]

    def test_removal_after_completion_does_not_repeat_results(self):
        party = self._validated_except_last()
        submit_validation(party, "c-Host", "c-G2", 0, True)
        effects = leave_party(party, "c-G2")
        assert "final_game_over" not in _events(effects)

    def test_non_voter_leaving_starts_rematch(self):
        party = make_party("Host", "G1", "G2", questions=1, current_question=1)
        submit_rematch_vote(party, "c-Host")
        submit_rematch_vote(party, "c-G1")
        effects = leave_party(party, "c-G2", trigger_delay_ms=500)
        assert "rematch_starting" in _events(effects)
        assert ScheduleTimer("rematch", 500) in effects

    def test_rematch_not_repeated_when_voter_leaves(self):
        party = make_party("Host", "G1", questions=1, current_question=1)
        submit_rematch_vote(party, "c-Host")
        submit_rematch_vote(party, "c-G1")
        effects = leave_party(party, "c-G1")
        assert "rematch_starting" not in _events(effects)

    def test_host_drop_opens_grace_window(self):
        party = make_party("Host", "Guest")
        effects = connection_lost(party, "c-Host", now=1234, grace_ms=15000)
        assert party.game.host_disconnected is True
        assert party.game.host_disconnected_at == 1234
        notice = next(e for e in effects if isinstance(e, Broadcast))
        assert notice.event == "host_disconnected"
        assert notice.payload["timeoutMs"] == 15000
        assert ScheduleTimer("hostGrace", 15000) in effects


class TestHostGraceExpiry:
    def test_promotes_next_player(self):
        party = make_party("Host", "Guest", "Third")
        connection_lost(party, "c-Host", now=0)
        effects = expire_host_grace(party)
        assert [p.name for p in party.players] == ["Guest", "Host", "Third"]
        assert party.game.host_disconnected is False
        promoted = next(e for e in effects if isinstance(e, Broadcast))
        assert promoted.payload == {"newHostId": "c-Guest", "newHostName": "Guest"}

    def test_former_host_can_rejoin_by_name_after_promotion(self):
        party = make_party("Host", "Guest")
        connection_lost(party, "c-Host", now=0)
        expire_host_grace(party)
        join_party(party, "c-host-again", "Host")
        assert [p.connection_id for p in party.players] == ["c-Guest", "c-host-again"]

    def test_new_host_kicking_absent_former_host_unblocks_results(self):
        party = make_party("Host", "Guest", questions=1)
        submit_answer(party, "c-Guest", 0, "x")
        party.game.current_question = 1
        connection_lost(party, "c-Host", now=0)
        expire_host_grace(party)
        submit_validation(party, "c-Guest", "c-Guest", 0, True)

        effects = kick_player(party, "c-Guest", "c-Host", close_delay_ms=2000)

        assert "final_game_over" in _events(effects)
        assert ScheduleTimer("close", 2000) in effects

    def test_closes_when_alone(self):
        party = make_party("Host")
        connection_lost(party, "c-Host", now=0)
        assert expire_host_grace(party) == [CloseParty("Host left and no players to continue")]

    def test_noop_when_host_returned(self):
        party = make_party("Host", "Guest")
        assert expire_host_grace(party) == []


class TestRenameAndRematch:
    def test_rename_moves_room(self):
        party = make_party("Host", "Guest")
        effects = rename_party(party, "c-Host", "XYZ789")
        assert party.code == "XYZ789"
        assert PersistParty(rename_from="ABC123") in effects
        assert MoveRoom("ABC123", "XYZ789") in effects

    def test_rename_requires_host(self):
        party = make_party("Host", "Guest")
        with pytest.raises(PartyActionRejected):
            rename_party(party, "c-Guest", "XYZ789")

    def test_votes_below_threshold(self):
        party = make_party("Host", "Guest", questions=1, current_question=1)
        effects = submit_rematch_vote(party, "c-Guest")
        submit_rematch_vote(party, "c-Guest")
        assert party.game.rematch_votes == ["c-Guest"]
        received = next(e for e in effects if isinstance(e, Broadcast))
        assert received.payload == {"votesReceived": 1, "totalPlayers": 2}

    def test_threshold_schedules_trigger(self):
        party = make_party("Host", "Guest", questions=1, current_question=1)
        submit_rematch_vote(party, "c-Guest")
        effects = submit_rematch_vote(party, "c-Host", trigger_delay_ms=500)
        assert "rematch_starting" in _events(effects)
        assert ScheduleTimer("rematch", 500) in effects
        assert trigger_rematch(party) == [SendTo("c-Host", "trigger_rematch", {"partyCode": "ABC123"})]

    def test_votes_rejected_during_play(self):
        party = make_party("Host", questions=2)
        with pytest.raises(PartyActionRejected):
            submit_rematch_vote(party, "c-Host")


class TestRecoveredTimers:
    def test_playing_party_gets_remaining_time(self):
        party = make_party("Host", questions=2)
        party.game.start_time = 1000
        effects = recovered_timers(party, now=4000)
        assert effects == [ScheduleTimer("question", 7000)]

    def test_grace_window_is_rearmed(self):
        party = make_party("Host", "Guest")
        connection_lost(party, "c-Host", now=1000, grace_ms=15000)
        effects = recovered_timers(party, now=6000, grace_ms=15000)
        assert effects == [ScheduleTimer("hostGrace", 10000)]
