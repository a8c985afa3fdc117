from __future__ import annotations

from conftest import make_party
from partyquiz.runtime_ledger import (
    answers_per_question,
    apply_verdict,
    is_fully_validated,
    is_question_index_accepted,
    upsert_answer,
)
from partyquiz.runtime_types import PlayerAnswer
from partyquiz.runtime_utils import sanitize_answer
from partyquiz.runtime_visibility import (
    build_party_snapshot,
    build_question_payload,
    party_phase,
    redact_question,
)


class TestLedger:
    def test_tolerance_window(self):
        party = make_party("Host", questions=4, current_question=2)
        game = party.game
        assert is_question_index_accepted(game, 2, 1)
        assert is_question_index_accepted(game, 1, 1)
        assert not is_question_index_accepted(game, 0, 1)
        assert is_question_index_accepted(game, 0, 2)
        assert not is_question_index_accepted(game, 1, 0)

    def test_upsert_keeps_single_record(self):
        party = make_party("Host", questions=2)
        _, created = upsert_answer(party.game, player_id="p", player_name="P", question_index=0, answer="a")
        entry, created_again = upsert_answer(
            party.game, player_id="p", player_name="P", question_index=0, answer="b"
        )
        assert created and not created_again
        assert entry.answer == "b"
        assert answers_per_question(party.game) == {0: 1}

    def test_verdict_score_never_negative(self):
        party = make_party("Host")
        player = party.players[0]
        entry = PlayerAnswer(player_id="c-Host", player_name="Host", question_index=0, is_correct=True)
        assert apply_verdict(entry, player, False) == 0
        assert player.score == 0
        assert entry.validated is True

    def test_fully_validated_requires_every_answer(self):
        party = make_party("Host", "Guest", questions=1, current_question=1)
        for player_id in ("c-Host", "c-Guest"):
            entry, _ = upsert_answer(
                party.game, player_id=player_id, player_name=player_id, question_index=0, answer=""
            )
            entry.validated = True
        assert is_fully_validated(party)
        party.game.player_answers.pop()
        assert not is_fully_validated(party)

    def test_lobby_is_never_fully_validated(self):
        assert not is_fully_validated(make_party("Host"))


class TestAnswerSanitizing:
    def test_text_is_trimmed_and_capped(self):
        assert sanitize_answer("  Paris ") == "Paris"
        assert len(sanitize_answer("x" * 2000)) == 500

    def test_structures_are_capped(self):
        assert len(sanitize_answer([str(i) for i in range(50)])) == 20
        assert sanitize_answer({"Animal": " Cat ", "City": None}) == {"Animal": "Cat", "City": ""}

    def test_missing_becomes_empty(self):
        assert sanitize_answer(None) == ""


class TestVisibility:
    def test_redacted_while_playing(self):
        party = make_party("Host", "Guest", questions=3, current_question=1)
        snapshot = build_party_snapshot(party)
        assert snapshot["phase"] == "playing"
        assert snapshot["answersRevealed"] is False
        for question in snapshot["game"]["questions"]:
            assert "answer" not in question
            assert "answerFr" not in question
        assert "answer" in party.game.questions[0]

    def test_revealed_once_play_is_over(self):
        party = make_party("Host", questions=3, current_question=3)
        snapshot = build_party_snapshot(party)
        assert snapshot["phase"] == "validating"
        assert all("answer" in q for q in snapshot["game"]["questions"])

    def test_snapshot_lists_host_first(self):
        party = make_party("Host", "Guest")
        snapshot = build_party_snapshot(party)
        assert snapshot["players"][0] == {"id": "c-Host", "name": "Host", "score": 0}
        assert snapshot["phase"] == "lobby"
        assert party_phase(party, closed=True) == "closed"

    def test_question_payload_is_redacted(self):
        party = make_party("Host", questions=2)
        party.game.start_time = 99
        payload = build_question_payload(party)
        assert payload["questionIndex"] == 0
        assert payload["startTime"] == 99
        assert payload["timePerQuestion"] == 10
        assert "answer" not in payload["question"]

    def test_redact_keeps_other_fields(self):
        question = {"question": "Q?", "options": ["a", "b"], "answer": "a"}
        assert redact_question(question) == {"question": "Q?", "options": ["a", "b"]}
        assert redact_question(None) is None
