from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from .config import settings
from .runtime_types import Difficulty

logger = logging.getLogger(__name__)

MAX_PLAYERS = settings.max_players
HOST_GRACE_MS = settings.host_grace_ms
FINAL_RESULTS_CLOSE_DELAY_MS = settings.final_results_close_delay_ms
REMATCH_TRIGGER_DELAY_MS = settings.rematch_trigger_delay_ms
# Accept the current question and this many preceding ones, so a submission racing
# the scheduler's auto-advance is not lost.
ANSWER_INDEX_TOLERANCE = settings.answer_index_tolerance
PARTY_CODE_LENGTH = settings.party_code_length
PARTY_CODE_CHARS = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
PARTY_CODE_ATTEMPTS = 32
MIN_TIMER_DELAY_MS = 50
MAX_QUESTIONS = 50
MAX_PLAYER_NAME_LENGTH = 24
MAX_ANSWER_TEXT_LENGTH = 500
MAX_ANSWER_ITEMS = 20
HOST_DISCONNECTED_MESSAGE = "Host disconnected, waiting for reconnection"
HOST_LEFT_REASON = "Host left the game"
HOST_GONE_REASON = "Host left and no players to continue"
KICKED_REASON = "You were kicked from the party by the host."

DIFFICULTY_LEVELS: tuple[Difficulty, Difficulty, Difficulty] = ("easy", "medium", "hard")
# Selection tiers per requested difficulty, most wanted first.
DIFFICULTY_TIERS: dict[Difficulty, tuple[Difficulty, ...]] = {
    "easy": ("easy",),
    "medium": ("medium", "easy"),
    "hard": ("hard", "medium", "easy"),
}
# Question fields that carry the correct answer and are redacted during play.
ANSWER_FIELDS: tuple[str, ...] = ("answer", "answerFr")
QUESTION_TYPES = ("text", "multiple-choice", "image-text", "lyrics", "ranking", "audio", "petit-bac")
_OPTIONAL_TEXT_FIELDS = ("questionFr", "audioUrl")
_OPTIONAL_LIST_FIELDS = ("options", "imageUrls", "categories")


def _sanitize_question_entry(raw: Any) -> dict[str, Any] | None:
    if not isinstance(raw, dict):
        return None

    category = str(raw.get("category") or "").strip()[:80]
    text = str(raw.get("question") or "").strip()
    difficulty = str(raw.get("difficulty") or "").strip().lower()
    answer = raw.get("answer")
    if not category or not text or difficulty not in DIFFICULTY_LEVELS:
        return None
    if answer is None or answer == "":
        return None

    question_type = str(raw.get("type") or "text").strip().lower()
    if question_type not in QUESTION_TYPES:
        question_type = "text"

    entry: dict[str, Any] = {
        "category": category,
        "difficulty": difficulty,
        "type": question_type,
        "question": text[:300],
        "answer": answer,
    }
    if raw.get("answerFr") not in (None, ""):
        entry["answerFr"] = raw["answerFr"]
    for key in _OPTIONAL_TEXT_FIELDS:
        value = str(raw.get(key) or "").strip()
        if value:
            entry[key] = value[:300]
    for key in _OPTIONAL_LIST_FIELDS:
        values = raw.get(key)
        if isinstance(values, list):
            cleaned = [str(value).strip() for value in values if str(value).strip()]
            if cleaned:
                entry[key] = cleaned[:12]
    return entry


def load_question_bank(path: Path) -> list[dict[str, Any]]:
    payload = json.loads(path.read_text(encoding="utf-8"))
    entries_raw = payload.get("questions") if isinstance(payload, dict) else payload
    if not isinstance(entries_raw, list):
        raise RuntimeError(f"{path.name} must contain a 'questions' list")

    bank = [entry for entry in (_sanitize_question_entry(item) for item in entries_raw) if entry]
    if not bank:
        raise RuntimeError(f"No valid questions were loaded from {path.name}")

    skipped = len(entries_raw) - len(bank)
    if skipped:
        logger.warning("Skipped %s malformed question bank entries in %s", skipped, path.name)
    return bank


QUESTION_BANK: list[dict[str, Any]] = load_question_bank(settings.question_bank_path)
QUESTION_CATEGORIES: tuple[str, ...] = tuple(
    dict.fromkeys(entry["category"] for entry in QUESTION_BANK)
)
