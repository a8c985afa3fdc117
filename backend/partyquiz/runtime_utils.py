from __future__ import annotations

import random
import re
import time
import uuid
from typing import Any, cast

from .runtime_constants import (
    DIFFICULTY_LEVELS,
    MAX_ANSWER_ITEMS,
    MAX_ANSWER_TEXT_LENGTH,
    MAX_PLAYER_NAME_LENGTH,
    MAX_QUESTIONS,
    PARTY_CODE_CHARS,
    PARTY_CODE_LENGTH,
)
from .runtime_types import Difficulty


def now_ms() -> int:
    return int(time.time() * 1000)


def random_id() -> str:
    return str(uuid.uuid4())


def random_party_code(length: int = PARTY_CODE_LENGTH) -> str:
    return "".join(random.choice(PARTY_CODE_CHARS) for _ in range(max(4, length)))


def sanitize_party_code(raw: Any) -> str:
    value = str(raw or "").upper()
    filtered = "".join(ch for ch in value if ch.isalnum())
    return filtered[:10]


def sanitize_player_name(raw: Any) -> str:
    value = str(raw or "").strip()
    return re.sub(r"\s+", " ", value)[:MAX_PLAYER_NAME_LENGTH].strip()


def normalize_difficulty(value: Any) -> Difficulty:
    normalized = str(value or "").strip().lower()
    if normalized in DIFFICULTY_LEVELS:
        return cast(Difficulty, normalized)
    return "medium"


def clamp_num_questions(value: Any) -> int:
    try:
        num = int(value)
    except (TypeError, ValueError):
        return 10
    return max(1, min(MAX_QUESTIONS, num))


def normalize_categories(values: Any) -> list[str]:
    if not isinstance(values, (list, tuple)):
        return []
    cleaned = [str(value).strip()[:80] for value in values if str(value or "").strip()]
    return list(dict.fromkeys(cleaned))


def _sanitize_answer_text(value: Any) -> str:
    return str(value if value is not None else "").strip()[:MAX_ANSWER_TEXT_LENGTH]


def sanitize_answer(raw: Any) -> Any:
    """Clamp a submitted answer to a storable shape; missing answers become ``""``."""
    if raw is None:
        return ""
    if isinstance(raw, (list, tuple)):
        return [_sanitize_answer_text(item) for item in raw[:MAX_ANSWER_ITEMS]]
    if isinstance(raw, dict):
        items = list(raw.items())[:MAX_ANSWER_ITEMS]
        return {str(key)[:40]: _sanitize_answer_text(value) for key, value in items}
    if isinstance(raw, bool):
        return "true" if raw else "false"
    return _sanitize_answer_text(raw)
