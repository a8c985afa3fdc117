from __future__ import annotations

import copy
import random
from typing import Any, Iterable

from .runtime_constants import DIFFICULTY_LEVELS, DIFFICULTY_TIERS
from .runtime_types import GameSettings


def select_questions(
    bank: Iterable[dict[str, Any]],
    settings: GameSettings,
    rng: random.Random | None = None,
) -> list[dict[str, Any]]:
    """Pick the questions for one run of a party.

    The bank is narrowed to the requested categories, then split into difficulty tiers
    (``medium`` keeps medium then easy, ``hard`` keeps hard, medium, easy). Each tier is
    shuffled and the tiers are concatenated so truncation to ``num_questions`` favours
    the requested difficulty; the kept subset is shuffled again for play order.
    """
    chooser = rng or random
    categories = set(settings.categories)
    in_categories = [question for question in bank if question.get("category") in categories]

    ordered: list[dict[str, Any]] = []
    for difficulty in DIFFICULTY_TIERS.get(settings.difficulty, DIFFICULTY_LEVELS):
        tier = [question for question in in_categories if question.get("difficulty") == difficulty]
        chooser.shuffle(tier)
        ordered.extend(tier)

    selected = [copy.deepcopy(question) for question in ordered[: max(0, settings.num_questions)]]
    chooser.shuffle(selected)
    return selected


def summarize_categories(bank: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
    counts: dict[str, dict[str, int]] = {}
    for question in bank:
        category = str(question.get("category") or "")
        difficulty = str(question.get("difficulty") or "")
        per_difficulty = counts.setdefault(category, {level: 0 for level in DIFFICULTY_LEVELS})
        if difficulty in per_difficulty:
            per_difficulty[difficulty] += 1

    return [
        {"category": category, "total": sum(per_difficulty.values()), "byDifficulty": per_difficulty}
        for category, per_difficulty in counts.items()
    ]
