from __future__ import annotations

from fastapi import APIRouter, HTTPException

from partyquiz.runtime import runtime
from partyquiz.runtime_questions import summarize_categories
from partyquiz.runtime_utils import sanitize_party_code

router = APIRouter(tags=["parties"])


@router.get("/api/parties/{code}")
async def party_snapshot(code: str) -> dict[str, object]:
    party_code = sanitize_party_code(code)
    snapshot = await runtime.snapshot_for_code(party_code) if party_code else None
    if snapshot is None:
        raise HTTPException(status_code=404, detail="Party not found")
    return snapshot


@router.get("/api/questions/categories")
async def question_categories() -> dict[str, object]:
    categories = summarize_categories(runtime.bank)
    return {
        "ok": True,
        "total": len(runtime.bank),
        "categories": categories,
    }
