"""Keyword/question overlap matching over a chatbot's inline knowledge base."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any

QUESTION_WEIGHT = 0.6
KEYWORD_WEIGHT = 0.4
MIN_SCORE = 0.3


@dataclass
class KBMatch:
    item_id: str | None
    answer: str
    score: float


def _score(message: str, item: dict[str, Any]) -> float:
    words = message.split()
    question_words = str(item.get("question") or "").lower().split()
    score = 0.0
    if question_words:
        common = [w for w in question_words if any(m in w or w in m for m in words)]
        score += len(common) / len(question_words) * QUESTION_WEIGHT
    keywords = [str(k).lower() for k in (item.get("keywords") or []) if str(k).strip()]
    if keywords:
        hits = [k for k in keywords if k in message]
        score += len(hits) / len(keywords) * KEYWORD_WEIGHT
    try:
        confidence = float(item.get("confidence", 1.0))
    except (TypeError, ValueError):
        confidence = 1.0
    return score * confidence


def match_knowledge_base(message: str, items: list[dict[str, Any]] | None) -> KBMatch | None:
    """Best active item scoring above the threshold, or None."""
    if not items or not message:
        return None
    lower = message.lower()
    best: KBMatch | None = None
    for item in items:
        if not isinstance(item, dict) or not item.get("isActive", item.get("is_active", True)):
            continue
        if not item.get("answer"):
            continue
        score = _score(lower, item)
        if score > MIN_SCORE and (best is None or score > best.score):
            best = KBMatch(item_id=item.get("id"), answer=str(item["answer"]), score=score)
    return best
