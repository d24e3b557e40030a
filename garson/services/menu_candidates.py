from __future__ import annotations

import difflib
import logging
import time
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy.orm import Session

from garson.core.config import CANDIDATE_LIMIT
from garson.services.menu_catalog import MenuCatalog, MenuItemSnapshot, SynonymSnapshot
from garson.services.menu_search import FILLER_TOKENS, contains_phrase, normalize, parse_qty

logger = logging.getLogger(__name__)

MATCH_EXACT = "exact"
MATCH_SYNONYM = "synonym"
MATCH_FUZZY = "fuzzy"

# an exact/synonym hit at or above this weight skips fuzzy scoring for the item
MIN_EXACT_WEIGHT = 0.5
MIN_FUZZY_SCORE = 0.45
MAX_FUZZY_SCORE = 0.95
TOKEN_SIMILARITY = 0.75


@dataclass(frozen=True)
class MenuCandidate:
    menu_item_id: int
    name: str
    matched_phrase: str
    score: float
    match_type: str
    price_cents: int = 0

    def to_dict(self) -> dict:
        return {
            "menu_item_id": self.menu_item_id,
            "name": self.name,
            "matched_phrase": self.matched_phrase,
            "score": round(self.score, 4),
            "match_type": self.match_type,
            "price_cents": self.price_cents,
        }


def _text_tokens(normalized_text: str) -> list[str]:
    tokens = []
    for token in normalized_text.split():
        if token in FILLER_TOKENS or parse_qty(token) is not None:
            continue
        if len(token) < 2:
            continue
        tokens.append(token)
    return tokens


def _fuzzy_score(text_tokens: list[str], normalized_name: str) -> tuple[float, str]:
    name_tokens = normalized_name.split()
    if not name_tokens or not text_tokens:
        return 0.0, ""

    # token overlap, tolerant to typos ("tavk" vs "tavuk")
    matched: list[str] = []
    similarity_sum = 0.0
    for name_token in name_tokens:
        best_ratio = 0.0
        best_token = ""
        for token in text_tokens:
            ratio = difflib.SequenceMatcher(None, token, name_token).ratio()
            if ratio > best_ratio:
                best_ratio, best_token = ratio, token
        if best_ratio >= TOKEN_SIMILARITY:
            matched.append(best_token)
            similarity_sum += best_ratio
    token_score = similarity_sum / len(name_tokens)
    best_score, best_phrase = token_score, " ".join(matched)

    # whole-name similarity against windows of the same token length
    width = len(name_tokens)
    for start in range(0, max(len(text_tokens) - width + 1, 1)):
        window = " ".join(text_tokens[start:start + width])
        ratio = difflib.SequenceMatcher(None, window, normalized_name).ratio()
        if ratio > best_score:
            best_score, best_phrase = ratio, window

    return min(best_score * MAX_FUZZY_SCORE, MAX_FUZZY_SCORE), best_phrase


def _is_better(candidate: MenuCandidate, current: MenuCandidate | None) -> bool:
    if current is None:
        return True
    if candidate.score != current.score:
        return candidate.score > current.score
    return len(candidate.matched_phrase) < len(current.matched_phrase)


def find_candidates(
    items: Iterable[MenuItemSnapshot],
    synonyms: Iterable[SynonymSnapshot],
    text: str,
    limit: int = CANDIDATE_LIMIT,
) -> list[MenuCandidate]:
    """Rank the menu items a message plausibly refers to.

    Works purely on the snapshots it receives, so it can run concurrently.
    Ordering is deterministic: score desc, shorter matched phrase, item id.
    """
    normalized_text = normalize(text)
    if not normalized_text or limit <= 0:
        return []

    items_by_id = {item.id: item for item in items}
    best: dict[int, MenuCandidate] = {}

    def _offer(candidate: MenuCandidate) -> None:
        if _is_better(candidate, best.get(candidate.menu_item_id)):
            best[candidate.menu_item_id] = candidate

    for item in items_by_id.values():
        normalized_name = normalize(item.name)
        if contains_phrase(normalized_text, normalized_name):
            _offer(MenuCandidate(item.id, item.name, normalized_name, 1.0, MATCH_EXACT, item.price_cents))

    for synonym in synonyms:
        item = items_by_id.get(synonym.menu_item_id)
        if item is None:
            continue
        phrase = normalize(synonym.phrase)
        weight = max(0.0, min(float(synonym.weight), 1.0))
        if weight > 0 and contains_phrase(normalized_text, phrase):
            _offer(MenuCandidate(item.id, item.name, phrase, weight, MATCH_SYNONYM, item.price_cents))

    text_tokens = _text_tokens(normalized_text)
    for item in items_by_id.values():
        current = best.get(item.id)
        if current is not None and current.score >= MIN_EXACT_WEIGHT:
            continue
        score, phrase = _fuzzy_score(text_tokens, normalize(item.name))
        if score >= MIN_FUZZY_SCORE:
            _offer(MenuCandidate(item.id, item.name, phrase, round(score, 4), MATCH_FUZZY, item.price_cents))

    ranked = sorted(best.values(), key=lambda c: (-c.score, len(c.matched_phrase), c.menu_item_id))
    return ranked[:limit]


def find_menu_candidates(
    db: Session,
    tenant_id: int,
    text: str,
    *,
    catalog: MenuCatalog | None = None,
    limit: int = CANDIDATE_LIMIT,
) -> list[MenuCandidate]:
    catalog = catalog or MenuCatalog()
    start = time.perf_counter()
    items = catalog.get_active_menu_items(db, tenant_id)
    synonyms = catalog.get_synonyms(db, tenant_id)
    candidates = find_candidates(items, synonyms, text, limit=limit)
    logger.info(
        "menu candidates tenant_id=%s count=%s top=%s",
        tenant_id,
        len(candidates),
        candidates[0].name if candidates else None,
        extra={"duration_ms": round((time.perf_counter() - start) * 1000, 2)},
    )
    return candidates
