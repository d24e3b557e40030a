from __future__ import annotations

import re
from typing import Any, Sequence

from garson.services.menu_candidates import MATCH_EXACT, MIN_FUZZY_SCORE, MenuCandidate, find_candidates
from garson.services.menu_catalog import MenuItemSnapshot, OptionGroupSnapshot, SynonymSnapshot
from garson.services.menu_search import contains_phrase, normalize, parse_order_text

# "soğansız", "acısız", "turşusuz" -> kitchen note
_WITHOUT_PATTERN = re.compile(r"\b(\w{2,}(?:siz|suz))\b")

CLARIFY_NOTHING_FOUND = "Hangi ürünü istediğinizi tam anlayamadım. Menüden bir ürün adı yazabilir misiniz?"
CLARIFY_PARTIAL = "Bazı ürünleri menüde bulamadım: {missing}. Başka bir şey mi demek istediniz?"


def _local_catalog(candidates: Sequence[MenuCandidate]) -> tuple[list[MenuItemSnapshot], list[SynonymSnapshot]]:
    items: dict[int, MenuItemSnapshot] = {}
    synonyms: list[SynonymSnapshot] = []
    for candidate in candidates:
        items.setdefault(
            candidate.menu_item_id,
            MenuItemSnapshot(id=candidate.menu_item_id, name=candidate.name, price_cents=candidate.price_cents),
        )
        if candidate.match_type != MATCH_EXACT and candidate.matched_phrase:
            synonyms.append(SynonymSnapshot(candidate.menu_item_id, candidate.matched_phrase, candidate.score))
    return list(items.values()), synonyms


def _best_match(items, synonyms, segment: str) -> MenuCandidate | None:
    matches = find_candidates(items, synonyms, segment, limit=len(items))
    if not matches or matches[0].score < MIN_FUZZY_SCORE:
        return None
    # "tavuk döner dürüm" must pick the dürüm, not the shorter "tavuk döner"
    top = [match for match in matches if match.score == matches[0].score]
    return max(top, key=lambda match: (len(match.matched_phrase), -match.menu_item_id))


def _pick_options(segment: str, menu_item_id: int, option_groups: OptionGroupSnapshot) -> list[int]:
    normalized_segment = normalize(segment)
    picked: list[int] = []
    for group in option_groups.groups_for(menu_item_id):
        for option in group.options:
            if contains_phrase(normalized_segment, normalize(option.name)):
                picked.append(option.id)
    return picked


def _extract_notes(segment: str) -> str | None:
    notes = _WITHOUT_PATTERN.findall(normalize(segment))
    return ", ".join(notes) if notes else None


class RuleBasedExtractionBackend:
    """Deterministic parser over the supplied candidates.

    Used when no language model is configured and as the fallback when the
    model backend is unavailable.
    """

    name = "rules"
    available = True

    def extract(
        self,
        text: str,
        candidates: Sequence[MenuCandidate],
        option_groups: OptionGroupSnapshot,
        history: Sequence[dict[str, str]],
        *,
        tenant_id: int | None = None,
    ) -> dict[str, Any]:
        segments = parse_order_text(text)
        if not segments or not candidates:
            return {"items": [], "confidence": 0.0, "clarification_question": CLARIFY_NOTHING_FOUND}

        items, synonyms = _local_catalog(candidates)
        extracted: list[dict[str, Any]] = []
        missing: list[str] = []
        for segment in segments:
            best = _best_match(items, synonyms, segment["raw_name"])
            if best is None:
                missing.append(segment["raw_name"])
                continue
            extracted.append(
                {
                    "menu_item_id": best.menu_item_id,
                    "quantity": segment["qty"],
                    "option_ids": _pick_options(segment["raw_name"], best.menu_item_id, option_groups),
                    "notes": _extract_notes(segment["raw_name"]),
                    "confidence": round(best.score, 4),
                }
            )

        if not extracted:
            return {"items": [], "confidence": 0.0, "clarification_question": CLARIFY_NOTHING_FOUND}

        confidence = sum(item["confidence"] for item in extracted) / len(extracted)
        confidence *= len(extracted) / len(segments)
        clarification = None
        if missing:
            clarification = CLARIFY_PARTIAL.format(missing=", ".join(missing))
        return {
            "items": extracted,
            "confidence": round(min(max(confidence, 0.0), 1.0), 4),
            "clarification_question": clarification,
        }
