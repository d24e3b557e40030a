from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Sequence

from pydantic import ValidationError
from sqlalchemy.orm import Session

from garson.ai.base import ExtractionBackend
from garson.ai.schema import ExtractedItem, ExtractionResult
from garson.core.config import CONFIDENCE_THRESHOLD
from garson.core.errors import CatalogInconsistency, ExtractionUnavailable
from garson.services.menu_candidates import MenuCandidate
from garson.services.menu_catalog import OptionGroup, OptionGroupSnapshot, OptionSnapshot
from garson.services.order_intents import record_intent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ValidatedItem:
    menu_item_id: int
    name: str
    quantity: int
    base_price_cents: int
    options: tuple[OptionSnapshot, ...] = ()
    notes: str | None = None
    confidence: float = 1.0
    missing_groups: tuple[OptionGroup, ...] = ()

    @property
    def incomplete(self) -> bool:
        return bool(self.missing_groups)

    @property
    def unit_price_cents(self) -> int:
        return self.base_price_cents + sum(option.price_delta_cents for option in self.options)

    def to_dict(self) -> dict[str, Any]:
        return {
            "menu_item_id": self.menu_item_id,
            "name": self.name,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "options": [{"id": option.id, "name": option.name} for option in self.options],
            "notes": self.notes,
            "confidence": self.confidence,
            "missing_groups": [group.id for group in self.missing_groups],
        }


@dataclass
class ExtractionOutcome:
    items: list[ValidatedItem]
    confidence: float
    backend: str
    clarification_question: str | None = None
    warnings: list[dict] = field(default_factory=list)
    dropped: list[dict] = field(default_factory=list)
    intent_id: int | None = None
    fallback_used: bool = False

    def needs_clarification(self, threshold: float = CONFIDENCE_THRESHOLD) -> bool:
        return not self.items or self.confidence < threshold


def _clamp(value: float) -> float:
    return min(max(value, 0.0), 1.0)


def coerce_result(raw: ExtractionResult | dict[str, Any]) -> tuple[ExtractionResult, list[dict]]:
    """Validate backend output item by item so one bad entry does not sink the rest."""
    if isinstance(raw, ExtractionResult):
        raw = raw.model_dump()
    if not isinstance(raw, dict):
        raise ExtractionUnavailable("backend returned a non-object payload")

    try:
        confidence = _clamp(float(raw.get("confidence", 0.0)))
    except (TypeError, ValueError) as exc:
        raise ExtractionUnavailable("backend returned a malformed confidence") from exc

    dropped: list[dict] = []
    items: list[ExtractedItem] = []
    for entry in raw.get("items") or []:
        if isinstance(entry, dict) and "confidence" in entry:
            try:
                entry = {**entry, "confidence": _clamp(float(entry["confidence"]))}
            except (TypeError, ValueError):
                entry = {**entry, "confidence": 0.0}
        try:
            items.append(ExtractedItem.model_validate(entry))
        except ValidationError:
            dropped.append({"item": entry, "reason": "invalid_item"})

    question = raw.get("clarification_question")
    result = ExtractionResult(
        items=items,
        confidence=confidence,
        clarification_question=str(question).strip() if question else None,
        notes=raw.get("notes"),
    )
    return result, dropped


def validate_extraction(
    result: ExtractionResult,
    candidates: Sequence[MenuCandidate],
    option_groups: OptionGroupSnapshot,
) -> tuple[list[ValidatedItem], list[dict], list[dict]]:
    """Constrain a raw extraction to the candidate set and the item's option groups.

    Returns (items, dropped, warnings). Only ids offered as candidates survive,
    so the result is always a subset of the candidate set.
    """
    candidate_ids = {candidate.menu_item_id for candidate in candidates}
    items: list[ValidatedItem] = []
    dropped: list[dict] = []
    warnings: list[dict] = []

    for extracted in result.items:
        item_id = extracted.menu_item_id
        if item_id not in candidate_ids:
            dropped.append({"menu_item_id": item_id, "reason": "not_a_candidate"})
            continue

        snapshot_item = option_groups.items.get(item_id)
        if snapshot_item is None:
            error = CatalogInconsistency("candidate item is no longer on the menu", menu_item_id=item_id)
            logger.warning("catalog inconsistency menu_item_id=%s", item_id)
            dropped.append({"menu_item_id": item_id, "reason": "catalog_inconsistency"})
            warnings.append(error.to_dict())
            continue

        options: list[OptionSnapshot] = []
        chosen_groups: set[int] = set()
        for option_id in dict.fromkeys(extracted.option_ids):
            found = option_groups.find_option(item_id, option_id)
            if found is None:
                dropped.append({"menu_item_id": item_id, "option_id": option_id, "reason": "invalid_option"})
                continue
            group, option = found
            if not group.is_multi and group.id in chosen_groups:
                dropped.append({"menu_item_id": item_id, "option_id": option_id, "reason": "single_choice_group"})
                continue
            chosen_groups.add(group.id)
            options.append(option)

        missing = tuple(
            group
            for group in option_groups.groups_for(item_id)
            if group.required and group.id not in chosen_groups
        )
        if missing:
            warnings.append(
                {
                    "code": "missing_required",
                    "menu_item_id": item_id,
                    "groups": [group.name for group in missing],
                }
            )

        notes = (extracted.notes or "").strip() or None
        items.append(
            ValidatedItem(
                menu_item_id=item_id,
                name=snapshot_item.name,
                quantity=extracted.quantity,
                base_price_cents=snapshot_item.price_cents,
                options=tuple(options),
                notes=notes,
                confidence=extracted.confidence,
                missing_groups=missing,
            )
        )

    return items, dropped, warnings


class IntentExtractor:
    """Runs the extraction backends in order and returns the first usable answer.

    Each attempt is persisted as an OrderIntent, including attempts whose
    backend was unavailable.
    """

    def __init__(self, backends: Sequence[ExtractionBackend], *, confidence_threshold: float = CONFIDENCE_THRESHOLD):
        self.backends = list(backends)
        self.confidence_threshold = confidence_threshold

    def extract(
        self,
        db: Session,
        *,
        tenant_id: int,
        conversation_id: int | None,
        text: str,
        candidates: Sequence[MenuCandidate],
        option_groups: OptionGroupSnapshot,
        history: Sequence[dict[str, str]] = (),
    ) -> ExtractionOutcome:
        candidate_payload = [candidate.to_dict() for candidate in candidates]
        errors: list[str] = []

        for index, backend in enumerate(self.backends):
            start = time.perf_counter()
            try:
                raw = backend.extract(text, candidates, option_groups, history, tenant_id=tenant_id)
                result, invalid = coerce_result(raw)
            except ExtractionUnavailable as exc:
                errors.append(f"{backend.name}: {exc.message}")
                logger.warning("extraction backend unavailable backend=%s error=%s", backend.name, exc.message)
                record_intent(
                    db,
                    tenant_id=tenant_id,
                    conversation_id=conversation_id,
                    raw_text=text,
                    model=backend.name,
                    candidates=candidate_payload,
                    error=exc.message,
                )
                continue

            items, dropped, warnings = validate_extraction(result, candidates, option_groups)
            dropped = invalid + dropped
            outcome = ExtractionOutcome(
                items=items,
                confidence=result.confidence,
                backend=backend.name,
                clarification_question=result.clarification_question,
                warnings=warnings,
                dropped=dropped,
                fallback_used=index > 0,
            )
            intent = record_intent(
                db,
                tenant_id=tenant_id,
                conversation_id=conversation_id,
                raw_text=text,
                model=backend.name,
                candidates=candidate_payload,
                items=[item.to_dict() for item in items],
                dropped=dropped,
                warnings=warnings,
                confidence=outcome.confidence,
                needs_clarification=outcome.needs_clarification(self.confidence_threshold),
                clarification_question=outcome.clarification_question,
            )
            outcome.intent_id = intent.id
            logger.info(
                "extraction backend=%s items=%s dropped=%s confidence=%.2f",
                backend.name,
                len(items),
                len(dropped),
                outcome.confidence,
                extra={"duration_ms": round((time.perf_counter() - start) * 1000, 2)},
            )
            return outcome

        raise ExtractionUnavailable("no extraction backend produced a result", errors=errors)
