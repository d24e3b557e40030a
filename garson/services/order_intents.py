from __future__ import annotations

import json
import logging
from datetime import timedelta
from typing import Any, Sequence

from sqlalchemy import func
from sqlalchemy.orm import Session

from garson.core.database import utcnow
from garson.core.errors import IntentNotFound, InvalidFeedback
from garson.models.order_intent import (
    FEEDBACK_CORRECT,
    FEEDBACK_INCORRECT,
    INTENT_STATUS_OK,
    INTENT_STATUS_UNAVAILABLE,
    OrderIntent,
)

logger = logging.getLogger(__name__)

FEEDBACK_VALUES = {FEEDBACK_CORRECT, FEEDBACK_INCORRECT}


def _dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False)


def _loads(value: str | None, default: Any) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return default


def record_intent(
    db: Session,
    *,
    tenant_id: int,
    conversation_id: int | None,
    raw_text: str,
    model: str,
    candidates: Sequence[dict] = (),
    items: Sequence[dict] = (),
    dropped: Sequence[dict] = (),
    warnings: Sequence[dict] = (),
    confidence: float = 0.0,
    needs_clarification: bool = False,
    clarification_question: str | None = None,
    error: str | None = None,
) -> OrderIntent:
    intent = OrderIntent(
        tenant_id=tenant_id,
        conversation_id=conversation_id,
        raw_text=raw_text,
        candidates_json=_dumps(list(candidates)),
        items_json=_dumps(list(items)),
        dropped_json=_dumps(list(dropped)),
        warnings_json=_dumps(list(warnings)),
        confidence=float(confidence),
        needs_clarification=needs_clarification,
        clarification_question=clarification_question,
        model=model,
        status=INTENT_STATUS_UNAVAILABLE if error else INTENT_STATUS_OK,
        error=error,
    )
    db.add(intent)
    db.flush()
    return intent


def _get_intent(db: Session, tenant_id: int, intent_id: int) -> OrderIntent:
    intent = (
        db.query(OrderIntent)
        .filter(OrderIntent.id == intent_id, OrderIntent.tenant_id == tenant_id)
        .first()
    )
    if intent is None:
        raise IntentNotFound("order intent not found", intent_id=intent_id)
    return intent


def submit_feedback(db: Session, tenant_id: int, intent_id: int, value: str) -> str:
    """Record a human verdict on an extraction; the first verdict wins.

    Returns the stored value. A repeat call (same or different value) is a
    no-op that returns what is already recorded.
    """
    normalized = (value or "").strip().lower()
    if normalized not in FEEDBACK_VALUES:
        raise InvalidFeedback("feedback must be 'correct' or 'incorrect'", value=value)

    _get_intent(db, tenant_id, intent_id)
    updated = (
        db.query(OrderIntent)
        .filter(
            OrderIntent.id == intent_id,
            OrderIntent.tenant_id == tenant_id,
            OrderIntent.feedback.is_(None),
        )
        .update({"feedback": normalized, "feedback_at": utcnow()}, synchronize_session=False)
    )
    db.commit()

    intent = _get_intent(db, tenant_id, intent_id)
    db.refresh(intent)
    if not updated:
        logger.info("feedback already recorded intent_id=%s stored=%s", intent_id, intent.feedback)
    return intent.feedback


def accuracy_for_tenant(db: Session, tenant_id: int, window_days: int = 30) -> dict[str, Any]:
    since = utcnow() - timedelta(days=window_days)
    rows = (
        db.query(OrderIntent.feedback, func.count(OrderIntent.id))
        .filter(
            OrderIntent.tenant_id == tenant_id,
            OrderIntent.feedback.isnot(None),
            OrderIntent.created_at >= since,
        )
        .group_by(OrderIntent.feedback)
        .all()
    )
    counts = {feedback: int(count) for feedback, count in rows}
    correct = counts.get(FEEDBACK_CORRECT, 0)
    incorrect = counts.get(FEEDBACK_INCORRECT, 0)
    total = correct + incorrect
    return {
        "tenant_id": tenant_id,
        "window_days": window_days,
        "correct": correct,
        "incorrect": incorrect,
        "total": total,
        "accuracy": round(correct / total, 4) if total else None,
    }


def list_intents(
    db: Session,
    tenant_id: int,
    *,
    conversation_id: int | None = None,
    limit: int = 20,
) -> list[OrderIntent]:
    query = db.query(OrderIntent).filter(OrderIntent.tenant_id == tenant_id)
    if conversation_id is not None:
        query = query.filter(OrderIntent.conversation_id == conversation_id)
    return query.order_by(OrderIntent.id.desc()).limit(limit).all()


def serialize_intent(intent: OrderIntent) -> dict[str, Any]:
    return {
        "id": intent.id,
        "conversation_id": intent.conversation_id,
        "raw_text": intent.raw_text,
        "items": _loads(intent.items_json, []),
        "dropped": _loads(intent.dropped_json, []),
        "warnings": _loads(intent.warnings_json, []),
        "confidence": intent.confidence,
        "needs_clarification": bool(intent.needs_clarification),
        "clarification_question": intent.clarification_question,
        "model": intent.model,
        "status": intent.status,
        "error": intent.error,
        "feedback": intent.feedback,
        "created_at": intent.created_at.isoformat() if intent.created_at else None,
    }
