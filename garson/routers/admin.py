from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from garson.ai.service import SUPPORTED_PROVIDERS, get_ai_config
from garson.core.database import get_db
from garson.core.errors import ConversationNotFound, IntentNotFound, InvalidFeedback
from garson.deps import get_engine, require_admin_token
from garson.fsm.engine import ConversationEngine
from garson.models.ai_config import AIConfig
from garson.services.order_intents import accuracy_for_tenant, list_intents, serialize_intent, submit_feedback

router = APIRouter(prefix="/api/admin", tags=["admin"], dependencies=[Depends(require_admin_token)])
logger = logging.getLogger(__name__)


class FeedbackPayload(BaseModel):
    value: str = Field(..., min_length=1)


class AIConfigRead(BaseModel):
    id: int
    tenant_id: int
    provider: str
    enabled: bool
    model: Optional[str] = None
    temperature: Optional[float] = None
    upsell_messages_enabled: bool


class AIConfigUpdate(BaseModel):
    provider: str = Field(..., min_length=1)
    enabled: bool = True
    model: Optional[str] = None
    temperature: Optional[float] = Field(None, ge=0.0, le=2.0)
    upsell_messages_enabled: bool = True


def _serialize_config(config: AIConfig) -> dict:
    return {
        "id": config.id,
        "tenant_id": config.tenant_id,
        "provider": config.provider,
        "enabled": config.enabled,
        "model": config.model,
        "temperature": config.temperature,
        "upsell_messages_enabled": config.upsell_messages_enabled,
    }


@router.get("/{tenant_id}/intents", response_model=List[dict])
def get_intents(
    tenant_id: int,
    conversation_id: Optional[int] = None,
    limit: int = Query(20, ge=1, le=200),
    db: Session = Depends(get_db),
):
    return [serialize_intent(intent) for intent in list_intents(db, tenant_id, conversation_id=conversation_id, limit=limit)]


@router.get("/{tenant_id}/intents/accuracy")
def get_intent_accuracy(
    tenant_id: int,
    window_days: int = Query(30, ge=1, le=365),
    db: Session = Depends(get_db),
):
    return accuracy_for_tenant(db, tenant_id, window_days=window_days)


@router.post("/{tenant_id}/intents/{intent_id}/feedback")
def post_intent_feedback(
    tenant_id: int,
    intent_id: int,
    payload: FeedbackPayload,
    db: Session = Depends(get_db),
):
    try:
        stored = submit_feedback(db, tenant_id, intent_id, payload.value)
    except IntentNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=exc.to_dict()) from exc
    except InvalidFeedback as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.to_dict()) from exc
    return {"intent_id": intent_id, "feedback": stored}


@router.post("/{tenant_id}/conversations/{conversation_id}/reset")
def reset_conversation(
    tenant_id: int,
    conversation_id: int,
    db: Session = Depends(get_db),
    engine: ConversationEngine = Depends(get_engine),
):
    try:
        result = engine.reset_conversation(db, tenant_id, conversation_id)
    except ConversationNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=exc.to_dict()) from exc
    return {"conversation_id": conversation_id, "state": result.state.value}


@router.get("/{tenant_id}/ai/config", response_model=AIConfigRead)
def read_ai_config(tenant_id: int, db: Session = Depends(get_db)):
    config = get_ai_config(db, tenant_id)
    db.commit()
    db.refresh(config)
    return _serialize_config(config)


@router.put("/{tenant_id}/ai/config", response_model=AIConfigRead)
def update_ai_config(tenant_id: int, payload: AIConfigUpdate, db: Session = Depends(get_db)):
    provider = payload.provider.strip().lower()
    if provider not in SUPPORTED_PROVIDERS:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid provider")

    config = get_ai_config(db, tenant_id)
    config.provider = provider
    config.enabled = bool(payload.enabled)
    config.model = payload.model.strip() if payload.model else None
    config.temperature = payload.temperature
    config.upsell_messages_enabled = bool(payload.upsell_messages_enabled)

    db.commit()
    db.refresh(config)
    logger.info("ai config updated tenant_id=%s provider=%s enabled=%s", tenant_id, config.provider, config.enabled)
    return _serialize_config(config)
