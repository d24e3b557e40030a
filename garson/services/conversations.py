from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from garson.models.conversation import Conversation
from garson.models.processed_message import ProcessedMessage

logger = logging.getLogger(__name__)


def get_or_create_conversation(db: Session, tenant_id: int, phone: str, name: str | None = None) -> Conversation:
    """One conversation per (tenant, customer phone); created on the first inbound message."""
    conversation = (
        db.query(Conversation)
        .filter(Conversation.tenant_id == tenant_id, Conversation.customer_phone == phone)
        .first()
    )
    if conversation:
        return conversation

    conversation = Conversation(tenant_id=tenant_id, customer_phone=phone, customer_name=name)
    db.add(conversation)
    try:
        db.commit()
    except IntegrityError:
        # a concurrent webhook delivery created it first
        db.rollback()
        conversation = (
            db.query(Conversation)
            .filter(Conversation.tenant_id == tenant_id, Conversation.customer_phone == phone)
            .one()
        )
        return conversation
    db.refresh(conversation)
    logger.info("conversation created conversation_id=%s", conversation.id)
    return conversation


def mark_processed(db: Session, tenant_id: int, message_id: str) -> bool:
    """Record an inbound provider message id; False when it was already handled."""
    if db.query(ProcessedMessage).filter(ProcessedMessage.message_id == message_id).first():
        return False
    db.add(ProcessedMessage(message_id=message_id, tenant_id=tenant_id))
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return False
    return True
