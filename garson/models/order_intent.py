from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Index, Integer, String, Text

from garson.core.database import Base, utcnow

INTENT_STATUS_OK = "ok"
INTENT_STATUS_UNAVAILABLE = "unavailable"

FEEDBACK_CORRECT = "correct"
FEEDBACK_INCORRECT = "incorrect"


class OrderIntent(Base):
    """One extraction attempt and the human verdict on it."""

    __tablename__ = "order_intents"
    __table_args__ = (Index("ix_order_intents_tenant_created", "tenant_id", "created_at"),)

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, index=True, nullable=False)
    conversation_id = Column(Integer, ForeignKey("conversations.id"), index=True, nullable=True)

    raw_text = Column(Text, nullable=False)
    candidates_json = Column(Text, nullable=False, default="[]")
    items_json = Column(Text, nullable=False, default="[]")
    dropped_json = Column(Text, nullable=False, default="[]")
    warnings_json = Column(Text, nullable=False, default="[]")
    confidence = Column(Float, nullable=False, default=0.0)
    needs_clarification = Column(Boolean, nullable=False, default=False)
    clarification_question = Column(Text, nullable=True)
    model = Column(String, nullable=False)
    status = Column(String, nullable=False, default=INTENT_STATUS_OK)
    error = Column(Text, nullable=True)

    # one-shot: first value wins
    feedback = Column(String, nullable=True)
    feedback_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
