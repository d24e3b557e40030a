from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text

from garson.core.database import Base, utcnow


class UpsellEvent(Base):
    __tablename__ = "upsell_events"
    __table_args__ = (
        Index("ix_upsell_events_conversation_item", "conversation_id", "suggested_item_id", "created_at"),
    )

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, index=True, nullable=False)
    conversation_id = Column(Integer, ForeignKey("conversations.id"), nullable=False)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True)
    suggested_item_id = Column(Integer, ForeignKey("menu_items.id"), nullable=False)
    suggested_name = Column(String, nullable=False)
    message = Column(Text, nullable=True)
    source = Column(String, nullable=False)  # rule / co_purchase
    accepted = Column(Boolean, nullable=True)  # NULL while pending
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
