from sqlalchemy import Column, DateTime, Integer, String, Text, UniqueConstraint

from garson.core.database import Base, utcnow


class Conversation(Base):
    __tablename__ = "conversations"
    __table_args__ = (UniqueConstraint("tenant_id", "customer_phone", name="uq_conversations_tenant_phone"),)

    id = Column(Integer, primary_key=True)

    tenant_id = Column(Integer, index=True, nullable=False)
    customer_phone = Column(String, index=True, nullable=False)
    customer_name = Column(String, nullable=True)

    state = Column(String, default="IDLE", nullable=False)

    # history buffer + transient flow data (pending option question, pending upsell...)
    data = Column(Text, default="{}", nullable=False)  # serialized JSON

    active_order_id = Column(Integer, nullable=True)
    last_activity_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
