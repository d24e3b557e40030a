from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import relationship

from garson.core.database import Base, utcnow

ORDER_DRAFT = "DRAFT"
ORDER_CHECKOUT = "CHECKOUT"
ORDER_CONFIRMED = "CONFIRMED"
ORDER_CANCELLED = "CANCELLED"


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (Index("ix_orders_tenant_status_created", "tenant_id", "status", "created_at"),)

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, index=True, nullable=False)
    conversation_id = Column(Integer, ForeignKey("conversations.id"), index=True, nullable=True)

    customer_phone = Column(String, index=True, nullable=False)
    customer_name = Column(String, nullable=True)

    # DRAFT -> CHECKOUT -> CONFIRMED, or CANCELLED
    status = Column(String, default=ORDER_DRAFT, nullable=False)

    items_total_cents = Column(Integer, default=0, nullable=False)
    delivery_fee_cents = Column(Integer, default=0, nullable=False)
    total_cents = Column(Integer, default=0, nullable=False)

    store_name = Column(String, nullable=True)
    delivery_lat = Column(String, nullable=True)
    delivery_lng = Column(String, nullable=True)
    payment_method = Column(String, nullable=True)  # cash / card
    checkout_reference = Column(String, index=True, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    order_items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.id",
    )
