from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, Text, func

from garson.core.database import Base


class CrossSellRule(Base):
    __tablename__ = "cross_sell_rules"
    __table_args__ = (Index("ix_cross_sell_rules_tenant_trigger", "tenant_id", "trigger_item_id"),)

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, index=True, nullable=False)
    trigger_item_id = Column(Integer, ForeignKey("menu_items.id"), nullable=False)
    suggest_item_id = Column(Integer, ForeignKey("menu_items.id"), nullable=False)
    message = Column(Text, nullable=True)
    priority = Column(Integer, nullable=False, default=0)
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
