from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, func

from garson.core.database import Base


class Modifier(Base):
    """A selectable option inside a ModifierGroup (size, spice level, extra)."""

    __tablename__ = "modifiers"

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, index=True, nullable=False)
    group_id = Column(Integer, ForeignKey("modifier_groups.id"), index=True, nullable=False)
    name = Column(String, nullable=False)
    price_cents = Column(Integer, nullable=False, default=0)
    is_default = Column(Boolean, default=False, nullable=False)
    active = Column(Boolean, default=True, nullable=False)
    order_index = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
