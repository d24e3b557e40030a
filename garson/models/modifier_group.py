from sqlalchemy import Boolean, Column, DateTime, Index, Integer, String

from garson.core.database import Base, utcnow

SELECTION_SINGLE = "SINGLE"
SELECTION_MULTI = "MULTI"


class ModifierGroup(Base):
    __tablename__ = "modifier_groups"
    __table_args__ = (Index("ix_modifier_groups_tenant", "tenant_id"),)

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, index=True, nullable=False)
    name = Column(String, nullable=False)
    selection_type = Column(String, default=SELECTION_SINGLE, nullable=False)
    required = Column(Boolean, default=False, nullable=False)
    order_index = Column(Integer, default=0, nullable=False)
    active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
