from sqlalchemy import Boolean, Column, DateTime, Float, Integer, String, func

from garson.core.database import Base


class AIConfig(Base):
    __tablename__ = "ai_configs"

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, index=True, nullable=False, unique=True)
    provider = Column(String, nullable=False, default="rules")  # rules / openai
    enabled = Column(Boolean, nullable=False, default=True)
    model = Column(String, nullable=True)
    temperature = Column(Float, nullable=True)
    upsell_messages_enabled = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
