from sqlalchemy import Column, Float, ForeignKey, Index, Integer, String

from garson.core.database import Base


class MenuSynonym(Base):
    """Alternative phrase customers use for a menu item ("coca" -> "Coca-Cola 330ml")."""

    __tablename__ = "menu_synonyms"
    __table_args__ = (Index("ix_menu_synonyms_tenant_item", "tenant_id", "menu_item_id"),)

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, index=True, nullable=False)
    menu_item_id = Column(Integer, ForeignKey("menu_items.id"), nullable=False)
    phrase = Column(String, nullable=False)
    # (0, 1]; used as the match score when the phrase appears verbatim
    weight = Column(Float, nullable=False, default=0.9)
