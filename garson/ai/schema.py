from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field


class ExtractedItem(BaseModel):
    menu_item_id: int = Field(..., description="id of one of the candidate menu items")
    quantity: int = Field(1, ge=1, le=50)
    option_ids: List[int] = Field(default_factory=list)
    notes: Optional[str] = Field(None, max_length=200)
    confidence: float = Field(1.0, ge=0.0, le=1.0)


class ExtractionResult(BaseModel):
    items: List[ExtractedItem] = Field(default_factory=list)
    confidence: float = Field(..., ge=0.0, le=1.0)
    clarification_question: Optional[str] = None
    notes: Optional[str] = None
