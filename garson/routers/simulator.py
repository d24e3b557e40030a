from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from garson.core.database import get_db
from garson.deps import get_engine
from garson.fsm.engine import ConversationEngine
from garson.services.conversations import get_or_create_conversation

router = APIRouter(prefix="/simulator", tags=["simulator"])


class SimulatedMessage(BaseModel):
    phone: str = Field(..., min_length=3)
    name: Optional[str] = None
    event: dict = Field(default_factory=dict)


# Runs a turn without the WhatsApp transport; replies come back in the response.
@router.post("/{tenant_id}/message")
def simulate(
    tenant_id: int,
    payload: SimulatedMessage,
    db: Session = Depends(get_db),
    engine: ConversationEngine = Depends(get_engine),
):
    conversation = get_or_create_conversation(db, tenant_id, payload.phone, payload.name)
    result = engine.handle_turn(
        db,
        tenant_id,
        conversation.id,
        {"phone": payload.phone, "name": payload.name},
        payload.event,
    )
    return result.to_dict()
