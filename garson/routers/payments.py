import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from garson.core.database import get_db
from garson.deps import get_engine, get_whatsapp
from garson.fsm.engine import ConversationEngine
from garson.fsm.events import InboundEvent
from garson.models.order import Order
from garson.whatsapp.service import WhatsAppService

router = APIRouter(prefix="/api/payments", tags=["payments"])
logger = logging.getLogger(__name__)


class PaymentCallback(BaseModel):
    reference: str = Field(..., min_length=1)
    success: bool


def _ensure_order(db: Session, tenant_id: int, reference: str) -> Order:
    order = (
        db.query(Order)
        .filter(Order.tenant_id == tenant_id, Order.checkout_reference == reference)
        .first()
    )
    if not order or not order.conversation_id:
        raise HTTPException(status_code=404, detail="Checkout reference not found")
    return order


@router.post("/{tenant_id}/callback")
def payment_callback(
    tenant_id: int,
    payload: PaymentCallback,
    db: Session = Depends(get_db),
    engine: ConversationEngine = Depends(get_engine),
    whatsapp: WhatsAppService = Depends(get_whatsapp),
):
    order = _ensure_order(db, tenant_id, payload.reference)
    customer_phone = order.customer_phone
    logger.info("payment callback order_id=%s success=%s", order.id, payload.success)

    result = engine.handle_turn(
        db,
        tenant_id,
        order.conversation_id,
        {"phone": customer_phone},
        InboundEvent.payment(payload.success, payload.reference),
    )
    whatsapp.send_replies(
        db,
        tenant_id=tenant_id,
        to_phone=customer_phone,
        replies=result.replies,
        conversation_id=result.conversation_id,
    )
    return {"order_id": order.id, "state": result.state.value, "noop": result.noop}
