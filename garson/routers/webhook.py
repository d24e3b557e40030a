import logging
from typing import Any, Dict

from fastapi import APIRouter, Body, Depends, HTTPException, Request
from fastapi.responses import PlainTextResponse
from sqlalchemy.orm import Session

from garson.core.config import META_WA_VERIFY_TOKEN
from garson.core.database import get_db
from garson.core.request_context import set_request_context
from garson.deps import get_engine, get_whatsapp
from garson.fsm.engine import ConversationEngine
from garson.services.conversations import get_or_create_conversation, mark_processed
from garson.whatsapp.service import WhatsAppService

router = APIRouter(tags=["whatsapp"])
logger = logging.getLogger(__name__)


@router.get("/api/whatsapp/{tenant_id}/webhook")
def verify_webhook_tenant(tenant_id: int, request: Request):
    qp = request.query_params
    mode = qp.get("hub.mode")
    token = qp.get("hub.verify_token")
    challenge = qp.get("hub.challenge")

    if mode == "subscribe" and META_WA_VERIFY_TOKEN and token == META_WA_VERIFY_TOKEN:
        logger.info("webhook verified tenant_id=%s", tenant_id)
        return PlainTextResponse(challenge or "")

    raise HTTPException(status_code=403, detail="Invalid verify token")


def _handle_inbound_message(
    db: Session,
    *,
    engine: ConversationEngine,
    whatsapp: WhatsAppService,
    tenant_id: int,
    extracted: Dict[str, Any],
) -> Dict[str, Any]:
    message_id = extracted["message_id"]
    from_number = extracted["from_number"]

    if not mark_processed(db, tenant_id, message_id):
        logger.info("duplicate inbound message ignored message_id=%s", message_id)
        return {"message_id": message_id, "status": "duplicate"}

    conversation = get_or_create_conversation(db, tenant_id, from_number, extracted.get("contact_name"))
    whatsapp.log_inbound(
        db,
        tenant_id=tenant_id,
        from_phone=from_number,
        to_phone=extracted.get("phone_number_id"),
        message_type=extracted.get("message_type", "text"),
        payload={"event": extracted.get("event"), "contact_name": extracted.get("contact_name")},
        provider_message_id=message_id,
        conversation_id=conversation.id,
    )

    result = engine.handle_turn(
        db,
        tenant_id,
        conversation.id,
        {"phone": from_number, "name": extracted.get("contact_name")},
        extracted.get("event") or {},
    )
    whatsapp.send_replies(
        db,
        tenant_id=tenant_id,
        to_phone=from_number,
        replies=result.replies,
        conversation_id=conversation.id,
    )
    return {
        "message_id": message_id,
        "status": "ok",
        "state": result.state.value,
        "replies": len(result.replies),
        "noop": result.noop,
    }


@router.post("/api/whatsapp/{tenant_id}/webhook")
def whatsapp_webhook_tenant(
    tenant_id: int,
    payload: Dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    engine: ConversationEngine = Depends(get_engine),
    whatsapp: WhatsAppService = Depends(get_whatsapp),
):
    set_request_context(tenant_id=tenant_id)
    messages = list(whatsapp.parse_webhook(payload))
    if not messages:
        return {"status": "ignored"}

    results = [
        _handle_inbound_message(db, engine=engine, whatsapp=whatsapp, tenant_id=tenant_id, extracted=extracted)
        for extracted in messages
    ]
    return {"status": "ok", "messages": results}
