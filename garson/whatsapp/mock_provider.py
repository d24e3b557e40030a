from __future__ import annotations

import logging
import uuid
from typing import Any, Iterable

from sqlalchemy.orm import Session

from garson.fsm.events import OutboundMessage
from garson.models.whatsapp_message_log import WhatsAppMessageLog
from garson.whatsapp.base import (
    WhatsAppProvider,
    create_log,
    interactive_buttons_payload,
    location_request_payload,
)

logger = logging.getLogger(__name__)


class MockWhatsAppProvider(WhatsAppProvider):
    """Logs outbound messages instead of calling the Cloud API (local dev and tests)."""

    def send_text(self, db: Session, *, tenant_id: int, to_phone: str, text: str, conversation_id: int | None = None) -> WhatsAppMessageLog:
        return self._record(db, tenant_id=tenant_id, to_phone=to_phone, message_type="text", payload={"type": "text", "to": to_phone, "text": text}, conversation_id=conversation_id)

    def send_buttons(self, db: Session, *, tenant_id: int, to_phone: str, message: OutboundMessage, conversation_id: int | None = None) -> WhatsAppMessageLog:
        payload = {"type": "interactive", "to": to_phone, "interactive": interactive_buttons_payload(message)}
        return self._record(db, tenant_id=tenant_id, to_phone=to_phone, message_type="interactive", payload=payload, conversation_id=conversation_id)

    def send_location_request(self, db: Session, *, tenant_id: int, to_phone: str, text: str, conversation_id: int | None = None) -> WhatsAppMessageLog:
        payload = {"type": "interactive", "to": to_phone, "interactive": location_request_payload(text)}
        return self._record(db, tenant_id=tenant_id, to_phone=to_phone, message_type="location_request", payload=payload, conversation_id=conversation_id)

    def parse_webhook(self, payload: dict[str, Any]) -> Iterable[dict[str, Any]]:
        message = payload.get("message") or {}
        if not message:
            return []
        message_id = message.get("id") or f"mock-{uuid.uuid4().hex[:8]}"
        event = {key: value for key, value in message.items() if key not in {"id", "from", "contact_name"}}
        event.setdefault("kind", "text")
        event["message_id"] = message_id
        return [
            {
                "message_id": message_id,
                "from_number": message.get("from"),
                "message_type": event["kind"],
                "contact_name": message.get("contact_name"),
                "event": event,
            }
        ]

    def _record(
        self,
        db: Session,
        *,
        tenant_id: int,
        to_phone: str,
        message_type: str,
        payload: dict[str, Any],
        conversation_id: int | None = None,
    ) -> WhatsAppMessageLog:
        logger.info("mock whatsapp send type=%s to=%s", message_type, to_phone)
        return create_log(
            db,
            tenant_id=tenant_id,
            direction="out",
            to_phone=to_phone,
            from_phone=None,
            message_type=message_type,
            payload=payload,
            status="sent",
            provider_message_id=f"mock-{uuid.uuid4().hex[:10]}",
            conversation_id=conversation_id,
        )
