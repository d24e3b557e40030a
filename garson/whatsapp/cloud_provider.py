from __future__ import annotations

import json
import logging
import time
from typing import Any, Iterable

import httpx
from sqlalchemy.orm import Session

from garson.core.config import META_API_VERSION
from garson.fsm.events import OutboundMessage
from garson.models.whatsapp_message_log import WhatsAppMessageLog
from garson.services.tenant_backoff import InMemoryTenantBackoffService
from garson.whatsapp.base import (
    WhatsAppCredentials,
    WhatsAppProvider,
    create_log,
    interactive_buttons_payload,
    location_request_payload,
)

logger = logging.getLogger(__name__)
_backoff_service = InMemoryTenantBackoffService()


def _message_event(msg: dict[str, Any]) -> dict[str, Any]:
    """Map one Cloud API message onto an inbound event payload.

    Unsupported types (image, audio, sticker...) keep only their kind so the
    engine rejects them and answers with a clarifying reply.
    """
    msg_type = msg.get("type") or "text"
    if msg_type == "text":
        return {"kind": "text", "text": ((msg.get("text") or {}).get("body") or "").strip()}
    if msg_type == "location":
        location = msg.get("location") or {}
        return {"kind": "location", "latitude": location.get("latitude"), "longitude": location.get("longitude")}
    if msg_type == "interactive":
        interactive = msg.get("interactive") or {}
        reply = interactive.get("button_reply") or interactive.get("list_reply") or {}
        return {"kind": "button_reply", "button_id": reply.get("id"), "button_title": reply.get("title")}
    if msg_type == "button":
        button = msg.get("button") or {}
        return {"kind": "button_reply", "button_id": button.get("payload"), "button_title": button.get("text")}
    return {"kind": msg_type}


def parse_cloud_webhook(payload: dict[str, Any]) -> list[dict[str, Any]]:
    messages: list[dict[str, Any]] = []
    for entry in payload.get("entry", []) or []:
        for change in entry.get("changes", []) or []:
            value = change.get("value") or {}
            metadata = value.get("metadata") or {}
            phone_number_id = metadata.get("phone_number_id")

            contacts = value.get("contacts") or []
            contact_name = None
            if contacts:
                contact_name = ((contacts[0].get("profile") or {}).get("name")) or None

            for msg in value.get("messages", []) or []:
                message_id = msg.get("id")
                from_number = msg.get("from")
                if not message_id or not from_number:
                    continue
                event = _message_event(msg)
                event["message_id"] = message_id
                messages.append(
                    {
                        "message_id": message_id,
                        "from_number": from_number,
                        "message_type": msg.get("type") or "text",
                        "phone_number_id": phone_number_id,
                        "contact_name": contact_name,
                        "event": event,
                    }
                )
    return messages


class CloudWhatsAppProvider(WhatsAppProvider):
    MAX_RETRIES = 3
    INTEGRATION_NAME = "whatsapp_cloud"

    def __init__(self, credentials: WhatsAppCredentials | None = None) -> None:
        self.credentials = credentials or WhatsAppCredentials.from_env()

    def send_text(self, db: Session, *, tenant_id: int, to_phone: str, text: str, conversation_id: int | None = None) -> WhatsAppMessageLog:
        payload = {
            "messaging_product": "whatsapp",
            "to": to_phone,
            "type": "text",
            "text": {"preview_url": False, "body": text},
        }
        return self._send(db, tenant_id=tenant_id, to_phone=to_phone, message_type="text", payload=payload, conversation_id=conversation_id)

    def send_buttons(self, db: Session, *, tenant_id: int, to_phone: str, message: OutboundMessage, conversation_id: int | None = None) -> WhatsAppMessageLog:
        payload = {
            "messaging_product": "whatsapp",
            "to": to_phone,
            "type": "interactive",
            "interactive": interactive_buttons_payload(message),
        }
        return self._send(db, tenant_id=tenant_id, to_phone=to_phone, message_type="interactive", payload=payload, conversation_id=conversation_id)

    def send_location_request(self, db: Session, *, tenant_id: int, to_phone: str, text: str, conversation_id: int | None = None) -> WhatsAppMessageLog:
        payload = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": to_phone,
            "type": "interactive",
            "interactive": location_request_payload(text),
        }
        return self._send(db, tenant_id=tenant_id, to_phone=to_phone, message_type="location_request", payload=payload, conversation_id=conversation_id)

    def parse_webhook(self, payload: dict[str, Any]) -> Iterable[dict[str, Any]]:
        return parse_cloud_webhook(payload)

    def _send(
        self,
        db: Session,
        *,
        tenant_id: int,
        to_phone: str,
        message_type: str,
        payload: dict[str, Any],
        conversation_id: int | None = None,
    ) -> WhatsAppMessageLog:
        credentials = self.credentials
        if not credentials.complete:
            return create_log(
                db,
                tenant_id=tenant_id,
                direction="out",
                to_phone=to_phone,
                from_phone=None,
                message_type=message_type,
                payload=payload,
                status="failed",
                error="WhatsApp Cloud credentials are incomplete",
                conversation_id=conversation_id,
            )

        url = f"https://graph.facebook.com/{META_API_VERSION}/{credentials.phone_number_id}/messages"
        headers = {"Authorization": f"Bearer {credentials.access_token}", "Content-Type": "application/json"}
        last_error: str | None = None

        for attempt in range(1, self.MAX_RETRIES + 1):
            decision = _backoff_service.before_request(tenant_id=tenant_id, integration=self.INTEGRATION_NAME)
            if decision.delay_seconds > 0:
                logger.warning(
                    "tenant integration backoff activated delay_seconds=%s consecutive_failures=%s",
                    decision.delay_seconds,
                    decision.consecutive_failures,
                )
                time.sleep(decision.delay_seconds)

            try:
                with httpx.Client(timeout=20.0) as client:
                    response = client.post(url, headers=headers, json=payload)

                body_text = response.text
                if 200 <= response.status_code < 300:
                    _backoff_service.register_success(tenant_id=tenant_id, integration=self.INTEGRATION_NAME)
                    provider_id = None
                    try:
                        data = response.json()
                        provider_id = (data.get("messages") or [{}])[0].get("id")
                    except json.JSONDecodeError:
                        data = {"raw": body_text}

                    return create_log(
                        db,
                        tenant_id=tenant_id,
                        direction="out",
                        to_phone=to_phone,
                        from_phone=credentials.phone_number_id,
                        message_type=message_type,
                        payload=payload,
                        status="sent",
                        provider_message_id=provider_id,
                        response_payload=data,
                        conversation_id=conversation_id,
                    )

                last_error = f"WhatsApp error {response.status_code}: {body_text}"
            except httpx.HTTPError as exc:
                last_error = str(exc)

            failures = _backoff_service.register_failure(tenant_id=tenant_id, integration=self.INTEGRATION_NAME)
            if failures == _backoff_service.threshold:
                logger.warning("tenant integration failure threshold reached consecutive_failures=%s", failures)
            if attempt >= self.MAX_RETRIES:
                break

        return create_log(
            db,
            tenant_id=tenant_id,
            direction="out",
            to_phone=to_phone,
            from_phone=credentials.phone_number_id,
            message_type=message_type,
            payload=payload,
            status="failed",
            error=last_error,
            conversation_id=conversation_id,
        )
