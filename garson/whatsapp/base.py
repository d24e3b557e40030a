from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Iterable, Protocol

from sqlalchemy.orm import Session

from garson.core.config import META_WA_ACCESS_TOKEN, META_WA_PHONE_NUMBER_ID
from garson.fsm.events import OutboundMessage
from garson.models.whatsapp_message_log import WhatsAppMessageLog


@dataclass(frozen=True)
class WhatsAppCredentials:
    access_token: str
    phone_number_id: str

    @property
    def complete(self) -> bool:
        return bool(self.access_token and self.phone_number_id)

    @classmethod
    def from_env(cls) -> "WhatsAppCredentials":
        return cls(access_token=META_WA_ACCESS_TOKEN, phone_number_id=META_WA_PHONE_NUMBER_ID)


class WhatsAppProvider(Protocol):
    def send_text(self, db: Session, *, tenant_id: int, to_phone: str, text: str, conversation_id: int | None = None) -> WhatsAppMessageLog:
        ...

    def send_buttons(self, db: Session, *, tenant_id: int, to_phone: str, message: OutboundMessage, conversation_id: int | None = None) -> WhatsAppMessageLog:
        ...

    def send_location_request(self, db: Session, *, tenant_id: int, to_phone: str, text: str, conversation_id: int | None = None) -> WhatsAppMessageLog:
        ...

    def parse_webhook(self, payload: dict[str, Any]) -> Iterable[dict[str, Any]]:
        ...


def interactive_buttons_payload(message: OutboundMessage) -> dict[str, Any]:
    return {
        "type": "button",
        "body": {"text": message.text},
        "action": {
            "buttons": [
                {"type": "reply", "reply": {"id": button.id, "title": button.title}}
                for button in message.buttons
            ]
        },
    }


def location_request_payload(text: str) -> dict[str, Any]:
    return {
        "type": "location_request_message",
        "body": {"text": text},
        "action": {"name": "send_location"},
    }


SENSITIVE_KEYS = {"access_token", "verify_token", "webhook_secret", "authorization", "token"}


def _mask_value(value: Any) -> Any:
    if value is None:
        return None
    text = str(value)
    if len(text) <= 4:
        return "****"
    return f"****{text[-4:]}"


def sanitize_payload(payload: dict[str, Any]) -> dict[str, Any]:
    def _sanitize(value: Any) -> Any:
        if isinstance(value, dict):
            return {key: _sanitize_value(key, inner) for key, inner in value.items()}
        if isinstance(value, list):
            return [_sanitize(item) for item in value]
        return value

    def _sanitize_value(key: str, value: Any) -> Any:
        if key.lower() in SENSITIVE_KEYS:
            return _mask_value(value)
        return _sanitize(value)

    return _sanitize(payload)


def safe_json(payload: dict[str, Any]) -> str:
    try:
        return json.dumps(payload, ensure_ascii=False)
    except (TypeError, ValueError):
        return "{}"


def create_log(
    db: Session,
    *,
    tenant_id: int,
    direction: str,
    to_phone: str | None,
    from_phone: str | None,
    message_type: str,
    payload: dict[str, Any],
    status: str,
    provider_message_id: str | None = None,
    error: str | None = None,
    response_payload: dict[str, Any] | None = None,
    conversation_id: int | None = None,
) -> WhatsAppMessageLog:
    sanitized = sanitize_payload(payload)
    if response_payload:
        sanitized["response"] = sanitize_payload(response_payload)
    log_entry = WhatsAppMessageLog(
        tenant_id=tenant_id,
        direction=direction,
        to_phone=to_phone,
        from_phone=from_phone,
        conversation_id=conversation_id,
        message_type=message_type,
        payload_json=safe_json(sanitized),
        status=status,
        error=error,
        provider_message_id=provider_message_id,
    )
    db.add(log_entry)
    db.commit()
    return log_entry
