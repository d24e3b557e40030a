from __future__ import annotations

import logging
from typing import Any, Iterable

from sqlalchemy.orm import Session

from garson.core.config import IS_DEV, WHATSAPP_PROVIDER
from garson.fsm.events import OutboundMessage
from garson.models.whatsapp_message_log import WhatsAppMessageLog
from garson.whatsapp.base import WhatsAppCredentials, WhatsAppProvider, create_log
from garson.whatsapp.cloud_provider import CloudWhatsAppProvider
from garson.whatsapp.mock_provider import MockWhatsAppProvider

logger = logging.getLogger(__name__)

PROVIDER_CLOUD = "cloud"


class WhatsAppService:
    """Sends engine replies through the configured provider.

    Cloud is used only when selected and fully configured; in dev a failed
    Cloud send is mirrored to the mock provider so the conversation can go on.
    """

    def __init__(
        self,
        *,
        provider_name: str = WHATSAPP_PROVIDER,
        credentials: WhatsAppCredentials | None = None,
        fallback_to_mock: bool = IS_DEV,
    ) -> None:
        credentials = credentials or WhatsAppCredentials.from_env()
        self._mock_provider = MockWhatsAppProvider()
        self._cloud_provider = CloudWhatsAppProvider(credentials)
        self._fallback_to_mock = fallback_to_mock
        if provider_name == PROVIDER_CLOUD and credentials.complete:
            self.provider: WhatsAppProvider = self._cloud_provider
        else:
            if provider_name == PROVIDER_CLOUD:
                logger.warning("WhatsApp Cloud selected but credentials are incomplete; using mock provider")
            self.provider = self._mock_provider

    def parse_webhook(self, payload: dict[str, Any]) -> Iterable[dict[str, Any]]:
        if "entry" in payload:
            return self._cloud_provider.parse_webhook(payload)
        return self._mock_provider.parse_webhook(payload)

    def _deliver(
        self,
        provider: WhatsAppProvider,
        db: Session,
        tenant_id: int,
        to_phone: str,
        message: OutboundMessage,
        conversation_id: int | None,
    ) -> WhatsAppMessageLog:
        kwargs = {"tenant_id": tenant_id, "to_phone": to_phone, "conversation_id": conversation_id}
        if message.kind == "buttons" and message.buttons:
            return provider.send_buttons(db, message=message, **kwargs)
        if message.kind == "location_request":
            return provider.send_location_request(db, text=message.text, **kwargs)
        return provider.send_text(db, text=message.text, **kwargs)

    def send(
        self,
        db: Session,
        *,
        tenant_id: int,
        to_phone: str,
        message: OutboundMessage,
        conversation_id: int | None = None,
    ) -> WhatsAppMessageLog:
        log_entry = self._deliver(self.provider, db, tenant_id, to_phone, message, conversation_id)
        if log_entry.status == "failed" and self.provider is self._cloud_provider and self._fallback_to_mock:
            logger.warning("WhatsApp Cloud send failed, mirroring to mock provider")
            return self._deliver(self._mock_provider, db, tenant_id, to_phone, message, conversation_id)
        return log_entry

    def send_replies(
        self,
        db: Session,
        *,
        tenant_id: int,
        to_phone: str,
        replies: Iterable[OutboundMessage],
        conversation_id: int | None = None,
    ) -> list[WhatsAppMessageLog]:
        return [
            self.send(db, tenant_id=tenant_id, to_phone=to_phone, message=reply, conversation_id=conversation_id)
            for reply in replies
        ]

    def log_inbound(
        self,
        db: Session,
        *,
        tenant_id: int,
        from_phone: str,
        to_phone: str | None,
        message_type: str,
        payload: dict[str, Any],
        provider_message_id: str | None = None,
        conversation_id: int | None = None,
    ) -> WhatsAppMessageLog:
        return create_log(
            db,
            tenant_id=tenant_id,
            direction="in",
            to_phone=to_phone,
            from_phone=from_phone,
            message_type=message_type,
            payload=payload,
            status="received",
            provider_message_id=provider_message_id,
            conversation_id=conversation_id,
        )
