# garson/deps.py
from __future__ import annotations

import hmac
import logging
from typing import Optional

from fastapi import Header, HTTPException, Request, status

from garson.core.config import ADMIN_API_TOKEN
from garson.fsm.engine import ConversationEngine
from garson.whatsapp.service import WhatsAppService

logger = logging.getLogger(__name__)


def get_engine(request: Request) -> ConversationEngine:
    """The engine lives on app.state; it is built by the lifespan."""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Conversation engine not ready")
    return engine


def get_whatsapp(request: Request) -> WhatsAppService:
    service = getattr(request.app.state, "whatsapp", None)
    if service is None:
        service = WhatsAppService()
        request.app.state.whatsapp = service
    return service


def require_admin_token(
    request: Request,
    x_admin_token: Optional[str] = Header(default=None),
) -> None:
    """Guards admin routes when ADMIN_API_TOKEN is configured; open otherwise (dev)."""
    expected = getattr(request.app.state, "admin_token", ADMIN_API_TOKEN)
    if not expected:
        return
    if not x_admin_token or not hmac.compare_digest(x_admin_token, expected):
        logger.warning("Access denied: invalid admin token endpoint=%s %s", request.method, request.url.path)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid admin token")
