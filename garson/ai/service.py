from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from garson.ai.base import ExtractionBackend, MessageGenerator
from garson.ai.openai_provider import OpenAIExtractionBackend, OpenAIMessageGenerator
from garson.ai.rules_provider import RuleBasedExtractionBackend
from garson.core.config import LLM_ENABLED, OPENAI_MODEL
from garson.models.ai_config import AIConfig

logger = logging.getLogger(__name__)

PROVIDER_RULES = "rules"
PROVIDER_OPENAI = "openai"
SUPPORTED_PROVIDERS = {PROVIDER_RULES, PROVIDER_OPENAI}


def _find_config(db: Session, tenant_id: int) -> AIConfig | None:
    return db.query(AIConfig).filter(AIConfig.tenant_id == tenant_id).first()


def get_ai_config(db: Session, tenant_id: int) -> AIConfig:
    """Tenant AI settings, created with rule-based defaults on first use.

    The insert runs in a savepoint so a row created concurrently by another
    turn does not abort the caller's transaction.
    """
    config = _find_config(db, tenant_id)
    if config:
        return config
    config = AIConfig(tenant_id=tenant_id, provider=PROVIDER_RULES, enabled=True)
    try:
        with db.begin_nested():
            db.add(config)
    except IntegrityError:
        logger.info("ai config created concurrently tenant_id=%s", tenant_id)
        config = db.query(AIConfig).filter(AIConfig.tenant_id == tenant_id).one()
    return config


class BackendRegistry:
    """Builds the per-tenant extraction chain and upsell generator.

    The rules backend always closes the chain so a model outage degrades to
    deterministic parsing instead of an error.
    """

    def __init__(
        self,
        *,
        rules_backend: ExtractionBackend | None = None,
        openai_backend: OpenAIExtractionBackend | None = None,
        message_generator: MessageGenerator | None = None,
    ) -> None:
        self.rules_backend = rules_backend or RuleBasedExtractionBackend()
        self._openai_backend = openai_backend
        self._message_generator = message_generator
        self._openai_cache: dict[tuple[str, float | None], OpenAIExtractionBackend] = {}

    def _openai(self, model: str | None, temperature: float | None) -> OpenAIExtractionBackend:
        if self._openai_backend is not None:
            return self._openai_backend
        key = (model or OPENAI_MODEL, temperature)
        backend = self._openai_cache.get(key)
        if backend is None:
            kwargs = {"model": key[0]}
            if temperature is not None:
                kwargs["temperature"] = temperature
            backend = OpenAIExtractionBackend(**kwargs)
            self._openai_cache[key] = backend
        return backend

    def extraction_backends(self, config: AIConfig | None) -> list[ExtractionBackend]:
        provider = ((config.provider if config else None) or PROVIDER_RULES).strip().lower()
        enabled = bool(config.enabled) if config is not None else True
        if provider == PROVIDER_OPENAI and enabled and LLM_ENABLED:
            backend = self._openai(config.model if config else None, config.temperature if config else None)
            if backend.available:
                return [backend, self.rules_backend]
            logger.warning("openai provider selected but not configured; using rules backend")
        return [self.rules_backend]

    def message_generator(self, config: AIConfig | None) -> MessageGenerator | None:
        if config is not None and not config.upsell_messages_enabled:
            return None
        if self._message_generator is not None:
            return self._message_generator
        if not LLM_ENABLED:
            return None
        generator = OpenAIMessageGenerator()
        if not generator.available:
            return None
        self._message_generator = generator
        return generator
