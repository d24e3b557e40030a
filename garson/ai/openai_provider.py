from __future__ import annotations

import logging
import time
from typing import Any, Sequence

import instructor
from instructor.exceptions import InstructorRetryException
from openai import OpenAI, OpenAIError
from pydantic import ValidationError

from garson.ai.prompts import build_extraction_messages, build_upsell_messages
from garson.ai.schema import ExtractionResult
from garson.core.config import (
    LLM_MAX_RETRIES,
    LLM_TEMPERATURE,
    LLM_TIMEOUT_SECONDS,
    OPENAI_API_KEY,
    OPENAI_MODEL,
    OPENAI_UPSELL_MODEL,
)
from garson.core.errors import ExtractionUnavailable, GenerationUnavailable
from garson.services.menu_candidates import MenuCandidate
from garson.services.menu_catalog import OptionGroupSnapshot
from garson.services.tenant_backoff import InMemoryTenantBackoffService, TenantBackoffService

logger = logging.getLogger(__name__)
_backoff_service = InMemoryTenantBackoffService()


def build_openai_client(api_key: str = OPENAI_API_KEY) -> OpenAI:
    # max_retries covers timeouts/connection errors with the SDK's own backoff
    return OpenAI(api_key=api_key, timeout=LLM_TIMEOUT_SECONDS, max_retries=LLM_MAX_RETRIES)


class _OpenAIBase:
    integration: str = "openai"

    def __init__(
        self,
        *,
        api_key: str = OPENAI_API_KEY,
        model: str = OPENAI_MODEL,
        client: OpenAI | None = None,
        backoff: TenantBackoffService | None = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self._client = client
        self._backoff = backoff or _backoff_service

    @property
    def available(self) -> bool:
        return self._client is not None or bool(self.api_key)

    def _openai(self) -> OpenAI:
        if self._client is None:
            self._client = build_openai_client(self.api_key)
        return self._client

    def _check_backoff(self, tenant_id: int | None) -> bool:
        if tenant_id is None:
            return False
        decision = self._backoff.before_request(tenant_id=tenant_id, integration=self.integration)
        if decision.cooling_down:
            logger.warning(
                "tenant integration backoff activated",
                extra={"tenant_id": tenant_id, "duration_ms": decision.delay_seconds * 1000},
            )
        return decision.cooling_down

    def _register(self, tenant_id: int | None, ok: bool) -> None:
        if tenant_id is None:
            return
        if ok:
            self._backoff.register_success(tenant_id=tenant_id, integration=self.integration)
        else:
            self._backoff.register_failure(tenant_id=tenant_id, integration=self.integration)


class OpenAIExtractionBackend(_OpenAIBase):
    name = "openai"
    integration = "openai_extraction"

    def __init__(self, *, temperature: float = LLM_TEMPERATURE, **kwargs) -> None:
        super().__init__(**kwargs)
        self.temperature = temperature

    def extract(
        self,
        text: str,
        candidates: Sequence[MenuCandidate],
        option_groups: OptionGroupSnapshot,
        history: Sequence[dict[str, str]],
        *,
        tenant_id: int | None = None,
    ) -> ExtractionResult:
        if not self.available:
            raise ExtractionUnavailable("openai api key not configured")
        if self._check_backoff(tenant_id):
            raise ExtractionUnavailable("openai extraction in backoff", tenant_id=tenant_id)

        client = instructor.from_openai(self._openai())
        start = time.perf_counter()
        try:
            result = client.chat.completions.create(
                model=self.model,
                response_model=ExtractionResult,
                messages=build_extraction_messages(text, candidates, option_groups, history),
                temperature=self.temperature,
                # one retry when the structured output does not validate
                max_retries=LLM_MAX_RETRIES + 1,
            )
        except (OpenAIError, InstructorRetryException, ValidationError) as exc:
            self._register(tenant_id, ok=False)
            logger.warning("openai extraction failed model=%s error=%s", self.model, exc.__class__.__name__)
            raise ExtractionUnavailable(f"openai extraction failed: {exc.__class__.__name__}") from exc

        self._register(tenant_id, ok=True)
        logger.info(
            "openai extraction items=%s confidence=%.2f",
            len(result.items),
            result.confidence,
            extra={"duration_ms": round((time.perf_counter() - start) * 1000, 2)},
        )
        return result


class OpenAIMessageGenerator(_OpenAIBase):
    name = "openai"
    integration = "openai_upsell"

    def __init__(self, *, model: str = OPENAI_UPSELL_MODEL, max_tokens: int = 100, **kwargs) -> None:
        super().__init__(model=model, **kwargs)
        self.max_tokens = max_tokens

    def generate(self, prompt_context: dict[str, Any], *, tenant_id: int | None = None) -> str:
        if not self.available:
            raise GenerationUnavailable("openai api key not configured")
        if self._check_backoff(tenant_id):
            raise GenerationUnavailable("openai generation in backoff", tenant_id=tenant_id)

        try:
            response = self._openai().chat.completions.create(
                model=self.model,
                messages=build_upsell_messages(prompt_context),
                temperature=0.8,
                max_tokens=self.max_tokens,
            )
        except OpenAIError as exc:
            self._register(tenant_id, ok=False)
            raise GenerationUnavailable(f"openai generation failed: {exc.__class__.__name__}") from exc

        content = ""
        if response.choices:
            content = (response.choices[0].message.content or "").strip()
        if not content:
            self._register(tenant_id, ok=False)
            raise GenerationUnavailable("openai returned an empty message")
        self._register(tenant_id, ok=True)
        return content
