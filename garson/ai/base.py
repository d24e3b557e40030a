from __future__ import annotations

from typing import Any, Protocol, Sequence

from garson.ai.schema import ExtractionResult
from garson.services.menu_candidates import MenuCandidate
from garson.services.menu_catalog import OptionGroupSnapshot


class ExtractionBackend(Protocol):
    """Turns a message into an ExtractionResult (or an equivalent dict).

    Raises ExtractionUnavailable when it cannot produce an answer; never
    returns an empty result to signal failure.
    """

    name: str

    @property
    def available(self) -> bool:
        ...

    def extract(
        self,
        text: str,
        candidates: Sequence[MenuCandidate],
        option_groups: OptionGroupSnapshot,
        history: Sequence[dict[str, str]],
        *,
        tenant_id: int | None = None,
    ) -> ExtractionResult | dict[str, Any]:
        ...


class MessageGenerator(Protocol):
    """Writes a short customer-facing message; raises GenerationUnavailable on failure."""

    name: str

    @property
    def available(self) -> bool:
        ...

    def generate(self, prompt_context: dict[str, Any], *, tenant_id: int | None = None) -> str:
        ...
