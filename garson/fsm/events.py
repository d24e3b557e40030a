from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from garson.core.config import BUTTON_TITLE_MAX_LENGTH, MAX_BUTTONS_PER_MESSAGE
from garson.fsm.states import ConversationState

EVENT_TEXT = "text"
EVENT_LOCATION = "location"
EVENT_BUTTON_REPLY = "button_reply"
EVENT_PAYMENT_OUTCOME = "payment_outcome"


class InboundEvent(BaseModel):
    kind: Literal["text", "location", "button_reply", "payment_outcome"]
    text: Optional[str] = None
    latitude: Optional[float] = Field(None, ge=-90.0, le=90.0)
    longitude: Optional[float] = Field(None, ge=-180.0, le=180.0)
    button_id: Optional[str] = None
    button_title: Optional[str] = None
    payment_success: Optional[bool] = None
    payment_reference: Optional[str] = None
    message_id: Optional[str] = None

    @model_validator(mode="after")
    def _check_payload(self) -> "InboundEvent":
        if self.kind == EVENT_TEXT and not (self.text or "").strip():
            raise ValueError("text event requires a non-empty text")
        if self.kind == EVENT_LOCATION and (self.latitude is None or self.longitude is None):
            raise ValueError("location event requires latitude and longitude")
        if self.kind == EVENT_BUTTON_REPLY and not (self.button_id or "").strip():
            raise ValueError("button_reply event requires a button_id")
        if self.kind == EVENT_PAYMENT_OUTCOME and self.payment_success is None:
            raise ValueError("payment_outcome event requires payment_success")
        return self

    @classmethod
    def text_message(cls, text: str, **kwargs) -> "InboundEvent":
        return cls(kind=EVENT_TEXT, text=text, **kwargs)

    @classmethod
    def location(cls, latitude: float, longitude: float, **kwargs) -> "InboundEvent":
        return cls(kind=EVENT_LOCATION, latitude=latitude, longitude=longitude, **kwargs)

    @classmethod
    def button(cls, button_id: str, title: str | None = None, **kwargs) -> "InboundEvent":
        return cls(kind=EVENT_BUTTON_REPLY, button_id=button_id, button_title=title, **kwargs)

    @classmethod
    def payment(cls, success: bool, reference: str | None = None, **kwargs) -> "InboundEvent":
        return cls(kind=EVENT_PAYMENT_OUTCOME, payment_success=success, payment_reference=reference, **kwargs)


class CustomerIdentity(BaseModel):
    phone: str = Field(..., min_length=3)
    name: Optional[str] = None


class QuickReplyButton(BaseModel):
    id: str = Field(..., min_length=1, max_length=256)
    title: str = Field(..., min_length=1)

    @field_validator("title")
    @classmethod
    def _fit_title(cls, value: str) -> str:
        value = value.strip()
        if len(value) > BUTTON_TITLE_MAX_LENGTH:
            return value[: BUTTON_TITLE_MAX_LENGTH - 1].rstrip() + "…"
        return value


class OutboundMessage(BaseModel):
    kind: Literal["text", "buttons", "location_request"] = "text"
    text: str = Field(..., min_length=1)
    buttons: List[QuickReplyButton] = Field(default_factory=list, max_length=MAX_BUTTONS_PER_MESSAGE)

    @classmethod
    def plain(cls, text: str) -> "OutboundMessage":
        return cls(kind="text", text=text)

    @classmethod
    def with_buttons(cls, text: str, buttons: list[tuple[str, str]]) -> "OutboundMessage":
        return cls(
            kind="buttons",
            text=text,
            buttons=[QuickReplyButton(id=button_id, title=title) for button_id, title in buttons],
        )

    @classmethod
    def location_request(cls, text: str) -> "OutboundMessage":
        return cls(kind="location_request", text=text)


@dataclass
class TurnResult:
    replies: list[OutboundMessage]
    state: ConversationState
    noop: bool = False
    conversation_id: int | None = None
    order_id: int | None = None
    intent_id: int | None = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "replies": [reply.model_dump() for reply in self.replies],
            "state": self.state.value,
            "noop": self.noop,
            "conversation_id": self.conversation_id,
            "order_id": self.order_id,
            "intent_id": self.intent_id,
            "warnings": list(self.warnings),
        }
