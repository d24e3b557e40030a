import pytest
from pydantic import ValidationError

from garson.core.errors import InboundEventError
from garson.fsm.engine import coerce_customer, coerce_event
from garson.fsm.events import InboundEvent, OutboundMessage, TurnResult
from garson.fsm.states import ConversationState, parse_state


def test_button_titles_are_truncated_to_provider_limit():
    message = OutboundMessage.with_buttons("Seçin", [("opt:1", "Ekstra acılı ve bol soğanlı")])

    title = message.buttons[0].title
    assert len(title) == 20
    assert title.endswith("…")


def test_more_than_three_buttons_is_rejected():
    with pytest.raises(ValidationError):
        OutboundMessage.with_buttons("Seçin", [(f"opt:{i}", f"Seçenek {i}") for i in range(4)])


def test_event_constructors_validate_payload():
    assert InboundEvent.location(40.99, 29.03).kind == "location"
    assert InboundEvent.button("pay_cash").button_id == "pay_cash"

    with pytest.raises(ValidationError):
        InboundEvent(kind="button_reply")
    with pytest.raises(ValidationError):
        InboundEvent(kind="payment_outcome")


def test_coerce_event_wraps_validation_errors():
    assert coerce_event({"kind": "text", "text": "merhaba"}).text == "merhaba"

    with pytest.raises(InboundEventError) as exc_info:
        coerce_event({"kind": "audio"})
    assert exc_info.value.code == "VALIDATION_ERROR"


def test_coerce_customer_requires_phone():
    assert coerce_customer(None) is None
    assert coerce_customer({"phone": "905551112233"}).name is None

    with pytest.raises(InboundEventError):
        coerce_customer({"name": "Ayşe"})


def test_unknown_state_value_falls_back_to_idle():
    assert parse_state("AWAITING_PAYMENT") == ConversationState.AWAITING_PAYMENT
    assert parse_state("LEGACY") == ConversationState.IDLE
    assert parse_state(None) == ConversationState.IDLE


def test_turn_result_serializes_replies():
    result = TurnResult(replies=[OutboundMessage.location_request("Konum?")], state=ConversationState.AWAITING_LOCATION, conversation_id=3)

    payload = result.to_dict()

    assert payload["state"] == "AWAITING_LOCATION"
    assert payload["replies"] == [{"kind": "location_request", "text": "Konum?", "buttons": []}]
    assert payload["noop"] is False
    assert payload["warnings"] == []


def test_turn_result_serializes_warning_codes():
    result = TurnResult(replies=[], state=ConversationState.BUILDING_ORDER, warnings=["missing_required"])

    assert result.to_dict()["warnings"] == ["missing_required"]
