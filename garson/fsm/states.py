from enum import Enum


class ConversationState(str, Enum):
    IDLE = "IDLE"
    GREETED = "GREETED"
    BROWSING = "BROWSING"
    BUILDING_ORDER = "BUILDING_ORDER"
    AWAITING_LOCATION = "AWAITING_LOCATION"
    AWAITING_PAYMENT_METHOD = "AWAITING_PAYMENT_METHOD"
    AWAITING_PAYMENT = "AWAITING_PAYMENT"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"


TERMINAL_STATES = {ConversationState.CONFIRMED, ConversationState.CANCELLED}

# states where free text is routed through retrieval + extraction
ORDERING_STATES = {
    ConversationState.IDLE,
    ConversationState.GREETED,
    ConversationState.BROWSING,
    ConversationState.BUILDING_ORDER,
}


def parse_state(value: str | None) -> ConversationState:
    try:
        return ConversationState(value or ConversationState.IDLE.value)
    except ValueError:
        return ConversationState.IDLE
