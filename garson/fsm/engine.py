from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Iterable

from pydantic import ValidationError
from sqlalchemy.orm import Session

from garson.ai.extractor import IntentExtractor, ValidatedItem
from garson.ai.service import BackendRegistry, get_ai_config
from garson.core.config import (
    CONFIDENCE_THRESHOLD,
    CONVERSATION_HISTORY_SIZE,
    MAX_BUTTONS_PER_MESSAGE,
    UPSELL_ENABLED,
)
from garson.core.errors import ConversationNotFound, ExtractionUnavailable, InboundEventError, PaymentError
from garson.core.metrics import turn_metrics
from garson.core.request_context import clear_conversation_context, set_request_context
from garson.fsm.events import (
    EVENT_BUTTON_REPLY,
    EVENT_LOCATION,
    EVENT_PAYMENT_OUTCOME,
    EVENT_TEXT,
    CustomerIdentity,
    InboundEvent,
    OutboundMessage,
    TurnResult,
)
from garson.fsm.states import ORDERING_STATES, TERMINAL_STATES, ConversationState, parse_state
from garson.models.conversation import Conversation
from garson.models.menu_item import MenuItem
from garson.models.order import ORDER_CHECKOUT, ORDER_DRAFT, Order
from garson.models.order_item import OrderItem
from garson.services import upsell as upsell_log
from garson.services.geo import GeoService, StoreRadiusGeoService
from garson.services.menu_candidates import find_menu_candidates
from garson.services.menu_catalog import MenuCatalog, OptionGroup, OptionGroupSnapshot, OptionSnapshot
from garson.services.menu_search import FILLER_TOKENS, contains_phrase, normalize
from garson.services.message_templates import BUTTON_LABELS, format_line, format_price, greeting, render
from garson.services.orders import (
    add_item,
    begin_checkout,
    cancel_order,
    complete_order,
    ensure_draft,
    get_active_order,
    line_options,
    set_delivery,
    set_line_options,
)
from garson.services.payments import PAYMENT_CARD, PAYMENT_CASH, MockPaymentGateway, PaymentGateway
from garson.services.session_store import SessionLease, SessionStore
from garson.services.upsell import UpsellEngine

logger = logging.getLogger(__name__)

State = ConversationState

# Keyword phrases are matched against normalized (folded, alias-expanded) text.
CONFIRM_KEYWORDS = ("tamam", "evet", "onayla", "onayliyorum", "bu kadar")
CANCEL_KEYWORDS = ("iptal", "vazgec", "vazgectim", "istemiyorum")
MENU_KEYWORDS = ("menu", "neler var", "katalog")
CART_KEYWORDS = ("sepet", "sepetim", "sepeti")
GREETING_KEYWORDS = ("merhaba", "selam", "selamlar", "slm", "iyi gunler", "iyi aksamlar")
RESET_KEYWORDS = ("sifirla", "reset", "bastan")
CASH_KEYWORDS = ("nakit", "nakitle", "kapida")
CARD_KEYWORDS = ("kredi karti", "kart", "kartla", "kredi")
YES_KEYWORDS = ("evet", "ekle", "olur", "tamam")
NO_KEYWORDS = ("hayir", "istemem", "yok", "gerek yok", "kalsin")

# Words allowed around a command keyword ("siparisi iptal et", "menuyu goster").
_COMMAND_NOISE = FILLER_TOKENS | {
    "et",
    "edin",
    "edelim",
    "siparis",
    "siparisi",
    "siparisim",
    "goster",
    "gonder",
    "artik",
    "hepsi",
    "ok",
    "tesekkurler",
    "sagol",
    "yap",
    "basla",
    "ode",
    "odeme",
    "odeyecegim",
    "ekle",
    "lazim",
    "var",
    "mi",
    "mu",
    "ne",
}

OPTION_BUTTON_PREFIX = "opt:"
BUTTON_PAY_CASH = "pay_cash"
BUTTON_PAY_CARD = "pay_card"
BUTTON_UPSELL_ACCEPT = "upsell_accept"
BUTTON_UPSELL_REJECT = "upsell_reject"


def _is_command(normalized: str, keywords: Iterable[str]) -> bool:
    """True when the text is the keyword plus nothing but filler words."""
    remaining = normalized
    matched = False
    for keyword in sorted(keywords, key=len, reverse=True):
        if contains_phrase(remaining, keyword):
            matched = True
            remaining = re.sub(rf"(?<!\w){re.escape(keyword)}(?!\w)", " ", remaining)
    if not matched:
        return False
    return all(token in _COMMAND_NOISE for token in remaining.split())


def _payment_method_from_text(normalized: str) -> str | None:
    if _is_command(normalized, CASH_KEYWORDS):
        return PAYMENT_CASH
    if _is_command(normalized, CARD_KEYWORDS):
        return PAYMENT_CARD
    return None


def coerce_event(event: InboundEvent | dict[str, Any]) -> InboundEvent:
    if isinstance(event, InboundEvent):
        return event
    try:
        return InboundEvent.model_validate(event)
    except ValidationError as exc:
        raise InboundEventError("malformed inbound event", errors=exc.errors(include_url=False)) from exc


def coerce_customer(customer: CustomerIdentity | dict[str, Any] | None) -> CustomerIdentity | None:
    if customer is None or isinstance(customer, CustomerIdentity):
        return customer
    try:
        return CustomerIdentity.model_validate(customer)
    except ValidationError as exc:
        raise InboundEventError("malformed customer identity", errors=exc.errors(include_url=False)) from exc


def _load_data(conversation: Conversation) -> dict:
    try:
        data = json.loads(conversation.data or "{}")
    except (TypeError, ValueError):
        logger.warning("conversation data is not valid JSON, starting fresh")
        return {}
    return data if isinstance(data, dict) else {}


def _order_lines(order: Order) -> str:
    return "\n".join(
        format_line(
            line.quantity,
            line.name,
            line.subtotal_cents,
            [option.get("name", "") for option in line_options(line)],
            line.notes,
        )
        for line in order.order_items
    )


def _summary(order: Order) -> str:
    summary = render("order_summary", lines=_order_lines(order), items_total=format_price(order.items_total_cents))
    return f"{summary}\n\n{render('order_summary_footer')}"


def _find_line(order: Order, line_id: int | None) -> OrderItem | None:
    for line in order.order_items:
        if line.id == line_id:
            return line
    return None


def _line_has_group(line: OrderItem, group: OptionGroup) -> bool:
    return any(group.option(option.get("id")) is not None for option in line_options(line))


def _match_option(group: OptionGroup, normalized: str) -> OptionSnapshot | None:
    if normalized.isdigit():
        index = int(normalized) - 1
        if 0 <= index < len(group.options):
            return group.options[index]
        return None
    for option in group.options:
        if contains_phrase(normalized, normalize(option.name)):
            return option
    return None


@dataclass
class _Turn:
    db: Session
    tenant_id: int
    conversation: Conversation
    lease: SessionLease
    data: dict
    replies: list[OutboundMessage] = field(default_factory=list)
    noop: bool = False
    intent_id: int | None = None
    fallback_used: bool = False
    warnings: list[str] = field(default_factory=list)

    @property
    def state(self) -> ConversationState:
        return parse_state(self.conversation.state)

    def move(self, state: ConversationState) -> None:
        if self.conversation.state != state.value:
            logger.info("state transition %s -> %s", self.conversation.state, state.value, extra={"state": state.value})
            self.conversation.state = state.value

    def say(self, text: str) -> None:
        self.replies.append(OutboundMessage.plain(text))

    def ask(self, text: str, buttons: list[tuple[str, str]]) -> None:
        self.replies.append(OutboundMessage.with_buttons(text, buttons))

    def history(self) -> list[dict[str, str]]:
        history = self.data.get("history")
        return list(history) if isinstance(history, list) else []

    def save(self) -> None:
        self.conversation.data = json.dumps(self.data, ensure_ascii=False)


class ConversationEngine:
    """Runs one conversation turn: current state plus inbound event gives the
    next state, the outbound replies and any order mutation.

    Turns of one conversation are serialized through the session store. Every
    turn ends with at least one reply or an explicit no-op marker, and an
    unexpected failure rolls the transaction back and answers with an apology.
    """

    def __init__(
        self,
        *,
        session_store: SessionStore,
        catalog: MenuCatalog | None = None,
        registry: BackendRegistry | None = None,
        upsell_engine: UpsellEngine | None = None,
        geo: GeoService | None = None,
        payments: PaymentGateway | None = None,
        confidence_threshold: float = CONFIDENCE_THRESHOLD,
        history_size: int = CONVERSATION_HISTORY_SIZE,
        upsell_enabled: bool = UPSELL_ENABLED,
    ) -> None:
        self.session_store = session_store
        self.catalog = catalog or MenuCatalog()
        self.registry = registry or BackendRegistry()
        self.upsell_engine = upsell_engine or UpsellEngine()
        self.geo = geo or StoreRadiusGeoService()
        self.payments = payments or MockPaymentGateway()
        self.confidence_threshold = confidence_threshold
        self.history_size = history_size
        self.upsell_enabled = upsell_enabled
        self._event_handlers = {
            EVENT_TEXT: self._on_text,
            EVENT_LOCATION: self._on_location,
            EVENT_BUTTON_REPLY: self._on_button,
            EVENT_PAYMENT_OUTCOME: self._on_payment_outcome,
        }

    def handle_turn(
        self,
        db: Session,
        tenant_id: int,
        conversation_id: int,
        customer: CustomerIdentity | dict[str, Any] | None,
        event: InboundEvent | dict[str, Any],
    ) -> TurnResult:
        set_request_context(tenant_id=tenant_id, conversation_id=conversation_id)
        try:
            with self.session_store.acquire(tenant_id, conversation_id) as lease:
                return self._run_turn(db, tenant_id, conversation_id, customer, event, lease)
        finally:
            clear_conversation_context()

    def reset_conversation(self, db: Session, tenant_id: int, conversation_id: int) -> TurnResult:
        """Explicit reset from outside the chat (admin). In-flight extraction is discarded."""
        self.session_store.bump(tenant_id, conversation_id)
        set_request_context(tenant_id=tenant_id, conversation_id=conversation_id)
        try:
            with self.session_store.acquire(tenant_id, conversation_id) as lease:
                conversation = self._load_conversation(db, tenant_id, conversation_id)
                turn = _Turn(db=db, tenant_id=tenant_id, conversation=conversation, lease=lease, data={})
                self._reset(turn, bump=False)
                turn.save()
                db.commit()
                logger.info("conversation reset by operator")
                return TurnResult(replies=[], state=turn.state, noop=True, conversation_id=conversation.id)
        finally:
            clear_conversation_context()

    def _load_conversation(self, db: Session, tenant_id: int, conversation_id: int) -> Conversation:
        # Called with the lease held: rows the caller read before the lease may
        # predate the previous turn's commit, so nothing cached is trusted.
        db.expire_all()
        conversation = (
            db.query(Conversation)
            .filter(Conversation.id == conversation_id, Conversation.tenant_id == tenant_id)
            .populate_existing()
            .first()
        )
        if conversation is None:
            raise ConversationNotFound("conversation not found", conversation_id=conversation_id)
        return conversation

    def _run_turn(
        self,
        db: Session,
        tenant_id: int,
        conversation_id: int,
        customer: CustomerIdentity | dict[str, Any] | None,
        event: InboundEvent | dict[str, Any],
        lease: SessionLease,
    ) -> TurnResult:
        start = time.perf_counter()
        conversation = self._load_conversation(db, tenant_id, conversation_id)
        turn = _Turn(db=db, tenant_id=tenant_id, conversation=conversation, lease=lease, data=_load_data(conversation))
        state_before = turn.state
        event_kind = getattr(event, "kind", None) or (event.get("kind") if isinstance(event, dict) else None)
        error = False
        failed = False

        try:
            identity = coerce_customer(customer)
            if identity is not None and identity.name and identity.name != conversation.customer_name:
                conversation.customer_name = identity.name
            inbound = coerce_event(event)
            self._event_handlers[inbound.kind](turn, inbound)
            if not turn.replies and not turn.noop:
                turn.say(render("clarify_generic"))
            self._remember(turn, inbound)
            turn.save()
            db.commit()
        except InboundEventError as exc:
            db.rollback()
            failed = True
            logger.warning("invalid inbound event error=%s", exc.message)
            turn.replies = [OutboundMessage.plain(render("clarify_generic"))]
            turn.noop = False
        except Exception:
            logger.exception("conversation turn failed")
            db.rollback()
            failed = True
            error = True
            turn.replies = [OutboundMessage.plain(render("turn_failed"))]
            turn.noop = False

        state = state_before if failed else turn.state
        order_id = None if failed else conversation.active_order_id
        duration_ms = round((time.perf_counter() - start) * 1000, 2)
        turn_metrics.observe(tenant_id, state.value, duration_ms, error=error, fallback=turn.fallback_used)
        logger.info(
            "turn handled %s -> %s replies=%s noop=%s",
            state_before.value,
            state.value,
            len(turn.replies),
            turn.noop,
            extra={"duration_ms": duration_ms, "state": state.value, "event_kind": event_kind},
        )
        return TurnResult(
            replies=turn.replies,
            state=state,
            noop=turn.noop,
            conversation_id=conversation_id,
            order_id=order_id,
            intent_id=turn.intent_id,
            warnings=turn.warnings,
        )

    def _remember(self, turn: _Turn, event: InboundEvent) -> None:
        if event.kind == EVENT_TEXT:
            customer_text = event.text
        elif event.kind == EVENT_BUTTON_REPLY:
            customer_text = event.button_title or event.button_id
        else:
            return
        history = turn.history()
        history.append({"role": "user", "content": customer_text})
        history.extend({"role": "assistant", "content": reply.text} for reply in turn.replies)
        turn.data["history"] = history[-self.history_size :]

    # text

    def _on_text(self, turn: _Turn, event: InboundEvent) -> None:
        text = event.text.strip()
        normalized = normalize(text)

        if turn.state != State.IDLE and _is_command(normalized, RESET_KEYWORDS):
            self._reset(turn)
            turn.say(render("reset"))
            return
        if turn.state in TERMINAL_STATES:
            self._start_over(turn)

        state = turn.state
        if state in ORDERING_STATES:
            self._on_ordering_text(turn, text, normalized)
        elif state == State.AWAITING_LOCATION:
            if _is_command(normalized, CANCEL_KEYWORDS):
                self._cancel(turn)
            elif _is_command(normalized, CART_KEYWORDS):
                self._show_cart(turn)
            else:
                turn.replies.append(OutboundMessage.location_request(render("location_request")))
        elif state == State.AWAITING_PAYMENT_METHOD:
            self._on_payment_method_text(turn, normalized)
        elif state == State.AWAITING_PAYMENT:
            if _is_command(normalized, CANCEL_KEYWORDS):
                self._cancel(turn)
            elif _payment_method_from_text(normalized) == PAYMENT_CASH:
                self._switch_to_cash(turn)
            else:
                turn.say(render("payment_pending", url=turn.data.get("payment_url") or "-"))

    def _on_ordering_text(self, turn: _Turn, text: str, normalized: str) -> None:
        if turn.data.get("pending_options") and self._resolve_option(turn, normalized_text=normalized):
            return
        if _is_command(normalized, CANCEL_KEYWORDS):
            self._cancel(turn)
        elif _is_command(normalized, MENU_KEYWORDS):
            self._show_menu(turn)
        elif _is_command(normalized, CART_KEYWORDS):
            self._show_cart(turn)
        elif _is_command(normalized, CONFIRM_KEYWORDS):
            self._confirm(turn)
        elif _is_command(normalized, GREETING_KEYWORDS):
            self._greet(turn)
        else:
            self._take_order(turn, text)

    def _on_payment_method_text(self, turn: _Turn, normalized: str) -> None:
        if turn.data.get("pending_upsell"):
            # "istemiyorum" declines the suggestion here, it does not cancel the order
            if _is_command(normalized, NO_KEYWORDS + ("istemiyorum",)):
                self._answer_upsell(turn, accepted=False)
            elif _is_command(normalized, YES_KEYWORDS):
                self._answer_upsell(turn, accepted=True)
            elif _is_command(normalized, CANCEL_KEYWORDS):
                self._cancel(turn)
            else:
                self._ask_upsell_answer(turn)
            return

        if _is_command(normalized, CANCEL_KEYWORDS):
            self._cancel(turn)
            return
        method = _payment_method_from_text(normalized)
        if method is None:
            self._ask_payment_method(turn, render("payment_method_expected"))
        else:
            self._choose_payment(turn, method)

    def _greet(self, turn: _Turn) -> None:
        turn.say(greeting(turn.conversation.customer_name))
        if turn.state == State.IDLE:
            turn.move(State.GREETED)

    def _not_understood(self, turn: _Turn) -> None:
        if turn.state == State.IDLE:
            self._greet(turn)
        else:
            turn.say(render("clarify_generic"))

    def _show_menu(self, turn: _Turn) -> None:
        items = self.catalog.get_active_menu_items(turn.db, turn.tenant_id)
        if not items:
            turn.say(render("menu_empty"))
            return
        sections: dict[str, list[str]] = {}
        for item in items:
            sections.setdefault(item.category or "Diğer", []).append(f"  • {item.name} - {format_price(item.price_cents)}")
        body = "\n\n".join(f"*{category}*\n" + "\n".join(lines) for category, lines in sections.items())
        turn.say(f"{render('menu_header')}\n\n{body}\n\n{render('menu_footer')}")
        if turn.state in {State.IDLE, State.GREETED}:
            turn.move(State.BROWSING)

    def _show_cart(self, turn: _Turn) -> None:
        order = get_active_order(turn.db, turn.conversation)
        if order is None or order.status not in {ORDER_DRAFT, ORDER_CHECKOUT} or not order.order_items:
            turn.say(render("cart_empty"))
            return
        turn.say(_summary(order))

    def _confirm(self, turn: _Turn) -> None:
        order = get_active_order(turn.db, turn.conversation)
        if order is None or order.status != ORDER_DRAFT or not order.order_items:
            turn.say(render("cart_empty"))
            return
        if self._ask_next_option(turn, order):
            return
        turn.move(State.AWAITING_LOCATION)
        turn.replies.append(OutboundMessage.location_request(render("location_request")))

    def _take_order(self, turn: _Turn, text: str) -> None:
        db = turn.db
        candidates = find_menu_candidates(db, turn.tenant_id, text, catalog=self.catalog)
        if not candidates:
            self._not_understood(turn)
            return

        option_groups = self.catalog.get_option_groups(db, turn.tenant_id, [c.menu_item_id for c in candidates])
        config = get_ai_config(db, turn.tenant_id)
        extractor = IntentExtractor(
            self.registry.extraction_backends(config),
            confidence_threshold=self.confidence_threshold,
        )
        try:
            outcome = extractor.extract(
                db,
                tenant_id=turn.tenant_id,
                conversation_id=turn.conversation.id,
                text=text,
                candidates=candidates,
                option_groups=option_groups,
                history=turn.history(),
            )
        except ExtractionUnavailable as exc:
            logger.error("extraction unavailable error=%s", exc.message)
            turn.say(render("extraction_unavailable"))
            return

        turn.intent_id = outcome.intent_id
        turn.fallback_used = outcome.fallback_used
        turn.warnings = [warning.get("code") for warning in outcome.warnings if warning.get("code")]

        if not self.session_store.is_current(turn.lease):
            logger.info("conversation was reset during extraction, discarding intent_id=%s", outcome.intent_id)
            turn.noop = True
            return

        if outcome.needs_clarification(self.confidence_threshold):
            if turn.state == State.IDLE and not outcome.items:
                self._greet(turn)
            elif outcome.clarification_question:
                turn.say(render("clarify", question=outcome.clarification_question))
            else:
                turn.say(render("clarify_generic"))
            return

        question = outcome.clarification_question if outcome.dropped else None
        self._apply_items(turn, outcome.items, question)

    def _apply_items(self, turn: _Turn, items: list[ValidatedItem], question: str | None) -> None:
        db = turn.db
        order = ensure_draft(db, turn.conversation)
        pending = list(turn.data.get("pending_options") or [])
        added: list[str] = []

        for item in items:
            options = list(item.options)
            unresolved: list[OptionGroup] = []
            for group in item.missing_groups:
                default = group.default_option()
                if default is not None:
                    options.append(default)
                else:
                    unresolved.append(group)

            line = add_item(
                db,
                order,
                menu_item_id=item.menu_item_id,
                name=item.name,
                base_price_cents=item.base_price_cents,
                quantity=item.quantity,
                options=options,
                notes=item.notes,
            )
            unit_price = item.base_price_cents + sum(option.price_delta_cents for option in options)
            added.append(
                format_line(item.quantity, item.name, unit_price * item.quantity, [o.name for o in options], item.notes)
            )
            for group in unresolved:
                pending.append({"line_id": line.id, "menu_item_id": item.menu_item_id, "group_id": group.id})

        turn.data["pending_options"] = pending
        turn.move(State.BUILDING_ORDER)
        turn.say(render("items_added", lines="\n".join(added)))
        if question:
            turn.say(render("clarify", question=question))
        if not self._ask_next_option(turn, order):
            turn.say(_summary(order))

    # required options

    def _pending_group(self, turn: _Turn, entry: dict) -> tuple[OptionGroupSnapshot, OptionGroup] | None:
        item_id = entry.get("menu_item_id")
        snapshot = self.catalog.get_option_groups(turn.db, turn.tenant_id, [item_id])
        if item_id not in snapshot.items:
            return None
        for group in snapshot.groups_for(item_id):
            if group.id == entry.get("group_id"):
                return snapshot, group
        return None

    def _ask_next_option(self, turn: _Turn, order: Order) -> bool:
        pending = list(turn.data.get("pending_options") or [])
        while pending:
            entry = pending[0]
            line = _find_line(order, entry.get("line_id"))
            found = self._pending_group(turn, entry)
            if line is None or found is None or not found[1].options or _line_has_group(line, found[1]):
                pending.pop(0)
                continue
            turn.data["pending_options"] = pending
            group = found[1]
            if len(group.options) <= MAX_BUTTONS_PER_MESSAGE:
                turn.ask(
                    render("option_question", item_name=line.name, group_name=group.name),
                    [(f"{OPTION_BUTTON_PREFIX}{option.id}", option.name) for option in group.options],
                )
            else:
                turn.say(
                    render(
                        "option_question_list",
                        item_name=line.name,
                        group_name=group.name,
                        options=", ".join(option.name for option in group.options),
                    )
                )
            return True
        turn.data.pop("pending_options", None)
        return False

    def _resolve_option(self, turn: _Turn, *, option_id: int | None = None, normalized_text: str | None = None) -> bool:
        pending = list(turn.data.get("pending_options") or [])
        order = get_active_order(turn.db, turn.conversation)
        if not pending or order is None or order.status != ORDER_DRAFT:
            turn.data.pop("pending_options", None)
            return False

        entry = pending[0]
        found = self._pending_group(turn, entry)
        line = _find_line(order, entry.get("line_id"))
        if found is None or line is None:
            pending.pop(0)
            turn.data["pending_options"] = pending
            return False

        snapshot, group = found
        choice = group.option(option_id) if option_id is not None else _match_option(group, normalized_text or "")
        if choice is None:
            return False

        current: list[OptionSnapshot] = []
        for chosen in line_options(line):
            match = snapshot.find_option(line.menu_item_id, chosen.get("id"))
            if match is not None:
                current.append(match[1])
        merged = set_line_options(
            turn.db,
            order,
            line,
            snapshot.items[line.menu_item_id].price_cents,
            current + [choice],
        )

        pending.pop(0)
        for other in pending:
            if other.get("line_id") == entry.get("line_id"):
                other["line_id"] = merged.id
        turn.data["pending_options"] = pending
        logger.info("option chosen line_id=%s option_id=%s", merged.id, choice.id)

        if not self._ask_next_option(turn, order):
            turn.say(_summary(order))
        return True

    # location

    def _on_location(self, turn: _Turn, event: InboundEvent) -> None:
        if turn.state != State.AWAITING_LOCATION:
            turn.say(render("location_unexpected"))
            return

        order = self._checkout_order(turn)
        if order is None or not order.order_items:
            turn.say(render("cart_empty"))
            turn.move(State.BUILDING_ORDER if order is not None else State.IDLE)
            return

        result = self.geo.check_service_area(turn.db, turn.tenant_id, event.latitude, event.longitude)
        if not result.within_area:
            turn.say(render("location_outside", message=result.message or "Konumunuz teslimat alanımızın dışında."))
            return
        if int(order.items_total_cents or 0) < result.min_basket_cents:
            turn.say(
                render(
                    "min_basket",
                    min_basket=format_price(result.min_basket_cents),
                    current_total=format_price(order.items_total_cents),
                )
            )
            turn.move(State.BUILDING_ORDER)
            return

        set_delivery(
            order,
            store_name=result.nearest_store,
            delivery_fee_cents=result.delivery_fee_cents,
            lat=event.latitude,
            lng=event.longitude,
        )
        turn.db.flush()
        turn.move(State.AWAITING_PAYMENT_METHOD)
        distance = f"{result.distance_km:.1f}" if result.distance_km is not None else "-"
        turn.say(
            render(
                "location_confirmed",
                store_name=result.nearest_store,
                distance=distance,
                delivery_fee=format_price(result.delivery_fee_cents),
                total=format_price(order.total_cents),
            )
        )
        self._ask_payment_method(turn, render("payment_method"))

    # buttons

    def _on_button(self, turn: _Turn, event: InboundEvent) -> None:
        button_id = event.button_id.strip()
        state = turn.state

        if button_id.startswith(OPTION_BUTTON_PREFIX):
            try:
                option_id = int(button_id[len(OPTION_BUTTON_PREFIX) :])
            except ValueError:
                option_id = None
            if option_id is not None and state in ORDERING_STATES and self._resolve_option(turn, option_id=option_id):
                return
        elif button_id in {BUTTON_UPSELL_ACCEPT, BUTTON_UPSELL_REJECT}:
            if state == State.AWAITING_PAYMENT_METHOD and turn.data.get("pending_upsell"):
                self._answer_upsell(turn, accepted=button_id == BUTTON_UPSELL_ACCEPT)
                return
        elif button_id in {BUTTON_PAY_CASH, BUTTON_PAY_CARD}:
            method = PAYMENT_CASH if button_id == BUTTON_PAY_CASH else PAYMENT_CARD
            if state == State.AWAITING_PAYMENT_METHOD:
                if turn.data.get("pending_upsell"):
                    self._ask_upsell_answer(turn)
                else:
                    self._choose_payment(turn, method)
                return
            if state == State.AWAITING_PAYMENT and method == PAYMENT_CASH:
                self._switch_to_cash(turn)
                return

        logger.info("button reply not applicable button_id=%s state=%s", button_id, state.value)
        turn.say(render("clarify_generic"))

    # payment

    def _checkout_order(self, turn: _Turn) -> Order | None:
        order = get_active_order(turn.db, turn.conversation)
        if order is None or order.status not in {ORDER_DRAFT, ORDER_CHECKOUT}:
            return None
        return order

    def _ask_payment_method(self, turn: _Turn, text: str) -> None:
        turn.ask(
            text,
            [(BUTTON_PAY_CASH, BUTTON_LABELS["pay_cash"]), (BUTTON_PAY_CARD, BUTTON_LABELS["pay_card"])],
        )

    def _ask_upsell_answer(self, turn: _Turn) -> None:
        turn.ask(
            render("upsell_answer_expected"),
            [
                (BUTTON_UPSELL_ACCEPT, BUTTON_LABELS["upsell_accept"]),
                (BUTTON_UPSELL_REJECT, BUTTON_LABELS["upsell_reject"]),
            ],
        )

    def _choose_payment(self, turn: _Turn, method: str) -> None:
        order = self._checkout_order(turn)
        if order is None or not order.order_items:
            turn.say(render("cart_empty"))
            self._start_over(turn)
            return

        if self.upsell_enabled and not turn.data.get("upsell_offered") and order.status == ORDER_DRAFT:
            turn.data["upsell_offered"] = True
            config = get_ai_config(turn.db, turn.tenant_id)
            suggestion = self.upsell_engine.suggest(
                turn.db,
                tenant_id=turn.tenant_id,
                order=order,
                conversation_id=turn.conversation.id,
                customer_name=turn.conversation.customer_name,
                generator=self.registry.message_generator(config),
            )
            if suggestion is not None:
                shown = upsell_log.log_shown(
                    turn.db,
                    tenant_id=turn.tenant_id,
                    conversation_id=turn.conversation.id,
                    order_id=order.id,
                    suggestion=suggestion,
                )
                turn.data["pending_upsell"] = {"event_id": shown.id, "item_id": suggestion.item_id, "method": method}
                turn.ask(
                    suggestion.message,
                    [
                        (BUTTON_UPSELL_ACCEPT, BUTTON_LABELS["upsell_accept"]),
                        (BUTTON_UPSELL_REJECT, BUTTON_LABELS["upsell_reject"]),
                    ],
                )
                return

        self._checkout(turn, order, method)

    def _answer_upsell(self, turn: _Turn, *, accepted: bool) -> None:
        pending = turn.data.pop("pending_upsell", None) or {}
        upsell_log.resolve(turn.db, tenant_id=turn.tenant_id, event_id=pending.get("event_id"), accepted=accepted)
        order = self._checkout_order(turn)
        if order is None:
            turn.say(render("cart_empty"))
            self._start_over(turn)
            return

        if accepted and order.status == ORDER_DRAFT:
            item = (
                turn.db.query(MenuItem)
                .filter(
                    MenuItem.id == pending.get("item_id"),
                    MenuItem.tenant_id == turn.tenant_id,
                    MenuItem.active.is_(True),
                )
                .first()
            )
            if item is not None:
                snapshot = self.catalog.get_option_groups(turn.db, turn.tenant_id, [item.id])
                defaults = [
                    group.default_option()
                    for group in snapshot.groups_for(item.id)
                    if group.required and group.default_option() is not None
                ]
                add_item(
                    turn.db,
                    order,
                    menu_item_id=item.id,
                    name=item.name,
                    base_price_cents=int(item.price_cents or 0),
                    quantity=1,
                    options=defaults,
                )
                turn.say(render("upsell_added", item_name=item.name))

        self._checkout(turn, order, pending.get("method") or PAYMENT_CASH)

    def _checkout(self, turn: _Turn, order: Order, method: str) -> None:
        try:
            handle = self.payments.initiate_payment(turn.db, order, method)
        except PaymentError as exc:
            logger.warning("payment initiation failed order_id=%s error=%s", order.id, exc.message)
            turn.move(State.AWAITING_PAYMENT_METHOD)
            self._ask_payment_method(turn, render("payment_failed"))
            return

        begin_checkout(turn.db, order, payment_method=method, reference=handle.reference)
        if handle.settled:
            complete_order(turn.db, order)
            self._clear_flow(turn)
            turn.move(State.CONFIRMED)
            turn.say(render("cash_confirmed", order_id=order.id))
            return

        turn.data["payment_url"] = handle.payment_url
        turn.move(State.AWAITING_PAYMENT)
        turn.say(render("payment_link", url=handle.payment_url))

    def _switch_to_cash(self, turn: _Turn) -> None:
        order = self._checkout_order(turn)
        if order is None:
            turn.say(render("cart_empty"))
            self._start_over(turn)
            return
        logger.info("customer switched to cash order_id=%s", order.id)
        self._checkout(turn, order, PAYMENT_CASH)

    def _on_payment_outcome(self, turn: _Turn, event: InboundEvent) -> None:
        if turn.state != State.AWAITING_PAYMENT:
            logger.warning("payment outcome ignored state=%s reference=%s", turn.state.value, event.payment_reference)
            turn.noop = True
            return

        order = self._checkout_order(turn)
        if order is None or (event.payment_reference and order.checkout_reference != event.payment_reference):
            logger.warning("payment outcome for unknown checkout reference=%s", event.payment_reference)
            turn.noop = True
            return

        if event.payment_success:
            complete_order(turn.db, order)
            self._clear_flow(turn)
            turn.move(State.CONFIRMED)
            turn.say(render("payment_success", order_id=order.id))
            return

        logger.info("payment failed order_id=%s", order.id)
        turn.data.pop("payment_url", None)
        turn.move(State.AWAITING_PAYMENT_METHOD)
        self._ask_payment_method(turn, render("payment_failed"))

    # lifecycle

    def _clear_flow(self, turn: _Turn) -> None:
        turn.data = {"history": turn.history()}

    def _cancel(self, turn: _Turn) -> None:
        order = self._checkout_order(turn)
        if order is None:
            turn.say(render("nothing_to_cancel"))
            return
        cancel_order(turn.db, order)
        self._clear_flow(turn)
        turn.move(State.CANCELLED)
        turn.say(render("order_cancelled"))

    def _start_over(self, turn: _Turn) -> None:
        turn.conversation.active_order_id = None
        self._clear_flow(turn)
        turn.move(State.IDLE)

    def _reset(self, turn: _Turn, *, bump: bool = True) -> None:
        order = self._checkout_order(turn)
        if order is not None:
            cancel_order(turn.db, order)
        turn.conversation.active_order_id = None
        turn.data = {}
        turn.move(State.IDLE)
        if bump:
            self.session_store.bump(turn.tenant_id, turn.conversation.id)
