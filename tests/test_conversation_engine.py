import json

import pytest

from garson.ai.rules_provider import RuleBasedExtractionBackend
from garson.ai.service import BackendRegistry
from garson.core.errors import ConversationNotFound, ExtractionUnavailable, GenerationUnavailable
from garson.fsm.engine import ConversationEngine
from garson.fsm.events import InboundEvent
from garson.fsm.states import ConversationState
from garson.models.conversation import Conversation
from garson.models.cross_sell_rule import CrossSellRule
from garson.models.order import ORDER_CANCELLED, ORDER_CHECKOUT, ORDER_CONFIRMED, ORDER_DRAFT, Order
from garson.models.order_intent import OrderIntent
from garson.models.upsell_event import UpsellEvent
from garson.services.geo import ServiceAreaResult, StoreRadiusGeoService
from garson.services.conversations import get_or_create_conversation
from garson.services.message_templates import greeting, render
from garson.services.session_store import SessionStore
from tests.fixtures_data import (
    AYRAN,
    CUSTOMER,
    KUSBASILI_PIDE,
    LOCATION_INSIDE,
    LOCATION_OUTSIDE,
    SCENARIO_A_TEXT,
    SCENARIO_A_TOTAL_CENTS,
    SIZE_LARGE,
    SIZE_SMALL,
    TAVUK_DONER,
    TENANT_ID,
    create_conversation,
    make_session_factory,
    seed_menu,
)

State = ConversationState


class FailingGenerator:
    name = "stub"
    available = True

    def generate(self, prompt_context, *, tenant_id=None):
        raise GenerationUnavailable("offline")


class StubBackend:
    name = "stub"
    available = True

    def __init__(self, payload=None, error=None, before=None):
        self.payload = payload
        self.error = error
        self.before = before

    def extract(self, text, candidates, option_groups, history, *, tenant_id=None):
        if self.before is not None:
            self.before()
        if self.error is not None:
            raise self.error
        return self.payload


class CountingStore(SessionStore):
    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.bumps = []

    def bump(self, tenant_id, conversation_id):
        self.bumps.append((tenant_id, conversation_id))
        return super().bump(tenant_id, conversation_id)


class RecordingGeo:
    def __init__(self, result=None):
        self.calls = []
        self.result = result
        self._real = StoreRadiusGeoService()

    def check_service_area(self, db, tenant_id, lat, lng):
        self.calls.append((tenant_id, lat, lng))
        if self.result is not None:
            return self.result
        return self._real.check_service_area(db, tenant_id, lat, lng)


@pytest.fixture()
def db():
    Session = make_session_factory()
    session = Session()
    seed_menu(session)
    yield session
    session.close()


@pytest.fixture()
def conversation(db):
    return create_conversation(db)


def _engine(*, backend=None, store=None, geo=None, **kwargs):
    registry = BackendRegistry(
        rules_backend=backend or RuleBasedExtractionBackend(),
        message_generator=FailingGenerator(),
    )
    return ConversationEngine(session_store=store or SessionStore(), registry=registry, geo=geo, **kwargs)


def _send(engine, db, conversation, event):
    return engine.handle_turn(db, TENANT_ID, conversation.id, CUSTOMER, event)


def _text(engine, db, conversation, text):
    return _send(engine, db, conversation, InboundEvent.text_message(text))


def _order(db, conversation):
    db.refresh(conversation)
    return db.query(Order).filter(Order.id == conversation.active_order_id).one()


def _to_payment_method(engine, db, conversation, text=SCENARIO_A_TEXT):
    _text(engine, db, conversation, text)
    _text(engine, db, conversation, "tamam")
    return _send(engine, db, conversation, InboundEvent.location(**LOCATION_INSIDE))


def test_greeting_moves_idle_to_greeted(db, conversation):
    result = _text(_engine(), db, conversation, "Merhaba")

    assert result.state == State.GREETED
    assert result.replies[0].text == greeting("Ayşe")


def test_menu_lists_items_by_category(db, conversation):
    result = _text(_engine(), db, conversation, "menü")

    assert result.state == State.BROWSING
    assert "*Dönerler*" in result.replies[0].text
    assert "Tavuk Döner - 45 TL" in result.replies[0].text


def test_scenario_order_is_added_to_draft(db, conversation):
    result = _text(_engine(), db, conversation, SCENARIO_A_TEXT)

    assert result.state == State.BUILDING_ORDER
    assert result.intent_id is not None
    order = _order(db, conversation)
    assert order.status == ORDER_DRAFT
    assert [(line.menu_item_id, line.quantity) for line in order.order_items] == [(TAVUK_DONER, 2), (AYRAN, 1)]
    assert order.items_total_cents == SCENARIO_A_TOTAL_CENTS
    assert "2x Tavuk Döner - 90 TL" in result.replies[0].text
    assert "Ara toplam: 95 TL" in result.replies[-1].text


def test_repeated_item_merges_into_existing_line(db, conversation):
    engine = _engine()
    _text(engine, db, conversation, "1 ayran")
    _text(engine, db, conversation, "2 ayran")

    order = _order(db, conversation)
    assert [(line.menu_item_id, line.quantity) for line in order.order_items] == [(AYRAN, 3)]
    assert order.items_total_cents == 1500


def test_cash_flow_confirms_order(db, conversation):
    engine = _engine()
    _text(engine, db, conversation, SCENARIO_A_TEXT)

    confirm = _text(engine, db, conversation, "tamam")
    assert confirm.state == State.AWAITING_LOCATION
    assert confirm.replies[-1].kind == "location_request"

    located = _send(engine, db, conversation, InboundEvent.location(**LOCATION_INSIDE))
    assert located.state == State.AWAITING_PAYMENT_METHOD
    assert [button.id for button in located.replies[-1].buttons] == ["pay_cash", "pay_card"]
    assert _order(db, conversation).total_cents == SCENARIO_A_TOTAL_CENTS + 1000

    paid = _send(engine, db, conversation, InboundEvent.button("pay_cash", "Nakit"))
    assert paid.state == State.CONFIRMED
    order = _order(db, conversation)
    assert order.status == ORDER_CONFIRMED
    assert order.payment_method == "cash"
    assert order.completed_at is not None
    assert paid.order_id == order.id
    assert paid.replies[-1].text == render("cash_confirmed", order_id=order.id)


def test_payment_method_can_be_typed(db, conversation):
    engine = _engine()
    _to_payment_method(engine, db, conversation)

    result = _text(engine, db, conversation, "nakit")

    assert result.state == State.CONFIRMED


def test_card_flow_waits_for_payment_outcome(db, conversation):
    engine = _engine()
    _to_payment_method(engine, db, conversation)

    pending = _send(engine, db, conversation, InboundEvent.button("pay_card", "Kredi Kartı"))
    order = _order(db, conversation)
    assert pending.state == State.AWAITING_PAYMENT
    assert order.status == ORDER_CHECKOUT
    assert order.checkout_reference in pending.replies[-1].text

    reminder = _text(engine, db, conversation, "ne oldu")
    assert reminder.state == State.AWAITING_PAYMENT

    paid = _send(engine, db, conversation, InboundEvent.payment(True, order.checkout_reference))
    assert paid.state == State.CONFIRMED
    assert _order(db, conversation).status == ORDER_CONFIRMED


def test_failed_card_payment_returns_to_method_choice(db, conversation):
    engine = _engine()
    _to_payment_method(engine, db, conversation)
    _send(engine, db, conversation, InboundEvent.button("pay_card"))
    reference = _order(db, conversation).checkout_reference

    failed = _send(engine, db, conversation, InboundEvent.payment(False, reference))
    assert failed.state == State.AWAITING_PAYMENT_METHOD
    assert failed.replies[-1].text == render("payment_failed")

    paid = _send(engine, db, conversation, InboundEvent.button("pay_cash"))
    assert paid.state == State.CONFIRMED


def test_payment_outcome_with_unknown_reference_is_noop(db, conversation):
    engine = _engine()
    _to_payment_method(engine, db, conversation)
    _send(engine, db, conversation, InboundEvent.button("pay_card"))

    result = _send(engine, db, conversation, InboundEvent.payment(True, "chk_other"))

    assert result.noop is True
    assert result.replies == []
    assert result.state == State.AWAITING_PAYMENT


def test_payment_outcome_outside_payment_state_is_noop(db, conversation):
    result = _send(_engine(), db, conversation, InboundEvent.payment(True, "chk_1"))

    assert result.noop is True
    assert result.replies == []
    assert result.state == State.IDLE


def test_upsell_accept_adds_item_before_checkout(db, conversation):
    db.add(CrossSellRule(tenant_id=TENANT_ID, trigger_item_id=TAVUK_DONER, suggest_item_id=AYRAN, message="Yanına bir ayran? 🥛 5 TL"))
    db.commit()
    engine = _engine()
    _to_payment_method(engine, db, conversation, text="1 tavuk döner")

    offer = _send(engine, db, conversation, InboundEvent.button("pay_cash"))
    assert offer.state == State.AWAITING_PAYMENT_METHOD
    assert offer.replies[-1].text == "Yanına bir ayran? 🥛 5 TL"
    assert [button.id for button in offer.replies[-1].buttons] == ["upsell_accept", "upsell_reject"]

    accepted = _send(engine, db, conversation, InboundEvent.button("upsell_accept"))
    assert accepted.state == State.CONFIRMED
    order = _order(db, conversation)
    assert sorted(line.menu_item_id for line in order.order_items) == [TAVUK_DONER, AYRAN]
    assert order.total_cents == 4500 + 500 + 1000
    assert db.query(UpsellEvent).one().accepted is True


def test_upsell_reject_by_text_keeps_order(db, conversation):
    db.add(CrossSellRule(tenant_id=TENANT_ID, trigger_item_id=TAVUK_DONER, suggest_item_id=AYRAN))
    db.commit()
    engine = _engine()
    _to_payment_method(engine, db, conversation, text="1 tavuk döner")
    _send(engine, db, conversation, InboundEvent.button("pay_cash"))

    rejected = _text(engine, db, conversation, "hayır")

    assert rejected.state == State.CONFIRMED
    order = _order(db, conversation)
    assert [line.menu_item_id for line in order.order_items] == [TAVUK_DONER]
    assert db.query(UpsellEvent).one().accepted is False


def test_upsell_is_offered_once_per_order(db, conversation):
    db.add(CrossSellRule(tenant_id=TENANT_ID, trigger_item_id=TAVUK_DONER, suggest_item_id=AYRAN))
    db.commit()
    engine = _engine()
    _to_payment_method(engine, db, conversation, text="1 tavuk döner")
    _send(engine, db, conversation, InboundEvent.button("pay_card"))
    _send(engine, db, conversation, InboundEvent.button("upsell_reject"))
    reference = _order(db, conversation).checkout_reference
    _send(engine, db, conversation, InboundEvent.payment(False, reference))

    retry = _send(engine, db, conversation, InboundEvent.button("pay_cash"))

    assert retry.state == State.CONFIRMED
    assert db.query(UpsellEvent).count() == 1


def test_upsell_disabled_goes_straight_to_checkout(db, conversation):
    db.add(CrossSellRule(tenant_id=TENANT_ID, trigger_item_id=TAVUK_DONER, suggest_item_id=AYRAN))
    db.commit()
    engine = _engine(upsell_enabled=False)
    _to_payment_method(engine, db, conversation, text="1 tavuk döner")

    result = _send(engine, db, conversation, InboundEvent.button("pay_cash"))

    assert result.state == State.CONFIRMED
    assert db.query(UpsellEvent).count() == 0


def test_location_while_browsing_is_ignored_without_geo_lookup(db, conversation):
    geo = RecordingGeo()
    engine = _engine(geo=geo)
    _text(engine, db, conversation, "menü")

    result = _send(engine, db, conversation, InboundEvent.location(**LOCATION_INSIDE))

    assert result.state == State.BROWSING
    assert result.replies[0].text == render("location_unexpected")
    assert geo.calls == []


def test_location_outside_area_keeps_waiting_for_location(db, conversation):
    engine = _engine()
    _text(engine, db, conversation, SCENARIO_A_TEXT)
    _text(engine, db, conversation, "tamam")

    result = _send(engine, db, conversation, InboundEvent.location(**LOCATION_OUTSIDE))

    assert result.state == State.AWAITING_LOCATION
    assert "teslimat alanımızın dışında" in result.replies[0].text


def test_basket_below_minimum_returns_to_building(db, conversation):
    geo = RecordingGeo(
        result=ServiceAreaResult(
            within_area=True,
            nearest_store="Kadıköy",
            delivery_fee_cents=1000,
            distance_km=0.6,
            min_basket_cents=20000,
        )
    )
    engine = _engine(geo=geo)
    _text(engine, db, conversation, SCENARIO_A_TEXT)
    _text(engine, db, conversation, "tamam")

    result = _send(engine, db, conversation, InboundEvent.location(**LOCATION_INSIDE))

    assert result.state == State.BUILDING_ORDER
    assert "200 TL" in result.replies[0].text
    assert len(geo.calls) == 1


def test_required_option_is_asked_with_buttons(db, conversation):
    engine = _engine()

    asked = _text(engine, db, conversation, "1 kuşbaşılı pide")
    assert asked.state == State.BUILDING_ORDER
    assert [button.id for button in asked.replies[-1].buttons] == [f"opt:{SIZE_SMALL}", f"opt:{SIZE_LARGE}"]
    assert asked.warnings == ["missing_required"]

    chosen = _send(engine, db, conversation, InboundEvent.button(f"opt:{SIZE_LARGE}", "Büyük"))
    order = _order(db, conversation)
    assert [(line.menu_item_id, line.unit_price_cents) for line in order.order_items] == [(KUSBASILI_PIDE, 11000)]
    assert "Büyük" in chosen.replies[-1].text

    confirm = _text(engine, db, conversation, "tamam")
    assert confirm.state == State.AWAITING_LOCATION


def test_required_option_can_be_answered_by_text(db, conversation):
    engine = _engine()
    _text(engine, db, conversation, "kuşbaşılı pide")

    _text(engine, db, conversation, "küçük")

    order = _order(db, conversation)
    assert order.order_items[0].unit_price_cents == 9000
    assert json.loads(order.order_items[0].options_json)[0]["id"] == SIZE_SMALL


def test_confirm_with_open_option_question_asks_again(db, conversation):
    engine = _engine()
    _text(engine, db, conversation, "kuşbaşılı pide")

    result = _text(engine, db, conversation, "tamam")

    assert result.state == State.BUILDING_ORDER
    assert result.replies[-1].kind == "buttons"


def test_cancel_then_new_order_starts_over(db, conversation):
    engine = _engine()
    _text(engine, db, conversation, SCENARIO_A_TEXT)
    first_order = _order(db, conversation)

    cancelled = _text(engine, db, conversation, "siparişi iptal et")
    assert cancelled.state == State.CANCELLED
    db.refresh(first_order)
    assert first_order.status == ORDER_CANCELLED

    again = _text(engine, db, conversation, "1 ayran")
    assert again.state == State.BUILDING_ORDER
    assert _order(db, conversation).id != first_order.id


def test_cancel_without_order(db, conversation):
    result = _text(_engine(), db, conversation, "iptal")

    assert result.state == State.IDLE
    assert result.replies[0].text == render("nothing_to_cancel")


def test_reset_keyword_clears_order_and_bumps_generation(db, conversation):
    store = CountingStore()
    engine = _engine(store=store)
    _text(engine, db, conversation, SCENARIO_A_TEXT)
    order_id = _order(db, conversation).id

    result = _text(engine, db, conversation, "sıfırla")

    assert result.state == State.IDLE
    assert result.replies[0].text == render("reset")
    assert db.query(Order).filter(Order.id == order_id).one().status == ORDER_CANCELLED
    assert store.bumps == [(TENANT_ID, conversation.id)]


def test_reset_during_extraction_discards_result(db, conversation):
    store = SessionStore()
    backend = StubBackend(
        payload={"items": [{"menu_item_id": AYRAN, "quantity": 1}], "confidence": 0.95},
        before=lambda: store.bump(TENANT_ID, conversation.id),
    )
    engine = _engine(store=store, backend=backend)

    result = _text(engine, db, conversation, "ayran")

    assert result.noop is True
    assert result.replies == []
    assert result.state == State.IDLE
    db.refresh(conversation)
    assert conversation.active_order_id is None


def test_operator_reset_cancels_draft(db, conversation):
    store = CountingStore()
    engine = _engine(store=store)
    _text(engine, db, conversation, SCENARIO_A_TEXT)
    order_id = _order(db, conversation).id

    result = engine.reset_conversation(db, TENANT_ID, conversation.id)

    assert result.noop is True
    assert result.state == State.IDLE
    assert db.query(Order).filter(Order.id == order_id).one().status == ORDER_CANCELLED
    assert store.bumps == [(TENANT_ID, conversation.id)]


def test_low_confidence_asks_clarifying_question(db, conversation):
    backend = StubBackend(
        payload={
            "items": [{"menu_item_id": AYRAN, "quantity": 1}],
            "confidence": 0.3,
            "clarification_question": "Ayran mı istediniz?",
        }
    )

    result = _text(_engine(backend=backend), db, conversation, "ayran")

    assert result.state == State.IDLE
    assert result.replies[0].text == render("clarify", question="Ayran mı istediniz?")
    db.refresh(conversation)
    assert conversation.active_order_id is None


def test_unmatched_text_in_idle_greets(db, conversation):
    result = _text(_engine(), db, conversation, "qwxz")

    assert result.state == State.GREETED


def test_unmatched_text_while_building_asks_to_clarify(db, conversation):
    engine = _engine()
    _text(engine, db, conversation, "1 ayran")

    result = _text(engine, db, conversation, "qwxz")

    assert result.state == State.BUILDING_ORDER
    assert result.replies[0].text == render("clarify_generic")


@pytest.mark.parametrize("event", [{"kind": "text", "text": "   "}, {"kind": "sticker"}, {"kind": "location", "latitude": 95}])
def test_invalid_event_gets_clarifying_reply(db, conversation, event):
    result = _send(_engine(), db, conversation, event)

    assert result.state == State.IDLE
    assert result.noop is False
    assert [reply.text for reply in result.replies] == [render("clarify_generic")]


def test_extraction_unavailable_apologizes(db, conversation):
    backend = StubBackend(error=ExtractionUnavailable("timeout"))

    result = _text(_engine(backend=backend), db, conversation, "ayran")

    assert result.replies[0].text == render("extraction_unavailable")
    assert db.query(OrderIntent).one().status == "unavailable"


def test_unexpected_failure_rolls_back_turn(db, conversation):
    backend = StubBackend(error=RuntimeError("boom"))

    result = _text(_engine(backend=backend), db, conversation, "ayran")

    assert result.state == State.IDLE
    assert result.replies[0].text == render("turn_failed")
    assert db.query(OrderIntent).count() == 0
    assert db.query(Order).count() == 0


def test_unknown_conversation_raises(db):
    with pytest.raises(ConversationNotFound):
        _engine().handle_turn(db, TENANT_ID, 999, CUSTOMER, InboundEvent.text_message("merhaba"))


def test_history_is_bounded(db, conversation):
    engine = _engine(history_size=4)
    for text in ("merhaba", "menü", "sepet"):
        _text(engine, db, conversation, text)

    db.refresh(conversation)
    history = json.loads(conversation.data)["history"]
    assert len(history) == 4
    assert history[0] == {"role": "user", "content": "menü"}
    assert history[-1] == {"role": "assistant", "content": render("cart_empty")}


def test_customer_name_is_updated_from_identity(db):
    conversation = create_conversation(db, name=None)

    _send(_engine(), db, conversation, InboundEvent.text_message("merhaba"))

    db.refresh(conversation)
    assert db.query(Conversation).filter(Conversation.id == conversation.id).one().customer_name == "Ayşe"


def test_turn_sees_changes_committed_by_another_session(tmp_path):
    Session = make_session_factory(f"sqlite+pysqlite:///{tmp_path / 'garson.db'}")
    setup = Session()
    seed_menu(setup)
    setup.close()
    engine = _engine()
    webhook_db = Session()
    other_db = Session()

    # loaded before the previous turn commits, as the routers do
    conversation = get_or_create_conversation(webhook_db, TENANT_ID, CUSTOMER["phone"], CUSTOMER["name"])
    assert conversation.active_order_id is None
    engine.handle_turn(other_db, TENANT_ID, conversation.id, CUSTOMER, InboundEvent.text_message("2 tavuk döner"))

    result = engine.handle_turn(webhook_db, TENANT_ID, conversation.id, CUSTOMER, InboundEvent.text_message("bir ayran"))

    assert result.state == State.BUILDING_ORDER
    check = Session()
    orders = check.query(Order).all()
    assert len(orders) == 1
    assert sorted((line.menu_item_id, line.quantity) for line in orders[0].order_items) == [(TAVUK_DONER, 2), (AYRAN, 1)]
    for session in (webhook_db, other_db, check):
        session.close()
