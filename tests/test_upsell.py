from datetime import timedelta

import pytest

from garson.core.database import utcnow
from garson.core.errors import GenerationUnavailable
from garson.models.cross_sell_rule import CrossSellRule
from garson.models.menu_item import MenuItem
from garson.models.order import ORDER_CONFIRMED, ORDER_DRAFT, Order
from garson.models.order_item import OrderItem
from garson.models.upsell_event import UpsellEvent
from garson.services import upsell as upsell_log
from garson.services.orders import add_item, ensure_draft
from garson.services.upsell import SOURCE_CO_PURCHASE, SOURCE_RULE, UpsellEngine, UpsellSuggestion, limit_emoji
from tests.fixtures_data import (
    AYRAN,
    KOLA,
    OTHER_TENANT_ID,
    TAVUK_DONER,
    TENANT_ID,
    create_conversation,
    make_session_factory,
    seed_menu,
)

PRICES = {TAVUK_DONER: (4500, "Tavuk Döner"), AYRAN: (500, "Ayran"), KOLA: (1500, "Kola")}


class StubGenerator:
    name = "stub"
    available = True

    def __init__(self, message=None, error=None):
        self.message = message
        self.error = error
        self.contexts = []

    def generate(self, prompt_context, *, tenant_id=None):
        self.contexts.append(prompt_context)
        if self.error is not None:
            raise self.error
        return self.message


@pytest.fixture()
def db():
    Session = make_session_factory()
    session = Session()
    seed_menu(session)
    yield session
    session.close()


def _draft_with(db, conversation, *item_ids):
    order = ensure_draft(db, conversation)
    for item_id in item_ids:
        price, name = PRICES[item_id]
        add_item(db, order, menu_item_id=item_id, name=name, base_price_cents=price)
    db.commit()
    return order


def _past_order(db, item_ids, *, conversation_id=None, phone="905550000000", completed_at=None):
    order = Order(
        tenant_id=TENANT_ID,
        conversation_id=conversation_id,
        customer_phone=phone,
        status=ORDER_CONFIRMED,
        completed_at=completed_at or utcnow(),
    )
    for item_id in item_ids:
        price, name = PRICES[item_id]
        order.order_items.append(
            OrderItem(tenant_id=TENANT_ID, menu_item_id=item_id, name=name, quantity=1, unit_price_cents=price, subtotal_cents=price)
        )
    db.add(order)
    db.commit()
    return order


def test_rule_layer_suggests_authored_item_with_its_message(db):
    conversation = create_conversation(db)
    order = _draft_with(db, conversation, TAVUK_DONER)
    db.add(CrossSellRule(tenant_id=TENANT_ID, trigger_item_id=TAVUK_DONER, suggest_item_id=AYRAN, message="Yanına ayran? 🥛", priority=1))
    db.commit()

    suggestion = UpsellEngine().suggest(db, tenant_id=TENANT_ID, order=order, conversation_id=conversation.id)

    assert suggestion.item_id == AYRAN
    assert suggestion.source == SOURCE_RULE
    assert suggestion.message == "Yanına ayran? 🥛"
    assert suggestion.price_cents == 500


def test_rule_never_suggests_item_already_in_order(db):
    conversation = create_conversation(db)
    order = _draft_with(db, conversation, TAVUK_DONER, AYRAN)
    db.add(CrossSellRule(tenant_id=TENANT_ID, trigger_item_id=TAVUK_DONER, suggest_item_id=AYRAN))
    db.commit()

    assert UpsellEngine().suggest(db, tenant_id=TENANT_ID, order=order, conversation_id=conversation.id) is None


def test_co_purchase_layer_needs_minimum_co_occurrence(db):
    conversation = create_conversation(db)
    order = _draft_with(db, conversation, TAVUK_DONER)
    for _ in range(2):
        _past_order(db, [TAVUK_DONER, KOLA])

    engine = UpsellEngine(min_co_occurrence=3)
    assert engine.suggest(db, tenant_id=TENANT_ID, order=order, conversation_id=conversation.id) is None

    _past_order(db, [TAVUK_DONER, KOLA])
    suggestion = engine.suggest(db, tenant_id=TENANT_ID, order=order, conversation_id=conversation.id, customer_name="Ayşe")

    assert suggestion.item_id == KOLA
    assert suggestion.source == SOURCE_CO_PURCHASE
    # no generator: the Turkish template is used
    assert "Kola" in suggestion.message
    assert suggestion.message.startswith("Ayşe, ")


def test_rule_layer_wins_over_co_purchase(db):
    conversation = create_conversation(db)
    order = _draft_with(db, conversation, TAVUK_DONER)
    for _ in range(3):
        _past_order(db, [TAVUK_DONER, KOLA])
    db.add(CrossSellRule(tenant_id=TENANT_ID, trigger_item_id=TAVUK_DONER, suggest_item_id=AYRAN))
    db.commit()

    suggestion = UpsellEngine(min_co_occurrence=3).suggest(db, tenant_id=TENANT_ID, order=order, conversation_id=conversation.id)

    assert suggestion.item_id == AYRAN
    assert suggestion.source == SOURCE_RULE


def test_highest_priority_rule_wins(db):
    conversation = create_conversation(db)
    order = _draft_with(db, conversation, TAVUK_DONER)
    db.add(CrossSellRule(tenant_id=TENANT_ID, trigger_item_id=TAVUK_DONER, suggest_item_id=KOLA, priority=5))
    db.add(CrossSellRule(tenant_id=TENANT_ID, trigger_item_id=TAVUK_DONER, suggest_item_id=AYRAN, priority=10))
    db.commit()

    suggestion = UpsellEngine().suggest(db, tenant_id=TENANT_ID, order=order, conversation_id=conversation.id)

    assert suggestion.item_id == AYRAN


def test_rule_with_inactive_suggestion_gives_way_to_next_rule(db):
    conversation = create_conversation(db)
    order = _draft_with(db, conversation, TAVUK_DONER)
    db.add(CrossSellRule(tenant_id=TENANT_ID, trigger_item_id=TAVUK_DONER, suggest_item_id=AYRAN, priority=10))
    db.add(CrossSellRule(tenant_id=TENANT_ID, trigger_item_id=TAVUK_DONER, suggest_item_id=KOLA, priority=1))
    db.query(MenuItem).filter(MenuItem.id == AYRAN).update({"active": False})
    db.commit()

    suggestion = UpsellEngine().suggest(db, tenant_id=TENANT_ID, order=order, conversation_id=conversation.id)

    assert suggestion.item_id == KOLA
    assert suggestion.source == SOURCE_RULE


def test_rejected_item_is_suppressed_until_cooldown_orders_complete(db):
    conversation = create_conversation(db)
    rule = CrossSellRule(tenant_id=TENANT_ID, trigger_item_id=TAVUK_DONER, suggest_item_id=AYRAN)
    db.add(rule)
    db.commit()
    engine = UpsellEngine(cooldown_orders=3)

    first = _draft_with(db, conversation, TAVUK_DONER)
    suggestion = engine.suggest(db, tenant_id=TENANT_ID, order=first, conversation_id=conversation.id)
    shown = upsell_log.log_shown(db, tenant_id=TENANT_ID, conversation_id=conversation.id, order_id=first.id, suggestion=suggestion)
    upsell_log.resolve(db, tenant_id=TENANT_ID, event_id=shown.id, accepted=False)
    rejected_at = shown.created_at
    # the order the rejection happened in completes but does not count
    first.status = ORDER_CONFIRMED
    first.completed_at = rejected_at + timedelta(seconds=1)
    db.commit()

    for offset in (2, 3):
        _past_order(db, [TAVUK_DONER], conversation_id=conversation.id, completed_at=rejected_at + timedelta(seconds=offset))
    conversation.active_order_id = None
    current = _draft_with(db, conversation, TAVUK_DONER)
    assert engine.in_cooldown(db, tenant_id=TENANT_ID, conversation_id=conversation.id, item_id=AYRAN) is True
    assert engine.suggest(db, tenant_id=TENANT_ID, order=current, conversation_id=conversation.id) is None

    _past_order(db, [TAVUK_DONER], conversation_id=conversation.id, completed_at=rejected_at + timedelta(seconds=4))
    assert engine.in_cooldown(db, tenant_id=TENANT_ID, conversation_id=conversation.id, item_id=AYRAN) is False
    assert engine.suggest(db, tenant_id=TENANT_ID, order=current, conversation_id=conversation.id).item_id == AYRAN


def test_cooldown_is_per_conversation(db):
    rejecting = create_conversation(db)
    other = create_conversation(db, phone="905559998877", name="Mehmet")
    db.add(CrossSellRule(tenant_id=TENANT_ID, trigger_item_id=TAVUK_DONER, suggest_item_id=AYRAN))
    db.commit()
    engine = UpsellEngine()

    order = _draft_with(db, rejecting, TAVUK_DONER)
    suggestion = engine.suggest(db, tenant_id=TENANT_ID, order=order, conversation_id=rejecting.id)
    shown = upsell_log.log_shown(db, tenant_id=TENANT_ID, conversation_id=rejecting.id, order_id=order.id, suggestion=suggestion)
    upsell_log.resolve(db, tenant_id=TENANT_ID, event_id=shown.id, accepted=False)
    db.commit()

    other_order = _draft_with(db, other, TAVUK_DONER)
    assert engine.suggest(db, tenant_id=TENANT_ID, order=other_order, conversation_id=other.id).item_id == AYRAN



def test_cooldown_ignores_rejections_recorded_for_another_tenant(db):
    conversation = create_conversation(db)
    db.add(CrossSellRule(tenant_id=TENANT_ID, trigger_item_id=TAVUK_DONER, suggest_item_id=AYRAN))
    db.add(
        UpsellEvent(
            tenant_id=OTHER_TENANT_ID,
            conversation_id=conversation.id,
            suggested_item_id=AYRAN,
            suggested_name="Ayran",
            source=SOURCE_RULE,
            accepted=False,
        )
    )
    db.commit()
    engine = UpsellEngine(cooldown_orders=3)

    order = _draft_with(db, conversation, TAVUK_DONER)

    assert engine.in_cooldown(db, tenant_id=OTHER_TENANT_ID, conversation_id=conversation.id, item_id=AYRAN) is True
    assert engine.in_cooldown(db, tenant_id=TENANT_ID, conversation_id=conversation.id, item_id=AYRAN) is False
    assert engine.suggest(db, tenant_id=TENANT_ID, order=order, conversation_id=conversation.id).item_id == AYRAN


def test_resolve_records_the_first_answer_only(db):
    conversation = create_conversation(db)
    order = _draft_with(db, conversation, TAVUK_DONER)
    suggestion = UpsellSuggestion(item_id=AYRAN, item_name="Ayran", price_cents=500, message="Ayran?", source=SOURCE_RULE)
    shown = upsell_log.log_shown(db, tenant_id=TENANT_ID, conversation_id=conversation.id, order_id=order.id, suggestion=suggestion)

    upsell_log.resolve(db, tenant_id=TENANT_ID, event_id=shown.id, accepted=True)
    event = upsell_log.resolve(db, tenant_id=TENANT_ID, event_id=shown.id, accepted=False)

    assert event.accepted is True
    assert event.resolved_at is not None
    assert [e.id for e in upsell_log.events_for_conversation(db, conversation.id)] == [shown.id]


def test_generated_message_is_trimmed_to_one_emoji(db):
    conversation = create_conversation(db)
    order = _draft_with(db, conversation, TAVUK_DONER)
    for _ in range(3):
        _past_order(db, [TAVUK_DONER, KOLA])
    generator = StubGenerator(message="Yanına soğuk bir kola? 🥤🥤 sadece 15 TL 😄")

    suggestion = UpsellEngine().suggest(
        db,
        tenant_id=TENANT_ID,
        order=order,
        conversation_id=conversation.id,
        customer_name="Ayşe",
        generator=generator,
    )

    assert suggestion.message == "Yanına soğuk bir kola? 🥤 sadece 15 TL"
    assert generator.contexts[0]["item_name"] == "Kola"
    assert generator.contexts[0]["current_items"] == ["Tavuk Döner"]


def test_generator_failure_falls_back_to_template(db):
    conversation = create_conversation(db)
    order = _draft_with(db, conversation, TAVUK_DONER)
    for _ in range(3):
        _past_order(db, [TAVUK_DONER, KOLA])

    suggestion = UpsellEngine().suggest(
        db,
        tenant_id=TENANT_ID,
        order=order,
        conversation_id=conversation.id,
        generator=StubGenerator(error=GenerationUnavailable("down")),
    )

    assert suggestion.message == "Tavuk Döner yanına Kola ne gider be! 😄 15 TL"


def test_limit_emoji_keeps_plain_text():
    assert limit_emoji("Ayran ister misin?") == "Ayran ister misin?"


def test_empty_draft_gets_no_suggestion(db):
    conversation = create_conversation(db)
    order = ensure_draft(db, conversation)
    db.commit()

    assert order.status == ORDER_DRAFT
    assert UpsellEngine().suggest(db, tenant_id=TENANT_ID, order=order, conversation_id=conversation.id) is None
