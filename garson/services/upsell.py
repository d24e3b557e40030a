from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Callable, Sequence

from sqlalchemy import distinct, func
from sqlalchemy.orm import Session

from garson.ai.base import MessageGenerator
from garson.core.config import (
    UPSELL_COOLDOWN_ORDERS,
    UPSELL_MESSAGE_MAX_LENGTH,
    UPSELL_MIN_CO_OCCURRENCE,
    UPSELL_SAMPLE_SIZE,
)
from garson.core.database import utcnow
from garson.core.errors import GenerationUnavailable
from garson.models.cross_sell_rule import CrossSellRule
from garson.models.menu_item import MenuItem
from garson.models.order import ORDER_CANCELLED, ORDER_CONFIRMED, ORDER_DRAFT, Order
from garson.models.order_item import OrderItem
from garson.models.upsell_event import UpsellEvent
from garson.services.message_templates import upsell_fallback
from garson.services.orders import order_item_ids

logger = logging.getLogger(__name__)

SOURCE_RULE = "rule"
SOURCE_CO_PURCHASE = "co_purchase"

_EMOJI_PATTERN = re.compile("[\U0001F300-\U0001FAFF\U00002600-\U000027BF\U0001F000-\U0001F2FF]")


@dataclass(frozen=True)
class UpsellSuggestion:
    item_id: int
    item_name: str
    price_cents: int
    message: str
    source: str


@dataclass(frozen=True)
class _Pick:
    item: MenuItem
    source: str
    message: str | None = None


def limit_emoji(text: str, max_count: int = 1) -> str:
    seen = 0

    def _keep(match: re.Match) -> str:
        nonlocal seen
        seen += 1
        return match.group(0) if seen <= max_count else ""

    return re.sub(r"\s{2,}", " ", _EMOJI_PATTERN.sub(_keep, text)).strip()


class UpsellEngine:
    """Picks at most one cross-sell item for an order.

    Layers run in order and the first non-empty one wins: tenant-authored
    rules, then co-purchase statistics. A pick the customer rejected in this
    conversation stays suppressed until enough later orders have completed.
    """

    def __init__(
        self,
        *,
        sample_size: int = UPSELL_SAMPLE_SIZE,
        min_co_occurrence: int = UPSELL_MIN_CO_OCCURRENCE,
        cooldown_orders: int = UPSELL_COOLDOWN_ORDERS,
    ) -> None:
        self.sample_size = sample_size
        self.min_co_occurrence = min_co_occurrence
        self.cooldown_orders = cooldown_orders
        self.layers: list[Callable[[Session, int, Order, list[int]], _Pick | None]] = [
            self._rule_layer,
            self._co_purchase_layer,
        ]

    def suggest(
        self,
        db: Session,
        *,
        tenant_id: int,
        order: Order,
        conversation_id: int,
        customer_name: str | None = None,
        generator: MessageGenerator | None = None,
    ) -> UpsellSuggestion | None:
        current_ids = order_item_ids(order)
        if not current_ids:
            return None

        for layer in self.layers:
            pick = layer(db, tenant_id, order, current_ids)
            if pick is None:
                continue
            if self.in_cooldown(db, tenant_id=tenant_id, conversation_id=conversation_id, item_id=pick.item.id):
                logger.info("upsell suppressed by cooldown item_id=%s source=%s", pick.item.id, pick.source)
                return None
            message = pick.message or self._render_message(
                db,
                tenant_id=tenant_id,
                order=order,
                item=pick.item,
                customer_name=customer_name,
                generator=generator,
            )
            logger.info("upsell suggestion item_id=%s source=%s", pick.item.id, pick.source)
            return UpsellSuggestion(
                item_id=pick.item.id,
                item_name=pick.item.name,
                price_cents=int(pick.item.price_cents or 0),
                message=message,
                source=pick.source,
            )
        return None

    def _rule_layer(self, db: Session, tenant_id: int, order: Order, current_ids: list[int]) -> _Pick | None:
        row = (
            db.query(CrossSellRule, MenuItem)
            .join(MenuItem, MenuItem.id == CrossSellRule.suggest_item_id)
            .filter(
                CrossSellRule.tenant_id == tenant_id,
                CrossSellRule.active.is_(True),
                CrossSellRule.trigger_item_id.in_(current_ids),
                CrossSellRule.suggest_item_id.notin_(current_ids),
                MenuItem.tenant_id == tenant_id,
                MenuItem.active.is_(True),
            )
            .order_by(CrossSellRule.priority.desc(), CrossSellRule.id.asc())
            .first()
        )
        if row is None:
            return None
        rule, item = row
        return _Pick(item=item, source=SOURCE_RULE, message=(rule.message or "").strip() or None)

    def _co_purchase_layer(self, db: Session, tenant_id: int, order: Order, current_ids: list[int]) -> _Pick | None:
        orders_with_current = (
            db.query(OrderItem.order_id)
            .filter(OrderItem.tenant_id == tenant_id, OrderItem.menu_item_id.in_(current_ids))
        )
        sample_ids = [
            row[0]
            for row in db.query(Order.id)
            .filter(
                Order.tenant_id == tenant_id,
                Order.status.notin_([ORDER_DRAFT, ORDER_CANCELLED]),
                Order.id != order.id,
                Order.id.in_(orders_with_current),
            )
            .order_by(Order.created_at.desc(), Order.id.desc())
            .limit(self.sample_size)
            .all()
        ]
        if not sample_ids:
            return None

        counts = (
            db.query(OrderItem.menu_item_id, func.count(distinct(OrderItem.order_id)))
            .filter(OrderItem.order_id.in_(sample_ids), OrderItem.menu_item_id.notin_(current_ids))
            .group_by(OrderItem.menu_item_id)
            .all()
        )
        ranked = sorted(
            ((int(count), item_id) for item_id, count in counts if int(count) >= self.min_co_occurrence),
            key=lambda entry: (-entry[0], entry[1]),
        )
        for _count, item_id in ranked:
            item = (
                db.query(MenuItem)
                .filter(MenuItem.id == item_id, MenuItem.tenant_id == tenant_id, MenuItem.active.is_(True))
                .first()
            )
            if item is not None:
                return _Pick(item=item, source=SOURCE_CO_PURCHASE)
        return None

    def in_cooldown(self, db: Session, *, tenant_id: int, conversation_id: int, item_id: int) -> bool:
        rejection = (
            db.query(UpsellEvent)
            .filter(
                UpsellEvent.tenant_id == tenant_id,
                UpsellEvent.conversation_id == conversation_id,
                UpsellEvent.suggested_item_id == item_id,
                UpsellEvent.accepted.is_(False),
            )
            .order_by(UpsellEvent.created_at.desc(), UpsellEvent.id.desc())
            .first()
        )
        if rejection is None:
            return False

        query = db.query(func.count(Order.id)).filter(
            Order.tenant_id == tenant_id,
            Order.conversation_id == conversation_id,
            Order.status == ORDER_CONFIRMED,
            Order.completed_at > rejection.created_at,
        )
        # the order the rejection happened in does not count towards the cool-down
        if rejection.order_id is not None:
            query = query.filter(Order.id != rejection.order_id)
        completed_since = int(query.scalar() or 0)
        return completed_since < self.cooldown_orders

    def _previous_purchase_count(self, db: Session, tenant_id: int, customer_phone: str, item_id: int) -> int:
        return int(
            db.query(func.count(OrderItem.id))
            .join(Order, Order.id == OrderItem.order_id)
            .filter(
                Order.tenant_id == tenant_id,
                Order.customer_phone == customer_phone,
                Order.status.notin_([ORDER_DRAFT, ORDER_CANCELLED]),
                OrderItem.menu_item_id == item_id,
            )
            .scalar()
            or 0
        )

    def _render_message(
        self,
        db: Session,
        *,
        tenant_id: int,
        order: Order,
        item: MenuItem,
        customer_name: str | None,
        generator: MessageGenerator | None,
    ) -> str:
        current_items = [line.name for line in order.order_items]
        previous_count = self._previous_purchase_count(db, tenant_id, order.customer_phone, item.id)
        if generator is not None:
            context = {
                "customer_name": customer_name,
                "current_items": current_items,
                "item_name": item.name,
                "price_cents": int(item.price_cents or 0),
                "previous_count": previous_count,
            }
            try:
                message = limit_emoji(generator.generate(context, tenant_id=tenant_id))
                if message:
                    return message[:UPSELL_MESSAGE_MAX_LENGTH]
            except GenerationUnavailable as exc:
                logger.warning("upsell message generation unavailable, using template error=%s", exc.message)
        return upsell_fallback(
            item_name=item.name,
            price_cents=int(item.price_cents or 0),
            current_items=current_items,
            customer_name=customer_name,
            previous_count=previous_count,
        )


def log_shown(
    db: Session,
    *,
    tenant_id: int,
    conversation_id: int,
    order_id: int | None,
    suggestion: UpsellSuggestion,
) -> UpsellEvent:
    event = UpsellEvent(
        tenant_id=tenant_id,
        conversation_id=conversation_id,
        order_id=order_id,
        suggested_item_id=suggestion.item_id,
        suggested_name=suggestion.item_name,
        message=suggestion.message,
        source=suggestion.source,
        accepted=None,
    )
    db.add(event)
    db.flush()
    return event


def resolve(db: Session, *, tenant_id: int, event_id: int, accepted: bool) -> UpsellEvent | None:
    event = (
        db.query(UpsellEvent)
        .filter(UpsellEvent.id == event_id, UpsellEvent.tenant_id == tenant_id)
        .first()
    )
    if event is None or event.accepted is not None:
        return event
    event.accepted = accepted
    event.resolved_at = utcnow()
    db.flush()
    return event


def events_for_conversation(db: Session, conversation_id: int) -> Sequence[UpsellEvent]:
    return (
        db.query(UpsellEvent)
        .filter(UpsellEvent.conversation_id == conversation_id)
        .order_by(UpsellEvent.id.asc())
        .all()
    )
