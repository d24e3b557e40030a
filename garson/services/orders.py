from __future__ import annotations

import json
import logging
from typing import Iterable, Sequence

from sqlalchemy.orm import Session

from garson.core.database import utcnow
from garson.core.errors import OrderLocked
from garson.models.conversation import Conversation
from garson.models.order import ORDER_CANCELLED, ORDER_CHECKOUT, ORDER_CONFIRMED, ORDER_DRAFT, Order
from garson.models.order_item import OrderItem
from garson.services.menu_catalog import OptionSnapshot

logger = logging.getLogger(__name__)


def options_key(options: Iterable[OptionSnapshot]) -> str:
    return ",".join(str(option_id) for option_id in sorted({option.id for option in options}))


def _options_json(options: Sequence[OptionSnapshot]) -> str:
    return json.dumps(
        [{"id": option.id, "name": option.name, "price_delta_cents": option.price_delta_cents} for option in options],
        ensure_ascii=False,
    )


def line_options(line: OrderItem) -> list[dict]:
    try:
        return json.loads(line.options_json or "[]")
    except (TypeError, ValueError):
        return []


def get_active_order(db: Session, conversation: Conversation) -> Order | None:
    if not conversation.active_order_id:
        return None
    return (
        db.query(Order)
        .filter(Order.id == conversation.active_order_id, Order.tenant_id == conversation.tenant_id)
        .first()
    )


def ensure_draft(db: Session, conversation: Conversation) -> Order:
    order = get_active_order(db, conversation)
    if order is not None and order.status == ORDER_DRAFT:
        return order

    order = Order(
        tenant_id=conversation.tenant_id,
        conversation_id=conversation.id,
        customer_phone=conversation.customer_phone,
        customer_name=conversation.customer_name,
        status=ORDER_DRAFT,
    )
    db.add(order)
    db.flush()
    conversation.active_order_id = order.id
    logger.info("draft order created order_id=%s", order.id)
    return order


def _require_draft(order: Order) -> None:
    if order.status != ORDER_DRAFT:
        raise OrderLocked("order items can only change while the order is a draft", order_id=order.id)


def recompute_totals(order: Order) -> None:
    items_total = 0
    for line in order.order_items:
        line.subtotal_cents = int(line.unit_price_cents or 0) * int(line.quantity or 0)
        items_total += line.subtotal_cents
    order.items_total_cents = items_total
    order.total_cents = items_total + int(order.delivery_fee_cents or 0)


def add_item(
    db: Session,
    order: Order,
    *,
    menu_item_id: int,
    name: str,
    base_price_cents: int,
    quantity: int = 1,
    options: Sequence[OptionSnapshot] = (),
    notes: str | None = None,
) -> OrderItem:
    """Add a line, or bump the quantity of the line with the same item and options."""
    _require_draft(order)
    key = options_key(options)
    unit_price = int(base_price_cents) + sum(option.price_delta_cents for option in options)

    for line in order.order_items:
        if line.menu_item_id == menu_item_id and (line.options_key or "") == key:
            line.quantity = int(line.quantity or 0) + int(quantity)
            if notes and notes not in (line.notes or ""):
                line.notes = f"{line.notes}; {notes}" if line.notes else notes
            recompute_totals(order)
            return line

    line = OrderItem(
        tenant_id=order.tenant_id,
        menu_item_id=menu_item_id,
        name=name,
        quantity=int(quantity),
        unit_price_cents=unit_price,
        subtotal_cents=unit_price * int(quantity),
        options_key=key,
        options_json=_options_json(list(options)),
        notes=notes,
    )
    order.order_items.append(line)
    recompute_totals(order)
    db.flush()
    return line


def set_line_options(db: Session, order: Order, line: OrderItem, base_price_cents: int, options: Sequence[OptionSnapshot]) -> OrderItem:
    """Replace a line's options; merges into an existing line that ends up with the same key."""
    _require_draft(order)
    key = options_key(options)
    for other in order.order_items:
        if other is not line and other.menu_item_id == line.menu_item_id and (other.options_key or "") == key:
            other.quantity = int(other.quantity or 0) + int(line.quantity or 0)
            order.order_items.remove(line)
            recompute_totals(order)
            db.flush()
            return other

    line.options_key = key
    line.options_json = _options_json(list(options))
    line.unit_price_cents = int(base_price_cents) + sum(option.price_delta_cents for option in options)
    recompute_totals(order)
    db.flush()
    return line


def cancel_order(db: Session, order: Order) -> None:
    if order.status in {ORDER_CONFIRMED, ORDER_CANCELLED}:
        return
    order.status = ORDER_CANCELLED
    db.flush()
    logger.info("order cancelled order_id=%s", order.id)


def set_delivery(order: Order, *, store_name: str | None, delivery_fee_cents: int, lat: float, lng: float) -> None:
    order.store_name = store_name
    order.delivery_fee_cents = int(delivery_fee_cents or 0)
    order.delivery_lat = str(lat)
    order.delivery_lng = str(lng)
    recompute_totals(order)


def begin_checkout(db: Session, order: Order, *, payment_method: str, reference: str | None) -> None:
    if order.status not in {ORDER_DRAFT, ORDER_CHECKOUT}:
        raise OrderLocked("order cannot enter checkout", order_id=order.id, status=order.status)
    order.status = ORDER_CHECKOUT
    order.payment_method = payment_method
    order.checkout_reference = reference
    db.flush()


def complete_order(db: Session, order: Order) -> None:
    if order.status == ORDER_CONFIRMED:
        return
    if order.status != ORDER_CHECKOUT:
        raise OrderLocked("only orders in checkout can be confirmed", order_id=order.id, status=order.status)
    order.status = ORDER_CONFIRMED
    order.completed_at = utcnow()
    db.flush()
    logger.info("order confirmed order_id=%s total_cents=%s", order.id, order.total_cents)


def order_item_ids(order: Order) -> list[int]:
    return sorted({line.menu_item_id for line in order.order_items})
