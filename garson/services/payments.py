from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Protocol

from sqlalchemy.orm import Session

from garson.core.config import PAYMENT_BASE_URL
from garson.core.errors import PaymentError
from garson.models.order import Order

logger = logging.getLogger(__name__)

PAYMENT_CASH = "cash"
PAYMENT_CARD = "card"
PAYMENT_METHODS = {PAYMENT_CASH, PAYMENT_CARD}


@dataclass(frozen=True)
class CheckoutHandle:
    reference: str
    payment_url: str | None = None
    # cash on delivery needs no online confirmation
    settled: bool = False


class PaymentGateway(Protocol):
    def initiate_payment(self, db: Session, order: Order, method: str) -> CheckoutHandle:
        ...


class MockPaymentGateway:
    """Issues checkout references and hosted-page links without charging anything.

    The provider later reports the outcome on the payment callback route.
    """

    def __init__(self, base_url: str = PAYMENT_BASE_URL) -> None:
        self.base_url = base_url

    def initiate_payment(self, db: Session, order: Order, method: str) -> CheckoutHandle:
        if method not in PAYMENT_METHODS:
            raise PaymentError("unsupported payment method", method=method)
        reference = f"chk_{order.id}_{uuid.uuid4().hex[:12]}"
        if method == PAYMENT_CASH:
            logger.info("cash payment registered order_id=%s", order.id)
            return CheckoutHandle(reference=reference, settled=True)
        url = f"{self.base_url}/{reference}"
        logger.info("card payment link issued order_id=%s reference=%s", order.id, reference)
        return CheckoutHandle(reference=reference, payment_url=url)
