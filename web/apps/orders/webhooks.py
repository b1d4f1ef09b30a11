"""Payment webhook reconciliation.

The reconciler is the trust boundary between the payment provider and
order state. Nothing in an event is read before its signature has been
verified over the raw body, and the only field taken from a completed
session to locate the order is the ``order_id`` we put in its metadata.

Providers deliver at least once, so processing is idempotent: a session
for an order that is already paid is acknowledged and ignored, and stock
is decremented only on the delivery that flips the order to paid. The
lookup, the payment update and the decrements share one transaction with
the order row locked, so concurrent redeliveries serialize on the row.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional

from django.db import transaction

from .domain import InventoryPort, OrderStatus, PaymentStatus, stock_decrement_key
from .pricing import amounts_match, from_minor_units
from .repository import OrderRepository
from .stripe_gateway import verify_webhook

logger = logging.getLogger(__name__)

SESSION_COMPLETED = "checkout.session.completed"
INTENT_SUCCEEDED = "payment_intent.succeeded"
INTENT_FAILED = "payment_intent.payment_failed"


class WebhookOutcome(str, Enum):
    PROCESSED = "processed"
    NEEDS_REFUND = "needs_refund"
    ALREADY_PAID = "already_paid"
    ORDER_NOT_FOUND = "order_not_found"
    MISSING_ORDER_ID = "missing_order_id"
    NOT_PAID = "not_paid"
    AMOUNT_MISMATCH = "amount_mismatch"
    IGNORED = "ignored"


@dataclass(frozen=True)
class WebhookResult:
    outcome: WebhookOutcome
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    order_id: Optional[str] = None


def _paid_amount(value) -> Optional[Decimal]:
    """``amount_total`` in major units; None unless it is an integer."""
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return from_minor_units(value)


def _object_id(value) -> Optional[str]:
    """Expanded objects arrive as dicts, collapsed ones as plain ids."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


class PaymentWebhookReconciler:
    def __init__(self, orders: OrderRepository, inventory: InventoryPort, secret: str, tolerance: int = 300):
        self.orders = orders
        self.inventory = inventory
        self.secret = secret
        self.tolerance = tolerance

    def handle(self, payload: bytes, signature: Optional[str]) -> WebhookResult:
        """Verify and apply one provider event.

        Args:
            payload: Raw request body bytes.
            signature: ``Stripe-Signature`` header value.

        Returns:
            WebhookResult: What happened. Every verified event yields a
            result, including the ones that were declined.

        Raises:
            WebhookSignatureError: Verification failed; nothing was read.
            UpstreamError: Inventory could not be updated. The payment
                update is rolled back so a redelivery can retry; each
                line's decrement carries a per-order key, so lines that
                already landed in a remote inventory are not applied twice.
        """
        event = verify_webhook(payload, signature, self.secret, self.tolerance)
        event_id = event.get("id")
        event_type = event.get("type")
        obj = (event.get("data") or {}).get("object") or {}
        log_ctx = {"event_id": event_id, "event_type": event_type}

        if event_type == SESSION_COMPLETED:
            outcome, order_id = self._complete_session(obj, log_ctx)
            return WebhookResult(outcome, event_id, event_type, order_id)

        if event_type in (INTENT_SUCCEEDED, INTENT_FAILED):
            logger.info("payment intent event received", extra={**log_ctx, "payment_intent_id": obj.get("id")})
        else:
            logger.info("unhandled webhook event", extra=log_ctx)
        return WebhookResult(WebhookOutcome.IGNORED, event_id, event_type)

    def _complete_session(self, session: dict, log_ctx: dict):
        session_id = session.get("id")
        order_id = (session.get("metadata") or {}).get("order_id")
        log_ctx = {**log_ctx, "session_id": session_id, "order_id": order_id}

        if not order_id:
            logger.warning("completed session without order id", extra=log_ctx)
            return WebhookOutcome.MISSING_ORDER_ID, None
        if session.get("payment_status") != "paid":
            logger.info("completed session not paid yet", extra={**log_ctx, "payment_status": session.get("payment_status")})
            return WebhookOutcome.NOT_PAID, order_id

        with transaction.atomic():
            order = self.orders.get_for_update(order_id)
            if order is None:
                logger.warning("webhook for unknown order", extra=log_ctx)
                return WebhookOutcome.ORDER_NOT_FOUND, order_id
            if order.payment_status == PaymentStatus.PAID:
                logger.info("order already paid; event ignored", extra=log_ctx)
                return WebhookOutcome.ALREADY_PAID, order.id

            paid = _paid_amount(session.get("amount_total"))
            if paid is None or not amounts_match(paid, order.total_amount):
                logger.error(
                    "paid amount does not match order total",
                    extra={**log_ctx, "paid_amount": str(paid), "total_amount": str(order.total_amount)},
                )
                return WebhookOutcome.AMOUNT_MISMATCH, order.id

            was_pending = order.status == OrderStatus.PENDING
            self.orders.update_payment_status(
                order.id,
                PaymentStatus.PAID,
                session_id=session_id,
                intent_id=_object_id(session.get("payment_intent")),
            )
            if not was_pending:
                # Nothing ships for this order, so stock stays as is.
                return WebhookOutcome.NEEDS_REFUND, order.id
            for it in order.items:
                key = stock_decrement_key(order.id, it.product_id)
                self.inventory.decrement_stock(it.product_id, it.quantity, key=key)

        logger.info(
            "order paid",
            extra={**log_ctx, "order_number": order.order_number, "total_amount": str(order.total_amount)},
        )
        return WebhookOutcome.PROCESSED, order.id
