"""Customer and admin operations on existing orders.

Every status change goes through ``can_transition``; the repository
re-checks it under a row lock before writing.
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from django.db import transaction

from .domain import Order, OrderStatus, PaymentMethod, PaymentStatus, can_transition
from .exceptions import (
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    OrderValidationError,
)
from .repository import OrderRepository

logger = logging.getLogger(__name__)

RETURN_WINDOW = timedelta(days=7)


def _require_reason(reason: Optional[str]) -> str:
    reason = (reason or "").strip()
    if not reason:
        raise OrderValidationError("Reason is required", code="REASON_REQUIRED")
    return reason


class OrderLifecycleService:
    def __init__(self, orders: OrderRepository):
        self.orders = orders

    def _owned(self, user_id: int, order_id) -> Order:
        order = self.orders.get(order_id)
        if order is None or order.user_id != user_id:
            raise NotFoundError("Order not found", code="ORDER_NOT_FOUND")
        return order

    # ---- reads ----

    def get_order(self, order_id, user_id: int, is_admin: bool = False) -> Order:
        """Return an order its owner (or staff) may read.

        Raises:
            NotFoundError: Unknown order.
            ForbiddenError: The caller is neither the owner nor staff.
        """
        order = self.orders.get(order_id)
        if order is None:
            raise NotFoundError("Order not found", code="ORDER_NOT_FOUND")
        if order.user_id != user_id and not is_admin:
            raise ForbiddenError("You do not have access to this order")
        return order

    def list_orders(self, user_id: int, status_filter: Optional[str] = None) -> List[Order]:
        return self.orders.list_for_user(user_id, status_filter)

    def list_all_orders(self) -> List[Order]:
        return self.orders.list_all()

    def find_by_session(self, user_id: int, session_id: str) -> Order:
        order = self.orders.get_by_session(session_id)
        if order is None or order.user_id != user_id:
            raise NotFoundError("Order not found", code="ORDER_NOT_FOUND")
        return order

    # ---- customer actions ----

    def cancel(self, user_id: int, order_id, reason: Optional[str]) -> Order:
        """Cancel a pending order. Stock is not restored."""
        reason = _require_reason(reason)
        order = self._owned(user_id, order_id)
        if order.status != OrderStatus.PENDING or not can_transition(order.status, OrderStatus.CANCELLED):
            raise OrderValidationError("Only pending orders can be cancelled", code="ORDER_NOT_CANCELLABLE")
        order = self.orders.update_status(order.id, OrderStatus.CANCELLED, reason=reason)
        logger.info("order cancelled by customer", extra={"order_id": order.id, "user_id": user_id})
        return order

    def request_return(self, user_id: int, order_id, reason: Optional[str], now: Optional[datetime] = None) -> Order:
        """Ask to return a delivered order within ``RETURN_WINDOW`` of delivery.

        ``updated_at`` is the time the order entered ``delivered``. A request
        at exactly seven days is still accepted.
        """
        reason = _require_reason(reason)
        order = self._owned(user_id, order_id)
        if order.status != OrderStatus.DELIVERED:
            raise OrderValidationError("Only delivered orders can be returned", code="ORDER_NOT_RETURNABLE")
        return self.orders.request_return(order.id, reason, now=now, window=RETURN_WINDOW)

    # ---- admin ----

    def admin_update_status(self, order_id, next_status: OrderStatus) -> Order:
        """Move an order to ``next_status`` on behalf of staff.

        Hosted-checkout orders that are not paid may only be cancelled.
        Reaching ``refunded`` also marks the payment refunded.
        """
        order = self.orders.get(order_id)
        if order is None:
            raise NotFoundError("Order not found", code="ORDER_NOT_FOUND")
        if not can_transition(order.status, next_status):
            raise InvalidTransitionError(
                f"Cannot change order status from {order.status.value} to {next_status.value}"
            )
        if (
            order.payment_method == PaymentMethod.HOSTED_CHECKOUT
            and order.payment_status != PaymentStatus.PAID
            and next_status != OrderStatus.CANCELLED
        ):
            raise OrderValidationError(
                "Cannot process unpaid hosted checkout order. Wait for payment confirmation or cancel the order.",
                code="AWAITING_PAYMENT",
            )
        with transaction.atomic():
            order = self.orders.update_status(order.id, next_status)
            if next_status == OrderStatus.REFUNDED:
                order = self.orders.mark_refunded(order.id)
        logger.info("order status updated by admin", extra={"order_id": order.id, "to_status": next_status.value})
        return order
