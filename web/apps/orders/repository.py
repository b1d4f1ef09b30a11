"""Repository layer for persisting orders.

``OrderRepository`` is the sole writer of order state. It maps between
the Django models and the domain ``Order`` dataclass so the services in
this app never touch ORM types, and it enforces the state machine under
a row lock before persisting any status change.

Lookups return ``None`` for a missing row (including malformed ids);
constraint violations propagate to the caller.
"""

import logging
import secrets
import time
import uuid
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from django.db import transaction
from django.utils import timezone

from .domain import (
    LineItem,
    Order,
    OrderDetails,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    Pricing,
    RETURN_STATUSES,
    ShippingDetails,
    can_transition,
)
from .exceptions import InvalidTransitionError, NotFoundError, OrderValidationError, ReturnWindowExpiredError
from .models import OrderItemModel, OrderModel

logger = logging.getLogger(__name__)

RETURNS_FILTER = "returns"

_BASE36 = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"


def _base36(n: int) -> str:
    out = ""
    while True:
        n, r = divmod(n, 36)
        out = _BASE36[r] + out
        if n == 0:
            return out


def generate_order_number() -> str:
    """Return ``GH-<base36 epoch millis>-<4 hex>``."""
    return f"GH-{_base36(int(time.time() * 1000))}-{secrets.token_hex(2).upper()}"


def _parse_id(order_id) -> Optional[uuid.UUID]:
    if isinstance(order_id, uuid.UUID):
        return order_id
    try:
        return uuid.UUID(str(order_id))
    except (TypeError, ValueError, AttributeError):
        return None


def _to_domain(obj: OrderModel) -> Order:
    return Order(
        id=str(obj.id),
        order_number=obj.order_number,
        user_id=obj.user_id,
        address_id=obj.address_id,
        status=OrderStatus(obj.status),
        payment_method=PaymentMethod(obj.payment_method),
        payment_status=PaymentStatus(obj.payment_status),
        total_amount=obj.total_amount,
        shipping=ShippingDetails(
            name=obj.shipping_name,
            phone=obj.shipping_phone,
            address=obj.shipping_address,
            city=obj.shipping_city,
            region=obj.shipping_region,
        ),
        created_at=obj.created_at,
        updated_at=obj.updated_at,
        checkout_session_id=obj.checkout_session_id,
        payment_intent_id=obj.payment_intent_id,
        cancellation_reason=obj.cancellation_reason,
        return_reason=obj.return_reason,
        return_requested_at=obj.return_requested_at,
        items=[
            LineItem(
                product_id=it.product_id,
                product_name=it.product_name,
                product_price=it.product_price,
                quantity=it.quantity,
            )
            for it in obj.items.all()
        ],
    )


class OrderRepository:
    """Persists domain ``Order`` objects using the Django ORM."""

    # ---- creation ----

    def create_final_order(self, details: OrderDetails, items: List[LineItem], pricing: Pricing) -> Order:
        """Persist a cash-on-delivery order with its item snapshot.

        The order and all its items are written in one transaction.
        """
        return self._create(details, items, pricing, PaymentMethod.COD)

    def create_pending_order(self, details: OrderDetails, items: List[LineItem], pricing: Pricing) -> Order:
        """Persist a hosted-checkout order awaiting payment."""
        return self._create(details, items, pricing, PaymentMethod.HOSTED_CHECKOUT)

    def _create(self, details, items, pricing, method: PaymentMethod) -> Order:
        now = timezone.now()
        with transaction.atomic():
            obj = OrderModel.objects.create(
                order_number=generate_order_number(),
                user_id=details.user_id,
                address_id=details.address_id,
                status=OrderStatus.PENDING.value,
                payment_method=method.value,
                payment_status=PaymentStatus.PENDING.value,
                total_amount=pricing.total,
                shipping_name=details.shipping.name,
                shipping_phone=details.shipping.phone,
                shipping_address=details.shipping.address,
                shipping_city=details.shipping.city,
                shipping_region=details.shipping.region,
                created_at=now,
                updated_at=now,
            )
            OrderItemModel.objects.bulk_create(
                [
                    OrderItemModel(
                        order=obj,
                        product_id=it.product_id,
                        product_name=it.product_name,
                        product_price=it.product_price,
                        quantity=it.quantity,
                        created_at=now,
                    )
                    for it in items
                ]
            )
        logger.info(
            "order created",
            extra={
                "order_id": str(obj.id),
                "order_number": obj.order_number,
                "payment_method": method.value,
                "total_amount": str(pricing.total),
            },
        )
        return self.get(obj.id)

    # ---- lookups ----

    def get(self, order_id) -> Optional[Order]:
        """Return the order with its items, or None."""
        oid = _parse_id(order_id)
        if oid is None:
            return None
        obj = OrderModel.objects.prefetch_related("items").filter(id=oid).first()
        return _to_domain(obj) if obj else None

    def get_for_update(self, order_id) -> Optional[Order]:
        """Like ``get`` but locks the row; call inside ``transaction.atomic``."""
        oid = _parse_id(order_id)
        if oid is None:
            return None
        obj = OrderModel.objects.select_for_update().filter(id=oid).first()
        return _to_domain(obj) if obj else None

    def get_by_session(self, session_id: str) -> Optional[Order]:
        if not session_id:
            return None
        obj = OrderModel.objects.prefetch_related("items").filter(checkout_session_id=session_id).first()
        return _to_domain(obj) if obj else None

    def find_unpaid_hosted_order(self, user_id: int) -> Optional[Order]:
        """Most recent pending hosted-checkout order awaiting payment for a user."""
        obj = (
            OrderModel.objects.prefetch_related("items")
            .filter(
                user_id=user_id,
                payment_method=PaymentMethod.HOSTED_CHECKOUT.value,
                payment_status=PaymentStatus.PENDING.value,
                status=OrderStatus.PENDING.value,
            )
            .order_by("-created_at")
            .first()
        )
        return _to_domain(obj) if obj else None

    def list_for_user(self, user_id: int, status_filter: Optional[str] = None) -> List[Order]:
        """List a user's orders newest first.

        Args:
            user_id: Owner of the orders.
            status_filter: An ``OrderStatus`` value, or ``"returns"`` for
                every status of the return flow.

        Raises:
            OrderValidationError: When ``status_filter`` is unknown.
        """
        qs = OrderModel.objects.prefetch_related("items").filter(user_id=user_id)
        if status_filter:
            qs = qs.filter(status__in=[s.value for s in _statuses_for(status_filter)])
        return [_to_domain(o) for o in qs.order_by("-created_at")]

    def list_all(self) -> List[Order]:
        return [_to_domain(o) for o in OrderModel.objects.prefetch_related("items").order_by("-created_at")]

    # ---- mutators ----

    def update_status(self, order_id, next_status: OrderStatus, reason: Optional[str] = None) -> Order:
        """Persist a status change after re-checking the state machine under lock.

        Raises:
            NotFoundError: The order does not exist.
            InvalidTransitionError: The transition is not allowed from the
                order's current status.
        """
        with transaction.atomic():
            obj = self._lock(order_id)
            current = OrderStatus(obj.status)
            if not can_transition(current, next_status):
                raise InvalidTransitionError(
                    f"Cannot change order status from {current.value} to {next_status.value}"
                )
            obj.status = next_status.value
            obj.updated_at = timezone.now()
            fields = ["status", "updated_at"]
            if reason is not None:
                obj.cancellation_reason = reason
                fields.append("cancellation_reason")
            obj.save(update_fields=fields)
        logger.info(
            "order status changed",
            extra={"order_id": str(obj.id), "from_status": current.value, "to_status": next_status.value},
        )
        return self.get(obj.id)

    def request_return(
        self, order_id, reason: str, now: Optional[datetime] = None, window: Optional[timedelta] = None
    ) -> Order:
        """Move a delivered order to ``returning`` and record the reason.

        With ``window``, the request must come no later than ``window``
        after the delivered transition (``updated_at``, read under the lock).
        """
        now = now or timezone.now()
        with transaction.atomic():
            obj = self._lock(order_id)
            if not can_transition(OrderStatus(obj.status), OrderStatus.RETURNING):
                raise OrderValidationError("Only delivered orders can be returned", code="ORDER_NOT_RETURNABLE")
            if window is not None and now - obj.updated_at > window:
                raise ReturnWindowExpiredError(
                    f"Return window has expired. Returns are only accepted within {window.days} days of delivery."
                )
            obj.status = OrderStatus.RETURNING.value
            obj.return_reason = reason
            obj.return_requested_at = now
            obj.updated_at = now
            obj.save(update_fields=["status", "return_reason", "return_requested_at", "updated_at"])
        logger.info("order return requested", extra={"order_id": str(obj.id)})
        return self.get(obj.id)

    def mark_refunded(self, order_id) -> Order:
        """Set ``payment_status=refunded``; ``status`` is left alone."""
        with transaction.atomic():
            obj = self._lock(order_id)
            obj.payment_status = PaymentStatus.REFUNDED.value
            obj.updated_at = timezone.now()
            obj.save(update_fields=["payment_status", "updated_at"])
        logger.info("order payment refunded", extra={"order_id": str(obj.id)})
        return self.get(obj.id)

    def update_payment_status(
        self,
        order_id,
        payment_status: PaymentStatus,
        session_id: Optional[str] = None,
        intent_id: Optional[str] = None,
    ) -> Order:
        """The only mutator of payment fields.

        When ``payment_status`` becomes ``paid`` and the order is still
        ``pending``, the order is also advanced to ``processing``. Orders in
        any other status keep their status.
        """
        with transaction.atomic():
            obj = self._lock(order_id)
            obj.payment_status = payment_status.value
            fields = ["payment_status", "updated_at"]
            if session_id is not None:
                obj.checkout_session_id = session_id
                fields.append("checkout_session_id")
            if intent_id is not None:
                obj.payment_intent_id = intent_id
                fields.append("payment_intent_id")
            if payment_status == PaymentStatus.PAID:
                if obj.status == OrderStatus.PENDING.value:
                    obj.status = OrderStatus.PROCESSING.value
                    fields.append("status")
                else:
                    logger.warning(
                        "payment received for order that is not pending; refund may be needed",
                        extra={"order_id": str(obj.id), "status": obj.status},
                    )
            obj.updated_at = timezone.now()
            obj.save(update_fields=fields)
        logger.info(
            "order payment status changed",
            extra={"order_id": str(obj.id), "payment_status": payment_status.value, "session_id": session_id},
        )
        return self.get(obj.id)

    def _lock(self, order_id) -> OrderModel:
        oid = _parse_id(order_id)
        obj = OrderModel.objects.select_for_update().filter(id=oid).first() if oid else None
        if obj is None:
            raise NotFoundError("Order not found", code="ORDER_NOT_FOUND")
        return obj


def _statuses_for(status_filter: str) -> Iterable[OrderStatus]:
    if status_filter == RETURNS_FILTER:
        return RETURN_STATUSES
    try:
        return [OrderStatus(status_filter)]
    except ValueError:
        raise OrderValidationError(f"Unknown status filter: {status_filter}", code="INVALID_STATUS_FILTER")
