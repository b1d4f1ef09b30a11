"""Unit tests for PaymentWebhookReconciler.

Events are signed with the real Stripe scheme and verified by the
``stripe`` library, so these also cover the raw-body contract.
"""

import json
import time
from decimal import Decimal

import pytest

from apps.orders.adapters import OrmInventory
from apps.orders.domain import LineItem, OrderDetails, OrderStatus, PaymentStatus, Pricing, ShippingDetails
from apps.orders.exceptions import UpstreamError, WebhookSignatureError
from apps.orders.repository import OrderRepository
from apps.orders.webhooks import PaymentWebhookReconciler, WebhookOutcome

SECRET = "whsec_test_secret"


@pytest.fixture
def reconciler():
    return PaymentWebhookReconciler(OrderRepository(), OrmInventory(), SECRET, tolerance=300)


@pytest.fixture
def product(make_product):
    return make_product(price="50.00", stock=10)


@pytest.fixture
def pending_order(user, product):
    details = OrderDetails(user.id, "addr-1", ShippingDetails("Layla", "+971500000000", "12 Palm St", "Dubai", "Dubai"))
    items = [LineItem(str(product.id), product.name, Decimal("50.00"), 2)]
    pricing = Pricing(Decimal("100.00"), Decimal("25.00"), Decimal("125.00"))
    order = OrderRepository().create_pending_order(details, items, pricing)
    return OrderRepository().update_payment_status(order.id, PaymentStatus.PENDING, session_id="cs_test_1")


def _deliver(reconciler, signed_event, event, **kw):
    body, sig = signed_event(event, **kw)
    return reconciler.handle(body.encode("utf-8"), sig)


@pytest.mark.django_db
def test_completed_session_marks_paid_and_decrements_once(reconciler, signed_event, completed_event, pending_order, product):
    result = _deliver(reconciler, signed_event, completed_event(pending_order.id, 12500))
    assert result.outcome == WebhookOutcome.PROCESSED
    assert result.order_id == pending_order.id

    order = OrderRepository().get(pending_order.id)
    assert order.payment_status == PaymentStatus.PAID
    assert order.status == OrderStatus.PROCESSING
    assert order.payment_intent_id == "pi_test_1"
    product.refresh_from_db()
    assert product.stock == 8


@pytest.mark.django_db
def test_redelivery_is_a_no_op(reconciler, signed_event, completed_event, pending_order, product):
    event = completed_event(pending_order.id, 12500)
    _deliver(reconciler, signed_event, event)
    again = _deliver(reconciler, signed_event, event)

    assert again.outcome == WebhookOutcome.ALREADY_PAID
    product.refresh_from_db()
    assert product.stock == 8
    assert OrderRepository().get(pending_order.id).payment_status == PaymentStatus.PAID


@pytest.mark.django_db
def test_amount_mismatch_leaves_order_pending(reconciler, signed_event, completed_event, pending_order, product):
    result = _deliver(reconciler, signed_event, completed_event(pending_order.id, 100))
    assert result.outcome == WebhookOutcome.AMOUNT_MISMATCH

    order = OrderRepository().get(pending_order.id)
    assert order.payment_status == PaymentStatus.PENDING
    assert order.status == OrderStatus.PENDING
    product.refresh_from_db()
    assert product.stock == 10


@pytest.mark.django_db
def test_one_cent_rounding_is_tolerated(reconciler, signed_event, completed_event, pending_order):
    result = _deliver(reconciler, signed_event, completed_event(pending_order.id, 12501))
    assert result.outcome == WebhookOutcome.PROCESSED


@pytest.mark.django_db
def test_unknown_order_is_acknowledged(reconciler, signed_event, completed_event):
    result = _deliver(reconciler, signed_event, completed_event("7d0f3a1e-0000-4000-8000-000000000000", 12500))
    assert result.outcome == WebhookOutcome.ORDER_NOT_FOUND


@pytest.mark.django_db
def test_missing_order_id(reconciler, signed_event, completed_event):
    result = _deliver(reconciler, signed_event, completed_event(None, 12500))
    assert result.outcome == WebhookOutcome.MISSING_ORDER_ID


@pytest.mark.django_db
def test_unpaid_session_is_ignored(reconciler, signed_event, completed_event, pending_order):
    result = _deliver(reconciler, signed_event, completed_event(pending_order.id, 12500, payment_status="unpaid"))
    assert result.outcome == WebhookOutcome.NOT_PAID
    assert OrderRepository().get(pending_order.id).payment_status == PaymentStatus.PENDING


@pytest.mark.django_db
def test_paid_after_cancel_needs_refund_and_keeps_stock(reconciler, signed_event, completed_event, pending_order, product):
    OrderRepository().update_status(pending_order.id, OrderStatus.CANCELLED, reason="too slow")
    result = _deliver(reconciler, signed_event, completed_event(pending_order.id, 12500))

    assert result.outcome == WebhookOutcome.NEEDS_REFUND
    order = OrderRepository().get(pending_order.id)
    assert order.status == OrderStatus.CANCELLED
    assert order.payment_status == PaymentStatus.PAID
    product.refresh_from_db()
    assert product.stock == 10


@pytest.mark.django_db
@pytest.mark.parametrize("event_type", ["payment_intent.succeeded", "payment_intent.payment_failed", "charge.refunded"])
def test_other_events_are_only_logged(reconciler, signed_event, pending_order, event_type):
    event = {"id": "evt_2", "type": event_type, "data": {"object": {"id": "pi_test_1"}}}
    result = _deliver(reconciler, signed_event, event)
    assert result.outcome == WebhookOutcome.IGNORED
    assert OrderRepository().get(pending_order.id).payment_status == PaymentStatus.PENDING


@pytest.mark.django_db
def test_bad_signature_changes_nothing(reconciler, signed_event, completed_event, pending_order):
    with pytest.raises(WebhookSignatureError):
        _deliver(reconciler, signed_event, completed_event(pending_order.id, 12500), secret="whsec_other")
    assert OrderRepository().get(pending_order.id).payment_status == PaymentStatus.PENDING


@pytest.mark.django_db
def test_stale_signature_is_rejected(reconciler, signed_event, completed_event, pending_order):
    with pytest.raises(WebhookSignatureError):
        _deliver(
            reconciler, signed_event, completed_event(pending_order.id, 12500), timestamp=int(time.time()) - 3600
        )


@pytest.mark.django_db
def test_tampered_body_is_rejected(reconciler, signed_event, completed_event, pending_order):
    body, sig = signed_event(completed_event(pending_order.id, 100))
    tampered = body.replace('"amount_total": 100', '"amount_total": 12500')
    with pytest.raises(WebhookSignatureError):
        reconciler.handle(tampered.encode("utf-8"), sig)


def test_parsed_payload_is_refused(reconciler):
    with pytest.raises(WebhookSignatureError):
        reconciler.handle({"type": "checkout.session.completed"}, "t=1,v1=abc")
    with pytest.raises(WebhookSignatureError):
        reconciler.handle(json.dumps({"type": "x"}), "t=1,v1=abc")


def test_missing_signature_header(reconciler):
    with pytest.raises(WebhookSignatureError):
        reconciler.handle(b"{}", None)


class _BrokenInventory(OrmInventory):
    def decrement_stock(self, product_id, quantity, key=None):
        raise UpstreamError("inventory service unavailable")


@pytest.mark.django_db
def test_inventory_failure_rolls_back_payment(signed_event, completed_event, pending_order):
    reconciler = PaymentWebhookReconciler(OrderRepository(), _BrokenInventory(), SECRET)
    with pytest.raises(UpstreamError):
        _deliver(reconciler, signed_event, completed_event(pending_order.id, 12500))

    order = OrderRepository().get(pending_order.id)
    assert order.payment_status == PaymentStatus.PENDING
    assert order.status == OrderStatus.PENDING


class _RemoteInventory:
    """Inventory whose decrements commit on their own, deduplicated by key."""

    def __init__(self, stock, fail_once=()):
        self.stock = dict(stock)
        self.fail_once = set(fail_once)
        self.keys = set()

    def get_product(self, product_id):
        return None

    def decrement_stock(self, product_id, quantity, key=None):
        if product_id in self.fail_once:
            self.fail_once.discard(product_id)
            raise UpstreamError("inventory service unavailable")
        if key is not None:
            if key in self.keys:
                return
            self.keys.add(key)
        self.stock[product_id] = max(self.stock[product_id] - quantity, 0)


@pytest.mark.django_db
def test_redelivery_after_partial_inventory_failure_decrements_each_line_once(user, signed_event, completed_event):
    details = OrderDetails(user.id, "addr-1", ShippingDetails("Layla", "+971500000000", "12 Palm St", "Dubai", "Dubai"))
    items = [
        LineItem("p1", "Oud Candle", Decimal("50.00"), 2),
        LineItem("p2", "Amber Soap", Decimal("30.00"), 1),
    ]
    pricing = Pricing(Decimal("130.00"), Decimal("25.00"), Decimal("155.00"))
    order = OrderRepository().create_pending_order(details, items, pricing)

    inventory = _RemoteInventory({"p1": 10, "p2": 10}, fail_once={"p2"})
    reconciler = PaymentWebhookReconciler(OrderRepository(), inventory, SECRET)
    event = completed_event(order.id, 15500)

    with pytest.raises(UpstreamError):
        _deliver(reconciler, signed_event, event)
    assert OrderRepository().get(order.id).payment_status == PaymentStatus.PENDING
    # the first line already landed remotely
    assert inventory.stock == {"p1": 8, "p2": 10}

    assert _deliver(reconciler, signed_event, event).outcome == WebhookOutcome.PROCESSED
    assert _deliver(reconciler, signed_event, event).outcome == WebhookOutcome.ALREADY_PAID
    assert inventory.stock == {"p1": 8, "p2": 9}
    assert OrderRepository().get(order.id).payment_status == PaymentStatus.PAID


@pytest.mark.django_db
@pytest.mark.parametrize("amount_total", ["12500", 12500.0, True, None])
def test_non_integer_amount_is_a_mismatch(reconciler, signed_event, completed_event, pending_order, product, amount_total):
    result = _deliver(reconciler, signed_event, completed_event(pending_order.id, amount_total))
    assert result.outcome == WebhookOutcome.AMOUNT_MISMATCH
    assert OrderRepository().get(pending_order.id).payment_status == PaymentStatus.PENDING
    product.refresh_from_db()
    assert product.stock == 10
