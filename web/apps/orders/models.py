import uuid
from decimal import Decimal

from django.conf import settings
from django.db import models
from django.utils import timezone

from .domain import OrderStatus, PaymentMethod, PaymentStatus


def _choices(enum_cls):
    return [(m.value, m.value.replace("_", " ").title()) for m in enum_cls]


class OrderModel(models.Model):
    # UUID PK exposed in the API
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    # Human-facing number, derived from the creation timestamp
    order_number = models.CharField(max_length=32, unique=True, editable=False)
    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="orders")
    # Weak reference: the address book may change after the order exists
    address_id = models.CharField(max_length=64, null=True, blank=True)

    status = models.CharField(max_length=16, choices=_choices(OrderStatus), default=OrderStatus.PENDING.value)
    payment_method = models.CharField(max_length=16, choices=_choices(PaymentMethod), default=PaymentMethod.COD.value)
    payment_status = models.CharField(max_length=16, choices=_choices(PaymentStatus), default=PaymentStatus.PENDING.value)
    total_amount = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal("0.00"))

    shipping_name = models.CharField(max_length=255)
    shipping_phone = models.CharField(max_length=32)
    shipping_address = models.CharField(max_length=512)
    shipping_city = models.CharField(max_length=128)
    shipping_region = models.CharField(max_length=128)

    checkout_session_id = models.CharField(max_length=255, null=True, blank=True, db_index=True)
    payment_intent_id = models.CharField(max_length=255, null=True, blank=True)

    cancellation_reason = models.TextField(null=True, blank=True)
    return_reason = models.TextField(null=True, blank=True)
    return_requested_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(default=timezone.now, editable=False)
    # Set explicitly on every status/payment change (time the current status was entered)
    updated_at = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = "orders"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["user", "payment_method", "payment_status", "created_at"], name="orders_unpaid_lookup"),
        ]

    def __str__(self):
        return f"{self.order_number} ({self.status})"


class OrderItemModel(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    order = models.ForeignKey(OrderModel, on_delete=models.CASCADE, related_name="items")
    product_id = models.CharField(max_length=64)
    product_name = models.CharField(max_length=255)
    product_price = models.DecimalField(max_digits=10, decimal_places=2)
    quantity = models.PositiveIntegerField()
    created_at = models.DateTimeField(default=timezone.now, editable=False)

    class Meta:
        db_table = "order_items"
        ordering = ["created_at", "id"]


class IdempotencyKey(models.Model):
    """Stored outcome of a client request sent with an ``Idempotency-Key``."""

    key = models.CharField(max_length=255, primary_key=True)
    request_hash = models.CharField(max_length=64)
    response_status = models.PositiveSmallIntegerField(default=0)
    response_body = models.JSONField(default=dict)
    order = models.ForeignKey(OrderModel, null=True, blank=True, on_delete=models.SET_NULL, related_name="+")
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = "idempotency_keys"
