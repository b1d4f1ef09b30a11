import hashlib
import hmac
import json
import time
from decimal import Decimal

import pytest
from django.core.cache import cache

from apps.orders import providers
from apps.orders.adapters import PaymentProviderStub
from apps.storefront.models import Address, CartItem, Product

WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture(autouse=True)
def use_in_process_adapters(settings):
    settings.USE_HTTP_ADAPTERS = False
    settings.STRIPE_ENABLED = False
    settings.STRIPE_WEBHOOK_SECRET = WEBHOOK_SECRET
    settings.STRIPE_WEBHOOK_TOLERANCE = 300
    settings.APP_BASE_URL = "http://shop.test"
    # throttle counters live in the cache
    cache.clear()


@pytest.fixture
def user(django_user_model):
    return django_user_model.objects.create_user(username="shopper", email="shopper@example.com", password="pw")


@pytest.fixture
def other_user(django_user_model):
    return django_user_model.objects.create_user(username="someone", email="someone@example.com", password="pw")


@pytest.fixture
def auth_client(client, user):
    client.force_login(user)
    return client


@pytest.fixture
def make_product(db):
    def _make(name="Oud Candle", price="50.00", discount_percent=0, stock=10):
        return Product.objects.create(
            name=name, price=Decimal(price), discount_percent=discount_percent, stock=stock
        )

    return _make


@pytest.fixture
def address(user):
    return Address.objects.create(user=user, address_line1="12 Palm Street", city="Dubai", state_region="Dubai")


@pytest.fixture
def fill_cart(user):
    def _fill(product, quantity=1):
        return CartItem.objects.create(user=user, product=product, quantity=quantity)

    return _fill


@pytest.fixture
def checkout_payload(address):
    """Build a checkout body for ``[(product, quantity), ...]``."""

    def _payload(lines, **overrides):
        body = {
            "items": [{"product_id": str(p.id), "quantity": q} for p, q in lines],
            "address_id": str(address.id),
            "shipping_name": "Layla Haddad",
            "shipping_phone": "+971500000000",
            "shipping_address": "12 Palm Street",
            "shipping_city": "Dubai",
            "shipping_region": "Dubai",
        }
        body.update(overrides)
        return body

    return _payload


@pytest.fixture
def payment_provider(monkeypatch):
    stub = PaymentProviderStub()
    monkeypatch.setattr(providers, "get_payment_provider", lambda: stub)
    return stub


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Build a ``Stripe-Signature`` header value for ``payload``."""
    ts = int(time.time()) if timestamp is None else timestamp
    sig = hmac.new(secret.encode("utf-8"), f"{ts}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
    return f"t={ts},v1={sig}"


@pytest.fixture
def completed_event():
    """Build a ``checkout.session.completed`` event for an order."""

    def _event(order_id, amount_total, session_id="cs_test_1", payment_status="paid", event_id="evt_1"):
        return {
            "id": event_id,
            "object": "event",
            "type": "checkout.session.completed",
            "data": {
                "object": {
                    "id": session_id,
                    "object": "checkout.session",
                    "amount_total": amount_total,
                    "payment_status": payment_status,
                    "payment_intent": "pi_test_1",
                    "metadata": {"order_id": str(order_id)} if order_id else {},
                }
            },
        }

    return _event


@pytest.fixture
def signed_event():
    """Serialize an event and sign it; returns ``(body, signature)``."""

    def _signed(event, secret=WEBHOOK_SECRET, timestamp=None):
        body = json.dumps(event)
        return body, sign_payload(body, secret=secret, timestamp=timestamp)

    return _signed
