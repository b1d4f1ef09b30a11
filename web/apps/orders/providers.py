"""Service provider helpers for wiring the orders services with ports.

Views never build services themselves; they call these factories through
the module (``providers.get_checkout_orchestrator()``) so tests can
monkeypatch any one of them.

``settings.USE_HTTP_ADAPTERS`` selects the inventory HTTP client over the
in-process ORM adapter, and ``settings.STRIPE_ENABLED`` selects the Stripe
gateway over the in-process payment stub.
"""

from django.conf import settings

from .adapters import OrmAddressBook, OrmCart, OrmInventory, PaymentProviderStub
from .checkout import CheckoutOrchestrator
from .domain import InventoryPort, PaymentProviderPort
from .http_adapters import HttpInventoryClient
from .lifecycle import OrderLifecycleService
from .repository import OrderRepository
from .stripe_gateway import StripeCheckoutProvider
from .webhooks import PaymentWebhookReconciler


def get_inventory() -> InventoryPort:
    if getattr(settings, "USE_HTTP_ADAPTERS", False):
        return HttpInventoryClient()
    return OrmInventory()


def get_payment_provider() -> PaymentProviderPort:
    if getattr(settings, "STRIPE_ENABLED", False):
        return StripeCheckoutProvider()
    return PaymentProviderStub()


def get_order_repository() -> OrderRepository:
    return OrderRepository()


def get_checkout_orchestrator() -> CheckoutOrchestrator:
    """Return a ``CheckoutOrchestrator`` wired from current settings."""
    return CheckoutOrchestrator(
        orders=get_order_repository(),
        inventory=get_inventory(),
        addresses=OrmAddressBook(),
        cart=OrmCart(),
        payments=get_payment_provider(),
        base_url=getattr(settings, "APP_BASE_URL", "http://localhost:5000"),
    )


def get_webhook_reconciler() -> PaymentWebhookReconciler:
    return PaymentWebhookReconciler(
        orders=get_order_repository(),
        inventory=get_inventory(),
        secret=getattr(settings, "STRIPE_WEBHOOK_SECRET", ""),
        tolerance=int(getattr(settings, "STRIPE_WEBHOOK_TOLERANCE", 300)),
    )


def get_lifecycle_service() -> OrderLifecycleService:
    return OrderLifecycleService(orders=get_order_repository())
