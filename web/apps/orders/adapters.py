"""In-process adapters for the orders domain ports.

``OrmInventory``, ``OrmAddressBook`` and ``OrmCart`` read and write the
storefront tables directly. ``PaymentProviderStub`` stands in for the
hosted-checkout provider in tests and local development: it returns
deterministic-looking session ids without any network calls.
"""

import uuid
from typing import List, Optional

from django.db.models import F
from django.db.models.functions import Greatest

from apps.storefront.models import Address as AddressModel
from apps.storefront.models import CartItem, Product

from .domain import (
    Address,
    AddressBookPort,
    CartPort,
    CheckoutSession,
    InventoryPort,
    PaymentProviderPort,
    ProductSnapshot,
    ProviderLineItem,
)


def _uuid_or_none(value) -> Optional[uuid.UUID]:
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


class OrmInventory(InventoryPort):
    """Inventory accessor over ``storefront.Product``."""

    def get_product(self, product_id: str) -> Optional[ProductSnapshot]:
        pid = _uuid_or_none(product_id)
        if pid is None:
            return None
        p = Product.objects.filter(id=pid, is_active=True).first()
        if p is None:
            return None
        return ProductSnapshot(
            id=str(p.id),
            name=p.name,
            price=p.price,
            discount_percent=p.discount_percent,
            stock=p.stock,
        )

    def decrement_stock(self, product_id: str, quantity: int, key: Optional[str] = None) -> None:
        """Single ``UPDATE`` with ``GREATEST(stock - q, 0)``; unknown ids are a no-op.

        The update joins the caller's transaction, so ``key`` is not needed here.
        """
        pid = _uuid_or_none(product_id)
        if pid is None:
            return
        Product.objects.filter(id=pid).update(stock=Greatest(F("stock") - quantity, 0))


class OrmAddressBook(AddressBookPort):
    def get_address(self, user_id: int, address_id: str) -> Optional[Address]:
        aid = _uuid_or_none(address_id)
        if aid is None:
            return None
        a = AddressModel.objects.filter(id=aid, user_id=user_id).first()
        if a is None:
            return None
        return Address(
            id=str(a.id),
            user_id=a.user_id,
            address_line1=a.address_line1,
            city=a.city,
            region=a.state_region,
        )


class OrmCart(CartPort):
    def clear(self, user_id: int) -> None:
        CartItem.objects.filter(user_id=user_id).delete()


class PaymentProviderStub(PaymentProviderPort):
    """Stub hosted-checkout provider.

    Every call is recorded on ``sessions`` so tests can assert what the
    shopper would have been charged.
    """

    def __init__(self, base_url: str = "https://checkout.example.test"):
        self.base_url = base_url.rstrip("/")
        self.sessions: List[dict] = []

    def create_session(
        self,
        line_items: List[ProviderLineItem],
        success_url: str,
        cancel_url: str,
        metadata: dict,
        customer_email: Optional[str] = None,
    ) -> CheckoutSession:
        session_id = f"cs_test_{uuid.uuid4().hex}"
        self.sessions.append(
            {
                "id": session_id,
                "line_items": list(line_items),
                "success_url": success_url,
                "cancel_url": cancel_url,
                "metadata": dict(metadata),
                "customer_email": customer_email,
            }
        )
        return CheckoutSession(id=session_id, url=f"{self.base_url}/pay/{session_id}")
