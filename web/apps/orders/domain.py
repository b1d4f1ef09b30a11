"""Domain types, ports and the order status state machine.

This module contains the enums and dataclasses used as DTOs across the
orders app, the ``can_transition`` rule that is the single authority on
legal status changes, and protocol definitions (ports) for the external
collaborators the core depends on: inventory, the address book, the
shopping cart and the hosted-checkout payment provider.

Nothing in here performs I/O.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Protocol, List, Optional


# ---- Enums ----
class OrderStatus(str, Enum):
    """Fulfilment status of an order."""

    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    RETURNING = "returning"
    RETURNED = "returned"
    REFUNDED = "refunded"


class PaymentStatus(str, Enum):
    """Whether money for an order has moved."""

    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentMethod(str, Enum):
    COD = "cod"
    HOSTED_CHECKOUT = "hosted_checkout"


# ---- State machine ----
ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED}),
    OrderStatus.DELIVERED: frozenset({OrderStatus.RETURNING}),
    OrderStatus.RETURNING: frozenset({OrderStatus.RETURNED}),
    OrderStatus.RETURNED: frozenset({OrderStatus.REFUNDED}),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.REFUNDED: frozenset(),
}

RETURN_STATUSES = frozenset(
    {OrderStatus.RETURNING, OrderStatus.RETURNED, OrderStatus.REFUNDED}
)


def can_transition(current: OrderStatus, nxt: OrderStatus) -> bool:
    """Return True when moving an order from ``current`` to ``nxt`` is legal.

    A transition to the same status is never legal, so callers cannot
    treat a repeated request as a silent success.

    Args:
        current: Status the order is in now.
        nxt: Requested next status.

    Returns:
        bool: Whether the pair appears in ``ALLOWED_TRANSITIONS``.
    """
    if current == nxt:
        return False
    return nxt in ALLOWED_TRANSITIONS.get(current, frozenset())


# ---- Entities / DTOs ----
@dataclass(frozen=True)
class ProductSnapshot:
    """Live product data as reported by the inventory accessor."""

    id: str
    name: str
    price: Decimal
    discount_percent: int
    stock: int


@dataclass(frozen=True)
class CartLine:
    """A ``(product_id, quantity)`` pair requested at checkout."""

    product_id: str
    quantity: int


@dataclass(frozen=True)
class ShippingDetails:
    """Shipping contact copied onto an order at creation time.

    Later edits to the user's address book never touch this snapshot.
    """

    name: str
    phone: str
    address: str
    city: str
    region: str


@dataclass(frozen=True)
class Address:
    id: str
    user_id: int
    address_line1: str
    city: str
    region: str


@dataclass(frozen=True)
class LineItem:
    """A price-and-quantity snapshot of one product at order time.

    Attributes:
        product_id: Weak reference to the product; it may change or
            disappear after the order exists.
        product_name: Product name at order time.
        product_price: Discounted unit price actually charged.
        quantity: Units ordered.

    The dataclass is frozen because order items are never modified once
    written.
    """

    product_id: str
    product_name: str
    product_price: Decimal
    quantity: int

    @property
    def line_total(self) -> Decimal:
        return self.product_price * self.quantity


@dataclass(frozen=True)
class Pricing:
    subtotal: Decimal
    shipping: Decimal
    total: Decimal


@dataclass(frozen=True)
class CheckoutRequest:
    """Everything a shopper submits to check out.

    The client-side total is deliberately absent: prices are always
    recomputed from live product data.
    """

    items: List[CartLine]
    address_id: str
    shipping: ShippingDetails


@dataclass(frozen=True)
class OrderDetails:
    user_id: int
    address_id: Optional[str]
    shipping: ShippingDetails


@dataclass
class Order:
    """An order together with its item snapshot."""

    id: str
    order_number: str
    user_id: int
    address_id: Optional[str]
    status: OrderStatus
    payment_method: PaymentMethod
    payment_status: PaymentStatus
    total_amount: Decimal
    shipping: ShippingDetails
    created_at: datetime
    updated_at: datetime
    checkout_session_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    cancellation_reason: Optional[str] = None
    return_reason: Optional[str] = None
    return_requested_at: Optional[datetime] = None
    items: List[LineItem] = field(default_factory=list)

    @property
    def is_awaiting_payment(self) -> bool:
        """True for a hosted-checkout order whose payment has not landed."""
        return (
            self.payment_method == PaymentMethod.HOSTED_CHECKOUT
            and self.payment_status != PaymentStatus.PAID
        )

    @property
    def items_subtotal(self) -> Decimal:
        return sum((it.line_total for it in self.items), Decimal("0.00"))


@dataclass(frozen=True)
class ProviderLineItem:
    """A line item as sent to the payment provider, in minor units."""

    name: str
    unit_amount: int
    quantity: int


@dataclass(frozen=True)
class CheckoutSession:
    id: str
    url: str


@dataclass(frozen=True)
class HostedCheckout:
    """Result of opening a hosted checkout session for an order."""

    session_id: str
    url: str
    order_id: str
    order_number: str


# ---- Ports (DIP) ----
class InventoryPort(Protocol):
    """Port describing the inventory accessor used by the core."""

    def get_product(self, product_id: str) -> Optional[ProductSnapshot]:
        """Return live price/stock data, or None when the product is unknown."""
        raise NotImplementedError()

    def decrement_stock(self, product_id: str, quantity: int, key: Optional[str] = None) -> None:
        """Atomically lower stock by ``quantity``, flooring at zero.

        Implementations must not read-then-write in application code;
        concurrent decrements for the same product must not lose updates.
        A decrement that commits on its own (outside the caller's
        transaction) must apply at most once per ``key``.
        """
        raise NotImplementedError()


def stock_decrement_key(order_id: str, product_id: str) -> str:
    """Key that makes one order line's stock decrement apply once."""
    return f"{order_id}:{product_id}"


class AddressBookPort(Protocol):
    def get_address(self, user_id: int, address_id: str) -> Optional[Address]:
        """Return the user's address, or None when it does not exist."""
        raise NotImplementedError()


class CartPort(Protocol):
    def clear(self, user_id: int) -> None:
        raise NotImplementedError()


class PaymentProviderPort(Protocol):
    """Port describing a hosted-checkout payment provider."""

    def create_session(
        self,
        line_items: List[ProviderLineItem],
        success_url: str,
        cancel_url: str,
        metadata: dict,
        customer_email: Optional[str] = None,
    ) -> CheckoutSession:
        """Open a hosted checkout session.

        Args:
            line_items: What the shopper will be charged for.
            success_url: Redirect target after payment.
            cancel_url: Redirect target when the shopper abandons payment.
            metadata: Correlation data echoed back in webhook events. The
                core only ever sends the order id here.
            customer_email: Optional e-mail to prefill on the payment page.

        Returns:
            CheckoutSession: Provider session id and redirect URL.

        Raises:
            UpstreamError: When the provider cannot be reached or rejects
                the request.
        """
        raise NotImplementedError()
