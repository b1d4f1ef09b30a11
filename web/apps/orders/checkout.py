"""Checkout orchestration for cash-on-delivery and hosted checkout.

``CheckoutOrchestrator`` turns a cart and a selected address into either a
finalized COD order or a hosted-checkout redirect. Prices always come from
live product data (never from the client) and are snapshotted onto the
order items at creation time.
"""

import logging
from collections import OrderedDict
from typing import List, Optional, Tuple

from .domain import (
    AddressBookPort,
    CartLine,
    CartPort,
    CheckoutRequest,
    HostedCheckout,
    InventoryPort,
    LineItem,
    Order,
    OrderDetails,
    OrderStatus,
    PaymentMethod,
    PaymentProviderPort,
    PaymentStatus,
    Pricing,
    stock_decrement_key,
)
from .exceptions import NotFoundError, OrderValidationError, UpstreamError
from .pricing import amounts_match, money, price_lines, provider_line_items
from .repository import OrderRepository

logger = logging.getLogger(__name__)


def _merge_lines(lines: List[CartLine]) -> "OrderedDict[str, int]":
    merged: "OrderedDict[str, int]" = OrderedDict()
    for line in lines:
        if line.quantity is None or int(line.quantity) <= 0:
            raise OrderValidationError(
                f"Quantity for product {line.product_id} must be greater than zero",
                code="INVALID_QUANTITY",
            )
        merged[line.product_id] = merged.get(line.product_id, 0) + int(line.quantity)
    return merged


def _snapshot_key(items: List[LineItem]):
    return sorted((it.product_id, it.quantity, money(it.product_price)) for it in items)


class CheckoutOrchestrator:
    """Builds priced orders and hosted-checkout sessions.

    Args:
        orders: Repository used to create and look up orders.
        inventory: Live product price/stock accessor.
        addresses: Read-only address book.
        cart: The shopper's cart, cleared after a COD order.
        payments: Hosted-checkout provider.
        base_url: Public base URL used for the provider's redirects.
    """

    def __init__(
        self,
        orders: OrderRepository,
        inventory: InventoryPort,
        addresses: AddressBookPort,
        cart: CartPort,
        payments: PaymentProviderPort,
        base_url: str,
    ):
        self.orders = orders
        self.inventory = inventory
        self.addresses = addresses
        self.cart = cart
        self.payments = payments
        self.base_url = base_url.rstrip("/")

    def price_items(self, lines: List[CartLine]) -> Tuple[List[LineItem], Pricing]:
        """Validate requested lines against live stock and price them.

        Duplicate product ids are merged before the stock check. The whole
        checkout is rejected on the first invalid line.

        Raises:
            OrderValidationError: Empty cart, non-positive quantity or not
                enough stock.
            NotFoundError: A product does not exist.
        """
        if not lines:
            raise OrderValidationError("Order must contain at least one item", code="EMPTY_ORDER")
        priced = []
        for product_id, qty in _merge_lines(lines).items():
            product = self.inventory.get_product(product_id)
            if product is None:
                raise NotFoundError(f"Product {product_id} not found", code="PRODUCT_NOT_FOUND")
            if qty > product.stock:
                raise OrderValidationError(
                    f"Insufficient stock for {product.name}: {product.stock} available",
                    code="INSUFFICIENT_STOCK",
                )
            priced.append((product, qty))
        return price_lines(priced)

    def _details(self, user_id: int, request: CheckoutRequest) -> OrderDetails:
        if self.addresses.get_address(user_id, request.address_id) is None:
            raise NotFoundError("Address not found", code="ADDRESS_NOT_FOUND")
        return OrderDetails(user_id=user_id, address_id=request.address_id, shipping=request.shipping)

    # ---- cash on delivery ----

    def place_cod_order(self, user_id: int, request: CheckoutRequest) -> Order:
        """Create a final COD order, decrement stock and clear the cart.

        Stock decrements and the cart clear run after the order commits.
        Once the order exists it is returned even when inventory fails:
        the missed decrement is logged for reconciliation, and the caller
        must not retry into a second order.

        Raises:
            UpstreamError: Inventory failed before anything was persisted.
        """
        items, pricing = self.price_items(request.items)
        details = self._details(user_id, request)
        order = self.orders.create_final_order(details, items, pricing)
        for it in order.items:
            try:
                self.inventory.decrement_stock(
                    it.product_id, it.quantity, key=stock_decrement_key(order.id, it.product_id)
                )
            except UpstreamError as e:
                logger.error(
                    "stock decrement failed for placed order",
                    extra={"order_id": order.id, "product_id": it.product_id, "quantity": it.quantity, "error": str(e)},
                )
        self.cart.clear(user_id)
        logger.info(
            "cod order placed",
            extra={"order_id": order.id, "order_number": order.order_number, "total_amount": str(order.total_amount)},
        )
        return order

    # ---- hosted checkout ----

    def start_hosted_checkout(
        self, user_id: int, request: CheckoutRequest, customer_email: Optional[str] = None
    ) -> HostedCheckout:
        """Create or reuse a pending order and open a provider session.

        The user's most recent pending hosted order is reused when both its
        total and its item snapshot match the fresh pricing. Otherwise it
        is left as is and a new pending order is created. Stock and cart
        are untouched until the payment webhook arrives.
        """
        items, pricing = self.price_items(request.items)
        details = self._details(user_id, request)

        order = self.orders.find_unpaid_hosted_order(user_id)
        if order is not None and amounts_match(order.total_amount, pricing.total) and (
            _snapshot_key(order.items) == _snapshot_key(items)
        ):
            logger.info(
                "reusing pending hosted order",
                extra={"order_id": order.id, "order_number": order.order_number},
            )
        else:
            if order is not None:
                logger.info("abandoning stale pending hosted order", extra={"order_id": order.id})
            order = self.orders.create_pending_order(details, items, pricing)
        return self._open_session(order, customer_email)

    def retry_payment(self, user_id: int, order_id: str, customer_email: Optional[str] = None) -> HostedCheckout:
        """Open a new session for an unpaid hosted order from its own snapshot.

        Raises:
            NotFoundError: The order does not exist or belongs to someone else.
            OrderValidationError: The order is not a pending, unpaid hosted
                checkout order.
        """
        order = self.orders.get(order_id)
        if order is None or order.user_id != user_id:
            raise NotFoundError("Order not found", code="ORDER_NOT_FOUND")
        if (
            order.payment_method != PaymentMethod.HOSTED_CHECKOUT
            or order.payment_status == PaymentStatus.PAID
            or order.status != OrderStatus.PENDING
        ):
            raise OrderValidationError("Order is not eligible for payment retry", code="NOT_RETRYABLE")
        return self._open_session(order, customer_email)

    def _open_session(self, order: Order, customer_email: Optional[str]) -> HostedCheckout:
        # Shipping is whatever the stored total holds beyond the items, so the
        # charged sum always equals total_amount.
        shipping = money(order.total_amount - order.items_subtotal)
        session = self.payments.create_session(
            line_items=provider_line_items(order.items, shipping),
            success_url=f"{self.base_url}/payment-success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{self.base_url}/dashboard/orders/{order.id}",
            metadata={"order_id": order.id},
            customer_email=customer_email,
        )
        self.orders.update_payment_status(order.id, PaymentStatus.PENDING, session_id=session.id)
        logger.info(
            "checkout session opened",
            extra={"order_id": order.id, "session_id": session.id, "total_amount": str(order.total_amount)},
        )
        return HostedCheckout(session_id=session.id, url=session.url, order_id=order.id, order_number=order.order_number)
