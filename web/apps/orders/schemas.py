"""Pydantic schemas for orders.

Request schemas validate and normalize the JSON the API accepts and map
it to domain DTOs; response schemas render domain objects as snake_case
JSON with money as 2dp decimal strings.
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .domain import CartLine, CheckoutRequest, HostedCheckout, Order, OrderStatus, ShippingDetails
from .pricing import money


class CheckoutItemIn(BaseModel):
    """One requested cart line.

    Attributes:
        product_id: Product identifier.
        quantity: Positive number of units.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    product_id: str = Field(min_length=1, max_length=64)
    quantity: int = Field(gt=0)


class CheckoutIn(BaseModel):
    """Body shared by the COD and hosted-checkout endpoints.

    ``total_amount`` is accepted for compatibility with older clients and
    ignored: totals are always recomputed on the server.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    items: List[CheckoutItemIn] = Field(default_factory=list)
    address_id: str = Field(min_length=1, max_length=64)
    shipping_name: str = Field(min_length=1, max_length=255)
    shipping_phone: str = Field(min_length=3, max_length=32)
    shipping_address: str = Field(min_length=1, max_length=512)
    shipping_city: str = Field(min_length=1, max_length=128)
    shipping_region: str = Field(min_length=1, max_length=128)
    total_amount: Optional[Decimal] = None

    def to_domain(self) -> CheckoutRequest:
        return CheckoutRequest(
            items=[CartLine(product_id=i.product_id, quantity=i.quantity) for i in self.items],
            address_id=self.address_id,
            shipping=ShippingDetails(
                name=self.shipping_name,
                phone=self.shipping_phone,
                address=self.shipping_address,
                city=self.shipping_city,
                region=self.shipping_region,
            ),
        )


class ReasonIn(BaseModel):
    reason: Optional[str] = ""


class StatusUpdateIn(BaseModel):
    status: OrderStatus

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, v):
        """Accept any casing, e.g. ``"Shipped"``."""
        return v.strip().lower() if isinstance(v, str) else v


class VerifyPaymentIn(BaseModel):
    session_id: str = Field(min_length=1, max_length=255)


class OrderItemOut(BaseModel):
    product_id: str
    product_name: str
    product_price: str
    quantity: int


class OrderOut(BaseModel):
    id: str
    order_number: str
    status: str
    payment_method: str
    payment_status: str
    total_amount: str
    address_id: Optional[str] = None
    shipping_name: str
    shipping_phone: str
    shipping_address: str
    shipping_city: str
    shipping_region: str
    checkout_session_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    cancellation_reason: Optional[str] = None
    return_reason: Optional[str] = None
    return_requested_at: Optional[datetime] = None
    is_awaiting_payment: bool
    created_at: datetime
    updated_at: datetime
    items: List[OrderItemOut]

    @classmethod
    def from_domain(cls, order: Order) -> "OrderOut":
        return cls(
            id=order.id,
            order_number=order.order_number,
            status=order.status.value,
            payment_method=order.payment_method.value,
            payment_status=order.payment_status.value,
            total_amount=str(money(order.total_amount)),
            address_id=order.address_id,
            shipping_name=order.shipping.name,
            shipping_phone=order.shipping.phone,
            shipping_address=order.shipping.address,
            shipping_city=order.shipping.city,
            shipping_region=order.shipping.region,
            checkout_session_id=order.checkout_session_id,
            payment_intent_id=order.payment_intent_id,
            cancellation_reason=order.cancellation_reason,
            return_reason=order.return_reason,
            return_requested_at=order.return_requested_at,
            is_awaiting_payment=order.is_awaiting_payment,
            created_at=order.created_at,
            updated_at=order.updated_at,
            items=[
                OrderItemOut(
                    product_id=it.product_id,
                    product_name=it.product_name,
                    product_price=str(money(it.product_price)),
                    quantity=it.quantity,
                )
                for it in order.items
            ],
        )


class HostedCheckoutOut(BaseModel):
    session_id: str
    url: str
    order_id: str
    order_number: str

    @classmethod
    def from_domain(cls, checkout: HostedCheckout) -> "HostedCheckoutOut":
        return cls(
            session_id=checkout.session_id,
            url=checkout.url,
            order_id=checkout.order_id,
            order_number=checkout.order_number,
        )
