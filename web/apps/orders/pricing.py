"""Server-side pricing for checkout.

Money is handled as ``Decimal`` quantized to two places. Client supplied
totals are never consulted; every figure here is derived from live
product data or from an order's stored snapshot.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterable, List, Tuple

from .domain import LineItem, Pricing, ProductSnapshot, ProviderLineItem

TWOPLACES = Decimal("0.01")
HUNDRED = Decimal("100")

FREE_SHIPPING_THRESHOLD = Decimal("200.00")
FLAT_SHIPPING_FEE = Decimal("25.00")
AMOUNT_TOLERANCE = Decimal("0.01")
SHIPPING_LINE_NAME = "Shipping"


def money(value) -> Decimal:
    """Coerce ``value`` to a 2dp Decimal (half-up).

    Raises:
        ValueError: When ``value`` is not a number.
    """
    try:
        return Decimal(str(value)).quantize(TWOPLACES, rounding=ROUND_HALF_UP)
    except (InvalidOperation, TypeError) as exc:
        raise ValueError(f"Invalid money value: {value!r}") from exc


def discounted_unit_price(price, discount_percent) -> Decimal:
    """``price * (1 - discount_percent / 100)`` rounded to 2dp."""
    pct = Decimal(str(discount_percent or 0))
    return money(Decimal(str(price)) * (1 - pct / HUNDRED))


def shipping_cost(subtotal: Decimal) -> Decimal:
    """Free shipping from ``FREE_SHIPPING_THRESHOLD`` up, flat fee below it."""
    if money(subtotal) >= FREE_SHIPPING_THRESHOLD:
        return Decimal("0.00")
    return FLAT_SHIPPING_FEE


def price_lines(lines: Iterable[Tuple[ProductSnapshot, int]]) -> Tuple[List[LineItem], Pricing]:
    """Snapshot each product at its discounted price and total the cart.

    Args:
        lines: ``(product, quantity)`` pairs, already validated.

    Returns:
        tuple[list[LineItem], Pricing]: Immutable item snapshots and the
        subtotal/shipping/total breakdown.
    """
    items = [
        LineItem(
            product_id=product.id,
            product_name=product.name,
            product_price=discounted_unit_price(product.price, product.discount_percent),
            quantity=qty,
        )
        for product, qty in lines
    ]
    subtotal = money(sum((it.line_total for it in items), Decimal("0")))
    shipping = shipping_cost(subtotal)
    return items, Pricing(subtotal=subtotal, shipping=shipping, total=money(subtotal + shipping))


def to_minor_units(amount: Decimal) -> int:
    return int((money(amount) * HUNDRED).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount) -> Decimal:
    return money(Decimal(int(amount)) / HUNDRED)


def amounts_match(a: Decimal, b: Decimal) -> bool:
    """True when two amounts differ by no more than ``AMOUNT_TOLERANCE``."""
    return abs(money(a) - money(b)) <= AMOUNT_TOLERANCE


def provider_line_items(items: Iterable[LineItem], shipping: Decimal) -> List[ProviderLineItem]:
    """Build the provider's line items from an item snapshot.

    A shipping line is appended when ``shipping`` is positive, so the sum
    of the provider's lines always equals the order total.
    """
    out = [
        ProviderLineItem(
            name=it.product_name,
            unit_amount=to_minor_units(it.product_price),
            quantity=it.quantity,
        )
        for it in items
    ]
    if money(shipping) > 0:
        out.append(ProviderLineItem(name=SHIPPING_LINE_NAME, unit_amount=to_minor_units(shipping), quantity=1))
    return out
