from decimal import Decimal

import pytest

from apps.orders.domain import LineItem, ProductSnapshot
from apps.orders.pricing import (
    amounts_match,
    discounted_unit_price,
    from_minor_units,
    money,
    price_lines,
    provider_line_items,
    shipping_cost,
    to_minor_units,
)


def _product(price, discount=0, stock=10, pid="p1", name="Candle"):
    return ProductSnapshot(id=pid, name=name, price=Decimal(price), discount_percent=discount, stock=stock)


def test_discounted_price_for_twenty_percent_off():
    assert discounted_unit_price(Decimal("100"), 20) == Decimal("80.00")


def test_discounted_price_rounds_half_up():
    # 9.99 * 0.85 = 8.4915
    assert discounted_unit_price(Decimal("9.99"), 15) == Decimal("8.49")
    # 0.05 * 0.5 = 0.025
    assert discounted_unit_price(Decimal("0.05"), 50) == Decimal("0.03")


@pytest.mark.parametrize(
    "subtotal,expected",
    [("199.99", "25.00"), ("200.00", "0.00"), ("0.01", "25.00"), ("350.00", "0.00")],
)
def test_shipping_threshold(subtotal, expected):
    assert shipping_cost(Decimal(subtotal)) == Decimal(expected)


def test_price_lines_snapshots_discounted_prices_and_totals():
    items, pricing = price_lines([(_product("100", 20), 1), (_product("50", 0, pid="p2", name="Soap"), 2)])
    assert [it.product_price for it in items] == [Decimal("80.00"), Decimal("50.00")]
    assert pricing.subtotal == Decimal("180.00")
    assert pricing.shipping == Decimal("25.00")
    assert pricing.total == Decimal("205.00")


def test_price_lines_sums_rounded_unit_prices():
    # 3 x 8.49 (not 3 x 8.4915)
    items, pricing = price_lines([(_product("9.99", 15), 3)])
    assert items[0].product_price == Decimal("8.49")
    assert pricing.subtotal == Decimal("25.47")


def test_free_shipping_at_exactly_threshold():
    _, pricing = price_lines([(_product("100"), 2)])
    assert pricing.shipping == Decimal("0.00")
    assert pricing.total == Decimal("200.00")


def test_minor_units():
    assert to_minor_units(Decimal("75.00")) == 7500
    assert to_minor_units(Decimal("8.49")) == 849
    assert from_minor_units(7500) == Decimal("75.00")
    assert from_minor_units(1) == Decimal("0.01")


def test_amounts_match_within_one_cent():
    assert amounts_match(Decimal("75.00"), Decimal("75.01"))
    assert not amounts_match(Decimal("75.00"), Decimal("75.02"))


def test_money_rejects_garbage():
    with pytest.raises(ValueError):
        money("not-a-number")


def test_provider_line_items_append_shipping_line():
    items = [LineItem("p1", "Candle", Decimal("50.00"), 1)]
    lines = provider_line_items(items, Decimal("25.00"))
    assert [(li.name, li.unit_amount, li.quantity) for li in lines] == [("Candle", 5000, 1), ("Shipping", 2500, 1)]


def test_provider_line_items_without_shipping():
    items = [LineItem("p1", "Candle", Decimal("100.00"), 2)]
    lines = provider_line_items(items, Decimal("0.00"))
    assert sum(li.unit_amount * li.quantity for li in lines) == 20000
    assert len(lines) == 1
