"""
Order Builder tests.

The builder is pure, so these tests need no database: products are plain
ProductInfo values.
"""

from dataclasses import replace
from decimal import Decimal

import pytest

from distpos.domain import ClientInfo, ProductInfo, STATUS_DRAFT, STATUS_PAID
from distpos.errors import StockInsufficient, ValidationError
from distpos.services import order_builder as ob


def _product(pid=1, *, stock="10", prices=("10.00", "11.00", "12.00", "13.00", "14.00"), name="Widget"):
    return ProductInfo(
        id=pid,
        code=f"P-{pid}",
        name=name,
        stock=Decimal(stock),
        prices=tuple(Decimal(p) for p in prices),
    )


def _assert_totals(order):
    assert order.subtotal == sum((i.total for i in order.items), Decimal("0"))
    assert order.total == order.subtotal - order.discount_total
    assert Decimal("0") <= order.discount_total <= order.subtotal
    for item in order.items:
        assert item.total == item.quantity * item.unit_price


def test_new_order_is_empty_walk_in_draft():
    order = ob.new_order()
    assert order.status == STATUS_DRAFT
    assert order.id is None
    assert order.local_id.startswith("temp-")
    assert order.client_id is None
    assert order.client_name == ob.DEFAULT_WALK_IN_NAME
    assert order.total == Decimal("0")


def test_new_order_for_client():
    client = ClientInfo(id=7, name="Acme", credit_limit=Decimal("50"), balance=Decimal("0"))
    order = ob.new_order(client, created_by=3)
    assert order.client_id == 7
    assert order.client_name == "Acme"
    assert order.created_by == 3


def test_same_product_same_price_merges_into_one_line():
    product = _product()
    order = ob.add_item(ob.new_order(), product, 2)
    order = ob.add_item(order, product, 3)

    assert len(order.items) == 1
    assert order.items[0].quantity == Decimal("5")
    assert order.total == Decimal("50.00")
    _assert_totals(order)


def test_same_product_different_price_makes_two_lines():
    product = _product()
    order = ob.add_item(ob.new_order(), product, 2, tier=1)
    order = ob.add_item(order, product, 1, tier=3)

    assert len(order.items) == 2
    assert [i.unit_price for i in order.items] == [Decimal("10.00"), Decimal("12.00")]
    assert order.subtotal == Decimal("32.00")
    _assert_totals(order)


def test_custom_price_equal_to_tier_price_merges():
    product = _product()
    order = ob.add_item(ob.new_order(), product, 1)
    order = ob.add_item(order, product, 1, custom_price="10.00")
    assert len(order.items) == 1
    assert order.items[0].quantity == Decimal("2")


def test_fractional_quantities_are_kept():
    order = ob.add_item(ob.new_order(), _product(), "1.5")
    assert order.items[0].quantity == Decimal("1.500")
    assert order.total == Decimal("15.00")
    _assert_totals(order)


@pytest.mark.parametrize("quantity", [0, -1, "abc"])
def test_invalid_quantity_rejected(quantity):
    with pytest.raises(ValidationError):
        ob.add_item(ob.new_order(), _product(), quantity)


def test_add_beyond_stock_raises_with_shortfall():
    with pytest.raises(StockInsufficient) as exc:
        ob.add_item(ob.new_order(), _product(stock="3"), 4)
    shortfall = exc.value.shortfalls[0]
    assert shortfall["product_name"] == "Widget"
    assert shortfall["requested"] == 4.0
    assert shortfall["available"] == 3.0


def test_merged_quantity_is_revalidated_against_stock():
    product = _product(stock="5")
    order = ob.add_item(ob.new_order(), product, 3)
    with pytest.raises(StockInsufficient):
        ob.add_item(order, product, 3)


def test_stock_check_counts_every_line_of_the_product():
    product = _product(stock="5")
    order = ob.add_item(ob.new_order(), product, 3, tier=1)
    with pytest.raises(StockInsufficient):
        ob.add_item(order, product, 3, tier=2)


def test_update_quantity_validates_against_current_stock():
    product = _product(stock="10")
    order = ob.add_item(ob.new_order(), product, 2)
    line_id = order.items[0].line_id

    order = ob.update_quantity(order, line_id, 7, product)
    assert order.items[0].quantity == Decimal("7")
    _assert_totals(order)

    restocked_low = replace(product, stock=Decimal("6"))
    with pytest.raises(StockInsufficient):
        ob.update_quantity(order, line_id, 7, restocked_low)


def test_unknown_line_id_rejected():
    order = ob.add_item(ob.new_order(), _product(), 1)
    with pytest.raises(ValidationError):
        ob.remove_item(order, "line-missing")
    with pytest.raises(ValidationError):
        ob.update_quantity(order, "line-missing", 2, _product())


def test_update_price_by_tier_and_custom():
    product = _product()
    order = ob.add_item(ob.new_order(), product, 2)
    line_id = order.items[0].line_id

    order = ob.update_price(order, line_id, product, tier=5)
    assert order.items[0].unit_price == Decimal("14.00")
    assert order.items[0].price_tier == 5

    order = ob.update_price(order, line_id, product, tier=2, custom_price="8.25")
    assert order.items[0].unit_price == Decimal("8.25")
    assert order.items[0].custom_price is True
    assert order.items[0].price_tier is None
    assert order.total == Decimal("16.50")
    _assert_totals(order)


@pytest.mark.parametrize("tier", [0, 6])
def test_tier_out_of_range_rejected(tier):
    product = _product()
    order = ob.add_item(ob.new_order(), product, 1)
    with pytest.raises(ValidationError):
        ob.update_price(order, order.items[0].line_id, product, tier=tier)


def test_discount_bounds():
    order = ob.add_item(ob.new_order(), _product(), 3)

    discounted = ob.apply_discount(order, "5")
    assert discounted.discount_total == Decimal("5.00")
    assert discounted.total == Decimal("25.00")
    _assert_totals(discounted)

    with pytest.raises(ValidationError):
        ob.apply_discount(order, "30.01")
    with pytest.raises(ValidationError):
        ob.apply_discount(order, "-1")


def test_removing_items_clamps_discount_to_subtotal():
    a = _product(1)
    b = _product(2, prices=("2.00", "2.00", "2.00", "2.00", "2.00"), name="Bolt")
    order = ob.add_item(ob.new_order(), a, 1)
    order = ob.add_item(order, b, 1)
    order = ob.apply_discount(order, "9")

    order = ob.remove_item(order, order.items[0].line_id)
    assert order.subtotal == Decimal("2.00")
    assert order.discount_total == Decimal("2.00")
    assert order.total == Decimal("0")
    _assert_totals(order)


def test_invariants_hold_across_a_mixed_sequence():
    a = _product(1, stock="100")
    b = _product(2, stock="100", prices=("3.33", "3.50", "3.75", "4.00", "4.25"), name="Bolt")
    order = ob.new_order()
    steps = [
        lambda o: ob.add_item(o, a, "2.5"),
        lambda o: ob.add_item(o, b, 3),
        lambda o: ob.add_item(o, b, 1, tier=4),
        lambda o: ob.apply_discount(o, "4.10"),
        lambda o: ob.update_quantity(o, o.items[1].line_id, "1.75", b),
        lambda o: ob.update_price(o, o.items[0].line_id, a, custom_price="9.99"),
        lambda o: ob.remove_item(o, o.items[2].line_id),
    ]
    for step in steps:
        order = step(order)
        _assert_totals(order)


def test_set_client_and_details():
    order = ob.new_order()
    client = ClientInfo(id=4, name="Big Wholesale", credit_limit=Decimal("1000"), balance=Decimal("0"))

    order = ob.set_client(order, client)
    assert (order.client_id, order.client_name) == (4, "Big Wholesale")

    order = ob.update_details(order, driver="Luis", route="North", is_invoice=1, observations="Back door")
    assert order.driver == "Luis"
    assert order.is_invoice is True

    order = ob.set_client(order, None, walk_in_name="Mostrador")
    assert order.client_id is None
    assert order.client_name == "Mostrador"

    with pytest.raises(ValidationError):
        ob.update_details(order, status="paid")


def test_settled_orders_are_read_only():
    order = replace(ob.add_item(ob.new_order(), _product(), 1), status=STATUS_PAID)
    with pytest.raises(ValidationError):
        ob.add_item(order, _product(), 1)
    with pytest.raises(ValidationError):
        ob.apply_discount(order, 1)
