# Overview: Pure functions that build and edit in-memory orders.

"""
Order Builder.

Every function takes an Order and returns a new Order; nothing here reads or
writes the store. Product data (prices, current stock) is passed in by the
caller, usually from catalog_service.

Invariants after every operation:
- subtotal == sum(item.total)
- total == subtotal - discount_total
- 0 <= discount_total <= subtotal

Line totals are kept exact (quantity * unit_price) in memory and rounded to
cents only when written to the store.
"""

from __future__ import annotations

import uuid
from dataclasses import replace
from decimal import Decimal

from ..domain import (
    ClientInfo,
    Order,
    OrderItem,
    ProductInfo,
    STATUS_CANCELLED,
    STATUS_DRAFT,
    STATUS_PAID,
    STATUS_PENDING,
    decimal_arg,
)
from ..errors import StockInsufficient, ValidationError
from ..money import MONEY_TOLERANCE, ZERO, as_float, to_money, to_quantity


DEFAULT_WALK_IN_NAME = "Walk-in Customer"

# Fields update_details() may change
DETAIL_FIELDS = {"is_invoice", "is_quote", "is_external", "observations", "driver", "route"}


def _local_id() -> str:
    return f"temp-{uuid.uuid4().hex[:12]}"


def _line_id() -> str:
    return f"line-{uuid.uuid4().hex[:8]}"


def _ensure_editable(order: Order) -> None:
    if order.status in (STATUS_PAID, STATUS_CANCELLED, STATUS_PENDING):
        raise ValidationError(
            f"Order in status '{order.status}' cannot be edited",
            details={"status": order.status},
        )


def _positive_quantity(quantity) -> Decimal:
    qty = to_quantity(decimal_arg(quantity, "quantity"))
    if qty <= 0:
        raise ValidationError("Quantity must be greater than zero", details={"quantity": as_float(qty)})
    return qty


def _check_stock(items: tuple[OrderItem, ...], product: ProductInfo) -> None:
    """Requested quantity of `product` across every line must fit current stock."""
    requested = sum((i.quantity for i in items if i.product_id == product.id), ZERO)
    if requested > product.stock:
        raise StockInsufficient([{
            "product_id": product.id,
            "product_name": product.name,
            "requested": as_float(requested),
            "available": as_float(product.stock),
        }])


def _recalculate(order: Order, items: tuple[OrderItem, ...]) -> Order:
    subtotal = sum((i.total for i in items), ZERO)
    discount = min(order.discount_total, subtotal)
    return replace(
        order,
        items=items,
        subtotal=subtotal,
        discount_total=discount,
        total=subtotal - discount,
    )


def resolve_unit_price(
    product: ProductInfo,
    tier: int | None = 1,
    custom_price=None,
) -> tuple[Decimal, int | None, bool]:
    """
    (unit_price, price_tier, is_custom) for a product.

    A custom price wins over the tier; tiers run 1..5.
    """
    if custom_price is not None:
        price = to_money(decimal_arg(custom_price, "custom_price"))
        if price < 0:
            raise ValidationError("Price cannot be negative")
        return price, None, True
    tier = 1 if tier is None else tier
    return product.price_for_tier(tier), tier, False


def new_order(
    client: ClientInfo | None = None,
    *,
    walk_in_name: str = DEFAULT_WALK_IN_NAME,
    created_by: int | None = None,
) -> Order:
    return Order(
        local_id=_local_id(),
        client_id=client.id if client else None,
        client_name=client.name if client else walk_in_name,
        status=STATUS_DRAFT,
        created_by=created_by,
    )


def add_item(
    order: Order,
    product: ProductInfo,
    quantity,
    *,
    tier: int | None = 1,
    custom_price=None,
) -> Order:
    """
    Add a product to the order.

    A line for the same product at (practically) the same unit price absorbs
    the new quantity instead of adding a second line.
    """
    _ensure_editable(order)
    qty = _positive_quantity(quantity)
    unit_price, price_tier, is_custom = resolve_unit_price(product, tier, custom_price)

    items = list(order.items)
    for index, line in enumerate(items):
        if line.product_id == product.id and abs(line.unit_price - unit_price) < MONEY_TOLERANCE:
            combined = line.quantity + qty
            items[index] = replace(line, quantity=combined, total=combined * line.unit_price)
            break
    else:
        items.append(OrderItem(
            line_id=_line_id(),
            product_id=product.id,
            product_name=product.name,
            product_code=product.code,
            quantity=qty,
            unit_price=unit_price,
            total=qty * unit_price,
            price_tier=price_tier,
            custom_price=is_custom,
        ))

    new_items = tuple(items)
    _check_stock(new_items, product)
    return _recalculate(order, new_items)


def remove_item(order: Order, line_id: str) -> Order:
    _ensure_editable(order)
    order.item(line_id)
    return _recalculate(order, tuple(i for i in order.items if i.line_id != line_id))


def update_quantity(order: Order, line_id: str, quantity, product: ProductInfo) -> Order:
    _ensure_editable(order)
    line = order.item(line_id)
    if line.product_id != product.id:
        raise ValidationError("Product does not match the order line", details={"line_id": line_id})
    qty = _positive_quantity(quantity)

    new_items = tuple(
        replace(i, quantity=qty, total=qty * i.unit_price) if i.line_id == line_id else i
        for i in order.items
    )
    _check_stock(new_items, product)
    return _recalculate(order, new_items)


def update_price(
    order: Order,
    line_id: str,
    product: ProductInfo,
    tier: int | None = None,
    custom_price=None,
) -> Order:
    """Reprice one line, by tier (1..5) or to a custom unit price."""
    _ensure_editable(order)
    line = order.item(line_id)
    if tier is None and custom_price is None:
        raise ValidationError("Either tier or custom_price is required")
    unit_price, price_tier, is_custom = resolve_unit_price(product, tier, custom_price)

    repriced = replace(
        line,
        unit_price=unit_price,
        total=line.quantity * unit_price,
        price_tier=price_tier,
        custom_price=is_custom,
    )
    return _recalculate(order, tuple(repriced if i.line_id == line_id else i for i in order.items))


def apply_discount(order: Order, amount) -> Order:
    _ensure_editable(order)
    discount = to_money(decimal_arg(amount, "discount"))
    if discount < 0:
        raise ValidationError("Discount cannot be negative")
    if discount > order.subtotal:
        raise ValidationError(
            "Discount cannot exceed the subtotal",
            details={"discount": as_float(discount), "subtotal": as_float(order.subtotal)},
        )
    return _recalculate(replace(order, discount_total=discount), order.items)


def set_client(order: Order, client: ClientInfo | None, *, walk_in_name: str = DEFAULT_WALK_IN_NAME) -> Order:
    _ensure_editable(order)
    if client is None:
        return replace(order, client_id=None, client_name=walk_in_name)
    return replace(order, client_id=client.id, client_name=client.name)


def update_details(order: Order, **fields) -> Order:
    """Flags, observations, driver and route."""
    _ensure_editable(order)
    unknown = set(fields) - DETAIL_FIELDS
    if unknown:
        raise ValidationError(f"Unknown order fields: {', '.join(sorted(unknown))}")
    for flag in ("is_invoice", "is_quote", "is_external"):
        if flag in fields:
            fields[flag] = bool(fields[flag])
    return replace(order, **fields)
