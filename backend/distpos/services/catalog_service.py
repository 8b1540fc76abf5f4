# Overview: Read-only catalog and client lookups used to build and settle orders.

from __future__ import annotations

from decimal import Decimal

from flask import current_app

from ..domain import ClientInfo, ProductInfo
from ..errors import NotFoundError
from ..extensions import db
from ..models import Client, Product, Warehouse, WarehouseStock
from ..money import ZERO, to_decimal, to_money


# Markups applied to price1 when a product has no explicit tier 2..5 price
DEFAULT_TIER_MARKUPS = (Decimal("1.1"), Decimal("1.2"), Decimal("1.3"), Decimal("1.4"))


def _tier_prices(product: Product) -> tuple[Decimal, ...]:
    base = to_money(product.price1 or 0)
    prices = [base]
    for explicit, markup in zip(
        (product.price2, product.price3, product.price4, product.price5),
        DEFAULT_TIER_MARKUPS,
    ):
        prices.append(to_money(explicit) if explicit is not None else to_money(base * markup))
    return tuple(prices)


def product_info(product: Product) -> ProductInfo:
    return ProductInfo(
        id=product.id,
        code=product.code,
        name=product.name,
        stock=to_decimal(product.stock or 0),
        prices=_tier_prices(product),
        cost_estimate=to_money(product.cost_estimate) if product.cost_estimate is not None else None,
    )


def get_product_info(product_id: int) -> ProductInfo:
    product = db.session.get(Product, product_id)
    if product is None or not product.is_active:
        raise NotFoundError(f"Product {product_id} not found", details={"product_id": product_id})
    return product_info(product)


def get_client_info(client_id: int) -> ClientInfo:
    client = db.session.get(Client, client_id)
    if client is None or not client.is_active:
        raise NotFoundError(f"Client {client_id} not found", details={"client_id": client_id})
    return ClientInfo(
        id=client.id,
        name=client.name,
        credit_limit=to_money(client.credit_limit or 0),
        balance=to_money(client.balance or 0),
        default_price_tier=client.default_price_tier or 1,
    )


def get_primary_warehouse() -> Warehouse | None:
    """
    The warehouse stock is drawn from first.

    An explicit is_primary flag wins; otherwise the configured code
    (PRIMARY_WAREHOUSE_CODE, "BODEGA" by default).
    """
    flagged = Warehouse.query.filter_by(is_primary=True, is_active=True).first()
    if flagged:
        return flagged
    code = current_app.config.get("PRIMARY_WAREHOUSE_CODE", "BODEGA")
    return Warehouse.query.filter_by(code=code, is_active=True).first()


def get_warehouse_stocks(product_id: int) -> list[tuple[Warehouse, Decimal]]:
    """
    Stock of one product in every active warehouse, in warehouse id order.

    Warehouses with no stock row report zero.
    """
    rows = {
        row.warehouse_id: to_decimal(row.stock or 0)
        for row in WarehouseStock.query.filter_by(product_id=product_id).all()
    }
    warehouses = Warehouse.query.filter_by(is_active=True).order_by(Warehouse.id.asc()).all()
    return [(wh, rows.get(wh.id, ZERO)) for wh in warehouses]
