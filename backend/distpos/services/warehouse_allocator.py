# Overview: Split each order line's quantity across the warehouses it is drawn from.

"""
Warehouse Allocator.

A distribution maps product id -> [WarehouseShare(warehouse_id, quantity)].
For every product the shares must add up exactly to the ordered quantity,
and no share may exceed what that warehouse reports in stock.

Auto-distribution rule:
1. the primary warehouse alone, if it covers the quantity
2. otherwise any single warehouse that covers it (largest stock first)
3. otherwise fill from the primary (then largest stock) and spill into the
   next, using at most max_sources warehouses; the plan may be short when
   total stock is short
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Iterable

from ..domain import Order, WarehouseDistribution, WarehouseShare
from ..errors import ValidationError
from ..money import ZERO, as_float, to_quantity
from . import catalog_service


@dataclass(frozen=True)
class WarehouseStockLevel:
    warehouse_id: int
    warehouse_name: str
    stock: Decimal
    is_primary: bool = False

    def to_dict(self) -> dict:
        return {
            "warehouse_id": self.warehouse_id,
            "warehouse_name": self.warehouse_name,
            "stock": as_float(self.stock),
            "is_primary": self.is_primary,
        }


def load_warehouse_stocks(product_id: int) -> list[WarehouseStockLevel]:
    """Current stock of a product in every active warehouse."""
    primary = catalog_service.get_primary_warehouse()
    primary_id = primary.id if primary else None
    return [
        WarehouseStockLevel(
            warehouse_id=wh.id,
            warehouse_name=wh.name,
            stock=stock,
            is_primary=wh.id == primary_id,
        )
        for wh, stock in catalog_service.get_warehouse_stocks(product_id)
    ]


def _share(level: WarehouseStockLevel, quantity: Decimal) -> WarehouseShare:
    return WarehouseShare(warehouse_id=level.warehouse_id, quantity=quantity, warehouse_name=level.warehouse_name)


def auto_distribute(
    quantity,
    stocks: Iterable[WarehouseStockLevel],
    primary_warehouse_id: int | None = None,
    max_sources: int = 2,
) -> list[WarehouseShare]:
    qty = to_quantity(quantity)
    if qty <= 0:
        return []

    available = [s for s in stocks if s.stock > 0]
    if primary_warehouse_id is None:
        primary_warehouse_id = next((s.warehouse_id for s in available if s.is_primary), None)
    primary = next((s for s in available if s.warehouse_id == primary_warehouse_id), None)

    if primary is not None and primary.stock >= qty:
        return [_share(primary, qty)]

    by_stock = sorted(available, key=lambda s: (-s.stock, s.warehouse_id))
    for level in by_stock:
        if level.stock >= qty:
            return [_share(level, qty)]

    fill_order = ([primary] if primary is not None else []) + [s for s in by_stock if s is not primary]
    shares: list[WarehouseShare] = []
    remaining = qty
    for level in fill_order[:max_sources]:
        take = min(level.stock, remaining)
        shares.append(_share(level, take))
        remaining -= take
        if remaining <= 0:
            break
    return shares


def validate_distribution(
    product_name: str,
    quantity,
    shares: list[WarehouseShare],
    stocks: Iterable[WarehouseStockLevel],
    *,
    enforce_stock: bool = True,
) -> None:
    """
    Raise ValidationError unless `shares` is a valid split of `quantity`.

    enforce_stock=False skips the per-warehouse stock ceiling (selling
    without stock, authorized); the exact-sum rule always applies.
    """
    qty = to_quantity(quantity)
    by_id = {s.warehouse_id: s for s in stocks}

    seen: set[int] = set()
    for share in shares:
        if share.quantity < 0:
            raise ValidationError(
                f"Negative quantity for {product_name} in warehouse {share.warehouse_id}",
                details={"product_name": product_name, "warehouse_id": share.warehouse_id},
            )
        if share.warehouse_id in seen:
            raise ValidationError(
                f"Warehouse {share.warehouse_id} listed twice for {product_name}",
                details={"product_name": product_name, "warehouse_id": share.warehouse_id},
            )
        seen.add(share.warehouse_id)

        level = by_id.get(share.warehouse_id)
        if level is None:
            raise ValidationError(
                f"Unknown warehouse {share.warehouse_id}",
                details={"warehouse_id": share.warehouse_id},
            )
        if enforce_stock and share.quantity > level.stock:
            raise ValidationError(
                f"{level.warehouse_name} has only {level.stock} of {product_name}",
                details={
                    "product_name": product_name,
                    "warehouse_id": level.warehouse_id,
                    "requested": as_float(share.quantity),
                    "available": as_float(level.stock),
                },
            )

    allocated = sum((to_quantity(s.quantity) for s in shares), ZERO)
    if allocated != qty:
        raise ValidationError(
            f"Distribution for {product_name} covers {allocated} of {qty}",
            details={
                "product_name": product_name,
                "allocated": as_float(allocated),
                "quantity": as_float(qty),
            },
        )


class WarehouseAllocator:
    """
    Collects a validated distribution for every product on an order.
    """

    def __init__(
        self,
        order: Order,
        *,
        primary_warehouse_id: int | None = None,
        enforce_stock: bool = True,
        stock_loader: Callable[[int], list[WarehouseStockLevel]] = load_warehouse_stocks,
    ):
        self.quantities = order.quantities_by_product()
        self.names = {item.product_id: item.product_name for item in order.items}
        self.primary_warehouse_id = primary_warehouse_id
        self.enforce_stock = enforce_stock
        self._load = stock_loader
        self._distribution: WarehouseDistribution = {}

    def set_distribution(self, product_id: int, shares: list[WarehouseShare]) -> None:
        if product_id not in self.quantities:
            raise ValidationError(
                f"Product {product_id} is not on this order",
                details={"product_id": product_id},
            )
        kept = [s for s in shares if s.quantity > 0]
        validate_distribution(
            self.names[product_id],
            self.quantities[product_id],
            kept,
            self._load(product_id),
            enforce_stock=self.enforce_stock,
        )
        self._distribution[product_id] = kept

    def auto_distribute_all(self, max_sources: int = 2) -> list[int]:
        """
        Auto-distribute every product not yet distributed.

        Returns the product ids that could not be fully covered.
        """
        short: list[int] = []
        for product_id, quantity in self.quantities.items():
            if product_id in self._distribution:
                continue
            shares = auto_distribute(quantity, self._load(product_id), self.primary_warehouse_id, max_sources)
            if sum((s.quantity for s in shares), ZERO) == to_quantity(quantity):
                self._distribution[product_id] = shares
            else:
                short.append(product_id)
        return short

    def missing(self) -> list[int]:
        return [pid for pid in self.quantities if pid not in self._distribution]

    def is_complete(self) -> bool:
        return not self.missing()

    def distribution(self) -> WarehouseDistribution:
        return {pid: list(shares) for pid, shares in self._distribution.items()}
