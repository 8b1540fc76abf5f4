from __future__ import annotations

from ..extensions import db
from ..money import as_float
from ..time_utils import to_utc_z


class Product(db.Model):
    """
    Product master data as the order engine needs it.

    stock is the aggregate figure across warehouses; per-warehouse figures
    live in WarehouseStock. Both are decremented at settlement time.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.Index("ix_products_active_name", "is_active", "name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(64), nullable=False, unique=True)
    name = db.Column(db.String(255), nullable=False)
    unit = db.Column(db.String(16), nullable=True)

    stock = db.Column(db.Numeric(14, 3), nullable=False, default=0)

    # Five price tiers; tiers 2-5 fall back to a markup over tier 1 when unset
    price1 = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    price2 = db.Column(db.Numeric(14, 2), nullable=True)
    price3 = db.Column(db.Numeric(14, 2), nullable=True)
    price4 = db.Column(db.Numeric(14, 2), nullable=True)
    price5 = db.Column(db.Numeric(14, 2), nullable=True)

    # Null means "estimate from price1"
    cost_estimate = db.Column(db.Numeric(14, 2), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Product id={self.id} code={self.code!r} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "unit": self.unit,
            "stock": as_float(self.stock),
            "prices": [as_float(p) for p in (self.price1, self.price2, self.price3, self.price4, self.price5)],
            "cost_estimate": as_float(self.cost_estimate),
            "is_active": self.is_active,
        }


class Warehouse(db.Model):
    __tablename__ = "warehouses"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(32), nullable=False, unique=True)
    name = db.Column(db.String(128), nullable=False)
    is_primary = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "is_primary": self.is_primary,
            "is_active": self.is_active,
        }


class WarehouseStock(db.Model):
    """Stock of one product in one warehouse."""
    __tablename__ = "warehouse_stock"
    __table_args__ = (
        db.UniqueConstraint("warehouse_id", "product_id", name="uq_warehouse_stock_wh_product"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    warehouse_id = db.Column(db.Integer, db.ForeignKey("warehouses.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    stock = db.Column(db.Numeric(14, 3), nullable=False, default=0)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    warehouse = db.relationship("Warehouse")
    product = db.relationship("Product", backref=db.backref("warehouse_stocks", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "warehouse_id": self.warehouse_id,
            "warehouse_name": self.warehouse.name if self.warehouse else None,
            "product_id": self.product_id,
            "stock": as_float(self.stock),
        }


class InventoryMovement(db.Model):
    """
    Append-only audit row for stock leaving a warehouse.

    sale_id is a plain integer: a sale fully covered by a voucher is deleted
    after its stock has moved, and the movement must survive it.
    """
    __tablename__ = "inventory_movements"
    __table_args__ = (
        db.Index("ix_inventory_movements_product_occurred", "product_id", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    product_name = db.Column(db.String(255), nullable=False)
    warehouse_id = db.Column(db.Integer, db.ForeignKey("warehouses.id"), nullable=True, index=True)

    movement_type = db.Column(db.String(16), nullable=False, default="STOCK_OUT")
    quantity = db.Column(db.Numeric(14, 3), nullable=False)
    reference = db.Column(db.String(64), nullable=True)
    sale_id = db.Column(db.Integer, nullable=True, index=True)

    user_id = db.Column(db.Integer, nullable=True)
    user_name = db.Column(db.String(128), nullable=True)
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "warehouse_id": self.warehouse_id,
            "movement_type": self.movement_type,
            "quantity": as_float(self.quantity),
            "reference": self.reference,
            "sale_id": self.sale_id,
            "user_id": self.user_id,
            "user_name": self.user_name,
            "occurred_at": to_utc_z(self.occurred_at),
        }
