from __future__ import annotations

from ..extensions import db
from ..money import as_float
from ..time_utils import to_utc_z


class Sale(db.Model):
    """
    Persisted order (saved draft, credit-pending sale or paid sale).

    WHY: An order becomes a row on its first save, long before it is paid, so
    other terminals can see it and lease it. stock_applied_at records that
    the first settlement already moved inventory; later payments against a
    pending sale must not move it again.
    """
    __tablename__ = "sales"
    __table_args__ = (
        db.Index("ix_sales_status_created", "status", "created_at"),
        db.Index("ix_sales_client_status", "client_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Null client means walk-in
    client_id = db.Column(db.Integer, db.ForeignKey("clients.id"), nullable=True)
    client_name = db.Column(db.String(255), nullable=False, default="")

    # Lifecycle: saved -> pending -> paid, or cancelled
    status = db.Column(db.String(16), nullable=False, default="saved", index=True)
    tender_method = db.Column(db.String(16), nullable=True)

    subtotal = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    discount_total = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    total = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    amount_paid = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    remaining_balance = db.Column(db.Numeric(14, 2), nullable=False, default=0)

    is_credit = db.Column(db.Boolean, nullable=False, default=False)
    is_invoice = db.Column(db.Boolean, nullable=False, default=False)
    is_quote = db.Column(db.Boolean, nullable=False, default=False)
    is_external = db.Column(db.Boolean, nullable=False, default=False)

    observations = db.Column(db.Text, nullable=True)
    driver = db.Column(db.String(128), nullable=True)
    route = db.Column(db.String(128), nullable=True)

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )
    stock_applied_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Cancel audit trail
    cancelled_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    client = db.relationship("Client", backref=db.backref("sales", lazy=True))
    items = db.relationship(
        "SaleItem",
        back_populates="sale",
        cascade="all, delete-orphan",
        order_by="SaleItem.position",
    )
    payments = db.relationship(
        "Payment",
        back_populates="sale",
        cascade="all, delete-orphan",
        order_by="Payment.id",
    )
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "client_id": self.client_id,
            "client_name": self.client_name,
            "status": self.status,
            "tender_method": self.tender_method,
            "subtotal": as_float(self.subtotal),
            "discount_total": as_float(self.discount_total),
            "total": as_float(self.total),
            "amount_paid": as_float(self.amount_paid),
            "remaining_balance": as_float(self.remaining_balance),
            "is_credit": self.is_credit,
            "is_invoice": self.is_invoice,
            "is_quote": self.is_quote,
            "is_external": self.is_external,
            "observations": self.observations,
            "driver": self.driver,
            "route": self.route,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
            "completed_at": to_utc_z(self.completed_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "item_count": len(self.items),
        }


class SaleItem(db.Model):
    __tablename__ = "sale_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    position = db.Column(db.Integer, nullable=False, default=0)

    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    # Frozen at the time the line was added
    product_name = db.Column(db.String(255), nullable=False)
    product_code = db.Column(db.String(64), nullable=False, default="")

    quantity = db.Column(db.Numeric(14, 3), nullable=False)
    # Null tier means a custom unit price
    price_tier = db.Column(db.Integer, nullable=True)
    unit_price = db.Column(db.Numeric(14, 2), nullable=False)
    total = db.Column(db.Numeric(14, 2), nullable=False)
    custom_price = db.Column(db.Boolean, nullable=False, default=False)

    sale = db.relationship("Sale", back_populates="items")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "product_code": self.product_code,
            "quantity": as_float(self.quantity),
            "price_tier": self.price_tier,
            "unit_price": as_float(self.unit_price),
            "total": as_float(self.total),
            "custom_price": self.custom_price,
        }


class Payment(db.Model):
    """
    A single tender applied to a sale.

    Append-only: a mixed tender records one row per non-zero non-credit part.
    """
    __tablename__ = "payments"
    __table_args__ = (
        db.Index("ix_payments_sale_created", "sale_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False)
    amount = db.Column(db.Numeric(14, 2), nullable=False)
    method = db.Column(db.String(16), nullable=False)  # cash, card, transfer
    reference = db.Column(db.String(64), nullable=True)

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    sale = db.relationship("Sale", back_populates="payments")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "amount": as_float(self.amount),
            "method": self.method,
            "reference": self.reference,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
        }


class OrderLock(db.Model):
    """
    Editing lease on a persisted order.

    WHY: order_id is UNIQUE so two terminals racing to lease the same order
    cannot both insert; the loser gets an IntegrityError and is denied.
    No FK to sales: a lease may outlive a deleted order until it expires.
    """
    __tablename__ = "order_locks"
    __table_args__ = (
        db.UniqueConstraint("order_id", name="uq_order_locks_order_id"),
        db.Index("ix_order_locks_holder", "user_id", "session_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, nullable=False)
    user_id = db.Column(db.Integer, nullable=False)
    user_name = db.Column(db.String(128), nullable=False)
    session_id = db.Column(db.String(64), nullable=False)
    locked_at = db.Column(db.DateTime(timezone=True), nullable=False)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)

    def to_dict(self) -> dict:
        return {
            "order_id": self.order_id,
            "user_id": self.user_id,
            "user_name": self.user_name,
            "session_id": self.session_id,
            "locked_at": to_utc_z(self.locked_at),
            "expires_at": to_utc_z(self.expires_at),
        }
