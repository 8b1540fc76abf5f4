# Overview: In-memory value types shared by the order builder, tabs and settlement.

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any

from .errors import ValidationError
from .money import ZERO, as_float, to_decimal, to_money, to_quantity
from .time_utils import to_utc_z


# =============================================================================
# ORDER STATUS (CONSTANTS)
# =============================================================================

STATUS_DRAFT = "draft"
STATUS_SAVED = "saved"
STATUS_PENDING = "pending"
STATUS_PAID = "paid"
STATUS_CANCELLED = "cancelled"

ORDER_STATUSES = [STATUS_DRAFT, STATUS_SAVED, STATUS_PENDING, STATUS_PAID, STATUS_CANCELLED]


# =============================================================================
# TENDER METHODS (CONSTANTS)
# =============================================================================

TENDER_CASH = "cash"
TENDER_CARD = "card"
TENDER_TRANSFER = "transfer"
TENDER_CREDIT = "credit"
TENDER_VOUCHER = "voucher"
TENDER_MIXED = "mixed"

SINGLE_TENDERS = [TENDER_CASH, TENDER_CARD, TENDER_TRANSFER]
VALID_TENDERS = SINGLE_TENDERS + [TENDER_CREDIT, TENDER_VOUCHER, TENDER_MIXED]


@dataclass(frozen=True)
class Identity:
    """
    Who is acting, and from which session.

    A lock holder is the (user_id, session_id) pair: the same user in two
    sessions is two different holders.
    """
    user_id: int
    user_name: str
    session_id: str

    def same_holder(self, user_id: int, session_id: str) -> bool:
        return self.user_id == user_id and self.session_id == session_id


@dataclass(frozen=True)
class ProductInfo:
    id: int
    code: str
    name: str
    stock: Decimal
    prices: tuple[Decimal, ...]
    cost_estimate: Decimal | None = None

    def price_for_tier(self, tier: int) -> Decimal:
        if tier not in (1, 2, 3, 4, 5):
            raise ValidationError(f"Invalid price tier: {tier}. Must be 1-5")
        return self.prices[tier - 1]

    @property
    def estimated_cost(self) -> Decimal:
        if self.cost_estimate is not None:
            return self.cost_estimate
        return to_money(self.prices[0] * Decimal("0.7"))


@dataclass(frozen=True)
class ClientInfo:
    id: int
    name: str
    credit_limit: Decimal
    balance: Decimal
    default_price_tier: int = 1


@dataclass(frozen=True)
class OrderItem:
    line_id: str
    product_id: int
    product_name: str
    product_code: str
    quantity: Decimal
    unit_price: Decimal
    total: Decimal
    price_tier: int | None = 1
    custom_price: bool = False

    def to_dict(self) -> dict:
        return {
            "line_id": self.line_id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "product_code": self.product_code,
            "quantity": as_float(self.quantity),
            "unit_price": as_float(self.unit_price),
            "total": as_float(self.total),
            "price_tier": self.price_tier,
            "custom_price": self.custom_price,
        }


@dataclass(frozen=True)
class PaymentInfo:
    id: int
    amount: Decimal
    method: str
    reference: str | None
    created_at: datetime | None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "amount": as_float(self.amount),
            "method": self.method,
            "reference": self.reference,
            "created_at": to_utc_z(self.created_at),
        }


@dataclass(frozen=True)
class Order:
    """
    An order as the terminal sees it.

    id is None until the first save; local_id is a placeholder ("temp-...")
    that stays stable for the lifetime of the tab.
    """
    local_id: str
    id: int | None = None
    client_id: int | None = None
    client_name: str = ""
    items: tuple[OrderItem, ...] = ()
    subtotal: Decimal = ZERO
    discount_total: Decimal = ZERO
    total: Decimal = ZERO
    status: str = STATUS_DRAFT
    tender_method: str | None = None
    is_credit: bool = False
    is_invoice: bool = False
    is_quote: bool = False
    is_external: bool = False
    observations: str | None = None
    driver: str | None = None
    route: str | None = None
    created_by: int | None = None
    created_at: datetime | None = None
    amount_paid: Decimal = ZERO
    remaining_balance: Decimal = ZERO
    payments: tuple[PaymentInfo, ...] = ()

    @property
    def is_persisted(self) -> bool:
        return self.id is not None

    def item(self, line_id: str) -> OrderItem:
        for item in self.items:
            if item.line_id == line_id:
                return item
        raise ValidationError(f"Line {line_id} not found on order", details={"line_id": line_id})

    def quantities_by_product(self) -> dict[int, Decimal]:
        totals: dict[int, Decimal] = {}
        for item in self.items:
            totals[item.product_id] = totals.get(item.product_id, ZERO) + item.quantity
        return totals

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "local_id": self.local_id,
            "client_id": self.client_id,
            "client_name": self.client_name,
            "items": [item.to_dict() for item in self.items],
            "subtotal": as_float(self.subtotal),
            "discount_total": as_float(self.discount_total),
            "total": as_float(self.total),
            "status": self.status,
            "tender_method": self.tender_method,
            "is_credit": self.is_credit,
            "is_invoice": self.is_invoice,
            "is_quote": self.is_quote,
            "is_external": self.is_external,
            "observations": self.observations,
            "driver": self.driver,
            "route": self.route,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
            "amount_paid": as_float(self.amount_paid),
            "remaining_balance": as_float(self.remaining_balance),
            "payments": [p.to_dict() for p in self.payments],
        }


# =============================================================================
# SETTLEMENT INPUTS / OUTPUTS
# =============================================================================

def _optional_money(data: dict, key: str) -> Decimal | None:
    value = data.get(key)
    if value is None or value == "":
        return None
    try:
        return to_money(value)
    except ValueError as exc:
        raise ValidationError(f"{key} must be a number") from exc


@dataclass(frozen=True)
class TenderBreakdown:
    cash: Decimal = ZERO
    card: Decimal = ZERO
    transfer: Decimal = ZERO
    credit: Decimal = ZERO

    @property
    def non_credit(self) -> Decimal:
        return self.cash + self.card + self.transfer

    @property
    def total(self) -> Decimal:
        return self.non_credit + self.credit

    def components(self) -> list[tuple[str, Decimal]]:
        """Non-credit parts in recording order."""
        return [
            (TENDER_CASH, self.cash),
            (TENDER_CARD, self.card),
            (TENDER_TRANSFER, self.transfer),
        ]

    @classmethod
    def from_dict(cls, data: dict) -> "TenderBreakdown":
        return cls(**{
            key: _optional_money(data, key) or ZERO
            for key in ("cash", "card", "transfer", "credit")
        })


@dataclass(frozen=True)
class Tender:
    method: str
    amount: Decimal | None = None
    reference: str | None = None
    breakdown: TenderBreakdown | None = None
    voucher_id: int | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "Tender":
        method = (data.get("method") or "").strip().lower()
        breakdown = data.get("breakdown")
        voucher_id = data.get("voucher_id")
        return cls(
            method=method,
            amount=_optional_money(data, "amount"),
            reference=data.get("reference"),
            breakdown=TenderBreakdown.from_dict(breakdown) if isinstance(breakdown, dict) else None,
            voucher_id=int(voucher_id) if voucher_id is not None else None,
        )


@dataclass(frozen=True)
class StepUpCredential:
    username: str
    password: str


@dataclass(frozen=True)
class SettlementAuthorization:
    stock_override: bool = False
    step_up: StepUpCredential | None = None

    @classmethod
    def from_dict(cls, data: dict | None) -> "SettlementAuthorization":
        data = data or {}
        step_up = data.get("step_up")
        credential = None
        if isinstance(step_up, dict) and step_up.get("username"):
            credential = StepUpCredential(step_up["username"], step_up.get("password") or "")
        return cls(stock_override=bool(data.get("stock_override")), step_up=credential)


@dataclass(frozen=True)
class WarehouseShare:
    warehouse_id: int
    quantity: Decimal
    warehouse_name: str | None = None

    def to_dict(self) -> dict:
        return {
            "warehouse_id": self.warehouse_id,
            "warehouse_name": self.warehouse_name,
            "quantity": as_float(self.quantity),
        }


# product_id -> shares drawn from each warehouse
WarehouseDistribution = dict[int, list[WarehouseShare]]


def parse_distribution(data: Any) -> WarehouseDistribution:
    """
    Parse {"<product_id>": [{"warehouse_id": 1, "quantity": 2.5}, ...]}.
    """
    if not data:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("distribution must be an object keyed by product id")
    distribution: WarehouseDistribution = {}
    for product_key, shares in data.items():
        try:
            product_id = int(product_key)
            distribution[product_id] = [
                WarehouseShare(
                    warehouse_id=int(share["warehouse_id"]),
                    quantity=to_quantity(share["quantity"]),
                    warehouse_name=share.get("warehouse_name"),
                )
                for share in shares
            ]
        except (KeyError, TypeError, ValueError) as exc:
            raise ValidationError(f"Malformed distribution for product {product_key}") from exc
    return distribution


@dataclass(frozen=True)
class SettlementResult:
    order_id: int | None
    amount_paid: Decimal
    remaining_balance: Decimal
    status: str
    change_due: Decimal = ZERO
    payment_ids: tuple[int, ...] = field(default_factory=tuple)
    record_deleted: bool = False

    def to_dict(self) -> dict:
        return {
            "order_id": self.order_id,
            "amount_paid": as_float(self.amount_paid),
            "remaining_balance": as_float(self.remaining_balance),
            "status": self.status,
            "change_due": as_float(self.change_due),
            "payment_ids": list(self.payment_ids),
            "record_deleted": self.record_deleted,
        }


@dataclass(frozen=True)
class LockResult:
    granted: bool
    held_by: str | None = None
    expires_at: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "granted": self.granted,
            "held_by": self.held_by,
            "expires_at": to_utc_z(self.expires_at),
        }


@dataclass(frozen=True)
class LockStatus:
    locked: bool
    held_by: str | None = None

    def to_dict(self) -> dict:
        result: dict[str, Any] = {"locked": self.locked}
        if self.locked:
            result["held_by"] = self.held_by
        return result


def decimal_arg(value: Any, name: str) -> Decimal:
    """Parse a user-supplied number or raise ValidationError naming the field."""
    try:
        return to_decimal(value)
    except ValueError as exc:
        raise ValidationError(f"{name} must be a number") from exc
