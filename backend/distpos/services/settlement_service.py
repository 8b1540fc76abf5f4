# Overview: Settle an order against a tender; moves money, stock and client credit in one transaction.

"""
Settlement Engine.

WHY one transaction: a settlement writes payments, warehouse stock, product
stock, client balance, voucher balance and the sale itself. Done as separate
commits, a failure halfway leaves stock decremented with no payment (or the
reverse). Here every write is flushed into one session and committed once;
any failure rolls everything back and surfaces as SettlementFailed.

Flow:
    prepare (reads + validation only, may raise EngineError subclasses)
      0. tender shape, order state, lease
      1. capability gates, below-cost prices (step-up)
      2. credit limit (step-up)
      3. stock and warehouse distribution (first settlement only)
    apply (writes, flush only)
      4. payments / client balance / voucher
      5. inventory decrement (first settlement only)
      6. status
    commit, then publish settlement.completed

Status machine: draft -> saved -> pending -> paid. Cancelling is an
administrative path in order_store, never a settlement outcome.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from decimal import Decimal

from flask import current_app

from ..domain import (
    Identity,
    Order,
    SettlementAuthorization,
    SettlementResult,
    STATUS_CANCELLED,
    STATUS_DRAFT,
    STATUS_PAID,
    STATUS_PENDING,
    STATUS_SAVED,
    SINGLE_TENDERS,
    TENDER_CASH,
    TENDER_CREDIT,
    TENDER_MIXED,
    TENDER_VOUCHER,
    Tender,
    VALID_TENDERS,
    WarehouseDistribution,
)
from ..errors import (
    CreditLimitExceeded,
    EngineError,
    LockConflict,
    NotFoundError,
    SettlementFailed,
    StepUpRequired,
    StockInsufficient,
    ValidationError,
)
from ..events import SETTLEMENT_COMPLETED, bus
from ..extensions import db
from ..models import Client, InventoryMovement, Payment, Product, Sale, Voucher, WarehouseStock
from ..models.clients import VOUCHER_ENABLED, VOUCHER_USED
from ..money import MONEY_TOLERANCE, ZERO, as_float, to_decimal, to_money, to_quantity
from ..permissions import CREDIT_SALES, SELL_WITHOUT_STOCK
from ..time_utils import utcnow
from . import catalog_service, identity_service, lock_service, order_store
from .concurrency import lock_for_update, run_with_retry
from .warehouse_allocator import load_warehouse_stocks, validate_distribution


# =============================================================================
# REFERENCES (CONSTANTS)
# =============================================================================

REFERENCE_PREFIXES = {
    TENDER_CREDIT: "POS-CREDIT-",
    TENDER_MIXED: "POS-MIX-",
    TENDER_VOUCHER: "POS-VALE-",
}
DEFAULT_REFERENCE_PREFIX = "POS-"

MOVEMENT_STOCK_OUT = "STOCK_OUT"


def _reference(tender: Tender) -> str:
    if tender.reference:
        return tender.reference.strip()[:64]
    prefix = REFERENCE_PREFIXES.get(tender.method, DEFAULT_REFERENCE_PREFIX)
    return f"{prefix}{secrets.token_hex(3).upper()}"


# =============================================================================
# PLAN
# =============================================================================

@dataclass
class _StepUp:
    """Verifies the step-up credential at most once per settlement."""
    authorization: SettlementAuthorization
    _checked: bool = False
    _approved: bool = False

    @property
    def supplied(self) -> bool:
        return self.authorization.step_up is not None

    def approved(self) -> bool:
        if not self._checked:
            self._checked = True
            self._approved = identity_service.verify_step_up(self.authorization.step_up) is not None
        return self._approved

    def demand(self, exc: StepUpRequired) -> None:
        """Raise `exc` unless a valid credential was supplied."""
        if self.approved():
            return
        if self.supplied:
            exc.details["credential_rejected"] = True
        raise exc


@dataclass
class _Plan:
    order: Order
    sale: Sale | None
    client: Client | None
    owed: Decimal
    first_settlement: bool
    collecting: bool
    payments: list[tuple[str, Decimal]] = field(default_factory=list)
    credit_portion: Decimal = ZERO
    change_due: Decimal = ZERO
    voucher: Voucher | None = None
    products: dict[int, Product] = field(default_factory=dict)
    distribution: WarehouseDistribution = field(default_factory=dict)


# =============================================================================
# PREPARE (READS AND VALIDATION ONLY)
# =============================================================================

def _validate_tender_shape(tender: Tender) -> None:
    if tender.method not in VALID_TENDERS:
        raise ValidationError(
            f"Invalid tender method: {tender.method}",
            details={"valid_methods": VALID_TENDERS},
        )
    if tender.amount is not None and tender.amount <= 0:
        raise ValidationError("Tender amount must be greater than zero")
    if tender.method == TENDER_MIXED:
        breakdown = tender.breakdown
        if breakdown is None:
            raise ValidationError("Mixed tender requires a breakdown")
        for name, value in (("cash", breakdown.cash), ("card", breakdown.card),
                            ("transfer", breakdown.transfer), ("credit", breakdown.credit)):
            if value < 0:
                raise ValidationError(f"Mixed tender {name} amount cannot be negative")
        if breakdown.total <= 0:
            raise ValidationError("Mixed tender breakdown is empty")
    if tender.method == TENDER_VOUCHER and tender.voucher_id is None:
        raise ValidationError("Voucher tender requires voucher_id")


def _load_target(order: Order | int, identity: Identity) -> tuple[Order, Sale | None]:
    """
    Resolve what is being settled.

    An unsaved draft settles from memory. A saved order settles from the
    tab's in-memory copy (it may carry unsaved edits). A pending order is
    settled from the store: its items and totals are fixed.
    """
    if isinstance(order, int):
        order_id, current = order, None
    elif order.is_persisted:
        order_id, current = order.id, order
    else:
        if order.status != STATUS_DRAFT:
            raise ValidationError(f"Order in status '{order.status}' cannot be settled")
        return order, None

    sale = lock_for_update(Sale.query.filter_by(id=order_id)).first()
    if sale is None:
        raise NotFoundError(f"Order {order_id} not found", details={"order_id": order_id})
    if sale.status in (STATUS_PAID, STATUS_CANCELLED):
        raise ValidationError(
            f"Order {order_id} is already {sale.status}",
            details={"order_id": order_id, "status": sale.status},
        )

    status = lock_service.is_order_locked(order_id, identity)
    if status.locked:
        raise LockConflict(order_id, status.held_by)

    if current is None or sale.status == STATUS_PENDING:
        current = order_store.sale_to_order(sale, local_id=current.local_id if current else None)
    return current, sale


def _check_below_cost(plan: _Plan, step_up: _StepUp) -> None:
    below = []
    for item in plan.order.items:
        if not item.custom_price:
            continue
        cost = catalog_service.product_info(plan.products[item.product_id]).estimated_cost
        if item.unit_price < cost:
            below.append({
                "product_id": item.product_id,
                "product_name": item.product_name,
                "unit_price": as_float(item.unit_price),
                "estimated_cost": as_float(cost),
            })
    if below:
        step_up.demand(StepUpRequired(
            "price_below_cost",
            "Price below estimated cost; supervisor authorization required",
            details={"items": below},
        ))


def _plan_tender(plan: _Plan, tender: Tender, identity: Identity) -> None:
    owed = plan.owed

    if plan.collecting and tender.method in (TENDER_CREDIT, TENDER_VOUCHER):
        raise ValidationError(
            f"A pending order cannot be settled with {tender.method}",
            details={"order_id": plan.sale.id},
        )

    if tender.method in SINGLE_TENDERS:
        tendered = tender.amount if tender.amount is not None else owed
        if tender.method == TENDER_CASH:
            applied = min(tendered, owed)
            plan.change_due = to_money(tendered - applied)
        else:
            if tendered - owed > MONEY_TOLERANCE:
                raise ValidationError(
                    f"{tender.method} amount {tendered} exceeds the amount owed {owed}",
                    details={"amount": as_float(tendered), "owed": as_float(owed)},
                )
            applied = min(tendered, owed)
        # A short payment leaves the rest as remaining_balance; the client balance is untouched
        plan.payments.append((tender.method, applied))

    elif tender.method == TENDER_MIXED:
        breakdown = tender.breakdown
        if tender.amount is not None and abs(tender.amount - owed) > MONEY_TOLERANCE:
            raise ValidationError("Mixed tender amount does not match the amount owed")
        if abs(breakdown.total - owed) > MONEY_TOLERANCE:
            raise ValidationError(
                f"Mixed tender parts add up to {breakdown.total}, amount owed is {owed}",
                details={"breakdown_total": as_float(breakdown.total), "owed": as_float(owed)},
            )
        if plan.collecting and breakdown.credit > 0:
            raise ValidationError("A pending order cannot be settled with more credit")
        plan.payments.extend((method, amount) for method, amount in breakdown.components() if amount > 0)
        plan.credit_portion = breakdown.credit

    elif tender.method == TENDER_CREDIT:
        if tender.amount is not None and abs(tender.amount - owed) > MONEY_TOLERANCE:
            raise ValidationError("Credit tender must cover the full amount owed")
        plan.credit_portion = owed

    elif tender.method == TENDER_VOUCHER:
        voucher = lock_for_update(Voucher.query.filter_by(id=tender.voucher_id)).first()
        if voucher is None:
            raise ValidationError(f"Voucher {tender.voucher_id} not found")
        if voucher.status != VOUCHER_ENABLED:
            raise ValidationError(
                f"Voucher {voucher.folio} is {voucher.status}",
                details={"voucher_id": voucher.id, "status": voucher.status},
            )
        if to_decimal(voucher.remaining or 0) <= 0:
            raise ValidationError(f"Voucher {voucher.folio} has no remaining balance")
        if voucher.client_id and plan.order.client_id and voucher.client_id != plan.order.client_id:
            raise ValidationError(f"Voucher {voucher.folio} belongs to another client")
        if plan.sale is not None and (plan.sale.payments or to_decimal(plan.sale.amount_paid or 0) > 0):
            raise ValidationError("Vouchers cannot be applied to an order with prior payments")
        plan.voucher = voucher

    if plan.credit_portion > 0:
        identity_service.require_capability(
            identity.user_id, CREDIT_SALES, "Credit sales require the CREDIT_SALES capability"
        )
        if plan.client is None:
            raise ValidationError("Credit sales require a registered client, not a walk-in")


def _check_credit_limit(plan: _Plan, step_up: _StepUp) -> None:
    if plan.credit_portion <= 0:
        return
    client = plan.client
    balance = to_decimal(client.balance or 0)
    limit = to_decimal(client.credit_limit or 0)
    if balance + plan.credit_portion > limit:
        step_up.demand(CreditLimitExceeded(client.name, balance, limit, plan.credit_portion))


def _check_stock(plan: _Plan, identity: Identity, authorization: SettlementAuthorization,
                 distribution: WarehouseDistribution) -> None:
    quantities = plan.order.quantities_by_product()
    names = {item.product_id: item.product_name for item in plan.order.items}

    shortfalls = []
    for product_id, quantity in quantities.items():
        product = plan.products[product_id]
        available = to_decimal(product.stock or 0)
        if quantity > available:
            shortfalls.append({
                "product_id": product_id,
                "product_name": names[product_id],
                "requested": as_float(quantity),
                "available": as_float(available),
            })

    if shortfalls and not authorization.stock_override:
        raise StockInsufficient(shortfalls)
    if shortfalls:
        identity_service.require_capability(
            identity.user_id, SELL_WITHOUT_STOCK, "Selling without stock requires SELL_WITHOUT_STOCK"
        )

    for product_id, shares in distribution.items():
        if product_id not in quantities:
            raise ValidationError(
                f"Distribution names product {product_id}, which is not on the order",
                details={"product_id": product_id},
            )
        kept = [s for s in shares if s.quantity > 0]
        validate_distribution(
            names[product_id],
            quantities[product_id],
            kept,
            load_warehouse_stocks(product_id),
            enforce_stock=not authorization.stock_override,
        )
        plan.distribution[product_id] = kept


def _prepare(
    order: Order | int,
    tender: Tender,
    identity: Identity,
    distribution: WarehouseDistribution,
    authorization: SettlementAuthorization,
) -> _Plan:
    current, sale = _load_target(order, identity)

    if not current.items:
        raise ValidationError("Cannot settle an order with no items")

    collecting = sale is not None and sale.status == STATUS_PENDING
    owed = to_money(sale.remaining_balance if collecting else current.total)
    if owed <= 0:
        raise ValidationError("Nothing is owed on this order", details={"owed": as_float(owed)})

    client = None
    if current.client_id:
        client = lock_for_update(Client.query.filter_by(id=current.client_id)).first()
        if client is None:
            raise NotFoundError(f"Client {current.client_id} not found")

    plan = _Plan(
        order=current,
        sale=sale,
        client=client,
        owed=owed,
        first_settlement=sale is None or sale.stock_applied_at is None,
        collecting=collecting,
    )
    step_up = _StepUp(authorization)

    if plan.first_settlement:
        for product_id in current.quantities_by_product():
            product = lock_for_update(Product.query.filter_by(id=product_id)).first()
            if product is None:
                raise NotFoundError(f"Product {product_id} not found", details={"product_id": product_id})
            plan.products[product_id] = product

    _plan_tender(plan, tender, identity)
    if plan.first_settlement:
        _check_below_cost(plan, step_up)
    _check_credit_limit(plan, step_up)

    if plan.first_settlement:
        _check_stock(plan, identity, authorization, distribution)

    return plan


# =============================================================================
# APPLY (WRITES, FLUSH ONLY)
# =============================================================================

def _apply_inventory(plan: _Plan, sale_id: int | None, identity: Identity, reference: str) -> None:
    now = utcnow()
    names = {item.product_id: item.product_name for item in plan.order.items}

    for product_id, quantity in plan.order.quantities_by_product().items():
        product = plan.products[product_id]
        shares = plan.distribution.get(product_id, [])

        for share in shares:
            row = lock_for_update(
                WarehouseStock.query.filter_by(warehouse_id=share.warehouse_id, product_id=product_id)
            ).first()
            if row is None:
                row = WarehouseStock(warehouse_id=share.warehouse_id, product_id=product_id, stock=ZERO)
                db.session.add(row)
            row.stock = max(ZERO, to_decimal(row.stock or 0) - share.quantity)
            db.session.add(InventoryMovement(
                product_id=product_id,
                product_name=names[product_id],
                warehouse_id=share.warehouse_id,
                movement_type=MOVEMENT_STOCK_OUT,
                quantity=share.quantity,
                reference=reference,
                sale_id=sale_id,
                user_id=identity.user_id,
                user_name=identity.user_name,
                occurred_at=now,
            ))

        if not shares:
            db.session.add(InventoryMovement(
                product_id=product_id,
                product_name=names[product_id],
                warehouse_id=None,
                movement_type=MOVEMENT_STOCK_OUT,
                quantity=to_quantity(quantity),
                reference=reference,
                sale_id=sale_id,
                user_id=identity.user_id,
                user_name=identity.user_name,
                occurred_at=now,
            ))

        product.stock = max(ZERO, to_decimal(product.stock or 0) - quantity)


def _record_payment(sale: Sale, method: str, amount: Decimal, reference: str, identity: Identity) -> Payment:
    payment = Payment(
        amount=to_money(amount),
        method=method,
        reference=reference,
        created_by_user_id=identity.user_id,
    )
    sale.payments.append(payment)
    return payment


def _write_sale(plan: _Plan, identity: Identity) -> Sale:
    """The Sale row to settle against; unsaved drafts and edited saved orders are written now."""
    if plan.sale is not None and plan.collecting:
        return plan.sale
    sale = order_store.write_order(plan.order, identity, sale=plan.sale, status=STATUS_SAVED)
    if sale.created_by_user_id is None:
        sale.created_by_user_id = identity.user_id
    return sale


def _finish_status(sale: Sale) -> None:
    remaining = max(ZERO, to_decimal(sale.total) - to_decimal(sale.amount_paid or 0))
    if remaining <= MONEY_TOLERANCE:
        sale.remaining_balance = ZERO
        sale.status = STATUS_PAID
        sale.completed_at = utcnow()
    else:
        sale.remaining_balance = to_money(remaining)
        sale.status = STATUS_PENDING


def _apply_voucher(plan: _Plan, identity: Identity, reference: str) -> SettlementResult:
    """
    Vouchers cover the order first; any remainder is paid in cash.

    When the voucher covers everything no revenue record is kept: the sale
    (if it was ever saved) is deleted, while stock still moves.
    """
    voucher = plan.voucher
    owed = plan.owed
    vale = min(to_decimal(voucher.remaining), owed)
    cash = to_money(max(ZERO, owed - vale))

    voucher.remaining = to_money(to_decimal(voucher.remaining) - vale)
    if voucher.remaining <= 0:
        voucher.remaining = ZERO
        voucher.status = VOUCHER_USED

    if cash <= 0:
        sale_id = plan.sale.id if plan.sale is not None else None
        _apply_inventory(plan, sale_id, identity, reference)
        if plan.sale is not None:
            order_store.purge_sale(plan.sale)
        db.session.flush()
        return SettlementResult(
            order_id=None,
            amount_paid=ZERO,
            remaining_balance=ZERO,
            status=STATUS_PAID,
            record_deleted=True,
        )

    sale = _write_sale(plan, identity)
    _apply_inventory(plan, sale.id, identity, reference)
    sale.stock_applied_at = utcnow()

    # The kept record shows only the cash part of the sale
    ratio = cash / owed
    subtotal = to_money(to_decimal(sale.subtotal) * ratio)
    for item in sale.items:
        item.quantity = to_quantity(to_decimal(item.quantity) * ratio)
        item.total = to_money(to_decimal(item.total) * ratio)
    # Line totals must still add up to the subtotal; the last line absorbs rounding
    drift = subtotal - sum((to_decimal(item.total) for item in sale.items), ZERO)
    if drift and sale.items:
        sale.items[-1].total = to_money(to_decimal(sale.items[-1].total) + drift)
    sale.subtotal = subtotal
    sale.total = cash
    sale.discount_total = max(ZERO, sale.subtotal - cash)
    sale.tender_method = TENDER_VOUCHER

    payment = _record_payment(sale, TENDER_CASH, cash, reference, identity)
    sale.amount_paid = cash
    _finish_status(sale)
    db.session.flush()

    return SettlementResult(
        order_id=sale.id,
        amount_paid=to_money(sale.amount_paid),
        remaining_balance=to_money(sale.remaining_balance),
        status=sale.status,
        payment_ids=(payment.id,),
    )


def _apply(plan: _Plan, tender: Tender, identity: Identity) -> SettlementResult:
    reference = _reference(tender)

    if plan.voucher is not None:
        return _apply_voucher(plan, identity, reference)

    sale = _write_sale(plan, identity)

    payments = [
        _record_payment(sale, method, amount, reference, identity)
        for method, amount in plan.payments
    ]
    paid_now = sum((p.amount for p in payments), ZERO)
    sale.amount_paid = to_money(to_decimal(sale.amount_paid or 0) + paid_now)

    client = plan.client
    if plan.credit_portion > 0:
        client.balance = to_money(to_decimal(client.balance or 0) + plan.credit_portion)
        sale.is_credit = True
    elif plan.collecting and client is not None and sale.is_credit:
        client.balance = to_money(max(ZERO, to_decimal(client.balance or 0) - paid_now))

    if plan.first_settlement:
        sale.tender_method = tender.method
        _apply_inventory(plan, sale.id, identity, reference)
        sale.stock_applied_at = utcnow()

    _finish_status(sale)
    db.session.flush()

    return SettlementResult(
        order_id=sale.id,
        amount_paid=to_money(sale.amount_paid),
        remaining_balance=to_money(sale.remaining_balance),
        status=sale.status,
        change_due=plan.change_due,
        payment_ids=tuple(p.id for p in payments),
    )


# =============================================================================
# ENTRY POINT
# =============================================================================

def confirm_payment(
    order: Order | int,
    tender: Tender,
    identity: Identity,
    *,
    distribution: WarehouseDistribution | None = None,
    authorization: SettlementAuthorization | None = None,
) -> SettlementResult:
    """
    Settle `order` (an in-memory Order or a persisted order id) with `tender`.

    Raises (before any write):
    - ValidationError: malformed tender or order state
    - PermissionDenied: missing CREDIT_SALES / SELL_WITHOUT_STOCK
    - StepUpRequired / CreditLimitExceeded: resubmit with a supervisor credential
    - StockInsufficient: resubmit with stock_override (needs SELL_WITHOUT_STOCK)
    - LockConflict: another session holds the order

    Raises SettlementFailed when the write phase fails; nothing is committed.
    """
    authorization = authorization or SettlementAuthorization()
    distribution = distribution or {}
    _validate_tender_shape(tender)
    order_id = order if isinstance(order, int) else order.id

    def _op():
        plan = _prepare(order, tender, identity, distribution, authorization)
        result = _apply(plan, tender, identity)
        db.session.commit()
        return result

    try:
        result = run_with_retry(_op)
    except EngineError:
        raise
    except Exception as exc:
        current_app.logger.exception("Settlement failed for order %s", order_id)
        raise SettlementFailed(
            "Payment processing failed; no changes were saved",
            details={"order_id": order_id},
        ) from exc

    current_app.logger.info(
        "Order %s settled by %s: %s, paid %s, remaining %s",
        result.order_id if result.order_id is not None else order_id,
        identity.user_name,
        result.status,
        result.amount_paid,
        result.remaining_balance,
    )
    bus.emit(
        SETTLEMENT_COMPLETED,
        order_id=result.order_id if result.order_id is not None else order_id,
        status=result.status,
        amount_paid=result.amount_paid,
        record_deleted=result.record_deleted,
    )
    return result
