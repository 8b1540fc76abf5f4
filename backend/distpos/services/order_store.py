# Overview: Save, load, cancel and delete persisted orders.

"""
Order persistence.

WHY a separate module: the Order Builder is pure, and the settlement engine
needs to write an order as part of its own transaction. write_order() only
flushes; save_order() wraps it in a commit for the plain "save" button.

Status on save: a draft becomes "saved" (and gets its real id). Paid and
cancelled orders are read-only; pending orders are collected through
settlement, not re-saved.
"""

from __future__ import annotations

from flask import current_app

from ..domain import (
    Identity,
    Order,
    OrderItem,
    PaymentInfo,
    STATUS_CANCELLED,
    STATUS_DRAFT,
    STATUS_PAID,
    STATUS_PENDING,
    STATUS_SAVED,
)
from ..errors import LockConflict, NotFoundError, ValidationError
from ..events import ORDER_CANCELLED, ORDER_SAVED, bus
from ..extensions import db
from ..models import Client, OrderLock, Payment, Sale, SaleItem
from ..money import ZERO, to_decimal, to_money, to_quantity
from ..permissions import DELETE_ORDERS
from ..time_utils import utcnow
from . import identity_service, lock_service
from .concurrency import lock_for_update, run_with_retry


def _locked_sale(order_id: int) -> Sale:
    sale = lock_for_update(Sale.query.filter_by(id=order_id)).first()
    if sale is None:
        raise NotFoundError(f"Order {order_id} not found", details={"order_id": order_id})
    return sale


def _ensure_not_held_elsewhere(order_id: int, actor: Identity) -> None:
    status = lock_service.is_order_locked(order_id, actor)
    if status.locked:
        raise LockConflict(order_id, status.held_by)


def write_order(order: Order, actor: Identity, *, sale: Sale | None = None, status: str | None = None) -> Sale:
    """
    Copy an in-memory order onto its Sale row (creating it for a draft).

    Items are replaced wholesale. Flushes but does not commit.
    """
    if sale is None:
        if order.is_persisted:
            sale = _locked_sale(order.id)
        else:
            sale = Sale(created_by_user_id=actor.user_id)
            db.session.add(sale)

    if sale.status in (STATUS_PAID, STATUS_CANCELLED):
        raise ValidationError(
            f"Order {sale.id} is {sale.status} and cannot be changed",
            details={"order_id": sale.id, "status": sale.status},
        )

    sale.client_id = order.client_id
    sale.client_name = order.client_name
    sale.is_invoice = order.is_invoice
    sale.is_quote = order.is_quote
    sale.is_external = order.is_external
    sale.observations = order.observations
    sale.driver = order.driver
    sale.route = order.route
    sale.status = status or (STATUS_SAVED if order.status == STATUS_DRAFT else order.status)

    sale.items.clear()
    subtotal = ZERO
    for position, item in enumerate(order.items):
        line_total = to_money(item.total)
        subtotal += line_total
        sale.items.append(SaleItem(
            position=position,
            product_id=item.product_id,
            product_name=item.product_name,
            product_code=item.product_code or "",
            quantity=to_quantity(item.quantity),
            price_tier=item.price_tier,
            unit_price=to_money(item.unit_price),
            total=line_total,
            custom_price=item.custom_price,
        ))

    discount = min(to_money(order.discount_total), subtotal)
    sale.subtotal = subtotal
    sale.discount_total = discount
    sale.total = subtotal - discount
    sale.remaining_balance = max(ZERO, sale.total - to_decimal(sale.amount_paid or 0))

    db.session.flush()
    return sale


def save_order(order: Order, actor: Identity) -> Order:
    """
    Persist an order from a tab. Returns the order as stored, keeping the
    tab's local id.

    Raises LockConflict when another session holds the order's lease.
    """
    if order.status in (STATUS_PAID, STATUS_CANCELLED, STATUS_PENDING):
        raise ValidationError(
            f"Order in status '{order.status}' cannot be saved",
            details={"status": order.status},
        )
    if order.is_persisted:
        _ensure_not_held_elsewhere(order.id, actor)

    def _op():
        sale = write_order(order, actor)
        db.session.commit()
        return sale.id

    sale_id = run_with_retry(_op)
    current_app.logger.info("Order %s saved by %s", sale_id, actor.user_name)
    bus.emit(ORDER_SAVED, order_id=sale_id, status=STATUS_SAVED)
    return load_order(sale_id, local_id=order.local_id)


def sale_to_order(sale: Sale, *, local_id: str | None = None) -> Order:
    items = tuple(
        OrderItem(
            line_id=f"line-{item.id}",
            product_id=item.product_id,
            product_name=item.product_name,
            product_code=item.product_code or "",
            quantity=to_decimal(item.quantity),
            unit_price=to_decimal(item.unit_price),
            total=to_decimal(item.total),
            price_tier=item.price_tier,
            custom_price=bool(item.custom_price),
        )
        for item in sale.items
    )
    payments = tuple(
        PaymentInfo(
            id=p.id,
            amount=to_decimal(p.amount),
            method=p.method,
            reference=p.reference,
            created_at=p.created_at,
        )
        for p in sale.payments
    )
    return Order(
        local_id=local_id or f"order-{sale.id}",
        id=sale.id,
        client_id=sale.client_id,
        client_name=sale.client_name or "",
        items=items,
        subtotal=to_decimal(sale.subtotal),
        discount_total=to_decimal(sale.discount_total),
        total=to_decimal(sale.total),
        status=sale.status,
        tender_method=sale.tender_method,
        is_credit=bool(sale.is_credit),
        is_invoice=bool(sale.is_invoice),
        is_quote=bool(sale.is_quote),
        is_external=bool(sale.is_external),
        observations=sale.observations,
        driver=sale.driver,
        route=sale.route,
        created_by=sale.created_by_user_id,
        created_at=sale.created_at,
        amount_paid=to_decimal(sale.amount_paid or 0),
        remaining_balance=to_decimal(sale.remaining_balance or 0),
        payments=payments,
    )


def load_order(order_id: int, *, local_id: str | None = None) -> Order:
    sale = db.session.get(Sale, order_id)
    if sale is None:
        raise NotFoundError(f"Order {order_id} not found", details={"order_id": order_id})
    return sale_to_order(sale, local_id=local_id)


def list_orders(status: str | None = None, client_id: int | None = None, limit: int = 100) -> list[Sale]:
    query = Sale.query
    if status:
        query = query.filter_by(status=status)
    if client_id:
        query = query.filter_by(client_id=client_id)
    return query.order_by(Sale.created_at.desc(), Sale.id.desc()).limit(limit).all()


def purge_sale(sale: Sale) -> None:
    """
    Remove a sale with its items, payments and leases. Flushes only.
    """
    OrderLock.query.filter_by(order_id=sale.id).delete(synchronize_session=False)
    db.session.delete(sale)
    db.session.flush()


def cancel_order(order_id: int, actor: Identity) -> Order:
    """
    Administrative cancel (requires DELETE_ORDERS).

    A pending credit sale gives its unpaid remainder back to the client's
    balance. Stock already moved by a first settlement is not restored.
    """
    identity_service.require_capability(actor.user_id, DELETE_ORDERS)
    _ensure_not_held_elsewhere(order_id, actor)

    def _op():
        sale = _locked_sale(order_id)
        if sale.status in (STATUS_PAID, STATUS_CANCELLED):
            raise ValidationError(
                f"Order {order_id} is {sale.status} and cannot be cancelled",
                details={"order_id": order_id, "status": sale.status},
            )

        if sale.status == STATUS_PENDING and sale.is_credit and sale.client_id:
            client = lock_for_update(Client.query.filter_by(id=sale.client_id)).first()
            if client is not None:
                owed = to_decimal(sale.remaining_balance or 0)
                client.balance = max(ZERO, to_decimal(client.balance or 0) - owed)

        sale.status = STATUS_CANCELLED
        sale.cancelled_by_user_id = actor.user_id
        sale.cancelled_at = utcnow()
        OrderLock.query.filter_by(order_id=order_id).delete(synchronize_session=False)
        db.session.commit()

    run_with_retry(_op)
    current_app.logger.info("Order %s cancelled by %s", order_id, actor.user_name)
    bus.emit(ORDER_CANCELLED, order_id=order_id)
    return load_order(order_id)


def delete_order(order_id: int, actor: Identity) -> None:
    """
    Delete a saved order that never received payment (requires DELETE_ORDERS).
    """
    identity_service.require_capability(actor.user_id, DELETE_ORDERS)
    _ensure_not_held_elsewhere(order_id, actor)

    def _op():
        sale = _locked_sale(order_id)
        has_payments = db.session.query(Payment.id).filter_by(sale_id=order_id).first() is not None
        if sale.status != STATUS_SAVED or has_payments:
            raise ValidationError(
                f"Only unpaid saved orders can be deleted; cancel order {order_id} instead",
                details={"order_id": order_id, "status": sale.status},
            )
        purge_sale(sale)
        db.session.commit()

    run_with_retry(_op)
    current_app.logger.info("Order %s deleted by %s", order_id, actor.user_name)
    bus.emit(ORDER_CANCELLED, order_id=order_id, deleted=True)
