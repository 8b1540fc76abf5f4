"""
Settlement engine tests.

Orders are built with the pure builder and settled straight from memory
(unsaved drafts), from a saved order, or by id for pending collections.
"""

from dataclasses import replace
from decimal import Decimal

import pytest

from distpos.domain import (
    SettlementAuthorization,
    StepUpCredential,
    STATUS_PAID,
    STATUS_PENDING,
    Tender,
    TenderBreakdown,
    WarehouseShare,
)
from distpos.errors import (
    CreditLimitExceeded,
    LockConflict,
    PermissionDenied,
    SettlementFailed,
    StepUpRequired,
    StockInsufficient,
    ValidationError,
)
from distpos.events import SETTLEMENT_COMPLETED, bus
from distpos.extensions import db
from distpos.models import (
    Client,
    InventoryMovement,
    Payment,
    Product,
    Sale,
    Voucher,
    WarehouseStock,
)
from distpos.models.clients import VOUCHER_USED
from distpos.services import catalog_service, lock_service, order_builder, order_store, settlement_service


PASSWORD = "Password123!"


def _order(product, quantity, *, client=None, **kwargs):
    client_info = catalog_service.get_client_info(client.id) if client else None
    order = order_builder.new_order(client_info)
    return order_builder.add_item(order, catalog_service.get_product_info(product.id), quantity, **kwargs)


def _stock(product_id) -> Decimal:
    return db.session.get(Product, product_id).stock


def _warehouse_stock(warehouse_id, product_id) -> Decimal:
    return WarehouseStock.query.filter_by(warehouse_id=warehouse_id, product_id=product_id).one().stock


def _supervisor(password=PASSWORD):
    return SettlementAuthorization(step_up=StepUpCredential("manager", password))


# =============================================================================
# SINGLE AND MIXED TENDERS
# =============================================================================

def test_cash_settlement_of_draft(cashier_identity, widget):
    order = _order(widget, 4)
    result = settlement_service.confirm_payment(order, Tender("cash"), cashier_identity)

    assert result.status == STATUS_PAID
    assert result.amount_paid == Decimal("40.00")
    assert result.remaining_balance == Decimal("0")

    sale = db.session.get(Sale, result.order_id)
    assert sale.status == STATUS_PAID
    assert sale.tender_method == "cash"
    assert sale.stock_applied_at is not None
    assert [(p.method, p.amount) for p in sale.payments] == [("cash", Decimal("40.00"))]
    assert sale.payments[0].reference.startswith("POS-")
    assert _stock(widget.id) == Decimal("96")


def test_cash_overpayment_returns_change(cashier_identity, widget):
    order = _order(widget, 4)
    result = settlement_service.confirm_payment(order, Tender("cash", amount=Decimal("50")), cashier_identity)

    assert result.change_due == Decimal("10.00")
    assert Payment.query.one().amount == Decimal("40.00")


def test_card_cannot_exceed_amount_owed(cashier_identity, widget):
    order = _order(widget, 4)
    with pytest.raises(ValidationError):
        settlement_service.confirm_payment(order, Tender("card", amount=Decimal("45")), cashier_identity)
    assert Sale.query.count() == 0


def test_mixed_cash_only_records_one_payment(cashier_identity, widget):
    order = _order(widget, 4)
    tender = Tender("mixed", breakdown=TenderBreakdown(cash=Decimal("40")))

    result = settlement_service.confirm_payment(order, tender, cashier_identity)

    assert result.status == STATUS_PAID
    payments = Payment.query.all()
    assert len(payments) == 1
    assert payments[0].method == "cash"
    assert payments[0].reference.startswith("POS-MIX-")


def test_mixed_split_records_each_part(cashier_identity, widget):
    order = _order(widget, 4)
    tender = Tender("mixed", breakdown=TenderBreakdown(cash=Decimal("15"), card=Decimal("20"), transfer=Decimal("5")))

    settlement_service.confirm_payment(order, tender, cashier_identity)

    assert sorted((p.method, p.amount) for p in Payment.query.all()) == [
        ("card", Decimal("20.00")),
        ("cash", Decimal("15.00")),
        ("transfer", Decimal("5.00")),
    ]


def test_mixed_parts_must_add_up(cashier_identity, widget):
    order = _order(widget, 4)
    tender = Tender("mixed", breakdown=TenderBreakdown(cash=Decimal("30")))
    with pytest.raises(ValidationError):
        settlement_service.confirm_payment(order, tender, cashier_identity)


def test_mixed_parts_within_a_cent_are_accepted(cashier_identity, widget):
    order = _order(widget, 4)
    tender = Tender("mixed", breakdown=TenderBreakdown(cash=Decimal("20"), card=Decimal("19.99")))

    result = settlement_service.confirm_payment(order, tender, cashier_identity)

    assert result.status == STATUS_PAID
    assert result.amount_paid == Decimal("39.99")


@pytest.mark.parametrize("tender", [
    Tender("bitcoin"),
    Tender("cash", amount=Decimal("-5")),
    Tender("mixed"),
    Tender("mixed", breakdown=TenderBreakdown(cash=Decimal("-1"), card=Decimal("41"))),
    Tender("voucher"),
])
def test_malformed_tenders_rejected(cashier_identity, widget, tender):
    with pytest.raises(ValidationError):
        settlement_service.confirm_payment(_order(widget, 4), tender, cashier_identity)


def test_empty_order_cannot_be_settled(cashier_identity):
    with pytest.raises(ValidationError):
        settlement_service.confirm_payment(order_builder.new_order(), Tender("cash"), cashier_identity)


# =============================================================================
# CREDIT
# =============================================================================

def test_credit_requires_capability(cashier_identity, widget, big_client):
    order = _order(widget, 2, client=big_client)
    with pytest.raises(PermissionDenied) as exc:
        settlement_service.confirm_payment(order, Tender("credit"), cashier_identity)
    assert exc.value.capability == "CREDIT_SALES"


def test_credit_requires_registered_client(manager_identity, widget):
    with pytest.raises(ValidationError):
        settlement_service.confirm_payment(_order(widget, 2), Tender("credit"), manager_identity)


def test_credit_within_limit_leaves_order_pending(manager_identity, widget, big_client):
    order = _order(widget, 10, client=big_client)
    result = settlement_service.confirm_payment(order, Tender("credit"), manager_identity)

    assert result.status == STATUS_PENDING
    assert result.remaining_balance == Decimal("100.00")
    assert Payment.query.count() == 0

    sale = db.session.get(Sale, result.order_id)
    assert sale.is_credit is True
    assert db.session.get(Client, big_client.id).balance == Decimal("100.00")
    assert _stock(widget.id) == Decimal("90")


def test_credit_over_limit_needs_step_up(manager_identity, widget, acme):
    order = _order(widget, 10, client=acme)

    with pytest.raises(CreditLimitExceeded) as exc:
        settlement_service.confirm_payment(order, Tender("credit"), manager_identity)

    assert exc.value.status_code == 428
    assert exc.value.details["reason"] == "credit_limit_exceeded"
    assert exc.value.details["credit_limit"] == 50.0
    assert exc.value.details["credit_amount"] == 100.0
    assert Sale.query.count() == 0
    assert db.session.get(Client, acme.id).balance == Decimal("0")
    assert _stock(widget.id) == Decimal("100")


def test_credit_over_limit_with_supervisor_credential(manager_identity, widget, acme):
    order = _order(widget, 10, client=acme)
    result = settlement_service.confirm_payment(
        order, Tender("credit"), manager_identity, authorization=_supervisor()
    )

    assert result.status == STATUS_PENDING
    assert db.session.get(Client, acme.id).balance == Decimal("100.00")


def test_rejected_supervisor_credential_is_flagged(manager_identity, widget, acme):
    order = _order(widget, 10, client=acme)
    with pytest.raises(CreditLimitExceeded) as exc:
        settlement_service.confirm_payment(
            order, Tender("credit"), manager_identity, authorization=_supervisor("wrong")
        )
    assert exc.value.details["credential_rejected"] is True


def test_cashier_cannot_approve_step_up(manager_identity, cashier, widget, acme):
    order = _order(widget, 10, client=acme)
    authorization = SettlementAuthorization(step_up=StepUpCredential("cashier", PASSWORD))
    with pytest.raises(CreditLimitExceeded):
        settlement_service.confirm_payment(order, Tender("credit"), manager_identity, authorization=authorization)


def test_mixed_with_credit_part(manager_identity, widget, big_client):
    order = _order(widget, 10, client=big_client)
    tender = Tender("mixed", breakdown=TenderBreakdown(cash=Decimal("40"), credit=Decimal("60")))

    result = settlement_service.confirm_payment(order, tender, manager_identity)

    assert result.status == STATUS_PENDING
    assert result.amount_paid == Decimal("40.00")
    assert result.remaining_balance == Decimal("60.00")
    assert [p.method for p in Payment.query.all()] == ["cash"]
    assert db.session.get(Client, big_client.id).balance == Decimal("60.00")


def test_partial_cash_leaves_order_pending_then_collected(cashier_identity, widget, big_client):
    order = _order(widget, 10, client=big_client)
    first = settlement_service.confirm_payment(order, Tender("cash", amount=Decimal("40")), cashier_identity)

    assert first.status == STATUS_PENDING
    assert first.amount_paid == Decimal("40.00")
    assert first.remaining_balance == Decimal("60.00")
    assert db.session.get(Sale, first.order_id).is_credit is False
    # A short payment is not credit: the client owes nothing on account
    assert db.session.get(Client, big_client.id).balance == Decimal("0.00")
    assert _stock(widget.id) == Decimal("90")

    second = settlement_service.confirm_payment(first.order_id, Tender("card", amount=Decimal("60")), cashier_identity)

    assert second.status == STATUS_PAID
    assert second.amount_paid == Decimal("100.00")
    assert db.session.get(Client, big_client.id).balance == Decimal("0.00")
    # Stock moves once, on the first settlement
    assert _stock(widget.id) == Decimal("90")
    assert InventoryMovement.query.count() == 1
    assert sorted(p.method for p in Payment.query.all()) == ["card", "cash"]


def test_partial_card_on_walk_in_order_is_pending(cashier_identity, widget):
    order = _order(widget, 10)

    result = settlement_service.confirm_payment(order, Tender("card", amount=Decimal("40")), cashier_identity)

    assert result.status == STATUS_PENDING
    assert result.remaining_balance == Decimal("60.00")
    assert [(p.method, p.amount) for p in Payment.query.all()] == [("card", Decimal("40.00"))]


def test_pending_order_rejects_credit_and_voucher(manager_identity, widget, big_client, make_voucher):
    order = _order(widget, 10, client=big_client)
    pending = settlement_service.confirm_payment(order, Tender("credit"), manager_identity)

    with pytest.raises(ValidationError):
        settlement_service.confirm_payment(pending.order_id, Tender("credit"), manager_identity)

    voucher = make_voucher(100, client=big_client)
    with pytest.raises(ValidationError):
        settlement_service.confirm_payment(pending.order_id, Tender("voucher", voucher_id=voucher.id), manager_identity)


def test_paid_order_cannot_be_settled_again(cashier_identity, widget):
    result = settlement_service.confirm_payment(_order(widget, 1), Tender("cash"), cashier_identity)
    with pytest.raises(ValidationError):
        settlement_service.confirm_payment(result.order_id, Tender("cash"), cashier_identity)


# =============================================================================
# VOUCHERS
# =============================================================================

def test_voucher_covering_everything_keeps_no_record(cashier_identity, widget, make_voucher):
    voucher = make_voucher(30)
    order = _order(widget, 3)

    result = settlement_service.confirm_payment(order, Tender("voucher", voucher_id=voucher.id), cashier_identity)

    assert result.record_deleted is True
    assert result.order_id is None
    assert result.status == STATUS_PAID
    assert Sale.query.count() == 0
    assert Payment.query.count() == 0

    voucher = db.session.get(Voucher, voucher.id)
    assert voucher.remaining == Decimal("0")
    assert voucher.status == VOUCHER_USED
    assert _stock(widget.id) == Decimal("97")
    assert InventoryMovement.query.one().reference.startswith("POS-VALE-")


def test_voucher_covering_everything_deletes_saved_order(cashier_identity, widget, make_voucher):
    saved = order_store.save_order(_order(widget, 3), cashier_identity)
    voucher = make_voucher(50)

    result = settlement_service.confirm_payment(saved, Tender("voucher", voucher_id=voucher.id), cashier_identity)

    assert result.record_deleted is True
    assert db.session.get(Sale, saved.id) is None
    assert db.session.get(Voucher, voucher.id).remaining == Decimal("20.00")


def test_partial_voucher_keeps_cash_part_scaled(cashier_identity, widget, make_voucher):
    voucher = make_voucher(20)
    order = _order(widget, 5)

    result = settlement_service.confirm_payment(order, Tender("voucher", voucher_id=voucher.id), cashier_identity)

    assert result.status == STATUS_PAID
    assert result.amount_paid == Decimal("30.00")

    sale = db.session.get(Sale, result.order_id)
    assert sale.total == Decimal("30.00")
    assert sale.tender_method == "voucher"
    assert sale.items[0].quantity == Decimal("3.000")
    assert sale.items[0].total == Decimal("30.00")
    assert [(p.method, p.amount) for p in sale.payments] == [("cash", Decimal("30.00"))]

    assert db.session.get(Voucher, voucher.id).status == VOUCHER_USED
    # The full quantity leaves the shelf
    assert _stock(widget.id) == Decimal("95")


def test_partial_voucher_line_totals_add_up_to_subtotal(cashier_identity, widget, make_voucher):
    voucher = make_voucher(2)
    order = _order(widget, 1)
    order = order_builder.add_item(order, catalog_service.get_product_info(widget.id), 1, tier=3)
    order = order_builder.add_item(order, catalog_service.get_product_info(widget.id), 1, custom_price="7.01")
    assert order.total == Decimal("29.51")

    result = settlement_service.confirm_payment(order, Tender("voucher", voucher_id=voucher.id), cashier_identity)

    sale = db.session.get(Sale, result.order_id)
    assert sale.total == Decimal("27.51")
    assert sale.subtotal == sum(item.total for item in sale.items)
    assert sale.subtotal - sale.discount_total == sale.total


@pytest.mark.parametrize("status", ["used", "expired"])
def test_voucher_must_be_enabled(cashier_identity, widget, make_voucher, status):
    voucher = make_voucher(30, status=status)
    with pytest.raises(ValidationError):
        settlement_service.confirm_payment(_order(widget, 1), Tender("voucher", voucher_id=voucher.id), cashier_identity)


def test_voucher_of_another_client_rejected(cashier_identity, widget, acme, big_client, make_voucher):
    voucher = make_voucher(30, client=acme)
    order = _order(widget, 1, client=big_client)
    with pytest.raises(ValidationError):
        settlement_service.confirm_payment(order, Tender("voucher", voucher_id=voucher.id), cashier_identity)


# =============================================================================
# STOCK, DISTRIBUTION, BELOW COST
# =============================================================================

def test_distribution_decrements_each_warehouse(cashier_identity, widget, warehouses):
    bodega, frijol = warehouses
    order = _order(widget, 5)
    distribution = {widget.id: [WarehouseShare(bodega.id, Decimal("3")), WarehouseShare(frijol.id, Decimal("2"))]}

    settlement_service.confirm_payment(order, Tender("cash"), cashier_identity, distribution=distribution)

    assert _warehouse_stock(bodega.id, widget.id) == Decimal("57")
    assert _warehouse_stock(frijol.id, widget.id) == Decimal("38")
    assert _stock(widget.id) == Decimal("95")
    movements = InventoryMovement.query.order_by(InventoryMovement.warehouse_id).all()
    assert [(m.warehouse_id, m.quantity) for m in movements] == [
        (bodega.id, Decimal("3")),
        (frijol.id, Decimal("2")),
    ]


def test_settlement_without_distribution_records_unassigned_movement(cashier_identity, widget, warehouses):
    bodega, _ = warehouses
    settlement_service.confirm_payment(_order(widget, 5), Tender("cash"), cashier_identity)

    movement = InventoryMovement.query.one()
    assert movement.warehouse_id is None
    assert movement.quantity == Decimal("5")
    assert _warehouse_stock(bodega.id, widget.id) == Decimal("60")


@pytest.mark.parametrize("shares", [
    [(0, "3")],
    [(0, "3"), (1, "3")],
    [(0, "3"), (0, "2")],
    [(0, "61")],
])
def test_invalid_distribution_rejected(cashier_identity, widget, warehouses, shares):
    quantity = 5 if shares != [(0, "61")] else 61
    distribution = {widget.id: [WarehouseShare(warehouses[i].id, Decimal(q)) for i, q in shares]}
    with pytest.raises(ValidationError):
        settlement_service.confirm_payment(
            _order(widget, quantity), Tender("cash"), cashier_identity, distribution=distribution
        )
    assert _stock(widget.id) == Decimal("100")


def _oversold_rice_order(rice):
    info = replace(catalog_service.get_product_info(rice.id), stock=Decimal("100"))
    return order_builder.add_item(order_builder.new_order(), info, 12)


def test_stock_shortfall_raises(cashier_identity, rice):
    with pytest.raises(StockInsufficient) as exc:
        settlement_service.confirm_payment(_oversold_rice_order(rice), Tender("cash"), cashier_identity)

    shortfall = exc.value.details["items"][0]
    assert shortfall["product_id"] == rice.id
    assert shortfall["requested"] == 12.0
    assert shortfall["available"] == 10.0


def test_stock_override_requires_capability(cashier_identity, rice):
    with pytest.raises(PermissionDenied):
        settlement_service.confirm_payment(
            _oversold_rice_order(rice), Tender("cash"), cashier_identity,
            authorization=SettlementAuthorization(stock_override=True),
        )


def test_stock_override_floors_stock_at_zero(manager_identity, rice):
    result = settlement_service.confirm_payment(
        _oversold_rice_order(rice), Tender("cash"), manager_identity,
        authorization=SettlementAuthorization(stock_override=True),
    )
    assert result.status == STATUS_PAID
    assert _stock(rice.id) == Decimal("0")


def test_price_below_cost_needs_step_up(cashier_identity, manager, widget):
    order = _order(widget, 2, custom_price="5.00")

    with pytest.raises(StepUpRequired) as exc:
        settlement_service.confirm_payment(order, Tender("cash"), cashier_identity)
    assert exc.value.details["reason"] == "price_below_cost"
    assert exc.value.details["items"][0]["estimated_cost"] == 7.0

    result = settlement_service.confirm_payment(order, Tender("cash"), cashier_identity, authorization=_supervisor())
    assert result.amount_paid == Decimal("10.00")


# =============================================================================
# LEASES, FAILURES, EVENTS
# =============================================================================

def test_saved_order_held_elsewhere_cannot_be_settled(cashier_identity, manager_identity, widget):
    saved = order_store.save_order(_order(widget, 2), cashier_identity)
    assert lock_service.acquire_lock(saved.id, manager_identity).granted

    with pytest.raises(LockConflict) as exc:
        settlement_service.confirm_payment(saved, Tender("cash"), cashier_identity)
    assert exc.value.held_by == "Marta"


def test_saved_order_settles_with_unsaved_edits(cashier_identity, widget):
    saved = order_store.save_order(_order(widget, 2), cashier_identity)
    edited = order_builder.add_item(saved, catalog_service.get_product_info(widget.id), 1)

    result = settlement_service.confirm_payment(edited, Tender("cash"), cashier_identity)

    assert result.order_id == saved.id
    assert result.amount_paid == Decimal("30.00")
    assert db.session.get(Sale, saved.id).items[0].quantity == Decimal("3")


def test_failure_while_applying_rolls_everything_back(cashier_identity, widget, big_client, manager_identity,
                                                      monkeypatch):
    def _boom(*args, **kwargs):
        raise RuntimeError("warehouse service down")

    monkeypatch.setattr(settlement_service, "_apply_inventory", _boom)
    order = _order(widget, 10, client=big_client)

    with pytest.raises(SettlementFailed) as exc:
        settlement_service.confirm_payment(
            order, Tender("mixed", breakdown=TenderBreakdown(cash=Decimal("40"), credit=Decimal("60"))),
            manager_identity,
        )

    assert exc.value.status_code == 500
    assert Sale.query.count() == 0
    assert Payment.query.count() == 0
    assert db.session.get(Client, big_client.id).balance == Decimal("0")
    assert _stock(widget.id) == Decimal("100")


def test_settlement_completed_is_published(cashier_identity, widget):
    seen = []
    bus.subscribe(SETTLEMENT_COMPLETED, lambda **payload: seen.append(payload))

    result = settlement_service.confirm_payment(_order(widget, 1), Tender("cash"), cashier_identity)

    assert seen == [{
        "order_id": result.order_id,
        "status": STATUS_PAID,
        "amount_paid": Decimal("10.00"),
        "record_deleted": False,
    }]


def test_rejected_settlement_publishes_nothing(cashier_identity, widget):
    seen = []
    bus.subscribe(SETTLEMENT_COMPLETED, lambda **payload: seen.append(payload))

    with pytest.raises(ValidationError):
        settlement_service.confirm_payment(_order(widget, 1), Tender("card", amount=Decimal("99")), cashier_identity)
    assert seen == []
