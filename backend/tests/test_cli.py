"""Flask CLI commands."""

from distpos.models import User, Warehouse
from distpos.services import identity_service


def test_system_init_is_idempotent(app, db_session):
    runner = app.test_cli_runner()

    result = runner.invoke(args=["system", "init", "--password", "Secret123!"])
    assert result.exit_code == 0
    assert "PASS Created user: admin" in result.output
    assert {w.code for w in Warehouse.query.all()} == {"BODEGA", "FRIJOL"}
    assert Warehouse.query.filter_by(is_primary=True).one().code == "BODEGA"

    again = runner.invoke(args=["system", "init"])
    assert "already exists" in again.output
    assert User.query.count() == 3


def test_grant_and_deny_capabilities(app, cashier):
    runner = app.test_cli_runner()

    result = runner.invoke(args=["users", "grant", "cashier", "credit_sales"])
    assert result.exit_code == 0
    assert identity_service.has_capability(cashier.id, "CREDIT_SALES")

    runner.invoke(args=["users", "deny", "cashier", "CREATE_SALE"])
    assert not identity_service.has_capability(cashier.id, "CREATE_SALE")

    missing = runner.invoke(args=["users", "grant", "nobody", "CREDIT_SALES"])
    assert missing.exit_code != 0
    assert "not found" in missing.output


def test_locks_sweep(app, db_session):
    result = app.test_cli_runner().invoke(args=["locks", "sweep"])
    assert result.exit_code == 0
    assert "Removed 0 expired lease(s)" in result.output
