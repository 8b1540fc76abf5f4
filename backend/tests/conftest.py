"""
Pytest fixtures for distpos backend tests.

Provides an in-memory database, seeded operators, warehouses, products and
clients, and one Identity per simulated terminal session.
"""

from decimal import Decimal

import pytest

from distpos import create_app
from distpos.domain import Identity
from distpos.events import bus
from distpos.extensions import db
from distpos.models import Client, Product, Voucher, Warehouse, WarehouseStock
from distpos.services import identity_service, tab_service


DEFAULT_PASSWORD = "Password123!"


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'LOCK_SWEEPER_ENABLED': False,
        'BCRYPT_ROUNDS': 4,
        'TERMINAL_SESSION_ID': 'session-terminal',
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()
        tab_service.reset_tab_sessions()
        bus.clear()

        yield db.session

        # Cleanup after test
        db.session.rollback()
        tab_service.reset_tab_sessions()
        bus.clear()


# =============================================================================
# OPERATORS
# =============================================================================

@pytest.fixture(scope='function')
def admin(db_session):
    return identity_service.create_user("admin", DEFAULT_PASSWORD, display_name="Admin", role="admin")


@pytest.fixture(scope='function')
def manager(db_session):
    return identity_service.create_user("manager", DEFAULT_PASSWORD, display_name="Marta", role="manager")


@pytest.fixture(scope='function')
def cashier(db_session):
    return identity_service.create_user("cashier", DEFAULT_PASSWORD, display_name="Carlos", role="cashier")


@pytest.fixture(scope='function')
def cashier_identity(cashier):
    """Cashier at terminal A."""
    return Identity(user_id=cashier.id, user_name=cashier.display_name, session_id="session-a")


@pytest.fixture(scope='function')
def cashier_other_terminal(cashier):
    """The same cashier signed in at terminal B."""
    return Identity(user_id=cashier.id, user_name=cashier.display_name, session_id="session-b")


@pytest.fixture(scope='function')
def manager_identity(manager):
    return Identity(user_id=manager.id, user_name=manager.display_name, session_id="session-m")


# =============================================================================
# CATALOG
# =============================================================================

@pytest.fixture(scope='function')
def warehouses(db_session):
    """BODEGA (primary) and FRIJOL."""
    bodega = Warehouse(code="BODEGA", name="Bodega", is_primary=True, is_active=True)
    frijol = Warehouse(code="FRIJOL", name="Frijol", is_primary=False, is_active=True)
    db_session.add_all([bodega, frijol])
    db_session.commit()
    return bodega, frijol


def _stock_product(db_session, warehouses, *, code, name, price1, per_warehouse, cost_estimate=None, **prices):
    bodega, frijol = warehouses
    product = Product(
        code=code,
        name=name,
        price1=Decimal(price1),
        cost_estimate=Decimal(cost_estimate) if cost_estimate is not None else None,
        stock=Decimal(sum(per_warehouse)),
        is_active=True,
        **{k: Decimal(v) for k, v in prices.items()},
    )
    db_session.add(product)
    db_session.flush()
    for warehouse, qty in zip((bodega, frijol), per_warehouse):
        db_session.add(WarehouseStock(warehouse_id=warehouse.id, product_id=product.id, stock=Decimal(qty)))
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def widget(db_session, warehouses):
    """price1 10.00 (estimated cost 7.00), stock 100: 60 in BODEGA, 40 in FRIJOL."""
    return _stock_product(
        db_session, warehouses,
        code="W-1", name="Widget", price1="10.00", price3="12.50", per_warehouse=(60, 40),
    )


@pytest.fixture(scope='function')
def rice(db_session, warehouses):
    """price1 25.50, stock 10: 4 in BODEGA, 6 in FRIJOL."""
    return _stock_product(
        db_session, warehouses,
        code="R-1", name="Rice 25kg", price1="25.50", cost_estimate="20.00", per_warehouse=(4, 6),
    )


@pytest.fixture(scope='function')
def acme(db_session):
    """Client with a tight credit limit (50.00) and no balance."""
    client = Client(name="Acme Groceries", credit_limit=Decimal("50"), balance=Decimal("0"), default_price_tier=1)
    db_session.add(client)
    db_session.commit()
    return client


@pytest.fixture(scope='function')
def big_client(db_session):
    """Client with room for credit (limit 1000.00)."""
    client = Client(name="Big Wholesale", credit_limit=Decimal("1000"), balance=Decimal("0"), default_price_tier=3)
    db_session.add(client)
    db_session.commit()
    return client


@pytest.fixture(scope='function')
def make_voucher(db_session):
    def _make(remaining, *, client=None, status="enabled", folio=None):
        voucher = Voucher(
            folio=folio or f"V-{remaining}-{status}",
            client_id=client.id if client else None,
            face_value=Decimal(str(remaining)),
            remaining=Decimal(str(remaining)),
            status=status,
        )
        db_session.add(voucher)
        db_session.commit()
        return voucher
    return _make
