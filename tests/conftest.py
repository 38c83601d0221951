"""
Pytest fixtures for the kasir ledger tests.

Provides the app on an in-memory database, a clean database per test,
a store, a product factory that stocks through the ledger, and a helper
that rings up completed sales.
"""

import pytest

from kasir import create_app
from kasir.extensions import db
from kasir.models import Product, Store
from kasir.models.enums import MovementType, ReferenceType
from kasir.services import sales_service, stock_service


CASHIER_ID = 7
OTHER_CASHIER_ID = 8


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'BUSINESS_TIMEZONE': 'Asia/Jakarta',
        'RETURN_WINDOW_DAYS': 3,
        'ALLOW_BACKORDER': False,
        'CONCURRENCY_RETRY_BACKOFF': 0,
        'LOG_LEVEL': 'WARNING',
    })

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    # Clear all data but keep schema
    for table in reversed(db.metadata.sorted_tables):
        db.session.execute(table.delete())
    db.session.commit()

    yield db.session

    # Cleanup after test
    db.session.rollback()


@pytest.fixture(scope='function')
def store(db_session):
    store = Store(name="Toko Utama", code="MAIN", timezone="Asia/Jakarta")
    db_session.add(store)
    db_session.commit()
    return store


@pytest.fixture(scope='function')
def other_store(db_session):
    store = Store(name="Toko Cabang", code="BR1", timezone="Asia/Jakarta")
    db_session.add(store)
    db_session.commit()
    return store


@pytest.fixture(scope='function')
def make_product(db_session, store):
    """
    Factory for products. Opening stock is posted as an IN movement so the
    product's balance chain replays cleanly.
    """
    counter = {"n": 0}

    def _make(
        name="Indomie Goreng",
        price_cents=3500,
        qty=10,
        cost_cents=2800,
        min_stock=0,
        sku=None,
        store_id=None,
    ):
        counter["n"] += 1
        product = Product(
            store_id=store_id or store.id,
            sku=sku or f"SKU-{counter['n']:03d}",
            name=name,
            price_cents=price_cents,
            min_stock=min_stock,
        )
        db_session.add(product)
        db_session.commit()
        if qty:
            stock_service.record_movement(
                product.store_id,
                product.id,
                MovementType.IN,
                qty,
                ReferenceType.MANUAL,
                cost_per_unit_cents=cost_cents,
                notes="Opening stock",
            )
        return product

    return _make


@pytest.fixture(scope='function')
def sell(store):
    """Ring up and complete a sale. items: [(product, quantity), ...]."""
    def _sell(items, payment_method="CASH", paid=None, cashier_id=CASHIER_ID, store_id=None):
        sale = sales_service.create_sale(
            store_id or store.id,
            cashier_id,
            [{"product_id": p.id, "quantity": q} for p, q in items],
        )
        return sales_service.complete_sale(
            sale.id,
            sale.total_cents if paid is None else paid,
            payment_method,
        )

    return _sell


def actor_headers(store_id: int, cashier_id: int = CASHIER_ID) -> dict:
    """Helper to create the gateway identity headers."""
    return {'X-Store-Id': str(store_id), 'X-Cashier-Id': str(cashier_id)}
