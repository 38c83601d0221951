# Overview: Pytest coverage for the ledgers under concurrent access, using threads on a file SQLite database.

"""
Concurrent Access Tests

Several threads race on the same rows through the public services. Stock,
cash and sale status must move together: no oversell, no over-return, one
open drawer per cashier, and a void never racing past a return.
"""

import threading

import pytest

from kasir import create_app
from kasir.errors import (
    DrawerAlreadyOpen,
    ExcessiveReturnQuantity,
    InsufficientStock,
    InvalidState,
)
from kasir.extensions import db
from kasir.models import CashDrawer, CashTransaction, Product, Sale, StockMovement, Store
from kasir.models.enums import MovementType, ReferenceType
from kasir.services import drawer_service, return_service, sales_service, stock_service

from tests.conftest import CASHIER_ID


@pytest.fixture(scope='function')
def file_app(tmp_path):
    """App on a file database so each thread gets its own connection."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'concurrency.db'}",
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'BUSINESS_TIMEZONE': 'Asia/Jakarta',
        'RETURN_WINDOW_DAYS': 3,
        'ALLOW_BACKORDER': False,
        'CONCURRENCY_RETRY_ATTEMPTS': 5,
        'CONCURRENCY_RETRY_BACKOFF': 0.05,
        'LOG_LEVEL': 'ERROR',
    })
    with app.app_context():
        db.create_all()

    yield app

    with app.app_context():
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


def _seed(app, qty):
    """Store plus one product with `qty` units of opening stock."""
    with app.app_context():
        store = Store(name="Toko Utama", code="MAIN", timezone="Asia/Jakarta")
        db.session.add(store)
        db.session.commit()
        product = Product(store_id=store.id, sku="SKU-001", name="Indomie Goreng", price_cents=3500)
        db.session.add(product)
        db.session.commit()
        stock_service.record_movement(
            store.id,
            product.id,
            MovementType.IN,
            qty,
            ReferenceType.MANUAL,
            cost_per_unit_cents=2800,
            notes="Opening stock",
        )
        return store.id, product.id


def _completed_sale(app, store_id, product_id, quantity):
    with app.app_context():
        sale = sales_service.create_sale(store_id, CASHIER_ID, [{"product_id": product_id, "quantity": quantity}])
        sales_service.complete_sale(sale.id, sale.total_cents, "CASH")
        return sale.id


def _race(app, calls):
    """Run every call in its own thread, released together. Returns "ok" or the exception per call."""
    barrier = threading.Barrier(len(calls))
    results = []
    lock = threading.Lock()

    def worker(call):
        with app.app_context():
            try:
                barrier.wait()
                call()
                with lock:
                    results.append("ok")
            except Exception as exc:
                with lock:
                    results.append(exc)
            finally:
                db.session.remove()

    threads = [threading.Thread(target=worker, args=(call,)) for call in calls]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(results) == len(calls)
    return results


def _failures(results):
    return [r for r in results if r != "ok"]


class TestConcurrentSales:

    def test_completing_sales_never_oversells(self, file_app):
        store_id, product_id = _seed(file_app, qty=5)
        with file_app.app_context():
            sale_ids = [
                sales_service.create_sale(store_id, CASHIER_ID, [{"product_id": product_id, "quantity": 1}]).id
                for _ in range(8)
            ]

        results = _race(file_app, [
            (lambda sid=sid: sales_service.complete_sale(sid, 3500, "CASH")) for sid in sale_ids
        ])

        assert results.count("ok") == 5
        assert all(isinstance(r, InsufficientStock) for r in _failures(results))

        with file_app.app_context():
            assert db.session.get(Product, product_id).qty == 0
            assert db.session.query(StockMovement).filter_by(movement_type="OUT").count() == 5
            assert db.session.query(CashTransaction).filter_by(transaction_type="INCOME").count() == 5
            assert db.session.query(Sale).filter_by(status="COMPLETED").count() == 5
            assert db.session.query(Sale).filter_by(status="DRAFT").count() == 3
            assert stock_service.replay_product_ledger(store_id, product_id)["consistent"] is True


class TestConcurrentReturns:

    def test_returns_never_exceed_the_quantity_sold(self, file_app):
        store_id, product_id = _seed(file_app, qty=10)
        sale_id = _completed_sale(file_app, store_id, product_id, 2)
        items = [{"product_id": product_id, "quantity": 1}]

        results = _race(file_app, [
            (lambda: return_service.create_return(store_id, CASHIER_ID, sale_id, items)) for _ in range(6)
        ])

        assert results.count("ok") == 2
        assert all(isinstance(r, ExcessiveReturnQuantity) for r in _failures(results))

        with file_app.app_context():
            assert db.session.get(Product, product_id).qty == 10
            assert db.session.query(CashTransaction).filter_by(transaction_type="EXPENSE").count() == 2
            assert stock_service.replay_product_ledger(store_id, product_id)["consistent"] is True

    def test_void_and_return_do_not_both_reverse_the_sale(self, file_app):
        store_id, product_id = _seed(file_app, qty=10)
        sale_id = _completed_sale(file_app, store_id, product_id, 2)

        results = _race(file_app, [
            lambda: sales_service.delete_sale(sale_id, actor_user_id=1, reason="Salah input"),
            lambda: return_service.create_return(
                store_id, CASHIER_ID, sale_id, [{"product_id": product_id, "quantity": 1}]
            ),
        ])

        assert results.count("ok") == 1
        assert all(isinstance(r, InvalidState) for r in _failures(results))

        with file_app.app_context():
            voided = db.session.get(Sale, sale_id).status == "DELETED"
            assert db.session.get(Product, product_id).qty == (10 if voided else 9)
            assert db.session.query(CashTransaction).filter_by(transaction_type="EXPENSE").count() == 1
            assert stock_service.replay_product_ledger(store_id, product_id)["consistent"] is True


class TestConcurrentDrawers:

    def test_one_open_drawer_per_cashier(self, file_app):
        store_id, _ = _seed(file_app, qty=1)

        results = _race(file_app, [
            (lambda: drawer_service.open_drawer(store_id, CASHIER_ID, 100000)) for _ in range(6)
        ])

        assert results.count("ok") == 1
        assert all(isinstance(r, DrawerAlreadyOpen) for r in _failures(results))

        with file_app.app_context():
            assert db.session.query(CashDrawer).filter_by(cashier_id=CASHIER_ID, status="OPEN").count() == 1
