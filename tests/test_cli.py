# Overview: Pytest coverage for the Flask CLI command groups.

from kasir.models import CashTransaction, ExpenseCategory, Product, Sale, Store
from kasir.services.sequence_service import business_date_for


class TestSystemCommands:

    def test_init_is_idempotent(self, app, db_session):
        runner = app.test_cli_runner()

        first = runner.invoke(args=["system", "init", "--name", "Toko Sejahtera", "--code", "TS"])
        second = runner.invoke(args=["system", "init"])

        assert first.exit_code == 0, first.output
        assert "Created default store: Toko Sejahtera" in first.output
        assert second.exit_code == 0, second.output
        assert "Using existing store" in second.output
        assert db_session.query(Store).count() == 1
        codes = {c.code for c in db_session.query(ExpenseCategory).all()}
        assert codes == {"RETURN_REFUND", "SALE_VOID", "PURCHASE_INVENTORY"}

    def test_seed_demo_stocks_through_the_ledger(self, app, db_session, store):
        runner = app.test_cli_runner()

        result = runner.invoke(args=["system", "seed-demo", "--store-id", str(store.id)])
        again = runner.invoke(args=["system", "seed-demo", "--store-id", str(store.id)])

        assert result.exit_code == 0, result.output
        assert "Seeded 5 demo products" in result.output
        assert "Seeded 0 demo products" in again.output
        products = db_session.query(Product).filter_by(store_id=store.id).all()
        assert len(products) == 5
        assert all(p.movements.count() == 1 for p in products)

    def test_unknown_store_fails(self, app, db_session):
        result = app.test_cli_runner().invoke(args=["system", "seed-demo", "--store-id", "99"])
        assert result.exit_code != 0


class TestNightlyJobs:

    def test_lock_day(self, app, db_session, store, make_product, sell):
        sale = sell([(make_product(), 1)])
        day = business_date_for(store.id).isoformat()

        result = app.test_cli_runner().invoke(args=["sales", "lock-day", "--date", day])

        assert result.exit_code == 0, result.output
        assert "PASS Locked 1 sales" in result.output
        assert db_session.get(Sale, sale.id).status == "LOCKED"

    def test_lock_day_rejects_bad_date(self, app, db_session, store):
        result = app.test_cli_runner().invoke(args=["sales", "lock-day", "--date", "01/05/2024"])
        assert result.exit_code == 2

    def test_sync_sales_back_fills(self, app, db_session, store, make_product, sell):
        sale = sell([(make_product(), 2)])
        db_session.query(CashTransaction).filter_by(sale_id=sale.id).delete()
        db_session.commit()

        result = app.test_cli_runner().invoke(args=["cash", "sync-sales", "--store-id", str(store.id)])

        assert result.exit_code == 0, result.output
        assert "PASS Synced 1 sales (0 failed)" in result.output
        assert db_session.query(CashTransaction).filter_by(sale_id=sale.id).count() == 1


class TestStockVerify:

    def test_consistent_ledger_passes(self, app, db_session, store, make_product, sell):
        sell([(make_product(), 3)])

        result = app.test_cli_runner().invoke(args=["stock", "verify"])

        assert result.exit_code == 0, result.output
        assert "PASS 1 products consistent" in result.output

    def test_tampered_quantity_fails(self, app, db_session, store, make_product):
        product = make_product(qty=10)
        db_session.execute(Product.__table__.update().where(Product.id == product.id).values(qty=3))
        db_session.commit()

        result = app.test_cli_runner().invoke(args=["stock", "verify", "--store-id", str(store.id)])

        assert result.exit_code == 1
        assert "1 of 1 products inconsistent" in result.output
