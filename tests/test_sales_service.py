# Overview: Pytest coverage for the sale lifecycle across the stock and cash ledgers.

"""
Sale Lifecycle Tests

DRAFT -> COMPLETED -> LOCKED, plus deletion. Completing a sale posts stock
and cash together; a failure anywhere leaves both ledgers untouched.
"""

import pytest

from kasir.errors import InsufficientPayment, InsufficientStock, InvalidState, NotFound, ValidationError
from kasir.models import AuditEvent, CashTransaction, Product, Sale, StockMovement
from kasir.services import cash_service, return_service, sales_service
from kasir.services.sequence_service import business_date_for

from tests.conftest import CASHIER_ID


def _items(*pairs):
    return [{"product_id": p.id, "quantity": q} for p, q in pairs]


class TestCreateSale:
    """Draft creation and numbering."""

    def test_draft_gets_daily_transaction_number(self, db_session, store, make_product):
        product = make_product()
        today = business_date_for(store.id)

        first = sales_service.create_sale(store.id, CASHIER_ID, _items((product, 1)))
        second = sales_service.create_sale(store.id, CASHIER_ID, _items((product, 1)))

        assert first.status == "DRAFT"
        assert first.business_date == today
        assert first.transaction_number == f"TRX-{today:%Y%m%d}-0001"
        assert second.transaction_number == f"TRX-{today:%Y%m%d}-0002"
        assert second.daily_number == 2

    def test_lines_snapshot_price_and_total(self, db_session, store, make_product):
        noodles = make_product(name="Indomie Goreng", price_cents=3500)
        water = make_product(name="Aqua 600ml", price_cents=4000)

        sale = sales_service.create_sale(store.id, CASHIER_ID, _items((noodles, 2), (water, 1)))

        assert sale.total_cents == 2 * 3500 + 4000
        assert {line.product_id: line.unit_price_cents for line in sale.lines} == {
            noodles.id: 3500,
            water.id: 4000,
        }

    def test_repeated_products_are_merged(self, db_session, store, make_product):
        product = make_product()

        sale = sales_service.create_sale(store.id, CASHIER_ID, _items((product, 2), (product, 3)))

        assert len(sale.lines) == 1
        assert sale.lines[0].quantity == 5

    def test_empty_draft_is_allowed(self, db_session, store):
        sale = sales_service.create_sale(store.id, CASHIER_ID, [])
        assert sale.total_cents == 0
        assert sale.lines == []

    def test_inactive_and_unpriced_products_are_rejected(self, db_session, store, make_product):
        inactive = make_product(name="Discontinued")
        inactive.is_active = False
        unpriced = make_product(name="No Price", price_cents=None)
        db_session.commit()

        with pytest.raises(ValidationError):
            sales_service.create_sale(store.id, CASHIER_ID, _items((inactive, 1)))
        with pytest.raises(ValidationError):
            sales_service.create_sale(store.id, CASHIER_ID, _items((unpriced, 1)))
        assert db_session.query(Sale).count() == 0

    def test_unknown_product_is_not_found(self, db_session, store):
        with pytest.raises(NotFound):
            sales_service.create_sale(store.id, CASHIER_ID, [{"product_id": 999, "quantity": 1}])

    def test_invalid_quantity_is_rejected(self, db_session, store, make_product):
        product = make_product()
        with pytest.raises(ValidationError):
            sales_service.create_sale(store.id, CASHIER_ID, [{"product_id": product.id, "quantity": 0}])
        with pytest.raises(ValidationError):
            sales_service.create_sale(store.id, CASHIER_ID, [{"product_id": product.id, "quantity": 1.5}])


class TestUpdateSale:
    """Replacing the lines of a draft."""

    def test_existing_lines_keep_snapshot_price(self, db_session, store, make_product):
        noodles = make_product(name="Indomie Goreng", price_cents=3500)
        water = make_product(name="Aqua 600ml", price_cents=4000)
        sale = sales_service.create_sale(store.id, CASHIER_ID, _items((noodles, 1)))

        noodles.price_cents = 3800
        water.price_cents = 4200
        db_session.commit()

        sale = sales_service.update_sale(sale.id, _items((noodles, 3), (water, 1)))

        prices = {line.product_id: line.unit_price_cents for line in sale.lines}
        assert prices == {noodles.id: 3500, water.id: 4200}
        assert sale.total_cents == 3 * 3500 + 4200

    def test_dropped_products_are_removed(self, db_session, store, make_product):
        noodles = make_product(name="Indomie Goreng")
        water = make_product(name="Aqua 600ml")
        sale = sales_service.create_sale(store.id, CASHIER_ID, _items((noodles, 1), (water, 1)))

        sale = sales_service.update_sale(sale.id, _items((water, 2)))

        assert [line.product_id for line in sale.lines] == [water.id]
        assert sale.total_cents == 2 * water.price_cents

    def test_only_drafts_can_be_edited(self, db_session, store, make_product, sell):
        product = make_product()
        sale = sell([(product, 1)])

        with pytest.raises(InvalidState):
            sales_service.update_sale(sale.id, _items((product, 2)))


class TestCompleteSale:
    """Posting a sale to both ledgers."""

    def test_posts_stock_and_cash_together(self, db_session, store, make_product):
        noodles = make_product(name="Indomie Goreng", qty=10, price_cents=3500)
        water = make_product(name="Aqua 600ml", qty=5, price_cents=4000)
        sale = sales_service.create_sale(store.id, CASHIER_ID, _items((water, 2), (noodles, 3)))

        sale = sales_service.complete_sale(sale.id, 20000, "CASH")

        assert sale.status == "COMPLETED"
        assert sale.completed_at is not None
        assert sale.total_cents == 18500
        assert sale.change_cents == 1500
        assert db_session.get(Product, noodles.id).qty == 7
        assert db_session.get(Product, water.id).qty == 3

        movements = db_session.query(StockMovement).filter_by(reference_type="SALE", reference_id=sale.id).all()
        assert sorted(m.quantity_delta for m in movements) == [-3, -2]
        assert all(line.stock_movement_id is not None for line in sale.lines)

        entries = db_session.query(CashTransaction).filter_by(sale_id=sale.id).all()
        assert len(entries) == 1
        assert entries[0].transaction_type == "INCOME"
        assert entries[0].amount_cents == 18500
        assert entries[0].payment_method == "CASH"
        assert entries[0].created_by_user_id == CASHIER_ID

    def test_underpayment_changes_nothing(self, db_session, store, make_product):
        product = make_product(qty=10, price_cents=3500)
        sale = sales_service.create_sale(store.id, CASHIER_ID, _items((product, 2)))

        with pytest.raises(InsufficientPayment) as exc:
            sales_service.complete_sale(sale.id, 5000, "CASH")

        assert exc.value.details["shortfall_cents"] == 2000
        assert db_session.get(Sale, sale.id).status == "DRAFT"
        assert db_session.get(Product, product.id).qty == 10
        assert db_session.query(CashTransaction).count() == 0

    def test_stock_failure_rolls_back_earlier_lines(self, db_session, store, make_product):
        plenty = make_product(name="Indomie Goreng", qty=10)
        scarce = make_product(name="Beras 5kg", qty=1, price_cents=78000)
        sale = sales_service.create_sale(store.id, CASHIER_ID, _items((plenty, 2), (scarce, 5)))

        with pytest.raises(InsufficientStock):
            sales_service.complete_sale(sale.id, 1000000, "CASH")

        assert db_session.get(Product, plenty.id).qty == 10
        assert db_session.get(Product, scarce.id).qty == 1
        assert db_session.query(StockMovement).filter_by(reference_type="SALE").count() == 0
        assert db_session.query(CashTransaction).count() == 0
        assert db_session.get(Sale, sale.id).status == "DRAFT"

    def test_empty_sale_cannot_complete(self, db_session, store):
        sale = sales_service.create_sale(store.id, CASHIER_ID, [])
        with pytest.raises(ValidationError):
            sales_service.complete_sale(sale.id, 0, "CASH")

    def test_non_cash_payment_has_no_change_requirement(self, db_session, store, make_product):
        product = make_product(price_cents=3500)
        sale = sales_service.create_sale(store.id, CASHIER_ID, _items((product, 1)))

        sale = sales_service.complete_sale(sale.id, 3500, "QRIS")

        assert sale.payment_method == "QRIS"
        assert sale.change_cents == 0
        assert cash_service.get_cash_balance(store.id)["by_method"]["QRIS"] == 3500

    def test_cannot_complete_twice(self, db_session, store, make_product, sell):
        sale = sell([(make_product(), 1)])
        with pytest.raises(InvalidState):
            sales_service.complete_sale(sale.id, sale.total_cents, "CASH")

    def test_unknown_payment_method_is_rejected(self, db_session, store, make_product):
        sale = sales_service.create_sale(store.id, CASHIER_ID, _items((make_product(), 1)))
        with pytest.raises(ValidationError):
            sales_service.complete_sale(sale.id, 3500, "CHEQUE")

    def test_completion_is_audited(self, db_session, store, make_product, sell):
        sale = sell([(make_product(), 1)])
        event = db_session.query(AuditEvent).filter_by(event_type="SALE_COMPLETED", entity_id=sale.id).one()
        assert event.event_category == "sales"


class TestDeleteSale:
    """Draft deletion and completed-sale voids."""

    def test_deleting_draft_touches_no_ledger(self, db_session, store, make_product):
        product = make_product(qty=10)
        sale = sales_service.create_sale(store.id, CASHIER_ID, _items((product, 2)))

        sale = sales_service.delete_sale(sale.id, CASHIER_ID, reason="Customer left")

        assert sale.status == "DELETED"
        assert sale.delete_reason == "Customer left"
        assert db_session.get(Product, product.id).qty == 10
        assert db_session.query(CashTransaction).count() == 0

    def test_void_reverses_stock_and_cash(self, db_session, store, make_product, sell):
        product = make_product(qty=10, cost_cents=2800, price_cents=3500)
        sale = sell([(product, 2)])

        sale = sales_service.delete_sale(sale.id, CASHIER_ID, reason="Wrong item scanned")

        assert sale.status == "DELETED"
        product = db_session.get(Product, product.id)
        assert product.qty == 10
        assert product.cost_cents == 2800

        reversal = db_session.query(StockMovement).filter_by(reference_type="SALE_VOID", reference_id=sale.id).one()
        assert reversal.movement_type == "IN"
        assert reversal.quantity_delta == 2
        assert reversal.unit_cost_cents == 2800

        refund = db_session.query(CashTransaction).filter_by(reversed_sale_id=sale.id).one()
        assert refund.transaction_type == "EXPENSE"
        assert refund.amount_cents == 7000
        assert refund.category.code == "SALE_VOID"
        assert cash_service.get_cash_balance(store.id)["balance_cents"] == 0

    def test_locked_sale_cannot_be_voided(self, db_session, store, make_product, sell):
        sale = sell([(make_product(), 1)])
        sales_service.lock_sale(sale.id)

        with pytest.raises(InvalidState):
            sales_service.delete_sale(sale.id, CASHIER_ID)

    def test_sale_with_returns_cannot_be_voided(self, db_session, store, make_product, sell):
        product = make_product(qty=10)
        sale = sell([(product, 2)])
        return_service.create_return(store.id, CASHIER_ID, sale.id, _items((product, 1)))

        with pytest.raises(InvalidState):
            sales_service.delete_sale(sale.id, CASHIER_ID)
        assert db_session.get(Sale, sale.id).status == "COMPLETED"

    def test_deleted_sale_cannot_be_deleted_again(self, db_session, store):
        sale = sales_service.create_sale(store.id, CASHIER_ID, [])
        sales_service.delete_sale(sale.id, CASHIER_ID)
        with pytest.raises(InvalidState):
            sales_service.delete_sale(sale.id, CASHIER_ID)


class TestLockSales:
    """Manual lock and the nightly day lock."""

    def test_lock_requires_completed(self, db_session, store):
        sale = sales_service.create_sale(store.id, CASHIER_ID, [])
        with pytest.raises(InvalidState):
            sales_service.lock_sale(sale.id)

    def test_lock_day_locks_only_completed_sales_of_that_day(self, db_session, store, make_product, sell):
        product = make_product(qty=10)
        completed = sell([(product, 1)])
        draft = sales_service.create_sale(store.id, CASHIER_ID, _items((product, 1)))
        today = business_date_for(store.id)

        assert sales_service.lock_sales_for_day(store.id) == 0
        assert sales_service.lock_sales_for_day(store.id, today) == 1
        assert sales_service.lock_sales_for_day(store.id, today) == 0

        assert db_session.get(Sale, completed.id).status == "LOCKED"
        assert db_session.get(Sale, completed.id).locked_at is not None
        assert db_session.get(Sale, draft.id).status == "DRAFT"

    def test_list_sales_hides_deleted_by_default(self, db_session, store):
        kept = sales_service.create_sale(store.id, CASHIER_ID, [])
        gone = sales_service.create_sale(store.id, CASHIER_ID, [])
        sales_service.delete_sale(gone.id, CASHIER_ID)

        visible = sales_service.list_sales(store.id, page=None)
        everything = sales_service.list_sales(store.id, include_deleted=True, page=None)

        assert [s["id"] for s in visible["items"]] == [kept.id]
        assert everything["count"] == 2
        assert "pagination" not in visible
