# Overview: Pytest coverage for the cash ledger; entries, sale sync, verification and reports.

import pytest

from kasir.errors import DuplicateSync, InvalidState, NotFound, ValidationError
from kasir.models import CashTransaction, ExpenseCategory
from kasir.services import cash_service, sales_service, stock_service
from kasir.services.sequence_service import business_date_for

from tests.conftest import CASHIER_ID


def _manual(store, transaction_type="EXPENSE", amount=25000, method="CASH", **kwargs):
    return cash_service.record_cash_transaction(
        store_id=store.id,
        transaction_type=transaction_type,
        amount_cents=amount,
        payment_method=method,
        category_type=kwargs.pop("category_type", "OPERATIONAL"),
        actor_user_id=kwargs.pop("actor_user_id", CASHIER_ID),
        **kwargs,
    )


class TestRecordCashTransaction:
    """Appending entries."""

    def test_entries_are_numbered_per_day(self, db_session, store):
        today = business_date_for(store.id)

        first = _manual(store, description="Listrik")
        second = _manual(store, description="Air")

        assert first.transaction_number == f"CSH-{today:%Y%m%d}-0001"
        assert second.transaction_number == f"CSH-{today:%Y%m%d}-0002"

    def test_amount_must_be_positive(self, db_session, store):
        with pytest.raises(ValidationError):
            _manual(store, amount=0)
        with pytest.raises(ValidationError):
            _manual(store, amount=-500)
        assert db_session.query(CashTransaction).count() == 0

    def test_unknown_category_is_not_found(self, db_session, store):
        with pytest.raises(NotFound):
            _manual(store, category_id=9999)

    def test_second_entry_for_a_sale_is_a_duplicate(self, db_session, store, make_product, sell):
        sale = sell([(make_product(), 1)])

        with pytest.raises(DuplicateSync) as exc:
            cash_service.record_cash_transaction(
                store_id=store.id,
                transaction_type="INCOME",
                amount_cents=sale.total_cents,
                payment_method="CASH",
                sale_id=sale.id,
            )

        assert exc.value.existing.sale_id == sale.id
        assert db_session.query(CashTransaction).filter_by(sale_id=sale.id).count() == 1

    def test_unique_sale_link_is_translated_to_duplicate(self, db_session, store, make_product, sell, monkeypatch):
        sale = sell([(make_product(), 1)])
        lookups = []
        real_lookup = cash_service._existing_sale_entry

        # First lookup misses, as when another request commits between check and insert
        def _stale_then_real(sale_id):
            lookups.append(sale_id)
            return None if len(lookups) == 1 else real_lookup(sale_id)

        monkeypatch.setattr(cash_service, "_existing_sale_entry", _stale_then_real)

        with pytest.raises(DuplicateSync) as exc:
            cash_service.record_cash_transaction(
                store_id=store.id,
                transaction_type="INCOME",
                amount_cents=sale.total_cents,
                payment_method="CASH",
                sale_id=sale.id,
            )

        assert len(lookups) == 2
        assert exc.value.existing.sale_id == sale.id
        assert db_session.query(CashTransaction).filter_by(sale_id=sale.id).count() == 1

    def test_duplicate_renders_the_existing_entry(self, db_session, store, make_product, sell):
        sale = sell([(make_product(), 1)])

        with pytest.raises(DuplicateSync) as exc:
            cash_service.post_sale_income(sale)

        body = exc.value.to_dict()
        assert exc.value.http_status == 200
        assert "error" not in body
        assert body["duplicate"] is True
        assert body["transaction"]["sale_id"] == sale.id


class TestSyncSale:
    """Back-filling INCOME entries for completed sales."""

    def test_sync_is_idempotent(self, db_session, store, make_product, sell):
        sale = sell([(make_product(), 2)])
        original = db_session.query(CashTransaction).filter_by(sale_id=sale.id).one()

        first = cash_service.sync_sale(store.id, sale.id)
        second = cash_service.sync_sale(store.id, sale.id)

        assert first.id == original.id
        assert second.id == original.id
        assert db_session.query(CashTransaction).filter_by(sale_id=sale.id).count() == 1

    def test_missing_entry_is_back_filled(self, db_session, store, make_product, sell):
        sale = sell([(make_product(), 2)])
        db_session.query(CashTransaction).filter_by(sale_id=sale.id).delete()
        db_session.commit()
        assert [s.id for s in cash_service.find_unsynced_sales(store.id)] == [sale.id]

        entry = cash_service.sync_sale(store.id, sale.id, actor_user_id=CASHIER_ID)

        assert entry.sale_id == sale.id
        assert entry.amount_cents == sale.total_cents
        assert entry.transaction_type == "INCOME"
        assert entry.created_by_user_id == sale.cashier_id
        assert cash_service.find_unsynced_sales(store.id) == []

    def test_draft_cannot_be_synced(self, db_session, store):
        sale = sales_service.create_sale(store.id, CASHIER_ID, [])
        with pytest.raises(InvalidState):
            cash_service.sync_sale(store.id, sale.id)

    def test_sale_from_another_store_is_not_found(self, db_session, store, other_store, make_product, sell):
        sale = sell([(make_product(), 1)])
        with pytest.raises(NotFound):
            cash_service.sync_sale(other_store.id, sale.id)


class TestEntryMaintenance:
    """Edits, soft deletes and verification."""

    def test_manual_entry_can_be_updated(self, db_session, store):
        entry = _manual(store, amount=25000)

        entry = cash_service.update_cash_transaction(
            entry.id, {"amount_cents": 30000, "description": "Listrik Mei"}, store_id=store.id
        )

        assert entry.amount_cents == 30000
        assert entry.description == "Listrik Mei"

    def test_unknown_fields_are_rejected(self, db_session, store):
        entry = _manual(store)
        with pytest.raises(ValidationError):
            cash_service.update_cash_transaction(entry.id, {"sale_id": 1}, store_id=store.id)

    def test_linked_entries_are_owned_by_their_document(self, db_session, store, make_product, sell):
        sale = sell([(make_product(), 1)])
        entry = db_session.query(CashTransaction).filter_by(sale_id=sale.id).one()

        with pytest.raises(InvalidState):
            cash_service.update_cash_transaction(entry.id, {"amount_cents": 1}, store_id=store.id)
        with pytest.raises(InvalidState):
            cash_service.delete_cash_transaction(entry.id, store_id=store.id)

    def test_verified_entry_is_frozen(self, db_session, store):
        entry = _manual(store)

        entry = cash_service.verify_cash_transaction(entry.id, actor_user_id=1, store_id=store.id)
        assert entry.is_verified is True
        assert entry.verified_by_user_id == 1

        with pytest.raises(InvalidState):
            cash_service.verify_cash_transaction(entry.id, actor_user_id=1, store_id=store.id)
        with pytest.raises(InvalidState):
            cash_service.update_cash_transaction(entry.id, {"notes": "late"}, store_id=store.id)
        with pytest.raises(InvalidState):
            cash_service.delete_cash_transaction(entry.id, store_id=store.id)

    def test_soft_deleted_entry_drops_out_of_reports(self, db_session, store):
        _manual(store, transaction_type="INCOME", amount=50000, category_type="OTHER")
        expense = _manual(store, amount=20000)

        cash_service.delete_cash_transaction(expense.id, actor_user_id=CASHIER_ID, store_id=store.id)

        assert db_session.get(CashTransaction, expense.id).deleted_at is not None
        assert cash_service.get_cash_balance(store.id)["balance_cents"] == 50000
        assert cash_service.list_cash_transactions(store.id, page=None)["count"] == 1
        with pytest.raises(NotFound):
            cash_service.get_cash_transaction(expense.id, store_id=store.id)


class TestCashReports:
    """Balances, flow and expense breakdown."""

    def test_balance_by_method(self, db_session, store, make_product, sell):
        product = make_product(price_cents=3500)
        sell([(product, 2)], payment_method="CASH")
        sell([(product, 1)], payment_method="DEBIT")
        _manual(store, amount=2000)

        balance = cash_service.get_cash_balance(store.id)

        assert balance["total_income_cents"] == 10500
        assert balance["total_expense_cents"] == 2000
        assert balance["balance_cents"] == 8500
        assert balance["by_method"] == {"CASH": 5000, "QRIS": 0, "DEBIT": 3500}

        cash_only = cash_service.get_cash_balance(store.id, payment_method="CASH")
        assert cash_only["balance_cents"] == 5000

    def test_cash_flow_summary(self, db_session, store):
        _manual(store, transaction_type="INCOME", amount=40000, method="QRIS", category_type="OTHER")
        _manual(store, amount=15000)

        flow = cash_service.get_cash_flow_summary(store.id)

        assert flow["total_income_cents"] == 40000
        assert flow["total_expense_cents"] == 15000
        assert flow["net_flow_cents"] == 25000
        assert flow["transaction_count"] == 2
        assert flow["by_method"]["QRIS"]["income_cents"] == 40000

    def test_expense_by_category(self, db_session, store, make_product):
        product = make_product(qty=0)
        stock_service.record_purchase(store.id, product.id, 10, 30000)
        _manual(store, amount=10000)

        rows = cash_service.get_expense_by_category(store.id)

        assert [r["category_code"] for r in rows] == ["PURCHASE_INVENTORY", "UNCATEGORIZED"]
        assert rows[0]["total_cents"] == 30000
        assert rows[0]["share_bps"] == 7500
        assert rows[1]["share_bps"] == 2500

    def test_custom_categories(self, db_session, store):
        category = cash_service.create_expense_category(store.id, code="listrik", name="Listrik")
        assert category.code == "LISTRIK"

        with pytest.raises(ValidationError):
            cash_service.create_expense_category(store.id, code="LISTRIK", name="Again")
        with pytest.raises(ValidationError):
            cash_service.create_expense_category(store.id, code="SALE_VOID", name="Reserved")

        cash_service.ensure_expense_category(store.id, "RETURN_REFUND")
        codes = [c.code for c in cash_service.list_expense_categories(store.id)]
        assert set(codes) == {"LISTRIK", "RETURN_REFUND"}
        assert db_session.query(ExpenseCategory).filter_by(code="RETURN_REFUND").one().is_system is True
