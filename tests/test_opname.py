# Overview: Pytest coverage for stock opname (physical count) recording and processing.

import pytest

from kasir.errors import InvalidState, NotFound, ValidationError
from kasir.models import Product, StockMovement
from kasir.services import opname_service, stock_service

from tests.conftest import CASHIER_ID


class TestStockOpname:

    def test_count_records_system_quantity_and_difference(self, db_session, store, make_product):
        product = make_product(qty=10)

        opname = opname_service.create_opname(store.id, product.id, 8, notes="Rak 3", actor_user_id=CASHIER_ID)

        assert opname.system_qty == 10
        assert opname.actual_qty == 8
        assert opname.difference == -2
        assert opname.processed is False
        assert db_session.get(Product, product.id).qty == 10

    def test_processing_posts_adjustment(self, db_session, store, make_product):
        product = make_product(qty=10)
        opname = opname_service.create_opname(store.id, product.id, 8)

        opname = opname_service.process_opname(opname.id, store_id=store.id, actor_user_id=CASHIER_ID)

        assert opname.processed is True
        assert opname.processed_by_user_id == CASHIER_ID
        movement = db_session.get(StockMovement, opname.stock_movement_id)
        assert movement.movement_type == "ADJUSTMENT"
        assert movement.reference_type == "OPNAME"
        assert movement.quantity_delta == -2
        assert db_session.get(Product, product.id).qty == 8
        assert stock_service.replay_product_ledger(store.id, product.id)["consistent"] is True

    def test_sales_between_count_and_processing_are_kept(self, db_session, store, make_product, sell):
        product = make_product(qty=10)
        opname = opname_service.create_opname(store.id, product.id, 8)
        sell([(product, 3)])

        opname = opname_service.process_opname(opname.id)

        assert db_session.get(Product, product.id).qty == 8
        assert db_session.get(StockMovement, opname.stock_movement_id).quantity_delta == 1

    def test_matching_count_posts_nothing(self, db_session, store, make_product):
        product = make_product(qty=10)
        opname = opname_service.create_opname(store.id, product.id, 10)

        opname = opname_service.process_opname(opname.id)

        assert opname.processed is True
        assert opname.stock_movement_id is None
        assert db_session.query(StockMovement).filter_by(reference_type="OPNAME").count() == 0

    def test_cannot_process_twice(self, db_session, store, make_product):
        product = make_product(qty=10)
        opname = opname_service.create_opname(store.id, product.id, 9)
        opname_service.process_opname(opname.id)

        with pytest.raises(InvalidState):
            opname_service.process_opname(opname.id)
        assert db_session.get(Product, product.id).qty == 9

    def test_invalid_counts(self, db_session, store, make_product):
        product = make_product(qty=10)
        with pytest.raises(ValidationError):
            opname_service.create_opname(store.id, product.id, -1)
        with pytest.raises(NotFound):
            opname_service.create_opname(store.id, 424242, 5)
        with pytest.raises(NotFound):
            opname_service.process_opname(424242)

    def test_list_opnames_by_processed_flag(self, db_session, store, make_product):
        product = make_product(qty=10)
        done = opname_service.create_opname(store.id, product.id, 9)
        opname_service.process_opname(done.id)
        pending = opname_service.create_opname(store.id, product.id, 9)

        result = opname_service.list_opnames(store.id, processed=False, page=None)

        assert [o["id"] for o in result["items"]] == [pending.id]
