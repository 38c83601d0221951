# Overview: Pytest coverage for the unit of work, retry helper and daily document sequences.

from datetime import date

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from kasir.errors import ConcurrencyConflict, ValidationError
from kasir.extensions import db
from kasir.models import DailySequence, Store
from kasir.services.concurrency import in_unit_of_work, run_with_retry, unit_of_work
from kasir.services.sequence_service import format_document_number, next_daily_number


def _locked():
    return OperationalError("UPDATE products", {}, Exception("database is locked"))


class TestRunWithRetry:

    def test_retries_until_success(self, db_session):
        calls = []

        def _op():
            calls.append(1)
            if len(calls) < 3:
                raise _locked()
            return "ok"

        assert run_with_retry(_op, attempts=3, backoff_base=0) == "ok"
        assert len(calls) == 3

    def test_exhausted_attempts_raise_conflict(self, db_session):
        def _op():
            raise StaleDataError("version mismatch")

        with pytest.raises(ConcurrencyConflict) as exc:
            run_with_retry(_op, attempts=2, backoff_base=0)

        assert exc.value.retryable is True
        assert exc.value.http_status == 409
        assert exc.value.details == {"attempts": 2, "cause": "StaleDataError"}

    def test_domain_errors_are_not_retried(self, db_session):
        calls = []

        def _op():
            calls.append(1)
            raise ValidationError("bad input")

        with pytest.raises(ValidationError):
            run_with_retry(_op, attempts=3, backoff_base=0)
        assert len(calls) == 1

    def test_inside_unit_of_work_runs_once_and_propagates(self, db_session):
        calls = []

        def _op():
            calls.append(1)
            raise _locked()

        with pytest.raises(OperationalError):
            with unit_of_work():
                run_with_retry(_op, attempts=3, backoff_base=0)
        assert len(calls) == 1


class TestUnitOfWork:

    def test_commits_on_success(self, db_session):
        with unit_of_work():
            db.session.add(Store(name="Toko Baru", code="NEW", timezone="Asia/Jakarta"))

        db.session.rollback()
        assert db.session.query(Store).filter_by(code="NEW").count() == 1

    def test_rolls_back_everything_on_error(self, db_session):
        with pytest.raises(RuntimeError):
            with unit_of_work():
                db.session.add(Store(name="Toko Gagal", code="FAIL", timezone="Asia/Jakarta"))
                db.session.flush()
                raise RuntimeError("boom")

        assert db.session.query(Store).filter_by(code="FAIL").count() == 0
        assert in_unit_of_work() is False

    def test_nested_units_commit_once_at_the_outermost(self, db_session):
        with pytest.raises(RuntimeError):
            with unit_of_work():
                with unit_of_work():
                    assert in_unit_of_work() is True
                    db.session.add(Store(name="Toko Dalam", code="INNER", timezone="Asia/Jakarta"))
                raise RuntimeError("outer fails after inner finished")

        assert db.session.query(Store).filter_by(code="INNER").count() == 0


class TestDailySequence:

    def test_numbers_increase_per_store_type_and_day(self, db_session, store, other_store):
        day = date(2024, 5, 1)
        with unit_of_work():
            assert next_daily_number(store_id=store.id, sequence_type="SALE", day=day) == 1
            assert next_daily_number(store_id=store.id, sequence_type="SALE", day=day) == 2
            assert next_daily_number(store_id=store.id, sequence_type="RETURN", day=day) == 1
            assert next_daily_number(store_id=other_store.id, sequence_type="SALE", day=day) == 1
            assert next_daily_number(store_id=store.id, sequence_type="SALE", day=date(2024, 5, 2)) == 1

        row = db_session.query(DailySequence).filter_by(
            store_id=store.id, sequence_type="SALE", business_date=day
        ).one()
        assert row.next_number == 3

    def test_rolled_back_document_returns_its_number(self, db_session, store):
        day = date(2024, 5, 1)
        with unit_of_work():
            next_daily_number(store_id=store.id, sequence_type="CASH", day=day)

        with pytest.raises(RuntimeError):
            with unit_of_work():
                next_daily_number(store_id=store.id, sequence_type="CASH", day=day)
                raise RuntimeError("document rejected")

        with unit_of_work():
            assert next_daily_number(store_id=store.id, sequence_type="CASH", day=day) == 2

    def test_unknown_sequence_type(self, db_session, store):
        with pytest.raises(ValidationError):
            next_daily_number(store_id=store.id, sequence_type="INVOICE", day=date(2024, 5, 1))

    def test_format(self):
        assert format_document_number("SALE", date(2024, 5, 1), 7) == "TRX-20240501-0007"
        assert format_document_number("RETURN", date(2024, 5, 1), 12) == "RTN-20240501-0012"
        assert format_document_number("CASH", date(2024, 5, 1), 1) == "CSH-20240501-0001"
