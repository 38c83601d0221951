# Overview: Daily document numbers (TRX/RTN/CSH-YYYYMMDD-NNNN) allocated per store and business day.

from __future__ import annotations

from datetime import date, datetime

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..errors import NotFound, ValidationError
from ..extensions import db
from ..models import DailySequence, Store
from kasir.time_utils import business_date, utcnow


SEQUENCE_PREFIXES = {
    "SALE": "TRX",
    "RETURN": "RTN",
    "CASH": "CSH",
}


def store_timezone(store_id: int) -> str:
    store = db.session.get(Store, store_id)
    if not store:
        raise NotFound(f"Store {store_id} not found", details={"store_id": store_id})
    return store.timezone or current_app.config["BUSINESS_TIMEZONE"]


def business_date_for(store_id: int, at: datetime | None = None) -> date:
    """Business calendar day of `at` (default now) in the store's time zone."""
    return business_date(at or utcnow(), store_timezone(store_id))


def _read_allocated(store_id: int, sequence_type: str, day: date) -> int:
    current = (
        db.session.query(DailySequence.next_number)
        .filter_by(store_id=store_id, sequence_type=sequence_type, business_date=day)
        .scalar()
    )
    return current - 1


def next_daily_number(*, store_id: int, sequence_type: str, day: date) -> int:
    """
    Atomically allocate the next number for (store, type, business day).

    Numbers start at 1 every day and only move forward. Call it inside the
    caller's unit of work; an aborted document rolls its number back with it.
    """
    if not store_id:
        raise ValidationError("store_id is required")
    if sequence_type not in SEQUENCE_PREFIXES:
        raise ValidationError(f"Unknown sequence type {sequence_type!r}")

    stmt = (
        update(DailySequence)
        .where(
            DailySequence.store_id == store_id,
            DailySequence.sequence_type == sequence_type,
            DailySequence.business_date == day,
        )
        .values(next_number=DailySequence.next_number + 1)
        .execution_options(synchronize_session=False)
    )

    result = db.session.execute(stmt)
    if result.rowcount:
        return _read_allocated(store_id, sequence_type, day)

    try:
        with db.session.begin_nested():
            db.session.add(
                DailySequence(
                    store_id=store_id,
                    sequence_type=sequence_type,
                    business_date=day,
                    next_number=2,
                )
            )
        return 1
    except IntegrityError:
        # Another writer created today's row first
        result = db.session.execute(stmt)
        if not result.rowcount:
            raise
        return _read_allocated(store_id, sequence_type, day)


def format_document_number(sequence_type: str, day: date, number: int) -> str:
    return f"{SEQUENCE_PREFIXES[sequence_type]}-{day:%Y%m%d}-{number:04d}"


def allocate_document_number(
    *, store_id: int, sequence_type: str, at: datetime | None = None
) -> tuple[date, int, str]:
    """Allocate a number for a new document: (business_date, daily_number, formatted)."""
    day = business_date_for(store_id, at)
    number = next_daily_number(store_id=store_id, sequence_type=sequence_type, day=day)
    return day, number, format_document_number(sequence_type, day, number)
