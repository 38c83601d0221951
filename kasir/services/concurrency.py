# Overview: Unit of work, row locking and retry helpers shared by the ledger services.

from __future__ import annotations

import time
from contextlib import contextmanager

from flask import current_app
from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import ConcurrencyConflict
from ..extensions import db


_DEPTH_KEY = "kasir_uow_depth"


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    On SQLite the unit of work takes the database write lock up front instead.
    """
    return query.with_for_update()


def _begin_immediate_if_sqlite() -> None:
    if db.engine.dialect.name != "sqlite":
        return
    dbapi_connection = db.session.connection().connection.dbapi_connection
    # pysqlite begins lazily; only issue BEGIN when nothing is open yet
    if not dbapi_connection.in_transaction:
        db.session.execute(text("BEGIN IMMEDIATE"))


@contextmanager
def unit_of_work():
    """
    One atomic database transaction spanning both ledgers.

    - Outermost use takes the write lock (BEGIN IMMEDIATE on SQLite),
      commits on success and rolls back on any exception.
    - Nested use joins the outer unit; only the outermost commits.
    """
    session = db.session
    depth = session.info.get(_DEPTH_KEY, 0)
    if depth == 0:
        _begin_immediate_if_sqlite()
    session.info[_DEPTH_KEY] = depth + 1
    try:
        yield session
    except Exception:
        session.info[_DEPTH_KEY] = depth
        if depth == 0:
            session.rollback()
        raise
    session.info[_DEPTH_KEY] = depth
    if depth == 0:
        session.commit()


def in_unit_of_work() -> bool:
    return db.session.info.get(_DEPTH_KEY, 0) > 0


def run_with_retry(func, *, attempts: int | None = None, backoff_base: float | None = None):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts). Raises ConcurrencyConflict once the
    attempts are used up. Inside an enclosing unit of work the operation
    runs once and errors propagate unchanged to the outermost caller,
    since a rollback there would discard the caller's writes.
    """
    if in_unit_of_work():
        return func()

    if attempts is None:
        attempts = current_app.config.get("CONCURRENCY_RETRY_ATTEMPTS", 3)
    if backoff_base is None:
        backoff_base = current_app.config.get("CONCURRENCY_RETRY_BACKOFF", 0.1)
    attempts = max(1, attempts)

    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                break
            current_app.logger.warning(
                "Concurrency conflict (attempt %d/%d): %s", attempt + 1, attempts, exc
            )
            time.sleep(backoff_base * (2 ** attempt))

    current_app.logger.error("Concurrency conflict not resolved after %d attempts", attempts)
    raise ConcurrencyConflict(
        "Operation conflicted with a concurrent update; try again",
        details={"attempts": attempts, "cause": type(last_exc).__name__},
    ) from last_exc
