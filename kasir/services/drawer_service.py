# Overview: Cash drawer shifts; open, reconcile against the cash ledger, and close.

from __future__ import annotations

from datetime import datetime

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..errors import DrawerAlreadyOpen, DrawerNotFound, ValidationError
from ..extensions import db
from ..models import CashDrawer, Sale
from ..models.enums import (
    DRAWER_TRANSITIONS,
    POSTED_SALE_STATUSES,
    DrawerStatus,
    PaymentMethod,
    ensure_transition,
)
from ..validation import coerce_amount, coerce_enum, coerce_positive_int
from kasir.time_utils import utcnow
from .audit_service import append_audit_event
from .cash_service import get_cashier_cash_totals
from .concurrency import lock_for_update, run_with_retry, unit_of_work
from .query_utils import paginate


def _find_open_drawer(cashier_id: int) -> CashDrawer | None:
    return (
        db.session.query(CashDrawer)
        .filter(CashDrawer.cashier_id == cashier_id, CashDrawer.status == DrawerStatus.OPEN.value)
        .first()
    )


def _lock_drawer(drawer_id: int, store_id: int | None) -> CashDrawer:
    query = db.session.query(CashDrawer).filter(CashDrawer.id == drawer_id)
    if store_id is not None:
        query = query.filter(CashDrawer.store_id == store_id)
    drawer = lock_for_update(query).populate_existing().first()
    if not drawer:
        raise DrawerNotFound(f"Cash drawer {drawer_id} not found", details={"drawer_id": drawer_id})
    return drawer


def _shift_totals(drawer: CashDrawer, until: datetime) -> dict:
    totals = get_cashier_cash_totals(drawer.store_id, drawer.cashier_id, drawer.shift_start_time, until)
    totals["expected_balance_cents"] = (
        drawer.opening_balance_cents + totals["cash_in_cents"] - totals["cash_out_cents"]
    )
    return totals


def open_drawer(store_id: int, cashier_id: int, opening_balance_cents=0, notes: str | None = None) -> CashDrawer:
    cashier_id = coerce_positive_int(cashier_id, "cashier_id")
    opening_balance_cents = coerce_amount(opening_balance_cents, "opening_balance_cents", allow_zero=True)

    def _already_open(existing: CashDrawer | None):
        return DrawerAlreadyOpen(
            "Cashier already has an open cash drawer",
            details={
                "cashier_id": cashier_id,
                "drawer_id": existing.id if existing else None,
                "store_id": existing.store_id if existing else None,
            },
        )

    def _op():
        with unit_of_work():
            existing = _find_open_drawer(cashier_id)
            if existing:
                raise _already_open(existing)

            drawer = CashDrawer(
                store_id=store_id,
                cashier_id=cashier_id,
                shift_start_time=utcnow(),
                opening_balance_cents=opening_balance_cents,
                cash_in_cents=0,
                cash_out_cents=0,
                status=DrawerStatus.OPEN.value,
                notes=notes,
            )
            try:
                with db.session.begin_nested():
                    db.session.add(drawer)
            except IntegrityError:
                raise _already_open(_find_open_drawer(cashier_id))

            append_audit_event(
                store_id=store_id,
                event_type="DRAWER_OPENED",
                event_category="drawers",
                entity_type="cash_drawer",
                entity_id=drawer.id,
                actor_user_id=cashier_id,
                payload={"opening_balance_cents": opening_balance_cents},
            )
            return drawer

    return run_with_retry(_op)


def close_drawer(
    drawer_id: int,
    counted_closing_balance_cents,
    notes: str | None = None,
    store_id: int | None = None,
    actor_user_id: int | None = None,
) -> CashDrawer:
    """
    Close a shift with a physical count.

    expected = opening + cash_in - cash_out over [shift_start, now];
    difference = counted - expected decides BALANCED / OVER / SHORT.
    """
    counted = coerce_amount(counted_closing_balance_cents, "closing_balance_cents", allow_zero=True)

    def _op():
        with unit_of_work():
            drawer = _lock_drawer(drawer_id, store_id)
            ensure_transition(DRAWER_TRANSITIONS, drawer.status, DrawerStatus.CLOSED, entity="cash drawer", action="close")

            now = utcnow()
            totals = _shift_totals(drawer, now)
            expected = totals["expected_balance_cents"]
            difference = counted - expected
            if difference == 0:
                status = DrawerStatus.BALANCED
            elif difference > 0:
                status = DrawerStatus.OVER
            else:
                status = DrawerStatus.SHORT

            drawer.cash_in_cents = totals["cash_in_cents"]
            drawer.cash_out_cents = totals["cash_out_cents"]
            drawer.expected_balance_cents = expected
            drawer.closing_balance_cents = counted
            drawer.difference_cents = difference
            drawer.status = status.value
            drawer.shift_end_time = now
            drawer.closed_by_user_id = actor_user_id or drawer.cashier_id
            if notes is not None:
                drawer.notes = notes

            append_audit_event(
                store_id=drawer.store_id,
                event_type="DRAWER_CLOSED",
                event_category="drawers",
                entity_type="cash_drawer",
                entity_id=drawer.id,
                actor_user_id=drawer.closed_by_user_id,
                payload={
                    "expected_balance_cents": expected,
                    "closing_balance_cents": counted,
                    "difference_cents": difference,
                    "status": status.value,
                },
            )
            return drawer

    drawer = run_with_retry(_op)
    current_app.logger.info(
        "Drawer %s closed for cashier %s: expected=%s counted=%s difference=%s (%s)",
        drawer.id,
        drawer.cashier_id,
        drawer.expected_balance_cents,
        drawer.closing_balance_cents,
        drawer.difference_cents,
        drawer.status,
    )
    return drawer


def force_close_drawer(
    drawer_id: int,
    actor_user_id: int | None,
    reason: str,
    store_id: int | None = None,
) -> CashDrawer:
    """Close a shift without a count (status CLOSED). The expected balance is still recorded."""
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("reason is required to force-close a drawer")

    def _op():
        with unit_of_work():
            drawer = _lock_drawer(drawer_id, store_id)
            ensure_transition(DRAWER_TRANSITIONS, drawer.status, DrawerStatus.CLOSED, entity="cash drawer", action="force-close")

            now = utcnow()
            totals = _shift_totals(drawer, now)
            drawer.cash_in_cents = totals["cash_in_cents"]
            drawer.cash_out_cents = totals["cash_out_cents"]
            drawer.expected_balance_cents = totals["expected_balance_cents"]
            drawer.status = DrawerStatus.CLOSED.value
            drawer.shift_end_time = now
            drawer.closed_by_user_id = actor_user_id
            drawer.notes = reason

            append_audit_event(
                store_id=drawer.store_id,
                event_type="DRAWER_FORCE_CLOSED",
                event_category="drawers",
                entity_type="cash_drawer",
                entity_id=drawer.id,
                actor_user_id=actor_user_id,
                note=reason,
                payload={"expected_balance_cents": drawer.expected_balance_cents},
            )
            return drawer

    drawer = run_with_retry(_op)
    current_app.logger.warning("Drawer %s force-closed by %s: %s", drawer.id, actor_user_id, reason)
    return drawer


def get_current_drawer(cashier_id: int) -> dict | None:
    """
    The cashier's OPEN drawer with live totals, or None.

    A cashier holds at most one open drawer across all stores, so this is
    the same drawer open_drawer rejects against; its store_id says where.
    """
    drawer = _find_open_drawer(cashier_id)
    if not drawer:
        return None
    data = drawer.to_dict()
    totals = _shift_totals(drawer, utcnow())
    data["cash_in_cents"] = totals["cash_in_cents"]
    data["cash_out_cents"] = totals["cash_out_cents"]
    data["expected_balance_cents"] = totals["expected_balance_cents"]
    return data


def get_drawer(drawer_id: int, store_id: int | None = None) -> dict:
    """Drawer with the CASH sales its cashier completed during the shift."""
    query = db.session.query(CashDrawer).filter(CashDrawer.id == drawer_id)
    if store_id is not None:
        query = query.filter(CashDrawer.store_id == store_id)
    drawer = query.first()
    if not drawer:
        raise DrawerNotFound(f"Cash drawer {drawer_id} not found", details={"drawer_id": drawer_id})

    shift_end = drawer.shift_end_time or utcnow()
    sales = (
        db.session.query(Sale)
        .filter(
            Sale.store_id == drawer.store_id,
            Sale.cashier_id == drawer.cashier_id,
            Sale.payment_method == PaymentMethod.CASH.value,
            Sale.status.in_(POSTED_SALE_STATUSES),
            Sale.completed_at >= drawer.shift_start_time,
            Sale.completed_at <= shift_end,
        )
        .order_by(Sale.completed_at.asc(), Sale.id.asc())
        .all()
    )

    data = drawer.to_dict()
    if drawer.status == DrawerStatus.OPEN.value:
        totals = _shift_totals(drawer, shift_end)
        data.update(totals)
    data["sales"] = [s.to_dict() for s in sales]
    data["sales_total_cents"] = sum(s.total_cents for s in sales)
    return data


def list_drawers(
    store_id: int,
    *,
    cashier_id: int | None = None,
    status=None,
    start: datetime | None = None,
    end: datetime | None = None,
    page: int | None = 1,
    per_page: int | None = 20,
) -> dict:
    query = db.session.query(CashDrawer).filter(CashDrawer.store_id == store_id)
    if cashier_id is not None:
        query = query.filter(CashDrawer.cashier_id == cashier_id)
    if status:
        query = query.filter(CashDrawer.status == coerce_enum(DrawerStatus, status, "status").value)
    if start is not None:
        query = query.filter(CashDrawer.shift_start_time >= start)
    if end is not None:
        query = query.filter(CashDrawer.shift_start_time <= end)
    query = query.order_by(CashDrawer.shift_start_time.desc(), CashDrawer.id.desc())
    return paginate(query, page=page, per_page=per_page, serialize=lambda d: d.to_dict())
