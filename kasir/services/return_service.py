# Overview: Return processor; restocks returned goods and refunds them through the cash ledger.

from __future__ import annotations

from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import func

from ..errors import ExcessiveReturnQuantity, InvalidState, NotFound, ReturnWindowExpired, ValidationError
from ..extensions import db
from ..models import Return, ReturnLine, Sale, StockMovement
from ..models.enums import (
    POSTED_SALE_STATUSES,
    CashCategoryType,
    CashTransactionType,
    MovementType,
    PaymentMethod,
    ReferenceType,
    ReturnStatus,
)
from ..validation import coerce_enum, coerce_positive_int, normalize_items
from kasir.time_utils import business_day_bounds, to_utc_z
from .audit_service import append_audit_event
from .cash_service import ensure_expense_category, record_cash_transaction
from .concurrency import lock_for_update, run_with_retry, unit_of_work
from .query_utils import paginate
from .sequence_service import allocate_document_number, business_date_for, store_timezone
from .stock_service import record_movement
"""
Return invariants (authoritative)

- Only COMPLETED or LOCKED sales can be returned, and only inside the
  return window (RETURN_WINDOW_DAYS business days, counted from the start
  of the business day that many days ago).
- Per original sale line, the quantities returned across all returns never
  exceed the quantity sold.
- Refunds use the price paid on the original sale line.
- A return is all-or-nothing: its lines, its RETURN movements and its
  refund entry commit together.
"""


def return_window_start(store_id: int) -> datetime | None:
    """Earliest completion time still eligible for return, or None when there is no window."""
    days = current_app.config.get("RETURN_WINDOW_DAYS")
    if days is None:
        return None
    first_day = business_date_for(store_id) - timedelta(days=days)
    start, _ = business_day_bounds(first_day, store_timezone(store_id))
    return start


def get_returned_quantities(sale_id: int) -> dict[int, int]:
    """Quantity already returned per original sale line id."""
    rows = (
        db.session.query(ReturnLine.original_sale_line_id, func.coalesce(func.sum(ReturnLine.quantity), 0))
        .join(Return, Return.id == ReturnLine.return_id)
        .filter(Return.original_sale_id == sale_id)
        .group_by(ReturnLine.original_sale_line_id)
        .all()
    )
    return {line_id: int(qty) for line_id, qty in rows}


def create_return(
    store_id: int,
    cashier_id: int,
    sale_id: int,
    items,
    notes: str | None = None,
    refund_method=PaymentMethod.CASH,
) -> Return:
    cashier_id = coerce_positive_int(cashier_id, "cashier_id")
    quantities = normalize_items(items, allow_empty=False)
    refund_method = coerce_enum(PaymentMethod, refund_method, "refund_method")

    def _op():
        with unit_of_work():
            sale = (
                lock_for_update(db.session.query(Sale).filter_by(id=sale_id, store_id=store_id))
                .populate_existing()
                .first()
            )
            if not sale:
                raise NotFound(f"Sale {sale_id} not found", details={"sale_id": sale_id})
            if sale.status not in POSTED_SALE_STATUSES:
                raise InvalidState(
                    f"Only completed sales can be returned (status {sale.status})",
                    details={"sale_id": sale.id, "status": sale.status},
                )

            window_start = return_window_start(store_id)
            if window_start is not None and sale.completed_at < window_start:
                raise ReturnWindowExpired(
                    "Sale is outside the return window",
                    details={
                        "sale_id": sale.id,
                        "completed_at": to_utc_z(sale.completed_at),
                        "window_start": to_utc_z(window_start),
                        "return_window_days": current_app.config.get("RETURN_WINDOW_DAYS"),
                    },
                )

            lines_by_product = {line.product_id: line for line in sale.lines}
            missing = [pid for pid in quantities if pid not in lines_by_product]
            if missing:
                raise ValidationError(
                    "Returned products must be on the original sale",
                    details={"product_ids": missing},
                )

            already_returned = get_returned_quantities(sale.id)
            excess = []
            for product_id, quantity in quantities.items():
                line = lines_by_product[product_id]
                returned = already_returned.get(line.id, 0)
                remaining = line.quantity - returned
                if quantity > remaining:
                    excess.append({
                        "product_id": product_id,
                        "sale_line_id": line.id,
                        "sold_quantity": line.quantity,
                        "returned_quantity": returned,
                        "requested_quantity": quantity,
                        "returnable_quantity": remaining,
                    })
            if excess:
                raise ExcessiveReturnQuantity(
                    "Return quantity exceeds the quantity still returnable",
                    details={"items": excess},
                )

            day, number, rtn = allocate_document_number(store_id=store_id, sequence_type="RETURN")
            ret = Return(
                store_id=store_id,
                original_sale_id=sale.id,
                cashier_id=cashier_id,
                business_date=day,
                daily_number=number,
                return_number=rtn,
                status=ReturnStatus.COMPLETED.value,
                refund_method=refund_method.value,
                notes=notes,
                refund_total_cents=0,
            )
            db.session.add(ret)
            db.session.flush()

            refund_total = 0
            for product_id in sorted(quantities):
                line = lines_by_product[product_id]
                quantity = quantities[product_id]
                original = db.session.get(StockMovement, line.stock_movement_id) if line.stock_movement_id else None
                movement = record_movement(
                    store_id,
                    product_id,
                    MovementType.RETURN,
                    quantity,
                    ReferenceType.RETURN,
                    reference_id=ret.id,
                    cost_per_unit_cents=original.unit_cost_cents if original else None,
                    notes=f"Return {rtn} for {sale.transaction_number}",
                    actor_user_id=cashier_id,
                )
                subtotal = line.unit_price_cents * quantity
                refund_total += subtotal
                ret.lines.append(ReturnLine(
                    original_sale_line_id=line.id,
                    product_id=product_id,
                    quantity=quantity,
                    unit_price_cents=line.unit_price_cents,
                    subtotal_cents=subtotal,
                    stock_movement_id=movement.id,
                ))

            ret.refund_total_cents = refund_total
            db.session.flush()

            category = ensure_expense_category(store_id, "RETURN_REFUND")
            refund = record_cash_transaction(
                store_id=store_id,
                transaction_type=CashTransactionType.EXPENSE,
                amount_cents=refund_total,
                payment_method=refund_method,
                category_id=category.id,
                category_type=CashCategoryType.RETURN,
                return_id=ret.id,
                description=f"Refund {rtn} for {sale.transaction_number}",
                notes=notes,
                actor_user_id=cashier_id,
            )

            append_audit_event(
                store_id=store_id,
                event_type="RETURN_CREATED",
                event_category="returns",
                entity_type="return",
                entity_id=ret.id,
                actor_user_id=cashier_id,
                payload={
                    "sale_id": sale.id,
                    "refund_total_cents": refund_total,
                    "cash_transaction_id": refund.id,
                },
            )
            return ret

    ret = run_with_retry(_op)
    current_app.logger.info(
        "Return %s created for sale %s: refund=%s", ret.return_number, ret.original_sale_id, ret.refund_total_cents
    )
    return ret


def get_return(return_id: int, store_id: int | None = None) -> Return:
    query = db.session.query(Return).filter(Return.id == return_id)
    if store_id is not None:
        query = query.filter(Return.store_id == store_id)
    ret = query.first()
    if not ret:
        raise NotFound(f"Return {return_id} not found", details={"return_id": return_id})
    return ret


def list_returns(
    store_id: int,
    *,
    sale_id: int | None = None,
    cashier_id: int | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    page: int | None = 1,
    per_page: int | None = 20,
) -> dict:
    query = db.session.query(Return).filter(Return.store_id == store_id)
    if sale_id is not None:
        query = query.filter(Return.original_sale_id == sale_id)
    if cashier_id is not None:
        query = query.filter(Return.cashier_id == cashier_id)
    if start is not None:
        query = query.filter(Return.created_at >= start)
    if end is not None:
        query = query.filter(Return.created_at <= end)
    query = query.order_by(Return.created_at.desc(), Return.id.desc())
    return paginate(query, page=page, per_page=per_page, serialize=lambda r: r.to_dict(include_lines=True))


def list_returnable_sales(store_id: int, cashier_id: int | None = None) -> list[dict]:
    """Sales inside the return window that still have something left to return."""
    query = db.session.query(Sale).filter(
        Sale.store_id == store_id,
        Sale.status.in_(POSTED_SALE_STATUSES),
    )
    window_start = return_window_start(store_id)
    if window_start is not None:
        query = query.filter(Sale.completed_at >= window_start)
    if cashier_id is not None:
        query = query.filter(Sale.cashier_id == cashier_id)

    results = []
    for sale in query.order_by(Sale.completed_at.desc(), Sale.id.desc()).all():
        returned = get_returned_quantities(sale.id)
        lines = []
        for line in sale.lines:
            data = line.to_dict()
            data["returned_quantity"] = returned.get(line.id, 0)
            data["returnable_quantity"] = line.quantity - data["returned_quantity"]
            lines.append(data)
        if not any(line["returnable_quantity"] > 0 for line in lines):
            continue
        data = sale.to_dict()
        data["lines"] = lines
        results.append(data)
    return results
