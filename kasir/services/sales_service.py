# Overview: Sale transaction engine; drives the DRAFT -> COMPLETED -> LOCKED lifecycle across both ledgers.

"""
Sales service: document-first sale processing.

Stock and cash are posted together when a sale completes, and reversed
together when a completed sale is voided. Each of those runs in a single
unit of work, so a sale is never half-posted.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta

from flask import current_app

from ..errors import InsufficientPayment, InvalidState, NotFound, ValidationError
from ..extensions import db
from ..models import Product, Sale, SaleLine, StockMovement
from ..models.enums import (
    SALE_TRANSITIONS,
    CashCategoryType,
    CashTransactionType,
    MovementType,
    PaymentMethod,
    ReferenceType,
    SaleStatus,
    ensure_transition,
)
from ..validation import coerce_amount, coerce_enum, coerce_positive_int, normalize_items
from kasir.time_utils import utcnow
from .audit_service import append_audit_event
from .cash_service import ensure_expense_category, post_sale_income, record_cash_transaction
from .concurrency import lock_for_update, run_with_retry, unit_of_work
from .query_utils import paginate
from .sequence_service import allocate_document_number, business_date_for
from .stock_service import record_movement


def _sale_query(sale_id: int, store_id: int | None):
    query = db.session.query(Sale).filter(Sale.id == sale_id)
    if store_id is not None:
        query = query.filter(Sale.store_id == store_id)
    return query


def _lock_sale(sale_id: int, store_id: int | None) -> Sale:
    sale = lock_for_update(_sale_query(sale_id, store_id)).populate_existing().first()
    if not sale:
        raise NotFound(f"Sale {sale_id} not found", details={"sale_id": sale_id})
    return sale


def get_sale(sale_id: int, store_id: int | None = None) -> Sale:
    sale = _sale_query(sale_id, store_id).first()
    if not sale:
        raise NotFound(f"Sale {sale_id} not found", details={"sale_id": sale_id})
    return sale


def _load_sellable_products(store_id: int, product_ids) -> dict[int, Product]:
    """Products that may be put on a sale: in this store, active and priced."""
    product_ids = list(product_ids)
    if not product_ids:
        return {}
    products = {
        p.id: p
        for p in db.session.query(Product)
        .filter(Product.store_id == store_id, Product.id.in_(product_ids))
        .all()
    }
    for product_id in product_ids:
        product = products.get(product_id)
        if not product:
            raise NotFound(f"Product {product_id} not found", details={"product_id": product_id})
        if not product.is_active:
            raise ValidationError(f"Product {product.name} is not active", details={"product_id": product_id})
        if not product.price_cents or product.price_cents <= 0:
            raise ValidationError(f"Product {product.name} has no price", details={"product_id": product_id})
    return products


def _recompute_total(sale: Sale) -> None:
    sale.total_cents = sum(line.subtotal_cents for line in sale.lines)


def create_sale(store_id: int, cashier_id: int, items=None, notes: str | None = None) -> Sale:
    """
    Create a new DRAFT sale.

    Repeated products are merged into one line. The catalog price is
    snapshotted onto each line. An empty draft is allowed.
    """
    cashier_id = coerce_positive_int(cashier_id, "cashier_id")
    quantities = normalize_items(items)

    def _op():
        with unit_of_work():
            products = _load_sellable_products(store_id, quantities.keys())
            day, number, trx = allocate_document_number(store_id=store_id, sequence_type="SALE")

            sale = Sale(
                store_id=store_id,
                cashier_id=cashier_id,
                business_date=day,
                daily_number=number,
                transaction_number=trx,
                status=SaleStatus.DRAFT.value,
                notes=notes,
                total_cents=0,
            )
            for product_id, quantity in quantities.items():
                price = products[product_id].price_cents
                sale.lines.append(SaleLine(
                    product_id=product_id,
                    quantity=quantity,
                    unit_price_cents=price,
                    subtotal_cents=price * quantity,
                ))
            _recompute_total(sale)
            db.session.add(sale)
            db.session.flush()

            append_audit_event(
                store_id=store_id,
                event_type="SALE_CREATED",
                event_category="sales",
                entity_type="sale",
                entity_id=sale.id,
                actor_user_id=cashier_id,
                note=f"Sale {trx} created",
            )
            return sale

    return run_with_retry(_op)


def update_sale(sale_id: int, items, store_id: int | None = None, notes: str | None = None) -> Sale:
    """
    Replace the lines of a DRAFT sale.

    Products already on the draft keep their snapshotted price; products
    new to the draft take the current catalog price.
    """
    quantities = normalize_items(items)

    def _op():
        with unit_of_work():
            sale = _lock_sale(sale_id, store_id)
            if sale.status != SaleStatus.DRAFT.value:
                raise InvalidState(
                    f"Only DRAFT sales can be edited (status {sale.status})",
                    details={"sale_id": sale.id, "status": sale.status},
                )

            existing = {line.product_id: line for line in sale.lines}
            new_ids = [pid for pid in quantities if pid not in existing]
            products = _load_sellable_products(sale.store_id, new_ids)

            for product_id, line in list(existing.items()):
                if product_id not in quantities:
                    sale.lines.remove(line)
                    continue
                line.quantity = quantities[product_id]
                line.subtotal_cents = line.unit_price_cents * line.quantity

            for product_id in new_ids:
                price = products[product_id].price_cents
                quantity = quantities[product_id]
                sale.lines.append(SaleLine(
                    product_id=product_id,
                    quantity=quantity,
                    unit_price_cents=price,
                    subtotal_cents=price * quantity,
                ))

            if notes is not None:
                sale.notes = notes
            _recompute_total(sale)
            db.session.flush()
            return sale

    return run_with_retry(_op)


def complete_sale(
    sale_id: int,
    payment_amount_cents,
    payment_method,
    store_id: int | None = None,
    actor_user_id: int | None = None,
) -> Sale:
    """
    DRAFT -> COMPLETED.

    In one unit of work: one OUT movement per line (product id order),
    the status change, and exactly one INCOME cash entry for the total.
    Any failure rolls all of it back.
    """
    payment_amount_cents = coerce_amount(payment_amount_cents, "payment_amount_cents", allow_zero=True)
    payment_method = coerce_enum(PaymentMethod, payment_method, "payment_method")

    def _op():
        with unit_of_work():
            sale = _lock_sale(sale_id, store_id)
            ensure_transition(SALE_TRANSITIONS, sale.status, SaleStatus.COMPLETED, entity="sale", action="complete")

            lines = sorted(sale.lines, key=lambda line: line.product_id)
            if not lines:
                raise ValidationError("Cannot complete a sale with no items", details={"sale_id": sale.id})

            _recompute_total(sale)
            if payment_amount_cents < sale.total_cents:
                raise InsufficientPayment(
                    "Payment amount is less than the sale total",
                    details={
                        "total_cents": sale.total_cents,
                        "payment_amount_cents": payment_amount_cents,
                        "shortfall_cents": sale.total_cents - payment_amount_cents,
                    },
                )

            for line in lines:
                movement = record_movement(
                    sale.store_id,
                    line.product_id,
                    MovementType.OUT,
                    line.quantity,
                    ReferenceType.SALE,
                    reference_id=sale.id,
                    notes=f"Sale {sale.transaction_number}",
                    actor_user_id=actor_user_id or sale.cashier_id,
                )
                line.stock_movement_id = movement.id

            sale.status = SaleStatus.COMPLETED.value
            sale.completed_at = utcnow()
            sale.payment_amount_cents = payment_amount_cents
            sale.payment_method = payment_method.value
            sale.change_cents = payment_amount_cents - sale.total_cents

            cash_tx = post_sale_income(sale, actor_user_id=actor_user_id)

            append_audit_event(
                store_id=sale.store_id,
                event_type="SALE_COMPLETED",
                event_category="sales",
                entity_type="sale",
                entity_id=sale.id,
                actor_user_id=actor_user_id or sale.cashier_id,
                occurred_at=sale.completed_at,
                payload={
                    "total_cents": sale.total_cents,
                    "payment_method": sale.payment_method,
                    "cash_transaction_id": cash_tx.id,
                },
            )
            return sale

    sale = run_with_retry(_op)
    current_app.logger.info(
        "Sale %s completed: total=%s method=%s", sale.transaction_number, sale.total_cents, sale.payment_method
    )
    return sale


def delete_sale(
    sale_id: int,
    actor_user_id: int | None,
    reason: str | None = None,
    store_id: int | None = None,
) -> Sale:
    """
    Soft-delete a sale.

    - DRAFT: status change only.
    - COMPLETED: stock goes back in (IN, SALE_VOID, at the original unit
      cost) and the money goes out (EXPENSE linked by reversed_sale_id).
      Rejected when the sale already has returns.
    """
    def _op():
        with unit_of_work():
            sale = _lock_sale(sale_id, store_id)
            ensure_transition(SALE_TRANSITIONS, sale.status, SaleStatus.DELETED, entity="sale", action="delete")
            was_completed = sale.status == SaleStatus.COMPLETED.value

            if was_completed:
                if sale.returns:
                    raise InvalidState(
                        "Cannot delete a sale that has returns",
                        details={"sale_id": sale.id, "return_ids": [r.id for r in sale.returns]},
                    )

                for line in sorted(sale.lines, key=lambda line: line.product_id):
                    original = db.session.get(StockMovement, line.stock_movement_id) if line.stock_movement_id else None
                    record_movement(
                        sale.store_id,
                        line.product_id,
                        MovementType.IN,
                        line.quantity,
                        ReferenceType.SALE_VOID,
                        reference_id=sale.id,
                        cost_per_unit_cents=original.unit_cost_cents if original else None,
                        notes=f"Void sale {sale.transaction_number}",
                        actor_user_id=actor_user_id,
                    )

                category = ensure_expense_category(sale.store_id, "SALE_VOID")
                record_cash_transaction(
                    store_id=sale.store_id,
                    transaction_type=CashTransactionType.EXPENSE,
                    amount_cents=sale.total_cents,
                    payment_method=sale.payment_method or PaymentMethod.CASH,
                    category_id=category.id,
                    category_type=CashCategoryType.SALE_VOID,
                    reversed_sale_id=sale.id,
                    description=f"Void sale {sale.transaction_number}",
                    notes=reason,
                    actor_user_id=actor_user_id,
                )

            sale.status = SaleStatus.DELETED.value
            sale.deleted_at = utcnow()
            sale.deleted_by_user_id = actor_user_id
            sale.delete_reason = reason

            append_audit_event(
                store_id=sale.store_id,
                event_type="SALE_VOIDED" if was_completed else "SALE_DELETED",
                event_category="sales",
                entity_type="sale",
                entity_id=sale.id,
                actor_user_id=actor_user_id,
                note=reason,
                payload={"total_cents": sale.total_cents, "reversed": was_completed},
            )
            return sale, was_completed

    sale, was_completed = run_with_retry(_op)
    if was_completed:
        current_app.logger.info("Sale %s voided: total=%s", sale.transaction_number, sale.total_cents)
    return sale


def lock_sale(sale_id: int, store_id: int | None = None) -> Sale:
    """COMPLETED -> LOCKED. Locked sales can still be returned, never edited or voided."""
    def _op():
        with unit_of_work():
            sale = _lock_sale(sale_id, store_id)
            ensure_transition(SALE_TRANSITIONS, sale.status, SaleStatus.LOCKED, entity="sale", action="lock")
            sale.status = SaleStatus.LOCKED.value
            sale.locked_at = utcnow()
            return sale

    return run_with_retry(_op)


def lock_sales_for_day(store_id: int, business_date: date | None = None) -> int:
    """
    Lock every COMPLETED sale of one business day.

    Defaults to the previous business day, the day that has just closed
    when this runs at midnight. Returns the number of sales locked.
    """
    if business_date is None:
        business_date = business_date_for(store_id) - timedelta(days=1)

    def _op():
        with unit_of_work():
            sales = (
                lock_for_update(
                    db.session.query(Sale).filter(
                        Sale.store_id == store_id,
                        Sale.business_date == business_date,
                        Sale.status == SaleStatus.COMPLETED.value,
                    )
                )
                .order_by(Sale.id.asc())
                .all()
            )
            now = utcnow()
            for sale in sales:
                sale.status = SaleStatus.LOCKED.value
                sale.locked_at = now

            if sales:
                append_audit_event(
                    store_id=store_id,
                    event_type="SALES_DAY_LOCKED",
                    event_category="sales",
                    entity_type="store",
                    entity_id=store_id,
                    payload={"business_date": business_date.isoformat(), "count": len(sales)},
                )
            return len(sales)

    count = run_with_retry(_op)
    current_app.logger.info("Locked %d sales for store %s on %s", count, store_id, business_date.isoformat())
    return count


def list_sales(
    store_id: int,
    *,
    status=None,
    cashier_id: int | None = None,
    business_date: date | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    search: str | None = None,
    include_deleted: bool = False,
    page: int | None = 1,
    per_page: int | None = 20,
) -> dict:
    query = db.session.query(Sale).filter(Sale.store_id == store_id)
    if status:
        query = query.filter(Sale.status == coerce_enum(SaleStatus, status, "status").value)
    elif not include_deleted:
        query = query.filter(Sale.status != SaleStatus.DELETED.value)
    if cashier_id is not None:
        query = query.filter(Sale.cashier_id == cashier_id)
    if business_date is not None:
        query = query.filter(Sale.business_date == business_date)
    if start is not None:
        query = query.filter(Sale.created_at >= start)
    if end is not None:
        query = query.filter(Sale.created_at <= end)
    if search:
        query = query.filter(Sale.transaction_number.ilike(f"%{search.strip()}%"))

    query = query.order_by(Sale.created_at.desc(), Sale.id.desc())
    return paginate(query, page=page, per_page=per_page, serialize=lambda s: s.to_dict())
