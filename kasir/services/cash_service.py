# Overview: Cash ledger; income and expense entries, sale sync, verification and reporting.

from __future__ import annotations

from datetime import datetime

from sqlalchemy import case, func
from sqlalchemy.exc import IntegrityError

from ..errors import DuplicateSync, InvalidState, NotFound, ValidationError
from ..extensions import db
from ..models import CashTransaction, ExpenseCategory, Sale
from ..models.enums import (
    POSTED_SALE_STATUSES,
    CashCategoryType,
    CashTransactionType,
    PaymentMethod,
)
from ..validation import coerce_amount, coerce_datetime, coerce_enum, coerce_int
from kasir.time_utils import utcnow
from .audit_service import append_audit_event
from .concurrency import lock_for_update, run_with_retry, unit_of_work
from .query_utils import paginate
from .sequence_service import allocate_document_number
"""
Cash ledger invariants (authoritative)

- amount_cents is always > 0; direction comes from transaction_type.
- A sale has at most one INCOME entry (sale_id unique), a return at most
  one refund (return_id unique), a voided sale at most one reversal
  (reversed_sale_id unique).
- Entries linked to a sale, return or reversal belong to that document:
  they are never edited or deleted through this module.
- Verification is one-way. Verified entries are frozen.
- Deletes are soft (deleted_at); every balance and report skips them.
"""


SYSTEM_CATEGORIES = {
    "RETURN_REFUND": ("Retur Barang", "Refunds paid out for returned goods"),
    "SALE_VOID": ("Pembatalan Penjualan", "Cash paid back when a completed sale is voided"),
    "PURCHASE_INVENTORY": ("Pembelian Barang", "Stock purchased for resale"),
}


def ensure_expense_category(store_id: int, code: str) -> ExpenseCategory:
    """
    Get or create one of the system expense categories.

    Safe to call repeatedly (idempotent).
    """
    if code not in SYSTEM_CATEGORIES:
        raise ValidationError(f"Unknown system category {code!r}")

    category = db.session.query(ExpenseCategory).filter_by(store_id=store_id, code=code).first()
    if category:
        return category

    name, description = SYSTEM_CATEGORIES[code]
    category = ExpenseCategory(
        store_id=store_id,
        code=code,
        name=name,
        description=description,
        is_system=True,
        is_active=True,
    )
    db.session.add(category)
    db.session.flush()
    return category


def create_expense_category(store_id: int, *, code: str, name: str, description: str | None = None) -> ExpenseCategory:
    code = (code or "").strip().upper()
    name = (name or "").strip()
    if not code or not name:
        raise ValidationError("code and name are required")
    if code in SYSTEM_CATEGORIES:
        raise ValidationError(f"{code} is a reserved system category")

    with unit_of_work():
        exists = db.session.query(ExpenseCategory).filter_by(store_id=store_id, code=code).first()
        if exists:
            raise ValidationError(f"Category {code} already exists", details={"category_id": exists.id})
        category = ExpenseCategory(store_id=store_id, code=code, name=name, description=description)
        db.session.add(category)
        db.session.flush()
        return category


def list_expense_categories(store_id: int, include_inactive: bool = False) -> list[ExpenseCategory]:
    query = db.session.query(ExpenseCategory).filter(ExpenseCategory.store_id == store_id)
    if not include_inactive:
        query = query.filter(ExpenseCategory.is_active.is_(True))
    return query.order_by(ExpenseCategory.name.asc(), ExpenseCategory.id.asc()).all()


def _require_category(store_id: int, category_id) -> int | None:
    if category_id is None:
        return None
    category_id = coerce_int(category_id, "category_id")
    category = db.session.query(ExpenseCategory).filter_by(id=category_id, store_id=store_id).first()
    if not category:
        raise NotFound(f"Expense category {category_id} not found", details={"category_id": category_id})
    return category.id


def _existing_sale_entry(sale_id: int) -> CashTransaction | None:
    return db.session.query(CashTransaction).filter_by(sale_id=sale_id).first()


def record_cash_transaction(
    store_id: int,
    transaction_type,
    amount_cents,
    payment_method,
    category_id: int | None = None,
    category_type=None,
    sale_id: int | None = None,
    return_id: int | None = None,
    reversed_sale_id: int | None = None,
    description: str | None = None,
    notes: str | None = None,
    transaction_date: datetime | None = None,
    actor_user_id: int | None = None,
) -> CashTransaction:
    """
    Append one entry to the cash ledger.

    Raises DuplicateSync (carrying the existing entry) when sale_id already
    has an entry. Joins the caller's unit of work when there is one.
    """
    transaction_type = coerce_enum(CashTransactionType, transaction_type, "transaction_type")
    amount_cents = coerce_amount(amount_cents, "amount_cents")
    payment_method = coerce_enum(PaymentMethod, payment_method, "payment_method")
    if category_type is not None:
        category_type = coerce_enum(CashCategoryType, category_type, "category_type")
    transaction_date = coerce_datetime(transaction_date, "transaction_date") or utcnow()

    with unit_of_work():
        if sale_id is not None:
            existing = _existing_sale_entry(sale_id)
            if existing:
                raise DuplicateSync(
                    f"Sale {sale_id} already has cash entry {existing.transaction_number}",
                    existing=existing,
                    details={"sale_id": sale_id, "cash_transaction_id": existing.id},
                )

        category_id = _require_category(store_id, category_id)
        _, _, number = allocate_document_number(store_id=store_id, sequence_type="CASH")

        entry = CashTransaction(
            store_id=store_id,
            transaction_number=number,
            transaction_type=transaction_type.value,
            amount_cents=amount_cents,
            payment_method=payment_method.value,
            category_id=category_id,
            category_type=category_type.value if category_type else None,
            sale_id=sale_id,
            return_id=return_id,
            reversed_sale_id=reversed_sale_id,
            description=description,
            notes=notes,
            transaction_date=transaction_date,
            created_by_user_id=actor_user_id,
        )
        try:
            with db.session.begin_nested():
                db.session.add(entry)
        except IntegrityError:
            if sale_id is not None:
                existing = _existing_sale_entry(sale_id)
                if existing:
                    raise DuplicateSync(
                        f"Sale {sale_id} already has cash entry {existing.transaction_number}",
                        existing=existing,
                        details={"sale_id": sale_id, "cash_transaction_id": existing.id},
                    )
            raise
        return entry


def post_sale_income(sale: Sale, actor_user_id: int | None = None) -> CashTransaction:
    """
    INCOME entry for a posted sale, dated at completion and attributed to
    the cashier so drawer reconciliation picks it up.
    """
    return record_cash_transaction(
        store_id=sale.store_id,
        transaction_type=CashTransactionType.INCOME,
        amount_cents=sale.total_cents,
        payment_method=sale.payment_method or PaymentMethod.CASH.value,
        category_type=CashCategoryType.SALES,
        sale_id=sale.id,
        description=f"Sale {sale.transaction_number}",
        transaction_date=sale.completed_at,
        actor_user_id=actor_user_id if actor_user_id is not None else sale.cashier_id,
    )


def sync_sale(store_id: int, sale_id: int, actor_user_id: int | None = None) -> CashTransaction:
    """
    Make sure a completed sale has its cash entry.

    Idempotent: an already-synced sale returns its existing entry.
    """
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
                    f"Only completed sales can be synced (status {sale.status})",
                    details={"sale_id": sale.id, "status": sale.status},
                )
            try:
                entry = post_sale_income(sale)
            except DuplicateSync as exc:
                return exc.existing

            append_audit_event(
                store_id=store_id,
                event_type="SALE_CASH_SYNCED",
                event_category="cash",
                entity_type="cash_transaction",
                entity_id=entry.id,
                actor_user_id=actor_user_id,
                payload={"sale_id": sale.id, "amount_cents": entry.amount_cents},
            )
            return entry

    return run_with_retry(_op)


def find_unsynced_sales(store_id: int | None = None) -> list[Sale]:
    """Completed or locked sales that have no INCOME entry yet."""
    query = (
        db.session.query(Sale)
        .outerjoin(CashTransaction, CashTransaction.sale_id == Sale.id)
        .filter(Sale.status.in_(POSTED_SALE_STATUSES), CashTransaction.id.is_(None))
    )
    if store_id is not None:
        query = query.filter(Sale.store_id == store_id)
    return query.order_by(Sale.id.asc()).all()


# =============================================================================
# Manual entry maintenance
# =============================================================================

_UPDATABLE_FIELDS = (
    "transaction_type",
    "amount_cents",
    "payment_method",
    "category_id",
    "category_type",
    "description",
    "notes",
    "transaction_date",
)


def _get_for_update(transaction_id: int, store_id: int | None) -> CashTransaction:
    query = db.session.query(CashTransaction).filter_by(id=transaction_id)
    if store_id is not None:
        query = query.filter_by(store_id=store_id)
    entry = lock_for_update(query).populate_existing().first()
    if not entry:
        raise NotFound(f"Cash transaction {transaction_id} not found", details={"transaction_id": transaction_id})
    return entry


def _ensure_editable(entry: CashTransaction, action: str) -> None:
    if entry.deleted_at is not None:
        raise InvalidState(f"Cannot {action} a deleted cash transaction", details={"transaction_id": entry.id})
    if entry.is_verified:
        raise InvalidState(f"Cannot {action} a verified cash transaction", details={"transaction_id": entry.id})
    if entry.is_linked:
        raise InvalidState(
            f"Cannot {action} a cash transaction owned by a sale or return",
            details={
                "transaction_id": entry.id,
                "sale_id": entry.sale_id,
                "return_id": entry.return_id,
                "reversed_sale_id": entry.reversed_sale_id,
            },
        )


def get_cash_transaction(transaction_id: int, store_id: int | None = None) -> CashTransaction:
    query = db.session.query(CashTransaction).filter(
        CashTransaction.id == transaction_id,
        CashTransaction.deleted_at.is_(None),
    )
    if store_id is not None:
        query = query.filter(CashTransaction.store_id == store_id)
    entry = query.first()
    if not entry:
        raise NotFound(f"Cash transaction {transaction_id} not found", details={"transaction_id": transaction_id})
    return entry


def update_cash_transaction(
    transaction_id: int,
    patch: dict,
    *,
    store_id: int | None = None,
    actor_user_id: int | None = None,
) -> CashTransaction:
    unknown = set(patch) - set(_UPDATABLE_FIELDS)
    if unknown:
        raise ValidationError(f"Unsupported fields: {', '.join(sorted(unknown))}")

    def _op():
        with unit_of_work():
            entry = _get_for_update(transaction_id, store_id)
            _ensure_editable(entry, "update")

            if "transaction_type" in patch:
                entry.transaction_type = coerce_enum(
                    CashTransactionType, patch["transaction_type"], "transaction_type"
                ).value
            if "amount_cents" in patch:
                entry.amount_cents = coerce_amount(patch["amount_cents"], "amount_cents")
            if "payment_method" in patch:
                entry.payment_method = coerce_enum(PaymentMethod, patch["payment_method"], "payment_method").value
            if "category_id" in patch:
                entry.category_id = _require_category(entry.store_id, patch["category_id"])
            if "category_type" in patch:
                value = patch["category_type"]
                entry.category_type = (
                    coerce_enum(CashCategoryType, value, "category_type").value if value is not None else None
                )
            if "description" in patch:
                entry.description = patch["description"]
            if "notes" in patch:
                entry.notes = patch["notes"]
            if "transaction_date" in patch:
                entry.transaction_date = coerce_datetime(patch["transaction_date"], "transaction_date") or entry.transaction_date

            db.session.flush()
            append_audit_event(
                store_id=entry.store_id,
                event_type="CASH_TRANSACTION_UPDATED",
                event_category="cash",
                entity_type="cash_transaction",
                entity_id=entry.id,
                actor_user_id=actor_user_id,
                payload={"fields": sorted(patch)},
            )
            return entry

    return run_with_retry(_op)


def delete_cash_transaction(
    transaction_id: int,
    *,
    actor_user_id: int | None = None,
    store_id: int | None = None,
) -> CashTransaction:
    """Soft delete. The row stays for audit; reports skip it."""
    def _op():
        with unit_of_work():
            entry = _get_for_update(transaction_id, store_id)
            _ensure_editable(entry, "delete")
            entry.deleted_at = utcnow()
            entry.deleted_by_user_id = actor_user_id

            append_audit_event(
                store_id=entry.store_id,
                event_type="CASH_TRANSACTION_DELETED",
                event_category="cash",
                entity_type="cash_transaction",
                entity_id=entry.id,
                actor_user_id=actor_user_id,
                payload={"amount_cents": entry.amount_cents, "transaction_type": entry.transaction_type},
            )
            return entry

    return run_with_retry(_op)


def verify_cash_transaction(
    transaction_id: int,
    *,
    actor_user_id: int | None = None,
    store_id: int | None = None,
) -> CashTransaction:
    def _op():
        with unit_of_work():
            entry = _get_for_update(transaction_id, store_id)
            if entry.deleted_at is not None:
                raise InvalidState("Cannot verify a deleted cash transaction", details={"transaction_id": entry.id})
            if entry.is_verified:
                raise InvalidState("Cash transaction is already verified", details={"transaction_id": entry.id})

            entry.is_verified = True
            entry.verified_by_user_id = actor_user_id
            entry.verified_at = utcnow()

            append_audit_event(
                store_id=entry.store_id,
                event_type="CASH_TRANSACTION_VERIFIED",
                event_category="cash",
                entity_type="cash_transaction",
                entity_id=entry.id,
                actor_user_id=actor_user_id,
            )
            return entry

    return run_with_retry(_op)


# =============================================================================
# Queries (soft-deleted entries excluded)
# =============================================================================

def _live_query(store_id: int):
    return db.session.query(CashTransaction).filter(
        CashTransaction.store_id == store_id,
        CashTransaction.deleted_at.is_(None),
    )


def _income_expense_columns():
    income = func.coalesce(
        func.sum(case((CashTransaction.transaction_type == CashTransactionType.INCOME.value, CashTransaction.amount_cents), else_=0)),
        0,
    )
    expense = func.coalesce(
        func.sum(case((CashTransaction.transaction_type == CashTransactionType.EXPENSE.value, CashTransaction.amount_cents), else_=0)),
        0,
    )
    return income.label("income"), expense.label("expense")


def _apply_window(query, start: datetime | None, end: datetime | None):
    if start is not None:
        query = query.filter(CashTransaction.transaction_date >= start)
    if end is not None:
        query = query.filter(CashTransaction.transaction_date <= end)
    return query


def _per_method(store_id: int, start: datetime | None = None, end: datetime | None = None) -> dict:
    income, expense = _income_expense_columns()
    query = (
        db.session.query(CashTransaction.payment_method, income, expense, func.count(CashTransaction.id))
        .filter(CashTransaction.store_id == store_id, CashTransaction.deleted_at.is_(None))
        .group_by(CashTransaction.payment_method)
    )
    query = _apply_window(query, start, end)

    by_method = {
        method.value: {"income_cents": 0, "expense_cents": 0, "net_cents": 0, "count": 0}
        for method in PaymentMethod
    }
    for method, inc, exp, count in query.all():
        bucket = by_method.setdefault(method, {"income_cents": 0, "expense_cents": 0, "net_cents": 0, "count": 0})
        bucket["income_cents"] = int(inc)
        bucket["expense_cents"] = int(exp)
        bucket["net_cents"] = int(inc) - int(exp)
        bucket["count"] = int(count)
    return by_method


def get_cash_balance(store_id: int, payment_method=None) -> dict:
    """Balance = INCOME - EXPENSE, overall and per payment method."""
    by_method = _per_method(store_id)
    if payment_method is not None:
        method = coerce_enum(PaymentMethod, payment_method, "payment_method").value
        by_method = {method: by_method[method]}

    total_income = sum(b["income_cents"] for b in by_method.values())
    total_expense = sum(b["expense_cents"] for b in by_method.values())
    return {
        "balance_cents": total_income - total_expense,
        "total_income_cents": total_income,
        "total_expense_cents": total_expense,
        "by_method": {m: b["net_cents"] for m, b in by_method.items()},
    }


def get_cash_flow_summary(store_id: int, start: datetime | None = None, end: datetime | None = None) -> dict:
    by_method = _per_method(store_id, start, end)
    total_income = sum(b["income_cents"] for b in by_method.values())
    total_expense = sum(b["expense_cents"] for b in by_method.values())
    return {
        "total_income_cents": total_income,
        "total_expense_cents": total_expense,
        "net_flow_cents": total_income - total_expense,
        "transaction_count": sum(b["count"] for b in by_method.values()),
        "by_method": by_method,
    }


def get_expense_by_category(store_id: int, start: datetime | None = None, end: datetime | None = None) -> list[dict]:
    """Expense totals per category, largest first. Entries without a category land in UNCATEGORIZED."""
    query = (
        db.session.query(
            CashTransaction.category_id,
            func.coalesce(func.sum(CashTransaction.amount_cents), 0),
            func.count(CashTransaction.id),
        )
        .filter(
            CashTransaction.store_id == store_id,
            CashTransaction.deleted_at.is_(None),
            CashTransaction.transaction_type == CashTransactionType.EXPENSE.value,
        )
        .group_by(CashTransaction.category_id)
    )
    query = _apply_window(query, start, end)
    rows = query.all()

    category_ids = [r[0] for r in rows if r[0] is not None]
    categories = {}
    if category_ids:
        categories = {
            c.id: c
            for c in db.session.query(ExpenseCategory).filter(ExpenseCategory.id.in_(category_ids)).all()
        }

    grand_total = sum(int(r[1]) for r in rows)
    results = []
    for category_id, total, count in rows:
        category = categories.get(category_id)
        results.append({
            "category_id": category_id,
            "category_code": category.code if category else "UNCATEGORIZED",
            "category_name": category.name if category else "Uncategorized",
            "total_cents": int(total),
            "count": int(count),
            "share_bps": (int(total) * 10000 // grand_total) if grand_total else 0,
        })
    results.sort(key=lambda r: (-r["total_cents"], r["category_code"]))
    return results


def list_cash_transactions(
    store_id: int,
    *,
    transaction_type=None,
    payment_method=None,
    category_id: int | None = None,
    is_verified: bool | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    search: str | None = None,
    page: int | None = 1,
    per_page: int | None = 20,
) -> dict:
    query = _live_query(store_id)
    if transaction_type:
        query = query.filter(
            CashTransaction.transaction_type
            == coerce_enum(CashTransactionType, transaction_type, "transaction_type").value
        )
    if payment_method:
        query = query.filter(
            CashTransaction.payment_method == coerce_enum(PaymentMethod, payment_method, "payment_method").value
        )
    if category_id is not None:
        query = query.filter(CashTransaction.category_id == category_id)
    if is_verified is not None:
        query = query.filter(CashTransaction.is_verified.is_(bool(is_verified)))
    if search:
        pattern = f"%{search.strip()}%"
        query = query.filter(
            CashTransaction.transaction_number.ilike(pattern)
            | CashTransaction.description.ilike(pattern)
            | CashTransaction.notes.ilike(pattern)
        )
    query = _apply_window(query, start, end)
    query = query.order_by(CashTransaction.transaction_date.desc(), CashTransaction.id.desc())
    return paginate(query, page=page, per_page=per_page, serialize=lambda t: t.to_dict())


def get_cashier_cash_totals(store_id: int, cashier_id: int, start: datetime, end: datetime) -> dict:
    """
    Physical cash a cashier took in and paid out in [start, end].

    - cash_in: CASH INCOME entries linked to a sale
    - cash_out: CASH EXPENSE entries linked to a return or a sale reversal
    """
    is_cash = CashTransaction.payment_method == PaymentMethod.CASH.value
    sale_income = (
        (CashTransaction.transaction_type == CashTransactionType.INCOME.value)
        & CashTransaction.sale_id.isnot(None)
    )
    refund_expense = (
        (CashTransaction.transaction_type == CashTransactionType.EXPENSE.value)
        & (CashTransaction.return_id.isnot(None) | CashTransaction.reversed_sale_id.isnot(None))
    )
    row = (
        db.session.query(
            func.coalesce(func.sum(case((sale_income, CashTransaction.amount_cents), else_=0)), 0).label("cash_in"),
            func.coalesce(func.sum(case((refund_expense, CashTransaction.amount_cents), else_=0)), 0).label("cash_out"),
        )
        .filter(
            CashTransaction.store_id == store_id,
            CashTransaction.deleted_at.is_(None),
            CashTransaction.created_by_user_id == cashier_id,
            is_cash,
            CashTransaction.transaction_date >= start,
            CashTransaction.transaction_date <= end,
        )
        .one()
    )
    return {"cash_in_cents": int(row.cash_in), "cash_out_cents": int(row.cash_out)}
