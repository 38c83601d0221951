# Overview: Stock ledger; the only writer of Product.qty and Product.cost_cents.

from __future__ import annotations

from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import case, func

from ..errors import InsufficientStock, NotFound, ValidationError
from ..extensions import db
from ..models import Product, StockMovement
from ..models.enums import (
    CashCategoryType,
    CashTransactionType,
    MovementType,
    PaymentMethod,
    ReferenceType,
)
from ..validation import coerce_amount, coerce_enum, coerce_int, coerce_positive_int
from kasir.time_utils import to_utc_z, utcnow
from .audit_service import append_audit_event
from .concurrency import lock_for_update, run_with_retry, unit_of_work
from .query_utils import paginate
"""
Stock ledger invariants (authoritative)

- Product.qty is a cached balance. Every change to it is one StockMovement
  row written in the same transaction: after_qty = before_qty + delta.
- Replaying a product's movements in (occurred_at, id) order walks an
  unbroken chain that ends at Product.qty.
- Quantities never go negative. OUT may only do so when backorder
  selling is enabled (ALLOW_BACKORDER or allow_backorder=True).
- Weighted average cost (WAC) changes only on IN and on a positive
  ADJUSTMENT that carries a cost:
    new = (old_cost * old_qty + in_cost * in_qty) / (old_qty + in_qty)
  rounded half-up. When old_qty <= 0 the incoming cost replaces it.
  OUT and RETURN leave WAC alone.
"""


def _round_half_up_div(numerator: int, denominator: int) -> int:
    return (numerator + (denominator // 2)) // denominator


def weighted_average_cost(old_cost: int, old_qty: int, in_cost: int, in_qty: int) -> int:
    if old_qty <= 0:
        return in_cost
    total_qty = old_qty + in_qty
    return _round_half_up_div(old_cost * old_qty + in_cost * in_qty, total_qty)


def _signed_delta(movement_type: MovementType, quantity) -> int:
    if movement_type == MovementType.ADJUSTMENT:
        delta = coerce_int(quantity, "quantity")
        if delta == 0:
            raise ValidationError("Adjustment quantity must not be zero")
        return delta
    qty = coerce_positive_int(quantity, "quantity")
    if movement_type == MovementType.OUT:
        return -qty
    return qty


def get_product_for_update(store_id: int, product_id: int) -> Product:
    product = (
        lock_for_update(
            db.session.query(Product).filter_by(id=product_id, store_id=store_id)
        )
        .populate_existing()
        .first()
    )
    if not product:
        raise NotFound(
            f"Product {product_id} not found",
            details={"product_id": product_id, "store_id": store_id},
        )
    return product


def _record_movement_locked(
    *,
    product: Product,
    movement_type: MovementType,
    delta: int,
    reference_type: ReferenceType,
    reference_id: int | None,
    cost_per_unit_cents: int | None,
    notes: str | None,
    actor_user_id: int | None,
    allow_backorder: bool,
) -> StockMovement:
    before_qty = product.qty or 0
    after_qty = before_qty + delta

    if after_qty < 0:
        if not (movement_type == MovementType.OUT and allow_backorder):
            raise InsufficientStock(
                f"Insufficient stock for {product.name}",
                details={
                    "product_id": product.id,
                    "sku": product.sku,
                    "on_hand": before_qty,
                    "requested_quantity": -delta,
                },
            )

    current_cost = product.cost_cents or 0
    unit_cost = cost_per_unit_cents if cost_per_unit_cents is not None else current_cost

    recompute_wac = cost_per_unit_cents is not None and (
        movement_type == MovementType.IN
        or (movement_type == MovementType.ADJUSTMENT and delta > 0)
    )
    if recompute_wac:
        product.cost_cents = weighted_average_cost(current_cost, before_qty, cost_per_unit_cents, delta)

    product.qty = after_qty

    movement = StockMovement(
        store_id=product.store_id,
        product_id=product.id,
        movement_type=movement_type.value,
        quantity_delta=delta,
        before_qty=before_qty,
        after_qty=after_qty,
        unit_cost_cents=unit_cost,
        reference_type=reference_type.value,
        reference_id=reference_id,
        notes=notes,
        created_by_user_id=actor_user_id,
        occurred_at=utcnow(),
    )
    db.session.add(movement)
    db.session.flush()
    return movement


def record_movement(
    store_id: int,
    product_id: int,
    movement_type,
    quantity,
    reference_type,
    reference_id: int | None = None,
    cost_per_unit_cents: int | None = None,
    notes: str | None = None,
    actor_user_id: int | None = None,
    allow_backorder: bool | None = None,
) -> StockMovement:
    """
    Record one stock movement and update the product's cached balance.

    quantity is positive for IN, OUT and RETURN (the type decides the sign)
    and a signed delta for ADJUSTMENT.

    Joins the caller's unit of work when there is one; otherwise commits.
    """
    movement_type = coerce_enum(MovementType, movement_type, "movement_type")
    reference_type = coerce_enum(ReferenceType, reference_type, "reference_type")
    delta = _signed_delta(movement_type, quantity)
    if cost_per_unit_cents is not None:
        cost_per_unit_cents = coerce_amount(cost_per_unit_cents, "cost_per_unit_cents", allow_zero=True)
    if allow_backorder is None:
        allow_backorder = bool(current_app.config.get("ALLOW_BACKORDER", False))

    def _op():
        with unit_of_work():
            product = get_product_for_update(store_id, product_id)
            return _record_movement_locked(
                product=product,
                movement_type=movement_type,
                delta=delta,
                reference_type=reference_type,
                reference_id=reference_id,
                cost_per_unit_cents=cost_per_unit_cents,
                notes=notes,
                actor_user_id=actor_user_id,
                allow_backorder=allow_backorder,
            )

    return run_with_retry(_op)


def record_purchase(
    store_id: int,
    product_id: int,
    quantity,
    total_price_cents,
    *,
    payment_method=PaymentMethod.CASH,
    supplier: str | None = None,
    notes: str | None = None,
    actor_user_id: int | None = None,
) -> dict:
    """
    Manual stock purchase: IN movement at cost total/quantity plus a
    PURCHASE expense in the cash ledger, in one unit of work.
    """
    from .cash_service import ensure_expense_category, record_cash_transaction

    quantity = coerce_positive_int(quantity, "quantity")
    total_price_cents = coerce_amount(total_price_cents, "total_price_cents")
    payment_method = coerce_enum(PaymentMethod, payment_method, "payment_method")
    cost_per_unit = _round_half_up_div(total_price_cents, quantity)

    def _op():
        with unit_of_work():
            product = get_product_for_update(store_id, product_id)

            category = ensure_expense_category(store_id, "PURCHASE_INVENTORY")
            description = f"Purchase {quantity} x {product.name}"
            if supplier:
                description += f" from {supplier}"
            cash_tx = record_cash_transaction(
                store_id=store_id,
                transaction_type=CashTransactionType.EXPENSE,
                amount_cents=total_price_cents,
                payment_method=payment_method,
                category_id=category.id,
                category_type=CashCategoryType.PURCHASE,
                description=description,
                notes=notes,
                actor_user_id=actor_user_id,
            )

            movement = _record_movement_locked(
                product=product,
                movement_type=MovementType.IN,
                delta=quantity,
                reference_type=ReferenceType.PURCHASE,
                reference_id=cash_tx.id,
                cost_per_unit_cents=cost_per_unit,
                notes=notes or (f"Purchase from {supplier}" if supplier else "Stock purchase"),
                actor_user_id=actor_user_id,
                allow_backorder=False,
            )

            append_audit_event(
                store_id=store_id,
                event_type="STOCK_PURCHASED",
                event_category="stock",
                entity_type="stock_movement",
                entity_id=movement.id,
                actor_user_id=actor_user_id,
                payload={
                    "product_id": product.id,
                    "quantity": quantity,
                    "total_price_cents": total_price_cents,
                    "cash_transaction_id": cash_tx.id,
                },
            )
            return {"movement": movement, "cash_transaction": cash_tx, "product": product}

    return run_with_retry(_op)


# =============================================================================
# Queries
# =============================================================================

def _movement_row(movement: StockMovement) -> dict:
    data = movement.to_dict()
    data["product_name"] = movement.product.name if movement.product else None
    data["sku"] = movement.product.sku if movement.product else None
    return data


def list_movements(
    store_id: int,
    *,
    product_id: int | None = None,
    movement_type=None,
    reference_type=None,
    start: datetime | None = None,
    end: datetime | None = None,
    page: int | None = 1,
    per_page: int | None = 20,
) -> dict:
    """Movements newest first. start/end are inclusive UTC-naive bounds."""
    query = db.session.query(StockMovement).filter(StockMovement.store_id == store_id)
    if product_id is not None:
        query = query.filter(StockMovement.product_id == product_id)
    if movement_type:
        mt = coerce_enum(MovementType, movement_type, "movement_type")
        query = query.filter(StockMovement.movement_type == mt.value)
    if reference_type:
        rt = coerce_enum(ReferenceType, reference_type, "reference_type")
        query = query.filter(StockMovement.reference_type == rt.value)
    if start is not None:
        query = query.filter(StockMovement.occurred_at >= start)
    if end is not None:
        query = query.filter(StockMovement.occurred_at <= end)

    query = query.order_by(StockMovement.occurred_at.desc(), StockMovement.id.desc())
    return paginate(query, page=page, per_page=per_page, serialize=_movement_row)


def list_product_movements(store_id: int, product_id: int, *, page: int | None = 1, per_page: int | None = 20) -> dict:
    product = db.session.query(Product).filter_by(id=product_id, store_id=store_id).first()
    if not product:
        raise NotFound(f"Product {product_id} not found", details={"product_id": product_id})
    result = list_movements(store_id, product_id=product_id, page=page, per_page=per_page)
    result["product"] = product.to_dict()
    return result


def _active_products(store_id: int):
    return db.session.query(Product).filter(
        Product.store_id == store_id,
        Product.is_active.is_(True),
    )


def get_inventory_valuation(store_id: int) -> dict:
    products = _active_products(store_id).order_by(Product.name.asc(), Product.id.asc()).all()

    items = []
    total_cost_value = 0
    total_selling_value = 0
    low_stock_count = 0
    out_of_stock_count = 0
    for p in products:
        qty = p.qty or 0
        cost_value = qty * (p.cost_cents or 0)
        selling_value = qty * (p.price_cents or 0)
        total_cost_value += cost_value
        total_selling_value += selling_value
        if p.track_stock and qty <= 0:
            out_of_stock_count += 1
        elif p.track_stock and qty <= (p.min_stock or 0):
            low_stock_count += 1
        items.append({
            "product_id": p.id,
            "sku": p.sku,
            "name": p.name,
            "qty": qty,
            "cost_cents": p.cost_cents or 0,
            "price_cents": p.price_cents,
            "cost_value_cents": cost_value,
            "selling_value_cents": selling_value,
            "potential_profit_cents": selling_value - cost_value,
        })

    potential_profit = total_selling_value - total_cost_value
    average_margin_bps = (potential_profit * 10000 // total_selling_value) if total_selling_value else 0

    return {
        "items": items,
        "summary": {
            "total_products": len(items),
            "total_cost_value_cents": total_cost_value,
            "total_selling_value_cents": total_selling_value,
            "potential_profit_cents": potential_profit,
            "average_margin_bps": average_margin_bps,
            "low_stock_count": low_stock_count,
            "out_of_stock_count": out_of_stock_count,
        },
    }


def get_low_stock_products(store_id: int) -> list[dict]:
    """Active, stock-tracked products at or below min_stock, largest shortage first."""
    shortage = (Product.min_stock - Product.qty).label("shortage")
    rows = (
        db.session.query(Product, shortage)
        .filter(
            Product.store_id == store_id,
            Product.is_active.is_(True),
            Product.track_stock.is_(True),
            Product.qty <= Product.min_stock,
        )
        .order_by(shortage.desc(), Product.id.asc())
        .all()
    )
    results = []
    for product, short in rows:
        data = product.to_dict()
        data["shortage"] = int(short or 0)
        results.append(data)
    return results


def get_dead_stock_products(store_id: int, days: int | None = None) -> list[dict]:
    """
    Products with stock on hand but no OUT movement in the last `days` days
    (or none ever), highest tied-up capital first.
    """
    if days is None:
        days = current_app.config.get("DEAD_STOCK_DAYS", 90)
    days = coerce_positive_int(days, "days")
    now = utcnow()
    cutoff = now - timedelta(days=days)

    last_out = (
        db.session.query(
            StockMovement.product_id.label("product_id"),
            func.max(StockMovement.occurred_at).label("last_out_at"),
        )
        .filter(
            StockMovement.store_id == store_id,
            StockMovement.movement_type == MovementType.OUT.value,
        )
        .group_by(StockMovement.product_id)
        .subquery()
    )

    rows = (
        db.session.query(Product, last_out.c.last_out_at)
        .outerjoin(last_out, last_out.c.product_id == Product.id)
        .filter(
            Product.store_id == store_id,
            Product.is_active.is_(True),
            Product.qty > 0,
        )
        .filter((last_out.c.last_out_at.is_(None)) | (last_out.c.last_out_at < cutoff))
        .all()
    )

    results = []
    for product, last_out_at in rows:
        data = product.to_dict()
        data["stock_value_cents"] = (product.qty or 0) * (product.cost_cents or 0)
        data["last_out_at"] = to_utc_z(last_out_at) if last_out_at else None
        data["days_without_sale"] = (now - last_out_at).days if last_out_at else None
        results.append(data)

    results.sort(key=lambda r: (-r["stock_value_cents"], r["id"]))
    return results


def get_movement_statistics(store_id: int, start: datetime | None = None, end: datetime | None = None) -> dict:
    """
    Unit totals by kind of movement.

    - incoming: IN movements (purchases, restocks, voided sales)
    - returned: RETURN movements
    - sold: OUT movements caused by sales
    - other_outgoing: other OUT movements plus negative adjustments
    - adjusted_in: positive adjustments
    """
    is_in = StockMovement.movement_type == MovementType.IN.value
    is_return = StockMovement.movement_type == MovementType.RETURN.value
    is_out = StockMovement.movement_type == MovementType.OUT.value
    is_sale = StockMovement.reference_type == ReferenceType.SALE.value
    is_adjust = StockMovement.movement_type == MovementType.ADJUSTMENT.value

    def _sum(condition, expr):
        return func.coalesce(func.sum(case((condition, expr), else_=0)), 0)

    query = db.session.query(
        _sum(is_in, StockMovement.quantity_delta).label("incoming"),
        _sum(is_return, StockMovement.quantity_delta).label("returned"),
        _sum(is_out & is_sale, -StockMovement.quantity_delta).label("sold"),
        _sum(
            (is_out & ~is_sale) | (is_adjust & (StockMovement.quantity_delta < 0)),
            -StockMovement.quantity_delta,
        ).label("other_outgoing"),
        _sum(is_adjust & (StockMovement.quantity_delta > 0), StockMovement.quantity_delta).label("adjusted_in"),
        func.count(StockMovement.id).label("movement_count"),
    ).filter(StockMovement.store_id == store_id)
    if start is not None:
        query = query.filter(StockMovement.occurred_at >= start)
    if end is not None:
        query = query.filter(StockMovement.occurred_at <= end)

    row = query.one()
    return {
        "incoming": int(row.incoming),
        "returned": int(row.returned),
        "sold": int(row.sold),
        "other_outgoing": int(row.other_outgoing),
        "adjusted_in": int(row.adjusted_in),
        "movement_count": int(row.movement_count),
    }


def replay_product_ledger(store_id: int, product_id: int) -> dict:
    """Walk a product's movements in order and check the balance chain."""
    product = db.session.query(Product).filter_by(id=product_id, store_id=store_id).first()
    if not product:
        raise NotFound(f"Product {product_id} not found", details={"product_id": product_id})

    movements = (
        db.session.query(StockMovement)
        .filter_by(store_id=store_id, product_id=product_id)
        .order_by(StockMovement.occurred_at.asc(), StockMovement.id.asc())
        .all()
    )

    issues = []
    running = None
    for m in movements:
        if m.before_qty + m.quantity_delta != m.after_qty:
            issues.append({"movement_id": m.id, "issue": "after_qty != before_qty + quantity_delta"})
        if running is not None and m.before_qty != running:
            issues.append({
                "movement_id": m.id,
                "issue": "chain broken",
                "expected_before_qty": running,
                "before_qty": m.before_qty,
            })
        running = m.after_qty

    final_qty = running if running is not None else 0
    if final_qty != (product.qty or 0):
        issues.append({
            "movement_id": None,
            "issue": "final balance differs from product qty",
            "ledger_qty": final_qty,
            "product_qty": product.qty,
        })

    return {
        "product_id": product.id,
        "sku": product.sku,
        "movement_count": len(movements),
        "ledger_qty": final_qty,
        "product_qty": product.qty,
        "consistent": not issues,
        "issues": issues,
    }
