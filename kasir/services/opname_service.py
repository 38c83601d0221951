# Overview: Stock opname (physical count); records counts and posts the adjusting movement.

from __future__ import annotations

from ..errors import InvalidState, NotFound, ValidationError
from ..extensions import db
from ..models import Product, StockOpname
from ..models.enums import MovementType, ReferenceType
from ..validation import coerce_int
from kasir.time_utils import utcnow
from .audit_service import append_audit_event
from .concurrency import lock_for_update, run_with_retry, unit_of_work
from .query_utils import paginate
from .stock_service import get_product_for_update, record_movement


def create_opname(
    store_id: int,
    product_id: int,
    actual_qty,
    notes: str | None = None,
    actor_user_id: int | None = None,
) -> StockOpname:
    """Record a physical count next to the system quantity at the time of counting."""
    actual_qty = coerce_int(actual_qty, "actual_qty")
    if actual_qty < 0:
        raise ValidationError("actual_qty must not be negative")

    def _op():
        with unit_of_work():
            product = db.session.query(Product).filter_by(id=product_id, store_id=store_id).first()
            if not product:
                raise NotFound(f"Product {product_id} not found", details={"product_id": product_id})

            opname = StockOpname(
                store_id=store_id,
                product_id=product.id,
                system_qty=product.qty,
                actual_qty=actual_qty,
                difference=actual_qty - product.qty,
                notes=notes,
                processed=False,
                created_by_user_id=actor_user_id,
            )
            db.session.add(opname)
            db.session.flush()
            return opname

    return run_with_retry(_op)


def process_opname(opname_id: int, store_id: int | None = None, actor_user_id: int | None = None) -> StockOpname:
    """
    Bring the product to the counted quantity.

    The ADJUSTMENT is computed against on-hand at processing time, so sales
    made between counting and processing are not undone. No movement is
    written when the quantities already match. Processing twice is an error.
    """
    def _op():
        with unit_of_work():
            query = db.session.query(StockOpname).filter(StockOpname.id == opname_id)
            if store_id is not None:
                query = query.filter(StockOpname.store_id == store_id)
            opname = lock_for_update(query).populate_existing().first()
            if not opname:
                raise NotFound(f"Stock opname {opname_id} not found", details={"opname_id": opname_id})
            if opname.processed:
                raise InvalidState("Stock opname is already processed", details={"opname_id": opname.id})

            product = get_product_for_update(opname.store_id, opname.product_id)
            delta = opname.actual_qty - product.qty
            if delta != 0:
                movement = record_movement(
                    opname.store_id,
                    opname.product_id,
                    MovementType.ADJUSTMENT,
                    delta,
                    ReferenceType.OPNAME,
                    reference_id=opname.id,
                    notes=f"Stock opname #{opname.id}",
                    actor_user_id=actor_user_id,
                )
                opname.stock_movement_id = movement.id

            opname.processed = True
            opname.processed_at = utcnow()
            opname.processed_by_user_id = actor_user_id

            append_audit_event(
                store_id=opname.store_id,
                event_type="OPNAME_PROCESSED",
                event_category="stock",
                entity_type="stock_opname",
                entity_id=opname.id,
                actor_user_id=actor_user_id,
                payload={"actual_qty": opname.actual_qty, "adjustment": delta},
            )
            return opname

    return run_with_retry(_op)


def list_opnames(
    store_id: int,
    *,
    processed: bool | None = None,
    product_id: int | None = None,
    page: int | None = 1,
    per_page: int | None = 20,
) -> dict:
    query = db.session.query(StockOpname).filter(StockOpname.store_id == store_id)
    if processed is not None:
        query = query.filter(StockOpname.processed.is_(bool(processed)))
    if product_id is not None:
        query = query.filter(StockOpname.product_id == product_id)
    query = query.order_by(StockOpname.created_at.desc(), StockOpname.id.desc())
    return paginate(query, page=page, per_page=per_page, serialize=lambda o: o.to_dict())
