# Overview: Flask API routes for the stock ledger; movements, valuation, purchases and opname.

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import LedgerError
from ..services import opname_service, stock_service
from ..decorators import require_actor
from ..validation import bool_arg, optional_int_arg, page_args, window_args


stock_bp = Blueprint("stock", __name__, url_prefix="/api/stock")


@stock_bp.get("/movements")
@require_actor
def list_movements_route():
    """
    Stock movements, newest first.

    Query params: product_id, movement_type, reference_type, start, end, page, per_page
    """
    try:
        args = request.args
        start, end = window_args(args)
        page, per_page = page_args(args)
        result = stock_service.list_movements(
            g.store_id,
            product_id=optional_int_arg(args, "product_id"),
            movement_type=args.get("movement_type") or None,
            reference_type=args.get("reference_type") or None,
            start=start,
            end=end,
            page=page,
            per_page=per_page,
        )
        return jsonify(result), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status


@stock_bp.get("/products/<int:product_id>/movements")
@require_actor
def list_product_movements_route(product_id: int):
    try:
        page, per_page = page_args(request.args)
        result = stock_service.list_product_movements(g.store_id, product_id, page=page, per_page=per_page)
        return jsonify(result), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status


@stock_bp.get("/products/<int:product_id>/replay")
@require_actor
def replay_product_route(product_id: int):
    try:
        return jsonify(stock_service.replay_product_ledger(g.store_id, product_id)), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status


@stock_bp.get("/valuation")
@require_actor
def valuation_route():
    return jsonify(stock_service.get_inventory_valuation(g.store_id)), 200


@stock_bp.get("/low-stock")
@require_actor
def low_stock_route():
    items = stock_service.get_low_stock_products(g.store_id)
    return jsonify({"items": items, "count": len(items)}), 200


@stock_bp.get("/dead-stock")
@require_actor
def dead_stock_route():
    """Query params: days (default DEAD_STOCK_DAYS)"""
    try:
        items = stock_service.get_dead_stock_products(g.store_id, days=optional_int_arg(request.args, "days"))
        return jsonify({"items": items, "count": len(items)}), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status


@stock_bp.get("/statistics")
@require_actor
def statistics_route():
    try:
        start, end = window_args(request.args)
        return jsonify(stock_service.get_movement_statistics(g.store_id, start=start, end=end)), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status


@stock_bp.post("/purchases")
@require_actor
def record_purchase_route():
    """
    Manual stock purchase.

    Request body:
    {
        "product_id": 1,
        "quantity": 10,
        "total_price_cents": 150000,
        "payment_method": "CASH",  (optional)
        "supplier": "...",  (optional)
        "notes": "..."  (optional)
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        missing = [k for k in ("product_id", "quantity", "total_price_cents") if data.get(k) is None]
        if missing:
            return jsonify({
                "error": f"{', '.join(missing)} required",
                "code": "ValidationError",
                "details": {"missing": missing},
            }), 400

        result = stock_service.record_purchase(
            g.store_id,
            optional_int_arg(data, "product_id"),
            data["quantity"],
            data["total_price_cents"],
            payment_method=data.get("payment_method") or "CASH",
            supplier=data.get("supplier"),
            notes=data.get("notes"),
            actor_user_id=g.cashier_id,
        )
        return jsonify({
            "movement": result["movement"].to_dict(),
            "cash_transaction": result["cash_transaction"].to_dict(),
            "product": result["product"].to_dict(),
        }), 201

    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to record purchase")
        return jsonify({"error": "Internal server error"}), 500


@stock_bp.post("/opnames")
@require_actor
def create_opname_route():
    """Request body: {"product_id": 1, "actual_qty": 7, "notes": "..."}"""
    try:
        data = request.get_json(silent=True) or {}
        if data.get("product_id") is None or data.get("actual_qty") is None:
            return jsonify({
                "error": "product_id and actual_qty required",
                "code": "ValidationError",
                "details": {},
            }), 400

        opname = opname_service.create_opname(
            g.store_id,
            optional_int_arg(data, "product_id"),
            data["actual_qty"],
            notes=data.get("notes"),
            actor_user_id=g.cashier_id,
        )
        return jsonify({"opname": opname.to_dict()}), 201

    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to create stock opname")
        return jsonify({"error": "Internal server error"}), 500


@stock_bp.post("/opnames/<int:opname_id>/process")
@require_actor
def process_opname_route(opname_id: int):
    try:
        opname = opname_service.process_opname(opname_id, store_id=g.store_id, actor_user_id=g.cashier_id)
        return jsonify({"opname": opname.to_dict()}), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to process stock opname")
        return jsonify({"error": "Internal server error"}), 500


@stock_bp.get("/opnames")
@require_actor
def list_opnames_route():
    """Query params: processed, product_id, page, per_page"""
    try:
        args = request.args
        page, per_page = page_args(args)
        result = opname_service.list_opnames(
            g.store_id,
            processed=bool_arg(args, "processed"),
            product_id=optional_int_arg(args, "product_id"),
            page=page,
            per_page=per_page,
        )
        return jsonify(result), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
