# Overview: Flask API routes for returns; parses input and returns JSON responses.

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import LedgerError
from ..services import return_service
from ..decorators import require_actor
from ..validation import optional_int_arg, page_args, window_args


returns_bp = Blueprint("returns", __name__, url_prefix="/api/returns")


@returns_bp.get("/returnable")
@require_actor
def returnable_sales_route():
    """Completed sales inside the return window with quantity left to return."""
    try:
        items = return_service.list_returnable_sales(
            g.store_id,
            cashier_id=optional_int_arg(request.args, "cashier_id"),
        )
        return jsonify({"items": items, "count": len(items)}), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status


@returns_bp.post("/")
@require_actor
def create_return_route():
    """
    Create a return against a completed sale.

    Request body:
    {
        "sale_id": 123,
        "items": [{"product_id": 1, "quantity": 1}],
        "refund_method": "CASH",  (optional)
        "notes": "..."  (optional)
    }

    Returns:
        201: Return created, stock restored and refund recorded
        400: Invalid input
        404: Sale not found
        409: Sale not returnable, window expired or quantity exceeded
    """
    try:
        data = request.get_json(silent=True) or {}
        if data.get("sale_id") is None:
            return jsonify({"error": "sale_id required", "code": "ValidationError", "details": {}}), 400

        ret = return_service.create_return(
            g.store_id,
            g.cashier_id,
            optional_int_arg(data, "sale_id"),
            data.get("items"),
            notes=data.get("notes"),
            refund_method=data.get("refund_method") or "CASH",
        )
        return jsonify({"return": ret.to_dict(include_lines=True)}), 201

    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to create return")
        return jsonify({"error": "Internal server error"}), 500


@returns_bp.get("/")
@require_actor
def list_returns_route():
    """Query params: sale_id, cashier_id, start, end, page, per_page"""
    try:
        args = request.args
        start, end = window_args(args)
        page, per_page = page_args(args)
        result = return_service.list_returns(
            g.store_id,
            sale_id=optional_int_arg(args, "sale_id"),
            cashier_id=optional_int_arg(args, "cashier_id"),
            start=start,
            end=end,
            page=page,
            per_page=per_page,
        )
        return jsonify(result), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status


@returns_bp.get("/<int:return_id>")
@require_actor
def get_return_route(return_id: int):
    try:
        ret = return_service.get_return(return_id, store_id=g.store_id)
        return jsonify({"return": ret.to_dict(include_lines=True)}), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
