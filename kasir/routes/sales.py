# Overview: Flask API routes for sales operations; parses input and returns JSON responses.

"""Sale transaction API routes"""

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import LedgerError
from ..services import sales_service
from ..decorators import require_actor
from ..validation import coerce_date, optional_int_arg, page_args, window_args


sales_bp = Blueprint("sales", __name__, url_prefix="/api/sales")


@sales_bp.post("/")
@require_actor
def create_sale_route():
    """
    Create new draft sale.

    Request body:
    {
        "items": [{"product_id": 1, "quantity": 2}],  (optional, may be empty)
        "notes": "..."  (optional)
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        sale = sales_service.create_sale(
            g.store_id,
            g.cashier_id,
            data.get("items") or [],
            notes=data.get("notes"),
        )
        return jsonify({"sale": sale.to_dict(include_lines=True)}), 201

    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to create sale")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.get("/")
@require_actor
def list_sales_route():
    """
    List sales, newest first.

    Query params: status, cashier_id, business_date, start, end, search,
    include_deleted, page, per_page
    """
    try:
        args = request.args
        start, end = window_args(args)
        page, per_page = page_args(args)
        result = sales_service.list_sales(
            g.store_id,
            status=args.get("status") or None,
            cashier_id=optional_int_arg(args, "cashier_id"),
            business_date=coerce_date(args.get("business_date") or None, "business_date"),
            start=start,
            end=end,
            search=args.get("search") or None,
            include_deleted=args.get("include_deleted", "").lower() in {"1", "true", "yes"},
            page=page,
            per_page=per_page,
        )
        return jsonify(result), 200

    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status


@sales_bp.get("/<int:sale_id>")
@require_actor
def get_sale_route(sale_id: int):
    try:
        sale = sales_service.get_sale(sale_id, store_id=g.store_id)
        return jsonify({"sale": sale.to_dict(include_lines=True)}), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status


@sales_bp.put("/<int:sale_id>")
@require_actor
def update_sale_route(sale_id: int):
    """Replace the lines of a DRAFT sale."""
    try:
        data = request.get_json(silent=True) or {}
        if "items" not in data:
            return jsonify({"error": "items required", "code": "ValidationError", "details": {}}), 400

        sale = sales_service.update_sale(sale_id, data["items"], store_id=g.store_id, notes=data.get("notes"))
        return jsonify({"sale": sale.to_dict(include_lines=True)}), 200

    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to update sale")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.post("/<int:sale_id>/complete")
@require_actor
def complete_sale_route(sale_id: int):
    """
    Complete a draft sale: posts stock OUT movements and the cash INCOME entry.

    Request body:
    {
        "payment_amount_cents": 50000,
        "payment_method": "CASH"  (CASH, QRIS, DEBIT)
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        if data.get("payment_amount_cents") is None or not data.get("payment_method"):
            return jsonify({
                "error": "payment_amount_cents and payment_method required",
                "code": "ValidationError",
                "details": {},
            }), 400

        sale = sales_service.complete_sale(
            sale_id,
            data["payment_amount_cents"],
            data["payment_method"],
            store_id=g.store_id,
            actor_user_id=g.cashier_id,
        )
        return jsonify({"sale": sale.to_dict(include_lines=True)}), 200

    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to complete sale")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.post("/<int:sale_id>/lock")
@require_actor
def lock_sale_route(sale_id: int):
    try:
        sale = sales_service.lock_sale(sale_id, store_id=g.store_id)
        return jsonify({"sale": sale.to_dict()}), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to lock sale")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.delete("/<int:sale_id>")
@require_actor
def delete_sale_route(sale_id: int):
    """
    Delete a sale. A completed sale is voided: stock returns to the shelf
    and the total is paid back out of the cash ledger.

    Request body (optional): {"reason": "..."}
    """
    try:
        data = request.get_json(silent=True) or {}
        sale = sales_service.delete_sale(
            sale_id,
            g.cashier_id,
            reason=data.get("reason"),
            store_id=g.store_id,
        )
        return jsonify({"sale": sale.to_dict()}), 200

    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to delete sale")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.post("/lock-day")
@require_actor
def lock_day_route():
    """
    Lock every completed sale of a business day.

    Request body (optional): {"business_date": "YYYY-MM-DD"} (default: previous business day)
    """
    try:
        data = request.get_json(silent=True) or {}
        day = coerce_date(data.get("business_date") or None, "business_date")
        count = sales_service.lock_sales_for_day(g.store_id, day)
        return jsonify({"locked": count}), 200

    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to lock sales for day")
        return jsonify({"error": "Internal server error"}), 500
