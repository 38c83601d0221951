# Overview: Flask API routes for the cash ledger; entries, sale sync, balances and reports.

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import LedgerError
from ..services import cash_service
from ..decorators import require_actor
from ..validation import bool_arg, optional_int_arg, page_args, window_args


cash_bp = Blueprint("cash", __name__, url_prefix="/api/cash")


@cash_bp.get("/transactions")
@require_actor
def list_transactions_route():
    """
    Query params: transaction_type, payment_method, category_id, is_verified,
    start, end, search, page, per_page
    """
    try:
        args = request.args
        start, end = window_args(args)
        page, per_page = page_args(args)
        result = cash_service.list_cash_transactions(
            g.store_id,
            transaction_type=args.get("transaction_type") or None,
            payment_method=args.get("payment_method") or None,
            category_id=optional_int_arg(args, "category_id"),
            is_verified=bool_arg(args, "is_verified"),
            start=start,
            end=end,
            search=args.get("search") or None,
            page=page,
            per_page=per_page,
        )
        return jsonify(result), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status


@cash_bp.post("/transactions")
@require_actor
def create_transaction_route():
    """
    Manual cash entry (operational income or expense).

    Request body:
    {
        "transaction_type": "EXPENSE",
        "amount_cents": 25000,
        "payment_method": "CASH",
        "category_id": 3,  (optional)
        "category_type": "OPERATIONAL",  (optional)
        "description": "...",  (optional)
        "notes": "...",  (optional)
        "transaction_date": "2024-05-01T08:00:00Z"  (optional)
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        missing = [k for k in ("transaction_type", "amount_cents", "payment_method") if data.get(k) is None]
        if missing:
            return jsonify({
                "error": f"{', '.join(missing)} required",
                "code": "ValidationError",
                "details": {"missing": missing},
            }), 400

        entry = cash_service.record_cash_transaction(
            store_id=g.store_id,
            transaction_type=data["transaction_type"],
            amount_cents=data["amount_cents"],
            payment_method=data["payment_method"],
            category_id=data.get("category_id"),
            category_type=data.get("category_type") or "OTHER",
            description=data.get("description"),
            notes=data.get("notes"),
            transaction_date=data.get("transaction_date"),
            actor_user_id=g.cashier_id,
        )
        return jsonify({"transaction": entry.to_dict()}), 201

    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to create cash transaction")
        return jsonify({"error": "Internal server error"}), 500


@cash_bp.get("/transactions/<int:transaction_id>")
@require_actor
def get_transaction_route(transaction_id: int):
    try:
        entry = cash_service.get_cash_transaction(transaction_id, store_id=g.store_id)
        return jsonify({"transaction": entry.to_dict()}), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status


@cash_bp.put("/transactions/<int:transaction_id>")
@require_actor
def update_transaction_route(transaction_id: int):
    try:
        data = request.get_json(silent=True) or {}
        entry = cash_service.update_cash_transaction(
            transaction_id,
            data,
            store_id=g.store_id,
            actor_user_id=g.cashier_id,
        )
        return jsonify({"transaction": entry.to_dict()}), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to update cash transaction")
        return jsonify({"error": "Internal server error"}), 500


@cash_bp.delete("/transactions/<int:transaction_id>")
@require_actor
def delete_transaction_route(transaction_id: int):
    try:
        entry = cash_service.delete_cash_transaction(
            transaction_id,
            actor_user_id=g.cashier_id,
            store_id=g.store_id,
        )
        return jsonify({"transaction": entry.to_dict()}), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to delete cash transaction")
        return jsonify({"error": "Internal server error"}), 500


@cash_bp.post("/transactions/<int:transaction_id>/verify")
@require_actor
def verify_transaction_route(transaction_id: int):
    try:
        entry = cash_service.verify_cash_transaction(
            transaction_id,
            actor_user_id=g.cashier_id,
            store_id=g.store_id,
        )
        return jsonify({"transaction": entry.to_dict()}), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to verify cash transaction")
        return jsonify({"error": "Internal server error"}), 500


@cash_bp.post("/sync/<int:sale_id>")
@require_actor
def sync_sale_route(sale_id: int):
    """Idempotent: returns the sale's existing entry when already synced."""
    try:
        entry = cash_service.sync_sale(g.store_id, sale_id, actor_user_id=g.cashier_id)
        return jsonify({"transaction": entry.to_dict()}), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to sync sale to cash ledger")
        return jsonify({"error": "Internal server error"}), 500


@cash_bp.get("/balance")
@require_actor
def balance_route():
    """Query params: payment_method (optional)"""
    try:
        return jsonify(cash_service.get_cash_balance(
            g.store_id,
            payment_method=request.args.get("payment_method") or None,
        )), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status


@cash_bp.get("/flow")
@require_actor
def flow_route():
    try:
        start, end = window_args(request.args)
        return jsonify(cash_service.get_cash_flow_summary(g.store_id, start=start, end=end)), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status


@cash_bp.get("/expenses-by-category")
@require_actor
def expenses_by_category_route():
    try:
        start, end = window_args(request.args)
        items = cash_service.get_expense_by_category(g.store_id, start=start, end=end)
        return jsonify({"items": items, "count": len(items)}), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status


@cash_bp.get("/categories")
@require_actor
def list_categories_route():
    categories = cash_service.list_expense_categories(g.store_id)
    return jsonify({"items": [c.to_dict() for c in categories], "count": len(categories)}), 200


@cash_bp.post("/categories")
@require_actor
def create_category_route():
    """Request body: {"code": "UTILITIES", "name": "Listrik & Air", "description": "..."}"""
    try:
        data = request.get_json(silent=True) or {}
        category = cash_service.create_expense_category(
            g.store_id,
            code=data.get("code"),
            name=data.get("name"),
            description=data.get("description"),
        )
        return jsonify({"category": category.to_dict()}), 201
    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to create expense category")
        return jsonify({"error": "Internal server error"}), 500
