# Overview: Flask API routes for cash drawer shifts; open, close and history.

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import LedgerError
from ..services import drawer_service
from ..decorators import require_actor
from ..validation import optional_int_arg, page_args, window_args


drawers_bp = Blueprint("drawers", __name__, url_prefix="/api/drawers")


@drawers_bp.post("/open")
@require_actor
def open_drawer_route():
    """Request body: {"opening_balance_cents": 200000, "notes": "..."}"""
    try:
        data = request.get_json(silent=True) or {}
        drawer = drawer_service.open_drawer(
            g.store_id,
            g.cashier_id,
            data.get("opening_balance_cents", 0),
            notes=data.get("notes"),
        )
        return jsonify({"drawer": drawer.to_dict()}), 201
    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to open cash drawer")
        return jsonify({"error": "Internal server error"}), 500


@drawers_bp.get("/current")
@require_actor
def current_drawer_route():
    """The calling cashier's open drawer with live expected balance, or null."""
    drawer = drawer_service.get_current_drawer(g.cashier_id)
    return jsonify({"drawer": drawer}), 200


@drawers_bp.post("/<int:drawer_id>/close")
@require_actor
def close_drawer_route(drawer_id: int):
    """Request body: {"closing_balance_cents": 350000, "notes": "..."}"""
    try:
        data = request.get_json(silent=True) or {}
        if data.get("closing_balance_cents") is None:
            return jsonify({
                "error": "closing_balance_cents required",
                "code": "ValidationError",
                "details": {},
            }), 400

        drawer = drawer_service.close_drawer(
            drawer_id,
            data["closing_balance_cents"],
            notes=data.get("notes"),
            store_id=g.store_id,
            actor_user_id=g.cashier_id,
        )
        return jsonify({"drawer": drawer.to_dict()}), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to close cash drawer")
        return jsonify({"error": "Internal server error"}), 500


@drawers_bp.post("/<int:drawer_id>/force-close")
@require_actor
def force_close_drawer_route(drawer_id: int):
    """Request body: {"reason": "..."}"""
    try:
        data = request.get_json(silent=True) or {}
        drawer = drawer_service.force_close_drawer(
            drawer_id,
            g.cashier_id,
            data.get("reason"),
            store_id=g.store_id,
        )
        return jsonify({"drawer": drawer.to_dict()}), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to force-close cash drawer")
        return jsonify({"error": "Internal server error"}), 500


@drawers_bp.get("/")
@require_actor
def list_drawers_route():
    """Query params: cashier_id, status, start, end, page, per_page"""
    try:
        args = request.args
        start, end = window_args(args)
        page, per_page = page_args(args)
        result = drawer_service.list_drawers(
            g.store_id,
            cashier_id=optional_int_arg(args, "cashier_id"),
            status=args.get("status") or None,
            start=start,
            end=end,
            page=page,
            per_page=per_page,
        )
        return jsonify(result), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status


@drawers_bp.get("/<int:drawer_id>")
@require_actor
def get_drawer_route(drawer_id: int):
    try:
        return jsonify({"drawer": drawer_service.get_drawer(drawer_id, store_id=g.store_id)}), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status
