# Overview: Request decorators for API routes.

from functools import wraps
from flask import request, jsonify, g

from .extensions import db
from .models import Store


def _header_id(name: str) -> int | None:
    raw = (request.headers.get(name) or "").strip()
    if not raw.isdigit():
        return None
    value = int(raw)
    return value if value > 0 else None


def require_actor(f):
    """
    Establish store and cashier context from gateway headers.

    Sets the following Flask g attributes:
    - g.store_id: from X-Store-Id (store must exist)
    - g.cashier_id: from X-Cashier-Id

    Authentication happens upstream; this only checks that the identity
    headers are present and well formed.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        store_id = _header_id("X-Store-Id")
        cashier_id = _header_id("X-Cashier-Id")

        if store_id is None or cashier_id is None:
            return jsonify({
                "error": "X-Store-Id and X-Cashier-Id headers are required",
                "code": "MissingActor",
                "details": {},
            }), 401

        store = db.session.get(Store, store_id)
        if not store or not store.is_active:
            return jsonify({
                "error": f"Store {store_id} not found",
                "code": "NotFound",
                "details": {"store_id": store_id},
            }), 404

        g.store_id = store_id
        g.cashier_id = cashier_id
        return f(*args, **kwargs)

    return decorated_function
