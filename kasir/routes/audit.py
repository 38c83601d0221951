# Overview: Flask API route for the audit event trail; filters and keyset cursor paging.

from flask import Blueprint, request, jsonify, g

from ..errors import LedgerError
from ..services import audit_service
from ..decorators import require_actor
from ..validation import optional_int_arg, window_args
from kasir.time_utils import parse_iso_datetime

"""
Time semantics:
- API accepts ISO-8601 datetimes with Z/offsets; backend normalizes to UTC-naive internally.
- start/end filtering is inclusive.
"""

audit_bp = Blueprint("audit", __name__, url_prefix="/api/audit-events")


@audit_bp.get("")
@require_actor
def list_audit_events_route():
    """
    Query params: entity_type, entity_id, category, event_type, start, end,
    cursor (<ISO-8601>|<id> from the previous page), limit (max 500)
    """
    try:
        args = request.args
        start, end = window_args(args)
    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status

    limit = request.args.get("limit", default=100, type=int)
    limit = max(1, min(limit, 500))

    cursor_raw = request.args.get("cursor")
    before = None
    if cursor_raw:
        try:
            cursor_parts = cursor_raw.split("|")
            before = (parse_iso_datetime(cursor_parts[0]), int(cursor_parts[1]))
        except (ValueError, IndexError):
            return jsonify({
                "error": "cursor must be in format <ISO-8601>|<id>",
                "code": "ValidationError",
                "details": {},
            }), 400

    try:
        rows = audit_service.list_audit_events(
            g.store_id,
            entity_type=args.get("entity_type") or None,
            entity_id=optional_int_arg(args, "entity_id"),
            event_category=args.get("category") or None,
            event_type=args.get("event_type") or None,
            start=start,
            end=end,
            before=before,
            limit=limit,
        )
    except LedgerError as e:
        return jsonify(e.to_dict()), e.http_status

    next_cursor = None
    if len(rows) == limit:
        last = rows[-1]
        next_cursor = f"{last.occurred_at.isoformat()}|{last.id}"

    return jsonify({
        "items": [r.to_dict() for r in rows],
        "next_cursor": next_cursor,
        "limit": limit,
    }), 200
