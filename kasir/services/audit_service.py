# Overview: Append-only audit trail for ledger events.

from __future__ import annotations

import json
from datetime import datetime
from typing import Optional

from sqlalchemy import and_, or_

from ..extensions import db
from ..models import AuditEvent

"""
Audit trail invariants

- Append-only: no updates or deletes of existing events.
- No domain logic here; callers decide what is worth recording.
- Events are written inside the same DB transaction as the domain event
  they record, so a rolled-back operation leaves no event behind.
"""


def append_audit_event(
    *,
    store_id: int,
    event_type: str,
    event_category: str,
    entity_type: str,
    entity_id: int,
    actor_user_id: int | None = None,
    occurred_at: Optional[datetime] = None,
    note: Optional[str] = None,
    payload: Optional[dict] = None,
) -> AuditEvent:
    ev = AuditEvent(
        store_id=store_id,
        event_type=event_type,
        event_category=event_category,
        entity_type=entity_type,
        entity_id=entity_id,
        actor_user_id=actor_user_id,
        occurred_at=occurred_at,  # if None, db default applies
        note=note[:255] if note else None,
        payload=json.dumps(payload, sort_keys=True) if payload else None,
    )
    db.session.add(ev)
    db.session.flush()
    return ev


def list_audit_events(
    store_id: int,
    *,
    entity_type: str | None = None,
    entity_id: int | None = None,
    event_category: str | None = None,
    event_type: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    before: tuple[datetime, int] | None = None,
    limit: int = 100,
) -> list[AuditEvent]:
    """
    Events newest first.

    `before` is a keyset cursor (occurred_at, id): only events strictly
    older than it are returned.
    """
    query = db.session.query(AuditEvent).filter(AuditEvent.store_id == store_id)
    if entity_type:
        query = query.filter(AuditEvent.entity_type == entity_type)
    if entity_id is not None:
        query = query.filter(AuditEvent.entity_id == entity_id)
    if event_category:
        query = query.filter(AuditEvent.event_category == event_category)
    if event_type:
        query = query.filter(AuditEvent.event_type == event_type)
    if start is not None:
        query = query.filter(AuditEvent.occurred_at >= start)
    if end is not None:
        query = query.filter(AuditEvent.occurred_at <= end)
    if before is not None:
        cursor_dt, cursor_id = before
        query = query.filter(
            or_(
                AuditEvent.occurred_at < cursor_dt,
                and_(AuditEvent.occurred_at == cursor_dt, AuditEvent.id < cursor_id),
            )
        )
    return (
        query.order_by(AuditEvent.occurred_at.desc(), AuditEvent.id.desc())
        .limit(limit)
        .all()
    )
