from __future__ import annotations

from ..extensions import db
from kasir.time_utils import to_utc_z


class DailySequence(db.Model):
    """
    Per-store, per-type, per-business-day counter.

    next_number is the number the next allocation receives. Allocation is an
    atomic UPDATE ... SET next_number = next_number + 1.
    """
    __tablename__ = "daily_sequences"
    __table_args__ = (
        db.UniqueConstraint(
            "store_id", "sequence_type", "business_date",
            name="uq_daily_sequences_store_type_date",
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    # SALE, RETURN, CASH
    sequence_type = db.Column(db.String(16), nullable=False)
    business_date = db.Column(db.Date, nullable=False)
    next_number = db.Column(db.Integer, nullable=False, default=1)


class AuditEvent(db.Model):
    """
    Append-only audit trail for ledger events.

    - Written in the same DB transaction as the event it records
    - Never updated or deleted
    """
    __tablename__ = "audit_events"
    __table_args__ = (
        db.Index("ix_audit_events_store_occurred", "store_id", "occurred_at"),
        db.Index("ix_audit_events_entity", "entity_type", "entity_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)

    event_type = db.Column(db.String(64), nullable=False, index=True)  # e.g., SALE_COMPLETED, DRAWER_CLOSED
    event_category = db.Column(db.String(32), nullable=False, index=True)  # sales, stock, cash, returns, drawers

    entity_type = db.Column(db.String(64), nullable=False)
    entity_id = db.Column(db.Integer, nullable=False)

    actor_user_id = db.Column(db.Integer, nullable=True, index=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    note = db.Column(db.String(255), nullable=True)
    payload = db.Column(db.Text, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "event_type": self.event_type,
            "event_category": self.event_category,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "actor_user_id": self.actor_user_id,
            "occurred_at": to_utc_z(self.occurred_at),
            "note": self.note,
            "payload": self.payload,
        }
