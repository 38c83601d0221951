from __future__ import annotations

from sqlalchemy import text

from ..extensions import db
from kasir.time_utils import to_utc_z


class CashDrawer(db.Model):
    """
    One cashier shift at the cash drawer.

    LIFECYCLE (see enums.DRAWER_TRANSITIONS):
    OPEN -> BALANCED | OVER | SHORT (counted close)
    OPEN -> CLOSED (force close, no count)

    A cashier has at most one OPEN drawer. The partial unique index enforces
    it at the database level; drawer_service checks it first for a clean error.

    expected = opening + cash_in - cash_out
    difference = closing - expected (positive: OVER, negative: SHORT)
    """
    __tablename__ = "cash_drawers"
    __table_args__ = (
        db.Index(
            "uq_cash_drawers_open_per_cashier",
            "cashier_id",
            unique=True,
            sqlite_where=text("status = 'OPEN'"),
            postgresql_where=text("status = 'OPEN'"),
        ),
        db.Index("ix_cash_drawers_store_shift_start", "store_id", "shift_start_time"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    cashier_id = db.Column(db.Integer, nullable=False, index=True)

    shift_start_time = db.Column(db.DateTime(timezone=True), nullable=False)
    shift_end_time = db.Column(db.DateTime(timezone=True), nullable=True)

    opening_balance_cents = db.Column(db.BigInteger, nullable=False, default=0)
    cash_in_cents = db.Column(db.BigInteger, nullable=False, default=0)
    cash_out_cents = db.Column(db.BigInteger, nullable=False, default=0)
    expected_balance_cents = db.Column(db.BigInteger, nullable=True)
    closing_balance_cents = db.Column(db.BigInteger, nullable=True)
    difference_cents = db.Column(db.BigInteger, nullable=True)

    status = db.Column(db.String(16), nullable=False, default="OPEN", index=True)
    notes = db.Column(db.Text, nullable=True)
    closed_by_user_id = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<CashDrawer id={self.id} cashier_id={self.cashier_id} status={self.status}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "cashier_id": self.cashier_id,
            "shift_start_time": to_utc_z(self.shift_start_time),
            "shift_end_time": to_utc_z(self.shift_end_time) if self.shift_end_time else None,
            "opening_balance_cents": self.opening_balance_cents,
            "cash_in_cents": self.cash_in_cents,
            "cash_out_cents": self.cash_out_cents,
            "expected_balance_cents": self.expected_balance_cents,
            "closing_balance_cents": self.closing_balance_cents,
            "difference_cents": self.difference_cents,
            "status": self.status,
            "notes": self.notes,
            "closed_by_user_id": self.closed_by_user_id,
            "version_id": self.version_id,
        }
