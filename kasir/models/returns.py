from __future__ import annotations

from ..extensions import db
from kasir.time_utils import to_utc_z


class Return(db.Model):
    """
    Customer return against a completed (or locked) sale.

    Created COMPLETED in one unit of work: RETURN movements back into stock
    and one EXPENSE refund entry in the cash ledger.
    """
    __tablename__ = "returns"
    __table_args__ = (
        db.UniqueConstraint("store_id", "return_number", name="uq_returns_store_return_number"),
        db.Index("ix_returns_store_created", "store_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    original_sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    cashier_id = db.Column(db.Integer, nullable=False, index=True)

    business_date = db.Column(db.Date, nullable=False)
    daily_number = db.Column(db.Integer, nullable=False)
    return_number = db.Column(db.String(32), nullable=False)

    status = db.Column(db.String(16), nullable=False, default="COMPLETED")

    refund_total_cents = db.Column(db.BigInteger, nullable=False, default=0)
    refund_method = db.Column(db.String(16), nullable=False, default="CASH")

    notes = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    original_sale = db.relationship("Sale", backref=db.backref("returns", lazy=True))
    lines = db.relationship(
        "ReturnLine",
        backref="return_doc",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="ReturnLine.id",
    )

    def to_dict(self, include_lines: bool = False) -> dict:
        data = {
            "id": self.id,
            "store_id": self.store_id,
            "original_sale_id": self.original_sale_id,
            "original_transaction_number": (
                self.original_sale.transaction_number if self.original_sale else None
            ),
            "cashier_id": self.cashier_id,
            "business_date": self.business_date.isoformat() if self.business_date else None,
            "daily_number": self.daily_number,
            "return_number": self.return_number,
            "status": self.status,
            "refund_total_cents": self.refund_total_cents,
            "refund_method": self.refund_method,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
        }
        if include_lines:
            data["lines"] = [line.to_dict() for line in self.lines]
        return data


class ReturnLine(db.Model):
    __tablename__ = "return_lines"
    __table_args__ = (
        db.Index("ix_return_lines_sale_line", "original_sale_line_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    return_id = db.Column(db.Integer, db.ForeignKey("returns.id"), nullable=False, index=True)
    original_sale_line_id = db.Column(db.Integer, db.ForeignKey("sale_lines.id"), nullable=False)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    # Price paid on the original sale line, never the current catalog price
    unit_price_cents = db.Column(db.BigInteger, nullable=False)
    subtotal_cents = db.Column(db.BigInteger, nullable=False)

    stock_movement_id = db.Column(db.Integer, db.ForeignKey("stock_movements.id"), nullable=True)

    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "return_id": self.return_id,
            "original_sale_line_id": self.original_sale_line_id,
            "product_id": self.product_id,
            "product_name": self.product.name if self.product else None,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "subtotal_cents": self.subtotal_cents,
            "stock_movement_id": self.stock_movement_id,
        }
