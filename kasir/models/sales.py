from __future__ import annotations

from ..extensions import db
from kasir.time_utils import to_utc_z


class Sale(db.Model):
    """
    Sale transaction header.

    LIFECYCLE (see enums.SALE_TRANSITIONS):
    DRAFT -> COMPLETED -> LOCKED
    DRAFT -> DELETED
    COMPLETED -> DELETED (voided: stock and cash reversed)

    Stock and cash are posted on completion, never while DRAFT.
    """
    __tablename__ = "sales"
    __table_args__ = (
        db.UniqueConstraint("store_id", "transaction_number", name="uq_sales_store_transaction_number"),
        db.Index("ix_sales_store_status_completed", "store_id", "status", "completed_at"),
        db.Index("ix_sales_store_business_date", "store_id", "business_date"),
        db.Index("ix_sales_cashier_status", "cashier_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)

    # Identity comes from the gateway; no users table here
    cashier_id = db.Column(db.Integer, nullable=False, index=True)

    business_date = db.Column(db.Date, nullable=False)
    daily_number = db.Column(db.Integer, nullable=False)
    transaction_number = db.Column(db.String(32), nullable=False, index=True)

    status = db.Column(db.String(16), nullable=False, default="DRAFT", index=True)

    total_cents = db.Column(db.BigInteger, nullable=False, default=0)
    payment_amount_cents = db.Column(db.BigInteger, nullable=True)
    change_cents = db.Column(db.BigInteger, nullable=True)
    payment_method = db.Column(db.String(16), nullable=True)

    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    locked_at = db.Column(db.DateTime(timezone=True), nullable=True)

    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    deleted_by_user_id = db.Column(db.Integer, nullable=True)
    delete_reason = db.Column(db.String(255), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    lines = db.relationship(
        "SaleLine",
        backref="sale",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="SaleLine.id",
    )

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Sale id={self.id} {self.transaction_number} status={self.status}>"

    def to_dict(self, include_lines: bool = False) -> dict:
        data = {
            "id": self.id,
            "store_id": self.store_id,
            "cashier_id": self.cashier_id,
            "business_date": self.business_date.isoformat() if self.business_date else None,
            "daily_number": self.daily_number,
            "transaction_number": self.transaction_number,
            "status": self.status,
            "total_cents": self.total_cents,
            "payment_amount_cents": self.payment_amount_cents,
            "change_cents": self.change_cents,
            "payment_method": self.payment_method,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
            "completed_at": to_utc_z(self.completed_at) if self.completed_at else None,
            "locked_at": to_utc_z(self.locked_at) if self.locked_at else None,
            "deleted_at": to_utc_z(self.deleted_at) if self.deleted_at else None,
            "deleted_by_user_id": self.deleted_by_user_id,
            "delete_reason": self.delete_reason,
            "version_id": self.version_id,
        }
        if include_lines:
            data["lines"] = [line.to_dict() for line in self.lines]
        return data


class SaleLine(db.Model):
    """One product on a sale, with the unit price snapshotted when added."""
    __tablename__ = "sale_lines"
    __table_args__ = (
        db.UniqueConstraint("sale_id", "product_id", name="uq_sale_lines_sale_product"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.BigInteger, nullable=False)
    subtotal_cents = db.Column(db.BigInteger, nullable=False)

    # OUT movement posted when the sale completed
    stock_movement_id = db.Column(db.Integer, db.ForeignKey("stock_movements.id"), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "product_id": self.product_id,
            "product_name": self.product.name if self.product else None,
            "sku": self.product.sku if self.product else None,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "subtotal_cents": self.subtotal_cents,
            "stock_movement_id": self.stock_movement_id,
        }
