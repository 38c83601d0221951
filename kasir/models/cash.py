from __future__ import annotations

from ..extensions import db
from kasir.time_utils import to_utc_z


class ExpenseCategory(db.Model):
    """
    Reference table for cash expense categories.

    System categories (is_system=True) are created on demand by the core
    and cannot be edited through the API.
    """
    __tablename__ = "expense_categories"
    __table_args__ = (
        db.UniqueConstraint("store_id", "code", name="uq_expense_categories_store_code"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)

    code = db.Column(db.String(64), nullable=False)
    name = db.Column(db.String(128), nullable=False)
    description = db.Column(db.String(255), nullable=True)

    is_system = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "code": self.code,
            "name": self.name,
            "description": self.description,
            "is_system": self.is_system,
            "is_active": self.is_active,
        }


class CashTransaction(db.Model):
    """
    Cash ledger entry.

    amount_cents is always positive; direction comes from transaction_type.

    LINKS (each unique, at most one entry per source document):
    - sale_id: INCOME posted when a sale completes
    - return_id: EXPENSE refund for a return
    - reversed_sale_id: EXPENSE posted when a completed sale is voided

    Linked entries are owned by their source document and cannot be
    edited, verified or deleted through the cash API.
    """
    __tablename__ = "cash_transactions"
    __table_args__ = (
        db.UniqueConstraint("store_id", "transaction_number", name="uq_cash_transactions_store_number"),
        db.Index("ix_cash_transactions_store_date", "store_id", "transaction_date"),
        db.Index("ix_cash_transactions_creator_method_date", "created_by_user_id", "payment_method", "transaction_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)

    transaction_number = db.Column(db.String(32), nullable=False)

    # INCOME, EXPENSE
    transaction_type = db.Column(db.String(16), nullable=False, index=True)
    amount_cents = db.Column(db.BigInteger, nullable=False)
    # CASH, QRIS, DEBIT
    payment_method = db.Column(db.String(16), nullable=False, index=True)

    category_id = db.Column(db.Integer, db.ForeignKey("expense_categories.id"), nullable=True, index=True)
    category_type = db.Column(db.String(16), nullable=True)

    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=True, unique=True)
    return_id = db.Column(db.Integer, db.ForeignKey("returns.id"), nullable=True, unique=True)
    reversed_sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=True, unique=True)

    description = db.Column(db.String(255), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    transaction_date = db.Column(db.DateTime(timezone=True), nullable=False, index=True)

    is_verified = db.Column(db.Boolean, nullable=False, default=False)
    verified_by_user_id = db.Column(db.Integer, nullable=True)
    verified_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_by_user_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    deleted_by_user_id = db.Column(db.Integer, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    category = db.relationship("ExpenseCategory")
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_linked(self) -> bool:
        return any(v is not None for v in (self.sale_id, self.return_id, self.reversed_sale_id))

    def __repr__(self) -> str:
        return (
            f"<CashTransaction id={self.id} {self.transaction_number} "
            f"{self.transaction_type} {self.amount_cents} {self.payment_method}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "transaction_number": self.transaction_number,
            "transaction_type": self.transaction_type,
            "amount_cents": self.amount_cents,
            "payment_method": self.payment_method,
            "category_id": self.category_id,
            "category_name": self.category.name if self.category else None,
            "category_type": self.category_type,
            "sale_id": self.sale_id,
            "return_id": self.return_id,
            "reversed_sale_id": self.reversed_sale_id,
            "description": self.description,
            "notes": self.notes,
            "transaction_date": to_utc_z(self.transaction_date),
            "is_verified": self.is_verified,
            "verified_by_user_id": self.verified_by_user_id,
            "verified_at": to_utc_z(self.verified_at) if self.verified_at else None,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
            "deleted_at": to_utc_z(self.deleted_at) if self.deleted_at else None,
            "deleted_by_user_id": self.deleted_by_user_id,
            "version_id": self.version_id,
        }
