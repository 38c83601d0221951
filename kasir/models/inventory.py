from __future__ import annotations

from ..extensions import db
from kasir.time_utils import to_utc_z


class Product(db.Model):
    """
    Product master data with its current stock position.

    SINGLE WRITER:
    `qty` and `cost_cents` are assigned only by
    stock_service.record_movement. Everything else reads them.

    - qty: units on hand, equal to the last StockMovement.after_qty
    - cost_cents: weighted average unit cost (WAC)
    - price_cents: catalog selling price, snapshotted onto sale lines
    """
    __tablename__ = "products"
    __table_args__ = (
        db.UniqueConstraint("store_id", "sku", name="uq_products_store_sku"),
        db.Index("ix_products_store_name", "store_id", "name"),
        db.Index("ix_products_store_active", "store_id", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)

    sku = db.Column(db.String(64), nullable=False)
    name = db.Column(db.String(255), nullable=False)

    price_cents = db.Column(db.BigInteger, nullable=True)
    cost_cents = db.Column(db.BigInteger, nullable=False, default=0)

    qty = db.Column(db.Integer, nullable=False, default=0)
    min_stock = db.Column(db.Integer, nullable=False, default=0)
    track_stock = db.Column(db.Boolean, nullable=False, default=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    store = db.relationship("Store", backref=db.backref("products", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Product id={self.id} sku={self.sku!r} qty={self.qty} store_id={self.store_id}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "sku": self.sku,
            "name": self.name,
            "price_cents": self.price_cents,
            "cost_cents": self.cost_cents,
            "qty": self.qty,
            "min_stock": self.min_stock,
            "track_stock": self.track_stock,
            "is_active": self.is_active,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class StockMovement(db.Model):
    """
    Append-only stock ledger row.

    IMMUTABLE: never updated or deleted.
    Replaying a product's rows in (occurred_at, id) order reproduces
    Product.qty: after_qty = before_qty + quantity_delta, and each row's
    before_qty equals the previous row's after_qty.
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.Index("ix_stock_movements_store_product_occurred", "store_id", "product_id", "occurred_at"),
        db.Index("ix_stock_movements_product_type_occurred", "product_id", "movement_type", "occurred_at"),
        db.Index("ix_stock_movements_reference", "reference_type", "reference_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    # IN, OUT, ADJUSTMENT, RETURN
    movement_type = db.Column(db.String(16), nullable=False, index=True)

    # Signed: positive adds stock, negative removes it
    quantity_delta = db.Column(db.Integer, nullable=False)

    before_qty = db.Column(db.Integer, nullable=False)
    after_qty = db.Column(db.Integer, nullable=False)

    # Cost per unit used for this movement (incoming cost or WAC at the time)
    unit_cost_cents = db.Column(db.BigInteger, nullable=True)

    # What caused it: SALE, SALE_VOID, RETURN, PURCHASE, OPNAME, MANUAL
    reference_type = db.Column(db.String(16), nullable=False, index=True)
    reference_id = db.Column(db.Integer, nullable=True)

    notes = db.Column(db.String(255), nullable=True)
    created_by_user_id = db.Column(db.Integer, nullable=True)

    occurred_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        index=True,
    )

    product = db.relationship("Product", backref=db.backref("movements", lazy="dynamic"))

    def __repr__(self) -> str:
        return (
            f"<StockMovement id={self.id} product_id={self.product_id} "
            f"{self.movement_type} {self.quantity_delta:+d} {self.before_qty}->{self.after_qty}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "product_id": self.product_id,
            "movement_type": self.movement_type,
            "quantity_delta": self.quantity_delta,
            "before_qty": self.before_qty,
            "after_qty": self.after_qty,
            "unit_cost_cents": self.unit_cost_cents,
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "notes": self.notes,
            "created_by_user_id": self.created_by_user_id,
            "occurred_at": to_utc_z(self.occurred_at),
        }


class StockOpname(db.Model):
    """
    Physical stock count (stock-take) for one product.

    LIFECYCLE:
    1. Created: system_qty snapshotted next to the counted actual_qty
    2. Processed: ADJUSTMENT movement posted (if quantities differ)

    Processing happens once; the adjustment targets actual_qty against the
    on-hand quantity at processing time, not the snapshot.
    """
    __tablename__ = "stock_opnames"
    __table_args__ = (
        db.Index("ix_stock_opnames_store_processed", "store_id", "processed"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    system_qty = db.Column(db.Integer, nullable=False)
    actual_qty = db.Column(db.Integer, nullable=False)
    difference = db.Column(db.Integer, nullable=False)

    notes = db.Column(db.Text, nullable=True)

    processed = db.Column(db.Boolean, nullable=False, default=False)
    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    processed_by_user_id = db.Column(db.Integer, nullable=True)
    stock_movement_id = db.Column(db.Integer, db.ForeignKey("stock_movements.id"), nullable=True)

    created_by_user_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    product = db.relationship("Product")
    stock_movement = db.relationship("StockMovement")
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "product_id": self.product_id,
            "system_qty": self.system_qty,
            "actual_qty": self.actual_qty,
            "difference": self.difference,
            "notes": self.notes,
            "processed": self.processed,
            "processed_at": to_utc_z(self.processed_at) if self.processed_at else None,
            "processed_by_user_id": self.processed_by_user_id,
            "stock_movement_id": self.stock_movement_id,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
            "version_id": self.version_id,
        }
