from __future__ import annotations

from ..extensions import db
from tillpoint.time_utils import to_utc_z


TAX_INCLUSIVE = "INCLUSIVE"
TAX_EXCLUSIVE = "EXCLUSIVE"
TAX_EXEMPT = "EXEMPT"

VALID_TAX_MODES = [TAX_INCLUSIVE, TAX_EXCLUSIVE, TAX_EXEMPT]


class Product(db.Model):
    """
    Product master data, read by the sale engine.

    STOCK INVARIANT: stock_quantity >= 0 at all times. The column is only
    ever changed through services.inventory_guard.InventoryGuard, which
    issues conditional single-statement updates. Never assign it directly.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.CheckConstraint("stock_quantity >= 0", name="ck_products_stock_non_negative"),
        db.Index("ix_products_active_name", "is_active", "name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sku = db.Column(db.String(64), nullable=False, unique=True)
    name = db.Column(db.String(255), nullable=False)

    # Authoritative storage in cents
    cost_price_cents = db.Column(db.Integer, nullable=False, default=0)
    retail_price_cents = db.Column(db.Integer, nullable=False)
    wholesale_price_cents = db.Column(db.Integer, nullable=True)

    stock_quantity = db.Column(db.Integer, nullable=False, default=0)
    min_stock = db.Column(db.Integer, nullable=False, default=0)
    max_stock = db.Column(db.Integer, nullable=True)

    # INCLUSIVE, EXCLUSIVE, EXEMPT
    tax_mode = db.Column(db.String(16), nullable=False, default=TAX_INCLUSIVE)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    tiers = db.relationship(
        "WholesaleTier",
        backref="product",
        lazy=True,
        order_by="WholesaleTier.min_quantity",
    )

    def __repr__(self) -> str:
        return f"<Product id={self.id} sku={self.sku!r} stock={self.stock_quantity}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sku": self.sku,
            "name": self.name,
            "cost_price_cents": self.cost_price_cents,
            "retail_price_cents": self.retail_price_cents,
            "wholesale_price_cents": self.wholesale_price_cents,
            "stock_quantity": self.stock_quantity,
            "min_stock": self.min_stock,
            "max_stock": self.max_stock,
            "tax_mode": self.tax_mode,
            "is_active": self.is_active,
            "tiers": [t.to_dict() for t in self.tiers],
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class WholesaleTier(db.Model):
    """Quantity-bracket price override. The highest applicable min_quantity wins."""
    __tablename__ = "wholesale_tiers"
    __table_args__ = (
        db.Index("ix_wholesale_tiers_product_active", "product_id", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    min_quantity = db.Column(db.Integer, nullable=False)
    max_quantity = db.Column(db.Integer, nullable=True)
    price_cents = db.Column(db.Integer, nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "min_quantity": self.min_quantity,
            "max_quantity": self.max_quantity,
            "price_cents": self.price_cents,
            "is_active": self.is_active,
        }


class StockEntry(db.Model):
    """
    Stock-in record written in the same transaction as the guard increment.

    idempotency_key makes offline replays of the same entry a no-op.
    """
    __tablename__ = "stock_entries"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    actor_id = db.Column(db.String(64), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    cost_price_cents = db.Column(db.Integer, nullable=True)
    total_cost_cents = db.Column(db.Integer, nullable=True)

    reference_number = db.Column(db.String(128), nullable=True)
    notes = db.Column(db.String(255), nullable=True)
    idempotency_key = db.Column(db.String(128), nullable=True, unique=True)

    # Stock before/after, captured from the guard
    previous_stock = db.Column(db.Integer, nullable=False)
    new_stock = db.Column(db.Integer, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "actor_id": self.actor_id,
            "quantity": self.quantity,
            "cost_price_cents": self.cost_price_cents,
            "total_cost_cents": self.total_cost_cents,
            "reference_number": self.reference_number,
            "notes": self.notes,
            "idempotency_key": self.idempotency_key,
            "previous_stock": self.previous_stock,
            "new_stock": self.new_stock,
            "created_at": to_utc_z(self.created_at),
        }
