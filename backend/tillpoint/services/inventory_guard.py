# Overview: Inventory consistency guard; the only code path that changes Product.stock_quantity.

"""
Inventory Consistency Guard

INVARIANTS (authoritative):
- Product.stock_quantity >= 0 at all times (also a CHECK constraint).
- Every change is a single conditional UPDATE on one product row:
      UPDATE products SET stock_quantity = stock_quantity - :qty
      WHERE id = :id AND stock_quantity >= :qty
  The database serializes concurrent updates of the same row, and the
  predicate is re-evaluated against the committed value, so two callers can
  never both take the last unit. There is no read-then-write anywhere.
- The guard never commits. Callers own the transaction, which is what makes
  a multi-line sale all-or-nothing: rolling back the unit of work restores
  every decrement applied earlier in the same submission.
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import select, update
from sqlalchemy.orm.util import identity_key

from ..errors import InsufficientStock, NotFoundError, ValidationError
from ..models import Product


@dataclass(frozen=True)
class StockChange:
    product_id: int
    previous_stock: int
    new_stock: int

    @property
    def delta(self) -> int:
        return self.new_stock - self.previous_stock


class InventoryGuard:
    def __init__(self, session):
        self.session = session

    def available(self, product_id: int) -> int:
        """Current committed-or-own-transaction stock for a product."""
        stock = self.session.execute(
            select(Product.stock_quantity).where(Product.id == product_id)
        ).scalar()
        if stock is None:
            raise NotFoundError(f"Product not found: {product_id}", details={"product_id": product_id})
        return int(stock)

    def reserve_and_decrement(self, product_id: int, qty: int) -> StockChange:
        """
        Atomically take qty units from a product.

        Raises InsufficientStock (and changes nothing) when stock - qty < 0.
        """
        _require_positive(qty)
        stmt = (
            update(Product)
            .where(Product.id == product_id, Product.stock_quantity >= qty)
            .values(stock_quantity=Product.stock_quantity - qty)
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)
        if result.rowcount != 1:
            current = self.available(product_id)
            raise InsufficientStock(product_id, qty, current)

        self._expire_loaded(product_id)
        new_stock = self.available(product_id)
        return StockChange(product_id=product_id, previous_stock=new_stock + qty, new_stock=new_stock)

    def increment(self, product_id: int, qty: int) -> StockChange:
        """Atomically add qty units (stock-in, void, refund restock)."""
        _require_positive(qty)
        stmt = (
            update(Product)
            .where(Product.id == product_id)
            .values(stock_quantity=Product.stock_quantity + qty)
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)
        if result.rowcount != 1:
            raise NotFoundError(f"Product not found: {product_id}", details={"product_id": product_id})

        self._expire_loaded(product_id)
        new_stock = self.available(product_id)
        return StockChange(product_id=product_id, previous_stock=new_stock - qty, new_stock=new_stock)

    def decrement_many(self, quantities: dict[int, int]) -> list[StockChange]:
        """
        Decrement several products inside the caller's transaction.

        Products are visited in id order so concurrent multi-line sales lock
        rows in the same order. On the first failure the decrements already
        applied are compensated with increments before the error propagates,
        so stock is restored even if the caller's transaction is kept.
        """
        changes: list[StockChange] = []
        try:
            for product_id in sorted(quantities):
                changes.append(self.reserve_and_decrement(product_id, quantities[product_id]))
        except InsufficientStock:
            self.release(changes)
            raise
        return changes

    def release(self, changes: list[StockChange]) -> None:
        """Undo decrements (most recent first)."""
        for change in reversed(changes):
            if change.delta < 0:
                self.increment(change.product_id, -change.delta)

    def _expire_loaded(self, product_id: int) -> None:
        # Objects already in the identity map would otherwise show the old value.
        obj = self.session.identity_map.get(identity_key(Product, product_id))
        if obj is not None:
            self.session.expire(obj, ["stock_quantity", "updated_at"])


def _require_positive(qty) -> None:
    if not isinstance(qty, int) or isinstance(qty, bool) or qty <= 0:
        raise ValidationError("quantity must be a positive integer", details={"quantity": qty})
