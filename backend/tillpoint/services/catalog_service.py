# Overview: Stock entries and whitelisted catalog patches (the non-sale catalog mutations).

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError

from ..errors import NotFoundError, ValidationError
from ..identity import Actor
from ..models import AuditAction, Product, StockEntry
from ..models.catalog import VALID_TAX_MODES
from tillpoint.time_utils import utcnow
from .audit_service import record_audit
from .concurrency import lock_for_update, write_transaction
from .inventory_guard import InventoryGuard

logger = logging.getLogger(__name__)


STOCK_LOW = "LOW_STOCK"
STOCK_OVER = "OVERSTOCK"
STOCK_NORMAL = "NORMAL"


def stock_status(product: Product, quantity: Optional[int] = None) -> str:
    """Classify a stock level against the product's min/max thresholds."""
    if quantity is None:
        quantity = product.stock_quantity
    if quantity <= product.min_stock:
        return STOCK_LOW
    if product.max_stock is not None and quantity >= product.max_stock:
        return STOCK_OVER
    return STOCK_NORMAL


class StockEntryService:
    """
    Stock adjustments. The StockEntry row and the stock change are written in
    one transaction; positive quantities go through guard.increment, negative
    ones through the guard's conditional decrement.
    """

    def __init__(self, session, guard: Optional[InventoryGuard] = None):
        self.session = session
        self.guard = guard or InventoryGuard(session)

    def record(
        self,
        product_id: int,
        quantity: int,
        actor: Actor,
        *,
        cost_price_cents: Optional[int] = None,
        reference_number: Optional[str] = None,
        notes: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> StockEntry:
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity == 0:
            raise ValidationError("Quantity is required and cannot be zero", details={"field": "quantity"})
        if cost_price_cents is not None and (not isinstance(cost_price_cents, int) or cost_price_cents < 0):
            raise ValidationError("cost_price_cents must be a non-negative integer", details={"field": "cost_price_cents"})

        def _op():
            if idempotency_key:
                existing = self.session.query(StockEntry).filter_by(idempotency_key=idempotency_key).first()
                if existing is not None:
                    return existing, None, False

            product = self.session.get(Product, product_id)
            if product is None:
                raise NotFoundError("Product not found", details={"product_id": product_id})

            if quantity > 0:
                change = self.guard.increment(product_id, quantity)
            else:
                change = self.guard.reserve_and_decrement(product_id, -quantity)

            unit_cost = cost_price_cents if cost_price_cents is not None else product.cost_price_cents
            now = utcnow()
            entry = StockEntry(
                product_id=product_id,
                actor_id=actor.id,
                quantity=quantity,
                cost_price_cents=unit_cost,
                total_cost_cents=unit_cost * abs(quantity),
                reference_number=reference_number or f"ADJ-{now:%Y%m%d%H%M%S}",
                notes=notes or "Manual stock adjustment",
                idempotency_key=idempotency_key,
                previous_stock=change.previous_stock,
                new_stock=change.new_stock,
                created_at=now,
            )
            self.session.add(entry)
            self.session.flush()

            level = stock_status(product, change.new_stock)
            record_audit(
                self.session,
                entity_type="product",
                entity_id=product_id,
                actor_id=actor.id,
                action=AuditAction.STOCK_IN,
                old_values={"stock_quantity": change.previous_stock},
                new_values={
                    "stock_quantity": change.new_stock,
                    "adjustment": quantity,
                    "total_cost_cents": entry.total_cost_cents,
                    "stock_entry_id": entry.id,
                    "stock_status": level,
                },
            )
            return entry, level, True

        try:
            entry, level, created = write_transaction(self.session, _op)
        except IntegrityError:
            if idempotency_key:
                existing = self.session.query(StockEntry).filter_by(idempotency_key=idempotency_key).first()
                if existing is not None:
                    return existing
            raise

        if created:
            logger.info(
                "Stock entry %s: product=%s %+d (%s -> %s)",
                entry.id, product_id, quantity, entry.previous_stock, entry.new_stock,
            )
            if level == STOCK_LOW:
                logger.warning("Product %s is low on stock (%s left)", product_id, entry.new_stock)
        return entry


# Fields a catalog patch may set; stock_quantity is never one of them.
_PATCHABLE_INT_FIELDS = ["cost_price_cents", "retail_price_cents", "wholesale_price_cents", "min_stock", "max_stock"]
_NULLABLE_FIELDS = ["wholesale_price_cents", "max_stock"]
PATCHABLE_FIELDS = ["name", "tax_mode", "is_active"] + _PATCHABLE_INT_FIELDS


class CatalogPatchService:
    """
    Absolute field assignments on a product. Replaying the same patch leaves
    the product unchanged, so patches are naturally idempotent.
    """

    def __init__(self, session):
        self.session = session

    def apply(self, product_id: int, fields: dict, actor: Actor) -> Product:
        changes = self._validate(fields)

        def _op():
            product = lock_for_update(self.session.query(Product).filter_by(id=product_id)).first()
            if product is None:
                raise NotFoundError("Product not found", details={"product_id": product_id})

            old_values = {}
            new_values = {}
            for field, value in changes.items():
                current = getattr(product, field)
                if current != value:
                    old_values[field] = current
                    new_values[field] = value
                    setattr(product, field, value)

            if new_values:
                record_audit(
                    self.session,
                    entity_type="product",
                    entity_id=product.id,
                    actor_id=actor.id,
                    action=AuditAction.CATALOG_PATCHED,
                    old_values=old_values,
                    new_values=new_values,
                )
            return product, sorted(new_values)

        product, changed = write_transaction(self.session, _op)
        if changed:
            logger.info("Product %s patched by %s: %s", product_id, actor.id, ", ".join(changed))
        return product

    def _validate(self, fields) -> dict:
        if not isinstance(fields, dict) or not fields:
            raise ValidationError("Patch must be a non-empty object", details={"field": "fields"})
        if "stock_quantity" in fields:
            raise ValidationError(
                "stock_quantity cannot be patched; record a stock entry instead",
                details={"field": "stock_quantity"},
            )
        unknown = sorted(set(fields) - set(PATCHABLE_FIELDS))
        if unknown:
            raise ValidationError(f"Unknown product fields: {', '.join(unknown)}", details={"fields": unknown})

        cleaned = {}
        for field, value in fields.items():
            if field == "name":
                if not isinstance(value, str) or not value.strip():
                    raise ValidationError("name must be a non-empty string", details={"field": field})
                value = value.strip()
            elif field == "tax_mode":
                if value not in VALID_TAX_MODES:
                    raise ValidationError(f"tax_mode must be one of {VALID_TAX_MODES}", details={"field": field})
            elif field == "is_active":
                if not isinstance(value, bool):
                    raise ValidationError("is_active must be a boolean", details={"field": field})
            elif value is None and field in _NULLABLE_FIELDS:
                pass
            elif not isinstance(value, int) or isinstance(value, bool) or value < 0:
                raise ValidationError(f"{field} must be a non-negative integer", details={"field": field})
            cleaned[field] = value
        return cleaned
