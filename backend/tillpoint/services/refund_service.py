# Overview: Amount-based refunds against completed sales and paid sales that never got their stock.

"""
Refunds

RULES:
- COMPLETED sales can be refunded, and so can a FAILED sale whose payment
  COMPLETED (paid by callback after its stock ran out). VOID, REFUNDED,
  pending and unpaid failed sales are refused.
- A refund is a single reason + amount record. The amount defaults to the
  remaining refundable balance and can never exceed it.
- When the cumulative refunds reach the sale total the sale and its payments
  become REFUNDED. Lines are restocked through the inventory guard only when
  the sale had taken stock; a paid FAILED sale never did.
- idempotency_key makes replays (offline sync) return the original refund.
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from ..errors import ConflictError, NotFoundError, ValidationError
from ..identity import Actor
from ..models import AuditAction, Refund, Sale
from ..models.sales import (
    PAYMENT_COMPLETED,
    PAYMENT_REFUNDED,
    SALE_COMPLETED,
    SALE_FAILED,
    SALE_REFUNDED,
    SALE_VOID,
)
from tillpoint.time_utils import utcnow
from .audit_service import record_audit
from .concurrency import lock_for_update, write_transaction
from .inventory_guard import InventoryGuard

logger = logging.getLogger(__name__)


class RefundService:
    def __init__(self, session, guard: Optional[InventoryGuard] = None):
        self.session = session
        self.guard = guard or InventoryGuard(session)

    def refunded_total(self, sale_id: int) -> int:
        return int(
            self.session.query(func.coalesce(func.sum(Refund.amount_cents), 0))
            .filter(Refund.sale_id == sale_id)
            .scalar()
        )

    def refund(
        self,
        sale_id: int,
        actor: Actor,
        reason: str,
        amount_cents: Optional[int] = None,
        idempotency_key: Optional[str] = None,
    ) -> Refund:
        if not reason or not str(reason).strip():
            raise ValidationError("Refund reason is required", details={"field": "reason"})
        if amount_cents is not None and (
            not isinstance(amount_cents, int) or isinstance(amount_cents, bool) or amount_cents <= 0
        ):
            raise ValidationError("Refund amount must be greater than 0", details={"field": "amount_cents"})
        reason = str(reason).strip()

        def _op():
            if idempotency_key:
                existing = self.session.query(Refund).filter_by(idempotency_key=idempotency_key).first()
                if existing is not None:
                    return existing, False

            sale = lock_for_update(self.session.query(Sale).filter_by(id=sale_id)).first()
            if sale is None:
                raise NotFoundError("Sale not found", details={"sale_id": sale_id})
            if sale.status == SALE_VOID:
                raise ConflictError("Cannot refund a voided sale")
            if sale.status == SALE_REFUNDED:
                raise ConflictError("Sale has already been fully refunded")
            paid_unfulfilled = sale.status == SALE_FAILED and sale.payment_status == PAYMENT_COMPLETED
            if sale.status != SALE_COMPLETED and not paid_unfulfilled:
                raise ConflictError(f"Cannot refund sale with status {sale.status}")

            remaining = sale.total_cents - self.refunded_total(sale.id)
            if remaining <= 0:
                raise ConflictError("Sale has already been fully refunded")
            amount = remaining if amount_cents is None else amount_cents
            if amount > remaining:
                raise ValidationError(
                    "Refund amount cannot exceed remaining sale amount",
                    details={"field": "amount_cents", "remaining_cents": remaining},
                )

            refund = Refund(
                sale_id=sale.id,
                actor_id=actor.id,
                amount_cents=amount,
                reason=reason,
                idempotency_key=idempotency_key,
                created_at=utcnow(),
            )
            self.session.add(refund)
            self.session.flush()

            record_audit(
                self.session,
                entity_type="refund",
                entity_id=refund.id,
                actor_id=actor.id,
                action=AuditAction.REFUND_RECORDED,
                new_values={"sale_id": sale.id, "amount_cents": amount, "reason": reason},
            )

            if amount == remaining:
                self._mark_fully_refunded(sale, actor)
            return refund, True

        try:
            refund, created = write_transaction(self.session, _op)
        except IntegrityError:
            if idempotency_key:
                existing = self.session.query(Refund).filter_by(idempotency_key=idempotency_key).first()
                if existing is not None:
                    return existing
            raise

        if created:
            logger.info("Refund %s recorded for sale %s: %s cents", refund.id, refund.sale_id, refund.amount_cents)
        return refund

    def _mark_fully_refunded(self, sale: Sale, actor: Actor) -> None:
        old_status = sale.status
        restock = old_status == SALE_COMPLETED
        if restock:
            for item in sale.items:
                change = self.guard.increment(item.product_id, item.quantity)
                record_audit(
                    self.session,
                    entity_type="product",
                    entity_id=item.product_id,
                    actor_id=actor.id,
                    action=AuditAction.STOCK_RESTORED,
                    old_values={"stock_quantity": change.previous_stock},
                    new_values={"stock_quantity": change.new_stock, "sale_id": sale.id},
                )

        for payment in sale.payments:
            if payment.status == PAYMENT_COMPLETED:
                payment.status = PAYMENT_REFUNDED
        sale.status = SALE_REFUNDED
        sale.payment_status = PAYMENT_REFUNDED

        record_audit(
            self.session,
            entity_type="sale",
            entity_id=sale.id,
            actor_id=actor.id,
            action=AuditAction.SALE_REFUNDED,
            old_values={"status": old_status},
            new_values={"status": SALE_REFUNDED, "payment_status": PAYMENT_REFUNDED, "stock_restored": restock},
        )
        if not restock:
            logger.info("Sale %s refunded without restock; it never took stock", sale.sale_number)
