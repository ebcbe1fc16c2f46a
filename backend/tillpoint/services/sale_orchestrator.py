# Overview: Sale submission, async payment finalization, voids and pending-payment expiry.

"""
Sale Transaction Orchestrator

SYNCHRONOUS METHODS (CASH, CARD, SPLIT):
    validate -> (idempotency check) -> price -> stock pre-check
    -> guard.decrement_many -> persist Sale/SaleItems/Payment -> commit
  All of it is one write transaction. Any failure rolls the whole unit back,
  so a rejected sale leaves no rows and no stock effect.

ASYNCHRONOUS METHOD (MPESA):
    validate -> (idempotency check) -> price -> stock pre-check
    -> persist Sale(PENDING_PAYMENT)/Payment(PENDING) -> commit
    -> gateway.initiate (outside the transaction)
  Stock is not touched until finalize_async_payment() receives a success.
  A failed initiation marks the Payment and Sale FAILED before returning.

IDEMPOTENCY:
- The idempotency-key lookup runs inside the same write-locked transaction
  as the insert. Sale.idempotency_key is UNIQUE, so a racing duplicate that
  slips past the lookup (non-SQLite stores) fails on insert and is resolved
  by re-reading the winner.
- finalize_async_payment() locks the Payment row and is a no-op for a
  payment that is already terminal.

Domain failures come back as SaleOutcome/FinalizeOutcome values. Only
unexpected failures raise.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload

from ..errors import ConflictError, InsufficientStock, NotFoundError, PosError, ValidationError
from ..identity import Actor, SYSTEM_ACTOR
from ..models import AuditAction, Payment, Product, Sale, SaleItem
from ..models.sales import (
    ASYNC_METHODS,
    FAILURE_PAYER_DECLINED,
    FAILURE_TIMEOUT,
    FAILURE_VOIDED,
    METHOD_CARD,
    METHOD_MPESA,
    PAYMENT_COMPLETED,
    PAYMENT_FAILED,
    PAYMENT_PENDING,
    SALE_COMPLETED,
    SALE_FAILED,
    SALE_PENDING_PAYMENT,
    SALE_REFUNDED,
    SALE_VOID,
    VALID_PAYMENT_METHODS,
)
from tillpoint.time_utils import utcnow
from .audit_service import record_audit
from .concurrency import lock_for_update, write_transaction
from .document_service import next_document_number
from .inventory_guard import InventoryGuard, StockChange
from .mpesa_client import format_phone_number
from .pricing import CartLine, CartPricing, PricingResolver, ProductSnapshot

logger = logging.getLogger(__name__)


# =============================================================================
# OUTCOMES
# =============================================================================

OUTCOME_COMPLETED = "COMPLETED"
OUTCOME_PENDING = "PENDING"
OUTCOME_DUPLICATE = "DUPLICATE"
OUTCOME_REJECTED = "REJECTED"

FINALIZE_APPLIED = "APPLIED"
FINALIZE_ALREADY_FINAL = "ALREADY_FINAL"
FINALIZE_UNKNOWN_PAYMENT = "UNKNOWN_PAYMENT"
FINALIZE_STOCK_CONFLICT = "STOCK_CONFLICT"

PENDING_MESSAGE = "M-Pesa payment initiated. Please complete payment on your phone."


def _stock_dicts(changes: Iterable[StockChange]) -> list[dict]:
    return [
        {"product_id": c.product_id, "previous_stock": c.previous_stock, "new_stock": c.new_stock}
        for c in changes
    ]


@dataclass(frozen=True)
class SaleOutcome:
    status: str
    sale: Optional[Sale] = None
    error: Optional[PosError] = None
    stock_changes: tuple[StockChange, ...] = ()
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status != OUTCOME_REJECTED

    @property
    def change_cents(self) -> int:
        return self.sale.change_cents if self.sale is not None else 0

    @classmethod
    def rejected(cls, error: PosError, sale: Optional[Sale] = None) -> "SaleOutcome":
        return cls(status=OUTCOME_REJECTED, sale=sale, error=error, message=error.message)

    @classmethod
    def duplicate(cls, sale: Sale) -> "SaleOutcome":
        return cls(status=OUTCOME_DUPLICATE, sale=sale, message="Sale already recorded")

    def to_dict(self) -> dict:
        data = {
            "status": self.status,
            "message": self.message,
            "sale": self.sale.to_dict() if self.sale is not None else None,
            "stock": _stock_dicts(self.stock_changes),
            "change_cents": self.change_cents,
        }
        if self.error is not None:
            data["error"] = self.error.to_dict()
        return data


@dataclass(frozen=True)
class PaymentResult:
    """Outcome reported for an asynchronous payment (callback or expiry)."""

    success: bool
    result_code: Optional[int] = None
    description: str = ""
    receipt_number: Optional[str] = None
    payer_phone: Optional[str] = None
    failure_reason: str = FAILURE_PAYER_DECLINED


@dataclass(frozen=True)
class FinalizeOutcome:
    status: str
    payment: Optional[Payment] = None
    error: Optional[PosError] = None
    stock_changes: tuple[StockChange, ...] = ()

    @property
    def applied(self) -> bool:
        return self.status == FINALIZE_APPLIED

    def to_dict(self) -> dict:
        data = {
            "status": self.status,
            "payment": self.payment.to_dict() if self.payment is not None else None,
            "stock": _stock_dicts(self.stock_changes),
        }
        if self.error is not None:
            data["error"] = self.error.to_dict()
        return data


# =============================================================================
# REQUEST PARSING
# =============================================================================

def _optional_int(data: dict, *keys: str) -> Optional[int]:
    for key in keys:
        if key in data and data[key] is not None:
            value = data[key]
            if not isinstance(value, int) or isinstance(value, bool):
                raise ValidationError(f"{keys[0]} must be an integer (cents)", details={"field": keys[0]})
            return value
    return None


def _optional_str(data: dict, *keys: str) -> Optional[str]:
    for key in keys:
        value = data.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


def parse_sale_payload(data) -> dict:
    """
    Turn a JSON sale request into submit() keyword arguments.

    Accepts snake_case and the camelCase keys sent by offline clients.
    """
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")

    items = data.get("items", data.get("cart"))
    if not isinstance(items, list):
        raise ValidationError("items must be a list", details={"field": "items"})

    return {
        "cart": [CartLine.from_dict(item) for item in items],
        "payment_method": _optional_str(data, "payment_method", "paymentMethod"),
        "idempotency_key": _optional_str(data, "idempotency_key", "idempotencyKey", "offline_id", "offlineId"),
        "discount_cents": _optional_int(data, "discount_cents", "discountCents") or 0,
        "paid_cents": _optional_int(data, "paid_cents", "paidCents"),
        "customer_name": _optional_str(data, "customer_name", "customerName"),
        "customer_phone": _optional_str(data, "customer_phone", "customerPhone", "phone_number", "phoneNumber"),
    }


# =============================================================================
# ORCHESTRATOR
# =============================================================================

class SaleOrchestrator:
    def __init__(
        self,
        session,
        *,
        pricing: PricingResolver,
        guard: Optional[InventoryGuard] = None,
        gateway=None,
        void_window_hours: int = 24,
        pending_timeout_seconds: int = 300,
    ):
        self.session = session
        self.pricing = pricing
        self.guard = guard or InventoryGuard(session)
        self.gateway = gateway
        self.void_window = timedelta(hours=void_window_hours)
        self.pending_timeout = timedelta(seconds=pending_timeout_seconds)

    # -------------------------------------------------------------------------
    # submit
    # -------------------------------------------------------------------------

    def submit(
        self,
        cart,
        payment_method: str,
        actor: Actor,
        idempotency_key: Optional[str] = None,
        *,
        discount_cents: int = 0,
        paid_cents: Optional[int] = None,
        customer_name: Optional[str] = None,
        customer_phone: Optional[str] = None,
    ) -> SaleOutcome:
        try:
            lines = self._validate(cart, payment_method, discount_cents, paid_cents)
            if payment_method == METHOD_MPESA:
                if not customer_phone:
                    raise ValidationError("Phone number is required for M-Pesa payments",
                                          details={"field": "customer_phone"})
                customer_phone = format_phone_number(customer_phone)
        except PosError as exc:
            return SaleOutcome.rejected(exc)

        draft = _SaleDraft(
            lines=lines,
            payment_method=payment_method,
            actor=actor,
            idempotency_key=idempotency_key,
            discount_cents=discount_cents,
            paid_cents=paid_cents,
            customer_name=customer_name,
            customer_phone=customer_phone,
        )

        if payment_method in ASYNC_METHODS:
            return self._submit_async(draft)
        return self._submit_sync(draft)

    def _validate(self, cart, payment_method, discount_cents, paid_cents) -> list[CartLine]:
        if payment_method not in VALID_PAYMENT_METHODS:
            raise ValidationError(
                f"Invalid payment method: {payment_method}. Must be one of {VALID_PAYMENT_METHODS}",
                details={"field": "payment_method"},
            )
        if not cart:
            raise ValidationError("Cart is empty", details={"field": "items"})

        lines = [line if isinstance(line, CartLine) else CartLine.from_dict(line) for line in cart]
        for line in lines:
            if line.quantity <= 0:
                raise ValidationError(
                    "quantity must be a positive integer",
                    details={"field": "quantity", "product_id": line.product_id},
                )

        if not isinstance(discount_cents, int) or discount_cents < 0:
            raise ValidationError("discount_cents must be a non-negative integer", details={"field": "discount_cents"})
        if paid_cents is not None and (not isinstance(paid_cents, int) or paid_cents < 0):
            raise ValidationError("paid_cents must be a non-negative integer", details={"field": "paid_cents"})
        return lines

    def _submit_sync(self, draft: "_SaleDraft") -> SaleOutcome:
        def _op():
            existing = self._existing_for_key(draft.idempotency_key)
            if existing is not None:
                return SaleOutcome.duplicate(existing)

            _, priced = self._price(draft.lines)
            total = self._check_totals(priced, draft.discount_cents)
            paid, change = _tender(draft.payment_method, total, draft.paid_cents)

            changes = self.guard.decrement_many(priced.quantities_by_product())

            now = utcnow()
            sale = self._persist(
                draft,
                priced,
                total=total,
                paid_cents=paid,
                change_cents=change,
                sale_status=SALE_COMPLETED,
                payment_status=PAYMENT_COMPLETED,
                completed_at=now,
            )
            record_audit(
                self.session,
                entity_type="sale",
                entity_id=sale.id,
                actor_id=draft.actor.id,
                action=AuditAction.SALE_COMPLETED,
                new_values={
                    "sale_number": sale.sale_number,
                    "status": sale.status,
                    "payment_status": sale.payment_status,
                    "total_cents": sale.total_cents,
                },
            )
            return SaleOutcome(
                status=OUTCOME_COMPLETED,
                sale=sale,
                stock_changes=tuple(changes),
                message="Sale completed successfully",
            )

        outcome = self._run_submission(draft, _op)
        if outcome.status == OUTCOME_COMPLETED:
            logger.info(
                "Sale %s completed: method=%s total_cents=%s actor=%s",
                outcome.sale.sale_number, draft.payment_method, outcome.sale.total_cents, draft.actor.id,
            )
        return outcome

    def _submit_async(self, draft: "_SaleDraft") -> SaleOutcome:
        def _op():
            existing = self._existing_for_key(draft.idempotency_key)
            if existing is not None:
                return SaleOutcome.duplicate(existing)

            _, priced = self._price(draft.lines)
            total = self._check_totals(priced, draft.discount_cents)
            if total < 100:
                raise ValidationError("M-Pesa amount must be at least 1", details={"total_cents": total})

            sale = self._persist(
                draft,
                priced,
                total=total,
                paid_cents=0,
                change_cents=0,
                sale_status=SALE_PENDING_PAYMENT,
                payment_status=PAYMENT_PENDING,
                completed_at=None,
            )
            record_audit(
                self.session,
                entity_type="sale",
                entity_id=sale.id,
                actor_id=draft.actor.id,
                action=AuditAction.SALE_PENDING_PAYMENT,
                new_values={"sale_number": sale.sale_number, "status": sale.status, "total_cents": total},
            )
            return SaleOutcome(status=OUTCOME_PENDING, sale=sale, message=PENDING_MESSAGE)

        outcome = self._run_submission(draft, _op)
        if outcome.status != OUTCOME_PENDING:
            return outcome

        sale_id = outcome.sale.id
        payment_id = outcome.sale.payments[0].id
        if self.gateway is None:
            raise RuntimeError("SaleOrchestrator has no payment gateway for asynchronous methods")

        try:
            ack = self.gateway.initiate(payment_id)
        except PosError as exc:
            sale = self.session.get(Sale, sale_id)
            logger.warning("Sale %s payment initiation failed: %s", sale.sale_number, exc.message)
            return SaleOutcome.rejected(exc, sale=sale)

        sale = self.session.get(Sale, sale_id)
        logger.info("Sale %s pending payment: checkout=%s", sale.sale_number, ack.checkout_request_id)
        return SaleOutcome(
            status=OUTCOME_PENDING,
            sale=sale,
            message=ack.customer_message or PENDING_MESSAGE,
        )

    def _run_submission(self, draft: "_SaleDraft", op) -> SaleOutcome:
        try:
            return write_transaction(self.session, op)
        except IntegrityError:
            # Lost an idempotency race on a store without a file-level write lock.
            if draft.idempotency_key:
                existing = self._existing_for_key(draft.idempotency_key)
                if existing is not None:
                    return SaleOutcome.duplicate(existing)
            raise
        except PosError as exc:
            logger.info("Sale rejected (%s): %s", exc.code, exc.message)
            return SaleOutcome.rejected(exc)

    def _existing_for_key(self, idempotency_key: Optional[str]) -> Optional[Sale]:
        if not idempotency_key:
            return None
        return self.session.query(Sale).filter_by(idempotency_key=idempotency_key).first()

    def _price(self, lines: list[CartLine]) -> tuple[dict[int, Product], CartPricing]:
        ids = {line.product_id for line in lines}
        products = {
            p.id: p
            for p in self.session.query(Product)
            .options(selectinload(Product.tiers))
            .filter(Product.id.in_(ids))
            .all()
        }
        for product in products.values():
            if not product.is_active:
                raise ValidationError(f"Product is not active: {product.name}", details={"product_id": product.id})

        snapshots = {pid: ProductSnapshot.from_model(p) for pid, p in products.items()}
        priced = self.pricing.price_cart(lines, snapshots)

        # Pre-check only; the guard's conditional update is what actually decides.
        for product_id, qty in priced.quantities_by_product().items():
            available = products[product_id].stock_quantity
            if available < qty:
                raise InsufficientStock(
                    product_id,
                    qty,
                    available,
                    message=f"Insufficient stock for {products[product_id].name}. Available: {available}",
                )
        return products, priced

    def _check_totals(self, priced: CartPricing, discount_cents: int) -> int:
        if discount_cents > priced.subtotal_cents + priced.tax_cents:
            raise ValidationError("Discount exceeds sale amount", details={"field": "discount_cents"})
        return priced.total_cents(discount_cents)

    def _persist(
        self,
        draft: "_SaleDraft",
        priced: CartPricing,
        *,
        total: int,
        paid_cents: int,
        change_cents: int,
        sale_status: str,
        payment_status: str,
        completed_at: Optional[datetime],
    ) -> Sale:
        now = utcnow()
        sale = Sale(
            sale_number=next_document_number(self.session, document_type="SALE", prefix="S"),
            actor_id=draft.actor.id,
            subtotal_cents=priced.subtotal_cents,
            discount_cents=draft.discount_cents,
            tax_cents=priced.tax_cents,
            total_cents=total,
            paid_cents=paid_cents,
            change_cents=change_cents,
            payment_method=draft.payment_method,
            payment_status=payment_status,
            status=sale_status,
            customer_name=draft.customer_name,
            customer_phone=draft.customer_phone,
            idempotency_key=draft.idempotency_key,
            created_at=now,
            completed_at=completed_at,
        )
        self.session.add(sale)
        self.session.flush()

        for line in priced.lines:
            self.session.add(SaleItem(
                sale_id=sale.id,
                product_id=line.product_id,
                wholesale_tier_id=line.tier_id,
                quantity=line.quantity,
                unit_price_cents=line.unit_price_cents,
                line_total_cents=line.line_total_cents,
                line_tax_cents=line.tax_cents,
                tax_mode=line.tax_mode,
                created_at=now,
            ))

        self.session.add(Payment(
            sale_id=sale.id,
            method=draft.payment_method,
            amount_cents=total,
            status=payment_status,
            reference=sale.sale_number,
            payer_phone=draft.customer_phone if draft.payment_method in ASYNC_METHODS else None,
            created_at=now,
            completed_at=completed_at,
        ))
        self.session.flush()
        return sale

    # -------------------------------------------------------------------------
    # finalize
    # -------------------------------------------------------------------------

    def finalize_async_payment(self, correlation_id: str, result: PaymentResult) -> FinalizeOutcome:
        """
        Apply a gateway outcome to the Payment whose checkout (or merchant)
        request id is correlation_id. Safe to call any number of times.
        """
        if not correlation_id:
            return FinalizeOutcome(status=FINALIZE_UNKNOWN_PAYMENT)

        def _lookup():
            payment = lock_for_update(
                self.session.query(Payment).filter(Payment.checkout_request_id == correlation_id)
            ).first()
            if payment is None:
                payment = lock_for_update(
                    self.session.query(Payment).filter(Payment.merchant_request_id == correlation_id)
                ).first()
            return payment

        outcome = self._finalize(_lookup, result)
        if outcome.status == FINALIZE_UNKNOWN_PAYMENT:
            logger.warning("Payment callback for unknown correlation id %s", correlation_id)
        return outcome

    def _finalize(self, lookup, result: PaymentResult) -> FinalizeOutcome:
        def _op():
            payment = lookup()
            if payment is None:
                return FinalizeOutcome(status=FINALIZE_UNKNOWN_PAYMENT)

            if payment.status != PAYMENT_PENDING:
                self._note_late_success(payment, result)
                return FinalizeOutcome(status=FINALIZE_ALREADY_FINAL, payment=payment)

            sale = lock_for_update(self.session.query(Sale).filter_by(id=payment.sale_id)).first()
            if result.success:
                return self._apply_success(sale, payment, result)
            return self._apply_failure(sale, payment, result)

        return write_transaction(self.session, _op)

    def _note_late_success(self, payment: Payment, result: PaymentResult) -> None:
        if not result.success or payment.status != PAYMENT_FAILED:
            return
        if result.receipt_number and not payment.late_receipt_number:
            payment.late_receipt_number = result.receipt_number
            logger.warning(
                "Success callback for payment %s after it failed (%s); receipt %s kept for reconciliation",
                payment.id, payment.failure_reason, result.receipt_number,
            )

    def _apply_success(self, sale: Sale, payment: Payment, result: PaymentResult) -> FinalizeOutcome:
        now = utcnow()
        quantities: dict[int, int] = {}
        for item in sale.items:
            quantities[item.product_id] = quantities.get(item.product_id, 0) + item.quantity

        payment.status = PAYMENT_COMPLETED
        payment.receipt_number = result.receipt_number
        payment.result_code = result.result_code
        payment.result_description = result.description
        payment.payer_phone = result.payer_phone or payment.payer_phone
        payment.completed_at = now
        sale.payment_status = PAYMENT_COMPLETED
        sale.paid_cents = sale.total_cents

        try:
            changes = self.guard.decrement_many(quantities)
        except InsufficientStock as exc:
            # Money was taken but the goods are gone; park the sale for a refund.
            sale.status = SALE_FAILED
            record_audit(
                self.session,
                entity_type="sale",
                entity_id=sale.id,
                actor_id=SYSTEM_ACTOR.id,
                action=AuditAction.SALE_PAYMENT_FAILED,
                old_values={"status": SALE_PENDING_PAYMENT},
                new_values={"status": SALE_FAILED, "reason": exc.code, "receipt_number": result.receipt_number},
            )
            logger.error(
                "Sale %s paid (receipt %s) but stock is insufficient for product %s; refund required",
                sale.sale_number, result.receipt_number, exc.product_id,
            )
            return FinalizeOutcome(status=FINALIZE_STOCK_CONFLICT, payment=payment, error=exc)

        sale.status = SALE_COMPLETED
        sale.completed_at = now
        record_audit(
            self.session,
            entity_type="payment",
            entity_id=payment.id,
            actor_id=SYSTEM_ACTOR.id,
            action=AuditAction.PAYMENT_COMPLETED,
            old_values={"status": PAYMENT_PENDING},
            new_values={"status": PAYMENT_COMPLETED, "receipt_number": result.receipt_number},
        )
        record_audit(
            self.session,
            entity_type="sale",
            entity_id=sale.id,
            actor_id=SYSTEM_ACTOR.id,
            action=AuditAction.SALE_COMPLETED,
            old_values={"status": SALE_PENDING_PAYMENT},
            new_values={"status": SALE_COMPLETED, "payment_status": PAYMENT_COMPLETED},
        )
        logger.info("Sale %s completed by payment callback (receipt %s)", sale.sale_number, result.receipt_number)
        return FinalizeOutcome(status=FINALIZE_APPLIED, payment=payment, stock_changes=tuple(changes))

    def _apply_failure(self, sale: Sale, payment: Payment, result: PaymentResult) -> FinalizeOutcome:
        payment.status = PAYMENT_FAILED
        payment.failure_reason = result.failure_reason
        payment.result_code = result.result_code
        payment.result_description = result.description
        payment.completed_at = utcnow()
        sale.status = SALE_FAILED
        sale.payment_status = PAYMENT_FAILED

        record_audit(
            self.session,
            entity_type="payment",
            entity_id=payment.id,
            actor_id=SYSTEM_ACTOR.id,
            action=AuditAction.PAYMENT_FAILED,
            old_values={"status": PAYMENT_PENDING},
            new_values={"status": PAYMENT_FAILED, "failure_reason": result.failure_reason},
        )
        record_audit(
            self.session,
            entity_type="sale",
            entity_id=sale.id,
            actor_id=SYSTEM_ACTOR.id,
            action=AuditAction.SALE_PAYMENT_FAILED,
            old_values={"status": SALE_PENDING_PAYMENT},
            new_values={"status": SALE_FAILED, "reason": result.failure_reason},
        )
        logger.info("Sale %s payment failed: %s (%s)", sale.sale_number, result.failure_reason, result.description)
        return FinalizeOutcome(status=FINALIZE_APPLIED, payment=payment)

    # -------------------------------------------------------------------------
    # expiry
    # -------------------------------------------------------------------------

    def expire_pending_payments(self, now: Optional[datetime] = None) -> list[int]:
        """
        Fail asynchronous payments still PENDING after the timeout.

        Returns the ids of the payments that were expired by this call.
        """
        cutoff = (now or utcnow()) - self.pending_timeout
        candidate_ids = [
            pid for (pid,) in self.session.query(Payment.id)
            .filter(
                Payment.status == PAYMENT_PENDING,
                Payment.method.in_(ASYNC_METHODS),
                Payment.created_at < cutoff,
            )
            .order_by(Payment.id)
            .all()
        ]
        self.session.rollback()

        expired = []
        timeout = PaymentResult(
            success=False,
            description="No payment confirmation received before timeout",
            failure_reason=FAILURE_TIMEOUT,
        )
        for payment_id in candidate_ids:
            outcome = self._finalize(
                lambda pid=payment_id: lock_for_update(self.session.query(Payment).filter_by(id=pid)).first(),
                timeout,
            )
            if outcome.applied:
                expired.append(payment_id)

        if expired:
            logger.info("Expired %s pending payment(s): %s", len(expired), expired)
        return expired

    # -------------------------------------------------------------------------
    # void
    # -------------------------------------------------------------------------

    def void_sale(self, sale_id: int, actor: Actor, reason: str, now: Optional[datetime] = None) -> Sale:
        if not reason or not str(reason).strip():
            raise ValidationError("Void reason is required", details={"field": "reason"})
        reason = str(reason).strip()

        def _op():
            sale = lock_for_update(self.session.query(Sale).filter_by(id=sale_id)).first()
            if sale is None:
                raise NotFoundError("Sale not found", details={"sale_id": sale_id})
            if sale.status == SALE_VOID:
                raise ConflictError("Sale is already voided")
            if sale.status == SALE_REFUNDED:
                raise ConflictError("Cannot void a refunded sale")
            if sale.status == SALE_FAILED:
                if sale.payment_status == PAYMENT_COMPLETED:
                    raise ConflictError("Cannot void a paid failed sale; refund its payment instead")
                raise ConflictError("Cannot void a failed sale")
            if sale.refunds:
                raise ConflictError("Cannot void a sale with refunds")

            current = now or utcnow()
            if sale.status == SALE_COMPLETED and current - sale.created_at > self.void_window:
                hours = int(self.void_window.total_seconds() // 3600)
                raise ConflictError(f"Cannot void sale after {hours} hours")

            old_status = sale.status
            if old_status == SALE_COMPLETED:
                # Pending sales never took stock.
                for item in sale.items:
                    self.guard.increment(item.product_id, item.quantity)

            for payment in sale.payments:
                payment.status = PAYMENT_FAILED
                payment.failure_reason = FAILURE_VOIDED
            sale.status = SALE_VOID
            sale.payment_status = PAYMENT_FAILED
            sale.voided_by = actor.id
            sale.voided_at = current
            sale.void_reason = reason

            record_audit(
                self.session,
                entity_type="sale",
                entity_id=sale.id,
                actor_id=actor.id,
                action=AuditAction.SALE_VOIDED,
                old_values={"status": old_status},
                new_values={"status": SALE_VOID, "reason": reason, "stock_restored": old_status == SALE_COMPLETED},
            )
            return sale

        sale = write_transaction(self.session, _op)
        logger.info("Sale %s voided by %s", sale.sale_number, actor.id)
        return sale


@dataclass(frozen=True)
class _SaleDraft:
    lines: list
    payment_method: str
    actor: Actor
    idempotency_key: Optional[str]
    discount_cents: int
    paid_cents: Optional[int]
    customer_name: Optional[str]
    customer_phone: Optional[str]


def _tender(payment_method: str, total: int, paid_cents: Optional[int]) -> tuple[int, int]:
    """Return (paid, change) for a synchronous tender."""
    if paid_cents is None:
        return total, 0
    if paid_cents < total:
        raise ValidationError("Insufficient payment amount", details={"field": "paid_cents", "total_cents": total})
    if payment_method == METHOD_CARD and paid_cents != total:
        raise ValidationError("Card payment must equal the sale total", details={"field": "paid_cents"})
    return paid_cents, paid_cents - total
