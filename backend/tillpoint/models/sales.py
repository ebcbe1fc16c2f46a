from __future__ import annotations

from ..extensions import db
from tillpoint.time_utils import to_utc_z


# =============================================================================
# PAYMENT METHODS
# =============================================================================

METHOD_CASH = "CASH"
METHOD_CARD = "CARD"
METHOD_SPLIT = "SPLIT"
METHOD_MPESA = "MPESA"

SYNC_METHODS = [METHOD_CASH, METHOD_CARD, METHOD_SPLIT]
ASYNC_METHODS = [METHOD_MPESA]
VALID_PAYMENT_METHODS = SYNC_METHODS + ASYNC_METHODS


# =============================================================================
# STATUSES
# =============================================================================

# Payment axis (Sale.payment_status and Payment.status)
PAYMENT_PENDING = "PENDING"
PAYMENT_COMPLETED = "COMPLETED"
PAYMENT_FAILED = "FAILED"
PAYMENT_REFUNDED = "REFUNDED"

# Sale axis (Sale.status), independent from payment status
SALE_COMPLETED = "COMPLETED"
SALE_PENDING_PAYMENT = "PENDING_PAYMENT"
SALE_FAILED = "FAILED"
SALE_VOID = "VOID"
SALE_REFUNDED = "REFUNDED"

# Payment.failure_reason
FAILURE_GATEWAY_REJECTED = "GATEWAY_REJECTED"
FAILURE_INITIATION_FAILED = "INITIATION_FAILED"
FAILURE_PAYER_DECLINED = "PAYER_DECLINED"
FAILURE_TIMEOUT = "TIMEOUT"
FAILURE_VOIDED = "VOIDED"


class Sale(db.Model):
    """
    Sale header. Created together with its items and payment, then only
    status fields change.

    INVARIANTS:
    - total_cents = subtotal_cents + tax_cents - discount_cents
    - status is never COMPLETED while payment_status is PENDING
      (async sales sit in PENDING_PAYMENT until the callback resolves)
    - idempotency_key is set only for offline-originated sales and is unique
    """
    __tablename__ = "sales"
    __table_args__ = (
        db.Index("ix_sales_status_created", "status", "created_at"),
        db.Index("ix_sales_actor_created", "actor_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Human-readable number (e.g., "S-000123")
    sale_number = db.Column(db.String(64), nullable=False, unique=True)
    actor_id = db.Column(db.String(64), nullable=False)

    # Amounts (all in cents)
    subtotal_cents = db.Column(db.Integer, nullable=False)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False)
    paid_cents = db.Column(db.Integer, nullable=False, default=0)
    change_cents = db.Column(db.Integer, nullable=False, default=0)

    payment_method = db.Column(db.String(16), nullable=False, index=True)
    payment_status = db.Column(db.String(16), nullable=False, index=True)
    status = db.Column(db.String(16), nullable=False, index=True)

    customer_name = db.Column(db.String(255), nullable=True)
    customer_phone = db.Column(db.String(32), nullable=True)

    idempotency_key = db.Column(db.String(128), nullable=True, unique=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Void audit trail
    voided_by = db.Column(db.String(64), nullable=True)
    voided_at = db.Column(db.DateTime(timezone=True), nullable=True)
    void_reason = db.Column(db.String(255), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    items = db.relationship("SaleItem", backref="sale", lazy=True, order_by="SaleItem.id")
    payments = db.relationship("Payment", backref="sale", lazy=True, order_by="Payment.id")
    refunds = db.relationship("Refund", backref="sale", lazy=True, order_by="Refund.id")
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self, *, include_children: bool = True) -> dict:
        data = {
            "id": self.id,
            "sale_number": self.sale_number,
            "actor_id": self.actor_id,
            "subtotal_cents": self.subtotal_cents,
            "discount_cents": self.discount_cents,
            "tax_cents": self.tax_cents,
            "total_cents": self.total_cents,
            "paid_cents": self.paid_cents,
            "change_cents": self.change_cents,
            "payment_method": self.payment_method,
            "payment_status": self.payment_status,
            "status": self.status,
            "customer_name": self.customer_name,
            "customer_phone": self.customer_phone,
            "idempotency_key": self.idempotency_key,
            "created_at": to_utc_z(self.created_at),
            "completed_at": to_utc_z(self.completed_at),
            "voided_by": self.voided_by,
            "voided_at": to_utc_z(self.voided_at),
            "void_reason": self.void_reason,
            "version_id": self.version_id,
        }
        if include_children:
            data["items"] = [i.to_dict() for i in self.items]
            data["payments"] = [p.to_dict() for p in self.payments]
            data["refunds"] = [r.to_dict() for r in self.refunds]
        return data


class SaleItem(db.Model):
    """Line item. Price, tier and tax are snapshotted at sale time."""
    __tablename__ = "sale_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    wholesale_tier_id = db.Column(db.Integer, db.ForeignKey("wholesale_tiers.id"), nullable=True)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    line_total_cents = db.Column(db.Integer, nullable=False)
    line_tax_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_mode = db.Column(db.String(16), nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "product_id": self.product_id,
            "wholesale_tier_id": self.wholesale_tier_id,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "line_total_cents": self.line_total_cents,
            "line_tax_cents": self.line_tax_cents,
            "tax_mode": self.tax_mode,
            "created_at": to_utc_z(self.created_at),
        }


class Payment(db.Model):
    """
    Payment record for a sale.

    For MPESA the gateway-issued merchant/checkout request ids correlate the
    asynchronous callback with this row. State machine:
    PENDING -> COMPLETED | FAILED (terminal). REFUNDED only after COMPLETED.
    """
    __tablename__ = "payments"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)

    method = db.Column(db.String(16), nullable=False, index=True)
    amount_cents = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(16), nullable=False, index=True)

    # Account reference sent with the push (sale number)
    reference = db.Column(db.String(64), nullable=True)

    # Gateway correlation identifiers
    merchant_request_id = db.Column(db.String(128), nullable=True, index=True)
    checkout_request_id = db.Column(db.String(128), nullable=True, unique=True)

    payer_phone = db.Column(db.String(32), nullable=True)
    receipt_number = db.Column(db.String(64), nullable=True)
    result_code = db.Column(db.Integer, nullable=True)
    result_description = db.Column(db.String(255), nullable=True)
    failure_reason = db.Column(db.String(32), nullable=True)

    # Receipt of a success callback that arrived after the payment was failed
    late_receipt_number = db.Column(db.String(64), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "method": self.method,
            "amount_cents": self.amount_cents,
            "status": self.status,
            "reference": self.reference,
            "merchant_request_id": self.merchant_request_id,
            "checkout_request_id": self.checkout_request_id,
            "payer_phone": self.payer_phone,
            "receipt_number": self.receipt_number,
            "result_code": self.result_code,
            "result_description": self.result_description,
            "failure_reason": self.failure_reason,
            "late_receipt_number": self.late_receipt_number,
            "created_at": to_utc_z(self.created_at),
            "completed_at": to_utc_z(self.completed_at),
            "version_id": self.version_id,
        }


class Refund(db.Model):
    """Single reason + amount refund record against a sale."""
    __tablename__ = "refunds"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    actor_id = db.Column(db.String(64), nullable=False)

    amount_cents = db.Column(db.Integer, nullable=False)
    reason = db.Column(db.String(255), nullable=False)
    idempotency_key = db.Column(db.String(128), nullable=True, unique=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "actor_id": self.actor_id,
            "amount_cents": self.amount_cents,
            "reason": self.reason,
            "idempotency_key": self.idempotency_key,
            "created_at": to_utc_z(self.created_at),
        }
