# Overview: Push-payment state machine around the M-Pesa client (initiate + callback correlation).

"""
Payment Gateway Adapter

STATE MACHINE (per Payment): PENDING -> COMPLETED | FAILED (terminal)

initiate(payment_id)
- Sends the STK push for a PENDING payment and stores the two correlation
  ids it returns (merchant_request_id, checkout_request_id).
- If the push cannot be initiated the Payment and its Sale are failed right
  away (GATEWAY_REJECTED when the gateway answered with a non-zero code,
  INITIATION_FAILED for network/auth/configuration problems) and the
  GatewayError propagates to the caller.

handle_callback(body, finalize)
- Parses the callback (missing keys tolerated), maps ResultCode 0 -> success and anything
  else -> failure, and hands the outcome to finalize(correlation_id, result).
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from ..errors import GatewayError, PosError, ValidationError
from ..identity import SYSTEM_ACTOR
from ..models import AuditAction, Payment, Sale
from ..models.sales import (
    FAILURE_GATEWAY_REJECTED,
    FAILURE_INITIATION_FAILED,
    FAILURE_PAYER_DECLINED,
    PAYMENT_FAILED,
    PAYMENT_PENDING,
    SALE_FAILED,
    SALE_PENDING_PAYMENT,
)
from tillpoint.time_utils import utcnow
from .audit_service import record_audit
from .concurrency import lock_for_update, write_transaction
from .mpesa_client import CallbackResult, PushAcknowledgement, parse_callback
from .sale_orchestrator import FinalizeOutcome, PaymentResult

logger = logging.getLogger(__name__)

CALLBACK_ACCEPTED = {"ResultCode": 0, "ResultDesc": "Accepted"}


def callback_to_result(callback: CallbackResult) -> PaymentResult:
    """Map a parsed callback to the engine's payment outcome."""
    return PaymentResult(
        success=callback.succeeded,
        result_code=callback.result_code,
        description=callback.result_description,
        receipt_number=callback.receipt_number,
        payer_phone=callback.phone_number,
        failure_reason=FAILURE_PAYER_DECLINED,
    )


class PaymentGatewayAdapter:
    def __init__(self, session, client, *, description: Optional[str] = None):
        self.session = session
        self.client = client
        self.description = description

    def initiate(self, payment_id: int) -> PushAcknowledgement:
        payment = self.session.get(Payment, payment_id)
        if payment is None:
            raise ValidationError("Payment not found", details={"payment_id": payment_id})
        if payment.status != PAYMENT_PENDING:
            raise ValidationError("Only pending payments can be initiated", details={"payment_id": payment_id})

        amount_cents = payment.amount_cents
        phone = payment.payer_phone
        reference = payment.reference
        self.session.rollback()  # release the read before the outbound call

        try:
            ack = self.client.stk_push(
                amount_cents=amount_cents,
                phone_number=phone,
                account_reference=reference,
                description=self.description,
            )
        except PosError as exc:
            rejected = isinstance(exc, GatewayError) and "response_code" in exc.details
            reason = FAILURE_GATEWAY_REJECTED if rejected else FAILURE_INITIATION_FAILED
            self._fail_initiation(payment_id, reason, exc.message)
            logger.warning("STK push for payment %s failed (%s): %s", payment_id, reason, exc.message)
            if isinstance(exc, GatewayError):
                raise
            raise GatewayError(exc.message, details=exc.details) from exc

        def _store():
            locked = lock_for_update(self.session.query(Payment).filter_by(id=payment_id)).first()
            locked.merchant_request_id = ack.merchant_request_id
            locked.checkout_request_id = ack.checkout_request_id
            locked.result_description = ack.customer_message or ack.response_description
            return locked

        write_transaction(self.session, _store)
        logger.info(
            "STK push sent for payment %s: merchant=%s checkout=%s",
            payment_id, ack.merchant_request_id, ack.checkout_request_id,
        )
        return ack

    def _fail_initiation(self, payment_id: int, reason: str, description: str) -> None:
        def _op():
            payment = lock_for_update(self.session.query(Payment).filter_by(id=payment_id)).first()
            if payment is None or payment.status != PAYMENT_PENDING:
                return
            sale = lock_for_update(self.session.query(Sale).filter_by(id=payment.sale_id)).first()

            payment.status = PAYMENT_FAILED
            payment.failure_reason = reason
            payment.result_description = description[:255]
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
                new_values={"status": PAYMENT_FAILED, "failure_reason": reason},
            )
            record_audit(
                self.session,
                entity_type="sale",
                entity_id=sale.id,
                actor_id=SYSTEM_ACTOR.id,
                action=AuditAction.SALE_PAYMENT_FAILED,
                old_values={"status": SALE_PENDING_PAYMENT},
                new_values={"status": SALE_FAILED, "reason": reason},
            )

        write_transaction(self.session, _op)

    def handle_callback(
        self,
        body,
        finalize: Callable[[str, PaymentResult], FinalizeOutcome],
    ) -> FinalizeOutcome:
        """
        Process one gateway callback.

        Raises ValidationError when the body is not a recognisable callback.
        """
        callback = parse_callback(body)
        correlation_id = callback.checkout_request_id or callback.merchant_request_id
        if not correlation_id:
            raise ValidationError("Callback carries no correlation identifier")

        logger.info(
            "M-Pesa callback: checkout=%s result_code=%s desc=%s",
            callback.checkout_request_id, callback.result_code, callback.result_description,
        )
        return finalize(correlation_id, callback_to_result(callback))
