# Overview: Inbound M-Pesa callback endpoint (called by the gateway, not by POS clients).

# backend/tillpoint/routes/payments.py
from flask import Blueprint, request, jsonify, current_app

from ..errors import ValidationError
from ..services.payment_gateway import CALLBACK_ACCEPTED
from ..services.sale_orchestrator import FINALIZE_UNKNOWN_PAYMENT
from ..services.wiring import build_components
from ..time_utils import utcnow, to_utc_z


payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")


@payments_bp.post("/mpesa/callback")
def mpesa_callback_route():
    """
    Receive an STK push result.

    Duplicate and replayed callbacks are accepted and have no further effect.

    Returns:
    - 200 {"ResultCode": 0, "ResultDesc": "Accepted"}: callback applied or already applied
    - 400: body is not a recognisable STK callback
    - 404: no payment matches the correlation id
    """
    try:
        components = build_components()
        outcome = components.gateway.handle_callback(
            request.get_json(silent=True),
            components.orchestrator.finalize_async_payment,
        )
        if outcome.status == FINALIZE_UNKNOWN_PAYMENT:
            return jsonify({"ResultCode": 1, "ResultDesc": "Unknown payment"}), 404

        return jsonify(CALLBACK_ACCEPTED), 200

    except ValidationError as e:
        current_app.logger.warning("Rejected M-Pesa callback: %s", e.message)
        return jsonify({"ResultCode": 1, "ResultDesc": e.message}), 400
    except Exception:
        current_app.logger.exception("M-Pesa callback processing failed")
        return jsonify({"ResultCode": 1, "ResultDesc": "Callback processing error"}), 500


@payments_bp.get("/mpesa/callback")
def mpesa_callback_health():
    """Health check for the callback URL registered with the gateway."""
    return jsonify({
        "status": "M-Pesa callback endpoint is active",
        "timestamp": to_utc_z(utcnow()),
    }), 200
