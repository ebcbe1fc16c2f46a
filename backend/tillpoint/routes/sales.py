# Overview: Flask API routes for sale submission, lookup, voids and refunds.

# backend/tillpoint/routes/sales.py
"""Sales API routes"""

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import require_actor
from ..errors import PosError, ValidationError, error_response
from ..identity import SUPERVISOR_ROLES
from ..services import sales_query
from ..services.sale_orchestrator import (
    OUTCOME_COMPLETED,
    OUTCOME_DUPLICATE,
    OUTCOME_PENDING,
    parse_sale_payload,
)
from ..services.wiring import build_components
from ..extensions import db


sales_bp = Blueprint("sales", __name__, url_prefix="/api/sales")

_OUTCOME_STATUS = {
    OUTCOME_COMPLETED: 201,
    OUTCOME_PENDING: 202,
    OUTCOME_DUPLICATE: 200,
}


@sales_bp.post("")
@require_actor()
def submit_sale_route():
    """
    Submit a cart as a sale.

    Body: items [{product_id, quantity, tier_id?}], payment_method,
    discount_cents?, paid_cents?, customer_name?, customer_phone?,
    idempotency_key?

    Returns:
    - 201: completed (cash/card/split), with stock before/after and change
    - 202: M-Pesa push sent; sale is PENDING_PAYMENT until the callback
    - 200: idempotency key already used; the original sale is returned
    - 4xx/502: rejected, with a specific reason
    """
    try:
        kwargs = parse_sale_payload(request.get_json(silent=True))
        outcome = build_components().orchestrator.submit(actor=g.actor, **kwargs)

        if not outcome.ok:
            body = outcome.to_dict()
            body.update(outcome.error.to_dict())
            return jsonify(body), outcome.error.http_status

        return jsonify(outcome.to_dict()), _OUTCOME_STATUS[outcome.status]

    except PosError as e:
        body, status = error_response(e)
        return jsonify(body), status
    except Exception:
        current_app.logger.exception("Failed to submit sale")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.get("")
@require_actor()
def list_sales_route():
    """
    List sales with filters and pagination.

    Query params: start_date, end_date, cashier_id, payment_method, status,
    search, page (default 1), per_page (default 20, max 100).
    Cashiers only ever see their own sales.
    """
    try:
        filters = {
            "start_date": request.args.get("start_date"),
            "end_date": request.args.get("end_date"),
            "actor_id": request.args.get("cashier_id") or request.args.get("actor_id"),
            "payment_method": request.args.get("payment_method"),
            "status": request.args.get("status"),
            "search": request.args.get("search"),
        }
        page = request.args.get("page", 1, type=int)
        per_page = request.args.get("per_page", request.args.get("limit", 20, type=int), type=int)

        result = sales_query.list_sales(db.session, g.actor, filters, page=page, per_page=per_page)
        return jsonify(result), 200

    except PosError as e:
        body, status = error_response(e)
        return jsonify(body), status
    except Exception:
        current_app.logger.exception("Failed to list sales")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.get("/<int:sale_id>")
@require_actor()
def get_sale_route(sale_id: int):
    try:
        sale = sales_query.get_sale(db.session, sale_id, g.actor)
        return jsonify({"sale": sale.to_dict()}), 200
    except PosError as e:
        body, status = error_response(e)
        return jsonify(body), status
    except Exception:
        current_app.logger.exception("Failed to get sale")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.post("/<int:sale_id>/void")
@require_actor(SUPERVISOR_ROLES)
def void_sale_route(sale_id: int):
    """
    Void a sale (managers and admins only).

    Completed sales get their stock restored; a still-pending M-Pesa sale is
    voided without stock effects.
    """
    try:
        data = request.get_json(silent=True) or {}
        sale = build_components().orchestrator.void_sale(sale_id, g.actor, data.get("reason"))
        return jsonify({"sale": sale.to_dict(), "message": "Sale voided successfully"}), 200
    except PosError as e:
        body, status = error_response(e)
        return jsonify(body), status
    except Exception:
        current_app.logger.exception("Failed to void sale")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.post("/<int:sale_id>/refund")
@require_actor(SUPERVISOR_ROLES)
def refund_sale_route(sale_id: int):
    """
    Record a refund (managers and admins only).

    Body: reason (required), amount_cents (defaults to the remaining
    refundable amount), idempotency_key?
    """
    try:
        data = request.get_json(silent=True) or {}
        amount = data.get("amount_cents")
        if amount is not None and (not isinstance(amount, int) or isinstance(amount, bool)):
            raise ValidationError("amount_cents must be an integer", details={"field": "amount_cents"})

        components = build_components()
        refund = components.refunds.refund(
            sale_id,
            g.actor,
            data.get("reason"),
            amount_cents=amount,
            idempotency_key=data.get("idempotency_key"),
        )
        sale = sales_query.get_sale(db.session, sale_id, g.actor)
        return jsonify({"refund": refund.to_dict(), "sale": sale.to_dict()}), 201
    except PosError as e:
        body, status = error_response(e)
        return jsonify(body), status
    except Exception:
        current_app.logger.exception("Failed to refund sale")
        return jsonify({"error": "Internal server error"}), 500
