# backend/tillpoint/routes/system.py
"""
System health endpoint.

Checks the store and reports engine backlog (pending payments, sync queue)
plus whether the payment gateway is configured.
"""

import time
from flask import Blueprint, current_app

from ..extensions import db
from ..models import Payment, Product, SyncQueueItem
from ..models.sales import PAYMENT_PENDING
from ..models.sync import SYNC_FAILED, SYNC_PENDING
from ..services.mpesa_client import MpesaSettings
from ..time_utils import utcnow, to_utc_z

system_bp = Blueprint("system", __name__, url_prefix="/api")


def check_database_health() -> dict:
    """
    Check database connectivity and the engine backlog.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        product_count = db.session.query(Product).count()
        pending_payments = db.session.query(Payment).filter_by(status=PAYMENT_PENDING).count()
        pending_sync = db.session.query(SyncQueueItem).filter_by(status=SYNC_PENDING).count()
        dead_letters = db.session.query(SyncQueueItem).filter_by(status=SYNC_FAILED).count()

        elapsed_ms = (time.time() - start_time) * 1000

        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "products": product_count,
                "pending_payments": pending_payments,
                "pending_sync_items": pending_sync,
                "dead_letters": dead_letters,
            }
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


def check_gateway_config() -> dict:
    """M-Pesa credentials present? Missing ones degrade, not fail, the service."""
    missing = MpesaSettings.from_config(current_app.config).missing()
    if missing:
        return {
            "status": "degraded",
            "warning": "M-Pesa payments unavailable",
            "details": {"missing": missing, "environment": current_app.config.get("MPESA_ENVIRONMENT")},
        }
    return {
        "status": "healthy",
        "details": {"environment": current_app.config.get("MPESA_ENVIRONMENT")},
    }


@system_bp.get("/health")
def health():
    """
    Health check endpoint.

    Returns:
    - 200: healthy or degraded (cash/card sales still work)
    - 503: database unavailable
    """
    start_time = time.time()

    database_health = check_database_health()
    gateway_health = check_gateway_config()

    all_checks = [database_health, gateway_health]
    unhealthy_count = sum(1 for check in all_checks if check["status"] == "unhealthy")
    degraded_count = sum(1 for check in all_checks if check["status"] == "degraded")

    if unhealthy_count > 0:
        overall_status = "unhealthy"
        http_status = 503
    elif degraded_count > 0:
        overall_status = "degraded"
        http_status = 200
    else:
        overall_status = "healthy"
        http_status = 200

    total_elapsed_ms = (time.time() - start_time) * 1000

    response = {
        "status": overall_status,
        "timestamp": to_utc_z(utcnow()),
        "total_latency_ms": round(total_elapsed_ms, 2),
        "checks": {
            "database": database_health,
            "payment_gateway": gateway_health,
        }
    }

    return response, http_status
