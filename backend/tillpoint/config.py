# backend/tillpoint/config.py
from __future__ import annotations
import os


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in the instance folder unless DATABASE_URL is set
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///tillpoint.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Pricing: national VAT rate in basis points (1600 = 16%)
    VAT_RATE_BPS = _env_int("VAT_RATE_BPS", 1600)

    # Sales
    VOID_WINDOW_HOURS = _env_int("VOID_WINDOW_HOURS", 24)

    # M-Pesa Daraja (push payment gateway)
    PUBLIC_BASE_URL = os.environ.get("PUBLIC_BASE_URL", "http://localhost:5000")
    MPESA_ENVIRONMENT = os.environ.get("MPESA_ENVIRONMENT", "sandbox")
    MPESA_CONSUMER_KEY = os.environ.get("MPESA_CONSUMER_KEY", "")
    MPESA_CONSUMER_SECRET = os.environ.get("MPESA_CONSUMER_SECRET", "")
    MPESA_BUSINESS_SHORT_CODE = os.environ.get("MPESA_BUSINESS_SHORT_CODE", "")
    MPESA_PASSKEY = os.environ.get("MPESA_PASSKEY", "")
    MPESA_AUTH_TOKEN_URL = os.environ.get(
        "MPESA_AUTH_TOKEN_URL",
        "https://sandbox.safaricom.co.ke/oauth/v1/generate?grant_type=client_credentials",
    )
    MPESA_STK_PUSH_URL = os.environ.get(
        "MPESA_STK_PUSH_URL",
        "https://sandbox.safaricom.co.ke/mpesa/stkpush/v1/processrequest",
    )
    MPESA_CALLBACK_URL = os.environ.get(
        "MPESA_CALLBACK_URL",
        f"{PUBLIC_BASE_URL}/api/payments/mpesa/callback",
    )
    MPESA_TRANSACTION_DESC = os.environ.get("MPESA_TRANSACTION_DESC", "POS Payment")
    MPESA_HTTP_TIMEOUT_SECONDS = _env_int("MPESA_HTTP_TIMEOUT_SECONDS", 30)

    # Pending push payments older than this are failed with reason TIMEOUT
    PAYMENT_PENDING_TIMEOUT_SECONDS = _env_int("PAYMENT_PENDING_TIMEOUT_SECONDS", 300)

    # Offline sync queue
    SYNC_MAX_RETRIES = _env_int("SYNC_MAX_RETRIES", 3)
    SYNC_RETENTION_DAYS = _env_int("SYNC_RETENTION_DAYS", 7)
    SYNC_DRAIN_INTERVAL_SECONDS = _env_int("SYNC_DRAIN_INTERVAL_SECONDS", 5)
    SYNC_DRAIN_BATCH_SIZE = _env_int("SYNC_DRAIN_BATCH_SIZE", 50)
    SYNC_STALE_CLAIM_SECONDS = _env_int("SYNC_STALE_CLAIM_SECONDS", 300)
