# Overview: M-Pesa Daraja STK push client (outbound HTTP via httpx) and callback parsing.

"""
M-Pesa Daraja client

Outbound:
- OAuth client-credentials token (Basic auth) from MPESA_AUTH_TOKEN_URL
- STK push to MPESA_STK_PUSH_URL with a time-boxed password
  base64(short_code + passkey + timestamp), timestamp YYYYMMDDHHMMSS

Inbound:
- parse_callback() reads Body.stkCallback tolerantly; metadata items are
  only present on success and any field may be missing.

Every transport or protocol failure surfaces as GatewayError.
"""

from __future__ import annotations

import base64
import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Mapping, Optional

import httpx

from ..errors import GatewayError, ValidationError

logger = logging.getLogger(__name__)

TRANSACTION_TYPE = "CustomerPayBillOnline"
TOKEN_EXPIRY_MARGIN_SECONDS = 60


@dataclass(frozen=True)
class MpesaSettings:
    consumer_key: str
    consumer_secret: str
    short_code: str
    passkey: str
    auth_token_url: str
    stk_push_url: str
    callback_url: str
    transaction_desc: str = "POS Payment"
    timeout_seconds: float = 30

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "MpesaSettings":
        return cls(
            consumer_key=config.get("MPESA_CONSUMER_KEY", ""),
            consumer_secret=config.get("MPESA_CONSUMER_SECRET", ""),
            short_code=str(config.get("MPESA_BUSINESS_SHORT_CODE", "")),
            passkey=config.get("MPESA_PASSKEY", ""),
            auth_token_url=config["MPESA_AUTH_TOKEN_URL"],
            stk_push_url=config["MPESA_STK_PUSH_URL"],
            callback_url=config["MPESA_CALLBACK_URL"],
            transaction_desc=config.get("MPESA_TRANSACTION_DESC", "POS Payment"),
            timeout_seconds=config.get("MPESA_HTTP_TIMEOUT_SECONDS", 30),
        )

    def missing(self) -> list[str]:
        required = {
            "MPESA_CONSUMER_KEY": self.consumer_key,
            "MPESA_CONSUMER_SECRET": self.consumer_secret,
            "MPESA_BUSINESS_SHORT_CODE": self.short_code,
            "MPESA_PASSKEY": self.passkey,
        }
        return [name for name, value in required.items() if not value]


@dataclass(frozen=True)
class PushAcknowledgement:
    merchant_request_id: str
    checkout_request_id: str
    response_code: str
    response_description: str
    customer_message: str


@dataclass(frozen=True)
class CallbackResult:
    merchant_request_id: Optional[str]
    checkout_request_id: Optional[str]
    result_code: Optional[int]
    result_description: str
    amount: Optional[float] = None
    receipt_number: Optional[str] = None
    phone_number: Optional[str] = None
    transaction_date: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.result_code == 0


# =============================================================================
# PHONE NUMBERS
# =============================================================================

def format_phone_number(phone: str) -> str:
    """
    Normalize a Kenyan mobile number to the 2547XXXXXXXX form.

    Accepts "0712 345 678", "+254712345678", "712345678".
    """
    digits = re.sub(r"\D", "", str(phone or ""))
    if digits.startswith("254"):
        formatted = digits
    elif digits.startswith("0"):
        formatted = "254" + digits[1:]
    elif len(digits) == 9:
        formatted = "254" + digits
    else:
        raise ValidationError("Invalid phone number format", details={"field": "phone_number"})

    if len(formatted) != 12:
        raise ValidationError("Invalid phone number format", details={"field": "phone_number"})
    return formatted


def is_valid_phone(phone: str) -> bool:
    try:
        format_phone_number(phone)
    except ValidationError:
        return False
    return True


# =============================================================================
# CALLBACK PARSING
# =============================================================================

def _coerce_result_code(value) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def parse_callback(body: Any) -> CallbackResult:
    """Extract the fields of an STK callback; tolerant of missing keys."""
    if not isinstance(body, dict):
        raise ValidationError("Callback body must be a JSON object")

    container = body.get("Body") if isinstance(body.get("Body"), dict) else body
    callback = container.get("stkCallback")
    if not isinstance(callback, dict):
        raise ValidationError("Callback is missing stkCallback")

    items = {}
    metadata = callback.get("CallbackMetadata")
    if isinstance(metadata, dict) and isinstance(metadata.get("Item"), list):
        for item in metadata["Item"]:
            if isinstance(item, dict) and "Name" in item:
                items[item["Name"]] = item.get("Value")

    receipt = items.get("MpesaReceiptNumber")
    phone = items.get("PhoneNumber")
    txn_date = items.get("TransactionDate")
    return CallbackResult(
        merchant_request_id=callback.get("MerchantRequestID"),
        checkout_request_id=callback.get("CheckoutRequestID"),
        result_code=_coerce_result_code(callback.get("ResultCode")),
        result_description=str(callback.get("ResultDesc") or ""),
        amount=items.get("Amount"),
        receipt_number=str(receipt) if receipt is not None else None,
        phone_number=str(phone) if phone is not None else None,
        transaction_date=str(txn_date) if txn_date is not None else None,
    )


# =============================================================================
# CLIENT
# =============================================================================

class MpesaClient:
    """Thin synchronous Daraja client. Pass http_client to share a pool or mock transport."""

    def __init__(
        self,
        settings: MpesaSettings,
        *,
        http_client: Optional[httpx.Client] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.settings = settings
        self._http = http_client or httpx.Client(timeout=settings.timeout_seconds)
        self._clock = clock
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    def close(self) -> None:
        self._http.close()

    def timestamp(self, now: Optional[datetime] = None) -> str:
        return (now or self._clock()).strftime("%Y%m%d%H%M%S")

    def password(self, timestamp: str) -> str:
        raw = f"{self.settings.short_code}{self.settings.passkey}{timestamp}"
        return base64.b64encode(raw.encode("utf-8")).decode("ascii")

    def access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token

        try:
            response = self._http.get(
                self.settings.auth_token_url,
                auth=(self.settings.consumer_key, self.settings.consumer_secret),
            )
        except httpx.HTTPError as exc:
            raise GatewayError(f"Failed to get access token: {exc}") from exc

        if response.status_code != 200:
            raise GatewayError(
                f"Failed to get access token: HTTP {response.status_code}",
                details={"status_code": response.status_code},
            )

        data = _json_or_error(response)
        token = data.get("access_token")
        if not token:
            raise GatewayError("Token response missing access_token")

        try:
            expires_in = int(data.get("expires_in", 3599))
        except (TypeError, ValueError):
            expires_in = 3599
        self._token = token
        self._token_expires_at = time.monotonic() + max(expires_in - TOKEN_EXPIRY_MARGIN_SECONDS, 0)
        return token

    def build_push_payload(self, *, amount_cents: int, phone_number: str, account_reference: str,
                           description: Optional[str] = None, timestamp: Optional[str] = None) -> dict:
        timestamp = timestamp or self.timestamp()
        amount = amount_cents // 100  # gateway takes whole shillings
        if amount < 1:
            raise ValidationError("M-Pesa amount must be at least 1", details={"amount_cents": amount_cents})
        return {
            "BusinessShortCode": self.settings.short_code,
            "Password": self.password(timestamp),
            "Timestamp": timestamp,
            "TransactionType": TRANSACTION_TYPE,
            "Amount": amount,
            "PartyA": phone_number,
            "PartyB": self.settings.short_code,
            "PhoneNumber": phone_number,
            "CallBackURL": self.settings.callback_url,
            "AccountReference": account_reference,
            "TransactionDesc": description or self.settings.transaction_desc,
        }

    def stk_push(self, *, amount_cents: int, phone_number: str, account_reference: str,
                 description: Optional[str] = None) -> PushAcknowledgement:
        missing = self.settings.missing()
        if missing:
            raise GatewayError("M-Pesa is not configured", details={"missing": missing})

        payload = self.build_push_payload(
            amount_cents=amount_cents,
            phone_number=phone_number,
            account_reference=account_reference,
            description=description,
        )
        token = self.access_token()

        try:
            response = self._http.post(
                self.settings.stk_push_url,
                json=payload,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as exc:
            raise GatewayError(f"STK push failed: {exc}") from exc

        data = _json_or_error(response, allow_error_status=True)
        if response.status_code >= 400:
            message = data.get("errorMessage") or data.get("ResponseDescription") or f"HTTP {response.status_code}"
            raise GatewayError(
                f"STK push failed: {message}",
                details={"status_code": response.status_code, "error_code": data.get("errorCode")},
            )

        response_code = str(data.get("ResponseCode", "")).strip()
        if response_code != "0":
            raise GatewayError(
                data.get("ResponseDescription") or "STK push rejected",
                details={"response_code": response_code},
            )

        merchant_id = data.get("MerchantRequestID")
        checkout_id = data.get("CheckoutRequestID")
        if not merchant_id or not checkout_id:
            raise GatewayError("STK push response missing correlation identifiers")

        return PushAcknowledgement(
            merchant_request_id=str(merchant_id),
            checkout_request_id=str(checkout_id),
            response_code=response_code,
            response_description=str(data.get("ResponseDescription") or ""),
            customer_message=str(data.get("CustomerMessage") or ""),
        )


def _json_or_error(response: httpx.Response, *, allow_error_status: bool = False) -> dict:
    try:
        data = response.json()
    except ValueError:
        if allow_error_status and response.status_code >= 400:
            return {}
        raise GatewayError(
            "Gateway returned non-JSON response",
            details={"status_code": response.status_code, "body": response.text[:200]},
        )
    if not isinstance(data, dict):
        raise GatewayError("Gateway returned unexpected JSON")
    return data
