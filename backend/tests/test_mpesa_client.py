import base64
import json
from datetime import datetime

import httpx
import pytest

from tillpoint.errors import GatewayError, ValidationError
from tillpoint.services.mpesa_client import (
    MpesaClient,
    MpesaSettings,
    format_phone_number,
    is_valid_phone,
    parse_callback,
)

from fakes import stk_callback


TOKEN_URL = "https://sandbox.test/oauth/v1/generate?grant_type=client_credentials"
PUSH_URL = "https://sandbox.test/mpesa/stkpush/v1/processrequest"

SETTINGS = MpesaSettings(
    consumer_key="key",
    consumer_secret="secret",
    short_code="174379",
    passkey="passkey",
    auth_token_url=TOKEN_URL,
    stk_push_url=PUSH_URL,
    callback_url="https://pos.test/api/payments/mpesa/callback",
)

ACCEPTED = {
    "MerchantRequestID": "29115-34620561-1",
    "CheckoutRequestID": "ws_CO_191220191020363925",
    "ResponseCode": "0",
    "ResponseDescription": "Success. Request accepted for processing",
    "CustomerMessage": "Success. Request accepted for processing",
}


class Gateway:
    """Scripted Daraja endpoints for httpx.MockTransport."""

    def __init__(self, push_response=None, push_status=200, token_status=200):
        self.requests = []
        self.push_response = ACCEPTED if push_response is None else push_response
        self.push_status = push_status
        self.token_status = token_status

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path.endswith("/generate"):
            if self.token_status != 200:
                return httpx.Response(self.token_status, text="Unauthorized")
            return httpx.Response(200, json={"access_token": "tok-123", "expires_in": "3599"})
        return httpx.Response(self.push_status, json=self.push_response)

    def client(self, settings=SETTINGS):
        return MpesaClient(
            settings,
            http_client=httpx.Client(transport=httpx.MockTransport(self)),
            clock=lambda: datetime(2026, 10, 16, 10, 15, 30),
        )


def push(client, amount_cents=15000):
    return client.stk_push(amount_cents=amount_cents, phone_number="254712345678", account_reference="S-000001")


class TestStkPush:
    def test_push_sends_daraja_payload(self):
        gateway = Gateway()

        ack = push(gateway.client())

        token_request, push_request = gateway.requests
        expected_basic = base64.b64encode(b"key:secret").decode()
        assert token_request.headers["Authorization"] == f"Basic {expected_basic}"
        assert push_request.headers["Authorization"] == "Bearer tok-123"

        body = json.loads(push_request.content)
        assert body["Timestamp"] == "20261016101530"
        assert body["Password"] == base64.b64encode(b"174379passkey20261016101530").decode()
        assert body["Amount"] == 150
        assert body["PartyA"] == body["PhoneNumber"] == "254712345678"
        assert body["PartyB"] == body["BusinessShortCode"] == "174379"
        assert body["TransactionType"] == "CustomerPayBillOnline"
        assert body["AccountReference"] == "S-000001"
        assert body["CallBackURL"] == "https://pos.test/api/payments/mpesa/callback"

        assert ack.checkout_request_id == "ws_CO_191220191020363925"
        assert ack.merchant_request_id == "29115-34620561-1"

    def test_token_is_cached(self):
        gateway = Gateway()
        client = gateway.client()
        push(client)
        push(client)
        token_calls = [r for r in gateway.requests if r.url.path.endswith("/generate")]
        assert len(token_calls) == 1

    def test_non_zero_response_code_is_a_rejection(self):
        gateway = Gateway(push_response={"ResponseCode": "1", "ResponseDescription": "Insufficient balance"})
        with pytest.raises(GatewayError) as exc_info:
            push(gateway.client())
        assert exc_info.value.details["response_code"] == "1"
        assert exc_info.value.message == "Insufficient balance"

    def test_http_error_status(self):
        gateway = Gateway(push_response={"errorCode": "404.001.03", "errorMessage": "Invalid Access Token"},
                          push_status=401)
        with pytest.raises(GatewayError, match="Invalid Access Token") as exc_info:
            push(gateway.client())
        assert "response_code" not in exc_info.value.details

    def test_token_failure(self):
        with pytest.raises(GatewayError, match="access token"):
            push(Gateway(token_status=401).client())

    def test_transport_error(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = MpesaClient(SETTINGS, http_client=httpx.Client(transport=httpx.MockTransport(refuse)))
        with pytest.raises(GatewayError):
            push(client)

    def test_missing_correlation_ids(self):
        gateway = Gateway(push_response={"ResponseCode": "0"})
        with pytest.raises(GatewayError, match="correlation"):
            push(gateway.client())

    def test_unconfigured_client_never_calls_out(self):
        gateway = Gateway()
        settings = MpesaSettings(
            consumer_key="", consumer_secret="", short_code="", passkey="",
            auth_token_url=TOKEN_URL, stk_push_url=PUSH_URL, callback_url="https://pos.test/cb",
        )
        with pytest.raises(GatewayError, match="not configured") as exc_info:
            push(gateway.client(settings))
        assert exc_info.value.details["missing"] == [
            "MPESA_CONSUMER_KEY", "MPESA_CONSUMER_SECRET", "MPESA_BUSINESS_SHORT_CODE", "MPESA_PASSKEY",
        ]
        assert gateway.requests == []

    def test_amount_is_whole_shillings(self):
        with pytest.raises(ValidationError):
            push(Gateway().client(), amount_cents=99)


@pytest.mark.parametrize("raw, expected", [
    ("0712345678", "254712345678"),
    ("+254 712 345 678", "254712345678"),
    ("712345678", "254712345678"),
    ("254712345678", "254712345678"),
])
def test_format_phone_number(raw, expected):
    assert format_phone_number(raw) == expected


@pytest.mark.parametrize("raw", ["", "12345", "07123456789", None])
def test_invalid_phone_numbers(raw):
    assert not is_valid_phone(raw)


class TestParseCallback:
    def test_success_callback(self):
        result = parse_callback(stk_callback("ws_CO_1", amount=150, receipt="QKA1B2C3D4"))
        assert result.succeeded
        assert result.checkout_request_id == "ws_CO_1"
        assert result.receipt_number == "QKA1B2C3D4"
        assert result.phone_number == "254712345678"
        assert result.amount == 150

    def test_failure_callback_has_no_metadata(self):
        result = parse_callback(stk_callback("ws_CO_1", result_code=1032))
        assert not result.succeeded
        assert result.result_code == 1032
        assert result.receipt_number is None

    def test_string_result_code(self):
        body = stk_callback("ws_CO_1")
        body["Body"]["stkCallback"]["ResultCode"] = "0"
        assert parse_callback(body).succeeded

    @pytest.mark.parametrize("body", [None, [], {"Body": {}}, {"Body": {"stkCallback": "x"}}])
    def test_unrecognisable_body(self, body):
        with pytest.raises(ValidationError):
            parse_callback(body)
