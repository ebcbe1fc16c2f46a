"""
Test doubles for the M-Pesa gateway.

FakeMpesaClient stands in for services.mpesa_client.MpesaClient at the
stk_push seam; stk_callback() builds the JSON body Daraja posts back.
"""

import threading

from tillpoint.services.mpesa_client import PushAcknowledgement


class FakeMpesaClient:
    def __init__(self):
        self.pushes = []
        self.error = None
        self._counter = 0
        self._lock = threading.Lock()

    def stk_push(self, *, amount_cents, phone_number, account_reference, description=None):
        with self._lock:
            self.pushes.append({
                "amount_cents": amount_cents,
                "phone_number": phone_number,
                "account_reference": account_reference,
                "description": description,
            })
            if self.error is not None:
                raise self.error
            self._counter += 1
            n = self._counter
        return PushAcknowledgement(
            merchant_request_id=f"29115-{n}",
            checkout_request_id=f"ws_CO_{n:06d}",
            response_code="0",
            response_description="Success. Request accepted for processing",
            customer_message="Success. Request accepted for processing",
        )

    def close(self):
        pass


def stk_callback(checkout_request_id, *, result_code=0, receipt="QKA1B2C3D4",
                 amount=100, phone=254712345678, merchant_request_id="29115-1"):
    callback = {
        "MerchantRequestID": merchant_request_id,
        "CheckoutRequestID": checkout_request_id,
        "ResultCode": result_code,
        "ResultDesc": "The service request is processed successfully." if result_code == 0
        else "Request cancelled by user",
    }
    if result_code == 0:
        callback["CallbackMetadata"] = {
            "Item": [
                {"Name": "Amount", "Value": amount},
                {"Name": "MpesaReceiptNumber", "Value": receipt},
                {"Name": "TransactionDate", "Value": 20261016101530},
                {"Name": "PhoneNumber", "Value": phone},
            ]
        }
    return {"Body": {"stkCallback": callback}}
