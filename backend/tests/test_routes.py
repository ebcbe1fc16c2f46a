"""
HTTP-level tests for the Flask blueprints.

Service behaviour is covered in the service tests; these check status
codes, identity enforcement and the JSON shapes clients rely on.
"""

import pytest

from tillpoint.models import Product, Sale
from tillpoint.models.sales import SALE_COMPLETED, SALE_FAILED

from fakes import stk_callback


def sale_body(product, qty=1, **extra):
    body = {"items": [{"product_id": product.id, "quantity": qty}], "payment_method": "CASH"}
    body.update(extra)
    return body


class TestIdentity:
    def test_missing_actor_is_401(self, client, db_session, make_product):
        p = make_product()
        assert client.post("/api/sales", json=sale_body(p)).status_code == 401

    def test_unknown_role_is_403(self, client, db_session, make_product):
        p = make_product()
        resp = client.post("/api/sales", json=sale_body(p), headers={"X-Actor-Id": "x", "X-Actor-Role": "OWNER"})
        assert resp.status_code == 403

    def test_cashier_cannot_void(self, client, db_session, make_product, cashier_headers):
        p = make_product()
        sale_id = client.post("/api/sales", json=sale_body(p), headers=cashier_headers).get_json()["sale"]["id"]
        resp = client.post(f"/api/sales/{sale_id}/void", json={"reason": "x"}, headers=cashier_headers)
        assert resp.status_code == 403


class TestSalesApi:
    def test_cash_sale_created(self, client, db_session, make_product, cashier_headers):
        p = make_product(stock=5, retail_price_cents=1000)

        resp = client.post("/api/sales", json=sale_body(p, qty=2, paid_cents=2500), headers=cashier_headers)

        assert resp.status_code == 201
        data = resp.get_json()
        assert data["status"] == "COMPLETED"
        assert data["change_cents"] == 500
        assert data["sale"]["status"] == SALE_COMPLETED
        assert data["stock"] == [{"product_id": p.id, "previous_stock": 5, "new_stock": 3}]

    def test_replayed_key_returns_200_with_original(self, client, db_session, make_product, cashier_headers):
        p = make_product(stock=5)
        body = sale_body(p, idempotency_key="till-9-1")
        first = client.post("/api/sales", json=body, headers=cashier_headers)
        again = client.post("/api/sales", json=body, headers=cashier_headers)
        assert (first.status_code, again.status_code) == (201, 200)
        assert again.get_json()["sale"]["id"] == first.get_json()["sale"]["id"]

    def test_insufficient_stock_is_409(self, client, db_session, make_product, cashier_headers):
        p = make_product(stock=1)
        resp = client.post("/api/sales", json=sale_body(p, qty=2), headers=cashier_headers)
        assert resp.status_code == 409
        data = resp.get_json()
        assert data["code"] == "INSUFFICIENT_STOCK"
        assert data["details"]["available_quantity"] == 1

    def test_malformed_body_is_400(self, client, db_session, cashier_headers):
        resp = client.post("/api/sales", json={"items": "nope"}, headers=cashier_headers)
        assert resp.status_code == 400
        assert resp.get_json()["code"] == "VALIDATION_ERROR"

    def test_cashier_sees_only_own_sales(self, client, db_session, make_product, cashier_headers,
                                         other_cashier_headers, manager_headers):
        p = make_product(stock=10)
        mine = client.post("/api/sales", json=sale_body(p), headers=cashier_headers).get_json()["sale"]
        client.post("/api/sales", json=sale_body(p), headers=other_cashier_headers)

        listing = client.get("/api/sales", headers=cashier_headers).get_json()
        assert [s["id"] for s in listing["items"]] == [mine["id"]]
        assert listing["summary"]["count"] == 1

        assert client.get(f"/api/sales/{mine['id']}", headers=other_cashier_headers).status_code == 404
        assert client.get(f"/api/sales/{mine['id']}", headers=manager_headers).status_code == 200

        everything = client.get("/api/sales", headers=manager_headers).get_json()
        assert everything["pagination"]["total"] == 2
        assert everything["summary"]["total_cents"] == 2000

    def test_list_filters(self, client, db_session, make_product, manager_headers):
        p = make_product(stock=10)
        client.post("/api/sales", json=sale_body(p), headers=manager_headers)
        client.post("/api/sales", json={**sale_body(p), "payment_method": "CARD"}, headers=manager_headers)

        cards = client.get("/api/sales?payment_method=CARD", headers=manager_headers).get_json()
        assert [s["payment_method"] for s in cards["items"]] == ["CARD"]

        by_number = client.get("/api/sales?search=S-000001", headers=manager_headers).get_json()
        assert [s["sale_number"] for s in by_number["items"]] == ["S-000001"]

        bad = client.get("/api/sales?status=LOST", headers=manager_headers)
        assert bad.status_code == 400

    def test_void_and_refund(self, client, db_session, make_product, cashier_headers, manager_headers):
        p = make_product(stock=5, retail_price_cents=1000)
        first = client.post("/api/sales", json=sale_body(p), headers=cashier_headers).get_json()["sale"]
        second = client.post("/api/sales", json=sale_body(p), headers=cashier_headers).get_json()["sale"]

        voided = client.post(f"/api/sales/{first['id']}/void", json={"reason": "Wrong item"}, headers=manager_headers)
        assert voided.status_code == 200
        assert voided.get_json()["sale"]["status"] == "VOID"
        again = client.post(f"/api/sales/{first['id']}/void", json={"reason": "Wrong item"}, headers=manager_headers)
        assert again.status_code == 409

        refund = client.post(f"/api/sales/{second['id']}/refund", json={"reason": "Damaged", "amount_cents": 400},
                             headers=manager_headers)
        assert refund.status_code == 201
        assert refund.get_json()["refund"]["amount_cents"] == 400
        assert refund.get_json()["sale"]["refunds"][0]["reason"] == "Damaged"


class TestMpesaApi:
    def test_pending_then_callback(self, client, db_session, make_product, cashier_headers):
        p = make_product(stock=5)

        resp = client.post("/api/sales", json=sale_body(p, payment_method="MPESA", customer_phone="0712345678"),
                           headers=cashier_headers)
        assert resp.status_code == 202
        data = resp.get_json()
        assert data["status"] == "PENDING"
        assert data["message"] == "Success. Request accepted for processing"
        checkout_id = data["sale"]["payments"][0]["checkout_request_id"]

        callback = client.post("/api/payments/mpesa/callback", json=stk_callback(checkout_id))
        assert callback.status_code == 200
        assert callback.get_json() == {"ResultCode": 0, "ResultDesc": "Accepted"}

        duplicate = client.post("/api/payments/mpesa/callback", json=stk_callback(checkout_id))
        assert duplicate.status_code == 200

        db_session.expire_all()
        assert db_session.get(Sale, data["sale"]["id"]).status == SALE_COMPLETED
        assert db_session.get(Product, p.id).stock_quantity == 4

    def test_failure_callback_after_success_keeps_sale_completed(self, client, db_session, make_product,
                                                                cashier_headers):
        p = make_product(stock=5)
        resp = client.post("/api/sales", json=sale_body(p, qty=2, payment_method="MPESA", customer_phone="0712345678"),
                           headers=cashier_headers)
        sale_id = resp.get_json()["sale"]["id"]
        checkout_id = resp.get_json()["sale"]["payments"][0]["checkout_request_id"]

        assert client.post("/api/payments/mpesa/callback", json=stk_callback(checkout_id)).status_code == 200
        cancelled = client.post("/api/payments/mpesa/callback", json=stk_callback(checkout_id, result_code=1032))
        assert cancelled.status_code == 200
        assert cancelled.get_json() == {"ResultCode": 0, "ResultDesc": "Accepted"}

        db_session.expire_all()
        sale = db_session.get(Sale, sale_id)
        assert (sale.status, sale.payment_status) == (SALE_COMPLETED, "COMPLETED")
        assert db_session.get(Product, p.id).stock_quantity == 3

    def test_paid_sale_without_stock_can_be_refunded(self, client, db_session, make_product, cashier_headers,
                                                     manager_headers):
        p = make_product(stock=1, retail_price_cents=1000)
        resp = client.post("/api/sales", json=sale_body(p, payment_method="MPESA", customer_phone="0712345678"),
                           headers=cashier_headers)
        sale_id = resp.get_json()["sale"]["id"]
        checkout_id = resp.get_json()["sale"]["payments"][0]["checkout_request_id"]
        client.post("/api/sales", json=sale_body(p), headers=cashier_headers)

        client.post("/api/payments/mpesa/callback", json=stk_callback(checkout_id))
        refund = client.post(f"/api/sales/{sale_id}/refund", json={"reason": "Out of stock"}, headers=manager_headers)

        assert refund.status_code == 201
        assert refund.get_json()["refund"]["amount_cents"] == 1000
        assert refund.get_json()["sale"]["status"] == "REFUNDED"
        db_session.expire_all()
        assert db_session.get(Product, p.id).stock_quantity == 0

    def test_gateway_failure_is_502_and_sale_failed(self, client, db_session, make_product, cashier_headers,
                                                    fake_mpesa):
        from tillpoint.errors import GatewayError

        p = make_product(stock=5)
        fake_mpesa.error = GatewayError("STK push failed: timeout")

        resp = client.post("/api/sales", json=sale_body(p, payment_method="MPESA", customer_phone="0712345678"),
                           headers=cashier_headers)

        assert resp.status_code == 502
        assert resp.get_json()["sale"]["status"] == SALE_FAILED

    def test_unknown_and_malformed_callbacks(self, client, db_session):
        assert client.post("/api/payments/mpesa/callback", json=stk_callback("ws_CO_nobody")).status_code == 404
        assert client.post("/api/payments/mpesa/callback", json={"hello": "world"}).status_code == 400

    def test_callback_url_health(self, client):
        resp = client.get("/api/payments/mpesa/callback")
        assert resp.status_code == 200
        assert "timestamp" in resp.get_json()


class TestSyncApi:
    def test_upload_and_drain(self, client, db_session, make_product, cashier_headers, manager_headers):
        p = make_product(stock=5)
        upload = client.post("/api/sync", json={"items": [
            {"type": "sale", "payload": sale_body(p), "idempotency_key": "till-3-1"},
            {"type": "stock_entry", "payload": {"product_id": p.id, "quantity": 5}},
        ]}, headers=cashier_headers)

        assert upload.status_code == 202
        data = upload.get_json()
        assert [a["index"] for a in data["accepted"]] == [0]
        assert [r["index"] for r in data["rejected"]] == [1]

        replay = client.post("/api/sync", json={"syncItems": [
            {"type": "sale", "data": sale_body(p), "id": "till-3-1"},
        ]}, headers=cashier_headers)
        assert replay.get_json()["accepted"][0]["created"] is False

        drain = client.post("/api/sync/drain", headers=manager_headers)
        assert drain.status_code == 200
        assert drain.get_json()["report"]["completed"] == 1

        status = client.get("/api/sync/status", headers=manager_headers).get_json()
        assert status["counts"]["completed"] == 1

    def test_queue_operations_require_supervisor(self, client, db_session, cashier_headers):
        assert client.post("/api/sync/drain", headers=cashier_headers).status_code == 403
        assert client.get("/api/sync/status", headers=cashier_headers).status_code == 403

    def test_dead_letters_and_requeue(self, client, db_session, make_product, manager_headers):
        client.post("/api/sync", json={"items": [
            {"type": "sale", "payload": {"items": [], "payment_method": "CASH"}, "max_retries": 1},
        ]}, headers=manager_headers)
        client.post("/api/sync/drain", headers=manager_headers)

        dead = client.get("/api/sync/dead-letters", headers=manager_headers).get_json()
        assert dead["count"] == 1
        item_id = dead["items"][0]["id"]

        assert client.post(f"/api/sync/{item_id}/requeue", headers=manager_headers).status_code == 200
        assert client.post(f"/api/sync/{item_id}/requeue", headers=manager_headers).status_code == 409
        assert client.post("/api/sync/999999/requeue", headers=manager_headers).status_code == 404

    def test_empty_upload_is_400(self, client, db_session, cashier_headers):
        assert client.post("/api/sync", json={"items": []}, headers=cashier_headers).status_code == 400


def test_health(client, db_session):
    resp = client.get("/api/health")
    assert resp.status_code == 200
    data = resp.get_json()
    assert data["status"] == "healthy"
    assert data["checks"]["database"]["details"]["pending_payments"] == 0


def test_health_degraded_without_gateway_credentials(app, client, db_session):
    app.config["MPESA_PASSKEY"] = ""
    try:
        data = client.get("/api/health").get_json()
    finally:
        app.config["MPESA_PASSKEY"] = "test-passkey"
    assert data["status"] == "degraded"
    assert data["checks"]["payment_gateway"]["details"]["missing"] == ["MPESA_PASSKEY"]
