from contextlib import contextmanager

from fastapi.testclient import TestClient

from app.dependencies import get_mpesa_client
from app.main import app
from app.models import Payment, PaymentStatus, User, WifiSession
from app.services.mpesa import STK_PUSH_PATH
from conftest import PUSH_ACCEPTED, FakeDaraja, make_mpesa_client, stk_callback


CHECKOUT_ID = PUSH_ACCEPTED["CheckoutRequestID"]


@contextmanager
def _client(gateway: FakeDaraja | None = None):
    app.dependency_overrides.clear()
    mpesa = make_mpesa_client(gateway or FakeDaraja())
    app.dependency_overrides[get_mpesa_client] = lambda: mpesa
    try:
        with TestClient(app) as client:
            yield client
    finally:
        app.dependency_overrides.clear()


def test_purchase_initiates_push_and_stores_checkout_id(db, plan):
    gateway = FakeDaraja()
    with _client(gateway) as client:
        res = client.post("/api/v1/payments/purchase", json={"phone": "+254 712 345 678", "plan_id": plan.id})

    assert res.status_code == 200
    body = res.json()
    assert body["checkout_request_id"] == CHECKOUT_ID
    assert body["status"] == PaymentStatus.PENDING.value
    assert body["customer_message"] == PUSH_ACCEPTED["CustomerMessage"]

    db.expire_all()
    payment = db.query(Payment).one()
    assert payment.id == body["payment_id"]
    assert payment.checkout_request_id == CHECKOUT_ID
    assert payment.status == PaymentStatus.PENDING
    assert db.query(User).one().phone == "254712345678"

    sent = gateway.json_sent_to(STK_PUSH_PATH)
    assert sent["Amount"] == 100
    assert sent["PhoneNumber"] == "254712345678"
    assert sent["AccountReference"] == f"WIFI{payment.id}"


def test_purchase_reuses_existing_user(db, plan, user):
    with _client() as client:
        res = client.post("/api/v1/payments/purchase", json={"phone": "0712345678", "plan_id": plan.id})

    assert res.status_code == 200
    db.expire_all()
    assert db.query(User).count() == 1
    assert db.query(Payment).one().user_id == user.id


def test_purchase_unknown_plan(db):
    with _client() as client:
        res = client.post("/api/v1/payments/purchase", json={"phone": "0712345678", "plan_id": 999})

    assert res.status_code == 404
    assert res.json()["detail"] == "Plan not found"


def test_purchase_inactive_plan(db, plan):
    plan.is_active = False
    db.commit()
    with _client() as client:
        res = client.post("/api/v1/payments/purchase", json={"phone": "0712345678", "plan_id": plan.id})

    assert res.status_code == 404


def test_purchase_gateway_failure_marks_payment_failed(db, plan):
    gateway = FakeDaraja(push=[(400, {"errorCode": "400.002.02", "errorMessage": "Bad Request - Invalid PhoneNumber"})])
    with _client(gateway) as client:
        res = client.post("/api/v1/payments/purchase", json={"phone": "0712345678", "plan_id": plan.id})

    assert res.status_code == 502
    assert res.json()["detail"] == "Payment initialization failed"
    db.expire_all()
    payment = db.query(Payment).one()
    assert payment.status == PaymentStatus.FAILED
    assert payment.checkout_request_id is None
    assert "Invalid PhoneNumber" in payment.result_description


def test_callback_always_acknowledges(db, pending_payment):
    with _client() as client:
        ok = client.post("/api/v1/payments/mpesa/callback", json=stk_callback(CHECKOUT_ID, 0, metadata={"MpesaReceiptNumber": "ABC123"}))
        again = client.post("/api/v1/payments/mpesa/callback", json=stk_callback(CHECKOUT_ID, 0, metadata={"MpesaReceiptNumber": "ABC123"}))
        unknown = client.post("/api/v1/payments/mpesa/callback", json=stk_callback("ws_CO_unknown", 1032))
        garbage = client.post("/api/v1/payments/mpesa/callback", content=b"not json", headers={"Content-Type": "application/json"})

    for res in (ok, again, unknown, garbage):
        assert res.status_code == 200
        assert res.json() == {"ResultCode": 0, "ResultDesc": "Accepted"}

    db.expire_all()
    payment = db.query(Payment).one()
    assert payment.status == PaymentStatus.COMPLETED
    assert payment.mpesa_receipt_number == "ABC123"
    assert db.query(WifiSession).count() == 1


def test_payment_status_exposes_session_after_completion(db, pending_payment):
    with _client() as client:
        before = client.get(f"/api/v1/payments/{CHECKOUT_ID}")
        client.post("/api/v1/payments/mpesa/callback", json=stk_callback(CHECKOUT_ID, 0, metadata={"MpesaReceiptNumber": "ABC123"}))
        after = client.get(f"/api/v1/payments/{CHECKOUT_ID}")
        missing = client.get("/api/v1/payments/ws_CO_unknown")

    assert before.status_code == 200
    assert before.json()["status"] == PaymentStatus.PENDING.value
    assert before.json()["session_token"] is None

    assert after.status_code == 200
    body = after.json()
    assert body["status"] == PaymentStatus.COMPLETED.value
    assert body["mpesa_receipt_number"] == "ABC123"
    db.expire_all()
    assert body["session_token"] == db.query(WifiSession).one().session_token
    assert body["session_end_time"]

    assert missing.status_code == 404


def test_query_endpoint_settles_pending_payment(db, pending_payment):
    gateway = FakeDaraja(query=[(200, {"ResponseCode": "0", "CheckoutRequestID": CHECKOUT_ID, "ResultCode": "1032", "ResultDesc": "Request cancelled by user"})])
    with _client(gateway) as client:
        res = client.post(f"/api/v1/payments/{CHECKOUT_ID}/query")

    assert res.status_code == 200
    assert res.json()["status"] == PaymentStatus.FAILED.value
    assert res.json()["result_description"] == "Request cancelled by user"


def test_query_endpoint_gateway_failure(db, pending_payment):
    gateway = FakeDaraja(query=[(400, {"errorCode": "400.002.02", "errorMessage": "Bad Request - Invalid CheckoutRequestID"})])
    with _client(gateway) as client:
        res = client.post(f"/api/v1/payments/{CHECKOUT_ID}/query")

    assert res.status_code == 502
    db.expire_all()
    assert db.query(Payment).one().status == PaymentStatus.PENDING


def test_healthz():
    with _client() as client:
        res = client.get("/healthz")
    assert res.status_code == 200
    assert res.json()["status"] == "ok"


def test_startup_creates_tables_when_enabled(monkeypatch):
    import app.main as main_module

    created = []
    monkeypatch.setattr(main_module.settings, "auto_create_tables", True)
    monkeypatch.setattr(main_module.Base.metadata, "create_all", lambda bind: created.append(bind))

    with _client() as client:
        client.get("/healthz")

    assert created == [main_module.engine]
