import json
import os
from datetime import datetime, timezone
from decimal import Decimal


def _set_test_env() -> None:
    defaults = {
        "APP_NAME": "Hotspot Billing Test",
        "ENVIRONMENT": "test",
        "LOG_LEVEL": "WARNING",
        "AUTO_CREATE_TABLES": "false",
        "DATABASE_URL": "sqlite://",
        "MPESA_ENVIRONMENT": "sandbox",
        "MPESA_CONSUMER_KEY": "consumer_key",
        "MPESA_CONSUMER_SECRET": "consumer_secret",
        "MPESA_SHORTCODE": "174379",
        "MPESA_PASSKEY": "test_passkey",
        "MPESA_CALLBACK_URL": "https://hotspot.example.com/api/v1/payments/mpesa/callback",
        "MPESA_TIMEOUT_SECONDS": "5",
        "MPESA_RETRY_COUNT": "2",
        "PAYMENT_RATE_LIMIT": "1000/minute",
        "CORS_ORIGINS": "http://localhost:5173,http://localhost:3000",
    }
    for key, value in defaults.items():
        os.environ.setdefault(key, value)


_set_test_env()

import httpx  # noqa: E402
import pytest  # noqa: E402

from app.core.database import Base, SessionLocal, engine  # noqa: E402
from app.models import Payment, PaymentStatus, Plan, User  # noqa: E402
from app.services.mpesa import (  # noqa: E402
    SANDBOX_BASE_URL,
    STK_PUSH_PATH,
    STK_QUERY_PATH,
    TOKEN_PATH,
    MpesaClient,
    MpesaConfig,
)
from app.utils.cache import clear_cache  # noqa: E402


FIXED_NOW = datetime(2026, 10, 18, 9, 5, 7, tzinfo=timezone.utc)

PUSH_ACCEPTED = {
    "MerchantRequestID": "29115-34620561-1",
    "CheckoutRequestID": "ws_CO_18102026090507123456",
    "ResponseCode": "0",
    "ResponseDescription": "Success. Request accepted for processing",
    "CustomerMessage": "Success. Request accepted for processing",
}


class FakeDaraja:
    """Stands in for the Daraja API behind an httpx.MockTransport.

    Each queue holds (status_code, json_body) tuples or exceptions to raise;
    once a queue is drained the default answer is returned.
    """

    def __init__(self, *, token=None, push=None, query=None, expires_in="3599"):
        self.requests: list[httpx.Request] = []
        self.token_queue = list(token or [])
        self.push_queue = list(push or [])
        self.query_queue = list(query or [])
        self.expires_in = expires_in

    def _next(self, queue, default):
        item = queue.pop(0) if queue else default
        if isinstance(item, Exception):
            raise item
        status, body = item
        return httpx.Response(status, json=body)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == TOKEN_PATH:
            body = {"access_token": "test-access-token"}
            if self.expires_in is not None:
                body["expires_in"] = self.expires_in
            return self._next(self.token_queue, (200, body))
        if path == STK_PUSH_PATH:
            return self._next(self.push_queue, (200, PUSH_ACCEPTED))
        if path == STK_QUERY_PATH:
            return self._next(self.query_queue, (200, {"ResponseCode": "0", "ResultCode": "0", "ResultDesc": "ok"}))
        return httpx.Response(404, json={"errorMessage": "not found"})

    def calls_to(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]

    def json_sent_to(self, path: str) -> dict:
        return json.loads(self.calls_to(path)[-1].content)


def make_mpesa_client(gateway: FakeDaraja, **overrides) -> MpesaClient:
    params = {
        "base_url": SANDBOX_BASE_URL,
        "consumer_key": "consumer_key",
        "consumer_secret": "consumer_secret",
        "shortcode": "174379",
        "passkey": "test_passkey",
        "callback_url": "https://hotspot.example.com/api/v1/payments/mpesa/callback",
        "retry_count": 2,
        "backoff_seconds": 0,
    }
    params.update(overrides)
    return MpesaClient(MpesaConfig(**params), transport=httpx.MockTransport(gateway), clock=lambda: FIXED_NOW)


@pytest.fixture(autouse=True)
def _clear_token_cache():
    clear_cache()
    yield
    clear_cache()


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def plan(db):
    plan = Plan(name="Standard 6 Hours", price=Decimal("100.00"), duration=6, data_limit="2GB", speed_limit="10Mbps")
    db.add(plan)
    db.commit()
    db.refresh(plan)
    return plan


@pytest.fixture
def user(db):
    user = User(phone="254712345678", full_name="Jane Wanjiru")
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def pending_payment(db, user, plan):
    payment = Payment(
        user_id=user.id,
        plan_id=plan.id,
        amount=plan.price,
        phone=user.phone,
        status=PaymentStatus.PENDING,
        checkout_request_id="ws_CO_18102026090507123456",
        merchant_request_id="29115-34620561-1",
    )
    db.add(payment)
    db.commit()
    db.refresh(payment)
    return payment


def stk_callback(checkout_request_id: str, result_code=0, *, metadata=None, result_desc=None) -> dict:
    callback = {
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": checkout_request_id,
        "ResultCode": result_code,
        "ResultDesc": result_desc or ("The service request is processed successfully." if result_code == 0 else "Request cancelled by user"),
    }
    if metadata is not None:
        callback["CallbackMetadata"] = {"Item": [{"Name": name, "Value": value} for name, value in metadata.items()]}
    return {"Body": {"stkCallback": callback}}
