"""Reconciles STK push outcomes with payment and session records.

A payment moves PENDING -> COMPLETED or PENDING -> FAILED exactly once. The
outcome arrives either as the gateway's asynchronous callback or, when that
never shows up, from a status query. Both paths go through the same
compare-and-set transition, so redelivered or late results are no-ops.
"""
import enum
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.models import Payment, PaymentStatus
from app.services.mpesa import GatewayError, MpesaClient
from app.services.payments import (
    create_session,
    find_payment_by_checkout_id,
    get_payment_with_user_and_plan,
    get_session_for_payment,
    transition_payment,
)


logger = logging.getLogger(__name__)

SUCCESS_RESULT_CODE = 0

RECEIPT_KEY = "MpesaReceiptNumber"
AMOUNT_KEY = "Amount"
PHONE_KEY = "PhoneNumber"


class CallbackProcessingError(Exception):
    """The notification was malformed or could not be persisted."""


class CallbackOutcome(str, enum.Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    DUPLICATE = "duplicate"
    UNKNOWN_PAYMENT = "unknown_payment"
    PENDING = "pending"
    INVALID = "invalid"


@dataclass(frozen=True)
class StkCallback:
    checkout_request_id: str
    result_code: int
    result_desc: str = ""
    merchant_request_id: Optional[str] = None
    receipt_number: Optional[str] = None
    amount: Optional[Decimal] = None
    phone: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.result_code == SUCCESS_RESULT_CODE


@dataclass(frozen=True)
class CallbackResult:
    outcome: CallbackOutcome
    checkout_request_id: Optional[str] = None
    payment_id: Optional[int] = None
    session_token: Optional[str] = None
    session_end_time: Optional[datetime] = None
    detail: str = ""


def generate_session_token() -> str:
    return secrets.token_urlsafe(32)


def _parse_result_code(value: Any) -> int:
    if isinstance(value, bool):
        raise CallbackProcessingError(f"Invalid ResultCode: {value!r}")
    try:
        return int(str(value).strip())
    except (TypeError, ValueError) as exc:
        raise CallbackProcessingError(f"Invalid ResultCode: {value!r}") from exc


def _parse_amount(value: Any) -> Optional[Decimal]:
    if value in (None, ""):
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        logger.warning("Ignoring non-numeric callback amount %r", value)
        return None


def parse_stk_callback(payload: Any) -> StkCallback:
    if not isinstance(payload, dict):
        raise CallbackProcessingError("Callback payload is not an object")
    body = payload.get("Body")
    stk = body.get("stkCallback") if isinstance(body, dict) else None
    if not isinstance(stk, dict):
        raise CallbackProcessingError("Callback payload is missing Body.stkCallback")

    checkout_request_id = str(stk.get("CheckoutRequestID") or "").strip()
    if not checkout_request_id:
        raise CallbackProcessingError("Callback payload is missing CheckoutRequestID")
    if "ResultCode" not in stk:
        raise CallbackProcessingError("Callback payload is missing ResultCode")
    result_code = _parse_result_code(stk.get("ResultCode"))

    receipt_number = None
    amount = None
    phone = None
    if result_code == SUCCESS_RESULT_CODE:
        metadata = stk.get("CallbackMetadata") or {}
        items = metadata.get("Item") if isinstance(metadata, dict) else None
        for item in items if isinstance(items, list) else []:
            if not isinstance(item, dict):
                continue
            name = item.get("Name")
            value = item.get("Value")
            if name == RECEIPT_KEY and value not in (None, ""):
                receipt_number = str(value)
            elif name == AMOUNT_KEY:
                amount = _parse_amount(value)
            elif name == PHONE_KEY and value not in (None, ""):
                phone = str(value)

    return StkCallback(
        checkout_request_id=checkout_request_id,
        result_code=result_code,
        result_desc=str(stk.get("ResultDesc") or ""),
        merchant_request_id=stk.get("MerchantRequestID"),
        receipt_number=receipt_number,
        amount=amount,
        phone=phone,
    )


def _already_settled(db: Session, checkout_request_id: str) -> CallbackResult:
    payment = find_payment_by_checkout_id(db, checkout_request_id)
    if payment is None:
        return CallbackResult(
            CallbackOutcome.UNKNOWN_PAYMENT,
            checkout_request_id=checkout_request_id,
            detail="No payment matches this checkout request",
        )
    session = get_session_for_payment(db, payment)
    return CallbackResult(
        CallbackOutcome.DUPLICATE,
        checkout_request_id=checkout_request_id,
        payment_id=payment.id,
        session_token=session.session_token if session else None,
        session_end_time=session.end_time if session else None,
        detail=f"Payment already {payment.status.value}",
    )


def apply_payment_result(
    db: Session,
    checkout_request_id: str,
    result_code: int,
    *,
    result_desc: str = "",
    receipt_number: str | None = None,
    paid_amount: Decimal | None = None,
    now: datetime | None = None,
) -> CallbackResult:
    """Apply one gateway result to the matching payment.

    The status change and, on success, the session creation are committed
    together. Raises CallbackProcessingError when persistence fails; the
    transaction is rolled back first.
    """
    succeeded = result_code == SUCCESS_RESULT_CODE
    status = PaymentStatus.COMPLETED if succeeded else PaymentStatus.FAILED
    try:
        moved = transition_payment(
            db,
            checkout_request_id,
            status,
            receipt_number=receipt_number if succeeded else None,
            result_code=result_code,
            result_description=result_desc,
        )
        if not moved:
            db.rollback()
            return _already_settled(db, checkout_request_id)

        if not succeeded:
            db.commit()
            payment = find_payment_by_checkout_id(db, checkout_request_id)
            return CallbackResult(
                CallbackOutcome.FAILED,
                checkout_request_id=checkout_request_id,
                payment_id=payment.id if payment else None,
                detail=result_desc,
            )

        payment = get_payment_with_user_and_plan(db, checkout_request_id)
        if payment is None or payment.plan is None:
            raise CallbackProcessingError(f"Payment {checkout_request_id} has no plan to provision")
        if paid_amount is not None and Decimal(paid_amount) != Decimal(payment.amount):
            logger.warning(
                "Callback amount %s differs from payment amount %s checkout_request_id=%s",
                paid_amount,
                payment.amount,
                checkout_request_id,
            )
        session = create_session(db, payment, generate_session_token(), now or datetime.now(timezone.utc))
        db.commit()
        return CallbackResult(
            CallbackOutcome.COMPLETED,
            checkout_request_id=checkout_request_id,
            payment_id=payment.id,
            session_token=session.session_token,
            session_end_time=session.end_time,
            detail=result_desc,
        )
    except IntegrityError as exc:
        db.rollback()
        payment = find_payment_by_checkout_id(db, checkout_request_id)
        if payment is not None and payment.status != PaymentStatus.PENDING:
            # A concurrent delivery settled the payment first.
            return _already_settled(db, checkout_request_id)
        raise CallbackProcessingError(f"Could not persist result for {checkout_request_id}: {exc}") from exc
    except CallbackProcessingError:
        db.rollback()
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        raise CallbackProcessingError(f"Could not persist result for {checkout_request_id}: {exc}") from exc


def _log_result(source: str, result: CallbackResult) -> None:
    if result.outcome in (CallbackOutcome.COMPLETED, CallbackOutcome.FAILED, CallbackOutcome.PENDING):
        logger.info("%s %s checkout_request_id=%s payment_id=%s", source, result.outcome.value, result.checkout_request_id, result.payment_id)
    else:
        logger.warning("%s %s checkout_request_id=%s detail=%s", source, result.outcome.value, result.checkout_request_id, result.detail)


def handle_stk_callback(db: Session, payload: Any, *, now: datetime | None = None) -> CallbackResult:
    """Reconcile one STK callback. Never raises for bad input or storage errors."""
    try:
        callback = parse_stk_callback(payload)
    except CallbackProcessingError as exc:
        result = CallbackResult(CallbackOutcome.INVALID, detail=str(exc))
        _log_result("STK callback", result)
        return result

    try:
        result = apply_payment_result(
            db,
            callback.checkout_request_id,
            callback.result_code,
            result_desc=callback.result_desc,
            receipt_number=callback.receipt_number,
            paid_amount=callback.amount,
            now=now,
        )
    except CallbackProcessingError as exc:
        logger.exception("STK callback processing failed checkout_request_id=%s", callback.checkout_request_id)
        return CallbackResult(CallbackOutcome.INVALID, checkout_request_id=callback.checkout_request_id, detail=str(exc))

    _log_result("STK callback", result)
    return result


def reconcile_from_status_query(db: Session, client: MpesaClient, payment: Payment, *, now: datetime | None = None) -> CallbackResult:
    """Settle a pending payment by asking the gateway for its outcome.

    GatewayError propagates unless the gateway reports the push as still
    being processed.
    """
    checkout_request_id = payment.checkout_request_id
    if not checkout_request_id:
        return CallbackResult(CallbackOutcome.INVALID, payment_id=payment.id, detail="Payment was never sent to M-Pesa")
    if payment.status != PaymentStatus.PENDING:
        return _already_settled(db, checkout_request_id)

    try:
        response = client.query_stk_status(checkout_request_id)
    except GatewayError as exc:
        if not exc.is_pending:
            raise
        result = CallbackResult(CallbackOutcome.PENDING, checkout_request_id=checkout_request_id, payment_id=payment.id, detail=exc.message)
        _log_result("STK query", result)
        return result

    if response.result_code is None:
        result = CallbackResult(
            CallbackOutcome.PENDING,
            checkout_request_id=checkout_request_id,
            payment_id=payment.id,
            detail=response.result_desc,
        )
        _log_result("STK query", result)
        return result

    try:
        result = apply_payment_result(
            db,
            checkout_request_id,
            response.result_code,
            result_desc=response.result_desc,
            now=now,
        )
    except CallbackProcessingError as exc:
        logger.exception("STK query reconciliation failed checkout_request_id=%s", checkout_request_id)
        return CallbackResult(CallbackOutcome.INVALID, checkout_request_id=checkout_request_id, payment_id=payment.id, detail=str(exc))

    _log_result("STK query", result)
    return result
