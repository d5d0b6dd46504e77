import logging
from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session
from app.core.config import get_settings
from app.core.database import get_db
from app.dependencies import get_mpesa_client
from app.middlewares.rate_limit import limiter
from app.models import Payment, PaymentStatus
from app.schemas.payment import PurchaseRequest, PurchaseResponse, PaymentStatusOut, CallbackAck
from app.services.mpesa import MpesaClient, MpesaError, normalize_phone
from app.services.payments import (
    attach_checkout,
    create_pending_payment,
    fail_unsent_payment,
    find_or_create_user,
    find_payment_by_checkout_id,
    get_active_plan,
    get_session_for_payment,
)
from app.services.reconciliation import handle_stk_callback, reconcile_from_status_query

router = APIRouter()
settings = get_settings()
logger = logging.getLogger(__name__)


def _status_out(db: Session, payment: Payment) -> PaymentStatusOut:
    session = get_session_for_payment(db, payment) if payment.status == PaymentStatus.COMPLETED else None
    return PaymentStatusOut(
        payment_id=payment.id,
        checkout_request_id=payment.checkout_request_id,
        amount=payment.amount,
        status=payment.status,
        mpesa_receipt_number=payment.mpesa_receipt_number,
        result_description=payment.result_description,
        session_token=session.session_token if session else None,
        session_end_time=session.end_time if session else None,
    )


@router.post("/purchase", response_model=PurchaseResponse)
@limiter.limit(settings.payment_rate_limit)
def purchase(
    request: Request,
    payload: PurchaseRequest,
    db: Session = Depends(get_db),
    mpesa: MpesaClient = Depends(get_mpesa_client),
):
    try:
        phone = normalize_phone(payload.phone, mpesa.config.country_code)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))

    plan = get_active_plan(db, payload.plan_id)
    if not plan:
        raise HTTPException(status_code=404, detail="Plan not found")

    user = find_or_create_user(db, phone)
    if not user.is_active:
        raise HTTPException(status_code=403, detail="Account is disabled")

    payment = create_pending_payment(db, user, plan)
    try:
        response = mpesa.initiate_stk_push(
            phone=phone,
            amount=payment.amount,
            account_reference=f"WIFI{payment.id}",
            transaction_desc=plan.name,
        )
    except MpesaError as exc:
        logger.warning("STK push failed payment_id=%s: %s", payment.id, exc.message)
        fail_unsent_payment(db, payment, exc.message)
        raise HTTPException(status_code=502, detail="Payment initialization failed")

    attach_checkout(db, payment, response)
    return PurchaseResponse(
        payment_id=payment.id,
        checkout_request_id=response.checkout_request_id,
        merchant_request_id=response.merchant_request_id,
        amount=payment.amount,
        status=payment.status,
        customer_message=response.customer_message,
    )


@router.post("/mpesa/callback", response_model=CallbackAck)
async def mpesa_callback(request: Request, db: Session = Depends(get_db)):
    # Always acknowledge; the gateway does not act on our errors.
    try:
        payload = await request.json()
    except ValueError:
        logger.warning("STK callback body is not valid JSON")
        return CallbackAck()

    try:
        handle_stk_callback(db, payload)
    except Exception:
        logger.exception("Unexpected error while handling STK callback")
    return CallbackAck()


@router.get("/{checkout_request_id}", response_model=PaymentStatusOut)
def get_payment_status(checkout_request_id: str, db: Session = Depends(get_db)):
    payment = find_payment_by_checkout_id(db, checkout_request_id)
    if not payment:
        raise HTTPException(status_code=404, detail="Payment not found")
    return _status_out(db, payment)


@router.post("/{checkout_request_id}/query", response_model=PaymentStatusOut)
def query_payment_status(
    checkout_request_id: str,
    db: Session = Depends(get_db),
    mpesa: MpesaClient = Depends(get_mpesa_client),
):
    payment = find_payment_by_checkout_id(db, checkout_request_id)
    if not payment:
        raise HTTPException(status_code=404, detail="Payment not found")

    if payment.status == PaymentStatus.PENDING:
        try:
            reconcile_from_status_query(db, mpesa, payment)
        except MpesaError as exc:
            logger.warning("STK query failed checkout_request_id=%s: %s", checkout_request_id, exc.message)
            raise HTTPException(status_code=502, detail="Payment status query failed")
        db.refresh(payment)
    return _status_out(db, payment)
