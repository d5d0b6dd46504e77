from datetime import datetime, timedelta
from decimal import Decimal
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload
from app.models import User, Plan, Payment, PaymentStatus, WifiSession, SessionStatus
from app.services.mpesa import StkPushResponse


def find_or_create_user(db: Session, phone: str) -> User:
    user = db.query(User).filter(User.phone == phone).first()
    if not user:
        user = User(phone=phone)
        db.add(user)
        try:
            db.commit()
        except IntegrityError:
            # Another request registered the same phone first.
            db.rollback()
            return db.query(User).filter(User.phone == phone).one()
        db.refresh(user)
    return user


def get_active_plan(db: Session, plan_id: int) -> Plan | None:
    return db.query(Plan).filter(Plan.id == plan_id, Plan.is_active.is_(True)).first()


def create_pending_payment(db: Session, user: User, plan: Plan) -> Payment:
    payment = Payment(
        user_id=user.id,
        plan_id=plan.id,
        amount=Decimal(plan.price),
        phone=user.phone,
        status=PaymentStatus.PENDING,
    )
    db.add(payment)
    db.commit()
    db.refresh(payment)
    return payment


def attach_checkout(db: Session, payment: Payment, response: StkPushResponse) -> Payment:
    payment.checkout_request_id = response.checkout_request_id
    payment.merchant_request_id = response.merchant_request_id
    db.commit()
    db.refresh(payment)
    return payment


def fail_unsent_payment(db: Session, payment: Payment, reason: str) -> None:
    # The push never reached the payer, so no callback will follow.
    if payment.status == PaymentStatus.PENDING:
        payment.status = PaymentStatus.FAILED
        payment.result_description = reason[:255]
        db.commit()


def find_payment_by_checkout_id(db: Session, checkout_request_id: str) -> Payment | None:
    return db.query(Payment).filter(Payment.checkout_request_id == checkout_request_id).first()


def transition_payment(
    db: Session,
    checkout_request_id: str,
    status: PaymentStatus,
    *,
    receipt_number: str | None = None,
    result_code: int | None = None,
    result_description: str | None = None,
) -> bool:
    """Move a payment out of PENDING. Returns False when no pending row matched.

    The caller owns the transaction; nothing is committed here.
    """
    stmt = (
        update(Payment)
        .where(
            Payment.checkout_request_id == checkout_request_id,
            Payment.status == PaymentStatus.PENDING,
        )
        .values(
            status=status,
            mpesa_receipt_number=receipt_number,
            result_code=result_code,
            result_description=result_description[:255] if result_description else None,
        )
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    return result.rowcount == 1


def get_payment_with_user_and_plan(db: Session, checkout_request_id: str) -> Payment | None:
    return (
        db.query(Payment)
        .options(joinedload(Payment.user), joinedload(Payment.plan))
        .filter(Payment.checkout_request_id == checkout_request_id)
        .populate_existing()
        .first()
    )


def create_session(db: Session, payment: Payment, session_token: str, start_time: datetime) -> WifiSession:
    session = WifiSession(
        user_id=payment.user_id,
        plan_id=payment.plan_id,
        payment_id=payment.id,
        session_token=session_token,
        start_time=start_time,
        end_time=start_time + timedelta(hours=int(payment.plan.duration)),
        status=SessionStatus.ACTIVE,
        data_used=0,
    )
    db.add(session)
    db.flush()
    return session


def get_session_for_payment(db: Session, payment: Payment) -> WifiSession | None:
    return db.query(WifiSession).filter(WifiSession.payment_id == payment.id).first()


def list_stale_pending_payments(db: Session, older_than: datetime, limit: int = 100) -> list[Payment]:
    return (
        db.query(Payment)
        .filter(
            Payment.status == PaymentStatus.PENDING,
            Payment.checkout_request_id.isnot(None),
            Payment.created_at < older_than,
        )
        .order_by(Payment.created_at.asc())
        .limit(limit)
        .all()
    )
