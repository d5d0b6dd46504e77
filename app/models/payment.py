import enum
from sqlalchemy import Column, Integer, String, ForeignKey, Numeric, Enum, Index
from sqlalchemy.orm import relationship
from app.core.database import Base
from app.models.base import TimestampMixin


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class Payment(Base, TimestampMixin):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    plan_id = Column(Integer, ForeignKey("plans.id"), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    phone = Column(String(20), nullable=False)
    status = Column(Enum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING)
    # Assigned from the gateway acknowledgement; callbacks are correlated on it.
    checkout_request_id = Column(String(64), unique=True, nullable=True, index=True)
    merchant_request_id = Column(String(64), nullable=True)
    mpesa_receipt_number = Column(String(32), nullable=True)
    result_code = Column(Integer, nullable=True)
    result_description = Column(String(255), nullable=True)

    user = relationship("User", back_populates="payments")
    plan = relationship("Plan")
    session = relationship("WifiSession", back_populates="payment", uselist=False)


Index("ix_payments_user_status", Payment.user_id, Payment.status)
Index("ix_payments_status_created", Payment.status, Payment.created_at)
