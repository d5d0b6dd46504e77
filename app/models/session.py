import enum
from sqlalchemy import Column, Integer, BigInteger, String, ForeignKey, Enum, Index, DateTime
from sqlalchemy.orm import relationship
from app.core.database import Base
from app.models.base import TimestampMixin


class SessionStatus(str, enum.Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    TERMINATED = "terminated"


class WifiSession(Base, TimestampMixin):
    """A timed grant of hotspot access, provisioned from one completed payment."""

    __tablename__ = "sessions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    plan_id = Column(Integer, ForeignKey("plans.id"), nullable=False)
    payment_id = Column(Integer, ForeignKey("payments.id"), nullable=False, unique=True)
    session_token = Column(String(128), nullable=False, unique=True, index=True)
    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=False)
    status = Column(Enum(SessionStatus), nullable=False, default=SessionStatus.ACTIVE)
    data_used = Column(BigInteger, default=0, nullable=False)  # bytes
    ip_address = Column(String(45), nullable=True)
    mac_address = Column(String(17), nullable=True)

    user = relationship("User", back_populates="sessions")
    plan = relationship("Plan")
    payment = relationship("Payment", back_populates="session")


Index("ix_sessions_user_status", WifiSession.user_id, WifiSession.status)
