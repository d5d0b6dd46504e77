from app.models.user import User
from app.models.plan import Plan
from app.models.payment import Payment, PaymentStatus
from app.models.session import WifiSession, SessionStatus

__all__ = [
    "User",
    "Plan",
    "Payment",
    "PaymentStatus",
    "WifiSession",
    "SessionStatus",
]
