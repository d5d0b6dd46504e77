from pydantic import BaseModel, ConfigDict, Field
from decimal import Decimal
from datetime import datetime
from typing import Optional
from app.models.payment import PaymentStatus


class PurchaseRequest(BaseModel):
    phone: str = Field(..., min_length=9, max_length=20)
    plan_id: int


class PurchaseResponse(BaseModel):
    payment_id: int
    checkout_request_id: str
    merchant_request_id: str
    amount: Decimal
    status: PaymentStatus | str
    customer_message: str


class PaymentStatusOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    payment_id: int
    checkout_request_id: str
    amount: Decimal
    status: PaymentStatus | str
    mpesa_receipt_number: Optional[str] = None
    result_description: Optional[str] = None
    session_token: Optional[str] = None
    session_end_time: Optional[datetime] = None


class CallbackAck(BaseModel):
    ResultCode: int = 0
    ResultDesc: str = "Accepted"
