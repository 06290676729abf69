"""
Payment Models
One document per payment attempt against the PSP
"""
from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
from datetime import datetime
from decimal import Decimal
from enum import Enum


class PaymentState(str, Enum):
    """Payment lifecycle state"""
    PENDING = "pending"
    INITIATED = "initiated"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    EXPIRED = "expired"


class PaymentMethod(str, Enum):
    """Payment method chosen by the user"""
    PHONEPE = "phonepe"
    UPI = "upi"
    CARD = "card"
    NETBANKING = "netbanking"
    WALLET = "wallet"


# States that still wait for a PSP verdict
OPEN_STATES = (PaymentState.PENDING, PaymentState.INITIATED, PaymentState.PROCESSING)

# States that occupy the appointment's single active slot
SLOT_STATES = OPEN_STATES + (PaymentState.SUCCESS,)

TERMINAL_FAILURE_STATES = (PaymentState.FAILED, PaymentState.CANCELLED, PaymentState.EXPIRED)

TERMINAL_STATES = TERMINAL_FAILURE_STATES + (PaymentState.SUCCESS, PaymentState.REFUNDED)

# to_state -> states it may be entered from
ALLOWED_FROM = {
    PaymentState.PROCESSING: OPEN_STATES,
    PaymentState.SUCCESS: OPEN_STATES,
    PaymentState.FAILED: OPEN_STATES,
    PaymentState.CANCELLED: OPEN_STATES,
    PaymentState.EXPIRED: OPEN_STATES,
    PaymentState.REFUNDED: (PaymentState.SUCCESS,),
}

DEFAULT_FAILURE_REASONS = {
    PaymentState.FAILED: "Payment failed",
    PaymentState.CANCELLED: "Payment cancelled",
    PaymentState.EXPIRED: "Payment expired",
}

CURRENCY = "INR"


class DeviceInfo(BaseModel):
    """Client device snapshot captured at initiation"""
    user_agent: Optional[str] = None
    platform: Optional[str] = None


class PaymentInDB(BaseModel):
    """Payment attempt in database"""
    payment_id: str                 # PAY_xxx
    merchant_transaction_id: str    # TXN_{user}_{appointment}_{millis}
    user_id: str
    appointment_id: str

    # Amount info
    amount: Decimal                 # Charged amount (after discount)
    original_amount: Decimal
    discount_amount: Decimal = Decimal("0.00")
    currency: str = CURRENCY
    redeem_code: Optional[str] = None
    redeem_code_usage_id: Optional[str] = None

    payment_method: PaymentMethod = PaymentMethod.PHONEPE
    status: PaymentState = PaymentState.INITIATED
    holds_slot: bool = True

    # PSP info
    psp_order_id: Optional[str] = None
    psp_response: Dict[str, Any] = Field(default_factory=dict)
    psp_callback_payload: Optional[Dict[str, Any]] = None
    psp_status_payload: Optional[Dict[str, Any]] = None
    gateway_transaction_id: Optional[str] = None
    psp_payment_mode: Optional[str] = None
    payment_url: Optional[str] = None

    # Timestamps
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    initiated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None

    # Failure
    failure_reason: Optional[str] = None
    failure_code: Optional[str] = None

    # Refund
    refund_amount: Optional[Decimal] = None
    refund_reason: Optional[str] = None
    refunded_at: Optional[datetime] = None

    # Audit
    ip_address: Optional[str] = None
    device_info: DeviceInfo = Field(default_factory=DeviceInfo)

    class Config:
        use_enum_values = True


class InitiatePaymentRequest(BaseModel):
    """Request to initiate (or retry) payment for an appointment"""
    appointment_id: str = Field(..., alias="appointmentId", min_length=1)
    payment_method: PaymentMethod = Field(PaymentMethod.PHONEPE, alias="paymentMethod")
    redeem_code: Optional[str] = Field(None, alias="redeemCode", max_length=50)

    class Config:
        populate_by_name = True


class RefundPaymentRequest(BaseModel):
    """Admin refund bookkeeping request"""
    amount: Optional[Decimal] = Field(None, gt=0)
    reason: str = Field(..., min_length=1, max_length=500)
