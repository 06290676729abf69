"""
Redeem Code Models
Discount codes and their per-appointment usage rows
"""
from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
from datetime import datetime
from decimal import Decimal
from enum import Enum


class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    AMOUNT = "amount"


class ApplicableFor(str, Enum):
    ALL = "all"
    VIRTUAL_APPOINTMENT = "virtual_appointment"


class RedeemCodeUsageStatus(str, Enum):
    APPLIED = "applied"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class RedeemCodeInDB(BaseModel):
    """Redeem code in database"""
    code: str                           # Always uppercase
    name: str
    description: Optional[str] = None
    discount_type: DiscountType
    discount_value: Decimal
    max_discount_amount: Optional[Decimal] = None   # Cap for percentage codes
    min_order_amount: Optional[Decimal] = None
    valid_from: datetime
    valid_until: Optional[datetime] = None
    is_active: bool = True
    applicable_for: ApplicableFor = ApplicableFor.VIRTUAL_APPOINTMENT
    usage_limit: Optional[int] = None   # Global
    usage_count: int = 0                # Monotonic
    user_usage_limit: Optional[int] = 1
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class RedeemCodeUsageInDB(BaseModel):
    """One application of a code to one appointment"""
    user_id: str
    redeem_code_id: str
    appointment_id: str
    code: str
    original_amount: Decimal
    discount_amount: Decimal
    final_amount: Decimal
    status: RedeemCodeUsageStatus = RedeemCodeUsageStatus.APPLIED
    payment_id: Optional[str] = None
    used_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        use_enum_values = True
