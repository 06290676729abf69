"""
Redeem Code Routes
Discount code preview for users and usage statistics for admins
"""
from decimal import Decimal
from fastapi import APIRouter, Depends, Query
from typing import Optional

from app.database import Database
from app.services.payment.discount_service import DiscountService
from app.services.payment.errors import PaymentError, InvalidCode
from app.routes.auth.dependencies import get_current_user, is_admin
from app.utils.response import success_response, error_response, payment_error_response

router = APIRouter(prefix="/redeem-codes", tags=["Redeem Codes"])


@router.get("/validate/{code}")
async def validate_redeem_code(
    code: str,
    amount: Optional[Decimal] = Query(None, gt=0, description="Order amount to preview the discount for"),
    current_user: dict = Depends(get_current_user)
):
    """
    Check a redeem code without using it.
    Nothing is reserved; the code is applied only when payment is initiated.
    """
    if not current_user:
        return error_response(message="Authentication required", status_code=401)

    try:
        discount_service = DiscountService(Database.get_db())
        data = await discount_service.validate(code, current_user["user_id"], amount)
    except InvalidCode as e:
        return error_response(message=e.message, status_code=404, error_code=e.error_code)
    except PaymentError as e:
        return payment_error_response(e)

    return success_response(message="Redeem code is valid", data=data)


@router.get("/admin/{code_id}/stats")
async def get_redeem_code_stats(
    code_id: str,
    current_user: dict = Depends(get_current_user)
):
    """
    Usage statistics for a redeem code (admin only).
    """
    if not current_user:
        return error_response(message="Authentication required", status_code=401)
    if not is_admin(current_user):
        return error_response(message="Admin access required", status_code=403)

    try:
        discount_service = DiscountService(Database.get_db())
        stats = await discount_service.get_code_stats(code_id)
    except PaymentError as e:
        return payment_error_response(e)

    return success_response(message="Redeem code statistics retrieved successfully", data=stats)
