"""
Admin Payment Routes
Listing, statistics and refund bookkeeping (admin role required)
"""
from fastapi import APIRouter, Depends, Query
from typing import Optional

from app.database import Database
from app.models.payment.payment import RefundPaymentRequest
from app.services.payment.payment_service import PaymentService
from app.services.payment.reporting_service import PaymentReportingService
from app.services.payment.errors import PaymentError
from app.routes.auth.dependencies import get_current_user, is_admin
from app.utils.response import success_response, error_response, payment_error_response

router = APIRouter(prefix="/payment/admin", tags=["Payments Admin"])


def _admin_check(current_user: Optional[dict]):
    if not current_user:
        return error_response(message="Authentication required", status_code=401)
    if not is_admin(current_user):
        return error_response(message="Admin access required", status_code=403)
    return None


@router.get("")
async def list_payments(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status: Optional[str] = Query(None),
    payment_method: Optional[str] = Query(None, alias="paymentMethod"),
    user_id: Optional[str] = Query(None, alias="userId"),
    from_date: Optional[str] = Query(None, alias="fromDate", description="YYYY-MM-DD"),
    to_date: Optional[str] = Query(None, alias="toDate", description="YYYY-MM-DD, inclusive"),
    current_user: dict = Depends(get_current_user)
):
    """
    All payments with filters, newest first.
    """
    denied = _admin_check(current_user)
    if denied:
        return denied

    try:
        reporting = PaymentReportingService(Database.get_db())
        payments, pagination = await reporting.list_payments(
            status=status,
            payment_method=payment_method,
            user_id=user_id,
            from_date=from_date,
            to_date=to_date,
            page=page,
            limit=limit
        )
    except PaymentError as e:
        return payment_error_response(e)

    return success_response(
        message="Payments retrieved successfully",
        data={
            "payments": payments,
            "pagination": pagination
        }
    )


@router.get("/stats")
async def get_payment_stats(
    from_date: Optional[str] = Query(None, alias="fromDate", description="YYYY-MM-DD"),
    to_date: Optional[str] = Query(None, alias="toDate", description="YYYY-MM-DD, inclusive"),
    current_user: dict = Depends(get_current_user)
):
    """
    Revenue and distribution by status and method.
    Defaults to the last 30 days.
    """
    denied = _admin_check(current_user)
    if denied:
        return denied

    try:
        reporting = PaymentReportingService(Database.get_db())
        stats = await reporting.get_stats(from_date, to_date)
    except PaymentError as e:
        return payment_error_response(e)

    return success_response(message="Payment statistics retrieved successfully", data=stats)


@router.get("/{payment_id}")
async def get_payment(
    payment_id: str,
    current_user: dict = Depends(get_current_user)
):
    """
    Payment details including PhonePe payloads.
    """
    denied = _admin_check(current_user)
    if denied:
        return denied

    try:
        reporting = PaymentReportingService(Database.get_db())
        payment = await reporting.get_details(payment_id)
    except PaymentError as e:
        return payment_error_response(e)

    return success_response(message="Payment details retrieved successfully", data={"payment": payment})


@router.post("/{payment_id}/refund")
async def refund_payment(
    payment_id: str,
    payload: RefundPaymentRequest,
    current_user: dict = Depends(get_current_user)
):
    """
    Record a refund for a successful payment.
    The money movement itself happens in the PhonePe dashboard.
    """
    denied = _admin_check(current_user)
    if denied:
        return denied

    try:
        payment_service = PaymentService(Database.get_db())
        data = await payment_service.refund(payment_id, payload.amount, payload.reason)
    except PaymentError as e:
        return payment_error_response(e)
    except Exception as e:
        print(f"[ERROR] Refund error for payment {payment_id}: {str(e)}")
        return error_response(message="Internal server error", status_code=500)

    print(f"[INFO] Refund recorded by admin {current_user['user_id']} for payment {payment_id}")
    message = "Refund recorded successfully" if data["changed"] else "Payment already refunded"
    return success_response(message=message, data=data)
