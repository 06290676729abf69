"""
Payment Routes
API endpoints for virtual-appointment payments
"""
from fastapi import APIRouter, Depends, Query, Request
from typing import Optional, Dict, Any

from app.database import Database
from app.models.payment.payment import InitiatePaymentRequest
from app.services.payment.payment_service import PaymentService
from app.services.payment.reporting_service import PaymentReportingService
from app.services.payment.errors import PaymentError
from app.routes.auth.dependencies import get_current_user, is_admin
from app.utils.response import success_response, error_response, payment_error_response

router = APIRouter(prefix="/payment", tags=["Payments"])


def get_client_info(request: Request) -> Dict[str, Any]:
    """IP and device details stored on the payment attempt"""
    return {
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
        "platform": request.headers.get("sec-ch-ua-platform") or request.headers.get("x-platform"),
    }


@router.post("/initiate")
async def initiate_payment(
    payload: InitiatePaymentRequest,
    request: Request,
    current_user: dict = Depends(get_current_user)
):
    """
    Initiate payment for a pending virtual appointment.

    Returns the PhonePe payment URL. Calling again while an attempt is
    open returns that attempt (already_initiated=true).
    """
    if not current_user:
        return error_response(message="Authentication required", status_code=401)

    try:
        payment_service = PaymentService(Database.get_db())
        data = await payment_service.initiate(
            user_id=current_user["user_id"],
            appointment_id=payload.appointment_id,
            payment_method=payload.payment_method,
            redeem_code=payload.redeem_code,
            client_info=get_client_info(request)
        )
    except PaymentError as e:
        return payment_error_response(e)
    except Exception as e:
        print(f"[ERROR] Payment initiation error: {str(e)}")
        return error_response(message="Internal server error", status_code=500)

    message = "Payment already initiated" if data.get("already_initiated") else "Payment initiated successfully"
    return success_response(message=message, data=data)


@router.post("/complete")
async def complete_payment(
    payload: InitiatePaymentRequest,
    request: Request,
    current_user: dict = Depends(get_current_user)
):
    """
    Retry payment for a pending appointment whose earlier attempt
    failed, was cancelled or expired.
    """
    if not current_user:
        return error_response(message="Authentication required", status_code=401)

    try:
        payment_service = PaymentService(Database.get_db())
        data = await payment_service.complete(
            user_id=current_user["user_id"],
            appointment_id=payload.appointment_id,
            payment_method=payload.payment_method,
            redeem_code=payload.redeem_code,
            client_info=get_client_info(request)
        )
    except PaymentError as e:
        return payment_error_response(e)
    except Exception as e:
        print(f"[ERROR] Payment completion error: {str(e)}")
        return error_response(message="Internal server error", status_code=500)

    return success_response(message="Payment initiated successfully", data=data)


@router.get("/status/{payment_id}")
async def get_payment_status(
    payment_id: str,
    current_user: dict = Depends(get_current_user)
):
    """
    Get payment status.
    Asks PhonePe if the payment is still open.
    """
    if not current_user:
        return error_response(message="Authentication required", status_code=401)

    try:
        payment_service = PaymentService(Database.get_db())
        data = await payment_service.check_status(payment_id, current_user["user_id"])
    except PaymentError as e:
        return payment_error_response(e)
    except Exception as e:
        print(f"[ERROR] Payment status error: {str(e)}")
        return error_response(message="Internal server error", status_code=500)

    return success_response(message="Payment status retrieved successfully", data=data)


@router.post("/sync/{payment_id}")
async def sync_payment(
    payment_id: str,
    current_user: dict = Depends(get_current_user)
):
    """
    Force a status check with PhonePe.
    Owner or admin only.
    """
    if not current_user:
        return error_response(message="Authentication required", status_code=401)

    try:
        payment_service = PaymentService(Database.get_db())
        data = await payment_service.manual_sync(
            payment_id,
            current_user["user_id"],
            is_admin=is_admin(current_user)
        )
    except PaymentError as e:
        return payment_error_response(e)
    except Exception as e:
        print(f"[ERROR] Payment sync error: {str(e)}")
        return error_response(message="Internal server error", status_code=500)

    message = "Payment status updated" if data["changed"] else "Payment status unchanged"
    return success_response(message=message, data=data)


@router.get("/history")
async def get_payment_history(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[str] = Query(None, description="Filter by status"),
    current_user: dict = Depends(get_current_user)
):
    """
    Get user's payment history.
    """
    if not current_user:
        return error_response(message="Authentication required", status_code=401)

    reporting = PaymentReportingService(Database.get_db())
    payments, pagination = await reporting.get_history(
        user_id=current_user["user_id"],
        status=status,
        page=page,
        limit=limit
    )

    return success_response(
        message="Payment history retrieved successfully",
        data={
            "payments": payments,
            "pagination": pagination
        }
    )


@router.get("/details/{payment_id}")
async def get_payment_details(
    payment_id: str,
    current_user: dict = Depends(get_current_user)
):
    """
    Get payment details with its appointment.
    Only the payment owner can view.
    """
    if not current_user:
        return error_response(message="Authentication required", status_code=401)

    try:
        reporting = PaymentReportingService(Database.get_db())
        payment = await reporting.get_details(payment_id, user_id=current_user["user_id"])
    except PaymentError as e:
        return payment_error_response(e)

    return success_response(message="Payment details retrieved successfully", data={"payment": payment})


@router.get("/pending")
async def get_pending_payments(
    current_user: dict = Depends(get_current_user)
):
    """
    Pending appointments still waiting for a successful payment.
    """
    if not current_user:
        return error_response(message="Authentication required", status_code=401)

    reporting = PaymentReportingService(Database.get_db())
    pending = await reporting.get_pending_payments(current_user["user_id"])

    return success_response(
        message="Pending payments retrieved successfully",
        data={"pending_payments": pending, "count": len(pending)}
    )


@router.get("/methods")
async def get_payment_methods():
    """
    Payment methods offered through PhonePe.
    """
    try:
        payment_service = PaymentService(Database.get_db())
        methods = payment_service.get_payment_methods()
    except ValueError as e:
        print(f"[ERROR] Payment gateway misconfigured: {str(e)}")
        return error_response(message="Payment gateway is not configured", status_code=503)

    return success_response(
        message="Payment methods retrieved successfully",
        data={"methods": methods, "gateway": "phonepe"}
    )
