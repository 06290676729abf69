"""
Payment Webhook Routes
Endpoint for PhonePe server-to-server callbacks
SECURITY: The callback is verified (checksum or webhook credentials) before processing
"""
import json
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from app.database import Database
from app.services.payment.payment_service import PaymentService
from app.services.payment.errors import PaymentError

router = APIRouter(prefix="/payment", tags=["Payment Webhooks"])


@router.post("/phonepe/callback")
async def handle_phonepe_callback(request: Request):
    """
    Handle PhonePe payment callback.

    SECURITY:
    - Verifies checksum / webhook authorization
    - Processes idempotently (duplicate callbacks are no-ops)

    Responses:
    - 400: signature or body invalid
    - 404: unknown merchant transaction
    - 200: everything else, including internal errors, so PhonePe does not retry forever
    """
    try:
        raw_body = await request.body()
        body = json.loads(raw_body or b"{}")
    except ValueError:
        print("[SECURITY] Rejected PhonePe callback: body is not valid JSON")
        return JSONResponse(
            status_code=400,
            content={"status": "error", "message": "Invalid callback body"}
        )

    try:
        payment_service = PaymentService(Database.get_db())
        result = await payment_service.handle_callback(dict(request.headers), body)
    except PaymentError as e:
        return JSONResponse(
            status_code=e.status_code,
            content={"status": "error", "message": e.message}
        )
    except Exception as e:
        print(f"[ERROR] Callback handler error: {str(e)}")
        return JSONResponse(
            status_code=200,
            content={"status": "error", "message": "Internal error"}
        )

    return JSONResponse(status_code=200, content=result)


# Health check for webhook endpoint
@router.get("/webhook/health")
async def webhook_health():
    """
    Health check for webhook endpoint.
    Can be used to verify webhook URL is accessible.
    """
    return JSONResponse(
        status_code=200,
        content={"status": "ok", "message": "Webhook endpoint healthy"}
    )
