from datetime import datetime, date
from decimal import Decimal
from typing import Any, Optional, Dict
from bson import ObjectId
from bson.decimal128 import Decimal128
from fastapi.responses import JSONResponse

from app.services.payment.errors import PaymentError


def serialize_value(obj: Any) -> Any:
    """
    Convert Mongo / Python values to JSON-friendly ones.
    datetimes -> ISO strings, money -> float, ObjectId -> str
    """
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    elif isinstance(obj, Decimal128):
        return float(obj.to_decimal())
    elif isinstance(obj, Decimal):
        return float(obj)
    elif isinstance(obj, ObjectId):
        return str(obj)
    elif isinstance(obj, dict):
        return {k: serialize_value(v) for k, v in obj.items()}
    elif isinstance(obj, (list, tuple)):
        return [serialize_value(item) for item in obj]
    return obj


def success_response(
    message: str = "Success",
    data: Any = None,
    status_code: int = 200
) -> JSONResponse:
    """
    Standard success response

    Args:
        message: Success message
        data: Response data (optional), serialized with serialize_value
        status_code: HTTP status code (default: 200)

    Returns:
        JSONResponse with success format
    """
    response = {
        "success": True,
        "message": message
    }

    if data is not None:
        response["data"] = serialize_value(data)

    return JSONResponse(content=response, status_code=status_code)


def error_response(
    message: str = "Error",
    status_code: int = 400,
    error_code: Optional[str] = None
) -> JSONResponse:
    """
    Standard error response

    Args:
        message: Error message
        status_code: HTTP status code (default: 400)
        error_code: Machine-readable code (optional)

    Returns:
        JSONResponse with error format
    """
    content: Dict[str, Any] = {
        "success": False,
        "message": message
    }
    if error_code:
        content["error_code"] = error_code

    return JSONResponse(content=content, status_code=status_code)


def payment_error_response(error: PaymentError) -> JSONResponse:
    """PaymentError -> error_response with its status code"""
    return error_response(
        message=error.message,
        status_code=error.status_code,
        error_code=error.error_code
    )
