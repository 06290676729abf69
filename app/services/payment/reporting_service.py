"""
Payment Reporting Service
Read-only views over payments: history, details, admin listing, stats
"""
from datetime import datetime, timedelta, time, timezone
from typing import Optional, Dict, Any, List, Tuple
from motor.motor_asyncio import AsyncIOMotorDatabase

from app.models.appointment.appointment import AppointmentStatus
from app.models.payment.payment import PaymentState
from app.services.payment.payment_store import PaymentStore, MONEY_FIELDS
from app.services.payment.errors import NotFound, BadRequest
from app.utils.money import to_float

DEFAULT_STATS_DAYS = 30


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Stored timestamps are naive UTC; offset-bearing inputs are converted"""
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


# Opaque PSP snapshots are only shown in the admin detail view
PSP_PAYLOAD_FIELDS = ("psp_response", "psp_callback_payload", "psp_status_payload")


def public_payment(payment: Dict[str, Any], include_psp_payloads: bool = False) -> Dict[str, Any]:
    """Payment document -> JSON-friendly dict"""
    data = {k: v for k, v in payment.items() if k not in ("_id", "holds_slot")}
    for key in MONEY_FIELDS:
        if key in data:
            data[key] = to_float(data[key])
    if not include_psp_payloads:
        for key in PSP_PAYLOAD_FIELDS:
            data.pop(key, None)
    return data


def parse_date_range(
    from_date: Optional[str],
    to_date: Optional[str],
    default_days: Optional[int] = None
) -> Tuple[Optional[datetime], Optional[datetime]]:
    """
    YYYY-MM-DD (or ISO) strings -> datetimes.
    to_date is inclusive up to the end of that day.
    """
    try:
        start = datetime.fromisoformat(from_date) if from_date else None
        end = datetime.fromisoformat(to_date) if to_date else None
    except ValueError:
        raise BadRequest("Dates must be in YYYY-MM-DD format")

    start = _naive_utc(start)
    end = _naive_utc(end)

    if end is not None and len(to_date) <= 10:
        end = datetime.combine(end.date(), time.max)

    if default_days is not None:
        now = datetime.utcnow()
        start = start or now - timedelta(days=default_days)
        end = end or now

    if start and end and start > end:
        raise BadRequest("fromDate must be before toDate")

    return start, end


class PaymentReportingService:
    """
    Reporting over the payments collection.
    Nothing here changes payment state.
    """

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.store = PaymentStore(db)
        self.appointments = db.appointments

    async def get_history(
        self,
        user_id: str,
        status: Optional[str] = None,
        page: int = 1,
        limit: int = 10
    ) -> Tuple[List[Dict[str, Any]], Dict[str, Any]]:
        """User's payment history, newest first"""
        payments, pagination = await self.store.list_by_user(user_id, status, page, limit)
        return [public_payment(p) for p in payments], pagination

    async def get_details(self, payment_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        """Single payment with its appointment; user_id=None means admin access"""
        payment = await self.store.find_by_id(payment_id)
        if not payment or (user_id is not None and payment["user_id"] != user_id):
            raise NotFound("Payment not found")

        appointment = await self.appointments.find_one({"appointment_id": payment["appointment_id"]})

        data = public_payment(payment, include_psp_payloads=user_id is None)
        data["appointment"] = {
            "appointment_id": appointment.get("appointment_id"),
            "type": appointment.get("type"),
            "status": appointment.get("status"),
            "payment_status": appointment.get("payment_status"),
            "appointment_date_time": appointment.get("appointment_date_time"),
            "confirmed_at": appointment.get("confirmed_at"),
        } if appointment else None
        return data

    async def list_payments(
        self,
        status: Optional[str] = None,
        payment_method: Optional[str] = None,
        user_id: Optional[str] = None,
        from_date: Optional[str] = None,
        to_date: Optional[str] = None,
        page: int = 1,
        limit: int = 20
    ) -> Tuple[List[Dict[str, Any]], Dict[str, Any]]:
        """Admin listing with filters"""
        start, end = parse_date_range(from_date, to_date)
        payments, pagination = await self.store.list_admin(
            status=status,
            payment_method=payment_method,
            user_id=user_id,
            from_date=start,
            to_date=end,
            page=page,
            limit=limit
        )
        return [public_payment(p) for p in payments], pagination

    async def get_stats(self, from_date: Optional[str] = None, to_date: Optional[str] = None) -> Dict[str, Any]:
        """Revenue plus per-status and per-method distribution; defaults to the last 30 days"""
        start, end = parse_date_range(from_date, to_date, default_days=DEFAULT_STATS_DAYS)

        revenue = await self.store.sum_revenue(start, end)
        by_status = await self.store.stats_by_status(start, end)
        by_method = await self.store.stats_by_method(start, end)

        return {
            "period": {"from_date": start, "to_date": end},
            "revenue": {
                "total_revenue": to_float(revenue["total_revenue"]),
                "total_transactions": revenue["total_transactions"],
            },
            "status_distribution": [
                {"status": row["status"], "count": row["count"], "total_amount": to_float(row["total_amount"])}
                for row in by_status
            ],
            "method_distribution": by_method,
        }

    async def get_pending_payments(self, user_id: str) -> List[Dict[str, Any]]:
        """User's pending appointments that still have no successful payment"""
        cursor = self.appointments.find({
            "user_id": user_id,
            "status": AppointmentStatus.PENDING.value
        }).sort("appointment_date_time", 1)
        appointments = await cursor.to_list(length=100)

        pending = []
        for appointment in appointments:
            appointment_id = appointment["appointment_id"]
            payments = await self.store.payments.find(
                {"appointment_id": appointment_id}
            ).sort("created_at", -1).to_list(length=50)

            if any(p["status"] == PaymentState.SUCCESS.value for p in payments):
                continue

            last = payments[0] if payments else None
            pending.append({
                "appointment_id": appointment_id,
                "appointment_date_time": appointment.get("appointment_date_time"),
                "type": appointment.get("type"),
                "status": appointment.get("status"),
                "payment_status": appointment.get("payment_status"),
                "has_payment_attempt": last is not None,
                "last_payment_status": last["status"] if last else None,
                "last_payment_id": last["payment_id"] if last else None,
                "can_retry_payment": True,
            })

        return pending
