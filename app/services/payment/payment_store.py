"""
Payment Store
Persistence for payment attempts with guarded, idempotent state transitions
"""
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any, Tuple, List
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from app.models.payment.payment import (
    PaymentInDB,
    PaymentState,
    ALLOWED_FROM,
    OPEN_STATES,
    SLOT_STATES,
    TERMINAL_FAILURE_STATES,
    DEFAULT_FAILURE_REASONS,
)
from app.services.payment.errors import PaymentConflict, InvalidTransition, NotFound, BadRequest
from app.utils.money import to_decimal, to_decimal128, quantize_amount

MONEY_FIELDS = ("amount", "original_amount", "discount_amount", "refund_amount")


def _values(states) -> List[str]:
    return [PaymentState(s).value for s in states]


class PaymentStore:
    """
    Payment documents live in the `payments` collection.

    Every state change goes through transition(), a single
    find_one_and_update filtered on the states the target may be entered
    from. A writer that loses the race matches nothing and becomes a no-op.
    """

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.payments = db.payments

    @staticmethod
    def generate_payment_id() -> str:
        """Generate unique payment ID"""
        return f"PAY_{uuid.uuid4().hex[:12].upper()}"

    async def create(self, payment: PaymentInDB, session=None) -> Dict[str, Any]:
        """Insert a new attempt; the partial unique index rejects a second active one"""
        doc = payment.model_dump()
        for key in MONEY_FIELDS:
            if doc.get(key) is not None:
                doc[key] = to_decimal128(doc[key])

        try:
            result = await self.payments.insert_one(doc, session=session)
        except DuplicateKeyError:
            raise PaymentConflict("Payment already initiated")

        doc["_id"] = result.inserted_id
        return doc

    async def transition(
        self,
        payment_id: str,
        to_state: PaymentState,
        fields: Optional[Dict[str, Any]] = None,
        session=None
    ) -> Tuple[Optional[Dict[str, Any]], bool]:
        """
        Move a payment to to_state if its current state allows it.

        Returns:
            (payment_after, changed). changed is False when the current
            state does not permit the move or the state is unchanged
            (processing -> processing); payment_after is then the current
            document.
        """
        to_state = PaymentState(to_state)
        if to_state not in ALLOWED_FROM:
            raise InvalidTransition(f"Cannot transition a payment to {to_state.value}")

        now = datetime.utcnow()
        update = dict(fields or {})
        for key in MONEY_FIELDS:
            if update.get(key) is not None:
                update[key] = to_decimal128(update[key])

        update.update({
            "status": to_state.value,
            "holds_slot": to_state in SLOT_STATES,
            "updated_at": now,
        })

        if to_state == PaymentState.SUCCESS:
            update["completed_at"] = now
            update["failed_at"] = None
            update["failure_reason"] = None
            update["failure_code"] = None
        elif to_state in TERMINAL_FAILURE_STATES:
            update["failed_at"] = now
            update["completed_at"] = None
            if not update.get("failure_reason"):
                update["failure_reason"] = DEFAULT_FAILURE_REASONS[to_state]
        elif to_state == PaymentState.REFUNDED:
            update["refunded_at"] = now

        before = await self.payments.find_one_and_update(
            {"payment_id": payment_id, "status": {"$in": _values(ALLOWED_FROM[to_state])}},
            {"$set": update},
            session=session,
            return_document=ReturnDocument.BEFORE
        )

        if before is None:
            current = await self.find_by_id(payment_id, session=session)
            if current is None:
                raise NotFound("Payment not found")
            return current, False

        after = {**before, **update}
        return after, before.get("status") != to_state.value

    async def update_psp_details(self, payment_id: str, fields: Dict[str, Any], session=None):
        """Record PSP bookkeeping (order id, URL, snapshots) without touching state"""
        update = dict(fields)
        update["updated_at"] = datetime.utcnow()
        await self.payments.update_one({"payment_id": payment_id}, {"$set": update}, session=session)

    async def refund(
        self,
        payment_id: str,
        amount: Optional[Any],
        reason: str,
        session=None
    ) -> Tuple[Dict[str, Any], bool]:
        """success -> refunded; refund_amount defaults to the full amount and may not exceed it"""
        payment = await self.find_by_id(payment_id, session=session)
        if not payment:
            raise NotFound("Payment not found")
        if payment["status"] != PaymentState.SUCCESS.value:
            raise BadRequest("Only successful payments can be refunded")

        paid = to_decimal(payment["amount"])
        refund_amount = quantize_amount(amount) if amount is not None else paid
        if refund_amount <= Decimal("0") or refund_amount > paid:
            raise BadRequest("Refund amount must be greater than zero and not exceed the paid amount")

        return await self.transition(
            payment_id,
            PaymentState.REFUNDED,
            {"refund_amount": refund_amount, "refund_reason": reason},
            session=session
        )

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def find_by_id(self, payment_id: str, session=None) -> Optional[Dict[str, Any]]:
        return await self.payments.find_one({"payment_id": payment_id}, session=session)

    async def find_by_merchant_txn_id(self, merchant_transaction_id: str, session=None) -> Optional[Dict[str, Any]]:
        return await self.payments.find_one({"merchant_transaction_id": merchant_transaction_id}, session=session)

    async def find_active_for_appointment(self, appointment_id: str, session=None) -> Optional[Dict[str, Any]]:
        """The single pending/initiated/processing/success payment, if any"""
        return await self.payments.find_one(
            {"appointment_id": appointment_id, "status": {"$in": _values(SLOT_STATES)}},
            session=session
        )

    async def find_stale_open(self, older_than: datetime, limit: int = 100) -> List[Dict[str, Any]]:
        """Open payments created before older_than (reconciler sweep)"""
        cursor = self.payments.find({
            "status": {"$in": _values(OPEN_STATES)},
            "created_at": {"$lt": older_than}
        }).sort("created_at", 1).limit(limit)
        return await cursor.to_list(length=limit)

    async def _paginate(self, query: Dict[str, Any], page: int, limit: int) -> Tuple[List[Dict], Dict[str, Any]]:
        skip = (page - 1) * limit

        total = await self.payments.count_documents(query)
        cursor = self.payments.find(query).sort("created_at", -1).skip(skip).limit(limit)
        payments = await cursor.to_list(length=limit)

        pagination = {
            "total": total,
            "page": page,
            "limit": limit,
            "total_pages": (total + limit - 1) // limit
        }
        return payments, pagination

    async def list_by_user(
        self,
        user_id: str,
        status: Optional[str] = None,
        page: int = 1,
        limit: int = 10
    ) -> Tuple[List[Dict], Dict[str, Any]]:
        query = {"user_id": user_id}
        if status:
            query["status"] = status
        return await self._paginate(query, page, limit)

    async def list_admin(
        self,
        status: Optional[str] = None,
        payment_method: Optional[str] = None,
        user_id: Optional[str] = None,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
        page: int = 1,
        limit: int = 20
    ) -> Tuple[List[Dict], Dict[str, Any]]:
        query: Dict[str, Any] = {}
        if status:
            query["status"] = status
        if payment_method:
            query["payment_method"] = payment_method
        if user_id:
            query["user_id"] = user_id
        if from_date or to_date:
            query["created_at"] = {}
            if from_date:
                query["created_at"]["$gte"] = from_date
            if to_date:
                query["created_at"]["$lte"] = to_date
        return await self._paginate(query, page, limit)

    # ------------------------------------------------------------------
    # Aggregations
    # ------------------------------------------------------------------

    async def sum_revenue(self, start: datetime, end: datetime) -> Dict[str, Any]:
        """Sum of successful amounts with completed_at in [start, end]"""
        pipeline = [
            {"$match": {
                "status": PaymentState.SUCCESS.value,
                "completed_at": {"$gte": start, "$lte": end}
            }},
            {"$group": {"_id": None, "total_revenue": {"$sum": "$amount"}, "total_transactions": {"$sum": 1}}},
        ]
        rows = await self.payments.aggregate(pipeline).to_list(length=None)
        if not rows:
            return {"total_revenue": Decimal("0.00"), "total_transactions": 0}
        return {
            "total_revenue": quantize_amount(to_decimal(rows[0]["total_revenue"])),
            "total_transactions": rows[0]["total_transactions"],
        }

    async def stats_by_status(self, start: datetime, end: datetime) -> List[Dict[str, Any]]:
        pipeline = [
            {"$match": {"created_at": {"$gte": start, "$lte": end}}},
            {"$group": {"_id": "$status", "count": {"$sum": 1}, "total_amount": {"$sum": "$amount"}}},
            {"$sort": {"_id": 1}},
        ]
        rows = await self.payments.aggregate(pipeline).to_list(length=None)
        return [
            {
                "status": row["_id"],
                "count": row["count"],
                "total_amount": quantize_amount(to_decimal(row["total_amount"])),
            }
            for row in rows
        ]

    async def stats_by_method(self, start: datetime, end: datetime) -> List[Dict[str, Any]]:
        pipeline = [
            {"$match": {"created_at": {"$gte": start, "$lte": end}}},
            {"$group": {"_id": "$payment_method", "count": {"$sum": 1}}},
            {"$sort": {"_id": 1}},
        ]
        rows = await self.payments.aggregate(pipeline).to_list(length=None)
        return [{"payment_method": row["_id"], "count": row["count"]} for row in rows]
