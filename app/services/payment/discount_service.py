"""
Discount Service
Validates redeem codes and records their application to an appointment
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any
from motor.motor_asyncio import AsyncIOMotorDatabase
from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from app.models.payment.redeem_code import (
    DiscountType, ApplicableFor, RedeemCodeUsageStatus, RedeemCodeUsageInDB
)
from app.services.payment.errors import (
    BadRequest, NotFound, InvalidCode, CodeNotValid, UserLimitExceeded, BelowMinimum
)
from app.utils.money import to_decimal, to_decimal128, quantize_amount, to_float


class DiscountService:
    """
    Discount engine.
    Codes are looked up case-insensitively (stored uppercase) and only
    when applicable to virtual appointments.
    """

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.codes = db.redeem_codes
        self.usages = db.redeem_code_usage

    @staticmethod
    def normalize_code(code: Optional[str]) -> str:
        return (code or "").strip().upper()

    async def find_code(self, code: str, session=None) -> Optional[Dict[str, Any]]:
        """Find an applicable code by its normalized string"""
        return await self.codes.find_one(
            {
                "code": self.normalize_code(code),
                "applicable_for": {"$in": [ApplicableFor.ALL.value, ApplicableFor.VIRTUAL_APPOINTMENT.value]}
            },
            session=session
        )

    @staticmethod
    def check_validity(code_doc: Dict[str, Any], now: datetime) -> Optional[str]:
        """Return the reason a code cannot be used right now, or None"""
        if not code_doc.get("is_active", False):
            return "Redeem code is inactive"

        valid_from = code_doc.get("valid_from")
        if valid_from and now < valid_from:
            return "Redeem code is not yet active"

        valid_until = code_doc.get("valid_until")
        if valid_until and now >= valid_until:
            return "Redeem code has expired"

        usage_limit = code_doc.get("usage_limit")
        if usage_limit is not None and code_doc.get("usage_count", 0) >= usage_limit:
            return "Redeem code usage limit exceeded"

        return None

    @staticmethod
    def calculate_discount(code_doc: Dict[str, Any], order_amount: Decimal) -> Decimal:
        """Deterministic discount, rounded half-up to paise and never above the order amount"""
        value = to_decimal(code_doc.get("discount_value")) or Decimal("0")

        if code_doc.get("discount_type") == DiscountType.PERCENTAGE.value:
            raw = order_amount * value / Decimal("100")
            cap = to_decimal(code_doc.get("max_discount_amount"))
            if cap is not None:
                raw = min(raw, cap)
        else:
            raw = min(value, order_amount)

        discount = quantize_amount(raw)
        return min(max(discount, Decimal("0.00")), quantize_amount(order_amount))

    @staticmethod
    def minimum_order_message(min_order: Decimal) -> str:
        return f"Minimum order amount is ₹{quantize_amount(min_order)} to use this redeem code"

    async def count_user_usage(self, user_id: str, code_id: str, session=None) -> int:
        return await self.usages.count_documents(
            {"user_id": user_id, "redeem_code_id": code_id},
            session=session
        )

    async def _load_usable_code(self, code: str, user_id: str, now: datetime, session=None) -> Dict[str, Any]:
        """Steps shared by apply and validate: lookup, validity, per-user limit"""
        code_doc = await self.find_code(code, session=session)
        if not code_doc:
            raise InvalidCode()

        reason = self.check_validity(code_doc, now)
        if reason:
            raise CodeNotValid(reason)

        user_limit = code_doc.get("user_usage_limit")
        if user_limit is not None:
            used = await self.count_user_usage(user_id, str(code_doc["_id"]), session=session)
            if used >= user_limit:
                raise UserLimitExceeded()

        return code_doc

    async def apply(
        self,
        code: str,
        order_amount: Any,
        user_id: str,
        appointment_id: str,
        session=None,
        now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Apply a code to an order and record the usage.

        Creates a RedeemCodeUsage row (status=applied, payment_id=None) and
        increments usage_count atomically. Run it inside the caller's
        transaction so a later failure rolls both back.

        Returns:
            Dict with usage_id, code summary, original/discount/final amounts
        """
        order_amount = to_decimal(order_amount)
        if order_amount is None or order_amount <= 0:
            raise BadRequest("Order amount must be greater than zero")
        if not self.normalize_code(code):
            raise BadRequest("Redeem code is required")

        now = now or datetime.utcnow()
        code_doc = await self._load_usable_code(code, user_id, now, session=session)
        code_id = str(code_doc["_id"])

        min_order = to_decimal(code_doc.get("min_order_amount"))
        if min_order is not None and order_amount < min_order:
            raise BelowMinimum(self.minimum_order_message(min_order))

        original = quantize_amount(order_amount)
        discount = self.calculate_discount(code_doc, original)
        final = original - discount

        usage = RedeemCodeUsageInDB(
            user_id=user_id,
            redeem_code_id=code_id,
            appointment_id=appointment_id,
            code=code_doc["code"],
            original_amount=original,
            discount_amount=discount,
            final_amount=final,
            used_at=now,
            updated_at=now
        ).model_dump()
        for key in ("original_amount", "discount_amount", "final_amount"):
            usage[key] = to_decimal128(usage[key])

        try:
            result = await self.usages.insert_one(usage, session=session)
        except DuplicateKeyError:
            raise UserLimitExceeded()

        # usage_count < usage_limit, checked in the same update
        guard = {"_id": code_doc["_id"]}
        usage_limit = code_doc.get("usage_limit")
        if usage_limit is not None:
            guard["usage_count"] = {"$lt": usage_limit}

        updated = await self.codes.find_one_and_update(
            guard,
            {"$inc": {"usage_count": 1}, "$set": {"updated_at": now}},
            session=session,
            return_document=ReturnDocument.AFTER
        )
        if updated is None:
            await self.usages.delete_one({"_id": result.inserted_id}, session=session)
            raise CodeNotValid("Redeem code usage limit exceeded")

        print(f"[PAYMENT] Redeem code {code_doc['code']} applied for appointment {appointment_id}: "
              f"{original} - {discount} = {final}")

        return {
            "usage_id": str(result.inserted_id),
            "redeem_code_id": code_id,
            "code": code_doc["code"],
            "name": code_doc.get("name"),
            "discount_type": code_doc.get("discount_type"),
            "discount_value": to_decimal(code_doc.get("discount_value")),
            "original_amount": original,
            "discount_amount": discount,
            "final_amount": final,
        }

    async def validate(self, code: str, user_id: str, order_amount: Any = None) -> Dict[str, Any]:
        """
        Read-only check for the redeem-code preview endpoint.
        Nothing is persisted; a below-minimum amount is reported, not raised.
        """
        if not self.normalize_code(code):
            raise BadRequest("Redeem code is required")

        code_doc = await self._load_usable_code(code, user_id, datetime.utcnow())

        discount = Decimal("0.00")
        final = Decimal("0.00")
        is_applicable = True
        message = ""

        amount = to_decimal(order_amount) if order_amount is not None else None
        if amount is not None:
            if amount <= 0:
                raise BadRequest("Order amount must be greater than zero")
            min_order = to_decimal(code_doc.get("min_order_amount"))
            if min_order is not None and amount < min_order:
                is_applicable = False
                message = self.minimum_order_message(min_order)
            else:
                original = quantize_amount(amount)
                discount = self.calculate_discount(code_doc, original)
                final = original - discount

        return {
            "code": code_doc["code"],
            "name": code_doc.get("name"),
            "description": code_doc.get("description"),
            "discount_type": code_doc.get("discount_type"),
            "discount_value": to_float(code_doc.get("discount_value")),
            "max_discount_amount": to_float(code_doc.get("max_discount_amount")),
            "min_order_amount": to_float(code_doc.get("min_order_amount")),
            "is_applicable": is_applicable,
            "applicability_message": message,
            "discount_amount": to_float(discount),
            "final_amount": to_float(final),
            "valid_until": code_doc.get("valid_until"),
        }

    async def link_payment(self, usage_id: str, payment_id: str, session=None):
        """Back-link the usage row once the PSP order exists"""
        await self.usages.update_one(
            {"_id": ObjectId(usage_id)},
            {"$set": {"payment_id": payment_id, "updated_at": datetime.utcnow()}},
            session=session
        )

    async def mark_usage(self, usage_id: Optional[str], status: RedeemCodeUsageStatus, session=None):
        """
        Move a usage row out of 'applied'. usage_count is never decremented,
        so the counter keeps matching the number of usage rows.
        """
        if not usage_id:
            return
        await self.usages.update_one(
            {"_id": ObjectId(usage_id), "status": {"$ne": status.value}},
            {"$set": {"status": status.value, "updated_at": datetime.utcnow()}},
            session=session
        )

    async def get_code_stats(self, code_id: str) -> Dict[str, Any]:
        """Usage statistics for one code (admin)"""
        try:
            oid = ObjectId(code_id)
        except (InvalidId, TypeError):
            raise NotFound("Redeem code not found")

        code_doc = await self.codes.find_one({"_id": oid})
        if not code_doc:
            raise NotFound("Redeem code not found")

        pipeline = [
            {"$match": {"redeem_code_id": code_id}},
            {"$group": {
                "_id": "$status",
                "count": {"$sum": 1},
                "discount": {"$sum": "$discount_amount"},
                "original": {"$sum": "$original_amount"},
            }},
        ]
        rows = await self.usages.aggregate(pipeline).to_list(length=None)

        total_usage = sum(row["count"] for row in rows)
        total_discount = sum((to_decimal(row["discount"]) for row in rows), Decimal("0"))
        total_original = sum((to_decimal(row["original"]) for row in rows), Decimal("0"))
        usage_limit = code_doc.get("usage_limit")

        return {
            "redeem_code": {
                "id": code_id,
                "code": code_doc["code"],
                "name": code_doc.get("name"),
                "usage_limit": usage_limit,
                "usage_count": code_doc.get("usage_count", 0),
                "is_valid_now": self.check_validity(code_doc, datetime.utcnow()) is None,
            },
            "statistics": {
                "total_usage": total_usage,
                "usage_by_status": {row["_id"]: row["count"] for row in rows},
                "remaining_usage": usage_limit - total_usage if usage_limit is not None else None,
                "total_discount_given": to_float(total_discount),
                "total_revenue_impact": to_float(total_original),
                "average_discount": to_float(total_discount / total_usage) if total_usage else 0.0,
            },
        }
