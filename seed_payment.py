"""
Payment System Seeder
Seeds the virtual appointment price and sample redeem codes
Run: python seed_payment.py
"""
import asyncio
from datetime import datetime, timedelta
from decimal import Decimal
from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv
import os

from app.database import create_indexes
from app.models.appointment.appointment import VIRTUAL_APPOINTMENT_SERVICE
from app.models.payment.redeem_code import RedeemCodeInDB, DiscountType, ApplicableFor
from app.utils.money import to_decimal128

load_dotenv()

# MongoDB connection
MONGODB_URL = os.getenv("MONGODB_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "clinic")

VIRTUAL_APPOINTMENT_PRICE = Decimal(os.getenv("VIRTUAL_APPOINTMENT_PRICE", "500.00"))

CODE_MONEY_FIELDS = ("discount_value", "max_discount_amount", "min_order_amount")


async def seed_prices(db):
    """Seed the active virtual appointment price"""
    now = datetime.utcnow()
    await db.prices.update_one(
        {"service_name": VIRTUAL_APPOINTMENT_SERVICE},
        {
            "$set": {
                "price": to_decimal128(VIRTUAL_APPOINTMENT_PRICE),
                "currency": "INR",
                "is_active": True,
                "updated_at": now
            },
            "$setOnInsert": {"created_at": now}
        },
        upsert=True
    )
    print(f"[OK] {VIRTUAL_APPOINTMENT_SERVICE} price set to {VIRTUAL_APPOINTMENT_PRICE}")


async def seed_redeem_codes(db):
    """Seed sample redeem codes (existing codes keep their usage counters)"""
    now = datetime.utcnow()
    codes = [
        RedeemCodeInDB(
            code="SAVE10",
            name="10% off",
            description="10% off a virtual appointment, up to 100",
            discount_type=DiscountType.PERCENTAGE,
            discount_value=Decimal("10"),
            max_discount_amount=Decimal("100.00"),
            min_order_amount=Decimal("200.00"),
            valid_from=now,
            valid_until=now + timedelta(days=90),
            applicable_for=ApplicableFor.VIRTUAL_APPOINTMENT,
            usage_limit=1000,
            user_usage_limit=1,
            created_by="seed"
        ),
        RedeemCodeInDB(
            code="BIG50",
            name="Flat 50 off",
            description="Flat 50 off any consultation",
            discount_type=DiscountType.AMOUNT,
            discount_value=Decimal("50.00"),
            valid_from=now,
            applicable_for=ApplicableFor.ALL,
            usage_limit=None,
            user_usage_limit=3,
            created_by="seed"
        ),
    ]

    for code in codes:
        doc = code.model_dump(mode="python")
        doc["discount_type"] = code.discount_type.value
        doc["applicable_for"] = code.applicable_for.value
        for key in CODE_MONEY_FIELDS:
            if doc.get(key) is not None:
                doc[key] = to_decimal128(doc[key])

        on_insert = {
            "usage_count": doc.pop("usage_count"),
            "created_at": doc.pop("created_at")
        }
        await db.redeem_codes.update_one(
            {"code": doc["code"]},
            {"$set": doc, "$setOnInsert": on_insert},
            upsert=True
        )
        print(f"[OK] Redeem code {doc['code']} seeded")


async def main():
    """Main seeder function"""
    print("=" * 50)
    print("Payment System Seeder")
    print("=" * 50)

    # Connect to MongoDB
    client = AsyncIOMotorClient(MONGODB_URL)
    db = client[DATABASE_NAME]

    try:
        # Create indexes
        print("\n[1/3] Creating indexes...")
        await create_indexes(db)

        # Seed prices
        print("\n[2/3] Seeding prices...")
        await seed_prices(db)

        # Seed redeem codes
        print("\n[3/3] Seeding redeem codes...")
        await seed_redeem_codes(db)

        print("\n" + "=" * 50)
        print("[SUCCESS] Payment system seeded successfully!")
        print("=" * 50)

    except Exception as e:
        print(f"\n[ERROR] Seeding failed: {str(e)}")
        raise
    finally:
        client.close()


if __name__ == "__main__":
    asyncio.run(main())
