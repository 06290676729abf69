import os
from motor.motor_asyncio import AsyncIOMotorClient
from typing import Optional, Callable, Awaitable, Any
from dotenv import load_dotenv
from pymongo import ASCENDING, DESCENDING

# Load environment variables
load_dotenv()


def transactions_enabled() -> bool:
    """Multi-document transactions need a replica set; allow turning them off for a standalone mongod"""
    return os.getenv("MONGODB_TRANSACTIONS", "true").lower() == "true"


class Database:
    client: Optional[AsyncIOMotorClient] = None

    @classmethod
    async def connect_db(cls):
        """Connect to MongoDB"""
        mongodb_url = os.getenv("MONGODB_URL", "mongodb://localhost:27017")
        cls.client = AsyncIOMotorClient(
            mongodb_url,
            minPoolSize=int(os.getenv("MONGODB_MIN_POOL_SIZE", "2")),
            maxPoolSize=int(os.getenv("MONGODB_MAX_POOL_SIZE", "10")),
            waitQueueTimeoutMS=int(os.getenv("MONGODB_WAIT_QUEUE_TIMEOUT_MS", "30000")),
            maxIdleTimeMS=int(os.getenv("MONGODB_MAX_IDLE_TIME_MS", "10000")),
            tls=os.getenv("MONGODB_TLS", "false").lower() == "true",
        )
        print("[OK] Connected to MongoDB")

        # Create indexes
        await cls.create_indexes()

    @classmethod
    async def create_indexes(cls):
        """Create database indexes"""
        await create_indexes(cls.get_db())

    @classmethod
    async def close_db(cls):
        """Close MongoDB connection"""
        if cls.client:
            cls.client.close()
            print("[OK] Disconnected from MongoDB")

    @classmethod
    def get_db(cls):
        """Get database instance"""
        if cls.client is None:
            return None
        database_name = os.getenv("DATABASE_NAME", "clinic")
        return cls.client[database_name]


async def create_indexes(db):
    """Indexes for the payment collections (safe to run repeatedly)"""
    # Payments
    try:
        await db.payments.create_index([("payment_id", ASCENDING)], unique=True)
        await db.payments.create_index([("merchant_transaction_id", ASCENDING)], unique=True)
        await db.payments.create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
        await db.payments.create_index([("appointment_id", ASCENDING)])
        await db.payments.create_index([("status", ASCENDING), ("created_at", ASCENDING)])
        await db.payments.create_index([("created_at", DESCENDING)])
        # At most one pending/initiated/processing/success payment per appointment
        await db.payments.create_index(
            [("appointment_id", ASCENDING)],
            unique=True,
            name="appointment_active_payment",
            partialFilterExpression={"holds_slot": True}
        )
        print("[OK] Created indexes on payments")
    except Exception as e:
        print(f"[WARN] Indexes on payments may already exist: {e}")

    # Redeem codes
    try:
        await db.redeem_codes.create_index([("code", ASCENDING)], unique=True)
        await db.redeem_code_usage.create_index(
            [("user_id", ASCENDING), ("redeem_code_id", ASCENDING), ("appointment_id", ASCENDING)],
            unique=True
        )
        await db.redeem_code_usage.create_index([("payment_id", ASCENDING)], sparse=True)
        print("[OK] Created indexes on redeem_codes / redeem_code_usage")
    except Exception as e:
        print(f"[WARN] Indexes on redeem codes may already exist: {e}")

    # Appointments and prices (owned elsewhere, queried here)
    try:
        await db.appointments.create_index([("appointment_id", ASCENDING)], unique=True)
        await db.appointments.create_index([("user_id", ASCENDING), ("status", ASCENDING)])
        await db.prices.create_index([("service_name", ASCENDING), ("is_active", ASCENDING)])
        print("[OK] Created indexes on appointments / prices")
    except Exception as e:
        print(f"[WARN] Indexes on appointments / prices may already exist: {e}")


async def run_in_transaction(db, callback: Callable[[Any], Awaitable[Any]]) -> Any:
    """
    Run callback(session) inside a MongoDB transaction.

    The driver retries the whole callback on TransientTransactionError and
    retries the commit on UnknownTransactionCommitResult, so callbacks must
    re-read any state they depend on. With transactions disabled the
    callback gets session=None.
    """
    if not transactions_enabled():
        return await callback(None)

    async with await db.client.start_session() as session:
        return await session.with_transaction(callback)


async def get_database():
    """Dependency to get database"""
    return Database.get_db()
