"""
Shared fixtures: an in-memory Mongo (mongomock behind a motor-like async
facade) and a fake PhonePe served through httpx.MockTransport.
"""
import base64
import hashlib
import json
import time
from datetime import datetime, timedelta
from decimal import Decimal

import httpx
import mongomock
import pytest

from app.database import Database, create_indexes
from app.models.appointment.appointment import VIRTUAL_APPOINTMENT_SERVICE
from app.services.payment.gateways.phonepe import PhonePeGateway
from app.services.payment.gateways.factory import PaymentGatewayFactory
from app.services.payment.payment_service import PaymentService
from app.utils.money import to_decimal128


# ----------------------------------------------------------------------
# Async facade over mongomock
# ----------------------------------------------------------------------

class AsyncCursor:
    def __init__(self, cursor):
        self._cursor = cursor

    def sort(self, *args, **kwargs):
        self._cursor = self._cursor.sort(*args, **kwargs)
        return self

    def skip(self, count):
        self._cursor = self._cursor.skip(count)
        return self

    def limit(self, count):
        self._cursor = self._cursor.limit(count)
        return self

    async def to_list(self, length=None):
        docs = list(self._cursor)
        return docs if length is None else docs[:length]


class AsyncCollection:
    """mongomock has no session support; sessions are dropped"""

    def __init__(self, collection):
        self._collection = collection

    def find(self, *args, **kwargs):
        kwargs.pop("session", None)
        return AsyncCursor(self._collection.find(*args, **kwargs))

    def aggregate(self, pipeline, **kwargs):
        kwargs.pop("session", None)
        return AsyncCursor(self._collection.aggregate(pipeline))

    def __getattr__(self, name):
        attr = getattr(self._collection, name)
        if not callable(attr):
            return attr

        async def call(*args, **kwargs):
            kwargs.pop("session", None)
            return attr(*args, **kwargs)

        return call


class AsyncDatabase:
    def __init__(self, client, database):
        self.client = client
        self._database = database

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        return AsyncCollection(self._database[name])

    def __getitem__(self, name):
        return AsyncCollection(self._database[name])


class FakeSession:
    """Runs the transaction callback once; restores every collection if it raises"""

    def __init__(self, client):
        self.client = client

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def with_transaction(self, callback):
        self.client.transactions += 1
        snapshot = self.client.snapshot()
        try:
            return await callback(self)
        except Exception:
            self.client.restore(snapshot)
            raise


class FakeMongoClient:
    def __init__(self):
        self._client = mongomock.MongoClient()
        self.transactions = 0

    async def start_session(self):
        return FakeSession(self)

    def _collections(self):
        for db_name in self._client.list_database_names():
            database = self._client[db_name]
            for name in database.list_collection_names():
                yield (db_name, name), database[name]

    def snapshot(self):
        return {key: list(collection.find()) for key, collection in self._collections()}

    def restore(self, snapshot):
        for key, collection in self._collections():
            collection.delete_many({})
            if snapshot.get(key):
                collection.insert_many(snapshot[key])

    def __getitem__(self, name):
        return AsyncDatabase(self, self._client[name])

    def close(self):
        pass


# ----------------------------------------------------------------------
# Fake PhonePe
# ----------------------------------------------------------------------

GATEWAY_CONFIG = {
    "environment": "SANDBOX",
    "client_id": "TESTCLIENT",
    "client_secret": "test-client-secret",
    "client_version": "1",
    "merchant_id": "MERCHANTUAT",
    "salt_key": "099eb0cd-02cf-4e2a-8aca-3e6c6aff0399",
    "salt_index": "1",
    "redirect_url": "https://clinic.example/payment/status",
    "webhook_username": "hookuser",
    "webhook_password": "hookpass",
}


class FakePhonePe:
    """
    Answers token, order and status requests.
    Status answers default to 404 (order not seen yet).
    """

    def __init__(self):
        self.token_calls = 0
        self.token_response = None
        self.orders = []
        self.order_response = None
        self.status_calls = []
        self.statuses = {}
        self.legacy_statuses = {}
        self.requests = []

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def set_status(self, merchant_order_id, state, amount=None, status_code=200, **extra):
        body = {
            "orderId": f"OMO-{merchant_order_id}",
            "state": state,
            "amount": amount,
            "paymentDetails": [
                {"transactionId": f"T-{merchant_order_id}", "paymentMode": "UPI_INTENT", "state": state}
            ],
        }
        body.update(extra)
        self.statuses[merchant_order_id] = (status_code, body)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path.endswith("/oauth/token"):
            self.token_calls += 1
            if self.token_response:
                return httpx.Response(self.token_response[0], json=self.token_response[1])
            return httpx.Response(200, json={
                "access_token": f"token-{self.token_calls}",
                "expires_at": int(time.time()) + 3600,
                "token_type": "O-Bearer",
            })

        if path.endswith("/checkout/v2/pay"):
            payload = json.loads(request.content)
            self.orders.append({"payload": payload, "headers": dict(request.headers)})
            if self.order_response:
                return httpx.Response(self.order_response[0], json=self.order_response[1])
            return httpx.Response(200, json={
                "orderId": f"OMO-{payload['merchantOrderId']}",
                "state": "PENDING",
                "expireAt": int(time.time() * 1000) + 1200000,
                "redirectUrl": f"https://mercury-t2.phonepe.com/transact/{payload['merchantOrderId']}",
            })

        if "/pg/v1/status/" in path:
            merchant_order_id = path.rsplit("/", 1)[-1]
            self.status_calls.append(merchant_order_id)
            if merchant_order_id in self.legacy_statuses:
                status_code, body = self.legacy_statuses[merchant_order_id]
                return httpx.Response(status_code, json=body)
            return httpx.Response(404, json={"success": False, "code": "PAYMENT_NOT_FOUND"})

        if path.endswith("/status"):
            merchant_order_id = path.split("/")[-2]
            self.status_calls.append(merchant_order_id)
            if merchant_order_id in self.statuses:
                status_code, body = self.statuses[merchant_order_id]
                return httpx.Response(status_code, json=body)
            return httpx.Response(404, json={"code": "ORDER_NOT_FOUND", "message": "Order not found"})

        return httpx.Response(404, json={"message": "unknown endpoint"})


def legacy_callback_body(merchant_transaction_id, state="COMPLETED", amount=50000):
    """base64 'response' field of a legacy PhonePe callback"""
    decoded = {
        "success": state == "COMPLETED",
        "code": "PAYMENT_SUCCESS" if state == "COMPLETED" else "PAYMENT_ERROR",
        "message": "Your payment is successful." if state == "COMPLETED" else "Payment failed",
        "data": {
            "merchantId": GATEWAY_CONFIG["merchant_id"],
            "merchantTransactionId": merchant_transaction_id,
            "transactionId": "T2301011234",
            "amount": amount,
            "state": state,
            "responseCode": "SUCCESS" if state == "COMPLETED" else "PAYMENT_DECLINED",
            "paymentInstrument": {"type": "UPI"},
        },
    }
    return base64.b64encode(json.dumps(decoded).encode("utf-8")).decode("ascii")


def legacy_checksum(response, salt_key=GATEWAY_CONFIG["salt_key"], index="1"):
    return hashlib.sha256((response + salt_key).encode("utf-8")).hexdigest() + "###" + index


def legacy_callback(merchant_transaction_id, state="COMPLETED", amount=50000):
    response = legacy_callback_body(merchant_transaction_id, state, amount)
    return {"response": response, "checksum": legacy_checksum(response)}


def webhook_authorization(username="hookuser", password="hookpass"):
    return hashlib.sha256(f"{username}:{password}".encode("utf-8")).hexdigest()


class ScheduleRecorder:
    def __init__(self):
        self.calls = []

    def __call__(self, payment_id, delay_seconds):
        self.calls.append((payment_id, delay_seconds))


# ----------------------------------------------------------------------
# Fixtures
# ----------------------------------------------------------------------

@pytest.fixture
def mongo_client():
    client = FakeMongoClient()
    Database.client = client
    yield client
    Database.client = None


@pytest.fixture
async def db(mongo_client):
    database = Database.get_db()
    await create_indexes(database)
    return database


@pytest.fixture
def fake_psp():
    return FakePhonePe()


@pytest.fixture
def gateway(fake_psp):
    gw = PhonePeGateway(dict(GATEWAY_CONFIG), transport=fake_psp.transport)
    PaymentGatewayFactory.set_gateway("phonepe", gw)
    yield gw
    PaymentGatewayFactory.clear_cache()


@pytest.fixture
def scheduled():
    return ScheduleRecorder()


@pytest.fixture
def payment_service(db, gateway, scheduled):
    return PaymentService(db, gateway=gateway, schedule_auto_check=scheduled)


# ----------------------------------------------------------------------
# Seed helpers
# ----------------------------------------------------------------------

async def seed_price(db, price="500.00", is_active=True):
    await db.prices.insert_one({
        "service_name": VIRTUAL_APPOINTMENT_SERVICE,
        "price": to_decimal128(Decimal(price)),
        "currency": "INR",
        "is_active": is_active,
    })


async def seed_appointment(db, appointment_id="123", user_id="7", type="virtual", status="pending"):
    doc = {
        "appointment_id": appointment_id,
        "user_id": user_id,
        "type": type,
        "status": status,
        "payment_status": "pending",
        "appointment_date_time": datetime.utcnow() + timedelta(days=2),
        "created_at": datetime.utcnow(),
    }
    await db.appointments.insert_one(doc)
    return doc


async def seed_code(db, code="SAVE10", **overrides):
    now = datetime.utcnow()
    doc = {
        "code": code,
        "name": code,
        "discount_type": "percentage",
        "discount_value": Decimal("10"),
        "max_discount_amount": Decimal("80"),
        "min_order_amount": Decimal("100"),
        "valid_from": now - timedelta(days=1),
        "valid_until": now + timedelta(days=30),
        "is_active": True,
        "applicable_for": "virtual_appointment",
        "usage_limit": None,
        "usage_count": 0,
        "user_usage_limit": 1,
        "created_at": now,
        "updated_at": now,
    }
    doc.update(overrides)
    for key in ("discount_value", "max_discount_amount", "min_order_amount"):
        if doc.get(key) is not None:
            doc[key] = to_decimal128(doc[key])
    result = await db.redeem_codes.insert_one(doc)
    doc["_id"] = result.inserted_id
    return doc
