from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from app.models.payment.payment import PaymentInDB, PaymentState
from app.services.payment.errors import PaymentConflict, NotFound, BadRequest, InvalidTransition
from app.services.payment.payment_store import PaymentStore
from app.utils.money import to_decimal


@pytest.fixture
def store(db):
    return PaymentStore(db)


def new_payment(appointment_id="123", user_id="7", amount="500.00", **overrides):
    now = datetime.utcnow()
    data = dict(
        payment_id=PaymentStore.generate_payment_id(),
        merchant_transaction_id=f"TXN_{user_id}_{appointment_id}_{now.timestamp()}_{PaymentStore.generate_payment_id()}",
        user_id=user_id,
        appointment_id=appointment_id,
        amount=Decimal(amount),
        original_amount=Decimal(amount),
        status=PaymentState.INITIATED,
        initiated_at=now,
    )
    data.update(overrides)
    return PaymentInDB(**data)


def check_invariants(payment):
    if payment["status"] == "success":
        assert payment["completed_at"] is not None
        assert payment["failed_at"] is None
    if payment["status"] in ("failed", "cancelled", "expired"):
        assert payment["failed_at"] is not None
        assert payment["failure_reason"]


class TestCreate:

    async def test_payment_id_format(self):
        payment_id = PaymentStore.generate_payment_id()
        assert payment_id.startswith("PAY_")
        assert len(payment_id) == 16

    async def test_money_is_stored_as_decimal128(self, db, store):
        payment = await store.create(new_payment(amount="450.00"))

        stored = await db.payments.find_one({"payment_id": payment["payment_id"]})
        assert to_decimal(stored["amount"]) == Decimal("450.00")
        assert stored["status"] == "initiated"
        assert stored["holds_slot"] is True

    async def test_second_active_payment_for_appointment_conflicts(self, store):
        await store.create(new_payment())

        with pytest.raises(PaymentConflict):
            await store.create(new_payment())

    async def test_new_attempt_allowed_after_terminal_failure(self, db, store):
        first = await store.create(new_payment())
        await store.transition(first["payment_id"], PaymentState.FAILED)

        second = await store.create(new_payment())

        active = await store.find_active_for_appointment("123")
        assert active["payment_id"] == second["payment_id"]
        assert await db.payments.count_documents({"appointment_id": "123"}) == 2

    async def test_success_keeps_the_slot(self, store):
        first = await store.create(new_payment())
        await store.transition(first["payment_id"], PaymentState.SUCCESS)

        with pytest.raises(PaymentConflict):
            await store.create(new_payment())


class TestTransition:

    async def test_success_sets_completed_at(self, store):
        payment = await store.create(new_payment())

        after, changed = await store.transition(payment["payment_id"], PaymentState.SUCCESS,
                                                {"gateway_transaction_id": "T1"})

        assert changed is True
        assert after["status"] == "success"
        assert after["gateway_transaction_id"] == "T1"
        check_invariants(await store.find_by_id(payment["payment_id"]))

    @pytest.mark.parametrize("state, reason", [
        (PaymentState.FAILED, "Payment failed"),
        (PaymentState.CANCELLED, "Payment cancelled"),
        (PaymentState.EXPIRED, "Payment expired"),
    ])
    async def test_terminal_failure_sets_failed_at_and_reason(self, store, state, reason):
        payment = await store.create(new_payment())

        after, changed = await store.transition(payment["payment_id"], state)

        stored = await store.find_by_id(payment["payment_id"])
        assert changed is True
        assert stored["failure_reason"] == reason
        assert stored["holds_slot"] is False
        check_invariants(stored)

    async def test_upstream_reason_is_kept(self, store):
        payment = await store.create(new_payment())

        await store.transition(payment["payment_id"], PaymentState.FAILED,
                               {"failure_reason": "PAYMENT_DECLINED", "failure_code": "ZM"})

        stored = await store.find_by_id(payment["payment_id"])
        assert stored["failure_reason"] == "PAYMENT_DECLINED"
        assert stored["failure_code"] == "ZM"

    async def test_terminal_states_are_absorbing(self, store):
        payment = await store.create(new_payment())
        _, first = await store.transition(payment["payment_id"], PaymentState.SUCCESS)
        stored = await store.find_by_id(payment["payment_id"])

        after, second = await store.transition(payment["payment_id"], PaymentState.FAILED)

        assert first is True
        assert second is False
        assert after["status"] == "success"
        assert after["completed_at"] == stored["completed_at"]

    async def test_processing_to_processing_is_not_a_change(self, store):
        payment = await store.create(new_payment())
        _, first = await store.transition(payment["payment_id"], PaymentState.PROCESSING)
        _, second = await store.transition(payment["payment_id"], PaymentState.PROCESSING)

        assert first is True
        assert second is False

    async def test_processing_can_still_succeed(self, store):
        payment = await store.create(new_payment())
        await store.transition(payment["payment_id"], PaymentState.PROCESSING)

        after, changed = await store.transition(payment["payment_id"], PaymentState.SUCCESS)

        assert changed is True
        assert after["status"] == "success"

    async def test_unknown_payment(self, store):
        with pytest.raises(NotFound):
            await store.transition("PAY_MISSING", PaymentState.SUCCESS)

    async def test_cannot_move_back_to_initiated(self, store):
        payment = await store.create(new_payment())
        with pytest.raises(InvalidTransition):
            await store.transition(payment["payment_id"], PaymentState.INITIATED)


class TestRefund:

    async def test_full_refund_by_default(self, store):
        payment = await store.create(new_payment(amount="450.00"))
        await store.transition(payment["payment_id"], PaymentState.SUCCESS)

        after, changed = await store.refund(payment["payment_id"], None, "Doctor unavailable")

        assert changed is True
        assert after["status"] == "refunded"
        assert to_decimal(after["refund_amount"]) == Decimal("450.00")
        assert after["refunded_at"] is not None

    async def test_partial_refund(self, store):
        payment = await store.create(new_payment(amount="450.00"))
        await store.transition(payment["payment_id"], PaymentState.SUCCESS)

        after, _ = await store.refund(payment["payment_id"], Decimal("100"), "Partial")

        assert to_decimal(after["refund_amount"]) == Decimal("100.00")

    async def test_refund_above_paid_amount(self, store):
        payment = await store.create(new_payment(amount="450.00"))
        await store.transition(payment["payment_id"], PaymentState.SUCCESS)

        with pytest.raises(BadRequest):
            await store.refund(payment["payment_id"], Decimal("450.01"), "Too much")

    async def test_only_successful_payments_can_be_refunded(self, store):
        payment = await store.create(new_payment())

        with pytest.raises(BadRequest):
            await store.refund(payment["payment_id"], None, "Not paid")


class TestQueries:

    async def test_stale_open_payments(self, db, store):
        old = await store.create(new_payment(appointment_id="A1"))
        await db.payments.update_one({"payment_id": old["payment_id"]},
                                     {"$set": {"created_at": datetime.utcnow() - timedelta(minutes=10)}})
        await store.create(new_payment(appointment_id="A2"))
        done = await store.create(new_payment(appointment_id="A3"))
        await db.payments.update_one({"payment_id": done["payment_id"]},
                                     {"$set": {"created_at": datetime.utcnow() - timedelta(minutes=10)}})
        await store.transition(done["payment_id"], PaymentState.SUCCESS)

        stale = await store.find_stale_open(datetime.utcnow() - timedelta(minutes=2))

        assert [p["payment_id"] for p in stale] == [old["payment_id"]]

    async def test_list_by_user_paginates_newest_first(self, db, store):
        ids = []
        for i in range(3):
            payment = await store.create(new_payment(appointment_id=f"A{i}"))
            await db.payments.update_one({"payment_id": payment["payment_id"]},
                                         {"$set": {"created_at": datetime(2026, 1, 1 + i)}})
            ids.append(payment["payment_id"])
        await store.create(new_payment(appointment_id="OTHER", user_id="8"))

        payments, pagination = await store.list_by_user("7", page=1, limit=2)

        assert [p["payment_id"] for p in payments] == [ids[2], ids[1]]
        assert pagination == {"total": 3, "page": 1, "limit": 2, "total_pages": 2}
