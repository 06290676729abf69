"""
Payment Service
Orchestrates virtual-appointment payments: initiation, retries, PSP callbacks,
scheduled auto-checks, manual syncs and refund bookkeeping.

Three independent sources can report a PSP verdict for the same payment
(callback, scheduled auto-check, manual sync). All of them go through
_apply_psp_state(), which performs a guarded transition and the matching
appointment / redeem-code updates in one transaction. Whichever commits
first wins; the others match nothing and become no-ops.
"""
import os
from datetime import datetime
from typing import Optional, Dict, Any, Tuple, Callable, List
from urllib.parse import urlencode
from motor.motor_asyncio import AsyncIOMotorDatabase

from app.database import run_in_transaction
from app.models.appointment.appointment import (
    AppointmentType, AppointmentStatus, AppointmentPaymentStatus, VIRTUAL_APPOINTMENT_SERVICE
)
from app.models.payment.payment import (
    PaymentInDB, PaymentState, PaymentMethod, DeviceInfo,
    OPEN_STATES, TERMINAL_FAILURE_STATES, CURRENCY
)
from app.models.payment.redeem_code import RedeemCodeUsageStatus
from app.services.payment.discount_service import DiscountService
from app.services.payment.payment_store import PaymentStore
from app.services.payment.gateways.base import (
    BasePaymentGateway, OrderRequest, OrderStatusResult, PspError,
    PspAuthError, PspOrderError, InvalidSignature, InvalidCallback
)
from app.services.payment.gateways.factory import PaymentGatewayFactory
from app.services.payment.errors import (
    BadRequest, Forbidden, NotFound, AlreadyPaid, PaymentConflict,
    Misconfigured, PaymentInitiationFailed, UpstreamUnavailable
)
from app.utils.money import to_decimal, to_decimal128, to_minor_units, to_float


# Upper-cased PSP state -> (payment state, appointment payment status)
PSP_STATE_MAPPING = {
    "COMPLETED": (PaymentState.SUCCESS, AppointmentPaymentStatus.SUCCESS),
    "SUCCESS": (PaymentState.SUCCESS, AppointmentPaymentStatus.SUCCESS),
    "FAILED": (PaymentState.FAILED, AppointmentPaymentStatus.FAILED),
    "FAILURE": (PaymentState.FAILED, AppointmentPaymentStatus.FAILED),
    "CANCELLED": (PaymentState.CANCELLED, AppointmentPaymentStatus.FAILED),
    "CANCELED": (PaymentState.CANCELLED, AppointmentPaymentStatus.FAILED),
    "EXPIRED": (PaymentState.EXPIRED, AppointmentPaymentStatus.FAILED),
    "PENDING": (PaymentState.PROCESSING, AppointmentPaymentStatus.INITIATED),
    "PROCESSING": (PaymentState.PROCESSING, AppointmentPaymentStatus.INITIATED),
}


def map_psp_state(psp_state: Optional[str]) -> Tuple[PaymentState, AppointmentPaymentStatus]:
    """Case-insensitive mapping; anything unknown counts as a failure"""
    return PSP_STATE_MAPPING.get(
        (psp_state or "").strip().upper(),
        (PaymentState.FAILED, AppointmentPaymentStatus.FAILED)
    )


def _default_scheduler(payment_id: str, delay_seconds: int):
    from app.core.scheduler import schedule_payment_auto_check
    schedule_payment_auto_check(payment_id, delay_seconds)


class PaymentService:
    """
    Service for virtual-appointment payments.
    """

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        gateway: Optional[BasePaymentGateway] = None,
        schedule_auto_check: Optional[Callable[[str, int], None]] = None
    ):
        self.db = db
        self.appointments = db.appointments
        self.prices = db.prices
        self.store = PaymentStore(db)
        self.discounts = DiscountService(db)
        self.gateway = gateway or PaymentGatewayFactory.get_gateway()
        self.schedule_auto_check = schedule_auto_check or _default_scheduler
        self.reconcile_delay_seconds = int(os.getenv("PAYMENT_RECONCILE_DELAY_SECONDS", "120"))
        self.order_expire_seconds = int(os.getenv("PHONEPE_ORDER_EXPIRE_SECONDS", "1200"))

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def get_virtual_appointment_price(self):
        price = await self.prices.find_one({"service_name": VIRTUAL_APPOINTMENT_SERVICE, "is_active": True})
        amount = to_decimal(price.get("price")) if price else None
        if amount is None or amount <= 0:
            raise Misconfigured("Virtual appointment pricing is not configured")
        return amount

    async def get_appointment(self, appointment_id: str, session=None) -> Optional[Dict[str, Any]]:
        return await self.appointments.find_one({"appointment_id": appointment_id}, session=session)

    def get_payment_methods(self) -> List[Dict[str, str]]:
        return self.gateway.get_payment_methods()

    # ------------------------------------------------------------------
    # Initiation
    # ------------------------------------------------------------------

    async def initiate(
        self,
        user_id: str,
        appointment_id: str,
        payment_method: str = PaymentMethod.PHONEPE.value,
        redeem_code: Optional[str] = None,
        client_info: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Start payment for a pending virtual appointment.

        An existing open attempt is returned unchanged (same payment URL),
        so repeated calls are safe.
        """
        appointment = await self.get_appointment(appointment_id)
        if not appointment:
            raise NotFound("Appointment not found")
        if appointment.get("user_id") != user_id:
            raise Forbidden("You are not authorized to pay for this appointment")

        return await self._start_payment(user_id, appointment, payment_method, redeem_code, client_info)

    async def complete(
        self,
        user_id: str,
        appointment_id: str,
        payment_method: str = PaymentMethod.PHONEPE.value,
        redeem_code: Optional[str] = None,
        client_info: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Retry entry point for a pending appointment whose earlier attempt
        failed, was cancelled or expired. Creates a new attempt.
        """
        appointment = await self.appointments.find_one({
            "appointment_id": appointment_id,
            "user_id": user_id,
            "status": AppointmentStatus.PENDING.value
        })
        if not appointment:
            raise NotFound("Appointment not found or payment already completed")

        data = await self._start_payment(user_id, appointment, payment_method, redeem_code, client_info)
        data["appointment_id"] = appointment_id
        data["appointment_date_time"] = appointment.get("appointment_date_time")
        return data

    async def _start_payment(
        self,
        user_id: str,
        appointment: Dict[str, Any],
        payment_method: str,
        redeem_code: Optional[str],
        client_info: Optional[Dict[str, Any]]
    ) -> Dict[str, Any]:
        appointment_id = appointment["appointment_id"]

        if appointment.get("type") != AppointmentType.VIRTUAL.value:
            raise BadRequest("Payment is only available for virtual appointments")
        if appointment.get("status") != AppointmentStatus.PENDING.value:
            raise BadRequest("Payment can only be initiated for pending appointments")

        price = await self.get_virtual_appointment_price()

        existing = await self.store.find_active_for_appointment(appointment_id)
        if existing:
            return self._existing_payment_response(existing)

        try:
            method = PaymentMethod(payment_method or PaymentMethod.PHONEPE.value)
        except ValueError:
            raise BadRequest(f"Invalid payment method: {payment_method}")

        client_info = client_info or {}

        async def _create(session):
            discount = None
            amount = price
            if redeem_code:
                discount = await self.discounts.apply(
                    redeem_code, price, user_id, appointment_id, session=session
                )
                amount = discount["final_amount"]

            amount_error = self.gateway.validate_amount(amount)
            if amount_error:
                raise BadRequest(amount_error)

            now = datetime.utcnow()
            payment = PaymentInDB(
                payment_id=self.store.generate_payment_id(),
                merchant_transaction_id=self.gateway.generate_merchant_transaction_id(user_id, appointment_id),
                user_id=user_id,
                appointment_id=appointment_id,
                amount=amount,
                original_amount=price,
                discount_amount=discount["discount_amount"] if discount else 0,
                redeem_code=discount["code"] if discount else None,
                redeem_code_usage_id=discount["usage_id"] if discount else None,
                payment_method=method,
                status=PaymentState.INITIATED,
                created_at=now,
                updated_at=now,
                initiated_at=now,
                ip_address=client_info.get("ip_address"),
                device_info=DeviceInfo(
                    user_agent=client_info.get("user_agent"),
                    platform=client_info.get("platform")
                )
            )
            doc = await self.store.create(payment, session=session)
            return doc, discount

        try:
            payment, discount = await run_in_transaction(self.db, _create)
        except PaymentConflict:
            # A concurrent request created the attempt first
            existing = await self.store.find_active_for_appointment(appointment_id)
            if existing:
                return self._existing_payment_response(existing)
            raise

        print(f"[PAYMENT] Payment {payment['payment_id']} created for appointment {appointment_id} "
              f"(amount={to_decimal(payment['amount'])}, txn={payment['merchant_transaction_id']})")

        order = OrderRequest(
            merchant_order_id=payment["merchant_transaction_id"],
            amount_minor=to_minor_units(payment["amount"]),
            expire_after_seconds=self.order_expire_seconds,
            redirect_url=self._redirect_url(payment["payment_id"]),
            message=f"Payment for virtual appointment {appointment_id}",
            meta_info={"udf1": user_id, "udf2": appointment_id, "udf3": payment["payment_id"]}
        )

        try:
            result = await self.gateway.create_order(order)
        except (PspAuthError, PspOrderError) as e:
            print(f"[ERROR] PSP order creation failed for payment {payment['payment_id']}: {e.message}")
            await self._fail_initiation(payment, e)
            raise PaymentInitiationFailed(f"Failed to initiate payment: {e.message}")

        async def _record_order(session):
            await self.store.update_psp_details(payment["payment_id"], {
                "psp_order_id": result.psp_order_id,
                "payment_url": result.redirect_url,
                "psp_response": result.raw,
            }, session=session)
            if payment.get("redeem_code_usage_id"):
                await self.discounts.link_payment(payment["redeem_code_usage_id"], payment["payment_id"], session=session)
            await self.appointments.update_one(
                {"appointment_id": appointment_id, "payment_status": {"$ne": AppointmentPaymentStatus.SUCCESS.value}},
                {"$set": {
                    "payment_status": AppointmentPaymentStatus.INITIATED.value,
                    "payment_id": payment["payment_id"],
                    "payment_amount": payment["amount"],
                    "updated_at": datetime.utcnow()
                }},
                session=session
            )

        await run_in_transaction(self.db, _record_order)

        self.schedule_auto_check(payment["payment_id"], self.reconcile_delay_seconds)

        payment["payment_url"] = result.redirect_url
        payment["psp_order_id"] = result.psp_order_id
        return self._initiation_response(payment, discount, already_initiated=False)

    async def _fail_initiation(self, payment: Dict[str, Any], error: PspError):
        """PSP rejected the order: fail the attempt and release its redeem-code usage"""
        async def _fail(session):
            after, changed = await self.store.transition(
                payment["payment_id"],
                PaymentState.FAILED,
                {
                    "failure_reason": error.message,
                    "failure_code": error.code or "ORDER_CREATION_FAILED",
                    "psp_response": error.raw or {},
                },
                session=session
            )
            if changed:
                await self._release_usage(after, RedeemCodeUsageStatus.CANCELLED, session)
                await self.appointments.update_one(
                    {"appointment_id": payment["appointment_id"]},
                    {"$set": {
                        "payment_status": AppointmentPaymentStatus.FAILED.value,
                        "payment_id": payment["payment_id"],
                        "updated_at": datetime.utcnow()
                    }},
                    session=session
                )

        await run_in_transaction(self.db, _fail)

    def _redirect_url(self, payment_id: str) -> str:
        base = self.gateway.config.get("redirect_url") or ""
        separator = "&" if "?" in base else "?"
        return f"{base}{separator}{urlencode({'paymentId': payment_id})}"

    def _initiation_response(
        self,
        payment: Dict[str, Any],
        discount: Optional[Dict[str, Any]],
        already_initiated: bool
    ) -> Dict[str, Any]:
        data = {
            "payment_id": payment["payment_id"],
            "payment_url": payment.get("payment_url"),
            "merchant_transaction_id": payment["merchant_transaction_id"],
            "original_amount": to_float(payment.get("original_amount", payment["amount"])),
            "discount_amount": to_float(payment.get("discount_amount") or 0),
            "final_amount": to_float(payment["amount"]),
            "currency": payment.get("currency", CURRENCY),
            "status": payment["status"],
            "already_initiated": already_initiated,
            "redeem_code": None,
        }
        if discount:
            data["redeem_code"] = {
                "code": discount["code"],
                "name": discount.get("name"),
                "discount_type": discount.get("discount_type"),
                "discount_value": to_float(discount.get("discount_value")),
                "discount_amount": to_float(discount["discount_amount"]),
            }
        elif payment.get("redeem_code"):
            data["redeem_code"] = {
                "code": payment["redeem_code"],
                "discount_amount": to_float(payment.get("discount_amount") or 0),
            }
        return data

    def _existing_payment_response(self, payment: Dict[str, Any]) -> Dict[str, Any]:
        if payment["status"] == PaymentState.SUCCESS.value:
            raise AlreadyPaid()
        if not payment.get("payment_url"):
            # Order not yet created by the request holding the slot
            raise PaymentConflict("Payment is being initiated, please retry")
        print(f"[PAYMENT] Returning open payment {payment['payment_id']} for appointment {payment['appointment_id']}")
        return self._initiation_response(payment, None, already_initiated=True)

    # ------------------------------------------------------------------
    # PSP verdicts
    # ------------------------------------------------------------------

    async def _apply_psp_state(
        self,
        payment_id: str,
        psp_state: str,
        fields: Dict[str, Any],
        source: str
    ) -> Tuple[Dict[str, Any], bool]:
        """
        Guarded transition plus appointment and redeem-code updates, committed
        together. Returns (payment_after, changed).
        """
        to_state, appointment_payment_status = map_psp_state(psp_state)

        transition_fields = dict(fields)
        if to_state not in TERMINAL_FAILURE_STATES:
            transition_fields.pop("failure_reason", None)
            transition_fields.pop("failure_code", None)

        async def _txn(session):
            after, changed = await self.store.transition(payment_id, to_state, transition_fields, session=session)
            if changed:
                await self._sync_appointment(after, appointment_payment_status, session)
                if to_state in TERMINAL_FAILURE_STATES:
                    await self._release_usage(after, RedeemCodeUsageStatus.CANCELLED, session)
            return after, changed

        after, changed = await run_in_transaction(self.db, _txn)

        if changed:
            print(f"[PAYMENT] {source}: payment {payment_id} -> {after['status']} (PSP state {psp_state})")
        elif to_state == PaymentState.SUCCESS and after.get("status") in (
            PaymentState.FAILED.value, PaymentState.CANCELLED.value, PaymentState.EXPIRED.value
        ):
            print(f"[WARN] {source}: PSP reports success for payment {payment_id} "
                  f"already in terminal state {after['status']}; needs manual review")

        return after, changed

    async def _sync_appointment(self, payment: Dict[str, Any], payment_status: AppointmentPaymentStatus, session):
        now = datetime.utcnow()
        await self.appointments.update_one(
            {"appointment_id": payment["appointment_id"]},
            {"$set": {
                "payment_status": payment_status.value,
                "payment_id": payment["payment_id"],
                "payment_amount": payment["amount"],
                "updated_at": now
            }},
            session=session
        )
        if payment_status == AppointmentPaymentStatus.SUCCESS:
            await self.appointments.update_one(
                {"appointment_id": payment["appointment_id"], "status": AppointmentStatus.PENDING.value},
                {"$set": {"status": AppointmentStatus.CONFIRMED.value, "confirmed_at": now}},
                session=session
            )

    async def _release_usage(self, payment: Dict[str, Any], status: RedeemCodeUsageStatus, session):
        await self.discounts.mark_usage(payment.get("redeem_code_usage_id"), status, session=session)

    @staticmethod
    def _status_fields(status: OrderStatusResult) -> Dict[str, Any]:
        fields = {"psp_status_payload": status.raw}
        if status.psp_transaction_id:
            fields["gateway_transaction_id"] = status.psp_transaction_id
        if status.payment_method:
            fields["psp_payment_mode"] = status.payment_method
        if status.psp_order_id:
            fields["psp_order_id"] = status.psp_order_id
        fields["failure_code"] = status.code
        fields["failure_reason"] = status.message
        return fields

    def _check_amount(self, payment: Dict[str, Any], amount_minor: Optional[int], source: str):
        if amount_minor is None:
            return
        expected = to_minor_units(payment["amount"])
        try:
            reported = int(amount_minor)
        except (TypeError, ValueError):
            print(f"[WARN] {source}: unreadable PSP amount {amount_minor!r} for payment {payment['payment_id']}")
            return
        if reported != expected:
            print(f"[WARN] {source}: amount mismatch for payment {payment['payment_id']}: "
                  f"PSP={amount_minor} expected={expected}")

    async def handle_callback(self, headers: Dict[str, str], body: Dict[str, Any]) -> Dict[str, Any]:
        """
        Process a PSP callback.

        Raises:
            BadRequest: signature or shape invalid
            NotFound: no payment for the merchant transaction id
        Everything after verification is reported in the returned dict;
        the route answers 200 so the PSP does not retry.
        """
        try:
            event = self.gateway.verify_callback(headers, body)
        except (InvalidSignature, InvalidCallback) as e:
            print(f"[SECURITY] Rejected PhonePe callback: {e.message}")
            raise BadRequest(e.message)

        payment = await self.store.find_by_merchant_txn_id(event.merchant_transaction_id)
        if not payment:
            print(f"[WARN] Callback for unknown transaction: {event.merchant_transaction_id}")
            raise NotFound("Payment not found")

        if payment["status"] == PaymentState.SUCCESS.value:
            return {"status": "success", "message": "Payment already processed", "payment_id": payment["payment_id"]}

        try:
            self._check_amount(payment, event.amount_minor, "callback")

            fields = {
                "psp_callback_payload": event.raw,
                "callback_received_at": datetime.utcnow(),
                "failure_code": event.response_code,
                "failure_reason": event.response_message,
            }
            if event.psp_transaction_id:
                fields["gateway_transaction_id"] = event.psp_transaction_id
            if event.psp_order_id:
                fields["psp_order_id"] = event.psp_order_id
            if event.payment_method:
                fields["psp_payment_mode"] = event.payment_method

            after, changed = await self._apply_psp_state(payment["payment_id"], event.state, fields, "callback")
            return {
                "status": "success",
                "message": "Callback processed" if changed else "No state change",
                "payment_id": payment["payment_id"],
                "payment_status": after["status"],
            }
        except Exception as e:
            print(f"[ERROR] Callback processing failed for payment {payment['payment_id']}: {str(e)}")
            return {"status": "error", "message": "Internal error", "payment_id": payment["payment_id"]}

    async def auto_check(self, payment_id: str) -> Optional[Dict[str, Any]]:
        """
        Scheduled reconciliation for one payment.
        Only open payments are checked; PSP 404 and PSP errors leave state untouched.
        """
        payment = await self.store.find_by_id(payment_id)
        if not payment:
            print(f"[SCHEDULER] auto_check: payment {payment_id} not found")
            return None
        if payment["status"] not in [s.value for s in OPEN_STATES]:
            return {"payment_id": payment_id, "status": payment["status"], "changed": False, "skipped": True}

        try:
            status = await self.gateway.get_order_status(payment["merchant_transaction_id"])
        except PspError as e:
            print(f"[ERROR] auto_check: PSP status failed for payment {payment_id}: {e.message}")
            return {"payment_id": payment_id, "status": payment["status"], "changed": False, "error": e.message}

        if status.pending_unseen:
            print(f"[SCHEDULER] auto_check: payment {payment_id} not yet seen by PSP")
            return {"payment_id": payment_id, "status": payment["status"], "changed": False,
                    "psp_state": status.state}

        self._check_amount(payment, status.amount_minor, "auto_check")
        after, changed = await self._apply_psp_state(payment_id, status.state, self._status_fields(status), "auto_check")
        return {"payment_id": payment_id, "status": after["status"], "changed": changed, "psp_state": status.state}

    async def manual_sync(self, payment_id: str, user_id: str, is_admin: bool = False) -> Dict[str, Any]:
        """
        Always ask the PSP, even for terminal payments; terminal states
        stay put. Returns a diagnostic envelope.
        """
        payment = await self.store.find_by_id(payment_id)
        if not payment:
            raise NotFound("Payment not found")
        if not is_admin and payment["user_id"] != user_id:
            raise Forbidden("Access denied")

        old_status = payment["status"]

        try:
            status = await self.gateway.get_order_status(payment["merchant_transaction_id"])
        except PspError as e:
            print(f"[ERROR] manual_sync: PSP status failed for payment {payment_id}: {e.message}")
            raise UpstreamUnavailable(f"Unable to fetch payment status: {e.message}")

        changed = False
        new_status = old_status
        if not status.pending_unseen:
            self._check_amount(payment, status.amount_minor, "manual_sync")
            after, changed = await self._apply_psp_state(payment_id, status.state, self._status_fields(status), "manual_sync")
            new_status = after["status"]

        await self.store.update_psp_details(payment_id, {
            "psp_status_payload": status.raw,
            "last_synced_at": datetime.utcnow()
        })

        appointment = await self.get_appointment(payment["appointment_id"])
        return {
            "payment_id": payment_id,
            "old_status": old_status,
            "new_status": new_status,
            "psp_state": status.state,
            "changed": changed,
            "appointment_status": appointment.get("status") if appointment else None,
            "appointment_payment_status": appointment.get("payment_status") if appointment else None,
        }

    async def check_status(self, payment_id: str, user_id: str) -> Dict[str, Any]:
        """Read-through status: terminal payments are served from the store"""
        payment = await self.store.find_by_id(payment_id)
        if not payment or payment["user_id"] != user_id:
            raise NotFound("Payment not found")

        if payment["status"] in [s.value for s in OPEN_STATES]:
            try:
                status = await self.gateway.get_order_status(payment["merchant_transaction_id"])
                if not status.pending_unseen:
                    self._check_amount(payment, status.amount_minor, "check_status")
                    payment, _ = await self._apply_psp_state(
                        payment_id, status.state, self._status_fields(status), "check_status"
                    )
            except PspError as e:
                print(f"[WARN] check_status: PSP status failed for payment {payment_id}: {e.message}")

        appointment = await self.get_appointment(payment["appointment_id"])
        return self.status_view(payment, appointment)

    @staticmethod
    def status_view(payment: Dict[str, Any], appointment: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        return {
            "payment_id": payment["payment_id"],
            "merchant_transaction_id": payment["merchant_transaction_id"],
            "status": payment["status"],
            "amount": to_float(payment["amount"]),
            "currency": payment.get("currency", CURRENCY),
            "payment_method": payment.get("payment_method"),
            "initiated_at": payment.get("initiated_at"),
            "completed_at": payment.get("completed_at"),
            "failed_at": payment.get("failed_at"),
            "failure_reason": payment.get("failure_reason"),
            "appointment": {
                "appointment_id": appointment.get("appointment_id"),
                "status": appointment.get("status"),
                "payment_status": appointment.get("payment_status"),
                "appointment_date_time": appointment.get("appointment_date_time"),
            } if appointment else None,
        }

    # ------------------------------------------------------------------
    # Refund bookkeeping
    # ------------------------------------------------------------------

    async def refund(self, payment_id: str, amount: Optional[Any], reason: str) -> Dict[str, Any]:
        """Record a refund done outside this service (no PSP call)"""
        async def _txn(session):
            after, changed = await self.store.refund(payment_id, amount, reason, session=session)
            if changed:
                await self.appointments.update_one(
                    {"appointment_id": after["appointment_id"]},
                    {"$set": {
                        "payment_status": AppointmentPaymentStatus.REFUNDED.value,
                        "updated_at": datetime.utcnow()
                    }},
                    session=session
                )
                await self._release_usage(after, RedeemCodeUsageStatus.REFUNDED, session)
            return after, changed

        after, changed = await run_in_transaction(self.db, _txn)
        if changed:
            print(f"[PAYMENT] Payment {payment_id} refunded ({to_decimal(after['refund_amount'])}): {reason}")

        return {
            "payment_id": payment_id,
            "status": after["status"],
            "refund_amount": to_float(after.get("refund_amount")),
            "refund_reason": after.get("refund_reason"),
            "refunded_at": after.get("refunded_at"),
            "changed": changed,
        }
