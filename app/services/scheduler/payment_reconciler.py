"""
Payment Reconciler Service

Recovers from lost PSP callbacks:
- Per-payment auto-check: scheduled after initiation (default 120 s)
- Stale sweep: periodic pass over open payments whose auto-check never ran

Duplicate or late runs are harmless; transitions are single-winner.
"""
from motor.motor_asyncio import AsyncIOMotorDatabase
from typing import Dict, Any, Optional
from datetime import datetime, timedelta

from app.services.payment.gateways.base import BasePaymentGateway
from app.services.payment.payment_service import PaymentService


class PaymentReconciler:
    """
    Background job handler for payment reconciliation.

    Jobs:
    1. auto_check: one-shot per payment
    2. sweep_stale_payments: interval
    """

    SWEEP_BATCH_SIZE = 100

    def __init__(self, db: AsyncIOMotorDatabase, gateway: Optional[BasePaymentGateway] = None):
        self.db = db
        self.payment_service = PaymentService(db, gateway=gateway)

    async def auto_check(self, payment_id: str) -> Optional[Dict[str, Any]]:
        return await self.payment_service.auto_check(payment_id)

    async def sweep_stale_payments(self) -> Dict[str, Any]:
        """
        Auto-check open payments older than the reconcile delay.

        Conditions:
        - status in pending / initiated / processing
        - created_at < now - reconcile delay
        """
        cutoff = datetime.utcnow() - timedelta(seconds=self.payment_service.reconcile_delay_seconds)
        results = {
            "processed": 0,
            "changed": [],
            "errors": []
        }

        stale = await self.payment_service.store.find_stale_open(cutoff, limit=self.SWEEP_BATCH_SIZE)

        for payment in stale:
            payment_id = payment["payment_id"]
            try:
                outcome = await self.auto_check(payment_id)
                results["processed"] += 1
                if outcome and outcome.get("changed"):
                    results["changed"].append({"payment_id": payment_id, "status": outcome["status"]})
            except Exception as e:
                print(f"[ERROR] sweep: auto_check failed for payment {payment_id}: {str(e)}")
                results["errors"].append({"payment_id": payment_id, "error": str(e)})

        return results
