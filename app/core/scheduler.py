"""
APScheduler Setup for Background Jobs

Handles payment reconciliation:
- Per-payment auto-check: one-shot, PAYMENT_RECONCILE_DELAY_SECONDS after initiation
- Stale payment sweep: every PAYMENT_RECONCILE_SWEEP_MINUTES

Set SCHEDULER_JOBSTORE=mongodb to keep pending auto-checks across restarts.

Note: Jobs run with database connection from app context.
"""
import os
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger
from datetime import datetime, timedelta, timezone
from dotenv import load_dotenv

load_dotenv()

# Global scheduler instance
scheduler = AsyncIOScheduler(timezone=timezone.utc)

# Job status tracking
job_status = {
    "last_run": None,
    "auto_check": {"runs": 0, "last_result": None},
    "sweep": {"runs": 0, "last_result": None}
}

AUTO_CHECK_JOB_PREFIX = "payment_auto_check_"


async def run_payment_auto_check(payment_id: str):
    """Job: Reconcile one payment with the PSP."""
    from app.database import Database
    from app.services.scheduler.payment_reconciler import PaymentReconciler

    try:
        db = Database.get_db()
        if db is None:
            print(f"[SCHEDULER] Database not connected, skipping auto_check for {payment_id}")
            return

        result = await PaymentReconciler(db).auto_check(payment_id)

        job_status["auto_check"]["runs"] += 1
        job_status["auto_check"]["last_result"] = result
        job_status["last_run"] = datetime.utcnow().isoformat()

        if result and result.get("changed"):
            print(f"[SCHEDULER] auto_check: payment {payment_id} -> {result['status']}")

    except Exception as e:
        print(f"[ERROR] auto_check job failed for {payment_id}: {str(e)}")


async def run_stale_payment_sweep():
    """Job: Auto-check open payments whose one-shot check was lost."""
    from app.database import Database
    from app.services.scheduler.payment_reconciler import PaymentReconciler

    try:
        db = Database.get_db()
        if db is None:
            print("[SCHEDULER] Database not connected, skipping sweep")
            return

        result = await PaymentReconciler(db).sweep_stale_payments()

        job_status["sweep"]["runs"] += 1
        job_status["sweep"]["last_result"] = result
        job_status["last_run"] = datetime.utcnow().isoformat()

        if result.get("processed", 0) > 0:
            print(f"[SCHEDULER] sweep: {result['processed']} payments checked, {len(result['changed'])} changed")

    except Exception as e:
        print(f"[ERROR] sweep job failed: {str(e)}")


def schedule_payment_auto_check(payment_id: str, delay_seconds: int = 120):
    """
    Schedule (or reschedule) the one-shot auto-check for a payment.
    At-least-once: a repeated call replaces the pending job.
    """
    run_at = datetime.utcnow() + timedelta(seconds=delay_seconds)
    scheduler.add_job(
        run_payment_auto_check,
        DateTrigger(run_date=run_at, timezone=timezone.utc),
        args=[payment_id],
        id=f"{AUTO_CHECK_JOB_PREFIX}{payment_id}",
        name=f"Auto-check payment {payment_id}",
        replace_existing=True,
        misfire_grace_time=3600,
        coalesce=True
    )


def _configure_jobstore():
    """Durable MongoDB job store when SCHEDULER_JOBSTORE=mongodb"""
    if os.getenv("SCHEDULER_JOBSTORE", "memory").lower() != "mongodb":
        return

    from apscheduler.jobstores.mongodb import MongoDBJobStore
    from pymongo import MongoClient

    client = MongoClient(os.getenv("MONGODB_URL", "mongodb://localhost:27017"))
    scheduler.configure(jobstores={
        "default": MongoDBJobStore(
            database=os.getenv("DATABASE_NAME", "clinic"),
            collection="scheduled_jobs",
            client=client
        )
    })
    print("[SCHEDULER] Using MongoDB job store (scheduled_jobs)")


def setup_scheduler():
    """
    Configure and setup scheduled jobs.

    Job Schedule:
    - payment_auto_check_<id>: one-shot per payment, added at initiation
    - payment_stale_sweep: every PAYMENT_RECONCILE_SWEEP_MINUTES (default 5)
    """
    if not scheduler.running:
        _configure_jobstore()

    sweep_minutes = int(os.getenv("PAYMENT_RECONCILE_SWEEP_MINUTES", "5"))

    scheduler.add_job(
        run_stale_payment_sweep,
        IntervalTrigger(minutes=sweep_minutes),
        id="payment_stale_sweep",
        name="Reconcile stale open payments",
        replace_existing=True,
        max_instances=1,
        coalesce=True
    )

    print(f"[SCHEDULER] Payment reconciler configured (sweep every {sweep_minutes} min)")


def start_scheduler():
    """Start the scheduler if not already running."""
    if not scheduler.running:
        scheduler.start()
        print("[SCHEDULER] Background scheduler started")


def stop_scheduler():
    """Stop the scheduler."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        print("[SCHEDULER] Background scheduler stopped")


def get_scheduler_status() -> dict:
    """Get current scheduler status for monitoring."""
    jobs = scheduler.get_jobs()
    return {
        "running": scheduler.running,
        "pending_auto_checks": sum(1 for job in jobs if job.id.startswith(AUTO_CHECK_JOB_PREFIX)),
        "jobs": [
            {
                "id": job.id,
                "name": job.name,
                "next_run": job.next_run_time.isoformat() if getattr(job, "next_run_time", None) else None
            }
            for job in jobs
        ],
        "job_status": job_status
    }
