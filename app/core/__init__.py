"""
Core module for application infrastructure.
"""
from app.core.scheduler import (
    scheduler,
    setup_scheduler,
    start_scheduler,
    stop_scheduler,
    get_scheduler_status,
    schedule_payment_auto_check
)

__all__ = [
    "scheduler",
    "setup_scheduler",
    "start_scheduler",
    "stop_scheduler",
    "get_scheduler_status",
    "schedule_payment_auto_check"
]
