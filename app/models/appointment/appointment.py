"""
Appointment Models
Only the payment-relevant view of appointments and the price catalog
"""
from enum import Enum

VIRTUAL_APPOINTMENT_SERVICE = "Virtual Appointment"


class AppointmentType(str, Enum):
    PHYSICAL = "physical"
    VIRTUAL = "virtual"


class AppointmentStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELED = "canceled"
    REJECTED = "rejected"
    RESCHEDULE_REQUESTED = "reschedule_requested"


class AppointmentPaymentStatus(str, Enum):
    PENDING = "pending"
    INITIATED = "initiated"
    SUCCESS = "success"
    FAILED = "failed"
    REFUNDED = "refunded"
