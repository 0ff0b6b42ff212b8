from sqlmodel import SQLModel
from .enums import Session, Weekday, TimeSlotStatus, AppointmentStatus, UserRole
from .doctor import Doctor
from .patient import Patient
from .availability import Availability
from .time_slot import TimeSlot
from .appointment import Appointment
from .audit_log import AuditLog

__all__ = [
    "SQLModel",
    "Session",
    "Weekday",
    "TimeSlotStatus",
    "AppointmentStatus",
    "UserRole",
    "Doctor",
    "Patient",
    "Availability",
    "TimeSlot",
    "Appointment",
    "AuditLog",
]
