from sqlmodel import SQLModel, Field, Relationship
from typing import Optional, TYPE_CHECKING
from datetime import datetime
from uuid import UUID, uuid4

from .enums import AppointmentStatus

if TYPE_CHECKING:
    from .doctor import Doctor
    from .patient import Patient
    from .time_slot import TimeSlot

class Appointment(SQLModel, table=True):
    __tablename__ = "appointments"
    id: UUID = Field(default_factory=uuid4, primary_key=True)
    doctor_id: UUID = Field(foreign_key="doctors.id", index=True)
    patient_id: UUID = Field(foreign_key="patients.id", index=True)
    time_slot_id: UUID = Field(foreign_key="time_slots.id", index=True)
    status: AppointmentStatus = Field(default=AppointmentStatus.SCHEDULED)
    # Staggered reporting time inside the slot
    scheduled_on: datetime
    reason: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    doctor: "Doctor" = Relationship(back_populates="appointments")
    patient: "Patient" = Relationship(back_populates="appointments")
    time_slot: "TimeSlot" = Relationship(back_populates="appointments")
