from sqlmodel import SQLModel, Field, Relationship
from typing import List, TYPE_CHECKING
from datetime import datetime, time
from uuid import UUID, uuid4

from .enums import TimeSlotStatus

if TYPE_CHECKING:
    from .doctor import Doctor
    from .availability import Availability
    from .appointment import Appointment

class TimeSlot(SQLModel, table=True):
    __tablename__ = "time_slots"
    id: UUID = Field(default_factory=uuid4, primary_key=True)
    availability_id: UUID = Field(foreign_key="availabilities.id", index=True)
    doctor_id: UUID = Field(foreign_key="doctors.id", index=True)
    start_time: time
    end_time: time
    max_patients: int
    status: TimeSlotStatus = Field(default=TimeSlotStatus.AVAILABLE)
    is_deleted: bool = Field(default=False)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    availability: "Availability" = Relationship(back_populates="time_slots")
    doctor: "Doctor" = Relationship(back_populates="time_slots")
    appointments: List["Appointment"] = Relationship(back_populates="time_slot")
