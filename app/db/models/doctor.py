from sqlmodel import SQLModel, Field, Relationship
from typing import Optional, List, TYPE_CHECKING
from datetime import datetime
from uuid import UUID, uuid4

if TYPE_CHECKING:
    from .availability import Availability
    from .time_slot import TimeSlot
    from .appointment import Appointment

class Doctor(SQLModel, table=True):
    __tablename__ = "doctors"
    id: UUID = Field(default_factory=uuid4, primary_key=True)
    name: str
    phone: Optional[str] = None
    specialization: Optional[str] = None
    clinic_name: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    availabilities: List["Availability"] = Relationship(back_populates="doctor")
    time_slots: List["TimeSlot"] = Relationship(back_populates="doctor")
    appointments: List["Appointment"] = Relationship(back_populates="doctor")
