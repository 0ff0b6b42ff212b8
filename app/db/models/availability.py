from sqlmodel import SQLModel, Field, Relationship
from sqlalchemy import JSON, Column
from typing import Optional, List, TYPE_CHECKING
from datetime import date, datetime, time
from uuid import UUID, uuid4

from .enums import Session

if TYPE_CHECKING:
    from .doctor import Doctor
    from .time_slot import TimeSlot

class Availability(SQLModel, table=True):
    """A doctor's consulting window on one date, with its booking window."""
    __tablename__ = "availabilities"
    id: UUID = Field(default_factory=uuid4, primary_key=True)
    doctor_id: UUID = Field(foreign_key="doctors.id", index=True)
    date: date
    consulting_start_time: time
    consulting_end_time: time
    session: Session
    # Weekday set the row was expanded from, if any
    weekdays: Optional[List[str]] = Field(default=None, sa_column=Column(JSON))
    booking_start_at: datetime
    booking_end_at: datetime
    is_deleted: bool = Field(default=False)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    doctor: "Doctor" = Relationship(back_populates="availabilities")
    time_slots: List["TimeSlot"] = Relationship(back_populates="availability")
