from pydantic import BaseModel, Field
from datetime import date as date_type, time
from typing import Optional, List
from uuid import UUID

from app.db.models.enums import Session, TimeSlotStatus

class TimeSlotCreate(BaseModel):
    availability_id: UUID
    start_time: time
    end_time: time
    max_patients: int = Field(ge=1, le=50)

class TimeSlotUpdate(BaseModel):
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    max_patients: Optional[int] = Field(default=None, ge=1, le=50)

class TimeSlotBlock(BaseModel):
    blocked: bool

class TimeSlotResponse(BaseModel):
    id: UUID
    availability_id: UUID
    doctor_id: UUID
    start_time: time
    end_time: time
    max_patients: int
    status: TimeSlotStatus
    is_deleted: bool

    class Config:
        from_attributes = True

class TimeSlotSavedResponse(BaseModel):
    message: str
    data: TimeSlotResponse

class TimeSlotDeletedResponse(BaseModel):
    message: str
    timeslot_id: UUID

class AvailableSlot(TimeSlotResponse):
    date: date_type
    session: Session
    current_bookings: int
    available_capacity: int
    is_full: bool

class SlotListResponse(BaseModel):
    message: str
    total: int
    page: int
    limit: int
    data: List[AvailableSlot]
