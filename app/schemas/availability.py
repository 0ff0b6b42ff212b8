from pydantic import BaseModel
from datetime import date as date_type, datetime, time
from typing import Optional, List
from uuid import UUID

from app.db.models.enums import Session, Weekday

class AvailabilityCreate(BaseModel):
    # Either a single date or a weekday set expanded over the look-ahead window
    date: Optional[date_type] = None
    weekdays: Optional[List[Weekday]] = None
    consulting_start_time: time
    consulting_end_time: time
    session: Session
    booking_start_at: Optional[datetime] = None
    booking_end_at: Optional[datetime] = None

class AvailabilityUpdate(BaseModel):
    date: Optional[date_type] = None
    weekdays: Optional[List[Weekday]] = None
    consulting_start_time: Optional[time] = None
    consulting_end_time: Optional[time] = None
    session: Optional[Session] = None
    booking_start_at: Optional[datetime] = None
    booking_end_at: Optional[datetime] = None

class AvailabilityResponse(BaseModel):
    id: UUID
    doctor_id: UUID
    date: date_type
    consulting_start_time: time
    consulting_end_time: time
    session: Session
    weekdays: Optional[List[str]] = None
    booking_start_at: datetime
    booking_end_at: datetime
    is_deleted: bool

    class Config:
        from_attributes = True

class AvailabilityListResponse(BaseModel):
    message: str
    data: List[AvailabilityResponse]

class AvailabilityUpdatedResponse(BaseModel):
    message: str
    data: AvailabilityResponse

class AvailabilityDeletedResponse(BaseModel):
    message: str
    availability_id: UUID
