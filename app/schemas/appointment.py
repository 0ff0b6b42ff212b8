from enum import Enum
from pydantic import BaseModel, Field
from uuid import UUID
from datetime import date as date_type, datetime, time
from typing import Optional, List, Union

from app.db.models.enums import AppointmentStatus, Session

class AppointmentCreate(BaseModel):
    doctor_id: UUID
    timeslot_id: UUID
    reason: Optional[str] = None
    notes: Optional[str] = None

class AppointmentResponse(BaseModel):
    id: UUID
    doctor_id: UUID
    patient_id: UUID
    time_slot_id: UUID
    status: AppointmentStatus
    scheduled_on: datetime
    reason: Optional[str] = None
    notes: Optional[str] = None
    date: Optional[date_type] = None
    session: Optional[Session] = None
    slot_start_time: Optional[time] = None
    slot_end_time: Optional[time] = None

    class Config:
        from_attributes = True

class BookingResponse(BaseModel):
    message: str
    data: AppointmentResponse

class AppointmentView(BaseModel):
    id: UUID
    status: AppointmentStatus
    scheduled_on: datetime
    reason: Optional[str] = None
    notes: Optional[str] = None
    time_slot_id: UUID
    slot_label: Optional[str] = None
    # Doctor for patients, patient for doctors
    counterpart_id: UUID
    counterpart_name: Optional[str] = None

class AppointmentListResponse(BaseModel):
    message: str
    total: int
    data: List[AppointmentView]

class MessageResponse(BaseModel):
    message: str

class RescheduleType(str, Enum):
    POSTPONE = "postpone"
    PREPONE = "prepone"

class AppointmentRescheduleRequest(BaseModel):
    """
    Doctor-side reschedule of individual appointments.

    With ``appointment_id`` and ``new_timeslot_id`` one appointment moves to
    another slot. Otherwise the reporting times of ``appointment_ids`` (or of
    today's appointments when none are given) shift by ``shift_minutes`` in
    the direction given by ``reschedule_type``.
    """
    appointment_id: Optional[UUID] = None
    new_timeslot_id: Optional[UUID] = None
    reason: Optional[str] = None

    shift_minutes: Optional[int] = Field(default=None, ge=10, le=180)
    reschedule_type: Optional[RescheduleType] = None
    appointment_ids: Optional[List[UUID]] = Field(default=None, min_length=1)

class SlotSummary(BaseModel):
    id: UUID
    time: str
    date: date_type

class AppointmentMoveResult(BaseModel):
    appointment_id: UUID
    old_slot: SlotSummary
    new_slot: SlotSummary
    new_scheduled_time: datetime
    reason: str

class ShiftedAppointment(BaseModel):
    appointment_id: UUID
    old_scheduled_on: datetime
    new_scheduled_on: datetime

class AppointmentShiftResult(BaseModel):
    reschedule_type: RescheduleType
    shift_minutes: int
    appointments_updated: int
    appointments: List[ShiftedAppointment]

class AppointmentRescheduleResponse(BaseModel):
    message: str
    data: Union[AppointmentMoveResult, AppointmentShiftResult]
