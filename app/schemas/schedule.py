from enum import Enum
from pydantic import BaseModel
from datetime import date, time
from typing import Optional, List, Union
from uuid import UUID

class SchedulingType(str, Enum):
    SLOT_SLOT = "slot_slot"
    TIME_SHIFT = "time_shift"
    SHRINKING = "shrinking"

class UnifiedRescheduleRequest(BaseModel):
    """
    One request shape for all reschedule operations.

    ``scheduling_type`` picks the operation and therefore which of the
    optional fields are required; it is kept as a plain string so an
    unknown tag is reported by the service rather than by request parsing.
    """
    availability_id: UUID
    scheduling_type: str
    reason: Optional[str] = None

    # slot_slot
    source_slot_id: Optional[UUID] = None
    target_slot_id: Optional[UUID] = None
    appointment_id: Optional[UUID] = None

    # time_shift and shrinking
    new_start_time: Optional[time] = None
    new_end_time: Optional[time] = None
    shift_minutes: Optional[int] = None

class MovedAppointment(BaseModel):
    appointment_id: UUID
    patient_name: Optional[str] = None

class MoveResult(BaseModel):
    doctor_id: UUID
    availability_id: UUID
    moved_appointments: int
    source_slot: str
    target_slot: str
    appointments: List[MovedAppointment]

class ShiftedSlot(BaseModel):
    slot_id: UUID
    old_time: str
    new_time: str
    appointments_count: int

class ShiftResult(BaseModel):
    doctor_id: UUID
    availability_id: UUID
    shift_minutes: int
    old_schedule: str
    new_schedule: str
    slots_updated: int
    appointments_updated: int
    slot_details: List[ShiftedSlot]

class RescheduleAction(BaseModel):
    appointment_id: UUID
    patient_name: Optional[str] = None
    current_time: str
    new_timeslot_id: UUID
    new_time: str
    new_date: Optional[date] = None
    reason: str

class ShrinkResult(BaseModel):
    doctor_id: UUID
    availability_id: UUID
    new_start_time: str
    new_end_time: str
    appointments_rescheduled: int
    strategy: Optional[str] = None
    slots_deactivated: int = 0
    reschedule_details: List[RescheduleAction] = []

class RescheduleResponse(BaseModel):
    message: str
    scheduling_type: SchedulingType
    data: Union[MoveResult, ShiftResult, ShrinkResult]
