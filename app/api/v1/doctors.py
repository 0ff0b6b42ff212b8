from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional
from uuid import UUID

from app.api.deps import require_doctor, get_current_caller
from app.db.session import get_session
from app.schemas.auth import Caller
from app.schemas.availability import (
    AvailabilityCreate,
    AvailabilityDeletedResponse,
    AvailabilityListResponse,
    AvailabilityUpdate,
    AvailabilityUpdatedResponse,
)
from app.schemas.schedule import RescheduleResponse, UnifiedRescheduleRequest
from app.schemas.time_slot import (
    SlotListResponse,
    TimeSlotBlock,
    TimeSlotCreate,
    TimeSlotDeletedResponse,
    TimeSlotSavedResponse,
    TimeSlotUpdate,
)
from app.services.availability_service import AvailabilityService
from app.services.schedule_service import ScheduleService
from app.services.slot_service import SlotService

router = APIRouter()

async def get_availability_service(session: AsyncSession = Depends(get_session)) -> AvailabilityService:
    return AvailabilityService(session)

async def get_slot_service(session: AsyncSession = Depends(get_session)) -> SlotService:
    return SlotService(session)

async def get_schedule_service(session: AsyncSession = Depends(get_session)) -> ScheduleService:
    return ScheduleService(session)

# Availability

@router.post("/availability", response_model=AvailabilityListResponse, status_code=status.HTTP_201_CREATED)
async def create_availability(
    request: AvailabilityCreate,
    caller: Caller = Depends(require_doctor),
    service: AvailabilityService = Depends(get_availability_service)
):
    return await service.create_availability(caller.id, request)

@router.patch("/availability/{availability_id}", response_model=AvailabilityUpdatedResponse)
async def update_availability(
    availability_id: UUID,
    request: AvailabilityUpdate,
    caller: Caller = Depends(require_doctor),
    service: AvailabilityService = Depends(get_availability_service)
):
    return await service.update_availability(caller.id, availability_id, request)

@router.delete("/availability/{availability_id}", response_model=AvailabilityDeletedResponse)
async def delete_availability(
    availability_id: UUID,
    caller: Caller = Depends(require_doctor),
    service: AvailabilityService = Depends(get_availability_service)
):
    return await service.delete_availability(caller.id, availability_id)

# Time slots

@router.post("/timeslots", response_model=TimeSlotSavedResponse, status_code=status.HTTP_201_CREATED)
async def create_timeslot(
    request: TimeSlotCreate,
    caller: Caller = Depends(require_doctor),
    service: SlotService = Depends(get_slot_service)
):
    return await service.create_slot(caller.id, request)

@router.patch("/timeslots/{timeslot_id}", response_model=TimeSlotSavedResponse)
async def update_timeslot(
    timeslot_id: UUID,
    request: TimeSlotUpdate,
    caller: Caller = Depends(require_doctor),
    service: SlotService = Depends(get_slot_service)
):
    return await service.update_slot(caller.id, timeslot_id, request)

@router.patch("/timeslots/{timeslot_id}/block", response_model=TimeSlotSavedResponse)
async def block_timeslot(
    timeslot_id: UUID,
    request: TimeSlotBlock,
    caller: Caller = Depends(require_doctor),
    service: SlotService = Depends(get_slot_service)
):
    return await service.set_blocked(caller.id, timeslot_id, request.blocked)

@router.delete("/timeslots/{timeslot_id}", response_model=TimeSlotDeletedResponse)
async def delete_timeslot(
    timeslot_id: UUID,
    caller: Caller = Depends(require_doctor),
    service: SlotService = Depends(get_slot_service)
):
    return await service.delete_slot(caller.id, timeslot_id)

@router.get("/{doctor_id}/slots", response_model=SlotListResponse)
async def list_available_slots(
    doctor_id: UUID,
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    caller: Caller = Depends(get_current_caller),
    service: SlotService = Depends(get_slot_service)
):
    return await service.list_available(doctor_id, page=page, limit=limit)

# Rescheduling

@router.post("/{doctor_id}/reschedule", response_model=RescheduleResponse)
async def reschedule(
    doctor_id: UUID,
    request: UnifiedRescheduleRequest,
    caller: Caller = Depends(require_doctor),
    service: ScheduleService = Depends(get_schedule_service)
):
    if caller.id != doctor_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="You can only reschedule your own appointments")
    return await service.unified_reschedule(doctor_id, request)
