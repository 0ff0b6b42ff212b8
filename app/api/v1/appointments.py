from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional
from uuid import UUID

from app.api.deps import get_current_caller, require_doctor, require_patient
from app.db.models import AppointmentStatus
from app.db.session import get_session
from app.schemas.appointment import (
    AppointmentCreate,
    AppointmentListResponse,
    AppointmentRescheduleRequest,
    AppointmentRescheduleResponse,
    BookingResponse,
    MessageResponse,
)
from app.schemas.auth import Caller
from app.services.appointment_service import AppointmentService

router = APIRouter()

async def get_appointment_service(session: AsyncSession = Depends(get_session)) -> AppointmentService:
    return AppointmentService(session)

@router.post("", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def book_appointment(
    request: AppointmentCreate,
    caller: Caller = Depends(require_patient),
    service: AppointmentService = Depends(get_appointment_service)
):
    return await service.book(caller.id, request)

@router.get("", response_model=AppointmentListResponse)
async def list_appointments(
    status: Optional[AppointmentStatus] = Query(None),
    caller: Caller = Depends(get_current_caller),
    service: AppointmentService = Depends(get_appointment_service)
):
    return await service.view_appointments(caller.id, caller.role, status)

@router.patch("/{appointment_id}/cancel", response_model=MessageResponse)
async def cancel_appointment(
    appointment_id: UUID,
    caller: Caller = Depends(get_current_caller),
    service: AppointmentService = Depends(get_appointment_service)
):
    return await service.cancel(appointment_id, caller.id, caller.role)

@router.patch("/reschedule", response_model=AppointmentRescheduleResponse)
async def reschedule_appointments(
    request: AppointmentRescheduleRequest,
    caller: Caller = Depends(require_doctor),
    service: AppointmentService = Depends(get_appointment_service)
):
    return await service.reschedule(caller.id, request)
