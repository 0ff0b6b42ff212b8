from datetime import datetime
from typing import Dict, Iterable, List, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select, func

from app.core.config import settings
from app.core.exceptions import ConflictError, NotFoundError, ValidationError, service_operation
from app.core.logger import logger
from app.core.utils import to_minutes
from app.db.models import Appointment, AppointmentStatus, Availability, TimeSlot, TimeSlotStatus
from app.schemas.time_slot import (
    AvailableSlot,
    SlotListResponse,
    TimeSlotCreate,
    TimeSlotDeletedResponse,
    TimeSlotResponse,
    TimeSlotSavedResponse,
    TimeSlotUpdate,
)


def derive_slot_status(current: TimeSlotStatus, active_count: int, max_patients: int) -> TimeSlotStatus:
    """
    Status a slot should have for its number of SCHEDULED appointments.

    A full slot is BOOKED. Otherwise BLOCKED is kept (only an explicit
    unblock clears it) and everything else is AVAILABLE.
    """
    if active_count >= max_patients:
        return TimeSlotStatus.BOOKED
    if current == TimeSlotStatus.BLOCKED:
        return TimeSlotStatus.BLOCKED
    return TimeSlotStatus.AVAILABLE


def reporting_minutes(slot: TimeSlot, patient_index: int) -> int:
    """Staggered reporting time (minutes since midnight) for the n-th patient of a slot."""
    start = to_minutes(slot.start_time)
    duration = to_minutes(slot.end_time) - start
    per_patient = duration // slot.max_patients
    return start + patient_index * per_patient


class SlotService:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def count_active(self, slot_id: UUID) -> int:
        stmt = select(func.count(Appointment.id)).where(
            Appointment.time_slot_id == slot_id,
            Appointment.status == AppointmentStatus.SCHEDULED
        )
        result = await self.session.execute(stmt)
        return result.scalar() or 0

    async def count_active_many(self, slot_ids: Iterable[UUID]) -> Dict[UUID, int]:
        slot_ids = list(slot_ids)
        if not slot_ids:
            return {}
        stmt = select(Appointment.time_slot_id, func.count(Appointment.id)).where(
            Appointment.time_slot_id.in_(slot_ids),
            Appointment.status == AppointmentStatus.SCHEDULED
        ).group_by(Appointment.time_slot_id)
        result = await self.session.execute(stmt)
        counts = {slot_id: 0 for slot_id in slot_ids}
        counts.update({slot_id: count for slot_id, count in result.all()})
        return counts

    async def recompute_status(self, slot_id: UUID) -> Optional[TimeSlotStatus]:
        slot = await self.session.get(TimeSlot, slot_id)
        if not slot:
            return None

        await self.session.flush()
        active = await self.count_active(slot_id)
        new_status = derive_slot_status(slot.status, active, slot.max_patients)

        # Write only on change
        if slot.status != new_status:
            slot.status = new_status
            slot.updated_at = datetime.utcnow()
            self.session.add(slot)
            await self.session.flush()
        return new_status

    async def recompute_statuses(self, slot_ids: Iterable[UUID]) -> None:
        seen = set()
        for slot_id in slot_ids:
            if slot_id in seen:
                continue
            seen.add(slot_id)
            await self.recompute_status(slot_id)

    async def get_owned_slot(self, doctor_id: UUID, slot_id: UUID, lock: bool = False) -> TimeSlot:
        stmt = select(TimeSlot).where(
            TimeSlot.id == slot_id,
            TimeSlot.doctor_id == doctor_id,
            TimeSlot.is_deleted == False
        )
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        slot = result.scalars().first()
        if not slot:
            raise NotFoundError("Time slot not found")
        return slot

    async def _get_owned_availability(self, doctor_id: UUID, availability_id: UUID) -> Availability:
        stmt = select(Availability).where(
            Availability.id == availability_id,
            Availability.doctor_id == doctor_id,
            Availability.is_deleted == False
        )
        result = await self.session.execute(stmt)
        availability = result.scalars().first()
        if not availability:
            raise NotFoundError("Availability not found")
        return availability

    @staticmethod
    def _check_slot_times(slot_start, slot_end, availability: Availability) -> None:
        if to_minutes(slot_start) >= to_minutes(slot_end):
            raise ValidationError("Slot start time must be before slot end time")
        if (to_minutes(slot_start) < to_minutes(availability.consulting_start_time)
                or to_minutes(slot_end) > to_minutes(availability.consulting_end_time)):
            raise ValidationError("Slot must lie within the consulting hours of its availability")

    @service_operation("Error creating timeslot")
    async def create_slot(self, doctor_id: UUID, data: TimeSlotCreate) -> TimeSlotSavedResponse:
        availability = await self._get_owned_availability(doctor_id, data.availability_id)
        self._check_slot_times(data.start_time, data.end_time, availability)

        slot = TimeSlot(
            availability_id=availability.id,
            doctor_id=doctor_id,
            start_time=data.start_time,
            end_time=data.end_time,
            max_patients=data.max_patients,
            status=TimeSlotStatus.AVAILABLE
        )
        self.session.add(slot)
        await self.session.commit()
        await self.session.refresh(slot)

        logger.info(f"Slot {slot.id} created for availability {availability.id}")
        return TimeSlotSavedResponse(
            message="Time slot created successfully",
            data=TimeSlotResponse.model_validate(slot)
        )

    @service_operation("Error updating timeslot")
    async def update_slot(self, doctor_id: UUID, slot_id: UUID, data: TimeSlotUpdate) -> TimeSlotSavedResponse:
        slot = await self.get_owned_slot(doctor_id, slot_id, lock=True)

        update_data = data.model_dump(exclude_unset=True, exclude_none=True)
        if "start_time" in update_data or "end_time" in update_data:
            availability = await self.session.get(Availability, slot.availability_id)
            self._check_slot_times(
                update_data.get("start_time", slot.start_time),
                update_data.get("end_time", slot.end_time),
                availability
            )
        if "max_patients" in update_data:
            if update_data["max_patients"] > settings.MAX_PATIENTS_PER_SLOT:
                raise ValidationError(f"max_patients cannot exceed {settings.MAX_PATIENTS_PER_SLOT}")
            active = await self.count_active(slot.id)
            if update_data["max_patients"] < active:
                raise ConflictError({
                    "message": f"Slot already holds {active} scheduled appointments; "
                               f"max_patients cannot be lowered to {update_data['max_patients']}",
                    "error_code": "CAPACITY_BELOW_BOOKINGS",
                    "required": active,
                    "active": active,
                    "requested": update_data["max_patients"],
                })

        for key, value in update_data.items():
            setattr(slot, key, value)
        slot.updated_at = datetime.utcnow()
        self.session.add(slot)

        # Capacity may have changed under existing bookings
        await self.recompute_status(slot.id)
        await self.session.commit()
        await self.session.refresh(slot)

        logger.info(f"Slot {slot.id} updated: {update_data}")
        return TimeSlotSavedResponse(
            message="Time slot updated successfully",
            data=TimeSlotResponse.model_validate(slot)
        )

    @service_operation("Error changing timeslot block state")
    async def set_blocked(self, doctor_id: UUID, slot_id: UUID, blocked: bool) -> TimeSlotSavedResponse:
        slot = await self.get_owned_slot(doctor_id, slot_id, lock=True)

        if blocked:
            slot.status = TimeSlotStatus.BLOCKED
            slot.updated_at = datetime.utcnow()
            self.session.add(slot)
        else:
            # Reactivation re-derives from capacity instead of keeping the block
            active = await self.count_active(slot.id)
            slot.status = derive_slot_status(TimeSlotStatus.AVAILABLE, active, slot.max_patients)
            slot.updated_at = datetime.utcnow()
            self.session.add(slot)

        await self.session.commit()
        await self.session.refresh(slot)

        logger.info(f"Slot {slot.id} {'blocked' if blocked else 'unblocked'}, status={slot.status.value}")
        return TimeSlotSavedResponse(
            message="Time slot blocked successfully" if blocked else "Time slot reactivated successfully",
            data=TimeSlotResponse.model_validate(slot)
        )

    @service_operation("Error deleting timeslot")
    async def delete_slot(self, doctor_id: UUID, slot_id: UUID) -> TimeSlotDeletedResponse:
        slot = await self.get_owned_slot(doctor_id, slot_id)

        slot.is_deleted = True
        slot.updated_at = datetime.utcnow()
        self.session.add(slot)
        await self.session.commit()

        logger.info(f"Slot {slot_id} soft-deleted")
        return TimeSlotDeletedResponse(message="Time slot deleted successfully", timeslot_id=slot_id)

    async def _resync_statuses(self, slot_ids: List[UUID]) -> Dict[UUID, int]:
        """Re-derive statuses of the given slots under lock; returns the counts seen under that lock."""
        stmt = select(TimeSlot).where(
            TimeSlot.id.in_(slot_ids)
        ).order_by(TimeSlot.id).with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        slots = list(result.scalars().all())
        counts = await self.count_active_many(slot.id for slot in slots)

        changed = 0
        for slot in slots:
            new_status = derive_slot_status(slot.status, counts[slot.id], slot.max_patients)
            if slot.status != new_status:
                slot.status = new_status
                slot.updated_at = datetime.utcnow()
                self.session.add(slot)
                changed += 1
        # Commit either way to release the locks
        await self.session.commit()
        if changed:
            logger.info(f"Re-synced status of {changed} slots")
        return counts

    @service_operation("Error retrieving time slots")
    async def list_available(self, doctor_id: UUID, page: int = 1, limit: Optional[int] = None) -> SlotListResponse:
        limit = limit or settings.DEFAULT_PAGE_LIMIT
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive")

        stmt = select(TimeSlot, Availability).join(
            Availability, TimeSlot.availability_id == Availability.id
        ).where(
            TimeSlot.doctor_id == doctor_id,
            TimeSlot.is_deleted == False
        ).order_by(Availability.date, TimeSlot.start_time)
        result = await self.session.execute(stmt)
        rows = result.all()

        counts = await self.count_active_many(slot.id for slot, _ in rows)

        # Keep stored statuses in line with the derived value while we are here
        stale = [
            slot.id for slot, _ in rows
            if slot.status != derive_slot_status(slot.status, counts[slot.id], slot.max_patients)
        ]
        if stale:
            counts.update(await self._resync_statuses(stale))

        available: List[AvailableSlot] = []
        for slot, availability in rows:
            active = counts[slot.id]
            if active >= slot.max_patients or slot.status == TimeSlotStatus.BLOCKED:
                continue
            available.append(AvailableSlot(
                **TimeSlotResponse.model_validate(slot).model_dump(),
                date=availability.date,
                session=availability.session,
                current_bookings=active,
                available_capacity=slot.max_patients - active,
                is_full=active >= slot.max_patients
            ))

        skip = (page - 1) * limit
        return SlotListResponse(
            message="Available time slots retrieved successfully",
            total=len(available),
            page=page,
            limit=limit,
            data=available[skip:skip + limit]
        )
