from datetime import date, datetime
from typing import Callable, List, Tuple
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from app.core.config import settings
from app.core.exceptions import NotFoundError, ValidationError, service_operation
from app.core.logger import logger
from app.core.utils import combine, iter_weekday_dates, to_minutes, to_naive_local
from app.db.models import Availability, Doctor
from app.schemas.availability import (
    AvailabilityCreate,
    AvailabilityDeletedResponse,
    AvailabilityListResponse,
    AvailabilityResponse,
    AvailabilityUpdate,
    AvailabilityUpdatedResponse,
)


def is_open_until_slot_start(booking_end_at: datetime) -> bool:
    """True when no explicit booking close was configured."""
    return booking_end_at >= settings.BOOKING_END_SENTINEL


class AvailabilityService:
    def __init__(self, session: AsyncSession, clock: Callable[[], datetime] = datetime.now):
        self.session = session
        self.clock = clock

    async def get_owned_availability(
        self,
        doctor_id: UUID,
        availability_id: UUID,
        lock: bool = False
    ) -> Availability:
        stmt = select(Availability).where(
            Availability.id == availability_id,
            Availability.doctor_id == doctor_id,
            Availability.is_deleted == False
        )
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        availability = result.scalars().first()
        if not availability:
            raise NotFoundError("Availability not found or does not belong to this doctor")
        return availability

    def _resolve_booking_window(self, data: AvailabilityCreate) -> Tuple[datetime, datetime, List[date]]:
        now = self.clock()
        today = combine(now.date(), "00:00")

        # Booking opens immediately unless told otherwise
        booking_start_at = to_naive_local(data.booking_start_at) if data.booking_start_at else now
        if booking_start_at < today:
            raise ValidationError("Booking cannot start in the past")

        if data.date:
            if data.date < now.date():
                raise ValidationError("Consultation date cannot be in the past")
            dates = [data.date]
        elif data.weekdays:
            dates = list(iter_weekday_dates(
                [day.value for day in data.weekdays],
                now.date(),
                settings.AVAILABILITY_LOOKAHEAD_WEEKS
            ))
        else:
            raise ValidationError("Either date or weekdays must be provided")

        if data.booking_end_at:
            booking_end_at = to_naive_local(data.booking_end_at)
            for day in dates:
                consulting_start_at = combine(day, data.consulting_start_time)
                if booking_end_at >= consulting_start_at:
                    raise ValidationError(
                        f"Booking end time must be before consulting start time ({consulting_start_at.isoformat(sep=' ')})"
                    )
            if booking_start_at >= booking_end_at:
                raise ValidationError("Booking start time must be before booking end time")
        else:
            # Patients may book right up to the start of the slot
            booking_end_at = settings.BOOKING_END_SENTINEL

        return booking_start_at, booking_end_at, dates

    @service_operation("Error creating availability")
    async def create_availability(self, doctor_id: UUID, data: AvailabilityCreate) -> AvailabilityListResponse:
        doctor = await self.session.get(Doctor, doctor_id)
        if not doctor:
            raise NotFoundError("Doctor not found")

        if to_minutes(data.consulting_start_time) >= to_minutes(data.consulting_end_time):
            raise ValidationError("Consulting start time must be before consulting end time")

        booking_start_at, booking_end_at, dates = self._resolve_booking_window(data)

        weekdays = [day.value for day in data.weekdays] if data.weekdays and not data.date else None
        availabilities = []
        for day in dates:
            availability = Availability(
                doctor_id=doctor_id,
                date=day,
                consulting_start_time=data.consulting_start_time,
                consulting_end_time=data.consulting_end_time,
                session=data.session,
                weekdays=weekdays,
                booking_start_at=booking_start_at,
                booking_end_at=booking_end_at
            )
            self.session.add(availability)
            availabilities.append(availability)

        await self.session.commit()
        for availability in availabilities:
            await self.session.refresh(availability)

        logger.info(f"Created {len(availabilities)} availabilities for doctor {doctor_id}")
        return AvailabilityListResponse(
            message="Availability created successfully",
            data=[AvailabilityResponse.model_validate(a) for a in availabilities]
        )

    @staticmethod
    def _check_invariants(values: dict) -> None:
        if to_minutes(values["consulting_start_time"]) >= to_minutes(values["consulting_end_time"]):
            raise ValidationError("Consulting start time must be before consulting end time")
        if values["booking_start_at"] >= values["booking_end_at"]:
            raise ValidationError("Booking start time must be before booking end time")
        if not is_open_until_slot_start(values["booking_end_at"]):
            consulting_start_at = combine(values["date"], values["consulting_start_time"])
            if values["booking_end_at"] >= consulting_start_at:
                raise ValidationError("Booking end time must be before consulting start time")

    @service_operation("Error updating availability")
    async def update_availability(
        self,
        doctor_id: UUID,
        availability_id: UUID,
        data: AvailabilityUpdate
    ) -> AvailabilityUpdatedResponse:
        availability = await self.get_owned_availability(doctor_id, availability_id, lock=True)

        update_data = data.model_dump(exclude_unset=True, exclude_none=True)
        if "weekdays" in update_data:
            update_data["weekdays"] = [day.value for day in data.weekdays]
        for key in ("booking_start_at", "booking_end_at"):
            if key in update_data:
                update_data[key] = to_naive_local(update_data[key])

        # Validate the merged record before touching the persistent one
        self._check_invariants({**availability.model_dump(), **update_data})

        for key, value in update_data.items():
            setattr(availability, key, value)
        availability.updated_at = datetime.utcnow()

        self.session.add(availability)
        await self.session.commit()
        await self.session.refresh(availability)

        logger.info(f"Availability {availability_id} updated: {sorted(update_data)}")
        return AvailabilityUpdatedResponse(
            message="Availability updated successfully",
            data=AvailabilityResponse.model_validate(availability)
        )

    @service_operation("Error deleting availability")
    async def delete_availability(self, doctor_id: UUID, availability_id: UUID) -> AvailabilityDeletedResponse:
        availability = await self.get_owned_availability(doctor_id, availability_id)

        # Slots are left alone; they are deleted separately
        availability.is_deleted = True
        availability.updated_at = datetime.utcnow()
        self.session.add(availability)
        await self.session.commit()

        logger.info(f"Availability {availability_id} soft-deleted")
        return AvailabilityDeletedResponse(
            message="Availability deleted successfully",
            availability_id=availability_id
        )
