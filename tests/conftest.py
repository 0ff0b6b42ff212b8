"""
Shared pytest fixtures.

Service tests run against an in-memory SQLite database (aiosqlite) with the
same SQLModel metadata as production. Row locks are a no-op there, so these
tests cover ordering and all-or-nothing behaviour, not lock contention.
"""
from datetime import datetime, time, timedelta
from typing import AsyncGenerator, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.core.config import settings
from app.core.utils import combine, format_hhmm
from app.db.models import (
    SQLModel,
    Appointment,
    AppointmentStatus,
    Availability,
    Doctor,
    Patient,
    Session,
    TimeSlot,
    TimeSlotStatus,
)
from app.services.slot_service import SlotService, reporting_minutes

# A Monday, well before the first consultation of the day
NOW = datetime(2030, 1, 14, 8, 0)
TODAY = NOW.date()


class FakeClock:
    """Settable stand-in for datetime.now."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session(engine) -> AsyncGenerator[AsyncSession, None]:
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as session:
        yield session


async def reload(session: AsyncSession, model, obj_id):
    """Read a row back from the database, discarding any in-memory state."""
    return await session.get(model, obj_id, populate_existing=True)


@pytest.fixture
def make_doctor(session):
    async def _make(name: str = "Dr. Rao") -> Doctor:
        doctor = Doctor(name=name, specialization="General Medicine")
        session.add(doctor)
        await session.commit()
        return doctor
    return _make


@pytest.fixture
def make_patient(session):
    async def _make(name: str = "Asha") -> Patient:
        patient = Patient(name=name, phone="9000000000")
        session.add(patient)
        await session.commit()
        return patient
    return _make


@pytest.fixture
def make_availability(session):
    async def _make(
        doctor: Doctor,
        day=TODAY,
        start: str = "09:00",
        end: str = "10:00",
        session_tag: Session = Session.MORNING,
        booking_start_at: Optional[datetime] = None,
        booking_end_at: Optional[datetime] = None,
        is_deleted: bool = False,
    ) -> Availability:
        availability = Availability(
            doctor_id=doctor.id,
            date=day,
            consulting_start_time=time.fromisoformat(start),
            consulting_end_time=time.fromisoformat(end),
            session=session_tag,
            booking_start_at=booking_start_at or NOW - timedelta(hours=1),
            booking_end_at=booking_end_at or settings.BOOKING_END_SENTINEL,
            is_deleted=is_deleted,
        )
        session.add(availability)
        await session.commit()
        return availability
    return _make


@pytest.fixture
def make_slot(session):
    async def _make(
        availability: Availability,
        start: str,
        end: str,
        max_patients: int = 2,
        status: TimeSlotStatus = TimeSlotStatus.AVAILABLE,
    ) -> TimeSlot:
        slot = TimeSlot(
            availability_id=availability.id,
            doctor_id=availability.doctor_id,
            start_time=time.fromisoformat(start),
            end_time=time.fromisoformat(end),
            max_patients=max_patients,
            status=status,
        )
        session.add(slot)
        await session.commit()
        return slot
    return _make


@pytest.fixture
def make_appointment(session):
    """Insert a SCHEDULED appointment at the slot's next reporting time, bypassing admission."""
    async def _make(
        slot: TimeSlot,
        patient: Patient,
        scheduled_on: Optional[datetime] = None,
        status: AppointmentStatus = AppointmentStatus.SCHEDULED,
    ) -> Appointment:
        slots = SlotService(session)
        if scheduled_on is None:
            availability = await session.get(Availability, slot.availability_id)
            booked = await slots.count_active(slot.id)
            scheduled_on = combine(availability.date, format_hhmm(reporting_minutes(slot, booked)))
        appointment = Appointment(
            doctor_id=slot.doctor_id,
            patient_id=patient.id,
            time_slot_id=slot.id,
            status=status,
            scheduled_on=scheduled_on,
            reason="checkup",
        )
        session.add(appointment)
        await session.flush()
        await slots.recompute_status(slot.id)
        await session.commit()
        return appointment
    return _make
