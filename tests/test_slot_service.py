from datetime import datetime, time
from uuid import uuid4

import pytest

from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.db.models import Appointment, AppointmentStatus, TimeSlot, TimeSlotStatus
from app.schemas.time_slot import TimeSlotCreate, TimeSlotUpdate
from app.services.slot_service import SlotService, derive_slot_status, reporting_minutes

from conftest import reload


@pytest.mark.parametrize("current,active,max_patients,expected", [
    (TimeSlotStatus.AVAILABLE, 0, 2, TimeSlotStatus.AVAILABLE),
    (TimeSlotStatus.AVAILABLE, 2, 2, TimeSlotStatus.BOOKED),
    (TimeSlotStatus.BOOKED, 1, 2, TimeSlotStatus.AVAILABLE),
    (TimeSlotStatus.BLOCKED, 0, 2, TimeSlotStatus.BLOCKED),
    (TimeSlotStatus.BLOCKED, 2, 2, TimeSlotStatus.BOOKED),
])
def test_derive_slot_status(current, active, max_patients, expected):
    assert derive_slot_status(current, active, max_patients) == expected


def test_reporting_minutes_staggers_patients():
    slot = TimeSlot(start_time=time(9, 0), end_time=time(9, 30), max_patients=3)
    assert [reporting_minutes(slot, i) for i in range(3)] == [540, 550, 560]


@pytest.mark.asyncio
async def test_create_slot(session, make_doctor, make_availability):
    doctor = await make_doctor()
    availability = await make_availability(doctor)

    response = await SlotService(session).create_slot(doctor.id, TimeSlotCreate(
        availability_id=availability.id, start_time=time(9, 0), end_time=time(9, 30), max_patients=4
    ))

    assert response.data.status == TimeSlotStatus.AVAILABLE
    assert response.data.doctor_id == doctor.id
    assert response.data.max_patients == 4


@pytest.mark.asyncio
@pytest.mark.parametrize("start,end", [(time(8, 30), time(9, 30)), (time(9, 45), time(10, 15)), (time(9, 30), time(9, 30))])
async def test_create_slot_outside_consulting_hours(session, make_doctor, make_availability, start, end):
    doctor = await make_doctor()
    availability = await make_availability(doctor)

    with pytest.raises(ValidationError):
        await SlotService(session).create_slot(doctor.id, TimeSlotCreate(
            availability_id=availability.id, start_time=start, end_time=end, max_patients=1
        ))


@pytest.mark.asyncio
async def test_create_slot_on_foreign_availability(session, make_doctor, make_availability):
    owner = await make_doctor()
    other = await make_doctor("Dr. Iyer")
    availability = await make_availability(owner)

    with pytest.raises(NotFoundError):
        await SlotService(session).create_slot(other.id, TimeSlotCreate(
            availability_id=availability.id, start_time=time(9, 0), end_time=time(9, 30), max_patients=1
        ))


def test_create_slot_capacity_bounds():
    with pytest.raises(ValueError):
        TimeSlotCreate(availability_id=uuid4(), start_time=time(9, 0), end_time=time(9, 30), max_patients=0)
    with pytest.raises(ValueError):
        TimeSlotCreate(availability_id=uuid4(), start_time=time(9, 0), end_time=time(9, 30), max_patients=51)


@pytest.mark.asyncio
async def test_update_slot_capacity_below_bookings_marks_booked(
    session, make_doctor, make_patient, make_availability, make_slot, make_appointment
):
    doctor = await make_doctor()
    availability = await make_availability(doctor)
    slot = await make_slot(availability, "09:00", "09:30", max_patients=3)
    await make_appointment(slot, await make_patient("A"))
    await make_appointment(slot, await make_patient("B"))

    response = await SlotService(session).update_slot(doctor.id, slot.id, TimeSlotUpdate(max_patients=2))

    assert response.data.status == TimeSlotStatus.BOOKED


@pytest.mark.asyncio
async def test_update_slot_capacity_cannot_drop_below_bookings(
    session, make_doctor, make_patient, make_availability, make_slot, make_appointment
):
    doctor = await make_doctor()
    availability = await make_availability(doctor)
    slot = await make_slot(availability, "09:00", "09:30", max_patients=2)
    await make_appointment(slot, await make_patient("A"))
    await make_appointment(slot, await make_patient("B"))
    slot_id = slot.id

    with pytest.raises(ConflictError) as exc:
        await SlotService(session).update_slot(doctor.id, slot_id, TimeSlotUpdate(max_patients=1))

    assert exc.value.error_code == "CAPACITY_BELOW_BOOKINGS"
    assert exc.value.detail["active"] == 2
    assert exc.value.detail["requested"] == 1
    stored = await reload(session, TimeSlot, slot_id)
    assert stored.max_patients == 2
    assert await SlotService(session).count_active(slot_id) <= stored.max_patients


@pytest.mark.asyncio
async def test_update_slot_times_are_checked(session, make_doctor, make_availability, make_slot):
    doctor = await make_doctor()
    availability = await make_availability(doctor)
    slot = await make_slot(availability, "09:00", "09:30")

    with pytest.raises(ValidationError):
        await SlotService(session).update_slot(doctor.id, slot.id, TimeSlotUpdate(end_time=time(10, 30)))


@pytest.mark.asyncio
async def test_block_is_sticky_until_unblocked(
    session, make_doctor, make_patient, make_availability, make_slot, make_appointment
):
    doctor = await make_doctor()
    availability = await make_availability(doctor)
    slot = await make_slot(availability, "09:00", "09:30", max_patients=2)
    service = SlotService(session)

    blocked = await service.set_blocked(doctor.id, slot.id, True)
    assert blocked.data.status == TimeSlotStatus.BLOCKED

    # A booking change that leaves room does not lift the block
    await make_appointment(slot, await make_patient())
    assert (await reload(session, TimeSlot, slot.id)).status == TimeSlotStatus.BLOCKED

    unblocked = await service.set_blocked(doctor.id, slot.id, False)
    assert unblocked.data.status == TimeSlotStatus.AVAILABLE
    assert unblocked.message == "Time slot reactivated successfully"


@pytest.mark.asyncio
async def test_unblock_full_slot_becomes_booked(
    session, make_doctor, make_patient, make_availability, make_slot, make_appointment
):
    doctor = await make_doctor()
    availability = await make_availability(doctor)
    slot = await make_slot(availability, "09:00", "09:30", max_patients=1)
    await make_appointment(slot, await make_patient())
    service = SlotService(session)

    await service.set_blocked(doctor.id, slot.id, True)
    response = await service.set_blocked(doctor.id, slot.id, False)

    assert response.data.status == TimeSlotStatus.BOOKED


@pytest.mark.asyncio
async def test_delete_slot_is_soft(session, make_doctor, make_availability, make_slot):
    doctor = await make_doctor()
    availability = await make_availability(doctor)
    slot = await make_slot(availability, "09:00", "09:30")
    service = SlotService(session)

    response = await service.delete_slot(doctor.id, slot.id)

    assert response.timeslot_id == slot.id
    assert (await reload(session, TimeSlot, slot.id)).is_deleted is True
    with pytest.raises(NotFoundError):
        await service.get_owned_slot(doctor.id, slot.id)


@pytest.mark.asyncio
async def test_list_available_filters_and_resyncs(
    session, make_doctor, make_patient, make_availability, make_slot, make_appointment
):
    doctor = await make_doctor()
    availability = await make_availability(doctor)
    open_slot = await make_slot(availability, "09:00", "09:15", max_patients=2)
    full_slot = await make_slot(availability, "09:15", "09:30", max_patients=1)
    await make_slot(availability, "09:30", "09:45", status=TimeSlotStatus.BLOCKED)
    # Stored as booked, but nobody is in it
    stale_slot = await make_slot(availability, "09:45", "10:00", status=TimeSlotStatus.BOOKED)
    deleted_slot = await make_slot(availability, "09:45", "10:00")
    deleted_slot.is_deleted = True
    session.add(deleted_slot)
    await session.commit()
    await make_appointment(open_slot, await make_patient("A"))
    await make_appointment(full_slot, await make_patient("B"))

    response = await SlotService(session).list_available(doctor.id)

    assert response.total == 2
    assert [s.id for s in response.data] == [open_slot.id, stale_slot.id]
    first = response.data[0]
    assert first.current_bookings == 1
    assert first.available_capacity == 1
    assert first.is_full is False
    assert (await reload(session, TimeSlot, stale_slot.id)).status == TimeSlotStatus.AVAILABLE


@pytest.mark.asyncio
async def test_list_available_paginates_after_filtering(session, make_doctor, make_availability, make_slot):
    doctor = await make_doctor()
    availability = await make_availability(doctor)
    for start, end in [("09:00", "09:15"), ("09:15", "09:30"), ("09:30", "09:45")]:
        await make_slot(availability, start, end)

    response = await SlotService(session).list_available(doctor.id, page=2, limit=2)

    assert response.total == 3
    assert len(response.data) == 1
    assert response.data[0].start_time == time(9, 30)


@pytest.mark.asyncio
async def test_list_available_rejects_bad_paging(session, make_doctor):
    doctor = await make_doctor()
    with pytest.raises(ValidationError):
        await SlotService(session).list_available(doctor.id, page=0)


@pytest.mark.asyncio
async def test_list_available_marks_stale_full_slot_booked(
    session, make_doctor, make_patient, make_availability, make_slot
):
    doctor = await make_doctor()
    availability = await make_availability(doctor)
    slot = await make_slot(availability, "09:00", "09:30", max_patients=1)
    # Inserted directly, so the stored status still says AVAILABLE
    session.add(Appointment(
        doctor_id=doctor.id,
        patient_id=(await make_patient()).id,
        time_slot_id=slot.id,
        status=AppointmentStatus.SCHEDULED,
        scheduled_on=datetime(2030, 1, 14, 9, 0),
    ))
    await session.commit()

    response = await SlotService(session).list_available(doctor.id)

    assert response.total == 0
    assert (await reload(session, TimeSlot, slot.id)).status == TimeSlotStatus.BOOKED


@pytest.mark.asyncio
async def test_list_available_does_not_rewrite_current_statuses(session, make_doctor, make_availability, make_slot):
    doctor = await make_doctor()
    slot = await make_slot(await make_availability(doctor), "09:00", "09:30")
    before = (await reload(session, TimeSlot, slot.id)).updated_at

    response = await SlotService(session).list_available(doctor.id)

    assert response.total == 1
    assert (await reload(session, TimeSlot, slot.id)).updated_at == before
