from datetime import datetime
from uuid import uuid4

import pytest
from sqlmodel import select

from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.db.models import Appointment, AppointmentStatus, AuditLog, TimeSlot, TimeSlotStatus, UserRole
from app.schemas.appointment import AppointmentCreate
from app.services.appointment_service import AppointmentService

from conftest import reload


@pytest.mark.asyncio
async def test_cancel_frees_one_place(session, clock, make_doctor, make_patient, make_availability, make_slot):
    doctor = await make_doctor()
    slot = await make_slot(await make_availability(doctor), "09:00", "09:30", max_patients=1)
    patient = await make_patient()
    service = AppointmentService(session, clock)
    booked = await service.book(patient.id, AppointmentCreate(doctor_id=doctor.id, timeslot_id=slot.id))
    assert (await reload(session, TimeSlot, slot.id)).status == TimeSlotStatus.BOOKED

    response = await service.cancel(booked.data.id, patient.id, UserRole.PATIENT)

    assert response.message == "Appointment cancelled successfully"
    assert (await reload(session, Appointment, booked.data.id)).status == AppointmentStatus.CANCELLED
    assert (await reload(session, TimeSlot, slot.id)).status == TimeSlotStatus.AVAILABLE

    audit = (await session.execute(select(AuditLog))).scalars().all()
    assert [entry.action for entry in audit] == ["appointment.cancel"]
    assert audit[0].payload["appointment_id"] == str(booked.data.id)


@pytest.mark.asyncio
async def test_assigned_doctor_may_cancel(
    session, clock, make_doctor, make_patient, make_availability, make_slot, make_appointment
):
    doctor = await make_doctor()
    slot = await make_slot(await make_availability(doctor), "09:00", "09:30")
    appointment = await make_appointment(slot, await make_patient())

    await AppointmentService(session, clock).cancel(appointment.id, doctor.id, UserRole.DOCTOR)

    assert (await reload(session, Appointment, appointment.id)).status == AppointmentStatus.CANCELLED


@pytest.mark.asyncio
async def test_strangers_cannot_cancel(
    session, clock, make_doctor, make_patient, make_availability, make_slot, make_appointment
):
    doctor = await make_doctor()
    other_doctor = await make_doctor("Dr. Iyer")
    slot = await make_slot(await make_availability(doctor), "09:00", "09:30")
    appointment = await make_appointment(slot, await make_patient("A"))
    other_patient = await make_patient("B")
    service = AppointmentService(session, clock)

    with pytest.raises(ConflictError):
        await service.cancel(appointment.id, other_patient.id, UserRole.PATIENT)
    with pytest.raises(ConflictError):
        await service.cancel(appointment.id, other_doctor.id, UserRole.DOCTOR)
    # The patient's id presented as a doctor is still a stranger
    with pytest.raises(ConflictError):
        await service.cancel(appointment.id, appointment.patient_id, UserRole.DOCTOR)


@pytest.mark.asyncio
async def test_cancel_twice(session, clock, make_doctor, make_patient, make_availability, make_slot, make_appointment):
    doctor = await make_doctor()
    slot = await make_slot(await make_availability(doctor), "09:00", "09:30")
    patient = await make_patient()
    appointment = await make_appointment(slot, patient)
    service = AppointmentService(session, clock)

    await service.cancel(appointment.id, patient.id, UserRole.PATIENT)
    with pytest.raises(ConflictError) as exc:
        await service.cancel(appointment.id, patient.id, UserRole.PATIENT)
    assert "already" in exc.value.message


@pytest.mark.asyncio
async def test_cancel_at_consulting_start_is_too_late(
    session, clock, make_doctor, make_patient, make_availability, make_slot, make_appointment
):
    doctor = await make_doctor()
    slot = await make_slot(await make_availability(doctor), "09:00", "09:30")
    patient = await make_patient()
    appointment = await make_appointment(slot, patient)
    appointment_id = appointment.id
    clock.now = datetime(2030, 1, 14, 9, 0)

    with pytest.raises(ConflictError):
        await AppointmentService(session, clock).cancel(appointment_id, patient.id, UserRole.PATIENT)

    assert (await reload(session, Appointment, appointment_id)).status == AppointmentStatus.SCHEDULED


@pytest.mark.asyncio
async def test_cancel_unknown_appointment(session, clock, make_patient):
    patient = await make_patient()
    with pytest.raises(NotFoundError):
        await AppointmentService(session, clock).cancel(uuid4(), patient.id, UserRole.PATIENT)


@pytest.mark.asyncio
async def test_view_orders_by_status_filter(
    session, clock, make_doctor, make_patient, make_availability, make_slot, make_appointment
):
    doctor = await make_doctor("Dr. Rao")
    patient = await make_patient("Asha")
    slot = await make_slot(await make_availability(doctor), "09:00", "10:00", max_patients=10)
    later = await make_appointment(slot, patient, scheduled_on=datetime(2030, 1, 14, 9, 40))
    earlier = await make_appointment(slot, patient, scheduled_on=datetime(2030, 1, 14, 9, 10))
    done = await make_appointment(
        slot, patient, scheduled_on=datetime(2030, 1, 14, 9, 20), status=AppointmentStatus.COMPLETED
    )
    service = AppointmentService(session, clock)

    upcoming = await service.view_appointments(patient.id, UserRole.PATIENT, AppointmentStatus.SCHEDULED)
    assert [a.id for a in upcoming.data] == [earlier.id, later.id]
    assert upcoming.total == 2
    assert upcoming.data[0].counterpart_name == "Dr. Rao"
    assert upcoming.data[0].slot_label == "09:00-10:00"

    everything = await service.view_appointments(patient.id, UserRole.PATIENT)
    assert [a.id for a in everything.data] == [later.id, done.id, earlier.id]

    completed = await service.view_appointments(patient.id, UserRole.PATIENT, AppointmentStatus.COMPLETED)
    assert [a.id for a in completed.data] == [done.id]


@pytest.mark.asyncio
async def test_doctor_view_names_patients(
    session, clock, make_doctor, make_patient, make_availability, make_slot, make_appointment
):
    doctor = await make_doctor()
    slot = await make_slot(await make_availability(doctor), "09:00", "09:30")
    patient = await make_patient("Ravi")
    await make_appointment(slot, patient)

    response = await AppointmentService(session, clock).view_appointments(doctor.id, UserRole.DOCTOR)

    assert response.total == 1
    assert response.data[0].counterpart_id == patient.id
    assert response.data[0].counterpart_name == "Ravi"


@pytest.mark.asyncio
async def test_view_rejects_unknown_role(session, clock, make_patient):
    patient = await make_patient()
    with pytest.raises(ValidationError):
        await AppointmentService(session, clock).view_appointments(patient.id, "admin")
