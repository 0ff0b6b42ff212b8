from datetime import date, datetime, timedelta
from typing import Callable, Iterable, List, Optional, Set, Tuple
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from app.core.exceptions import ConflictError, NotFoundError, ValidationError, service_operation
from app.core.logger import logger
from app.core.utils import combine, format_hhmm, format_range
from app.db.models import (
    Appointment,
    AppointmentStatus,
    Availability,
    Doctor,
    Patient,
    Session,
    TimeSlot,
    TimeSlotStatus,
    UserRole,
)
from app.schemas.appointment import (
    AppointmentCreate,
    AppointmentListResponse,
    AppointmentMoveResult,
    AppointmentRescheduleRequest,
    AppointmentRescheduleResponse,
    AppointmentResponse,
    AppointmentShiftResult,
    AppointmentView,
    BookingResponse,
    MessageResponse,
    RescheduleType,
    ShiftedAppointment,
    SlotSummary,
)
from app.services.audit_service import record_audit
from app.services.booking_window import validate_booking_window
from app.services.slot_service import SlotService, reporting_minutes

_LIST_MESSAGES = {
    None: "your all appointments",
    AppointmentStatus.SCHEDULED: "your upcoming appointments",
    AppointmentStatus.COMPLETED: "your completed appointments",
    AppointmentStatus.CANCELLED: "your cancelled appointments",
}


async def booked_sessions(
    session: AsyncSession,
    doctor_id: UUID,
    patient_ids: Iterable[UUID],
    exclude: Iterable[UUID] = ()
) -> Set[Tuple[UUID, date, Session]]:
    """
    (patient, date, session) keys already held by SCHEDULED appointments
    with this doctor, ignoring the appointments in ``exclude``.
    """
    patient_ids = list(set(patient_ids))
    if not patient_ids:
        return set()
    stmt = select(Appointment.patient_id, Availability.date, Availability.session).join(
        TimeSlot, Appointment.time_slot_id == TimeSlot.id
    ).join(
        Availability, TimeSlot.availability_id == Availability.id
    ).where(
        Appointment.patient_id.in_(patient_ids),
        Appointment.doctor_id == doctor_id,
        Appointment.status == AppointmentStatus.SCHEDULED
    )
    exclude = list(exclude)
    if exclude:
        stmt = stmt.where(Appointment.id.not_in(exclude))
    result = await session.execute(stmt)
    return {(patient_id, day, tag) for patient_id, day, tag in result.all()}


class AppointmentService:
    def __init__(self, session: AsyncSession, clock: Callable[[], datetime] = datetime.now):
        self.session = session
        self.clock = clock
        self.slots = SlotService(session)

    @service_operation("Error creating appointment")
    async def book(self, patient_id: UUID, data: AppointmentCreate) -> BookingResponse:
        # 1. Slot, locked until commit so concurrent bookings queue up behind us
        stmt = select(TimeSlot).where(
            TimeSlot.id == data.timeslot_id,
            TimeSlot.is_deleted == False
        ).with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        slot = result.scalars().first()
        if not slot:
            raise NotFoundError("Time slot not found")

        # 2. Status
        if slot.status != TimeSlotStatus.AVAILABLE:
            raise ConflictError("Time slot is no longer available")

        # 3. Booking window
        availability = await self.session.get(Availability, slot.availability_id)
        if not availability:
            raise NotFoundError("Availability not found")
        now = self.clock()
        validate_booking_window(availability, slot, now)

        # 4. Ownership
        if slot.doctor_id != data.doctor_id:
            raise ValidationError("Time slot does not belong to this doctor")

        # 5. Patient, locked so one patient's bookings are admitted one at a time
        result = await self.session.execute(
            select(Patient).where(Patient.id == patient_id).with_for_update()
        )
        patient = result.scalars().first()
        if not patient:
            raise NotFoundError("Patient not found")

        # 6. One booking per doctor, date and session
        taken = await booked_sessions(self.session, slot.doctor_id, [patient_id])
        if (patient_id, availability.date, availability.session) in taken:
            raise ConflictError("You already have an appointment with this doctor in this session.")

        # 7. Capacity
        booked = await self.slots.count_active(slot.id)
        if booked >= slot.max_patients:
            raise ConflictError("This time slot is already full.")

        # 8. Staggered reporting time
        scheduled_on = combine(availability.date, format_hhmm(reporting_minutes(slot, booked)))

        appointment = Appointment(
            doctor_id=slot.doctor_id,
            patient_id=patient_id,
            time_slot_id=slot.id,
            status=AppointmentStatus.SCHEDULED,
            scheduled_on=scheduled_on,
            reason=data.reason,
            notes=data.notes
        )
        self.session.add(appointment)
        await self.session.flush()

        # 9. Commit together with the slot's new status
        await self.slots.recompute_status(slot.id)
        await self.session.commit()
        await self.session.refresh(appointment)

        logger.info(
            f"Appointment {appointment.id} booked: patient={patient_id} slot={slot.id} "
            f"scheduled_on={scheduled_on.isoformat()} ({booked + 1}/{slot.max_patients})"
        )
        return BookingResponse(
            message="Appointment booked successfully",
            data=AppointmentResponse(
                **AppointmentResponse.model_validate(appointment).model_dump(
                    exclude={"date", "session", "slot_start_time", "slot_end_time"}
                ),
                date=availability.date,
                session=availability.session,
                slot_start_time=slot.start_time,
                slot_end_time=slot.end_time
            )
        )
    @service_operation("Error fetching appointments")
    async def view_appointments(
        self,
        user_id: UUID,
        role: UserRole,
        status: Optional[AppointmentStatus] = None
    ) -> AppointmentListResponse:
        if role == UserRole.PATIENT:
            counterpart = Doctor
            stmt = select(Appointment, Doctor.name, TimeSlot).join(
                Doctor, Appointment.doctor_id == Doctor.id
            ).where(Appointment.patient_id == user_id)
        elif role == UserRole.DOCTOR:
            counterpart = Patient
            stmt = select(Appointment, Patient.name, TimeSlot).join(
                Patient, Appointment.patient_id == Patient.id
            ).where(Appointment.doctor_id == user_id)
        else:
            raise ValidationError("Invalid user role")

        stmt = stmt.join(TimeSlot, Appointment.time_slot_id == TimeSlot.id)
        if status:
            stmt = stmt.where(Appointment.status == status)

        # Upcoming first for scheduled, most recent first otherwise
        if status == AppointmentStatus.SCHEDULED:
            stmt = stmt.order_by(Appointment.scheduled_on.asc())
        else:
            stmt = stmt.order_by(Appointment.scheduled_on.desc())

        result = await self.session.execute(stmt)
        data = []
        for appointment, counterpart_name, slot in result.all():
            data.append(AppointmentView(
                id=appointment.id,
                status=appointment.status,
                scheduled_on=appointment.scheduled_on,
                reason=appointment.reason,
                notes=appointment.notes,
                time_slot_id=appointment.time_slot_id,
                slot_label=format_range(slot.start_time, slot.end_time),
                counterpart_id=appointment.doctor_id if counterpart is Doctor else appointment.patient_id,
                counterpart_name=counterpart_name
            ))

        return AppointmentListResponse(message=_LIST_MESSAGES[status], total=len(data), data=data)

    @service_operation("Error cancelling appointment")
    async def cancel(self, appointment_id: UUID, requester_id: UUID, role: UserRole) -> MessageResponse:
        stmt = select(Appointment).where(
            Appointment.id == appointment_id
        ).with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        appointment = result.scalars().first()
        if not appointment:
            raise NotFoundError("Appointment not found")

        if role == UserRole.PATIENT and appointment.patient_id != requester_id:
            raise ConflictError("You can only cancel your own appointments")
        if role == UserRole.DOCTOR and appointment.doctor_id != requester_id:
            raise ConflictError("You can only cancel your own appointments")
        if role not in (UserRole.PATIENT, UserRole.DOCTOR):
            raise ConflictError("You can only cancel your own appointments")

        if appointment.status != AppointmentStatus.SCHEDULED:
            raise ConflictError("Appointment already cancelled or completed")

        slot = await self.session.get(TimeSlot, appointment.time_slot_id)
        availability = await self.session.get(Availability, slot.availability_id)
        consult_start_at = combine(availability.date, slot.start_time)
        if self.clock() >= consult_start_at:
            raise ConflictError("You can only cancel appointments before the consultation starts")

        appointment.status = AppointmentStatus.CANCELLED
        appointment.updated_at = datetime.utcnow()
        self.session.add(appointment)
        await self.session.flush()

        # Frees one unit of capacity
        await self.slots.recompute_status(slot.id)
        record_audit(self.session, "appointment.cancel", requester_id, {
            "appointment_id": str(appointment.id),
            "time_slot_id": str(slot.id),
            "role": role.value,
        })
        await self.session.commit()

        logger.info(f"Appointment {appointment_id} cancelled by {role.value} {requester_id}")
        return MessageResponse(message="Appointment cancelled successfully")

    @service_operation("Error rescheduling appointment")
    async def reschedule(self, doctor_id: UUID, data: AppointmentRescheduleRequest) -> AppointmentRescheduleResponse:
        if data.appointment_id and data.new_timeslot_id:
            return await self._move_to_slot(doctor_id, data.appointment_id, data.new_timeslot_id, data.reason)
        return await self._shift_reporting_times(doctor_id, data)

    async def _lock_slot(self, slot_id: UUID) -> Optional[TimeSlot]:
        stmt = select(TimeSlot).where(
            TimeSlot.id == slot_id
        ).with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def _same_day_alternatives(self, doctor_id: UUID, day: date, exclude: Iterable[UUID]) -> List[dict]:
        stmt = select(TimeSlot).join(
            Availability, TimeSlot.availability_id == Availability.id
        ).where(
            TimeSlot.doctor_id == doctor_id,
            TimeSlot.is_deleted == False,
            TimeSlot.status == TimeSlotStatus.AVAILABLE,
            TimeSlot.id.not_in(list(exclude)),
            Availability.date == day,
            Availability.is_deleted == False
        ).order_by(TimeSlot.start_time)
        result = await self.session.execute(stmt)
        slots = list(result.scalars().all())
        counts = await self.slots.count_active_many(slot.id for slot in slots)
        return [
            {
                "timeslot_id": str(slot.id),
                "time": format_range(slot.start_time, slot.end_time),
                "available_spots": slot.max_patients - counts[slot.id],
                "max_patients": slot.max_patients,
            }
            for slot in slots
            if counts[slot.id] < slot.max_patients
        ]

    async def _move_to_slot(
        self,
        doctor_id: UUID,
        appointment_id: UUID,
        new_slot_id: UUID,
        reason: Optional[str]
    ) -> AppointmentRescheduleResponse:
        stmt = select(Appointment).where(
            Appointment.id == appointment_id,
            Appointment.doctor_id == doctor_id,
            Appointment.status == AppointmentStatus.SCHEDULED
        ).with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        appointment = result.scalars().first()
        if not appointment:
            raise NotFoundError("Appointment not found or not authorized")
        if appointment.time_slot_id == new_slot_id:
            raise ValidationError("Appointment is already in this time slot")

        # Both slots in a stable order so opposite moves cannot deadlock
        locked = {}
        for slot_id in sorted((appointment.time_slot_id, new_slot_id), key=str):
            locked[slot_id] = await self._lock_slot(slot_id)
        old_slot, new_slot = locked[appointment.time_slot_id], locked[new_slot_id]
        if not new_slot or new_slot.doctor_id != doctor_id or new_slot.is_deleted:
            raise NotFoundError("New time slot not found")
        if new_slot.status == TimeSlotStatus.BLOCKED:
            raise ConflictError("New time slot is not available")

        old_availability = await self.session.get(Availability, old_slot.availability_id)
        new_availability = await self.session.get(Availability, new_slot.availability_id)

        booked = await self.slots.count_active(new_slot.id)
        if booked >= new_slot.max_patients:
            patient = await self.session.get(Patient, appointment.patient_id)
            raise ConflictError({
                "message": "Target time slot is full. Please choose an alternative.",
                "error_code": "SLOT_FULL",
                "target_slot": {
                    "id": str(new_slot.id),
                    "time": format_range(new_slot.start_time, new_slot.end_time),
                    "date": new_availability.date.isoformat(),
                    "current_capacity": new_slot.max_patients,
                },
                "appointment_details": {
                    "id": str(appointment.id),
                    "patient_name": patient.name if patient else None,
                    "current_slot": {
                        "id": str(old_slot.id),
                        "time": format_range(old_slot.start_time, old_slot.end_time),
                        "date": old_availability.date.isoformat(),
                    },
                },
                "alternative_slots": await self._same_day_alternatives(
                    doctor_id, new_availability.date, exclude=[new_slot.id, old_slot.id]
                ),
                "suggestions": [
                    "Choose one of the alternative time slots",
                    "Contact patient to discuss new timing",
                    "Consider extending consultation hours using scheduling adjustments",
                ],
            })

        taken = await booked_sessions(self.session, doctor_id, [appointment.patient_id], exclude=[appointment.id])
        if (appointment.patient_id, new_availability.date, new_availability.session) in taken:
            raise ConflictError({
                "message": "Patient already has an appointment with this doctor in the target session",
                "error_code": "DUPLICATE_SESSION_BOOKING",
                "appointment_ids": [str(appointment.id)],
            })

        appointment.time_slot_id = new_slot.id
        appointment.scheduled_on = combine(new_availability.date, format_hhmm(reporting_minutes(new_slot, booked)))
        if reason:
            appointment.notes = f"Rescheduled: {reason}. {appointment.notes or ''}".strip()
        appointment.updated_at = datetime.utcnow()
        self.session.add(appointment)
        await self.session.flush()
        await self.slots.recompute_statuses([old_slot.id, new_slot.id])

        data = AppointmentMoveResult(
            appointment_id=appointment.id,
            old_slot=SlotSummary(
                id=old_slot.id,
                time=format_range(old_slot.start_time, old_slot.end_time),
                date=old_availability.date
            ),
            new_slot=SlotSummary(
                id=new_slot.id,
                time=format_range(new_slot.start_time, new_slot.end_time),
                date=new_availability.date
            ),
            new_scheduled_time=appointment.scheduled_on,
            reason=reason or "No reason provided"
        )
        record_audit(self.session, "appointment.reschedule", doctor_id, data.model_dump(mode="json"))
        await self.session.commit()

        logger.info(f"Appointment {appointment.id} moved from slot {old_slot.id} to {new_slot.id}")
        return AppointmentRescheduleResponse(message="Appointment rescheduled successfully", data=data)

    async def _shift_reporting_times(
        self,
        doctor_id: UUID,
        data: AppointmentRescheduleRequest
    ) -> AppointmentRescheduleResponse:
        if not data.shift_minutes or not data.reschedule_type:
            raise ValidationError("shift_minutes and reschedule_type are required for time-shift rescheduling")

        stmt = select(Appointment).where(
            Appointment.doctor_id == doctor_id,
            Appointment.status == AppointmentStatus.SCHEDULED
        )
        if data.appointment_ids:
            stmt = stmt.where(Appointment.id.in_(list(dict.fromkeys(data.appointment_ids))))
        else:
            # Nothing selected means everything of today
            stmt = stmt.join(
                TimeSlot, Appointment.time_slot_id == TimeSlot.id
            ).join(
                Availability, TimeSlot.availability_id == Availability.id
            ).where(Availability.date == self.clock().date())
        stmt = stmt.order_by(Appointment.scheduled_on).with_for_update(of=Appointment).execution_options(
            populate_existing=True
        )
        result = await self.session.execute(stmt)
        appointments = list(result.scalars().all())
        if not appointments:
            raise NotFoundError("No appointments found")

        minutes = data.shift_minutes if data.reschedule_type == RescheduleType.POSTPONE else -data.shift_minutes
        delta = timedelta(minutes=minutes)

        # Every new time is checked before any is written
        for appointment in appointments:
            if (appointment.scheduled_on + delta).date() != appointment.scheduled_on.date():
                raise ValidationError(
                    f"Shifting {appointment.scheduled_on.isoformat()} by {minutes} minutes leaves the day"
                )

        shifted = []
        for appointment in appointments:
            old = appointment.scheduled_on
            appointment.scheduled_on = old + delta
            if data.reason:
                appointment.notes = f"Rescheduled: {data.reason}. {appointment.notes or ''}".strip()
            appointment.updated_at = datetime.utcnow()
            self.session.add(appointment)
            shifted.append(ShiftedAppointment(
                appointment_id=appointment.id,
                old_scheduled_on=old,
                new_scheduled_on=appointment.scheduled_on
            ))

        result_data = AppointmentShiftResult(
            reschedule_type=data.reschedule_type,
            shift_minutes=data.shift_minutes,
            appointments_updated=len(shifted),
            appointments=shifted
        )
        record_audit(self.session, "appointment.shift", doctor_id, result_data.model_dump(mode="json"))
        await self.session.commit()

        logger.info(f"Shifted {len(shifted)} appointments of doctor {doctor_id} by {minutes} minutes")
        return AppointmentRescheduleResponse(message="Appointments rescheduled successfully", data=result_data)
