from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple
from uuid import UUID

from sqlalchemy import and_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select, func

from app.core.config import settings
from app.core.exceptions import ConflictError, NotFoundError, ValidationError, service_operation
from app.core.logger import logger
from app.core.utils import combine, format_hhmm, format_range, shift, to_minutes
from app.db.models import Appointment, AppointmentStatus, Availability, Patient, Session, TimeSlot, TimeSlotStatus
from app.schemas.schedule import (
    MovedAppointment,
    MoveResult,
    RescheduleAction,
    RescheduleResponse,
    SchedulingType,
    ShiftedSlot,
    ShiftResult,
    ShrinkResult,
    UnifiedRescheduleRequest,
)
from app.services.appointment_service import booked_sessions
from app.services.audit_service import record_audit
from app.services.availability_service import AvailabilityService
from app.services.slot_service import SlotService, reporting_minutes


@dataclass
class SlotOpening:
    """A live slot with spare capacity, as found by the capacity search."""
    slot: TimeSlot
    availability: Availability
    booked: int

    @property
    def free(self) -> int:
        return self.slot.max_patients - self.booked


def total_free(openings: Iterable[SlotOpening]) -> int:
    return sum(opening.free for opening in openings)


def _session_key(appointment: Appointment, opening: SlotOpening) -> Tuple[UUID, date, Session]:
    return appointment.patient_id, opening.availability.date, opening.availability.session


def allocate(
    appointments: List[Appointment],
    openings: List[SlotOpening],
    busy: Optional[Set[Tuple[UUID, date, Session]]] = None
) -> Optional[List[Tuple[Appointment, SlotOpening]]]:
    """
    Assign appointments, in the given order, to the first opening that still
    has room. Returns None when the openings run out first.

    ``busy`` holds (patient, date, session) keys the patients already occupy;
    when given, an appointment never lands in a session its patient holds.
    """
    remaining = [opening.free for opening in openings]
    taken = set(busy) if busy is not None else None
    plan = []
    for appointment in appointments:
        for index, opening in enumerate(openings):
            if remaining[index] == 0:
                continue
            if taken is not None and _session_key(appointment, opening) in taken:
                continue
            break
        else:
            return None
        if taken is not None:
            taken.add(_session_key(appointment, opening))
        plan.append((appointment, opening))
        remaining[index] -= 1
    return plan


class ScheduleService:
    def __init__(self, session: AsyncSession, clock: Callable[[], datetime] = datetime.now):
        self.session = session
        self.slots = SlotService(session)
        self.availabilities = AvailabilityService(session, clock)

    @service_operation("Error processing reschedule request")
    async def unified_reschedule(self, doctor_id: UUID, data: UnifiedRescheduleRequest) -> RescheduleResponse:
        try:
            scheduling_type = SchedulingType(data.scheduling_type)
        except ValueError:
            allowed = ", ".join(t.value for t in SchedulingType)
            raise ValidationError(f"Invalid scheduling type '{data.scheduling_type}'. Use one of: {allowed}")

        if scheduling_type == SchedulingType.SLOT_SLOT:
            if not data.source_slot_id or not data.target_slot_id:
                raise ValidationError("source_slot_id and target_slot_id are required for slot_slot")
            return await self.move_slots(
                doctor_id,
                data.availability_id,
                data.source_slot_id,
                data.target_slot_id,
                appointment_id=data.appointment_id,
                reason=data.reason
            )

        if scheduling_type == SchedulingType.TIME_SHIFT:
            if data.new_start_time is None or data.new_end_time is None or data.shift_minutes is None:
                raise ValidationError("new_start_time, new_end_time and shift_minutes are required for time_shift")
            return await self.shift_time(
                doctor_id,
                data.availability_id,
                data.new_start_time,
                data.new_end_time,
                data.shift_minutes,
                reason=data.reason
            )

        if data.new_start_time is None and data.new_end_time is None:
            raise ValidationError("new_start_time or new_end_time is required for shrinking")
        return await self.shrink_schedule(
            doctor_id,
            data.availability_id,
            new_start=data.new_start_time,
            new_end=data.new_end_time,
            reason=data.reason
        )

    async def _patient_names(self, patient_ids: Iterable[UUID]) -> Dict[UUID, str]:
        patient_ids = list(set(patient_ids))
        if not patient_ids:
            return {}
        result = await self.session.execute(select(Patient.id, Patient.name).where(Patient.id.in_(patient_ids)))
        return {patient_id: name for patient_id, name in result.all()}

    async def _open_slots(
        self,
        availability: Availability,
        start: Optional[time] = None,
        end: Optional[time] = None,
        exclude: Iterable[UUID] = ()
    ) -> List[SlotOpening]:
        """AVAILABLE, live slots of one availability that still have room, by start time."""
        filters = [
            TimeSlot.availability_id == availability.id,
            TimeSlot.is_deleted == False,
            TimeSlot.status == TimeSlotStatus.AVAILABLE
        ]
        if start is not None:
            filters.append(TimeSlot.start_time >= start)
        if end is not None:
            filters.append(TimeSlot.end_time <= end)
        exclude = list(exclude)
        if exclude:
            filters.append(TimeSlot.id.not_in(exclude))

        # Lock first; FOR UPDATE cannot be combined with GROUP BY
        await self.session.execute(select(TimeSlot.id).where(*filters).with_for_update())

        booked = func.count(Appointment.id)
        stmt = select(TimeSlot, booked).outerjoin(
            Appointment,
            and_(
                Appointment.time_slot_id == TimeSlot.id,
                Appointment.status == AppointmentStatus.SCHEDULED
            )
        ).where(*filters).group_by(TimeSlot.id).having(
            booked < TimeSlot.max_patients
        ).order_by(TimeSlot.start_time)
        result = await self.session.execute(stmt)
        return [SlotOpening(slot=slot, availability=availability, booked=count) for slot, count in result.all()]

    async def _future_availabilities(self, doctor_id: UUID, after: Availability, limit: int) -> List[Availability]:
        stmt = select(Availability).where(
            Availability.doctor_id == doctor_id,
            Availability.date > after.date,
            Availability.is_deleted == False
        ).order_by(Availability.date, Availability.consulting_start_time).limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    @service_operation("Error moving appointments")
    async def move_slots(
        self,
        doctor_id: UUID,
        availability_id: UUID,
        source_slot_id: UUID,
        target_slot_id: UUID,
        appointment_id: Optional[UUID] = None,
        reason: Optional[str] = None
    ) -> RescheduleResponse:
        availability = await self.availabilities.get_owned_availability(doctor_id, availability_id)
        if source_slot_id == target_slot_id:
            raise ValidationError("Source and target slots must be different")

        # Lock both slots in a stable order so opposite moves cannot deadlock
        locked = {}
        for slot_id in sorted((source_slot_id, target_slot_id), key=str):
            locked[slot_id] = await self.slots.get_owned_slot(doctor_id, slot_id, lock=True)
        source, target = locked[source_slot_id], locked[target_slot_id]

        if source.availability_id != availability.id:
            raise NotFoundError("Source slot does not belong to this availability")
        if target.status == TimeSlotStatus.BLOCKED:
            raise ConflictError("Target slot is blocked")

        stmt = select(Appointment).where(
            Appointment.time_slot_id == source.id,
            Appointment.status == AppointmentStatus.SCHEDULED
        )
        if appointment_id:
            stmt = stmt.where(Appointment.id == appointment_id)
        stmt = stmt.order_by(Appointment.scheduled_on).with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        appointments = list(result.scalars().all())
        if not appointments:
            raise NotFoundError("No appointments found to move")

        target_booked = await self.slots.count_active(target.id)
        available = max(0, target.max_patients - target_booked)
        if available < len(appointments):
            alternatives = await self._open_slots(availability, exclude=[source.id, target.id])
            raise ConflictError({
                "message": f"Target slot has insufficient capacity. Available: {available}, Required: {len(appointments)}",
                "error_code": "INSUFFICIENT_CAPACITY",
                "required": len(appointments),
                "available": available,
                "alternative_slots": [
                    {
                        "timeslot_id": str(opening.slot.id),
                        "time": format_range(opening.slot.start_time, opening.slot.end_time),
                        "available_spots": opening.free,
                    }
                    for opening in alternatives
                    if opening.free >= len(appointments)
                ],
            })

        target_availability = await self.session.get(Availability, target.availability_id)
        taken = await booked_sessions(
            self.session, doctor_id, (a.patient_id for a in appointments), exclude=[a.id for a in appointments]
        )
        clashing = [
            a for a in appointments
            if (a.patient_id, target_availability.date, target_availability.session) in taken
        ]
        if clashing:
            raise ConflictError({
                "message": "Patient already has an appointment with this doctor in the target session",
                "error_code": "DUPLICATE_SESSION_BOOKING",
                "appointment_ids": [str(a.id) for a in clashing],
            })

        for index, appointment in enumerate(appointments):
            appointment.time_slot_id = target.id
            appointment.scheduled_on = combine(
                target_availability.date,
                format_hhmm(reporting_minutes(target, target_booked + index))
            )
            if reason:
                appointment.notes = f"{appointment.notes or ''} {reason}".strip()
            appointment.updated_at = datetime.utcnow()
            self.session.add(appointment)

        await self.session.flush()
        await self.slots.recompute_statuses([source.id, target.id])

        names = await self._patient_names(a.patient_id for a in appointments)
        data = MoveResult(
            doctor_id=doctor_id,
            availability_id=availability.id,
            moved_appointments=len(appointments),
            source_slot=format_range(source.start_time, source.end_time),
            target_slot=format_range(target.start_time, target.end_time),
            appointments=[
                MovedAppointment(appointment_id=a.id, patient_name=names.get(a.patient_id))
                for a in appointments
            ]
        )
        record_audit(self.session, "schedule.move", doctor_id, data.model_dump(mode="json"))
        await self.session.commit()

        logger.info(f"Moved {len(appointments)} appointments from slot {source.id} to {target.id}")
        return RescheduleResponse(
            message="Appointments moved successfully",
            scheduling_type=SchedulingType.SLOT_SLOT,
            data=data
        )

    @service_operation("Error shifting schedule")
    async def shift_time(
        self,
        doctor_id: UUID,
        availability_id: UUID,
        new_start: time,
        new_end: time,
        shift_minutes: int,
        reason: Optional[str] = None
    ) -> RescheduleResponse:
        availability = await self.availabilities.get_owned_availability(doctor_id, availability_id, lock=True)

        if not shift_minutes:
            raise ValidationError("shift_minutes is required and must be non-zero")
        if to_minutes(new_start) >= to_minutes(new_end):
            raise ValidationError("New start time must be before new end time")

        stmt = select(TimeSlot).where(
            TimeSlot.availability_id == availability.id,
            TimeSlot.is_deleted == False
        ).order_by(TimeSlot.start_time).with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        slots = list(result.scalars().all())
        if not slots:
            raise NotFoundError("No time slots found for this availability")

        # Work out every new time before writing any of them
        plan = []
        for slot in slots:
            try:
                start = time.fromisoformat(shift(slot.start_time, shift_minutes))
                end = time.fromisoformat(shift(slot.end_time, shift_minutes))
            except ValueError as exc:
                raise ValidationError(str(exc))
            if to_minutes(start) < to_minutes(new_start) or to_minutes(end) > to_minutes(new_end):
                raise ValidationError(
                    f"Shifted slot {format_range(start, end)} falls outside the new schedule {format_range(new_start, new_end)}"
                )
            plan.append((slot, start, end))

        stmt = select(Appointment).where(
            Appointment.time_slot_id.in_([slot.id for slot in slots]),
            Appointment.status == AppointmentStatus.SCHEDULED
        ).with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        appointments = list(result.scalars().all())
        per_slot: Dict[UUID, int] = {}
        for appointment in appointments:
            per_slot[appointment.time_slot_id] = per_slot.get(appointment.time_slot_id, 0) + 1

        old_schedule = format_range(availability.consulting_start_time, availability.consulting_end_time)
        availability.consulting_start_time = new_start
        availability.consulting_end_time = new_end
        availability.updated_at = datetime.utcnow()
        self.session.add(availability)

        details = []
        for slot, start, end in plan:
            details.append(ShiftedSlot(
                slot_id=slot.id,
                old_time=format_range(slot.start_time, slot.end_time),
                new_time=format_range(start, end),
                appointments_count=per_slot.get(slot.id, 0)
            ))
            slot.start_time = start
            slot.end_time = end
            slot.updated_at = datetime.utcnow()
            self.session.add(slot)

        # Reporting times move with their slots
        for appointment in appointments:
            appointment.scheduled_on = appointment.scheduled_on + timedelta(minutes=shift_minutes)
            if reason:
                appointment.notes = f"{appointment.notes or ''} {reason}".strip()
            appointment.updated_at = datetime.utcnow()
            self.session.add(appointment)

        data = ShiftResult(
            doctor_id=doctor_id,
            availability_id=availability.id,
            shift_minutes=shift_minutes,
            old_schedule=old_schedule,
            new_schedule=format_range(new_start, new_end),
            slots_updated=len(details),
            appointments_updated=len(appointments),
            slot_details=details
        )
        record_audit(self.session, "schedule.shift", doctor_id, data.model_dump(mode="json"))
        await self.session.commit()

        logger.info(f"Availability {availability.id} shifted by {shift_minutes} minutes ({old_schedule} -> {data.new_schedule})")
        return RescheduleResponse(
            message="Schedule time shifted successfully",
            scheduling_type=SchedulingType.TIME_SHIFT,
            data=data
        )

    async def _plan_reassignment(
        self,
        doctor_id: UUID,
        availability: Availability,
        start: time,
        end: time,
        affected: List[Appointment]
    ) -> Tuple[Optional[str], Optional[List[Tuple[Appointment, SlotOpening]]], int]:
        """
        Search same day, then the next day, then several future days for room
        for every affected appointment. A tier is used only if each patient
        gets a place outside the sessions they already hold with this doctor.
        Returns (strategy, plan, best capacity seen); strategy and plan are
        None when no tier works.
        """
        busy = await booked_sessions(
            self.session, doctor_id, (a.patient_id for a in affected), exclude=[a.id for a in affected]
        )
        required = len(affected)

        def attempt(openings: List[SlotOpening]):
            if total_free(openings) < required:
                return None
            return allocate(affected, openings, busy)

        same_day = await self._open_slots(availability, start, end)
        plan = attempt(same_day)
        if plan:
            return "same_day", plan, total_free(same_day)
        best = total_free(same_day)

        future = await self._future_availabilities(doctor_id, availability, settings.MULTI_DAY_SEARCH_LIMIT)
        if future:
            next_day = await self._open_slots(future[0])
            plan = attempt(next_day)
            if plan:
                return "next_day", plan, total_free(next_day)
            best = max(best, total_free(next_day))

        collected: List[SlotOpening] = []
        for day in future:
            collected.extend(await self._open_slots(day))
            plan = attempt(collected)
            if plan:
                return "multi_day", plan, total_free(collected)
        return None, None, max(best, total_free(collected))

    @service_operation("Error shrinking schedule")
    async def shrink_schedule(
        self,
        doctor_id: UUID,
        availability_id: UUID,
        new_start: Optional[time] = None,
        new_end: Optional[time] = None,
        reason: Optional[str] = None
    ) -> RescheduleResponse:
        availability = await self.availabilities.get_owned_availability(doctor_id, availability_id, lock=True)

        if new_start is None and new_end is None:
            raise ValidationError("new_start_time or new_end_time is required for shrinking")
        if new_end is not None and to_minutes(new_end) >= to_minutes(availability.consulting_end_time):
            raise ValidationError("New end time must be earlier than the current consulting end time")
        if new_start is not None and to_minutes(new_start) <= to_minutes(availability.consulting_start_time):
            raise ValidationError("New start time must be later than the current consulting start time")
        start = new_start if new_start is not None else availability.consulting_start_time
        end = new_end if new_end is not None else availability.consulting_end_time
        if to_minutes(start) >= to_minutes(end):
            raise ValidationError("New start time must be before new end time")

        stmt = select(TimeSlot).where(
            TimeSlot.availability_id == availability.id,
            TimeSlot.is_deleted == False
        ).order_by(TimeSlot.start_time).with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        displaced = [
            slot for slot in result.scalars().all()
            if to_minutes(slot.start_time) < to_minutes(start) or to_minutes(slot.end_time) > to_minutes(end)
        ]
        displaced_by_id = {slot.id: slot for slot in displaced}

        affected: List[Appointment] = []
        if displaced:
            # First come, first served
            stmt = select(Appointment).where(
                Appointment.time_slot_id.in_(list(displaced_by_id)),
                Appointment.status == AppointmentStatus.SCHEDULED
            ).order_by(
                Appointment.scheduled_on, Appointment.created_at
            ).with_for_update().execution_options(populate_existing=True)
            result = await self.session.execute(stmt)
            affected = list(result.scalars().all())

        strategy = None
        actions: List[RescheduleAction] = []
        touched: List[UUID] = []
        if affected:
            strategy, plan, capacity = await self._plan_reassignment(doctor_id, availability, start, end, affected)
            if plan is None:
                logger.warning(
                    f"Shrink of availability {availability.id} refused: "
                    f"{len(affected)} appointments affected, capacity {capacity}"
                )
                raise ConflictError({
                    "message": "Cannot shrink schedule - insufficient capacity for rescheduling",
                    "error_code": "INSUFFICIENT_CAPACITY",
                    "affected_appointments": len(affected),
                    "available_capacity": capacity,
                    "recommendation": "Please create more future slots or choose different shrinking parameters",
                })

            names = await self._patient_names(a.patient_id for a in affected)
            assigned: Dict[UUID, int] = {}
            for appointment, opening in plan:
                slot = opening.slot
                index = opening.booked + assigned.get(slot.id, 0)
                assigned[slot.id] = assigned.get(slot.id, 0) + 1

                old_slot = displaced_by_id[appointment.time_slot_id]
                new_time = format_range(slot.start_time, slot.end_time)
                other_day = opening.availability.id != availability.id
                note = f"Rescheduled to {new_time} on {opening.availability.date.isoformat()}" if other_day \
                    else f"Rescheduled to {new_time}"
                actions.append(RescheduleAction(
                    appointment_id=appointment.id,
                    patient_name=names.get(appointment.patient_id),
                    current_time=format_range(old_slot.start_time, old_slot.end_time),
                    new_timeslot_id=slot.id,
                    new_time=new_time,
                    new_date=opening.availability.date if other_day else None,
                    reason=note
                ))

                appointment.time_slot_id = slot.id
                appointment.scheduled_on = combine(opening.availability.date, format_hhmm(reporting_minutes(slot, index)))
                appointment.notes = " ".join(part for part in (appointment.notes, reason, note) if part)
                appointment.updated_at = datetime.utcnow()
                self.session.add(appointment)
                touched.append(slot.id)

        # Reassignments are staged; now the shrink itself
        availability.consulting_start_time = start
        availability.consulting_end_time = end
        availability.updated_at = datetime.utcnow()
        self.session.add(availability)
        for slot in displaced:
            slot.status = TimeSlotStatus.BLOCKED
            slot.is_deleted = True
            slot.updated_at = datetime.utcnow()
            self.session.add(slot)

        await self.session.flush()
        await self.slots.recompute_statuses(touched)

        data = ShrinkResult(
            doctor_id=doctor_id,
            availability_id=availability.id,
            new_start_time=format_hhmm(to_minutes(start)),
            new_end_time=format_hhmm(to_minutes(end)),
            appointments_rescheduled=len(actions),
            strategy=strategy,
            slots_deactivated=len(displaced),
            reschedule_details=actions
        )
        record_audit(self.session, "schedule.shrink", doctor_id, data.model_dump(mode="json"))
        await self.session.commit()

        logger.info(
            f"Availability {availability.id} shrunk to {format_range(start, end)}: "
            f"{len(actions)} rescheduled ({strategy or 'none'}), {len(displaced)} slots deactivated"
        )
        message = "Schedule shrunk successfully with FCFS rescheduling" if actions \
            else "Schedule shrunk successfully - no appointments affected"
        return RescheduleResponse(message=message, scheduling_type=SchedulingType.SHRINKING, data=data)
