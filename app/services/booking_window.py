import math
from datetime import datetime

from app.core.exceptions import ConflictError
from app.core.utils import combine, format_range
from app.db.models import Availability, TimeSlot
from app.services.availability_service import is_open_until_slot_start


def _minutes_between(earlier: datetime, later: datetime) -> int:
    return math.ceil((later - earlier).total_seconds() / 60)


def validate_booking_window(availability: Availability, slot: TimeSlot, now: datetime) -> None:
    """
    Raise ConflictError unless ``now`` lies inside the availability's
    booking window for this slot.

    The window is ``[booking_start_at, booking_end_at]``, both ends
    inclusive. A sentinel booking end means the window closes when the
    slot starts.
    """
    appointment_at = combine(availability.date, slot.start_time)

    if now >= appointment_at:
        raise ConflictError("Cannot book appointment for past timeslots")

    if not availability.booking_start_at or not availability.booking_end_at:
        raise ConflictError(
            "Booking window is not configured for this availability. Please contact the doctor."
        )

    booking_start = availability.booking_start_at
    booking_end = availability.booking_end_at
    open_until_start = is_open_until_slot_start(booking_end)

    if booking_start >= booking_end:
        raise ConflictError(
            "Invalid booking window configuration: start time must be before end time"
        )

    if not open_until_start and booking_end >= appointment_at:
        raise ConflictError(
            "Invalid booking window configuration: booking window should close before appointment time"
        )

    effective_end = appointment_at if open_until_start else booking_end
    appointment_details = {
        "date": availability.date.isoformat(),
        "time": format_range(slot.start_time, slot.end_time),
        "session": availability.session.value,
    }

    if now < booking_start:
        raise ConflictError({
            "message": "Booking window has not opened yet. You can only book appointments within the designated booking window.",
            "error_code": "BOOKING_WINDOW_NOT_OPEN",
            "current_time": now.isoformat(),
            "booking_window": {
                "opens_at": booking_start.isoformat(),
                "closes_at": effective_end.isoformat(),
                "minutes_until_opening": _minutes_between(now, booking_start),
            },
            "appointment_details": appointment_details,
        })

    if now > effective_end:
        raise ConflictError({
            "message": "Booking window has closed. You can only book appointments within the designated booking window.",
            "error_code": "BOOKING_WINDOW_CLOSED",
            "current_time": now.isoformat(),
            "booking_window": {
                "opened_at": booking_start.isoformat(),
                "closed_at": effective_end.isoformat(),
                "minutes_after_closure": _minutes_between(effective_end, now),
            },
            "appointment_details": appointment_details,
            "suggestions": [
                "Contact the doctor for emergency appointments",
                "Check for other available dates with open booking windows",
                "Book appointments in advance during booking windows",
            ],
        })
