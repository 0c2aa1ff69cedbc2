"""
OPD scheduling helpers: time slots, queue numbers and booking.

Time slots are "HH:MM-HH:MM" strings covering [start, end).
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Tuple, Union

from hospital_billing.errors import PreconditionError
from hospital_billing.models import Appointment, parse, to_datetime, to_document, utcnow
from hospital_billing.store import DocumentStore, Transaction, where

logger = logging.getLogger(__name__)

# Statuses that free the slot again
_RELEASED = ("cancelled", "no-show")


def generate_time_slots(start_hour: int = 9, end_hour: int = 17, slot_minutes: int = 30) -> List[str]:
    slots = []
    start = start_hour * 60
    while start + slot_minutes <= end_hour * 60:
        end = start + slot_minutes
        slots.append(f"{start // 60:02d}:{start % 60:02d}-{end // 60:02d}:{end % 60:02d}")
        start = end
    return slots


def parse_time_slot(time_slot: str) -> Tuple[int, int]:
    """Minutes since midnight for the start and end of a slot."""
    try:
        start, end = time_slot.split("-")
        sh, sm = (int(part) for part in start.split(":"))
        eh, em = (int(part) for part in end.split(":"))
    except (AttributeError, ValueError):
        raise ValueError(f"Invalid time slot: {time_slot!r}")
    if (eh * 60 + em) <= (sh * 60 + sm):
        raise ValueError(f"Time slot ends before it starts: {time_slot!r}")
    return sh * 60 + sm, eh * 60 + em


def _same_day(appointment: Appointment, day) -> bool:
    when = appointment.appointmentDate
    return when is not None and when.date() == to_datetime(day).date()


def _as_appointments(appointments: Iterable[Union[Appointment, Dict[str, Any]]]) -> List[Appointment]:
    return [a if isinstance(a, Appointment) else parse(Appointment, a) for a in appointments]


def is_slot_available(appointments, day, time_slot: str, doctor_id: str) -> bool:
    """False when a live appointment of the same doctor overlaps the slot on that day."""
    start, end = parse_time_slot(time_slot)
    for apt in _as_appointments(appointments):
        if apt.doctorId != doctor_id or apt.status in _RELEASED or not apt.timeSlot:
            continue
        if not _same_day(apt, day):
            continue
        other_start, other_end = parse_time_slot(apt.timeSlot)
        if start < other_end and other_start < end:
            return False
    return True


def get_next_queue_number(appointments, day) -> int:
    numbers = [apt.queueNumber or 0 for apt in _as_appointments(appointments) if _same_day(apt, day)]
    return max(numbers, default=0) + 1


def format_time_slot(time_slot: str) -> str:
    """'09:00-09:30' -> '9:00 AM - 9:30 AM'"""

    def _fmt(minutes: int) -> str:
        hour, minute = divmod(minutes, 60)
        period = "PM" if hour >= 12 else "AM"
        hour12 = hour - 12 if hour > 12 else (12 if hour == 0 else hour)
        return f"{hour12}:{minute:02d} {period}"

    start, end = parse_time_slot(time_slot)
    return f"{_fmt(start)} - {_fmt(end)}"


def estimate_wait_time(current_queue_number: int, appointments, average_consultation_minutes: int = 15) -> int:
    """Minutes until the given queue number is called."""
    ahead = [
        apt for apt in _as_appointments(appointments)
        if apt.status in ("scheduled", "in-progress") and (apt.queueNumber or 0) < current_queue_number
    ]
    return len(ahead) * average_consultation_minutes


def book_appointment(store: DocumentStore, data: Dict[str, Any]) -> Appointment:
    """
    Book an OPD appointment.

    The slot check and the queue number are computed from the doctor's day
    inside one transaction, so two receptionists cannot take the same slot.
    """
    appointment = Appointment.model_validate({**data, "status": "scheduled"})
    if not appointment.doctorId or not appointment.patientId:
        raise ValueError("doctorId and patientId are required")
    if appointment.appointmentDate is None or not appointment.timeSlot:
        raise ValueError("appointmentDate and timeSlot are required")
    parse_time_slot(appointment.timeSlot)

    day = appointment.appointmentDate.date()
    day_start = datetime(day.year, day.month, day.day, tzinfo=timezone.utc)
    appointment.id = appointment.id or store.new_id()

    def _book(txn: Transaction) -> Appointment:
        same_day = txn.query(
            "appointments",
            where("appointmentDate", ">=", day_start),
            where("appointmentDate", "<", day_start + timedelta(days=1)),
        )
        doctor_day = [doc for doc in same_day if doc.get("doctorId") == appointment.doctorId]
        if not is_slot_available(doctor_day, day_start, appointment.timeSlot, appointment.doctorId):
            raise PreconditionError(
                f"The {format_time_slot(appointment.timeSlot)} slot is already booked for {appointment.doctorName or appointment.doctorId}"
            )
        appointment.queueNumber = get_next_queue_number(same_day, day_start)
        appointment.createdAt = utcnow()
        txn.set("appointments", appointment.id, to_document(appointment))
        return appointment

    booked = store.run_transaction(_book)
    logger.info(f"Appointment {booked.id} booked: {booked.timeSlot} with {booked.doctorId}, queue #{booked.queueNumber}")
    return booked
