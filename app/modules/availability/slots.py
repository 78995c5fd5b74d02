"""Cut an availability window into discrete appointment slots."""
from datetime import date, datetime, time, timedelta
from typing import Iterator

from app.core.clock import resolve_zone
from app.modules.availability.models import AppointmentSlot, AvailabilityWindow, SlotStatus


def slot_bounds(day: date, start: time, end: time, slot_minutes: int, break_minutes: int) -> Iterator[tuple[datetime, datetime]]:
    """Naive wall-clock ``[start, end)`` pairs for one day.

    A trailing slot that would run past ``end`` is dropped, never shortened.
    """
    if slot_minutes <= 0:
        raise ValueError("slot_minutes must be positive")
    if break_minutes < 0:
        raise ValueError("break_minutes cannot be negative")

    current = datetime.combine(day, start)
    window_end = datetime.combine(day, end)
    slot = timedelta(minutes=slot_minutes)
    gap = timedelta(minutes=break_minutes)
    while current < window_end:
        slot_end = current + slot
        if slot_end > window_end:
            break
        yield current, slot_end
        current = slot_end + gap


def generate_slots(window: AvailabilityWindow) -> list[AppointmentSlot]:
    # Wall-clock arithmetic in the window's zone; instants come from attaching
    # the zone afterwards, so a DST jump inside the window is not corrected for.
    zone = resolve_zone(window.timezone)
    appointment_type = window.appointment_type.value if window.appointment_type else None
    slots: list[AppointmentSlot] = []
    for start, end in slot_bounds(window.date, window.start_time, window.end_time, window.slot_duration_minutes, window.break_duration_minutes):
        slots.append(AppointmentSlot(
            availability_id=window.id,
            provider_id=window.provider_id,
            slot_start_time=start.replace(tzinfo=zone),
            slot_end_time=end.replace(tzinfo=zone),
            timezone=window.timezone,
            status=SlotStatus.AVAILABLE,
            patient_id=None,
            appointment_type=appointment_type,
            booking_reference=None,
        ))
    return slots
