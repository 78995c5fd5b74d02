"""Slot lifecycle: book, cancel, block, reopen, update and delete.

Status changes driven by a caller (book/cancel/block/reopen) are single
conditional UPDATEs keyed on the current status, so two requests racing for
the same slot cannot both win. Field edits and deletes go through the ORM and
rely on the slot's ``version`` column instead.
"""
import logging
import uuid
from datetime import datetime
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from app.core.clock import Clock, ReferenceFactory, make_booking_reference, parse_time, utc_now
from app.core.enums import parse_enum
from app.core.errors import (
    CannotDeleteBooked, ConcurrentModification, InvalidAppointmentType, InvalidRange,
    InvalidStatus, InvalidTransition, NotFoundError, SlotNotAvailable, SlotNotBooked,
    ValidationError,
)
from app.modules.availability.models import AppointmentSlot, AppointmentType, SlotStatus
from app.modules.availability.repository import AvailabilityRepository, SlotRepository
from app.modules.availability.schemas import UpdateSlotRequest

logger = logging.getLogger(__name__)

VALID_NEXT = {
    SlotStatus.AVAILABLE: {SlotStatus.BOOKED, SlotStatus.BLOCKED},
    SlotStatus.BOOKED: {SlotStatus.CANCELLED},
    SlotStatus.CANCELLED: {SlotStatus.AVAILABLE, SlotStatus.BLOCKED},
    SlotStatus.BLOCKED: {SlotStatus.AVAILABLE},
}

def allowed_from(target: SlotStatus) -> set[SlotStatus]:
    return {s for s, nxt in VALID_NEXT.items() if target in nxt}


class BookingStateMachine:
    def __init__(self, session: AsyncSession, *, clock: Clock = utc_now, reference_factory: ReferenceFactory | None = None):
        self.session = session
        self.slots = SlotRepository(session)
        self.windows = AvailabilityRepository(session)
        self.clock = clock
        self.reference_factory = reference_factory or (lambda: make_booking_reference(self.clock))

    async def book(self, slot_id: uuid.UUID, patient_id: uuid.UUID) -> AppointmentSlot:
        reference = self.reference_factory()
        slot = await self._transition(
            slot_id, SlotStatus.BOOKED,
            window_open=True, patient_id=patient_id, booking_reference=reference,
            conflict=self._not_bookable(slot_id),
        )
        logger.info(f"Booked slot {slot_id} for patient {patient_id} ({reference})")
        return slot

    async def cancel(self, slot_id: uuid.UUID) -> AppointmentSlot:
        slot = await self._transition(
            slot_id, SlotStatus.CANCELLED,
            patient_id=None, booking_reference=None,
            conflict=lambda current: SlotNotBooked(
                "Only booked slots can be cancelled", slot_id=str(slot_id), status=current.status.value),
        )
        logger.info(f"Cancelled slot {slot_id}")
        return slot

    async def block(self, slot_id: uuid.UUID) -> AppointmentSlot:
        slot = await self._transition(slot_id, SlotStatus.BLOCKED, patient_id=None, booking_reference=None)
        logger.info(f"Blocked slot {slot_id}")
        return slot

    async def reopen(self, slot_id: uuid.UUID) -> AppointmentSlot:
        slot = await self._transition(slot_id, SlotStatus.AVAILABLE, patient_id=None, booking_reference=None)
        logger.info(f"Reopened slot {slot_id}")
        return slot

    def _not_bookable(self, slot_id: uuid.UUID):
        def conflict(current: AppointmentSlot) -> SlotNotAvailable:
            if current.status == SlotStatus.AVAILABLE:
                # the slot is free but its window is closed (BLOCKED / MAINTENANCE)
                return SlotNotAvailable(
                    "Availability window is not open for booking",
                    slot_id=str(slot_id), availability_id=str(current.availability_id))
            return SlotNotAvailable("Slot is not available for booking", slot_id=str(slot_id), status=current.status.value)
        return conflict

    async def _transition(self, slot_id: uuid.UUID, target: SlotStatus, *, conflict=None, window_open: bool = False, **values) -> AppointmentSlot:
        # UPDATE first: the row lock (or SQLite write lock) is taken before anything is read.
        try:
            won = await self.slots.transition(slot_id, allowed_from(target), window_open=window_open, status=target, **values)
            if not won:
                current = await self.slots.get(slot_id, refresh=True)
                # built before rollback, which expires ``current``
                if current is None:
                    error = NotFoundError("Appointment slot", slot_id)
                elif conflict:
                    error = conflict(current)
                else:
                    error = InvalidTransition(
                        f"Cannot move slot from {current.status.value} to {target.value}",
                        slot_id=str(slot_id), current=current.status.value, target=target.value,
                    )
                await self.session.rollback()
                raise error
            await self.session.commit()
        except Exception:
            if self.session.in_transaction():
                await self.session.rollback()
            raise
        return await self.slots.get(slot_id, refresh=True)

    async def update_slot(self, slot_id: uuid.UUID, payload: UpdateSlotRequest) -> AppointmentSlot:
        slot = await self.slots.get(slot_id, refresh=True)
        if not slot:
            raise NotFoundError("Appointment slot", slot_id)
        data = payload.model_dump(exclude_unset=True)

        try:
            if data.get("start_time") or data.get("end_time"):
                self._apply_times(slot, data.get("start_time"), data.get("end_time"))

            if data.get("status") is not None:
                self._apply_status(slot, parse_enum(SlotStatus, data["status"], InvalidStatus))

            if data.get("appointment_type") is not None:
                slot.appointment_type = parse_enum(AppointmentType, data["appointment_type"], InvalidAppointmentType).value

            if "notes" in data or data.get("pricing"):
                window = await self.windows.get(slot.availability_id)
                if window is None:
                    raise NotFoundError("Availability", slot.availability_id)
                if "notes" in data:
                    window.notes = data["notes"]
                pricing = data.get("pricing") or {}
                if "base_fee" in pricing:
                    window.pricing_base_fee = pricing["base_fee"]
                if "insurance_accepted" in pricing:
                    window.pricing_insurance_accepted = pricing["insurance_accepted"]
                if "currency" in pricing:
                    window.pricing_currency = pricing["currency"]

            await self.session.commit()
        except StaleDataError as e:
            await self.session.rollback()
            raise ConcurrentModification("Slot was modified concurrently", slot_id=str(slot_id)) from e
        except Exception:
            await self.session.rollback()
            raise
        logger.info(f"Updated slot {slot_id}: {sorted(data)}")
        return slot

    def _apply_times(self, slot: AppointmentSlot, start_raw: str | None, end_raw: str | None) -> None:
        # new wall-clock times keep each bound's local date
        start = slot.local_start
        end = slot.local_end
        if start_raw:
            start = datetime.combine(start.date(), parse_time(start_raw, "start_time"), tzinfo=slot.zone)
        if end_raw:
            end = datetime.combine(end.date(), parse_time(end_raw, "end_time"), tzinfo=slot.zone)
        if start >= end:
            raise InvalidRange(
                "Start time must be before end time",
                start=start.strftime("%H:%M"), end=end.strftime("%H:%M"),
            )
        slot.slot_start_time = start
        slot.slot_end_time = end

    def _apply_status(self, slot: AppointmentSlot, target: SlotStatus) -> None:
        if target == slot.status:
            return
        if target == SlotStatus.BOOKED:
            raise ValidationError("Slots can only be booked through the booking operation", slot_id=str(slot.id))
        if target not in VALID_NEXT[slot.status]:
            raise InvalidTransition(
                f"Cannot move slot from {slot.status.value} to {target.value}",
                slot_id=str(slot.id), current=slot.status.value, target=target.value,
            )
        if slot.status == SlotStatus.BOOKED:
            slot.patient_id = None
            slot.booking_reference = None
        slot.status = target

    async def delete(self, slot_id: uuid.UUID, delete_recurring: bool = False, reason: str | None = None) -> None:
        slot = await self.slots.get(slot_id, refresh=True)
        if not slot:
            raise NotFoundError("Appointment slot", slot_id)
        availability_id = slot.availability_id

        try:
            if delete_recurring:
                siblings = await self.slots.list_by_availability(availability_id)
                if any(s.status == SlotStatus.BOOKED for s in siblings):
                    raise CannotDeleteBooked(
                        "Cannot delete recurring availability with booked slots",
                        availability_id=str(availability_id),
                    )
                window = await self.windows.get(availability_id)
                if window is None:
                    raise NotFoundError("Availability", availability_id)
                for s in siblings:
                    await self.slots.delete(s)
                # slots before the window they reference
                await self.session.flush()
                await self.windows.delete(window)
            else:
                if slot.status == SlotStatus.BOOKED:
                    raise CannotDeleteBooked("Cannot delete booked slot", slot_id=str(slot_id))
                await self.slots.delete(slot)
            await self.session.commit()
        except StaleDataError as e:
            await self.session.rollback()
            raise ConcurrentModification("Slot was modified concurrently", slot_id=str(slot_id)) from e
        except Exception:
            await self.session.rollback()
            raise

        if delete_recurring:
            logger.info(f"Deleted availability {availability_id} and its slots; reason={reason!r}")
        else:
            logger.info(f"Deleted slot {slot_id}; reason={reason!r}")
