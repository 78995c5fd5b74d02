import uuid
import logging
from collections import defaultdict
from datetime import date, datetime
from decimal import Decimal
from typing import Sequence
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from app.core.clock import Clock, ReferenceFactory, parse_date, parse_time, resolve_zone, today_in, utc_now
from app.core.config import settings
from app.core.enums import parse_enum
from app.core.errors import (
    CannotDeleteBooked, ConcurrentModification, InvalidAppointmentType, InvalidFormat, InvalidPattern, InvalidRange,
    InvalidStatus, NotFoundError, PastDate,
)
from app.modules.availability.booking import BookingStateMachine
from app.modules.availability.models import (
    AppointmentSlot, AppointmentType, AvailabilityStatus, AvailabilityWindow, LocationType,
    RecurrencePattern, SlotStatus,
)
from app.modules.availability.recurrence import add_months, default_end_date, expand
from app.modules.availability.repository import AvailabilityRepository, SlotRepository
from app.modules.availability.schemas import (
    AvailabilitySearchResponse, AvailabilitySummary, CreateAvailabilityRequest, CreateAvailabilityResponse,
    DateRange, DaySlots, ProviderSlots, SearchCriteria, SlotCounts, SlotInfo, SlotOut, UpdateSlotRequest,
)
from app.modules.availability.slots import generate_slots

logger = logging.getLogger(__name__)


def _check_range(start: date | None, end: date | None) -> None:
    if start and end and start > end:
        raise InvalidRange("start_date must not be after end_date", start=start.isoformat(), end=end.isoformat())


class AvailabilityService:
    def __init__(
        self, s: AsyncSession, *,
        clock: Clock = utc_now,
        reference_factory: ReferenceFactory | None = None,
        default_recurrence_months: int | None = None,
    ):
        self.s = s
        self.clock = clock
        self.windows = AvailabilityRepository(s)
        self.slots = SlotRepository(s)
        self.booking = BookingStateMachine(s, clock=clock, reference_factory=reference_factory)
        self.default_recurrence_months = default_recurrence_months or settings.DEFAULT_RECURRENCE_MONTHS

    # ---- create ----

    async def create_availability(self, provider_id: uuid.UUID, req: CreateAvailabilityRequest) -> CreateAvailabilityResponse:
        day = parse_date(req.date, "date")
        start_time = parse_time(req.start_time, "start_time")
        end_time = parse_time(req.end_time, "end_time")
        zone = resolve_zone(req.timezone)
        if start_time >= end_time:
            raise InvalidRange("Start time must be before end time", start=req.start_time, end=req.end_time)
        today = today_in(zone, self.clock)
        if day < today:
            raise PastDate("Cannot create availability for past dates", date=day.isoformat(), today=today.isoformat())

        appointment_type = parse_enum(AppointmentType, req.appointment_type, InvalidAppointmentType)
        location_type = parse_enum(LocationType, req.location.type, InvalidFormat) if req.location else None
        pattern = parse_enum(RecurrencePattern, req.recurrence_pattern, InvalidPattern)

        recurring = req.is_recurring and pattern is not None
        if recurring:
            if req.recurrence_end_date:
                end_date = parse_date(req.recurrence_end_date, "recurrence_end_date")
            else:
                end_date = default_end_date(day, self.default_recurrence_months)
            dates = expand(day, pattern, end_date)
        else:
            end_date = None
            dates = [day]

        windows = []
        for d in dates:
            windows.append(AvailabilityWindow(
                id=uuid.uuid4(),
                provider_id=provider_id,
                date=d,
                start_time=start_time,
                end_time=end_time,
                timezone=zone.key,
                is_recurring=recurring,
                recurrence_pattern=pattern if recurring else None,
                recurrence_end_date=end_date,
                slot_duration_minutes=req.slot_duration_minutes,
                break_duration_minutes=req.break_duration_minutes,
                max_appointments_per_slot=req.max_appointments_per_slot,
                current_appointments=0,
                status=AvailabilityStatus.AVAILABLE,
                appointment_type=appointment_type,
                location_type=location_type,
                location_address=req.location.address if req.location else None,
                location_room_number=req.location.room_number if req.location else None,
                pricing_base_fee=req.pricing.base_fee if req.pricing else None,
                pricing_insurance_accepted=req.pricing.insurance_accepted if req.pricing else None,
                pricing_currency=req.pricing.currency.upper() if req.pricing else None,
                notes=req.notes,
                special_requirements=list(req.special_requirements) if req.special_requirements is not None else None,
            ))
        slots: list[AppointmentSlot] = []
        for w in windows:
            slots.extend(generate_slots(w))

        try:
            self.windows.add_all(windows)
            await self.s.flush()
            self.slots.add_all(slots)
            await self.s.commit()
        except Exception:
            await self.s.rollback()
            raise

        logger.info(f"Created {len(windows)} availability window(s) with {len(slots)} slot(s) for provider {provider_id}")
        return CreateAvailabilityResponse(
            availability_id=windows[0].id,
            slots_created=len(slots),
            date_range=DateRange(start=dates[0], end=dates[-1]),
            total_appointments_available=len(slots),
            generated_slots=[
                SlotInfo(
                    id=sl.id,
                    date=sl.local_start.date(),
                    start_time=sl.local_start.strftime("%H:%M"),
                    end_time=sl.local_end.strftime("%H:%M"),
                    timezone=sl.timezone,
                    status=sl.status.value,
                    appointment_type=sl.appointment_type,
                )
                for sl in slots
            ],
        )

    # ---- windows ----

    async def get_provider_availability(self, provider_id: uuid.UUID) -> Sequence[AvailabilityWindow]:
        return await self.windows.list_for_provider(provider_id)

    async def get_provider_availability_in_range(self, provider_id: uuid.UUID, start: date | None, end: date | None) -> Sequence[AvailabilityWindow]:
        _check_range(start, end)
        return await self.windows.list_in_range(provider_id, start, end)

    async def get_available_windows_for_date(self, provider_id: uuid.UUID, day: date) -> Sequence[AvailabilityWindow]:
        return await self.windows.list_open_for_date(provider_id, day)

    async def update_availability_status(self, availability_id: uuid.UUID, status: str) -> AvailabilityWindow:
        target = parse_enum(AvailabilityStatus, status, InvalidStatus)
        if target is None:
            raise InvalidStatus("Status is required")
        window = await self.windows.get(availability_id)
        if not window:
            raise NotFoundError("Availability", availability_id)
        window.status = target
        try:
            await self.s.commit()
        except Exception:
            await self.s.rollback()
            raise
        logger.info(f"Availability {availability_id} status -> {target.value}")
        return window

    async def delete_availability(self, availability_id: uuid.UUID) -> None:
        window = await self.windows.get(availability_id)
        if not window:
            raise NotFoundError("Availability", availability_id)
        slots = await self.slots.list_by_availability(availability_id)
        if any(sl.status == SlotStatus.BOOKED for sl in slots):
            raise CannotDeleteBooked("Cannot delete availability with booked slots", availability_id=str(availability_id))
        try:
            for sl in slots:
                await self.slots.delete(sl)
            await self.s.flush()
            await self.windows.delete(window)
            await self.s.commit()
        except StaleDataError as e:
            await self.s.rollback()
            raise ConcurrentModification("Availability was modified concurrently", availability_id=str(availability_id)) from e
        except Exception:
            await self.s.rollback()
            raise
        logger.info(f"Deleted availability {availability_id} with {len(slots)} slot(s)")

    # ---- slot queries ----

    async def get_appointment_slots(
        self, provider_id: uuid.UUID, *,
        start_date: date | None = None, end_date: date | None = None,
        status: str | SlotStatus | None = None, appointment_type: str | None = None,
    ) -> Sequence[AppointmentSlot]:
        _check_range(start_date, end_date)
        st = parse_enum(SlotStatus, status, InvalidStatus)
        at = parse_enum(AppointmentType, appointment_type, InvalidAppointmentType)
        return await self.slots.list_for_provider(
            provider_id, start_date=start_date, end_date=end_date,
            status=st, appointment_type=at.value if at else None,
        )

    async def get_available_appointment_slots(
        self, provider_id: uuid.UUID, *,
        start_date: date | None = None, end_date: date | None = None, appointment_type: str | None = None,
    ) -> Sequence[AppointmentSlot]:
        return await self.get_appointment_slots(
            provider_id, start_date=start_date, end_date=end_date,
            status=SlotStatus.AVAILABLE, appointment_type=appointment_type,
        )

    async def get_slot_by_booking_reference(self, booking_reference: str) -> AppointmentSlot:
        slot = await self.slots.get_by_reference(booking_reference)
        if not slot:
            raise NotFoundError("Booking", booking_reference)
        return slot

    async def get_booked_appointments_for_provider(self, provider_id: uuid.UUID) -> Sequence[AppointmentSlot]:
        return await self.slots.list_booked(provider_id=provider_id)

    async def get_booked_appointments_for_patient(self, patient_id: uuid.UUID) -> Sequence[AppointmentSlot]:
        return await self.slots.list_booked(patient_id=patient_id)

    async def get_upcoming_appointments_for_provider(self, provider_id: uuid.UUID) -> Sequence[AppointmentSlot]:
        return await self.slots.list_booked(provider_id=provider_id, after=self.clock())

    async def get_upcoming_appointments_for_patient(self, patient_id: uuid.UUID) -> Sequence[AppointmentSlot]:
        return await self.slots.list_booked(patient_id=patient_id, after=self.clock())

    async def find_conflicting_slots(self, provider_id: uuid.UUID, start: datetime, end: datetime) -> Sequence[AppointmentSlot]:
        if start.tzinfo is None or end.tzinfo is None:
            raise InvalidFormat("Conflict window bounds must carry a UTC offset")
        if start >= end:
            raise InvalidRange("start must be before end", start=start.isoformat(), end=end.isoformat())
        return await self.slots.list_conflicts(provider_id, start, end)

    async def search_available_slots(
        self, *,
        day: date | None = None, start_date: date | None = None, end_date: date | None = None,
        appointment_type: str | None = None, insurance_accepted: bool | None = None,
        max_price: Decimal | None = None,
    ) -> AvailabilitySearchResponse:
        """Patient-facing search over bookable slots of every provider.

        A single ``day`` and a ``start_date``/``end_date`` range are mutually
        exclusive. Without either, the search runs from today (UTC, per the
        service clock) to one calendar month later.
        """
        if day and (start_date or end_date):
            raise InvalidRange("Cannot specify both a specific date and a date range")
        _check_range(start_date, end_date)
        at = parse_enum(AppointmentType, appointment_type, InvalidAppointmentType)

        start = day or start_date or self.clock().date()
        end = day or end_date or add_months(start, 1)
        _check_range(start, end)

        slots = await self.slots.search_available(
            start, end,
            appointment_type=at.value if at else None,
            insurance_accepted=insurance_accepted, max_price=max_price,
        )
        by_provider: dict[uuid.UUID, list[SlotOut]] = {}
        for sl in slots:
            by_provider.setdefault(sl.provider_id, []).append(SlotOut.from_slot(sl))

        logger.info(f"Availability search {start}..{end} matched {len(slots)} slot(s) from {len(by_provider)} provider(s)")
        return AvailabilitySearchResponse(
            search_criteria=SearchCriteria(
                date=day, start_date=start, end_date=end,
                appointment_type=at.value if at else None,
                insurance_accepted=insurance_accepted, max_price=max_price,
            ),
            total_results=len(slots),
            results=[ProviderSlots(provider_id=pid, available_slots=items) for pid, items in by_provider.items()],
        )

    async def get_availability_summary(
        self, provider_id: uuid.UUID, *,
        start_date: date | None = None, end_date: date | None = None,
        status: str | None = None, appointment_type: str | None = None,
    ) -> AvailabilitySummary:
        slots = await self.get_appointment_slots(
            provider_id, start_date=start_date, end_date=end_date,
            status=status, appointment_type=appointment_type,
        )
        counts = SlotCounts(total_slots=len(slots))
        by_day: dict[date, list[SlotOut]] = defaultdict(list)
        for sl in slots:
            if sl.status == SlotStatus.AVAILABLE:
                counts.available_slots += 1
            elif sl.status == SlotStatus.BOOKED:
                counts.booked_slots += 1
            elif sl.status == SlotStatus.CANCELLED:
                counts.cancelled_slots += 1
            by_day[sl.local_start.date()].append(SlotOut.from_slot(sl))
        return AvailabilitySummary(
            provider_id=provider_id,
            summary=counts,
            availability=[DaySlots(date=d, slots=by_day[d]) for d in sorted(by_day)],
        )

    # ---- slot lifecycle ----

    async def book_slot(self, slot_id: uuid.UUID, patient_id: uuid.UUID) -> AppointmentSlot:
        return await self.booking.book(slot_id, patient_id)

    async def cancel_slot(self, slot_id: uuid.UUID) -> AppointmentSlot:
        return await self.booking.cancel(slot_id)

    async def block_slot(self, slot_id: uuid.UUID) -> AppointmentSlot:
        return await self.booking.block(slot_id)

    async def reopen_slot(self, slot_id: uuid.UUID) -> AppointmentSlot:
        return await self.booking.reopen(slot_id)

    async def update_availability_slot(self, slot_id: uuid.UUID, payload: UpdateSlotRequest) -> AppointmentSlot:
        return await self.booking.update_slot(slot_id, payload)

    async def delete_availability_slot(self, slot_id: uuid.UUID, delete_recurring: bool = False, reason: str | None = None) -> None:
        await self.booking.delete(slot_id, delete_recurring, reason)
