import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Iterable, Sequence
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, func
from app.modules.availability.models import (
    AvailabilityWindow, AvailabilityStatus, AppointmentSlot, SlotStatus,
)

class AvailabilityRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    def add_all(self, windows: Iterable[AvailabilityWindow]) -> None:
        self.session.add_all(list(windows))

    async def get(self, availability_id: uuid.UUID) -> AvailabilityWindow | None:
        return await self.session.get(AvailabilityWindow, availability_id)

    async def list_for_provider(self, provider_id: uuid.UUID) -> Sequence[AvailabilityWindow]:
        q = select(AvailabilityWindow).where(
            AvailabilityWindow.provider_id == provider_id
        ).order_by(AvailabilityWindow.date.asc(), AvailabilityWindow.start_time.asc())
        res = await self.session.execute(q)
        return res.scalars().all()

    async def list_in_range(self, provider_id: uuid.UUID, start: date | None, end: date | None) -> Sequence[AvailabilityWindow]:
        # either bound may be open
        cond = [AvailabilityWindow.provider_id == provider_id]
        if start:
            cond.append(AvailabilityWindow.date >= start)
        if end:
            cond.append(AvailabilityWindow.date <= end)
        q = select(AvailabilityWindow).where(*cond).order_by(
            AvailabilityWindow.date.asc(), AvailabilityWindow.start_time.asc())
        res = await self.session.execute(q)
        return res.scalars().all()

    async def list_open_for_date(self, provider_id: uuid.UUID, day: date) -> Sequence[AvailabilityWindow]:
        q = select(AvailabilityWindow).where(
            AvailabilityWindow.provider_id == provider_id,
            AvailabilityWindow.date == day,
            AvailabilityWindow.status == AvailabilityStatus.AVAILABLE,
            AvailabilityWindow.current_appointments < AvailabilityWindow.max_appointments_per_slot,
        ).order_by(AvailabilityWindow.start_time.asc())
        res = await self.session.execute(q)
        return res.scalars().all()

    async def delete(self, window: AvailabilityWindow) -> None:
        await self.session.delete(window)


class SlotRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    def add_all(self, slots: Iterable[AppointmentSlot]) -> None:
        self.session.add_all(list(slots))

    async def get(self, slot_id: uuid.UUID, *, refresh: bool = False) -> AppointmentSlot | None:
        opts = {"populate_existing": True} if refresh else {}
        q = select(AppointmentSlot).where(AppointmentSlot.id == slot_id).execution_options(**opts)
        res = await self.session.execute(q)
        return res.scalar_one_or_none()

    async def get_by_reference(self, booking_reference: str) -> AppointmentSlot | None:
        res = await self.session.execute(select(AppointmentSlot).where(AppointmentSlot.booking_reference == booking_reference))
        return res.scalar_one_or_none()

    async def list_by_availability(self, availability_id: uuid.UUID) -> Sequence[AppointmentSlot]:
        q = select(AppointmentSlot).where(
            AppointmentSlot.availability_id == availability_id
        ).order_by(AppointmentSlot.slot_start_time.asc())
        res = await self.session.execute(q)
        return res.scalars().all()

    async def list_for_provider(
        self, provider_id: uuid.UUID, *,
        start_date: date | None = None, end_date: date | None = None,
        status: SlotStatus | None = None, appointment_type: str | None = None,
    ) -> Sequence[AppointmentSlot]:
        # Date filters apply to the owning window's calendar date, i.e. the slot's local date.
        cond = [AppointmentSlot.provider_id == provider_id]
        q = select(AppointmentSlot)
        if start_date or end_date:
            q = q.join(AvailabilityWindow, AppointmentSlot.availability_id == AvailabilityWindow.id)
            if start_date:
                cond.append(AvailabilityWindow.date >= start_date)
            if end_date:
                cond.append(AvailabilityWindow.date <= end_date)
        if status:
            cond.append(AppointmentSlot.status == status)
        if appointment_type:
            cond.append(AppointmentSlot.appointment_type == appointment_type)
        q = q.where(*cond).order_by(AppointmentSlot.slot_start_time.asc())
        res = await self.session.execute(q)
        return res.scalars().all()

    async def search_available(
        self, start: date, end: date, *,
        appointment_type: str | None = None,
        insurance_accepted: bool | None = None,
        max_price: Decimal | None = None,
    ) -> Sequence[AppointmentSlot]:
        """Bookable slots across all providers whose window date falls in ``[start, end]``."""
        cond = [
            AppointmentSlot.status == SlotStatus.AVAILABLE,
            AvailabilityWindow.status == AvailabilityStatus.AVAILABLE,
            AvailabilityWindow.date >= start,
            AvailabilityWindow.date <= end,
        ]
        if appointment_type:
            cond.append(AppointmentSlot.appointment_type == appointment_type)
        if insurance_accepted is not None:
            cond.append(AvailabilityWindow.pricing_insurance_accepted == insurance_accepted)
        if max_price is not None:
            # unpriced windows never satisfy a price cap
            cond.append(AvailabilityWindow.pricing_base_fee <= max_price)
        q = (
            select(AppointmentSlot)
            .join(AvailabilityWindow, AppointmentSlot.availability_id == AvailabilityWindow.id)
            .where(*cond)
            .order_by(AppointmentSlot.slot_start_time.asc())
        )
        res = await self.session.execute(q)
        return res.scalars().all()

    async def list_booked(self, *, provider_id: uuid.UUID | None = None, patient_id: uuid.UUID | None = None, after: datetime | None = None) -> Sequence[AppointmentSlot]:
        cond = [AppointmentSlot.status == SlotStatus.BOOKED]
        if provider_id:
            cond.append(AppointmentSlot.provider_id == provider_id)
        if patient_id:
            cond.append(AppointmentSlot.patient_id == patient_id)
        if after:
            cond.append(AppointmentSlot.slot_start_time > after)
        q = select(AppointmentSlot).where(*cond).order_by(AppointmentSlot.slot_start_time.asc())
        res = await self.session.execute(q)
        return res.scalars().all()

    async def list_conflicts(self, provider_id: uuid.UUID, start: datetime, end: datetime) -> Sequence[AppointmentSlot]:
        q = select(AppointmentSlot).where(
            AppointmentSlot.provider_id == provider_id,
            AppointmentSlot.status.in_([SlotStatus.BOOKED, SlotStatus.BLOCKED]),
            AppointmentSlot.slot_start_time < end,
            AppointmentSlot.slot_end_time > start,
        ).order_by(AppointmentSlot.slot_start_time.asc())
        res = await self.session.execute(q)
        return res.scalars().all()

    async def count_by_status(self, provider_id: uuid.UUID) -> dict[SlotStatus, int]:
        q = select(AppointmentSlot.status, func.count()).where(
            AppointmentSlot.provider_id == provider_id
        ).group_by(AppointmentSlot.status)
        res = await self.session.execute(q)
        return {status: n for status, n in res.all()}

    async def transition(self, slot_id: uuid.UUID, allowed_from: Iterable[SlotStatus], *, window_open: bool = False, **values) -> bool:
        """Conditional status write: applies ``values`` only if the slot is still in ``allowed_from``.

        With ``window_open`` the owning window must also be AVAILABLE at write time.
        Returns False when no row matched (unknown id, status moved on, window closed).
        """
        cond = [AppointmentSlot.id == slot_id, AppointmentSlot.status.in_(list(allowed_from))]
        if window_open:
            cond.append(AppointmentSlot.availability_id.in_(
                select(AvailabilityWindow.id).where(AvailabilityWindow.status == AvailabilityStatus.AVAILABLE)
            ))
        stmt = (
            update(AppointmentSlot)
            .where(*cond)
            .values(version=AppointmentSlot.version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        res = await self.session.execute(stmt)
        return res.rowcount == 1

    async def delete(self, slot: AppointmentSlot) -> None:
        await self.session.delete(slot)
