import asyncio
import re
import uuid
from datetime import time
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from app.core.errors import (
    CannotDeleteBooked, ConcurrentModification, InvalidAppointmentType, InvalidRange, InvalidStatus,
    InvalidTransition, NotFoundError, SlotNotAvailable, SlotNotBooked, ValidationError,
)
from app.modules.availability.booking import VALID_NEXT, BookingStateMachine, allowed_from
from app.modules.availability.models import AppointmentSlot, AvailabilityWindow, SlotStatus
from app.modules.availability.repository import SlotRepository
from app.modules.availability.schemas import UpdateSlotRequest


def run_with_slots(session_factory, make_service, availability_request, provider_id, steps, **request_overrides):
    """Create one window, then run ``steps(service, session, slot_ids, window_id)`` in the same session."""
    async def scenario():
        async with session_factory() as s:
            svc = make_service(s)
            res = await svc.create_availability(provider_id, availability_request(**request_overrides))
            return await steps(svc, s, [sl.id for sl in res.generated_slots], res.availability_id)
    return asyncio.run(scenario())


async def load_slot(session_factory, slot_id) -> AppointmentSlot | None:
    async with session_factory() as s:
        return await s.get(AppointmentSlot, slot_id)


def test_transition_table() -> None:
    assert VALID_NEXT[SlotStatus.AVAILABLE] == {SlotStatus.BOOKED, SlotStatus.BLOCKED}
    assert VALID_NEXT[SlotStatus.BOOKED] == {SlotStatus.CANCELLED}
    assert allowed_from(SlotStatus.AVAILABLE) == {SlotStatus.CANCELLED, SlotStatus.BLOCKED}
    assert allowed_from(SlotStatus.BLOCKED) == {SlotStatus.AVAILABLE, SlotStatus.CANCELLED}


def test_book_sets_patient_and_reference(session_factory, make_service, availability_request, provider_id) -> None:
    patient = uuid.uuid4()

    async def steps(svc, s, ids, _):
        return await svc.book_slot(ids[0], patient)

    slot = run_with_slots(session_factory, make_service, availability_request, provider_id, steps)
    stored = asyncio.run(load_slot(session_factory, slot.id))

    assert slot.status == SlotStatus.BOOKED
    assert slot.patient_id == patient
    assert re.fullmatch(r'REF-\d+-[0-9a-f]{8}', slot.booking_reference)
    assert stored.status == SlotStatus.BOOKED
    assert stored.booking_reference == slot.booking_reference
    assert stored.version == 2


def test_injected_reference_factory_is_used(session_factory, make_service, availability_request, provider_id) -> None:
    async def scenario():
        async with session_factory() as s:
            svc = make_service(s, reference_factory=lambda: 'BK-0001')
            res = await svc.create_availability(provider_id, availability_request())
            return await svc.book_slot(res.generated_slots[0].id, uuid.uuid4())

    assert asyncio.run(scenario()).booking_reference == 'BK-0001'


@pytest.mark.parametrize('prepare', ['book', 'block'])
def test_book_on_unavailable_slot_leaves_it_unchanged(session_factory, make_service, availability_request, provider_id, prepare) -> None:
    first_patient = uuid.uuid4()

    async def steps(svc, s, ids, _):
        if prepare == 'book':
            before = await svc.book_slot(ids[0], first_patient)
        else:
            before = await svc.block_slot(ids[0])
        snapshot = (before.status, before.patient_id, before.booking_reference, before.version)
        with pytest.raises(SlotNotAvailable):
            await svc.book_slot(ids[0], uuid.uuid4())
        return ids[0], snapshot

    slot_id, snapshot = run_with_slots(session_factory, make_service, availability_request, provider_id, steps)
    after = asyncio.run(load_slot(session_factory, slot_id))

    assert (after.status, after.patient_id, after.booking_reference, after.version) == snapshot


@pytest.mark.parametrize('window_status', ['MAINTENANCE', 'BLOCKED'])
def test_book_in_a_closed_window_is_refused(session_factory, make_service, availability_request, provider_id, window_status: str) -> None:
    async def steps(svc, s, ids, window_id):
        await svc.update_availability_status(window_id, window_status)
        with pytest.raises(SlotNotAvailable) as exc:
            await svc.book_slot(ids[0], uuid.uuid4())
        await svc.update_availability_status(window_id, 'AVAILABLE')
        reopened = await svc.book_slot(ids[1], uuid.uuid4())
        return ids[0], exc.value, reopened.status

    slot_id, error, reopened_status = run_with_slots(session_factory, make_service, availability_request, provider_id, steps)
    stored = asyncio.run(load_slot(session_factory, slot_id))

    assert error.message == 'Availability window is not open for booking'
    assert (stored.status, stored.patient_id, stored.booking_reference, stored.version) == (SlotStatus.AVAILABLE, None, None, 1)
    assert reopened_status == SlotStatus.BOOKED


def test_cancel_clears_patient_and_reference(session_factory, make_service, availability_request, provider_id) -> None:
    async def steps(svc, s, ids, _):
        await svc.book_slot(ids[0], uuid.uuid4())
        return await svc.cancel_slot(ids[0])

    slot = run_with_slots(session_factory, make_service, availability_request, provider_id, steps)
    stored = asyncio.run(load_slot(session_factory, slot.id))

    assert slot.status == SlotStatus.CANCELLED
    assert slot.patient_id is None and slot.booking_reference is None
    assert (stored.status, stored.patient_id, stored.booking_reference) == (SlotStatus.CANCELLED, None, None)


def test_cancel_requires_a_booked_slot(session_factory, make_service, availability_request, provider_id) -> None:
    async def steps(svc, s, ids, _):
        with pytest.raises(SlotNotBooked):
            await svc.cancel_slot(ids[0])
        return (await SlotRepository(s).get(ids[0], refresh=True)).status

    assert run_with_slots(session_factory, make_service, availability_request, provider_id, steps) == SlotStatus.AVAILABLE


def test_cancelled_slot_can_be_reopened_and_booked_again(session_factory, make_service, availability_request, provider_id) -> None:
    second_patient = uuid.uuid4()

    async def steps(svc, s, ids, _):
        await svc.book_slot(ids[0], uuid.uuid4())
        await svc.cancel_slot(ids[0])
        reopened = await svc.reopen_slot(ids[0])
        assert reopened.status == SlotStatus.AVAILABLE
        return await svc.book_slot(ids[0], second_patient)

    slot = run_with_slots(session_factory, make_service, availability_request, provider_id, steps)

    assert slot.status == SlotStatus.BOOKED
    assert slot.patient_id == second_patient


def test_block_and_reopen(session_factory, make_service, availability_request, provider_id) -> None:
    async def steps(svc, s, ids, _):
        blocked = (await svc.block_slot(ids[0])).status
        with pytest.raises(InvalidTransition):
            await svc.block_slot(ids[0])
        reopened = (await svc.reopen_slot(ids[0])).status
        with pytest.raises(InvalidTransition):
            await svc.reopen_slot(ids[0])
        await svc.book_slot(ids[1], uuid.uuid4())
        with pytest.raises(InvalidTransition):
            await svc.block_slot(ids[1])
        return blocked, reopened

    assert run_with_slots(session_factory, make_service, availability_request, provider_id, steps) == (
        SlotStatus.BLOCKED, SlotStatus.AVAILABLE,
    )


@pytest.mark.parametrize('operation', ['book', 'cancel', 'block', 'reopen', 'delete'])
def test_unknown_slot_is_not_found(session_factory, make_service, operation) -> None:
    async def scenario():
        async with session_factory() as s:
            svc = make_service(s)
            missing = uuid.uuid4()
            if operation == 'book':
                await svc.book_slot(missing, uuid.uuid4())
            elif operation == 'cancel':
                await svc.cancel_slot(missing)
            elif operation == 'block':
                await svc.block_slot(missing)
            elif operation == 'reopen':
                await svc.reopen_slot(missing)
            else:
                await svc.delete_availability_slot(missing)

    with pytest.raises(NotFoundError):
        asyncio.run(scenario())


# ---- update ----

def test_update_status_leaving_booked_clears_booking(session_factory, make_service, availability_request, provider_id) -> None:
    async def steps(svc, s, ids, _):
        await svc.book_slot(ids[0], uuid.uuid4())
        return await svc.update_availability_slot(ids[0], UpdateSlotRequest(status='cancelled'))

    slot = run_with_slots(session_factory, make_service, availability_request, provider_id, steps)
    stored = asyncio.run(load_slot(session_factory, slot.id))

    assert (stored.status, stored.patient_id, stored.booking_reference) == (SlotStatus.CANCELLED, None, None)


def test_update_cannot_book(session_factory, make_service, availability_request, provider_id) -> None:
    async def steps(svc, s, ids, _):
        with pytest.raises(ValidationError):
            await svc.update_availability_slot(ids[0], UpdateSlotRequest(status='BOOKED'))
        return await SlotRepository(s).get(ids[0], refresh=True)

    slot = run_with_slots(session_factory, make_service, availability_request, provider_id, steps)

    assert slot.status == SlotStatus.AVAILABLE
    assert slot.patient_id is None


@pytest.mark.parametrize(('status', 'error'), [('CANCELLED', InvalidTransition), ('CLOSED', InvalidStatus)])
def test_update_rejects_illegal_status_changes(session_factory, make_service, availability_request, provider_id, status, error) -> None:
    async def steps(svc, s, ids, _):
        with pytest.raises(error):
            await svc.update_availability_slot(ids[0], UpdateSlotRequest(status=status))
        return (await SlotRepository(s).get(ids[0], refresh=True)).status

    assert run_with_slots(session_factory, make_service, availability_request, provider_id, steps) == SlotStatus.AVAILABLE


def test_update_same_status_is_a_no_op(session_factory, make_service, availability_request, provider_id) -> None:
    async def steps(svc, s, ids, _):
        return await svc.update_availability_slot(ids[0], UpdateSlotRequest(status='available'))

    assert run_with_slots(session_factory, make_service, availability_request, provider_id, steps).status == SlotStatus.AVAILABLE


def test_update_times_keeps_the_slot_date(session_factory, make_service, availability_request, provider_id) -> None:
    async def steps(svc, s, ids, _):
        return await svc.update_availability_slot(ids[0], UpdateSlotRequest(start_time='08:45', end_time='09:20'))

    slot = run_with_slots(session_factory, make_service, availability_request, provider_id, steps)
    stored = asyncio.run(load_slot(session_factory, slot.id))

    assert stored.local_start.date() == slot.local_start.date()
    assert (stored.local_start.time(), stored.local_end.time()) == (time(8, 45), time(9, 20))
    assert stored.local_start.utcoffset() == slot.local_start.utcoffset()


@pytest.mark.parametrize(
    'fields',
    [
        {'start_time': '10:00', 'end_time': '09:00'},
        {'start_time': '09:30'},   # slot ends at 09:30
        {'end_time': '08:30'},     # slot starts at 09:00
    ],
)
def test_update_times_must_stay_ordered(session_factory, make_service, availability_request, provider_id, fields) -> None:
    async def steps(svc, s, ids, _):
        with pytest.raises(InvalidRange):
            await svc.update_availability_slot(ids[0], UpdateSlotRequest(**fields))
        return await SlotRepository(s).get(ids[0], refresh=True)

    slot = run_with_slots(session_factory, make_service, availability_request, provider_id, steps)

    assert (slot.local_start.time(), slot.local_end.time()) == (time(9, 0), time(9, 30))


def test_update_appointment_type_is_normalised(session_factory, make_service, availability_request, provider_id) -> None:
    async def steps(svc, s, ids, _):
        with pytest.raises(InvalidAppointmentType):
            await svc.update_availability_slot(ids[0], UpdateSlotRequest(appointment_type='surgery'))
        return await svc.update_availability_slot(ids[0], UpdateSlotRequest(appointment_type=' telemedicine '))

    assert run_with_slots(session_factory, make_service, availability_request, provider_id, steps).appointment_type == 'TELEMEDICINE'


def test_update_notes_and_pricing_land_on_the_window(session_factory, make_service, availability_request, provider_id) -> None:
    async def steps(svc, s, ids, window_id):
        await svc.update_availability_slot(ids[0], UpdateSlotRequest(notes='Fasting required', pricing={'base_fee': '80.50'}))
        return window_id

    window_id = run_with_slots(
        session_factory, make_service, availability_request, provider_id, steps,
        pricing={'base_fee': '60', 'insurance_accepted': True, 'currency': 'EUR'},
    )

    async def load():
        async with session_factory() as s:
            return await s.get(AvailabilityWindow, window_id)

    window = asyncio.run(load())

    assert window.notes == 'Fasting required'
    assert window.pricing_base_fee == Decimal('80.50')
    assert window.pricing_insurance_accepted is True
    assert window.pricing_currency == 'EUR'


def test_update_on_stale_slot_is_a_concurrent_modification(session_factory, make_service, availability_request, provider_id) -> None:
    async def steps(svc, s, ids, _):
        sm = svc.booking
        stale = await sm.slots.get(ids[0])
        assert stale.version == 1

        # another request books the slot meanwhile
        async with session_factory() as other:
            await BookingStateMachine(other).book(ids[0], uuid.uuid4())

        original_get = sm.slots.get

        async def get_without_refresh(slot_id, refresh=False):
            return await original_get(slot_id)

        sm.slots.get = get_without_refresh
        with pytest.raises(ConcurrentModification):
            await sm.update_slot(ids[0], UpdateSlotRequest(status='BLOCKED'))
        return ids[0]

    slot_id = run_with_slots(session_factory, make_service, availability_request, provider_id, steps)
    stored = asyncio.run(load_slot(session_factory, slot_id))

    assert stored.status == SlotStatus.BOOKED


# ---- delete ----

def test_delete_single_slot(session_factory, make_service, availability_request, provider_id) -> None:
    async def steps(svc, s, ids, window_id):
        await svc.delete_availability_slot(ids[0], reason='provider unavailable')
        remaining = (await s.execute(select(AppointmentSlot.id))).scalars().all()
        return ids, remaining, await s.get(AvailabilityWindow, window_id)

    ids, remaining, window = run_with_slots(session_factory, make_service, availability_request, provider_id, steps)

    assert remaining == [ids[1]]
    assert window is not None


def test_delete_booked_slot_is_refused(session_factory, make_service, availability_request, provider_id) -> None:
    async def steps(svc, s, ids, _):
        await svc.book_slot(ids[0], uuid.uuid4())
        with pytest.raises(CannotDeleteBooked):
            await svc.delete_availability_slot(ids[0])
        return (await s.execute(select(func.count()).select_from(AppointmentSlot))).scalar_one()

    assert run_with_slots(session_factory, make_service, availability_request, provider_id, steps) == 2


def test_recurring_delete_with_booked_sibling_changes_nothing(session_factory, make_service, availability_request, provider_id) -> None:
    async def steps(svc, s, ids, window_id):
        await svc.book_slot(ids[1], uuid.uuid4())
        with pytest.raises(CannotDeleteBooked):
            await svc.delete_availability_slot(ids[0], delete_recurring=True)
        slots = (await s.execute(select(AppointmentSlot).execution_options(populate_existing=True))).scalars().all()
        return [(sl.id, sl.status) for sl in slots], await s.get(AvailabilityWindow, window_id)

    slots, window = run_with_slots(session_factory, make_service, availability_request, provider_id, steps, end_time='10:30')

    assert len(slots) == 3
    assert sorted(st.value for _, st in slots) == ['AVAILABLE', 'AVAILABLE', 'BOOKED']
    assert window is not None


def test_recurring_delete_removes_window_and_all_its_slots(session_factory, make_service, availability_request, provider_id) -> None:
    async def scenario():
        async with session_factory() as s:
            svc = make_service(s)
            first = await svc.create_availability(provider_id, availability_request())
            second = await svc.create_availability(provider_id, availability_request(date='2025-01-07'))
            await svc.block_slot(first.generated_slots[1].id)
            await svc.delete_availability_slot(first.generated_slots[0].id, delete_recurring=True, reason='closed')
            windows = (await s.execute(select(AvailabilityWindow.id))).scalars().all()
            slots = (await s.execute(select(AppointmentSlot.availability_id))).scalars().all()
            return second.availability_id, windows, slots

    second_id, windows, slots = asyncio.run(scenario())

    assert windows == [second_id]
    assert slots == [second_id, second_id]
