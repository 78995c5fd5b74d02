import uuid
from decimal import Decimal
from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.ext.asyncio import AsyncSession
from app.core.clock import parse_date
from app.core.db import get_session
from app.core.security import Principal, ensure_acts_for, require_scopes
from app.modules.availability.service import AvailabilityService
from app.modules.availability.schemas import (
    AvailabilitySearchResponse, AvailabilityStatusChange, AvailabilitySummary, CreateAvailabilityRequest, CreateAvailabilityResponse,
    SlotOut, UpdateSlotRequest, WindowOut,
)

router = APIRouter()
# patient-facing, across providers
search_router = APIRouter()

def svc(s: AsyncSession = Depends(get_session)) -> AvailabilityService:
    return AvailabilityService(s)

def _opt_date(raw: str | None, field: str):
    return parse_date(raw, field) if raw else None

read = [Depends(require_scopes("availability:read"))]
write = [Depends(require_scopes("availability:write"))]

# Availability windows
@router.post("/availability", status_code=201, response_model=CreateAvailabilityResponse)
async def create_availability(provider_id: uuid.UUID, payload: CreateAvailabilityRequest, principal: Principal = Depends(require_scopes("availability:write")), service: AvailabilityService = Depends(svc)):
    ensure_acts_for(principal, provider_id)
    return await service.create_availability(provider_id, payload)

@router.get("/{provider_id}/availability", response_model=AvailabilitySummary, dependencies=read)
async def availability_summary(provider_id: uuid.UUID, start_date: str | None = None, end_date: str | None = None, status: str | None = None, appointment_type: str | None = None, service: AvailabilityService = Depends(svc)):
    return await service.get_availability_summary(
        provider_id,
        start_date=_opt_date(start_date, "start_date"), end_date=_opt_date(end_date, "end_date"),
        status=status, appointment_type=appointment_type,
    )

@router.get("/{provider_id}/availability/windows", response_model=list[WindowOut], dependencies=read)
async def list_windows(provider_id: uuid.UUID, start_date: str | None = None, end_date: str | None = None, service: AvailabilityService = Depends(svc)):
    if start_date or end_date:
        windows = await service.get_provider_availability_in_range(provider_id, _opt_date(start_date, "start_date"), _opt_date(end_date, "end_date"))
    else:
        windows = await service.get_provider_availability(provider_id)
    return [WindowOut.from_window(w) for w in windows]

@router.patch("/availability/windows/{availability_id}/status", response_model=WindowOut, dependencies=write)
async def update_window_status(availability_id: uuid.UUID, payload: AvailabilityStatusChange, service: AvailabilityService = Depends(svc)):
    return WindowOut.from_window(await service.update_availability_status(availability_id, payload.status))

@router.delete("/availability/windows/{availability_id}", status_code=204, dependencies=write)
async def delete_window(availability_id: uuid.UUID, service: AvailabilityService = Depends(svc)):
    await service.delete_availability(availability_id)
    return Response(status_code=204)

# Slot queries
@router.get("/{provider_id}/availability/slots/available", response_model=list[SlotOut], dependencies=read)
async def available_slots(provider_id: uuid.UUID, start_date: str | None = None, end_date: str | None = None, appointment_type: str | None = None, service: AvailabilityService = Depends(svc)):
    slots = await service.get_available_appointment_slots(
        provider_id,
        start_date=_opt_date(start_date, "start_date"), end_date=_opt_date(end_date, "end_date"),
        appointment_type=appointment_type,
    )
    return [SlotOut.from_slot(sl) for sl in slots]

@router.get("/{provider_id}/appointments/upcoming", response_model=list[SlotOut], dependencies=read)
async def upcoming_for_provider(provider_id: uuid.UUID, service: AvailabilityService = Depends(svc)):
    return [SlotOut.from_slot(sl) for sl in await service.get_upcoming_appointments_for_provider(provider_id)]

@router.get("/patients/{patient_id}/appointments", response_model=list[SlotOut], dependencies=read)
async def appointments_for_patient(patient_id: uuid.UUID, upcoming: bool = False, service: AvailabilityService = Depends(svc)):
    if upcoming:
        slots = await service.get_upcoming_appointments_for_patient(patient_id)
    else:
        slots = await service.get_booked_appointments_for_patient(patient_id)
    return [SlotOut.from_slot(sl) for sl in slots]

@router.get("/availability/bookings/{reference}", response_model=SlotOut, dependencies=read)
async def slot_by_reference(reference: str, service: AvailabilityService = Depends(svc)):
    return SlotOut.from_slot(await service.get_slot_by_booking_reference(reference))

# Slot lifecycle
@router.post("/availability/slots/{slot_id}/book", response_model=SlotOut, dependencies=write)
async def book_slot(slot_id: uuid.UUID, patient_id: uuid.UUID, service: AvailabilityService = Depends(svc)):
    return SlotOut.from_slot(await service.book_slot(slot_id, patient_id))

@router.post("/availability/slots/{slot_id}/cancel", response_model=SlotOut, dependencies=write)
async def cancel_slot(slot_id: uuid.UUID, service: AvailabilityService = Depends(svc)):
    return SlotOut.from_slot(await service.cancel_slot(slot_id))

@router.post("/availability/slots/{slot_id}/block", response_model=SlotOut, dependencies=write)
async def block_slot(slot_id: uuid.UUID, service: AvailabilityService = Depends(svc)):
    return SlotOut.from_slot(await service.block_slot(slot_id))

@router.post("/availability/slots/{slot_id}/reopen", response_model=SlotOut, dependencies=write)
async def reopen_slot(slot_id: uuid.UUID, service: AvailabilityService = Depends(svc)):
    return SlotOut.from_slot(await service.reopen_slot(slot_id))

@router.put("/availability/{slot_id}", response_model=SlotOut, dependencies=write)
async def update_slot(slot_id: uuid.UUID, payload: UpdateSlotRequest, service: AvailabilityService = Depends(svc)):
    return SlotOut.from_slot(await service.update_availability_slot(slot_id, payload))

@router.delete("/availability/{slot_id}", status_code=204, dependencies=write)
async def delete_slot(slot_id: uuid.UUID, delete_recurring: bool = False, reason: str | None = None, service: AvailabilityService = Depends(svc)):
    await service.delete_availability_slot(slot_id, delete_recurring, reason)
    return Response(status_code=204)

# Search
@search_router.get("/search", response_model=AvailabilitySearchResponse, dependencies=read)
async def search_available_slots(
    date: str | None = None, start_date: str | None = None, end_date: str | None = None,
    appointment_type: str | None = None, insurance_accepted: bool | None = None,
    max_price: Decimal | None = Query(default=None, ge=0),
    service: AvailabilityService = Depends(svc),
):
    return await service.search_available_slots(
        day=_opt_date(date, "date"), start_date=_opt_date(start_date, "start_date"), end_date=_opt_date(end_date, "end_date"),
        appointment_type=appointment_type, insurance_accepted=insurance_accepted, max_price=max_price,
    )
