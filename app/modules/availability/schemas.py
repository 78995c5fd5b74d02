import uuid
import datetime as dt
from decimal import Decimal
from pydantic import BaseModel, Field

# Enum-valued fields arrive as plain strings and are normalised by the service,
# so an unknown value becomes a domain ValidationError rather than a 422.

class LocationIn(BaseModel):
    type: str | None = None
    address: str | None = Field(default=None, max_length=255)
    room_number: str | None = Field(default=None, max_length=32)

class PricingIn(BaseModel):
    base_fee: Decimal | None = Field(default=None, ge=0)
    insurance_accepted: bool = False
    currency: str = Field(default="USD", min_length=3, max_length=3)

class PricingUpdate(BaseModel):
    base_fee: Decimal | None = Field(default=None, ge=0)
    insurance_accepted: bool | None = None
    currency: str | None = Field(default=None, min_length=3, max_length=3)

class CreateAvailabilityRequest(BaseModel):
    date: str                      # YYYY-MM-DD
    start_time: str                # HH:mm
    end_time: str                  # HH:mm
    timezone: str
    is_recurring: bool = False
    recurrence_pattern: str | None = None
    recurrence_end_date: str | None = None
    slot_duration_minutes: int = Field(default=30, ge=15, le=480)
    break_duration_minutes: int = Field(default=0, ge=0, le=120)
    max_appointments_per_slot: int = Field(default=1, ge=1, le=10)
    appointment_type: str = "CONSULTATION"
    location: LocationIn | None = None
    pricing: PricingIn | None = None
    notes: str | None = Field(default=None, max_length=500)
    special_requirements: list[str] | None = None

class UpdateSlotRequest(BaseModel):
    start_time: str | None = None
    end_time: str | None = None
    status: str | None = None
    appointment_type: str | None = None
    notes: str | None = Field(default=None, max_length=500)
    pricing: PricingUpdate | None = None

class AvailabilityStatusChange(BaseModel):
    status: str

class SlotInfo(BaseModel):
    id: uuid.UUID
    date: dt.date
    start_time: str                # HH:MM local
    end_time: str
    timezone: str
    status: str
    appointment_type: str | None = None

class DateRange(BaseModel):
    start: dt.date
    end: dt.date

class CreateAvailabilityResponse(BaseModel):
    availability_id: uuid.UUID | None
    slots_created: int
    date_range: DateRange
    total_appointments_available: int
    generated_slots: list[SlotInfo]

class SlotOut(BaseModel):
    id: uuid.UUID
    availability_id: uuid.UUID
    provider_id: uuid.UUID
    slot_start_time: dt.datetime      # local, offset-qualified
    slot_end_time: dt.datetime
    timezone: str
    status: str
    patient_id: uuid.UUID | None = None
    appointment_type: str | None = None
    booking_reference: str | None = None

    @classmethod
    def from_slot(cls, slot) -> "SlotOut":
        return cls(
            id=slot.id,
            availability_id=slot.availability_id,
            provider_id=slot.provider_id,
            slot_start_time=slot.local_start,
            slot_end_time=slot.local_end,
            timezone=slot.timezone,
            status=slot.status.value,
            patient_id=slot.patient_id,
            appointment_type=slot.appointment_type,
            booking_reference=slot.booking_reference,
        )

class WindowOut(BaseModel):
    id: uuid.UUID
    provider_id: uuid.UUID
    date: dt.date
    start_time: str
    end_time: str
    timezone: str
    is_recurring: bool
    recurrence_pattern: str | None = None
    recurrence_end_date: dt.date | None = None
    slot_duration_minutes: int
    break_duration_minutes: int
    max_appointments_per_slot: int
    current_appointments: int
    status: str
    appointment_type: str
    location_type: str | None = None
    location_address: str | None = None
    location_room_number: str | None = None
    pricing_base_fee: Decimal | None = None
    pricing_insurance_accepted: bool | None = None
    pricing_currency: str | None = None
    notes: str | None = None
    special_requirements: list[str] | None = None

    @classmethod
    def from_window(cls, w) -> "WindowOut":
        def value(e):
            return e.value if e is not None else None
        return cls(
            id=w.id, provider_id=w.provider_id, date=w.date,
            start_time=w.start_time.strftime("%H:%M"), end_time=w.end_time.strftime("%H:%M"),
            timezone=w.timezone, is_recurring=w.is_recurring,
            recurrence_pattern=value(w.recurrence_pattern), recurrence_end_date=w.recurrence_end_date,
            slot_duration_minutes=w.slot_duration_minutes, break_duration_minutes=w.break_duration_minutes,
            max_appointments_per_slot=w.max_appointments_per_slot, current_appointments=w.current_appointments,
            status=w.status.value, appointment_type=w.appointment_type.value,
            location_type=value(w.location_type), location_address=w.location_address,
            location_room_number=w.location_room_number,
            pricing_base_fee=w.pricing_base_fee, pricing_insurance_accepted=w.pricing_insurance_accepted,
            pricing_currency=w.pricing_currency, notes=w.notes, special_requirements=w.special_requirements,
        )

class SlotCounts(BaseModel):
    total_slots: int = 0
    available_slots: int = 0
    booked_slots: int = 0
    cancelled_slots: int = 0

class DaySlots(BaseModel):
    date: dt.date
    slots: list[SlotOut]

class AvailabilitySummary(BaseModel):
    provider_id: uuid.UUID
    summary: SlotCounts
    availability: list[DaySlots]

class SearchCriteria(BaseModel):
    date: dt.date | None = None
    start_date: dt.date
    end_date: dt.date
    appointment_type: str | None = None
    insurance_accepted: bool | None = None
    max_price: Decimal | None = None

class ProviderSlots(BaseModel):
    provider_id: uuid.UUID
    available_slots: list[SlotOut]

class AvailabilitySearchResponse(BaseModel):
    search_criteria: SearchCriteria
    total_results: int             # matching slots across all providers
    results: list[ProviderSlots]
