import enum
import uuid
import datetime as dt
from decimal import Decimal
from zoneinfo import ZoneInfo
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Integer, Date, Time, Numeric, Boolean, JSON, ForeignKey, Enum, Index
from app.core.base import Base, TimestampedMixin, UTCDateTime


class RecurrencePattern(str, enum.Enum):
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"

class AvailabilityStatus(str, enum.Enum):
    AVAILABLE = "AVAILABLE"
    BOOKED = "BOOKED"
    CANCELLED = "CANCELLED"
    BLOCKED = "BLOCKED"
    MAINTENANCE = "MAINTENANCE"

class AppointmentType(str, enum.Enum):
    CONSULTATION = "CONSULTATION"
    FOLLOW_UP = "FOLLOW_UP"
    EMERGENCY = "EMERGENCY"
    TELEMEDICINE = "TELEMEDICINE"

class LocationType(str, enum.Enum):
    CLINIC = "CLINIC"
    HOSPITAL = "HOSPITAL"
    TELEMEDICINE = "TELEMEDICINE"
    HOME_VISIT = "HOME_VISIT"

class SlotStatus(str, enum.Enum):
    AVAILABLE = "AVAILABLE"
    BOOKED = "BOOKED"
    CANCELLED = "CANCELLED"
    BLOCKED = "BLOCKED"


def _enum(cls: type[enum.Enum]) -> Enum:
    # stored as VARCHAR so adding members needs no migration
    return Enum(cls, native_enum=False, length=16, validate_strings=True)


# A provider's declared open window on one calendar date; slots are cut from it.
class AvailabilityWindow(Base, TimestampedMixin):
    __table_args__ = (
        Index("idx_availability_provider_date", "provider_id", "date"),
        Index("idx_availability_date_status", "date", "status"),
    )

    provider_id: Mapped[uuid.UUID] = mapped_column(index=True)
    date: Mapped[dt.date] = mapped_column(Date)
    start_time: Mapped[dt.time] = mapped_column(Time)
    end_time: Mapped[dt.time] = mapped_column(Time)
    timezone: Mapped[str] = mapped_column(String(64))

    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False)
    recurrence_pattern: Mapped[RecurrencePattern | None] = mapped_column(_enum(RecurrencePattern), nullable=True)
    recurrence_end_date: Mapped[dt.date | None] = mapped_column(Date, nullable=True)

    slot_duration_minutes: Mapped[int] = mapped_column(Integer, default=30)   # 15..480
    break_duration_minutes: Mapped[int] = mapped_column(Integer, default=0)   # 0..120
    max_appointments_per_slot: Mapped[int] = mapped_column(Integer, default=1)
    current_appointments: Mapped[int] = mapped_column(Integer, default=0)

    status: Mapped[AvailabilityStatus] = mapped_column(_enum(AvailabilityStatus), default=AvailabilityStatus.AVAILABLE)
    appointment_type: Mapped[AppointmentType] = mapped_column(_enum(AppointmentType), default=AppointmentType.CONSULTATION)

    # Location (optional)
    location_type: Mapped[LocationType | None] = mapped_column(_enum(LocationType), nullable=True)
    location_address: Mapped[str | None] = mapped_column(String(255), nullable=True)
    location_room_number: Mapped[str | None] = mapped_column(String(32), nullable=True)

    # Pricing (optional)
    pricing_base_fee: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    pricing_insurance_accepted: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    pricing_currency: Mapped[str | None] = mapped_column(String(3), nullable=True)

    notes: Mapped[str | None] = mapped_column(String(500), nullable=True)
    special_requirements: Mapped[list | None] = mapped_column(JSON, nullable=True)  # ordered list of strings


class AppointmentSlot(Base, TimestampedMixin):
    __table_args__ = (
        Index("idx_slot_provider_start", "provider_id", "slot_start_time"),
    )

    availability_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("availabilitywindow.id", ondelete="CASCADE"), index=True)
    provider_id: Mapped[uuid.UUID] = mapped_column()  # denormalized from the window

    slot_start_time: Mapped[dt.datetime] = mapped_column(UTCDateTime())
    slot_end_time: Mapped[dt.datetime] = mapped_column(UTCDateTime())
    timezone: Mapped[str] = mapped_column(String(64))  # the window's zone, for local rendering

    status: Mapped[SlotStatus] = mapped_column(_enum(SlotStatus), default=SlotStatus.AVAILABLE, index=True)
    patient_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True, index=True)  # set only while BOOKED
    appointment_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    booking_reference: Mapped[str | None] = mapped_column(String(64), unique=True, nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    @property
    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @property
    def local_start(self) -> dt.datetime:
        return self.slot_start_time.astimezone(self.zone)

    @property
    def local_end(self) -> dt.datetime:
        return self.slot_end_time.astimezone(self.zone)
