import re
import uuid
from datetime import date, datetime, time, timezone
from typing import Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from app.core.config import settings
from app.core.errors import InvalidFormat, InvalidTimezone

Clock = Callable[[], datetime]
ReferenceFactory = Callable[[], str]

def utc_now() -> datetime:
    return datetime.now(timezone.utc)

def resolve_zone(name: str | None) -> ZoneInfo:
    """Resolve an IANA zone name, rejecting unknown or empty names."""
    if not name or not name.strip():
        raise InvalidTimezone("Timezone is required")
    try:
        return ZoneInfo(name.strip())
    # directory names in the zone database ("America") surface as OSError
    except (ZoneInfoNotFoundError, ValueError, OSError) as e:
        raise InvalidTimezone(f"Unknown timezone: {name}", timezone=name) from e

def today_in(zone: ZoneInfo, clock: Clock = utc_now) -> date:
    return clock().astimezone(zone).date()

def make_booking_reference(clock: Clock = utc_now, prefix: str | None = None) -> str:
    # REF-<epoch millis>-<8 hex>
    millis = int(clock().timestamp() * 1000)
    return f"{prefix or settings.BOOKING_REFERENCE_PREFIX}-{millis}-{uuid.uuid4().hex[:8]}"

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_TIME_RE = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")

def parse_date(raw: str, field: str = "date") -> date:
    """Strict ``YYYY-MM-DD``."""
    if not isinstance(raw, str) or not _DATE_RE.match(raw.strip()):
        raise InvalidFormat(f"{field} must be in YYYY-MM-DD format", field=field, value=raw)
    try:
        return date.fromisoformat(raw.strip())
    except ValueError as e:
        raise InvalidFormat(f"{field} is not a valid calendar date", field=field, value=raw) from e

def parse_time(raw: str, field: str = "time") -> time:
    """24-hour ``HH:mm`` wall-clock time."""
    m = _TIME_RE.match(raw.strip()) if isinstance(raw, str) else None
    if not m:
        raise InvalidFormat(f"{field} must be in HH:mm format (24-hour)", field=field, value=raw)
    return time(int(m.group(1)), int(m.group(2)))
