import asyncio
import os
import sys
import uuid
from datetime import date, timedelta

# Add the project root to the Python path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from app.core.db import SessionLocal, init_models
from app.modules.availability.schemas import CreateAvailabilityRequest
from app.modules.availability.service import AvailabilityService

TIME_BLOCKS = [
    {"start": "09:00", "end": "13:00"},
    {"start": "14:00", "end": "17:00"},
]

async def seed_provider(provider_id: uuid.UUID, tz: str, weeks: int):
    """
    Creates weekly recurring Monday-Friday availability for one provider, starting next Monday.
    """
    today = date.today()
    monday = today + timedelta(days=7 - today.weekday())
    end = monday + timedelta(weeks=weeks)
    for offset in range(5):
        day = monday + timedelta(days=offset)
        for block in TIME_BLOCKS:
            async with SessionLocal() as db:
                req = CreateAvailabilityRequest(
                    date=day.isoformat(),
                    start_time=block["start"],
                    end_time=block["end"],
                    timezone=tz,
                    is_recurring=True,
                    recurrence_pattern="WEEKLY",
                    recurrence_end_date=end.isoformat(),
                    slot_duration_minutes=30,
                )
                res = await AvailabilityService(db).create_availability(provider_id, req)
                print(f"  - {day:%a} {block['start']}-{block['end']}: {res.slots_created} slots through {res.date_range.end}")

async def main():
    provider_id = uuid.UUID(sys.argv[1]) if len(sys.argv) > 1 else uuid.uuid4()
    tz = sys.argv[2] if len(sys.argv) > 2 else "America/New_York"
    weeks = int(sys.argv[3]) if len(sys.argv) > 3 else 4
    print(f"Seeding availability for provider {provider_id} ({tz}, {weeks} weeks)...")
    await init_models()
    await seed_provider(provider_id, tz, weeks)
    print("Seeding complete!")

if __name__ == "__main__":
    asyncio.run(main())
