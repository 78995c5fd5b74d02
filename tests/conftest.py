import asyncio
import os
import uuid
from datetime import datetime, timezone

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

os.environ.setdefault('ENV', 'local')
os.environ.setdefault('POSTGRES_DSN', 'sqlite+aiosqlite:///./test.db')

from app.core.base import Base  # noqa: E402
from app.modules.availability import models  # noqa: E402,F401
from app.modules.availability.schemas import CreateAvailabilityRequest  # noqa: E402
from app.modules.availability.service import AvailabilityService  # noqa: E402

# 07:00 on 2025-01-01 in New York
FIXED_NOW = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


def fixed_clock() -> datetime:
    return FIXED_NOW


@pytest.fixture
def session_factory(tmp_path):
    # A file database so that concurrent sessions really are separate connections.
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'availability.db'}", poolclass=NullPool)

    async def create_tables() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(create_tables())
    yield async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    asyncio.run(engine.dispose())


@pytest.fixture
def make_service():
    def make(session: AsyncSession, **kwargs) -> AvailabilityService:
        kwargs.setdefault('clock', fixed_clock)
        return AvailabilityService(session, **kwargs)
    return make


@pytest.fixture
def availability_request():
    def build(**overrides) -> CreateAvailabilityRequest:
        data = {
            'date': '2025-01-06',
            'start_time': '09:00',
            'end_time': '10:00',
            'timezone': 'America/New_York',
            'slot_duration_minutes': 30,
        }
        data.update(overrides)
        return CreateAvailabilityRequest(**data)
    return build


@pytest.fixture
def provider_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def client(session_factory, make_service):
    from fastapi import Depends
    from fastapi.testclient import TestClient

    from app.core.db import get_session
    from app.main import app
    from app.modules.availability.router import svc

    async def override_session():
        async with session_factory() as s:
            yield s

    def override_svc(s: AsyncSession = Depends(get_session)) -> AvailabilityService:
        return make_service(s)

    app.dependency_overrides[get_session] = override_session
    app.dependency_overrides[svc] = override_svc
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
