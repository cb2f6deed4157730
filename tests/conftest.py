"""
Test configuration and fixtures.

Provides:
- A throwaway SQLite database per test (schema from SQLModel.metadata)
- A FixedClock pinned to Monday 2026-03-02 08:00 UTC
- Factory helpers for businesses, services, employees, schedules and appointments
- HTTPX AsyncClient with session and clock overrides
"""
import os
from collections.abc import AsyncGenerator
from datetime import UTC, date, datetime, time

import pytest

# Settings are read at import time; point them at SQLite before importing the app
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["AUTO_SWEEP_ENABLED"] = "false"
os.environ["SMTP_HOST"] = ""

from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool
from sqlmodel import SQLModel

import slotbook.models  # noqa: F401 - register tables
from slotbook.api.deps import get_clock, get_session
from slotbook.core.clock import FixedClock
from slotbook.main import app
from slotbook.models.appointment import Appointment, AppointmentStatus
from slotbook.models.business import Business, BusinessSettings, CapacityMode, Employee, EmployeeService, Service
from slotbook.models.schedule import BreakInterval, DateException, OwnerKind, WeeklyRule

NOW = datetime(2026, 3, 2, 8, 0, tzinfo=UTC)  # Monday
TODAY = date(2026, 3, 2)
TOMORROW = date(2026, 3, 3)  # Tuesday, day_of_week 2


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(NOW)


@pytest.fixture
async def session_maker(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
async def session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    async with session_maker() as s:
        yield s


class Factory:
    """Small builders that flush and commit so every session sees the rows."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def _save(self, obj):
        self.session.add(obj)
        await self.session.commit()
        await self.session.refresh(obj)
        return obj

    async def business(
        self,
        capacity_mode: CapacityMode = CapacityMode.EXCLUSIVE,
        default_capacity: int = 1,
        step: int = 15,
        timezone: str = "UTC",
        **settings,
    ) -> Business:
        # Booking-window policies off unless a test turns them on
        config = {"minBookingNoticeHours": 0, "maxAdvanceBookingDays": 0, **settings}
        return await self._save(
            Business(
                name="Studio",
                capacity_mode=capacity_mode,
                default_capacity=default_capacity,
                default_slot_interval=step,
                timezone=timezone,
                settings=BusinessSettings.model_validate(config).model_dump(by_alias=True),
            )
        )

    async def service(self, business: Business, duration: int = 60, **kw) -> Service:
        return await self._save(Service(business_id=business.id, name="Haircut", duration=duration, **kw))

    async def employee(self, business: Business, services: list[Service] = (), **kw) -> Employee:
        employee = await self._save(Employee(business_id=business.id, name="Ana", **kw))
        for service in services:
            self.session.add(EmployeeService(employee_id=employee.id, service_id=service.id))
        await self.session.commit()
        return employee

    async def weekly_rule(
        self,
        owner_id: int,
        day_of_week: int = 2,
        start: time = time(9),
        end: time = time(17),
        owner_kind: OwnerKind = OwnerKind.BUSINESS,
        **kw,
    ) -> WeeklyRule:
        return await self._save(
            WeeklyRule(
                owner_kind=owner_kind, owner_id=owner_id, day_of_week=day_of_week,
                start_time=start, end_time=end, **kw,
            )
        )

    async def brk(self, rule: WeeklyRule, start: time, end: time) -> BreakInterval:
        return await self._save(BreakInterval(weekly_rule_id=rule.id, start_time=start, end_time=end))

    async def exception(
        self,
        owner_id: int,
        on: date = TOMORROW,
        owner_kind: OwnerKind = OwnerKind.BUSINESS,
        **kw,
    ) -> DateException:
        return await self._save(
            DateException(owner_kind=owner_kind, owner_id=owner_id, exception_date=on, **kw)
        )

    async def appointment(
        self,
        business: Business,
        service: Service,
        start: time,
        end: time,
        on: date = TOMORROW,
        status: AppointmentStatus = AppointmentStatus.CONFIRMED,
        **kw,
    ) -> Appointment:
        created = NOW.replace(tzinfo=None)
        fields = dict(
            business_id=business.id,
            service_id=service.id,
            client_first_name="Jane",
            client_last_name="Doe",
            client_email="jane@example.com",
            client_phone="+38970000000",
            appointment_date=on,
            start_time=start,
            end_time=end,
            status=status,
            created_at=created,
            updated_at=created,
        )
        fields.update(kw)
        return await self._save(Appointment(**fields))


@pytest.fixture
def factory(session) -> Factory:
    return Factory(session)


@pytest.fixture
async def client(session_maker, clock) -> AsyncGenerator[AsyncClient, None]:
    async def override_get_session() -> AsyncGenerator[AsyncSession, None]:
        async with session_maker() as s:
            try:
                yield s
                await s.commit()
            except Exception:
                await s.rollback()
                raise

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_clock] = lambda: clock

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
