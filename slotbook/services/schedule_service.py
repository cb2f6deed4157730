"""Write boundary for schedules: weekly rules, breaks and date exceptions.

Shape errors (day out of range, start >= end, break outside its rule) are
rejected here so the resolver can trust what it reads.
"""
from datetime import date, time

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from slotbook.core.exceptions import BookingValidationError, NotFoundError
from slotbook.models.business import Business, Employee
from slotbook.models.schedule import BreakInterval, DateException, OwnerKind, ScheduleOwner, WeeklyRule


def _check_range(start: time, end: time, what: str) -> None:
    if start >= end:
        raise BookingValidationError(f"{what} start must be before end", reason="start_not_before_end")


def _check_capacity(capacity: int | None) -> None:
    if capacity is not None and capacity < 0:
        raise BookingValidationError("Capacity override cannot be negative", reason="invalid_capacity")


async def ensure_owner(session: AsyncSession, owner: ScheduleOwner) -> None:
    model = Business if owner.kind == OwnerKind.BUSINESS else Employee
    if await session.get(model, owner.id) is None:
        raise NotFoundError(f"{owner.kind.value.title()} not found", reason=f"{owner.kind.value.lower()}_not_found")


async def set_weekly_rule(
    session: AsyncSession,
    owner: ScheduleOwner,
    day_of_week: int,
    start_time: time,
    end_time: time,
    is_available: bool = True,
    capacity_override: int | None = None,
) -> WeeklyRule:
    """Create or replace the single rule for (owner, day_of_week)."""
    if not 0 <= day_of_week <= 6:
        raise BookingValidationError("day_of_week must be between 0 and 6", reason="invalid_day_of_week")
    _check_range(start_time, end_time, "Rule")
    _check_capacity(capacity_override)
    await ensure_owner(session, owner)

    result = await session.execute(
        select(WeeklyRule).where(
            WeeklyRule.owner_kind == owner.kind,
            WeeklyRule.owner_id == owner.id,
            WeeklyRule.day_of_week == day_of_week,
        )
    )
    rule = result.scalar_one_or_none()
    if rule is None:
        rule = WeeklyRule(owner_kind=owner.kind, owner_id=owner.id, day_of_week=day_of_week,
                          start_time=start_time, end_time=end_time)
    rule.start_time = start_time
    rule.end_time = end_time
    rule.is_available = is_available
    rule.capacity_override = capacity_override
    session.add(rule)
    await session.flush()
    await session.refresh(rule)
    return rule


async def add_break(session: AsyncSession, weekly_rule_id: int, start_time: time, end_time: time) -> BreakInterval:
    _check_range(start_time, end_time, "Break")
    rule = await session.get(WeeklyRule, weekly_rule_id)
    if rule is None:
        raise NotFoundError("Weekly rule not found", reason="weekly_rule_not_found")
    if start_time < rule.start_time or end_time > rule.end_time:
        raise BookingValidationError("Break must lie within its rule's hours", reason="break_outside_rule")
    brk = BreakInterval(weekly_rule_id=weekly_rule_id, start_time=start_time, end_time=end_time)
    session.add(brk)
    await session.flush()
    await session.refresh(brk)
    return brk


async def set_date_exception(
    session: AsyncSession,
    owner: ScheduleOwner,
    exception_date: date,
    is_available: bool = False,
    start_time: time | None = None,
    end_time: time | None = None,
    capacity_override: int | None = None,
    reason: str | None = None,
) -> DateException:
    """Create or replace the exception for (owner, date)."""
    if (start_time is None) != (end_time is None):
        raise BookingValidationError(
            "Custom hours need both start and end", reason="incomplete_custom_hours"
        )
    if start_time is not None and end_time is not None:
        _check_range(start_time, end_time, "Exception")
    _check_capacity(capacity_override)
    await ensure_owner(session, owner)

    result = await session.execute(
        select(DateException).where(
            DateException.owner_kind == owner.kind,
            DateException.owner_id == owner.id,
            DateException.exception_date == exception_date,
        )
    )
    exc = result.scalar_one_or_none()
    if exc is None:
        exc = DateException(owner_kind=owner.kind, owner_id=owner.id, exception_date=exception_date)
    exc.is_available = is_available
    exc.start_time = start_time
    exc.end_time = end_time
    exc.capacity_override = capacity_override
    exc.reason = reason
    session.add(exc)
    await session.flush()
    await session.refresh(exc)
    return exc
