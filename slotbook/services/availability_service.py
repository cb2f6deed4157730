"""
Time window resolution.

Turns an owner's schedule (business or employee) into the open interval for one
calendar date. A date exception for the owner and date wins over the weekly
rule; breaks only ever come from weekly rules.
"""
from dataclasses import dataclass
from datetime import date, time

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from slotbook.core.clock import day_of_week
from slotbook.models.schedule import BreakInterval, DateException, ScheduleOwner, WeeklyRule


@dataclass(frozen=True)
class ResolvedWindow:
    start: time
    end: time
    capacity_override: int | None = None
    # WeeklyRule id whose breaks apply; None when the hours came from an exception
    break_source_id: int | None = None
    from_exception: bool = False


async def get_date_exception(
    session: AsyncSession, owner: ScheduleOwner, target_date: date
) -> DateException | None:
    result = await session.execute(
        select(DateException)
        .where(
            DateException.owner_kind == owner.kind,
            DateException.owner_id == owner.id,
            DateException.exception_date == target_date,
        )
        .order_by(DateException.id)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_weekly_rule(session: AsyncSession, owner: ScheduleOwner, dow: int) -> WeeklyRule | None:
    # (owner, day) is unique at the write boundary; ordering keeps reads deterministic
    # for rows written before that constraint existed.
    result = await session.execute(
        select(WeeklyRule)
        .where(
            WeeklyRule.owner_kind == owner.kind,
            WeeklyRule.owner_id == owner.id,
            WeeklyRule.day_of_week == dow,
        )
        .order_by(WeeklyRule.id)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def resolve_window(
    session: AsyncSession, owner: ScheduleOwner, target_date: date
) -> ResolvedWindow | None:
    """Return the open window for owner on target_date, or None when closed.

    Order:
        1. Date exception: closed -> None; custom hours -> that window, no breaks;
           open without hours -> fall through, keeping its capacity override.
        2. Weekly rule for the day of week: missing or unavailable -> None.
    """
    capacity_override: int | None = None
    exception = await get_date_exception(session, owner, target_date)
    if exception is not None:
        if not exception.is_available:
            return None
        if exception.start_time is not None and exception.end_time is not None:
            return ResolvedWindow(
                start=exception.start_time,
                end=exception.end_time,
                capacity_override=exception.capacity_override,
                break_source_id=None,
                from_exception=True,
            )
        capacity_override = exception.capacity_override

    rule = await get_weekly_rule(session, owner, day_of_week(target_date))
    if rule is None or not rule.is_available:
        return None

    return ResolvedWindow(
        start=rule.start_time,
        end=rule.end_time,
        capacity_override=capacity_override if capacity_override is not None else rule.capacity_override,
        break_source_id=rule.id,
        from_exception=False,
    )


async def get_breaks(session: AsyncSession, break_source_id: int | None) -> list[BreakInterval]:
    if break_source_id is None:
        return []
    result = await session.execute(
        select(BreakInterval)
        .where(BreakInterval.weekly_rule_id == break_source_id)
        .order_by(BreakInterval.start_time)
    )
    return list(result.scalars().all())
