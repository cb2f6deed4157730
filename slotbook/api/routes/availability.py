from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from slotbook.api.deps import get_session
from slotbook.api.schemas.availability import (
    BreakPublic,
    BreakRequest,
    DateExceptionPublic,
    DateExceptionRequest,
    WeeklyRulePublic,
    WeeklyRuleRequest,
    WindowResponse,
)
from slotbook.core.db import run_with_timeout
from slotbook.models.schedule import OwnerKind, ScheduleOwner
from slotbook.services.availability_service import get_breaks, resolve_window
from slotbook.services.schedule_service import add_break, set_date_exception, set_weekly_rule
from slotbook.services.slot_service import parse_date

router = APIRouter(prefix="/availability", tags=["availability"])


@router.get("/window", response_model=WindowResponse)
async def get_window(
    owner_kind: OwnerKind,
    owner_id: int,
    date_param: str = Query(..., alias="date"),
    session: AsyncSession = Depends(get_session),
) -> WindowResponse:
    """Resolved working window for one owner and date (exception first, then weekly rule)."""
    d = parse_date(date_param)
    window = await run_with_timeout(resolve_window(session, ScheduleOwner(owner_kind, owner_id), d))
    if window is None:
        return WindowResponse(date=d, open=False)
    breaks = []
    if not window.from_exception:
        breaks = [
            BreakRequest(start_time=b.start_time, end_time=b.end_time)
            for b in await get_breaks(session, window.break_source_id)
        ]
    return WindowResponse(
        date=d,
        open=True,
        start_time=window.start,
        end_time=window.end,
        capacity_override=window.capacity_override,
        from_exception=window.from_exception,
        breaks=breaks,
    )


@router.post("/weekly-rules", response_model=WeeklyRulePublic, status_code=status.HTTP_201_CREATED)
async def put_weekly_rule(
    body: WeeklyRuleRequest,
    session: AsyncSession = Depends(get_session),
) -> WeeklyRulePublic:
    """Create or replace the rule for (owner, day_of_week)."""
    rule = await set_weekly_rule(
        session,
        ScheduleOwner(body.owner_kind, body.owner_id),
        body.day_of_week,
        body.start_time,
        body.end_time,
        is_available=body.is_available,
        capacity_override=body.capacity_override,
    )
    return WeeklyRulePublic.model_validate(rule, from_attributes=True)


@router.post("/weekly-rules/{rule_id}/breaks", response_model=BreakPublic, status_code=status.HTTP_201_CREATED)
async def post_break(
    rule_id: int,
    body: BreakRequest,
    session: AsyncSession = Depends(get_session),
) -> BreakPublic:
    brk = await add_break(session, rule_id, body.start_time, body.end_time)
    return BreakPublic.model_validate(brk, from_attributes=True)


@router.post("/date-exceptions", response_model=DateExceptionPublic, status_code=status.HTTP_201_CREATED)
async def put_date_exception(
    body: DateExceptionRequest,
    session: AsyncSession = Depends(get_session),
) -> DateExceptionPublic:
    exc = await set_date_exception(
        session,
        ScheduleOwner(body.owner_kind, body.owner_id),
        body.date,
        is_available=body.is_available,
        start_time=body.start_time,
        end_time=body.end_time,
        capacity_override=body.capacity_override,
        reason=body.reason,
    )
    return DateExceptionPublic(
        id=exc.id,
        owner_kind=exc.owner_kind,
        owner_id=exc.owner_id,
        date=exc.exception_date,
        is_available=exc.is_available,
        start_time=exc.start_time,
        end_time=exc.end_time,
        capacity_override=exc.capacity_override,
        reason=exc.reason,
    )
