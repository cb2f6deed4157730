from datetime import date

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from slotbook.api.deps import get_clock, get_session
from slotbook.api.schemas.slots import AvailableSlotsResponse, RangeSlotsResponse
from slotbook.core.clock import Clock
from slotbook.core.db import run_with_timeout
from slotbook.services.slot_service import compute_slots, compute_slots_for_range

router = APIRouter(prefix="/slots", tags=["slots"])


@router.get("/available", response_model=AvailableSlotsResponse)
async def available_slots(
    business_id: int,
    service_id: int,
    date_param: str = Query(..., alias="date", description="YYYY-MM-DD in the business's timezone"),
    employee_id: int | None = None,
    exclude_appointment_id: int | None = None,
    session: AsyncSession = Depends(get_session),
    clock: Clock = Depends(get_clock),
) -> AvailableSlotsResponse:
    """Every candidate slot for the date, each marked available or not."""
    table = await run_with_timeout(
        compute_slots(
            session, business_id, service_id, date_param,
            employee_id=employee_id, exclude_appointment_id=exclude_appointment_id, clock=clock,
        )
    )
    return AvailableSlotsResponse.from_table(table)


@router.get("/range", response_model=RangeSlotsResponse)
async def range_slots(
    business_id: int,
    service_id: int,
    start_date: str,
    end_date: str,
    employee_id: int | None = None,
    session: AsyncSession = Depends(get_session),
    clock: Clock = Depends(get_clock),
) -> RangeSlotsResponse:
    tables = await run_with_timeout(
        compute_slots_for_range(
            session, business_id, service_id, start_date, end_date, employee_id=employee_id, clock=clock
        )
    )
    return RangeSlotsResponse(
        start_date=date.fromisoformat(start_date),
        end_date=date.fromisoformat(end_date),
        days=[AvailableSlotsResponse.from_table(t) for t in tables],
    )
