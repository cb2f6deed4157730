from datetime import date, time
from typing import Literal

from pydantic import BaseModel

from slotbook.models.business import CapacityMode
from slotbook.services.slot_service import Slot, SlotTable, from_minutes


class SlotInfo(BaseModel):
    start_time: time
    end_time: time
    available: bool
    # SHARED businesses only; "unlimited" when capacity is 0
    spots_left: int | Literal["unlimited"] | None = None
    total_capacity: int | Literal["unlimited"] | None = None

    @classmethod
    def from_slot(cls, slot: Slot, shared: bool) -> "SlotInfo":
        spots = total = None
        if shared:
            if slot.total_capacity:
                spots, total = slot.spots_left, slot.total_capacity
            elif slot.available:
                spots = total = "unlimited"
            else:
                # unlimited capacity, blocked by the employee's daily cap
                spots, total = 0, "unlimited"
        return cls(
            start_time=slot.start, end_time=slot.end, available=slot.available,
            spots_left=spots, total_capacity=total,
        )


class WorkingHours(BaseModel):
    start_time: time
    end_time: time
    from_exception: bool = False


class BreakInfo(BaseModel):
    start_time: time
    end_time: time


class AvailableSlotsResponse(BaseModel):
    date: date
    available: bool
    capacity_mode: CapacityMode
    # Effective capacity for the day; 0 means unlimited in SHARED mode
    capacity: int
    service_duration: int | None = None
    employee_id: int | None = None
    step: int | None = None
    reason: str | None = None
    window: WorkingHours | None = None
    breaks: list[BreakInfo] = []
    slots: list[SlotInfo]
    available_slots: list[SlotInfo]

    @classmethod
    def from_table(cls, table: SlotTable) -> "AvailableSlotsResponse":
        shared = table.capacity_mode == CapacityMode.SHARED
        slots = [SlotInfo.from_slot(s, shared) for s in table.slots]
        window = None
        if table.window is not None:
            window = WorkingHours(
                start_time=table.window.start,
                end_time=table.window.end,
                from_exception=table.window.from_exception,
            )
        return cls(
            date=table.date,
            available=table.available,
            capacity_mode=table.capacity_mode,
            capacity=table.capacity,
            service_duration=table.service_duration,
            employee_id=table.employee_id,
            step=table.step,
            reason=table.reason,
            window=window,
            breaks=[BreakInfo(start_time=from_minutes(b0), end_time=from_minutes(b1)) for b0, b1 in table.breaks],
            slots=slots,
            available_slots=[s for s in slots if s.available],
        )


class RangeSlotsResponse(BaseModel):
    start_date: date
    end_date: date
    days: list[AvailableSlotsResponse]
