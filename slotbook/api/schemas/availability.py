from datetime import date, time

from pydantic import BaseModel, Field

from slotbook.models.schedule import OwnerKind


class WeeklyRuleRequest(BaseModel):
    owner_kind: OwnerKind
    owner_id: int
    day_of_week: int = Field(description="0 = Sunday ... 6 = Saturday")
    start_time: time
    end_time: time
    is_available: bool = True
    capacity_override: int | None = None


class WeeklyRulePublic(WeeklyRuleRequest):
    id: int


class BreakRequest(BaseModel):
    start_time: time
    end_time: time


class BreakPublic(BreakRequest):
    id: int
    weekly_rule_id: int


class DateExceptionRequest(BaseModel):
    owner_kind: OwnerKind
    owner_id: int
    date: date
    is_available: bool = False
    start_time: time | None = None
    end_time: time | None = None
    capacity_override: int | None = None
    reason: str | None = None


class DateExceptionPublic(DateExceptionRequest):
    id: int


class WindowResponse(BaseModel):
    date: date
    open: bool
    start_time: time | None = None
    end_time: time | None = None
    capacity_override: int | None = None
    from_exception: bool = False
    breaks: list[BreakRequest] = []
