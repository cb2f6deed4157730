from dataclasses import dataclass
from datetime import date, time
from enum import Enum

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel


class OwnerKind(str, Enum):
    BUSINESS = "BUSINESS"
    EMPLOYEE = "EMPLOYEE"


@dataclass(frozen=True)
class ScheduleOwner:
    """Who a weekly rule / date exception belongs to: a business or one employee."""

    kind: OwnerKind
    id: int

    @classmethod
    def business(cls, business_id: int) -> "ScheduleOwner":
        return cls(OwnerKind.BUSINESS, business_id)

    @classmethod
    def employee(cls, employee_id: int) -> "ScheduleOwner":
        return cls(OwnerKind.EMPLOYEE, employee_id)


class WeeklyRule(SQLModel, table=True):
    __tablename__ = "weekly_rules"
    __table_args__ = (
        UniqueConstraint("owner_kind", "owner_id", "day_of_week", name="uq_weekly_rules_owner_day"),
    )
    id: int | None = Field(default=None, primary_key=True)
    owner_kind: OwnerKind = Field(index=True)
    owner_id: int = Field(index=True)
    day_of_week: int  # 0 = Sunday
    start_time: time
    end_time: time
    is_available: bool = True
    capacity_override: int | None = None


class BreakInterval(SQLModel, table=True):
    __tablename__ = "break_intervals"
    id: int | None = Field(default=None, primary_key=True)
    weekly_rule_id: int = Field(foreign_key="weekly_rules.id", index=True)
    start_time: time
    end_time: time


class DateException(SQLModel, table=True):
    __tablename__ = "date_exceptions"
    __table_args__ = (
        UniqueConstraint("owner_kind", "owner_id", "exception_date", name="uq_date_exceptions_owner_date"),
    )
    id: int | None = Field(default=None, primary_key=True)
    owner_kind: OwnerKind = Field(index=True)
    owner_id: int = Field(index=True)
    exception_date: date = Field(index=True)
    is_available: bool = False
    start_time: time | None = None
    end_time: time | None = None
    capacity_override: int | None = None
    reason: str | None = None
