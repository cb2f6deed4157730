from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field as PydanticField
from pydantic.alias_generators import to_camel
from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


def _utc_naive_now() -> datetime:
    """Naive UTC for TIMESTAMP WITHOUT TIME ZONE columns."""
    return datetime.now(UTC).replace(tzinfo=None)


class CapacityMode(str, Enum):
    EXCLUSIVE = "EXCLUSIVE"
    SHARED = "SHARED"


class BusinessSettings(BaseModel):
    """Per-business booking options, stored as camelCase JSON on the business row."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    buffer_time_minutes: int = PydanticField(default=0, ge=0)
    min_booking_notice_hours: float = PydanticField(default=2, ge=0)
    # 0 disables the limit
    max_advance_booking_days: int = PydanticField(default=30, ge=0)
    max_appointments_per_day: int = PydanticField(default=0, ge=0)
    cancellation_notice_hours: float = PydanticField(default=24, ge=0)
    auto_complete_enabled: bool = False
    auto_complete_grace_hours: float = PydanticField(default=24, ge=0)
    require_email_confirmation: bool = False
    auto_confirm: bool = True
    # 0 means unconfirmed bookings never expire
    email_confirmation_timeout_minutes: int = PydanticField(default=60, ge=0)


class Business(SQLModel, table=True):
    __tablename__ = "businesses"
    id: int | None = Field(default=None, primary_key=True)
    name: str
    capacity_mode: CapacityMode = Field(default=CapacityMode.EXCLUSIVE)
    # 0 = unlimited
    default_capacity: int = Field(default=1, ge=0)
    default_slot_interval: int = Field(default=15, gt=0)
    timezone: str = Field(default="Europe/Skopje")
    settings: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(default_factory=_utc_naive_now)

    @property
    def config(self) -> BusinessSettings:
        return BusinessSettings.model_validate(self.settings or {})


class Service(SQLModel, table=True):
    __tablename__ = "services"
    id: int | None = Field(default=None, primary_key=True)
    business_id: int = Field(foreign_key="businesses.id", index=True)
    name: str
    duration: int = Field(gt=0)  # minutes
    is_active: bool = True
    custom_capacity: int | None = None


class Employee(SQLModel, table=True):
    __tablename__ = "employees"
    id: int | None = Field(default=None, primary_key=True)
    business_id: int = Field(foreign_key="businesses.id", index=True)
    name: str
    email: str | None = None
    is_active: bool = True
    # 0 = unlimited
    max_daily_appointments: int = 0


class EmployeeService(SQLModel, table=True):
    __tablename__ = "employee_services"
    employee_id: int = Field(foreign_key="employees.id", primary_key=True)
    service_id: int = Field(foreign_key="services.id", primary_key=True)


class BusinessCreate(SQLModel):
    name: str
    capacity_mode: CapacityMode = CapacityMode.EXCLUSIVE
    default_capacity: int = 1
    default_slot_interval: int = 15
    timezone: str | None = None
    settings: BusinessSettings = Field(default_factory=BusinessSettings)
