from datetime import UTC, date, datetime, time
from enum import Enum

from sqlmodel import Field, SQLModel


def _utc_naive_now() -> datetime:
    """Naive UTC for TIMESTAMP WITHOUT TIME ZONE columns."""
    return datetime.now(UTC).replace(tzinfo=None)


class AppointmentStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    NO_SHOW = "NO_SHOW"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW}
)
# Rows in these states never occupy a slot
NON_BLOCKING_STATUSES = frozenset({AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW})


class Appointment(SQLModel, table=True):
    __tablename__ = "appointments"
    id: int | None = Field(default=None, primary_key=True)
    business_id: int = Field(foreign_key="businesses.id", index=True)
    service_id: int = Field(foreign_key="services.id", index=True)
    employee_id: int | None = Field(default=None, foreign_key="employees.id", index=True)
    client_user_id: int | None = Field(default=None, index=True)
    client_first_name: str
    client_last_name: str
    client_email: str
    client_phone: str
    client_notes: str | None = None
    # Internal notes kept by the business; never shown to the client
    notes: str | None = None
    appointment_date: date = Field(index=True)
    start_time: time
    end_time: time
    status: AppointmentStatus = Field(default=AppointmentStatus.PENDING, index=True)
    is_email_confirmed: bool = False
    # sha256 hex digest of the token mailed to the client; kept after use
    email_confirmation_token: str | None = Field(default=None, index=True)
    cancellation_reason: str | None = None
    completed_automatically: bool = False
    created_at: datetime = Field(default_factory=_utc_naive_now)
    updated_at: datetime = Field(default_factory=_utc_naive_now)


class AppointmentCreate(SQLModel):
    business_id: int
    service_id: int
    employee_id: int | None = None
    client_user_id: int | None = None
    appointment_date: date
    start_time: time
    client_first_name: str
    client_last_name: str
    client_email: str
    client_phone: str
    client_notes: str | None = None


class AppointmentPublic(SQLModel):
    id: int
    business_id: int
    service_id: int
    employee_id: int | None = None
    appointment_date: date
    start_time: time
    end_time: time
    status: AppointmentStatus
    is_email_confirmed: bool
    cancellation_reason: str | None = None
    completed_automatically: bool
    created_at: datetime


class AppointmentDetail(AppointmentPublic):
    """Business-side view, with client contact and internal notes."""

    client_first_name: str
    client_last_name: str
    client_email: str
    client_phone: str
    client_notes: str | None = None
    notes: str | None = None
    updated_at: datetime


class ManualAppointmentCreate(SQLModel):
    """Staff booking taken by phone or at the desk. Always starts CONFIRMED."""

    business_id: int
    service_id: int
    employee_id: int | None = None
    appointment_date: date
    start_time: time
    client_first_name: str
    client_last_name: str
    client_email: str
    client_phone: str
    client_notes: str | None = None
    notes: str | None = None
    # False books the time even when the slot table would refuse it
    check_availability: bool = True
