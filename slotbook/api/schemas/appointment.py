from datetime import date, time

from pydantic import BaseModel

from slotbook.models.appointment import AppointmentDetail, AppointmentPublic


class BookingResponse(BaseModel):
    appointment: AppointmentPublic
    requires_email_confirmation: bool


class ConfirmEmailRequest(BaseModel):
    token: str


class StatusUpdateRequest(BaseModel):
    # Validated by the service so an unknown value maps to reason "invalid_status"
    status: str
    reason: str | None = None


class RescheduleRequest(BaseModel):
    appointment_date: date
    start_time: time
    employee_id: int | None = None
    service_id: int | None = None
    # Staff override: allow moving onto a date that has already passed
    allow_past: bool = False


class ClientCancelRequest(BaseModel):
    email: str
    reason: str | None = None


class NotesUpdateRequest(BaseModel):
    notes: str | None = None


class AppointmentListResponse(BaseModel):
    appointments: list[AppointmentDetail]
    total: int
