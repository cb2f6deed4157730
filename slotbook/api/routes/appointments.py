import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from slotbook.api.deps import get_clock, get_session
from slotbook.api.schemas.appointment import (
    AppointmentListResponse,
    BookingResponse,
    ClientCancelRequest,
    ConfirmEmailRequest,
    NotesUpdateRequest,
    RescheduleRequest,
    StatusUpdateRequest,
)
from slotbook.core.clock import Clock
from slotbook.core.db import run_with_timeout
from slotbook.models.appointment import (
    Appointment,
    AppointmentCreate,
    AppointmentDetail,
    AppointmentPublic,
    ManualAppointmentCreate,
)
from slotbook.services.appointment_service import (
    TransitionResult,
    approve_appointment,
    cancel_by_client,
    confirm_email,
    create_appointment,
    create_manual_appointment,
    get_appointment,
    list_appointments,
    reschedule_appointment,
    transition,
    update_notes,
)
from slotbook.services.notification_service import send_confirmation_request_email, send_status_change_email

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/appointments", tags=["appointments"])


def _to_public(a: Appointment) -> AppointmentPublic:
    return AppointmentPublic.model_validate(a, from_attributes=True)


async def _committed(
    session: AsyncSession, result: TransitionResult, background_tasks: BackgroundTasks
) -> AppointmentPublic:
    """Commit first, then queue the notification; a mail failure never undoes the change."""
    await session.commit()
    background_tasks.add_task(send_status_change_email, result.change)
    return _to_public(result.appointment)


@router.post("", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def book_appointment(
    body: AppointmentCreate,
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_session),
    clock: Clock = Depends(get_clock),
) -> BookingResponse:
    result = await run_with_timeout(create_appointment(session, body, clock=clock))
    if result.confirmation_token:
        background_tasks.add_task(send_confirmation_request_email, result.change, result.confirmation_token)
    else:
        background_tasks.add_task(send_status_change_email, result.change)
    return BookingResponse(
        appointment=_to_public(result.appointment),
        requires_email_confirmation=result.confirmation_token is not None,
    )


@router.post("/confirm-email", response_model=AppointmentPublic)
async def confirm_appointment_email(
    body: ConfirmEmailRequest,
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_session),
    clock: Clock = Depends(get_clock),
) -> AppointmentPublic:
    result = await run_with_timeout(confirm_email(session, body.token, clock=clock))
    return await _committed(session, result, background_tasks)


@router.put("/{appointment_id}/status", response_model=AppointmentPublic)
async def update_status(
    appointment_id: int,
    body: StatusUpdateRequest,
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_session),
    clock: Clock = Depends(get_clock),
) -> AppointmentPublic:
    """Business-side transition (approve, complete, cancel, no-show)."""
    result = await run_with_timeout(
        transition(session, appointment_id, body.status, reason=body.reason, clock=clock)
    )
    logger.info(
        "Appointment %s: %s -> %s",
        appointment_id, result.change.previous_status.value, result.change.new_status.value,
    )
    return await _committed(session, result, background_tasks)


@router.put("/{appointment_id}/reschedule", response_model=AppointmentPublic)
async def reschedule(
    appointment_id: int,
    body: RescheduleRequest,
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_session),
    clock: Clock = Depends(get_clock),
) -> AppointmentPublic:
    result = await run_with_timeout(
        reschedule_appointment(
            session, appointment_id, body.appointment_date, body.start_time,
            employee_id=body.employee_id, service_id=body.service_id,
            allow_past=body.allow_past, clock=clock,
        )
    )
    return await _committed(session, result, background_tasks)


@router.post("/{appointment_id}/cancel", response_model=AppointmentPublic)
async def cancel_as_client(
    appointment_id: int,
    body: ClientCancelRequest,
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_session),
    clock: Clock = Depends(get_clock),
) -> AppointmentPublic:
    result = await run_with_timeout(
        cancel_by_client(session, appointment_id, body.email, reason=body.reason, clock=clock)
    )
    return await _committed(session, result, background_tasks)


# -- business side -------------------------------------------------------------

def _to_detail(a: Appointment) -> AppointmentDetail:
    return AppointmentDetail.model_validate(a, from_attributes=True)


@router.get("", response_model=AppointmentListResponse)
async def list_business_appointments(
    business_id: int,
    status_filter: str | None = Query(None, alias="status"),
    date_param: str | None = Query(None, alias="date"),
    start_date: str | None = None,
    end_date: str | None = None,
    session: AsyncSession = Depends(get_session),
) -> AppointmentListResponse:
    appointments = await run_with_timeout(
        list_appointments(
            session, business_id, status=status_filter, on=date_param,
            start_date=start_date, end_date=end_date,
        )
    )
    return AppointmentListResponse(
        appointments=[_to_detail(a) for a in appointments], total=len(appointments)
    )


@router.post("/manual", response_model=AppointmentDetail, status_code=status.HTTP_201_CREATED)
async def book_manually(
    body: ManualAppointmentCreate,
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_session),
    clock: Clock = Depends(get_clock),
) -> AppointmentDetail:
    result = await run_with_timeout(create_manual_appointment(session, body, clock=clock))
    background_tasks.add_task(send_status_change_email, result.change)
    return _to_detail(result.appointment)


@router.get("/{appointment_id}", response_model=AppointmentDetail)
async def read_appointment(
    appointment_id: int,
    session: AsyncSession = Depends(get_session),
) -> AppointmentDetail:
    appointment = await run_with_timeout(get_appointment(session, appointment_id))
    return _to_detail(appointment)


@router.put("/{appointment_id}/notes", response_model=AppointmentDetail)
async def set_notes(
    appointment_id: int,
    body: NotesUpdateRequest,
    session: AsyncSession = Depends(get_session),
    clock: Clock = Depends(get_clock),
) -> AppointmentDetail:
    appointment = await run_with_timeout(update_notes(session, appointment_id, body.notes, clock=clock))
    return _to_detail(appointment)


@router.post("/{appointment_id}/confirm", response_model=AppointmentPublic)
async def confirm_by_business(
    appointment_id: int,
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_session),
    clock: Clock = Depends(get_clock),
) -> AppointmentPublic:
    """Manual approval of a PENDING booking."""
    result = await run_with_timeout(approve_appointment(session, appointment_id, clock=clock))
    return await _committed(session, result, background_tasks)
