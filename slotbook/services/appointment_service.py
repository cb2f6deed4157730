"""
Appointment lifecycle.

PENDING and CONFIRMED are live; COMPLETED, CANCELLED and NO_SHOW are terminal
and nothing moves a row out of them. Every change returns a StatusChange so
the caller can hand it to the notification collaborator after commit.
"""
import asyncio
import hashlib
import logging
import re
import secrets
import weakref
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from slotbook.core.clock import Clock, system_clock
from slotbook.core.exceptions import (
    AccessDeniedError,
    BookingValidationError,
    NotFoundError,
    PolicyViolationError,
    StateConflictError,
)
from slotbook.models.appointment import (
    NON_BLOCKING_STATUSES,
    Appointment,
    AppointmentCreate,
    AppointmentStatus,
    ManualAppointmentCreate,
)
from slotbook.models.business import Business, BusinessSettings
from slotbook.services.notification_service import (
    KIND_CREATED,
    KIND_EMAIL_CONFIRMED,
    KIND_RESCHEDULED,
    KIND_STATUS,
    StatusChange,
)
from slotbook.services.slot_service import (
    compute_slots,
    from_minutes,
    get_business,
    get_employee_for_service,
    get_service_for_business,
    is_confirmation_expired,
    parse_date,
    to_minutes,
)

logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

ALLOWED_TRANSITIONS: dict[AppointmentStatus, frozenset[AppointmentStatus]] = {
    AppointmentStatus.PENDING: frozenset({AppointmentStatus.CONFIRMED, AppointmentStatus.CANCELLED}),
    AppointmentStatus.CONFIRMED: frozenset(
        {AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW}
    ),
}

AUTO_CANCEL_REASON = "Automatically cancelled - appointment time expired while pending"
BUSINESS_CANCEL_REASON = "Cancelled by business"
CLIENT_CANCEL_REASON = "Cancelled by client"


@dataclass
class TransitionResult:
    appointment: Appointment
    change: StatusChange


@dataclass
class BookingResult:
    appointment: Appointment
    change: StatusChange
    # Raw token for the confirmation email; only its digest is stored
    confirmation_token: str | None = None


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def initial_status(config: BusinessSettings) -> AppointmentStatus:
    if config.require_email_confirmation:
        return AppointmentStatus.PENDING
    return AppointmentStatus.CONFIRMED if config.auto_confirm else AppointmentStatus.PENDING


def parse_status(value: AppointmentStatus | str) -> AppointmentStatus:
    try:
        return AppointmentStatus(value)
    except ValueError as e:
        valid = ", ".join(s.value for s in AppointmentStatus)
        raise BookingValidationError(
            f"Invalid status. Must be one of: {valid}", reason="invalid_status"
        ) from e


def check_transition(current: AppointmentStatus, target: AppointmentStatus) -> None:
    if current == target:
        if current == AppointmentStatus.CONFIRMED:
            raise StateConflictError("Appointment is already confirmed", reason="already_confirmed")
        if current == AppointmentStatus.CANCELLED:
            raise StateConflictError("Appointment is already cancelled", reason="already_cancelled")
        raise StateConflictError(f"Appointment is already {current.value}", reason="no_change")
    if current.is_terminal:
        raise StateConflictError(
            f"Cannot change a {current.value} appointment", reason="terminal_state"
        )
    if target not in ALLOWED_TRANSITIONS.get(current, frozenset()):
        raise StateConflictError(
            f"Cannot move appointment from {current.value} to {target.value}",
            reason="invalid_transition",
        )


def _change(appointment: Appointment, previous: AppointmentStatus | None, kind: str,
            now: datetime, reason: str | None = None) -> StatusChange:
    return StatusChange(
        appointment_id=appointment.id,
        business_id=appointment.business_id,
        client_email=appointment.client_email,
        previous_status=previous,
        new_status=appointment.status,
        appointment_date=appointment.appointment_date,
        start_time=appointment.start_time,
        kind=kind,
        reason=reason,
        occurred_at=now,
    )


def apply_status(
    appointment: Appointment,
    target: AppointmentStatus,
    now: datetime,
    reason: str | None = None,
    automatic: bool = False,
) -> StatusChange:
    """Validate and apply one transition in memory; the caller flushes."""
    check_transition(appointment.status, target)
    previous = appointment.status
    appointment.status = target
    if target == AppointmentStatus.CANCELLED:
        appointment.cancellation_reason = reason
    if target == AppointmentStatus.COMPLETED:
        appointment.completed_automatically = automatic
    appointment.updated_at = now
    return _change(appointment, previous, KIND_STATUS, now, reason)


async def get_appointment(session: AsyncSession, appointment_id: int) -> Appointment:
    appointment = await session.get(Appointment, appointment_id)
    if appointment is None:
        raise NotFoundError("Appointment not found", reason="appointment_not_found")
    return appointment


async def list_appointments(
    session: AsyncSession,
    business_id: int,
    status: AppointmentStatus | str | None = None,
    on: date | str | None = None,
    start_date: date | str | None = None,
    end_date: date | str | None = None,
) -> list[Appointment]:
    """A business's appointments ordered by date and start time.

    ``on`` wins over the range bounds; either bound may be given alone.
    """
    await get_business(session, business_id)
    q = select(Appointment).where(Appointment.business_id == business_id)
    if status:
        q = q.where(Appointment.status == parse_status(status))
    if on:
        q = q.where(Appointment.appointment_date == parse_date(on))
    else:
        start = parse_date(start_date) if start_date else None
        end = parse_date(end_date) if end_date else None
        if start and end and start > end:
            raise BookingValidationError(
                "start_date must be before or equal to end_date", reason="invalid_range"
            )
        if start:
            q = q.where(Appointment.appointment_date >= start)
        if end:
            q = q.where(Appointment.appointment_date <= end)
    result = await session.execute(q.order_by(Appointment.appointment_date, Appointment.start_time))
    return list(result.scalars().all())


async def update_notes(
    session: AsyncSession, appointment_id: int, notes: str | None, clock: Clock = system_clock
) -> Appointment:
    appointment = await get_appointment(session, appointment_id)
    appointment.notes = notes.strip() if notes and notes.strip() else None
    appointment.updated_at = clock.utcnow_naive()
    session.add(appointment)
    await session.flush()
    return appointment


async def transition(
    session: AsyncSession,
    appointment_id: int,
    target_status: AppointmentStatus | str,
    reason: str | None = None,
    clock: Clock = system_clock,
) -> TransitionResult:
    target = parse_status(target_status)
    appointment = await get_appointment(session, appointment_id)
    if target == AppointmentStatus.CANCELLED and not reason:
        reason = BUSINESS_CANCEL_REASON
    change = apply_status(appointment, target, clock.utcnow_naive(), reason=reason)
    session.add(appointment)
    await session.flush()
    return TransitionResult(appointment, change)


async def approve_appointment(
    session: AsyncSession, appointment_id: int, clock: Clock = system_clock
) -> TransitionResult:
    """Manual business approval: PENDING -> CONFIRMED."""
    return await transition(session, appointment_id, AppointmentStatus.CONFIRMED, clock=clock)


async def cancel_appointment(
    session: AsyncSession, appointment_id: int, reason: str | None = None, clock: Clock = system_clock
) -> TransitionResult:
    return await transition(session, appointment_id, AppointmentStatus.CANCELLED, reason=reason, clock=clock)


async def confirm_email(session: AsyncSession, token: str, clock: Clock = system_clock) -> TransitionResult:
    if not token:
        raise BookingValidationError("Confirmation token is required", reason="token_required")
    result = await session.execute(
        select(Appointment).where(Appointment.email_confirmation_token == hash_token(token))
    )
    appointment = result.scalar_one_or_none()
    if appointment is None:
        raise NotFoundError("Invalid or expired confirmation link", reason="invalid_token")
    if appointment.is_email_confirmed:
        raise StateConflictError("Appointment email is already confirmed", reason="already_confirmed")
    if appointment.status != AppointmentStatus.PENDING:
        raise StateConflictError(
            f"Cannot confirm a {appointment.status.value} appointment", reason="not_pending"
        )

    business = await get_business(session, appointment.business_id)
    config = business.config
    now = clock.utcnow_naive()
    if is_confirmation_expired(appointment, config, now):
        raise StateConflictError("Confirmation link has expired", reason="confirmation_expired")

    previous = appointment.status
    appointment.is_email_confirmed = True
    appointment.updated_at = now
    if config.auto_confirm:
        appointment.status = AppointmentStatus.CONFIRMED
        kind = KIND_STATUS
    else:
        # Stays PENDING until the business approves it
        kind = KIND_EMAIL_CONFIRMED
    session.add(appointment)
    await session.flush()
    return TransitionResult(appointment, _change(appointment, previous, kind, now))


# -- booking arbitration -----------------------------------------------------

_booking_locks: "weakref.WeakValueDictionary[tuple, asyncio.Lock]" = weakref.WeakValueDictionary()


@asynccontextmanager
async def booking_guard(
    session: AsyncSession, business_id: int, employee_id: int | None, target_date: date
) -> AsyncIterator[Business]:
    """Serialize writers per (business, resource, date).

    In-process writers queue on an asyncio lock; across processes the business
    row is locked FOR UPDATE until the surrounding transaction ends. Callers
    recheck the slot table and commit inside this block.
    """
    key = (business_id, employee_id, target_date)
    lock = _booking_locks.get(key)
    if lock is None:
        lock = asyncio.Lock()
        _booking_locks[key] = lock
    async with lock:
        result = await session.execute(
            select(Business).where(Business.id == business_id).with_for_update()
        )
        business = result.scalar_one_or_none()
        if business is None:
            raise NotFoundError("Business not found", reason="business_not_found")
        yield business


def _validate_contact(data: AppointmentCreate | ManualAppointmentCreate) -> None:
    if not all(
        v and v.strip()
        for v in (data.client_first_name, data.client_last_name, data.client_email, data.client_phone)
    ):
        raise BookingValidationError(
            "Client information (first name, last name, email, phone) is required",
            reason="client_info_required",
        )
    if not _EMAIL_RE.match(data.client_email.strip()):
        raise BookingValidationError("Invalid email format", reason="invalid_email")


async def count_active_for_business(session: AsyncSession, business_id: int, target_date: date) -> int:
    result = await session.execute(
        select(func.count()).select_from(Appointment).where(
            Appointment.business_id == business_id,
            Appointment.appointment_date == target_date,
            Appointment.status.not_in(list(NON_BLOCKING_STATUSES)),
        )
    )
    return int(result.scalar_one())


def _check_booking_window(config: BusinessSettings, start_at: datetime, now: datetime) -> None:
    lead = start_at - now
    if config.min_booking_notice_hours > 0 and lead < timedelta(hours=config.min_booking_notice_hours):
        hours = config.min_booking_notice_hours
        raise PolicyViolationError(
            f"Appointments must be booked at least {hours:g} hour{'s' if hours != 1 else ''} in advance",
            policy="min_booking_notice",
            limit=hours,
        )
    if config.max_advance_booking_days > 0 and lead > timedelta(days=config.max_advance_booking_days):
        raise PolicyViolationError(
            f"Appointments cannot be booked more than {config.max_advance_booking_days} days in advance",
            policy="max_advance_booking",
            limit=config.max_advance_booking_days,
        )


async def create_appointment(
    session: AsyncSession, data: AppointmentCreate, clock: Clock = system_clock
) -> BookingResult:
    """Book a slot for a guest or registered client.

    Commits before returning: the insert must be visible before the next
    writer for the same (business, resource, date) rechecks the slot table.
    """
    _validate_contact(data)

    business = await get_business(session, data.business_id)
    config = business.config
    start_at = clock.localize(data.appointment_date, data.start_time, business.timezone)
    _check_booking_window(config, start_at, clock.now(business.timezone))

    async with booking_guard(session, business.id, data.employee_id, data.appointment_date):
        if config.max_appointments_per_day > 0:
            booked = await count_active_for_business(session, business.id, data.appointment_date)
            if booked >= config.max_appointments_per_day:
                raise PolicyViolationError(
                    f"Maximum appointments for {data.appointment_date.isoformat()} has been reached. "
                    "Please select another date.",
                    policy="max_appointments_per_day",
                    limit=config.max_appointments_per_day,
                )

        table = await compute_slots(
            session, business.id, data.service_id, data.appointment_date,
            employee_id=data.employee_id, clock=clock,
        )
        slot = table.find(data.start_time)
        if slot is None or not slot.available:
            raise StateConflictError(
                "Selected time slot is no longer available", reason="slot_unavailable"
            )

        token = None
        token_digest = None
        if config.require_email_confirmation:
            token = secrets.token_hex(32)
            token_digest = hash_token(token)

        now = clock.utcnow_naive()
        appointment = Appointment(
            business_id=business.id,
            service_id=data.service_id,
            employee_id=data.employee_id,
            client_user_id=data.client_user_id,
            client_first_name=data.client_first_name.strip(),
            client_last_name=data.client_last_name.strip(),
            client_email=data.client_email.strip(),
            client_phone=data.client_phone.strip(),
            client_notes=data.client_notes,
            appointment_date=data.appointment_date,
            start_time=slot.start,
            end_time=slot.end,
            status=initial_status(config),
            email_confirmation_token=token_digest,
            created_at=now,
            updated_at=now,
        )
        session.add(appointment)
        await session.flush()
        await session.refresh(appointment)
        await session.commit()

    logger.info(
        "Booked appointment %s for business %s on %s %s (%s)",
        appointment.id, business.id, appointment.appointment_date, appointment.start_time,
        appointment.status.value,
    )
    return BookingResult(appointment, _change(appointment, None, KIND_CREATED, now), token)


async def create_manual_appointment(
    session: AsyncSession, data: ManualAppointmentCreate, clock: Clock = system_clock
) -> BookingResult:
    """Staff booking: CONFIRMED with the email treated as confirmed.

    Booking-window policies and the per-day cap do not apply. The slot table is
    still consulted (past dates included) unless ``check_availability`` is off,
    in which case the end time is simply start plus the service duration.
    """
    _validate_contact(data)
    business = await get_business(session, data.business_id)
    service = await get_service_for_business(session, business.id, data.service_id)
    if data.employee_id is not None:
        await get_employee_for_service(session, business.id, data.employee_id, service.id)

    end_minutes = to_minutes(data.start_time) + service.duration
    if end_minutes >= 24 * 60:
        raise BookingValidationError("Appointment must end before midnight", reason="invalid_time")
    start, end = data.start_time.replace(second=0, microsecond=0), from_minutes(end_minutes)

    async with booking_guard(session, business.id, data.employee_id, data.appointment_date):
        if data.check_availability:
            table = await compute_slots(
                session, business.id, service.id, data.appointment_date,
                employee_id=data.employee_id, allow_past=True, clock=clock,
            )
            slot = table.find(start)
            if slot is None or not slot.available:
                raise StateConflictError("Selected time slot is not available", reason="slot_unavailable")
            start, end = slot.start, slot.end

        now = clock.utcnow_naive()
        appointment = Appointment(
            business_id=business.id,
            service_id=service.id,
            employee_id=data.employee_id,
            client_first_name=data.client_first_name.strip(),
            client_last_name=data.client_last_name.strip(),
            client_email=data.client_email.strip().lower(),
            client_phone=data.client_phone.strip(),
            client_notes=data.client_notes,
            notes=data.notes,
            appointment_date=data.appointment_date,
            start_time=start,
            end_time=end,
            status=AppointmentStatus.CONFIRMED,
            is_email_confirmed=True,
            created_at=now,
            updated_at=now,
        )
        session.add(appointment)
        await session.flush()
        await session.refresh(appointment)
        await session.commit()

    logger.info(
        "Staff booked appointment %s for business %s on %s %s",
        appointment.id, business.id, appointment.appointment_date, appointment.start_time,
    )
    return BookingResult(appointment, _change(appointment, None, KIND_CREATED, now))


async def reschedule_appointment(
    session: AsyncSession,
    appointment_id: int,
    new_date: date | str,
    new_start: time,
    *,
    employee_id: int | None = None,
    service_id: int | None = None,
    allow_past: bool = False,
    clock: Clock = system_clock,
) -> TransitionResult:
    """Move an appointment without touching its status.

    The new slot is checked against the slot pipeline with the appointment's own
    row excluded, so moving within its current interval is allowed.
    """
    target_date = parse_date(new_date)
    appointment = await get_appointment(session, appointment_id)
    if appointment.status.is_terminal:
        raise StateConflictError(
            f"Cannot reschedule a {appointment.status.value} appointment", reason="terminal_state"
        )

    target_service = service_id if service_id is not None else appointment.service_id
    target_employee = employee_id if employee_id is not None else appointment.employee_id

    async with booking_guard(session, appointment.business_id, target_employee, target_date):
        table = await compute_slots(
            session, appointment.business_id, target_service, target_date,
            employee_id=target_employee,
            exclude_appointment_id=appointment.id,
            allow_past=allow_past,
            clock=clock,
        )
        slot = table.find(new_start)
        if slot is None or not slot.available:
            raise StateConflictError("Selected time slot is not available", reason="slot_unavailable")

        appointment.appointment_date = target_date
        appointment.start_time = slot.start
        appointment.end_time = slot.end
        appointment.service_id = target_service
        appointment.employee_id = target_employee
        now = clock.utcnow_naive()
        appointment.updated_at = now
        session.add(appointment)
        await session.flush()
        await session.commit()

    return TransitionResult(appointment, _change(appointment, appointment.status, KIND_RESCHEDULED, now))


async def cancel_by_client(
    session: AsyncSession,
    appointment_id: int,
    email: str,
    reason: str | None = None,
    clock: Clock = system_clock,
) -> TransitionResult:
    if not email or not email.strip():
        raise BookingValidationError("Email is required", reason="email_required")
    appointment = await get_appointment(session, appointment_id)
    if appointment.client_email.lower() != email.strip().lower():
        raise AccessDeniedError("Email does not match appointment record", reason="email_mismatch")
    if appointment.status == AppointmentStatus.CANCELLED:
        raise StateConflictError("Appointment is already cancelled", reason="already_cancelled")

    business = await get_business(session, appointment.business_id)
    start_at = clock.localize(appointment.appointment_date, appointment.start_time, business.timezone)
    now = clock.now(business.timezone)
    if start_at < now:
        raise StateConflictError("Cannot cancel past appointments", reason="appointment_in_past")

    notice = business.config.cancellation_notice_hours
    if notice > 0 and start_at - now < timedelta(hours=notice):
        hours_remaining = int((start_at - now).total_seconds() // 3600)
        raise PolicyViolationError(
            f"Appointments must be cancelled at least {notice:g} hours in advance. "
            f"Your appointment is in {hours_remaining} hours.",
            policy="cancellation_notice",
            limit=notice,
        )

    change = apply_status(
        appointment, AppointmentStatus.CANCELLED, clock.utcnow_naive(), reason=reason or CLIENT_CANCEL_REASON
    )
    session.add(appointment)
    await session.flush()
    return TransitionResult(appointment, change)
