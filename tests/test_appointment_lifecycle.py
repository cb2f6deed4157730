import asyncio
from datetime import time, timedelta

import pytest
from conftest import NOW, TODAY, TOMORROW

from slotbook.core.exceptions import (
    AccessDeniedError,
    BookingValidationError,
    NotFoundError,
    PolicyViolationError,
    StateConflictError,
)
from slotbook.models.appointment import (
    TERMINAL_STATUSES,
    AppointmentCreate,
    AppointmentStatus,
    ManualAppointmentCreate,
)
from slotbook.services.appointment_service import (
    BUSINESS_CANCEL_REASON,
    CLIENT_CANCEL_REASON,
    approve_appointment,
    cancel_appointment,
    cancel_by_client,
    confirm_email,
    create_appointment,
    create_manual_appointment,
    hash_token,
    list_appointments,
    reschedule_appointment,
    transition,
    update_notes,
)
from slotbook.services.notification_service import KIND_CREATED, KIND_EMAIL_CONFIRMED, KIND_RESCHEDULED


def booking(business, service, start=time(9), on=TOMORROW, **kw) -> AppointmentCreate:
    fields = dict(
        business_id=business.id,
        service_id=service.id,
        appointment_date=on,
        start_time=start,
        client_first_name="Jane",
        client_last_name="Doe",
        client_email="jane@example.com",
        client_phone="+38970000000",
    )
    fields.update(kw)
    return AppointmentCreate(**fields)


async def _setup(factory, **settings):
    business = await factory.business(**settings)
    service = await factory.service(business)
    await factory.weekly_rule(business.id)
    return business, service


async def test_auto_confirmed_booking(session, factory, clock):
    business, service = await _setup(factory)

    result = await create_appointment(session, booking(business, service), clock=clock)

    assert result.appointment.status == AppointmentStatus.CONFIRMED
    assert result.appointment.end_time == time(10)
    assert result.confirmation_token is None
    assert result.change.kind == KIND_CREATED
    assert result.change.previous_status is None
    assert result.change.occurred_at == NOW.replace(tzinfo=None)


async def test_manual_approval_booking_starts_pending(session, factory, clock):
    business, service = await _setup(factory, autoConfirm=False)

    result = await create_appointment(session, booking(business, service), clock=clock)
    assert result.appointment.status == AppointmentStatus.PENDING

    approved = await approve_appointment(session, result.appointment.id, clock=clock)
    assert approved.appointment.status == AppointmentStatus.CONFIRMED
    assert approved.change.previous_status == AppointmentStatus.PENDING


async def test_email_confirmation_flow(session, factory, clock):
    business, service = await _setup(factory, requireEmailConfirmation=True)

    result = await create_appointment(session, booking(business, service), clock=clock)
    appt = result.appointment
    assert appt.status == AppointmentStatus.PENDING
    assert result.confirmation_token
    assert appt.email_confirmation_token == hash_token(result.confirmation_token)

    confirmed = await confirm_email(session, result.confirmation_token, clock=clock)
    assert confirmed.appointment.status == AppointmentStatus.CONFIRMED
    assert confirmed.appointment.is_email_confirmed

    with pytest.raises(StateConflictError) as exc_info:
        await confirm_email(session, result.confirmation_token, clock=clock)
    assert exc_info.value.reason == "already_confirmed"


async def test_email_confirmation_without_auto_confirm_stays_pending(session, factory, clock):
    business, service = await _setup(factory, requireEmailConfirmation=True, autoConfirm=False)
    result = await create_appointment(session, booking(business, service), clock=clock)

    confirmed = await confirm_email(session, result.confirmation_token, clock=clock)

    assert confirmed.appointment.status == AppointmentStatus.PENDING
    assert confirmed.appointment.is_email_confirmed
    assert confirmed.change.kind == KIND_EMAIL_CONFIRMED


async def test_confirm_email_unknown_token(session, factory, clock):
    with pytest.raises(NotFoundError) as exc_info:
        await confirm_email(session, "nope", clock=clock)
    assert exc_info.value.reason == "invalid_token"


async def test_confirm_email_after_timeout(session, factory, clock):
    business, service = await _setup(
        factory, requireEmailConfirmation=True, emailConfirmationTimeoutMinutes=60
    )
    result = await create_appointment(session, booking(business, service), clock=clock)
    clock.advance(minutes=61)

    with pytest.raises(StateConflictError) as exc_info:
        await confirm_email(session, result.confirmation_token, clock=clock)
    assert exc_info.value.reason == "confirmation_expired"


async def test_taken_slot_is_rejected(session, factory, clock):
    business, service = await _setup(factory)
    await create_appointment(session, booking(business, service), clock=clock)

    with pytest.raises(StateConflictError) as exc_info:
        await create_appointment(session, booking(business, service, client_email="john@example.com"), clock=clock)
    assert exc_info.value.reason == "slot_unavailable"


async def test_start_must_match_a_slot(session, factory, clock):
    business, service = await _setup(factory)
    with pytest.raises(StateConflictError):
        await create_appointment(session, booking(business, service, start=time(9, 20)), clock=clock)


async def test_concurrent_bookings_for_last_spot(session_maker, factory, clock):
    business, service = await _setup(factory)

    async def attempt(email):
        async with session_maker() as s:
            return await create_appointment(s, booking(business, service, client_email=email), clock=clock)

    results = await asyncio.gather(
        attempt("a@example.com"), attempt("b@example.com"), return_exceptions=True
    )

    booked = [r for r in results if not isinstance(r, Exception)]
    rejected = [r for r in results if isinstance(r, StateConflictError)]
    assert len(booked) == 1
    assert len(rejected) == 1
    assert rejected[0].reason == "slot_unavailable"


@pytest.mark.parametrize(
    "change,reason",
    [
        ({"client_phone": ""}, "client_info_required"),
        ({"client_first_name": "  "}, "client_info_required"),
        ({"client_email": "not-an-email"}, "invalid_email"),
    ],
)
async def test_contact_validation(session, factory, clock, change, reason):
    business, service = await _setup(factory)
    with pytest.raises(BookingValidationError) as exc_info:
        await create_appointment(session, booking(business, service, **change), clock=clock)
    assert exc_info.value.reason == reason


# -- booking policies ------------------------------------------------------------

async def test_min_booking_notice(session, factory, clock):
    business, service = await _setup(factory, minBookingNoticeHours=48)
    with pytest.raises(PolicyViolationError) as exc_info:
        await create_appointment(session, booking(business, service), clock=clock)
    assert exc_info.value.policy == "min_booking_notice"
    assert exc_info.value.limit == 48
    assert exc_info.value.to_dict()["limit"] == 48


async def test_max_advance_booking(session, factory, clock):
    business, service = await _setup(factory, maxAdvanceBookingDays=3)
    with pytest.raises(PolicyViolationError) as exc_info:
        await create_appointment(session, booking(business, service, on=TOMORROW + timedelta(days=7)), clock=clock)
    assert exc_info.value.policy == "max_advance_booking"


async def test_max_appointments_per_day(session, factory, clock):
    business, service = await _setup(factory, maxAppointmentsPerDay=1)
    await create_appointment(session, booking(business, service), clock=clock)
    with pytest.raises(PolicyViolationError) as exc_info:
        await create_appointment(session, booking(business, service, start=time(11)), clock=clock)
    assert exc_info.value.policy == "max_appointments_per_day"
    assert exc_info.value.limit == 1


# -- transitions -----------------------------------------------------------------

async def test_complete_then_terminal(session, factory, clock):
    business, service = await _setup(factory)
    appt = await factory.appointment(business, service, time(9), time(10))

    done = await transition(session, appt.id, "COMPLETED", clock=clock)
    assert done.appointment.status == AppointmentStatus.COMPLETED
    assert not done.appointment.completed_automatically

    with pytest.raises(StateConflictError) as exc_info:
        await transition(session, appt.id, AppointmentStatus.CONFIRMED, clock=clock)
    assert exc_info.value.reason == "terminal_state"


@pytest.mark.parametrize("terminal", sorted(TERMINAL_STATUSES, key=lambda s: s.value))
@pytest.mark.parametrize("target", list(AppointmentStatus))
async def test_nothing_leaves_a_terminal_state(session, factory, clock, terminal, target):
    business, service = await _setup(factory)
    appt = await factory.appointment(business, service, time(9), time(10), status=terminal)

    with pytest.raises(StateConflictError):
        await transition(session, appt.id, target, clock=clock)
    await session.refresh(appt)
    assert appt.status == terminal


async def test_business_cancel_default_reason(session, factory, clock):
    business, service = await _setup(factory)
    appt = await factory.appointment(business, service, time(9), time(10))

    result = await cancel_appointment(session, appt.id, clock=clock)

    assert result.appointment.cancellation_reason == BUSINESS_CANCEL_REASON
    with pytest.raises(StateConflictError) as exc_info:
        await cancel_appointment(session, appt.id, clock=clock)
    assert exc_info.value.reason == "already_cancelled"


async def test_confirm_already_confirmed(session, factory, clock):
    business, service = await _setup(factory)
    appt = await factory.appointment(business, service, time(9), time(10))
    with pytest.raises(StateConflictError) as exc_info:
        await approve_appointment(session, appt.id, clock=clock)
    assert exc_info.value.reason == "already_confirmed"


async def test_pending_cannot_complete(session, factory, clock):
    business, service = await _setup(factory)
    appt = await factory.appointment(business, service, time(9), time(10), status=AppointmentStatus.PENDING)
    with pytest.raises(StateConflictError) as exc_info:
        await transition(session, appt.id, AppointmentStatus.COMPLETED, clock=clock)
    assert exc_info.value.reason == "invalid_transition"


async def test_unknown_status_and_appointment(session, factory, clock):
    business, service = await _setup(factory)
    appt = await factory.appointment(business, service, time(9), time(10))
    with pytest.raises(BookingValidationError) as exc_info:
        await transition(session, appt.id, "DONE", clock=clock)
    assert exc_info.value.reason == "invalid_status"

    with pytest.raises(NotFoundError) as exc_info:
        await transition(session, 999, "COMPLETED", clock=clock)
    assert exc_info.value.reason == "appointment_not_found"


# -- reschedule ------------------------------------------------------------------

async def test_reschedule_ignores_own_reservation(session, factory, clock):
    business, service = await _setup(factory, bufferTimeMinutes=10)
    appt = await factory.appointment(business, service, time(9), time(10))

    result = await reschedule_appointment(session, appt.id, TOMORROW, time(10), clock=clock)

    assert (result.appointment.start_time, result.appointment.end_time) == (time(10), time(11))
    assert result.appointment.status == AppointmentStatus.CONFIRMED
    assert result.change.kind == KIND_RESCHEDULED


async def test_reschedule_into_taken_slot(session, factory, clock):
    business, service = await _setup(factory)
    appt = await factory.appointment(business, service, time(9), time(10))
    await factory.appointment(business, service, time(11), time(12), client_email="other@example.com")

    with pytest.raises(StateConflictError) as exc_info:
        await reschedule_appointment(session, appt.id, TOMORROW.isoformat(), time(11), clock=clock)
    assert exc_info.value.reason == "slot_unavailable"


async def test_reschedule_terminal(session, factory, clock):
    business, service = await _setup(factory)
    appt = await factory.appointment(business, service, time(9), time(10), status=AppointmentStatus.CANCELLED)
    with pytest.raises(StateConflictError) as exc_info:
        await reschedule_appointment(session, appt.id, TOMORROW, time(11), clock=clock)
    assert exc_info.value.reason == "terminal_state"


# -- client cancellation ---------------------------------------------------------

async def test_client_cancel(session, factory, clock):
    business, service = await _setup(factory)
    appt = await factory.appointment(business, service, time(9), time(10))

    result = await cancel_by_client(session, appt.id, " JANE@example.com ", clock=clock)

    assert result.appointment.status == AppointmentStatus.CANCELLED
    assert result.appointment.cancellation_reason == CLIENT_CANCEL_REASON


async def test_client_cancel_wrong_email(session, factory, clock):
    business, service = await _setup(factory)
    appt = await factory.appointment(business, service, time(9), time(10))
    with pytest.raises(AccessDeniedError) as exc_info:
        await cancel_by_client(session, appt.id, "mallory@example.com", clock=clock)
    assert exc_info.value.reason == "email_mismatch"


async def test_client_cancel_inside_notice(session, factory, clock):
    business, service = await _setup(factory, cancellationNoticeHours=48)
    appt = await factory.appointment(business, service, time(9), time(10))
    with pytest.raises(PolicyViolationError) as exc_info:
        await cancel_by_client(session, appt.id, "jane@example.com", clock=clock)
    assert exc_info.value.policy == "cancellation_notice"
    assert exc_info.value.limit == 48


async def test_client_cancel_past(session, factory, clock):
    business, service = await _setup(factory)
    appt = await factory.appointment(
        business, service, time(9), time(10), on=TODAY - timedelta(days=1)
    )
    with pytest.raises(StateConflictError) as exc_info:
        await cancel_by_client(session, appt.id, "jane@example.com", clock=clock)
    assert exc_info.value.reason == "appointment_in_past"


async def test_reschedule_into_past_needs_override(session, factory, clock):
    business, service = await _setup(factory)
    appt = await factory.appointment(business, service, time(9), time(10))
    last_week = TOMORROW - timedelta(days=7)

    with pytest.raises(BookingValidationError) as exc_info:
        await reschedule_appointment(session, appt.id, last_week, time(14), clock=clock)
    assert exc_info.value.reason == "date_in_past"

    result = await reschedule_appointment(session, appt.id, last_week, time(14), allow_past=True, clock=clock)
    assert result.appointment.appointment_date == last_week


# -- staff side ------------------------------------------------------------------

def manual(business, service, start=time(9), on=TOMORROW, **kw) -> ManualAppointmentCreate:
    fields = booking(business, service, start=start, on=on).model_dump(exclude={"client_user_id"})
    fields.update(kw)
    return ManualAppointmentCreate(**fields)


async def test_manual_booking_skips_client_policies(session, factory, clock):
    business, service = await _setup(
        factory, requireEmailConfirmation=True, autoConfirm=False, minBookingNoticeHours=48,
        maxAppointmentsPerDay=1,
    )
    await factory.appointment(business, service, time(14), time(15))

    result = await create_manual_appointment(session, manual(business, service), clock=clock)

    assert result.appointment.status == AppointmentStatus.CONFIRMED
    assert result.appointment.is_email_confirmed
    assert result.appointment.email_confirmation_token is None
    assert result.confirmation_token is None
    assert result.change.kind == KIND_CREATED


async def test_manual_booking_on_a_past_date(session, factory, clock):
    business, service = await _setup(factory)
    last_week = TOMORROW - timedelta(days=7)

    result = await create_manual_appointment(session, manual(business, service, on=last_week), clock=clock)

    assert result.appointment.appointment_date == last_week
    assert result.appointment.end_time == time(10)


async def test_manual_booking_off_the_grid(session, factory, clock):
    business, service = await _setup(factory)

    with pytest.raises(StateConflictError):
        await create_manual_appointment(session, manual(business, service, start=time(9, 40)), clock=clock)

    result = await create_manual_appointment(
        session, manual(business, service, start=time(9, 40), check_availability=False), clock=clock
    )
    assert (result.appointment.start_time, result.appointment.end_time) == (time(9, 40), time(10, 40))


async def test_manual_booking_cannot_cross_midnight(session, factory, clock):
    business, service = await _setup(factory)
    with pytest.raises(BookingValidationError) as exc_info:
        await create_manual_appointment(
            session, manual(business, service, start=time(23, 30), check_availability=False), clock=clock
        )
    assert exc_info.value.reason == "invalid_time"


async def test_list_appointments_filters(session, factory, clock):
    business, service = await _setup(factory)
    later = await factory.appointment(business, service, time(11), time(12))
    earlier = await factory.appointment(business, service, time(9), time(10), status=AppointmentStatus.PENDING)
    today = await factory.appointment(business, service, time(15), time(16), on=TODAY)

    everything = await list_appointments(session, business.id)
    assert [a.id for a in everything] == [today.id, earlier.id, later.id]

    assert [a.id for a in await list_appointments(session, business.id, status="PENDING")] == [earlier.id]
    assert [a.id for a in await list_appointments(session, business.id, on=TODAY)] == [today.id]
    from_tomorrow = await list_appointments(session, business.id, start_date=TOMORROW)
    assert [a.id for a in from_tomorrow] == [earlier.id, later.id]
    until_today = await list_appointments(session, business.id, end_date=TODAY)
    assert [a.id for a in until_today] == [today.id]

    with pytest.raises(BookingValidationError) as exc_info:
        await list_appointments(session, business.id, start_date=TOMORROW, end_date=TODAY)
    assert exc_info.value.reason == "invalid_range"

    with pytest.raises(NotFoundError):
        await list_appointments(session, 999)


async def test_update_notes(session, factory, clock):
    business, service = await _setup(factory)
    appt = await factory.appointment(business, service, time(9), time(10))

    updated = await update_notes(session, appt.id, "  Bring forms ", clock=clock)
    assert updated.notes == "Bring forms"

    cleared = await update_notes(session, appt.id, "   ", clock=clock)
    assert cleared.notes is None
