import asyncio
from datetime import date, time

from slotbook.core.config import settings
from slotbook.models.appointment import Appointment, AppointmentStatus
from slotbook.services import sweep_service
from slotbook.services.appointment_service import AUTO_CANCEL_REASON
from slotbook.services.sweep_service import ACTION_COMPLETE, auto_sweep_loop, run_auto_sweep

# NOW is 2026-03-02 08:00 UTC; with a 24h grace the cutoff is 2026-03-01 08:00
THIRTY_HOURS_AGO = date(2026, 2, 28)  # 01:00-02:00 ends 30h before NOW
TWENTY_HOURS_AGO = date(2026, 3, 1)  # 11:00-12:00 ends 20h before NOW


async def _fetch(session_maker, appointment_id) -> Appointment:
    async with session_maker() as s:
        return await s.get(Appointment, appointment_id)


async def _setup(factory, **settings):
    business = await factory.business(autoCompleteEnabled=True, autoCompleteGraceHours=24, **settings)
    service = await factory.service(business)
    return business, service


async def test_sweep_settles_expired_rows(session_maker, factory, clock):
    business, service = await _setup(factory)
    confirmed = await factory.appointment(business, service, time(1), time(2), on=THIRTY_HOURS_AGO)
    pending = await factory.appointment(
        business, service, time(1), time(2), on=THIRTY_HOURS_AGO, status=AppointmentStatus.PENDING
    )
    recent = await factory.appointment(business, service, time(11), time(12), on=TWENTY_HOURS_AGO)

    summary = await run_auto_sweep(session_maker, clock)

    assert summary.completed == 1
    assert summary.cancelled == 1
    assert summary.failed == 0
    assert len(summary.changes) == 2

    done = await _fetch(session_maker, confirmed.id)
    assert done.status == AppointmentStatus.COMPLETED
    assert done.completed_automatically

    cancelled = await _fetch(session_maker, pending.id)
    assert cancelled.status == AppointmentStatus.CANCELLED
    assert cancelled.cancellation_reason == AUTO_CANCEL_REASON

    assert (await _fetch(session_maker, recent.id)).status == AppointmentStatus.CONFIRMED


async def test_sweep_is_idempotent(session_maker, factory, clock):
    business, service = await _setup(factory)
    await factory.appointment(business, service, time(1), time(2), on=THIRTY_HOURS_AGO)

    await run_auto_sweep(session_maker, clock)
    second = await run_auto_sweep(session_maker, clock)

    assert second.completed == 0 and second.cancelled == 0


async def test_sweep_skips_business_with_auto_complete_off(session_maker, factory, clock):
    business = await factory.business()
    service = await factory.service(business)
    appt = await factory.appointment(business, service, time(1), time(2), on=THIRTY_HOURS_AGO)

    summary = await run_auto_sweep(session_maker, clock)

    assert summary.businesses_processed == 0
    assert (await _fetch(session_maker, appt.id)).status == AppointmentStatus.CONFIRMED


async def test_row_failure_does_not_abort_batch(session_maker, factory, clock, monkeypatch):
    business, service = await _setup(factory)
    bad = await factory.appointment(business, service, time(1), time(2), on=THIRTY_HOURS_AGO)
    good = await factory.appointment(business, service, time(3), time(4), on=THIRTY_HOURS_AGO)

    real_settle = sweep_service._settle_row

    async def flaky_settle(maker, appointment_id, clk):
        if appointment_id == bad.id:
            raise RuntimeError("row locked")
        return await real_settle(maker, appointment_id, clk)

    monkeypatch.setattr(sweep_service, "_settle_row", flaky_settle)

    summary = await run_auto_sweep(session_maker, clock)

    assert summary.failed == 1
    assert summary.completed == 1
    failure = next(o for o in summary.outcomes if not o.succeeded)
    assert failure.appointment_id == bad.id
    assert "row locked" in failure.error
    assert (await _fetch(session_maker, bad.id)).status == AppointmentStatus.CONFIRMED
    assert (await _fetch(session_maker, good.id)).status == AppointmentStatus.COMPLETED


async def test_grace_is_evaluated_in_business_timezone(session_maker, factory, clock):
    # Skopje is UTC+1: cutoff is 2026-03-01 09:00 local
    business, service = await _setup(factory, timezone="Europe/Skopje")
    before = await factory.appointment(business, service, time(8), time(8, 30), on=TWENTY_HOURS_AGO)
    after = await factory.appointment(business, service, time(8, 45), time(9, 15), on=TWENTY_HOURS_AGO)

    await run_auto_sweep(session_maker, clock)

    assert (await _fetch(session_maker, before.id)).status == AppointmentStatus.COMPLETED
    assert (await _fetch(session_maker, after.id)).status == AppointmentStatus.CONFIRMED


async def test_stop_event_ends_sweep_early(session_maker, factory, clock):
    business, service = await _setup(factory)
    appt = await factory.appointment(business, service, time(1), time(2), on=THIRTY_HOURS_AGO)
    stop = asyncio.Event()
    stop.set()

    summary = await run_auto_sweep(session_maker, clock, stop_event=stop)

    assert summary.stopped_early
    assert (await _fetch(session_maker, appt.id)).status == AppointmentStatus.CONFIRMED


async def test_loop_exits_when_stopped(session_maker, clock):
    stop = asyncio.Event()
    task = asyncio.create_task(auto_sweep_loop(session_maker, stop, interval_seconds=3600, clock=clock))
    await asyncio.sleep(0)
    stop.set()
    await asyncio.wait_for(task, timeout=1)
    assert task.done()


async def test_slow_row_times_out_alone(session_maker, factory, clock, monkeypatch):
    business, service = await _setup(factory)
    slow = await factory.appointment(business, service, time(1), time(2), on=THIRTY_HOURS_AGO)
    fast = await factory.appointment(business, service, time(3), time(4), on=THIRTY_HOURS_AGO)

    real_settle = sweep_service._settle_row

    async def stalled_settle(maker, appointment_id, clk):
        if appointment_id == slow.id:
            await asyncio.sleep(5)
        return await real_settle(maker, appointment_id, clk)

    monkeypatch.setattr(sweep_service, "_settle_row", stalled_settle)
    monkeypatch.setattr(settings, "store_timeout_seconds", 0.5)

    summary = await run_auto_sweep(session_maker, clock)

    assert summary.failed == 1
    assert summary.completed == 1
    failure = next(o for o in summary.outcomes if not o.succeeded)
    assert failure.appointment_id == slow.id
    assert failure.error.startswith("StoreTimeoutError")
    assert (await _fetch(session_maker, slow.id)).status == AppointmentStatus.CONFIRMED
    assert (await _fetch(session_maker, fast.id)).status == AppointmentStatus.COMPLETED


async def test_counts_follow_status_at_settle_time(session_maker, factory, clock, monkeypatch):
    business, service = await _setup(factory)
    appt = await factory.appointment(
        business, service, time(1), time(2), on=THIRTY_HOURS_AGO, status=AppointmentStatus.PENDING
    )

    real_settle = sweep_service._settle_row

    async def confirmed_meanwhile(maker, appointment_id, clk):
        async with maker() as s:
            row = await s.get(Appointment, appointment_id)
            row.status = AppointmentStatus.CONFIRMED
            await s.commit()
        return await real_settle(maker, appointment_id, clk)

    monkeypatch.setattr(sweep_service, "_settle_row", confirmed_meanwhile)

    summary = await run_auto_sweep(session_maker, clock)

    assert summary.completed == 1
    assert summary.cancelled == 0
    assert summary.outcomes[0].action == ACTION_COMPLETE
    assert (await _fetch(session_maker, appt.id)).status == AppointmentStatus.COMPLETED
