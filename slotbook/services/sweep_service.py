"""
Auto-complete sweep.

Runs periodically. For each business with auto-complete enabled it computes
``now - autoCompleteGraceHours`` on the business's local calendar and settles
every live appointment whose (date, end time) is strictly before that cutoff:
CONFIRMED -> COMPLETED (flagged automatic), PENDING -> CANCELLED.

Rows are updated one by one, each in its own transaction. A failing row is
recorded and logged; the rest of the batch carries on.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, time

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from slotbook.core.clock import Clock, system_clock
from slotbook.core.config import settings
from slotbook.core.db import run_with_timeout
from slotbook.core.exceptions import ConfigurationError
from slotbook.models.appointment import Appointment, AppointmentStatus
from slotbook.models.business import Business
from slotbook.services.appointment_service import AUTO_CANCEL_REASON, apply_status
from slotbook.services.notification_service import StatusChange, dispatch_status_changes

logger = logging.getLogger(__name__)

ACTION_COMPLETE = "complete"
ACTION_CANCEL = "cancel"


@dataclass(frozen=True)
class RowOutcome:
    appointment_id: int
    business_id: int
    action: str
    succeeded: bool
    error: str | None = None


@dataclass
class SweepSummary:
    businesses_processed: int = 0
    businesses_failed: int = 0
    completed: int = 0
    cancelled: int = 0
    skipped: int = 0
    failed: int = 0
    stopped_early: bool = False
    outcomes: list[RowOutcome] = field(default_factory=list)
    changes: list[StatusChange] = field(default_factory=list)

    def record(self, outcome: RowOutcome) -> None:
        self.outcomes.append(outcome)
        if not outcome.succeeded:
            self.failed += 1
        elif outcome.action == ACTION_COMPLETE:
            self.completed += 1
        else:
            self.cancelled += 1


async def find_expired_appointments(
    session: AsyncSession, business_id: int, cutoff_date: date, cutoff_time: time
) -> list[Appointment]:
    """Live appointments whose (date, end_time) is strictly before the cutoff."""
    result = await session.execute(
        select(Appointment)
        .where(
            Appointment.business_id == business_id,
            Appointment.status.in_([AppointmentStatus.CONFIRMED, AppointmentStatus.PENDING]),
            or_(
                Appointment.appointment_date < cutoff_date,
                and_(
                    Appointment.appointment_date == cutoff_date,
                    Appointment.end_time < cutoff_time,
                ),
            ),
        )
        .order_by(Appointment.appointment_date, Appointment.start_time)
    )
    return list(result.scalars().all())


async def _settle_row(
    session_maker: async_sessionmaker[AsyncSession], appointment_id: int, clock: Clock
) -> tuple[str, StatusChange] | None:
    """Settle one appointment in its own transaction.

    The action follows the status read here, not the one seen when the batch was
    listed. Returns None if someone else already moved the row out of a live state.
    """
    async with session_maker() as session:
        try:
            appointment = await session.get(Appointment, appointment_id)
            if appointment is None or appointment.status.is_terminal:
                return None
            if appointment.status == AppointmentStatus.CONFIRMED:
                action = ACTION_COMPLETE
                change = apply_status(
                    appointment, AppointmentStatus.COMPLETED, clock.utcnow_naive(), automatic=True
                )
            else:
                action = ACTION_CANCEL
                change = apply_status(
                    appointment, AppointmentStatus.CANCELLED, clock.utcnow_naive(), reason=AUTO_CANCEL_REASON
                )
            session.add(appointment)
            await session.commit()
            return action, change
        except Exception:
            await session.rollback()
            raise


async def sweep_business(
    session_maker: async_sessionmaker[AsyncSession],
    business: Business,
    summary: SweepSummary,
    clock: Clock = system_clock,
) -> None:
    config = business.config
    cutoff_date, cutoff_time = clock.cutoff(business.timezone, config.auto_complete_grace_hours)
    logger.info(
        "Auto-complete: business %s (grace %sh, cutoff %s %s)",
        business.id, config.auto_complete_grace_hours, cutoff_date, cutoff_time,
    )

    async with session_maker() as session:
        expired = await run_with_timeout(
            find_expired_appointments(session, business.id, cutoff_date, cutoff_time)
        )
        candidates = [(a.id, a.status) for a in expired]

    for appointment_id, status in candidates:
        expected = ACTION_COMPLETE if status == AppointmentStatus.CONFIRMED else ACTION_CANCEL
        try:
            settled = await run_with_timeout(_settle_row(session_maker, appointment_id, clock))
        except Exception as e:
            logger.exception("Auto-complete: failed to %s appointment %s: %s", expected, appointment_id, e)
            summary.record(RowOutcome(appointment_id, business.id, expected, False, f"{type(e).__name__}: {e}"))
            continue
        if settled is None:
            summary.skipped += 1
            continue
        action, change = settled
        summary.record(RowOutcome(appointment_id, business.id, action, True))
        summary.changes.append(change)


async def run_auto_sweep(
    session_maker: async_sessionmaker[AsyncSession],
    clock: Clock = system_clock,
    stop_event: asyncio.Event | None = None,
    notify: bool = True,
) -> SweepSummary:
    """One pass over every business. ``stop_event`` is checked between businesses,
    so a shutdown lets the in-flight business finish."""
    summary = SweepSummary()
    async with session_maker() as session:
        result = await run_with_timeout(session.execute(select(Business).order_by(Business.id)))
        businesses = list(result.scalars().all())

    for business in businesses:
        if stop_event is not None and stop_event.is_set():
            summary.stopped_early = True
            logger.info("Auto-complete: stop requested, ending sweep early")
            break
        if not business.config.auto_complete_enabled:
            continue
        try:
            await sweep_business(session_maker, business, summary, clock)
            summary.businesses_processed += 1
        except ConfigurationError as e:
            summary.businesses_failed += 1
            logger.error("Auto-complete: skipping business %s: %s", business.id, e)
        except Exception as e:
            summary.businesses_failed += 1
            logger.exception("Auto-complete: business %s failed: %s", business.id, e)

    if notify and summary.changes:
        await asyncio.to_thread(dispatch_status_changes, summary.changes)

    logger.info(
        "Auto-complete: %d completed, %d cancelled, %d failed across %d businesses",
        summary.completed, summary.cancelled, summary.failed, summary.businesses_processed,
    )
    return summary


async def auto_sweep_loop(
    session_maker: async_sessionmaker[AsyncSession],
    stop_event: asyncio.Event,
    interval_seconds: int | None = None,
    clock: Clock = system_clock,
) -> None:
    interval = interval_seconds or settings.auto_sweep_interval_seconds
    while not stop_event.is_set():
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except TimeoutError:
            pass
        if stop_event.is_set():
            break
        try:
            await run_auto_sweep(session_maker, clock, stop_event)
        except Exception as e:
            logger.exception("Auto-complete sweep failed: %s", e)
