import logging
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from slotbook.core.clock import Clock, system_clock
from slotbook.core.config import settings
from slotbook.core.exceptions import BookingValidationError, NotFoundError
from slotbook.models.appointment import NON_BLOCKING_STATUSES, Appointment, AppointmentStatus
from slotbook.models.business import Business, BusinessSettings, CapacityMode, Employee, EmployeeService, Service
from slotbook.models.schedule import ScheduleOwner
from slotbook.services.availability_service import ResolvedWindow, get_breaks, resolve_window

logger = logging.getLogger(__name__)

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

REASON_CLOSED = "closed"
REASON_RESOURCE_AT_CAPACITY = "resource_at_capacity"
REASON_FULLY_BOOKED = "fully_booked"

Interval = tuple[int, int]  # [start, end) in minutes since midnight


@dataclass(frozen=True)
class Slot:
    start: time
    end: time
    available: bool
    # SHARED mode only; total_capacity None means unlimited
    spots_left: int | None = None
    total_capacity: int | None = None


@dataclass
class SlotTable:
    date: date
    capacity_mode: CapacityMode
    capacity: int
    slots: list[Slot] = field(default_factory=list)
    window: ResolvedWindow | None = None
    breaks: list[Interval] = field(default_factory=list)
    service_id: int | None = None
    service_duration: int | None = None
    employee_id: int | None = None
    step: int | None = None
    reason: str | None = None

    @property
    def available_slots(self) -> list[Slot]:
        return [s for s in self.slots if s.available]

    @property
    def available(self) -> bool:
        return any(s.available for s in self.slots)

    def find(self, start: time) -> Slot | None:
        for s in self.slots:
            if s.start == start:
                return s
        return None


# -- minute arithmetic -------------------------------------------------------

def to_minutes(t: time) -> int:
    return t.hour * 60 + t.minute


def from_minutes(minutes: int) -> time:
    return time(minutes // 60, minutes % 60)


def overlaps(a_start: int, a_end: int, b_start: int, b_end: int) -> bool:
    """Half-open interval overlap."""
    return a_start < b_end and a_end > b_start


def parse_date(value: date | str) -> date:
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not _DATE_RE.match(value):
        raise BookingValidationError("Invalid date format. Use YYYY-MM-DD", reason="invalid_date")
    try:
        return date.fromisoformat(value)
    except ValueError as e:
        raise BookingValidationError(f"Invalid date: {value}", reason="invalid_date") from e


# -- pipeline stages ---------------------------------------------------------

def effective_step(mode: CapacityMode, configured_step: int, duration: int) -> int:
    """EXCLUSIVE never yields overlapping candidates; SHARED may."""
    if mode == CapacityMode.EXCLUSIVE:
        return max(configured_step, duration)
    return configured_step


def generate_candidates(window_start: int, window_end: int, duration: int, step: int) -> list[Interval]:
    """[t, t+duration) for t = start, start+step, ... while t+duration <= end."""
    if duration <= 0 or step <= 0:
        raise BookingValidationError("Duration and step must be positive", reason="invalid_step")
    candidates: list[Interval] = []
    current = window_start
    while current + duration <= window_end:
        candidates.append((current, current + duration))
        current += step
    return candidates


def drop_elapsed(candidates: Iterable[Interval], now_minutes: int) -> list[Interval]:
    return [c for c in candidates if c[1] > now_minutes]


def mask_breaks(candidates: Iterable[Interval], breaks: Sequence[Interval]) -> list[Interval]:
    return [
        c for c in candidates
        if not any(overlaps(c[0], c[1], b_start, b_end) for b_start, b_end in breaks)
    ]


def blocking_intervals(appointments: Iterable[Appointment], buffer_minutes: int) -> list[Interval]:
    """Each reservation blocks [start, end + buffer)."""
    return [
        (to_minutes(a.start_time), to_minutes(a.end_time) + buffer_minutes)
        for a in appointments
    ]


def evaluate_candidates(
    candidates: Iterable[Interval],
    blocking: Sequence[Interval],
    mode: CapacityMode,
    capacity: int,
) -> list[Slot]:
    slots: list[Slot] = []
    for start, end in candidates:
        count = sum(1 for b_start, b_end in blocking if overlaps(start, end, b_start, b_end))
        if mode == CapacityMode.EXCLUSIVE:
            slots.append(Slot(from_minutes(start), from_minutes(end), available=count == 0))
        elif capacity == 0:
            slots.append(Slot(from_minutes(start), from_minutes(end), available=True))
        else:
            slots.append(
                Slot(
                    from_minutes(start),
                    from_minutes(end),
                    available=count < capacity,
                    spots_left=max(0, capacity - count),
                    total_capacity=capacity,
                )
            )
    return slots


def is_confirmation_expired(
    appointment: Appointment, config: BusinessSettings, now_utc_naive: datetime
) -> bool:
    """Unconfirmed PENDING bookings stop holding their slot once the email window lapses."""
    if appointment.status != AppointmentStatus.PENDING or appointment.is_email_confirmed:
        return False
    if appointment.email_confirmation_token is None:
        return False
    timeout = config.email_confirmation_timeout_minutes
    if timeout <= 0:
        return False
    return appointment.created_at < now_utc_naive - timedelta(minutes=timeout)


# -- store reads -------------------------------------------------------------

async def get_business(session: AsyncSession, business_id: int) -> Business:
    business = await session.get(Business, business_id)
    if business is None:
        raise NotFoundError("Business not found", reason="business_not_found")
    return business


async def get_service_for_business(session: AsyncSession, business_id: int, service_id: int) -> Service:
    result = await session.execute(
        select(Service).where(Service.id == service_id, Service.business_id == business_id)
    )
    service = result.scalar_one_or_none()
    if service is None:
        raise NotFoundError("Service not found for this business", reason="service_not_found")
    if not service.is_active:
        raise NotFoundError("Service is not active", reason="service_inactive")
    return service


async def get_employee_for_service(
    session: AsyncSession, business_id: int, employee_id: int, service_id: int
) -> Employee:
    result = await session.execute(
        select(Employee).where(Employee.id == employee_id, Employee.business_id == business_id)
    )
    employee = result.scalar_one_or_none()
    if employee is None:
        raise NotFoundError("Employee not found", reason="employee_not_found")
    if not employee.is_active:
        raise NotFoundError("Employee is not active", reason="employee_inactive")
    assignment = await session.execute(
        select(EmployeeService).where(
            EmployeeService.employee_id == employee_id,
            EmployeeService.service_id == service_id,
        )
    )
    if assignment.scalar_one_or_none() is None:
        raise BookingValidationError(
            "Selected employee is not assigned to this service", reason="employee_not_assigned"
        )
    return employee


async def get_existing_appointments(
    session: AsyncSession,
    business_id: int,
    service_id: int,
    target_date: date,
    employee_id: int | None = None,
    exclude_appointment_id: int | None = None,
) -> list[Appointment]:
    q = select(Appointment).where(
        Appointment.business_id == business_id,
        Appointment.service_id == service_id,
        Appointment.appointment_date == target_date,
        Appointment.status.not_in(list(NON_BLOCKING_STATUSES)),
    )
    if employee_id is not None:
        q = q.where(Appointment.employee_id == employee_id)
    if exclude_appointment_id is not None:
        q = q.where(Appointment.id != exclude_appointment_id)
    result = await session.execute(q.order_by(Appointment.start_time))
    return list(result.scalars().all())


async def count_active_for_employee(
    session: AsyncSession,
    employee_id: int,
    target_date: date,
    exclude_appointment_id: int | None = None,
) -> int:
    q = select(func.count()).select_from(Appointment).where(
        Appointment.employee_id == employee_id,
        Appointment.appointment_date == target_date,
        Appointment.status.not_in(list(NON_BLOCKING_STATUSES)),
    )
    if exclude_appointment_id is not None:
        q = q.where(Appointment.id != exclude_appointment_id)
    result = await session.execute(q)
    return int(result.scalar_one())


# -- entry points ------------------------------------------------------------

async def compute_slots(
    session: AsyncSession,
    business_id: int,
    service_id: int,
    target_date: date | str,
    *,
    employee_id: int | None = None,
    exclude_appointment_id: int | None = None,
    allow_past: bool = False,
    clock: Clock = system_clock,
) -> SlotTable:
    """Build the annotated slot table for one date.

    Every candidate carries ``available``; SHARED tables also carry
    ``spots_left``/``total_capacity``. A closed day or a resource that already
    hit its daily cap is reported through ``reason`` rather than an error.
    """
    d = parse_date(target_date)

    business = await get_business(session, business_id)
    service = await get_service_for_business(session, business_id, service_id)
    employee = None
    if employee_id is not None:
        employee = await get_employee_for_service(session, business_id, employee_id, service_id)

    today, now_time = clock.local_now(business.timezone)
    if d < today and not allow_past:
        raise BookingValidationError("Date is in the past", reason="date_in_past")

    mode = business.capacity_mode
    table = SlotTable(
        date=d,
        capacity_mode=mode,
        capacity=1 if mode == CapacityMode.EXCLUSIVE else business.default_capacity,
        service_id=service.id,
        service_duration=service.duration,
        employee_id=employee_id,
    )

    owner = ScheduleOwner.employee(employee_id) if employee is not None else ScheduleOwner.business(business_id)
    window = await resolve_window(session, owner, d)
    if window is None:
        table.reason = REASON_CLOSED
        return table
    table.window = window

    if mode == CapacityMode.SHARED:
        if window.capacity_override is not None:
            table.capacity = window.capacity_override
        elif service.custom_capacity is not None:
            table.capacity = service.custom_capacity

    step = effective_step(mode, business.default_slot_interval, service.duration)
    table.step = step
    candidates = generate_candidates(to_minutes(window.start), to_minutes(window.end), service.duration, step)

    if d == today and not allow_past:
        candidates = drop_elapsed(candidates, to_minutes(now_time))

    if not window.from_exception:
        table.breaks = [
            (to_minutes(b.start_time), to_minutes(b.end_time))
            for b in await get_breaks(session, window.break_source_id)
        ]
        candidates = mask_breaks(candidates, table.breaks)

    config = business.config
    existing = await get_existing_appointments(
        session, business_id, service_id, d,
        employee_id=employee_id, exclude_appointment_id=exclude_appointment_id,
    )
    now_utc = clock.utcnow_naive()
    holding = [a for a in existing if not is_confirmation_expired(a, config, now_utc)]
    blocking = blocking_intervals(holding, config.buffer_time_minutes)
    table.slots = evaluate_candidates(candidates, blocking, mode, table.capacity)

    if employee is not None and employee.max_daily_appointments:
        booked = await count_active_for_employee(session, employee.id, d, exclude_appointment_id)
        if booked >= employee.max_daily_appointments:
            table.slots = [
                Slot(s.start, s.end, available=False,
                     spots_left=0 if mode == CapacityMode.SHARED else None,
                     total_capacity=s.total_capacity)
                for s in table.slots
            ]
            table.reason = REASON_RESOURCE_AT_CAPACITY
            logger.debug("Employee %s reached %d bookings on %s", employee.id, booked, d)
            return table

    if table.slots and not table.available:
        table.reason = REASON_FULLY_BOOKED
    logger.debug(
        "Slots for business %s service %s on %s: %d candidates, %d available",
        business_id, service_id, d, len(table.slots), len(table.available_slots),
    )
    return table


async def compute_slots_for_range(
    session: AsyncSession,
    business_id: int,
    service_id: int,
    start_date: date | str,
    end_date: date | str,
    *,
    employee_id: int | None = None,
    clock: Clock = system_clock,
) -> list[SlotTable]:
    start = parse_date(start_date)
    end = parse_date(end_date)
    if start > end:
        raise BookingValidationError("start_date must be before or equal to end_date", reason="invalid_range")
    if (end - start).days > settings.max_range_days:
        raise BookingValidationError(
            f"Date range cannot exceed {settings.max_range_days} days", reason="range_too_long"
        )
    business = await get_business(session, business_id)
    today = clock.today(business.timezone)

    tables: list[SlotTable] = []
    current = max(start, today)
    while current <= end:
        tables.append(
            await compute_slots(
                session, business_id, service_id, current, employee_id=employee_id, clock=clock
            )
        )
        current += timedelta(days=1)
    return tables
