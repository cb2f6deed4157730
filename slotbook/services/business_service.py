import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from slotbook.core.clock import is_valid_timezone
from slotbook.core.config import settings
from slotbook.core.exceptions import BookingValidationError, ConfigurationError
from slotbook.models.business import Business, BusinessCreate

logger = logging.getLogger(__name__)


async def create_business(session: AsyncSession, data: BusinessCreate) -> Business:
    if data.default_capacity < 0:
        raise BookingValidationError("default_capacity cannot be negative", reason="invalid_capacity")
    if data.default_slot_interval <= 0:
        raise BookingValidationError("default_slot_interval must be positive", reason="invalid_step")
    timezone = data.timezone or settings.default_timezone
    if not is_valid_timezone(timezone):
        raise BookingValidationError(f"Unknown timezone: {timezone}", reason="invalid_timezone")
    business = Business(
        name=data.name,
        capacity_mode=data.capacity_mode,
        default_capacity=data.default_capacity,
        default_slot_interval=data.default_slot_interval,
        timezone=timezone,
        settings=data.settings.model_dump(by_alias=True),
    )
    session.add(business)
    await session.flush()
    await session.refresh(business)
    return business


async def validate_business_timezones(session: AsyncSession) -> int:
    """Startup check: every stored business timezone must resolve. Returns the count checked."""
    result = await session.execute(select(Business.id, Business.timezone))
    rows = result.all()
    bad = [(bid, tz) for bid, tz in rows if not is_valid_timezone(tz)]
    if bad:
        listing = ", ".join(f"business {bid}: {tz!r}" for bid, tz in bad)
        raise ConfigurationError(f"Unknown business timezone(s): {listing}")
    logger.info("Validated timezones for %d business(es)", len(rows))
    return len(rows)
