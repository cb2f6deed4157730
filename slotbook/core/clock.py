from datetime import UTC, date, datetime, time, timedelta
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from slotbook.core.exceptions import ConfigurationError


@lru_cache(maxsize=128)
def get_zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ConfigurationError(f"Unknown timezone: {name!r}") from e


def is_valid_timezone(name: str) -> bool:
    try:
        get_zone(name)
    except ConfigurationError:
        return False
    return True


def day_of_week(d: date) -> int:
    """0 = Sunday ... 6 = Saturday."""
    return (d.weekday() + 1) % 7


def _utc_naive(dt: datetime) -> datetime:
    """Naive UTC for TIMESTAMP WITHOUT TIME ZONE columns."""
    if dt.tzinfo is not None:
        dt = dt.astimezone(UTC)
    return dt.replace(tzinfo=None)


class Clock:
    """Single source of "now" for scheduling decisions.

    Everything that compares a stored date/time against the present goes through
    here, expressed in the business's own timezone, never the process's.
    """

    def utcnow(self) -> datetime:
        return datetime.now(UTC)

    def utcnow_naive(self) -> datetime:
        return _utc_naive(self.utcnow())

    def now(self, tz_name: str) -> datetime:
        return self.utcnow().astimezone(get_zone(tz_name))

    def local_now(self, tz_name: str) -> tuple[date, time]:
        local = self.now(tz_name)
        return local.date(), local.time().replace(microsecond=0)

    def today(self, tz_name: str) -> date:
        return self.now(tz_name).date()

    def cutoff(self, tz_name: str, hours_ago: float) -> tuple[date, time]:
        """now - hours_ago, expressed on the local calendar of tz_name."""
        shifted = (self.utcnow() - timedelta(hours=hours_ago)).astimezone(get_zone(tz_name))
        return shifted.date(), shifted.time().replace(microsecond=0)

    def localize(self, d: date, t: time, tz_name: str) -> datetime:
        """Aware datetime for a business-local wall-clock date and time."""
        return datetime.combine(d, t, tzinfo=get_zone(tz_name))


class FixedClock(Clock):
    """Clock pinned to one instant; used by tests and replays."""

    def __init__(self, instant: datetime) -> None:
        if instant.tzinfo is None:
            instant = instant.replace(tzinfo=UTC)
        self._instant = instant

    def utcnow(self) -> datetime:
        return self._instant.astimezone(UTC)

    def advance(self, **kwargs: float) -> None:
        self._instant += timedelta(**kwargs)


system_clock = Clock()
