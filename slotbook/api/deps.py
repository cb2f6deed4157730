from slotbook.core.clock import Clock, system_clock
from slotbook.core.db import get_session

__all__ = ["get_clock", "get_session"]


def get_clock() -> Clock:
    """Time source for request handlers; tests override this with a FixedClock."""
    return system_clock
