"""Injectable time source.

Handlers never call ``datetime.now`` directly; they receive a :class:`Clock`
so bucketing and start-time validation can be tested at fixed instants.
"""

from datetime import datetime, timezone
from typing import Annotated

from fastapi import Depends


class Clock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock(Clock):
    """Clock frozen at a given instant."""

    def __init__(self, at: datetime):
        if at.tzinfo is None:
            at = at.replace(tzinfo=timezone.utc)
        self._at = at

    def now(self) -> datetime:
        return self._at


_system_clock = Clock()


def get_clock() -> Clock:
    """FastAPI dependency for the current time source."""
    return _system_clock


CurrentClock = Annotated[Clock, Depends(get_clock)]
