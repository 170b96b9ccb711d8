"""
Clock -- Injectable time source.

Responsibility:
    Supplies the timestamps stamped on transition records, audit entries,
    handoffs and compliance reports. Services receive a Clock through their
    constructor and never read wall-clock time themselves.

Architecture position:
    Kernel > Domain -- pure, with SystemClock as the single I/O boundary.

Audit relevance:
    Audit entry hashes cover the timestamp, so reproducible tests of the hash
    chain depend on a deterministic clock.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone


def as_utc(value: datetime | None) -> datetime | None:
    """Normalize to aware UTC; naive values are taken to be UTC already."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Clock(ABC):
    """
    Abstract clock interface.

    Guarantees:
        ``now()`` returns a timezone-aware UTC ``datetime``.
    """

    @abstractmethod
    def now(self) -> datetime:
        """Get the current UTC time."""
        ...


class SystemClock(Clock):
    """Production clock backed by the system time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Test clock with controlled time.

    ``now()`` returns the same value on repeated calls until ``advance()``,
    ``tick()`` or ``set_time()`` moves it. With ``auto_advance`` set, every
    read moves the clock forward by that many seconds afterwards, which keeps
    successive audit entries strictly ordered.
    """

    DEFAULT_START = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __init__(
        self,
        start: datetime | None = None,
        auto_advance: float = 0.0,
    ):
        self._current = as_utc(start or self.DEFAULT_START)
        self._auto_advance = auto_advance

    def now(self) -> datetime:
        value = self._current
        if self._auto_advance:
            self._current = value + timedelta(seconds=self._auto_advance)
        return value

    def set_time(self, value: datetime) -> None:
        """Set the clock to a specific time."""
        self._current = as_utc(value)

    def advance(self, seconds: float = 1, *, days: int = 0) -> None:
        """Move the clock forward."""
        self._current = self._current + timedelta(days=days, seconds=seconds)

    def tick(self) -> datetime:
        """Advance by 1 second and return the new time."""
        self.advance(1)
        return self._current
