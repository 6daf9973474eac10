"""
Clock -- Deterministic time abstraction.

Responsibility:
    Provides an injectable clock interface so that domain, engine, timer and
    service code never call ``datetime.now()`` or ``time.monotonic()``
    directly.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O (except SystemClock,
    which is the one sanctioned I/O boundary for time).

Invariants enforced:
    - Every timestamp in tasks, instances and audit events comes from an
      injected Clock, so scenario tests replay deterministically.

Audit relevance:
    Audit event timestamps, due dates, reminder cadence and ABAC time-of-day
    attributes are all traceable to the same Clock instance.
"""

import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone


class Clock(ABC):
    """
    Abstract clock interface.

    Contract:
        All services that need current time must receive a Clock instance
        via constructor injection.

    Guarantees:
        - ``now()`` returns a timezone-aware ``datetime``.
        - ``now_utc()`` returns a UTC-normalized ``datetime``.
        - ``monotonic()`` never goes backwards.
    """

    @abstractmethod
    def now(self) -> datetime:
        """Get the current time."""
        ...

    @abstractmethod
    def now_utc(self) -> datetime:
        """Get the current UTC time."""
        ...

    @abstractmethod
    def monotonic(self) -> float:
        """Seconds on a monotonic scale, for measuring durations."""
        ...


class SystemClock(Clock):
    """
    Production clock that returns actual system time.

    Non-goals:
        Not suitable for deterministic replay or testing.
    """

    def now(self) -> datetime:
        """Get current system time with timezone."""
        return datetime.now(timezone.utc)

    def now_utc(self) -> datetime:
        """Get current UTC time."""
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return time.monotonic()


class DeterministicClock(Clock):
    """
    Test clock with controlled time.

    Contract:
        Used in tests and scenario replays for deterministic behavior.
        Safe to share between threads.

    Guarantees:
        - ``now()`` returns the same value on repeated calls until ``advance()``
          or ``set_time()`` is called.
        - ``monotonic()`` moves exactly as far as ``advance()`` moved it.
    """

    def __init__(self, fixed_time: datetime | None = None):
        """
        Initialize with optional fixed time.

        Args:
            fixed_time: If provided, clock starts at this time.
                       If None, uses a default epoch time.
        """
        self._fixed_time = fixed_time or datetime(
            2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc
        )
        self._advance_seconds = 0.0
        self._lock = threading.Lock()

    def now(self) -> datetime:
        """Get the fixed/controlled time."""
        with self._lock:
            return self._fixed_time + timedelta(seconds=self._advance_seconds)

    def now_utc(self) -> datetime:
        """Get the fixed/controlled UTC time."""
        return self.now().astimezone(timezone.utc)

    def monotonic(self) -> float:
        with self._lock:
            return self._advance_seconds

    def set_time(self, time: datetime) -> None:
        """Set the clock to a specific time."""
        with self._lock:
            self._fixed_time = time
            self._advance_seconds = 0.0

    def advance(self, seconds: float | timedelta = 1) -> datetime:
        """Advance the clock and return the new time."""
        if isinstance(seconds, timedelta):
            seconds = seconds.total_seconds()
        with self._lock:
            self._advance_seconds += seconds
        return self.now()

    def tick(self) -> datetime:
        """Advance by 1 second and return new time."""
        return self.advance(1)
