"""
ReminderScheduler -- In-process polling timer loop.

Contract:
    Calls ``ReminderService.tick()`` every ``tick_interval_seconds`` in a
    daemon thread until ``stop()``.

Architecture: signing_timers/services.

Invariants enforced:
    - All timestamps come from the injected Clock.
    - Graceful shutdown: ``stop()`` lets the current tick finish.
"""

from __future__ import annotations

import threading

from signing_kernel.domain.clock import Clock, SystemClock
from signing_kernel.logging_config import get_logger
from signing_timers.services.reminder_service import ReminderService, TickReport

logger = get_logger("timers.scheduler")


class ReminderScheduler:
    """Background thread driving the reminder service.

    Non-goals:
        - NOT a distributed scheduler (no leader election); several
          processes may tick, the per-action re-checks keep it safe.
    """

    def __init__(
        self,
        service: ReminderService,
        clock: Clock | None = None,
        tick_interval_seconds: float = 60.0,
    ):
        self._service = service
        self._clock = clock or SystemClock()
        self._tick_interval = tick_interval_seconds
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self.ticks = 0

    def tick(self) -> TickReport:
        report = self._service.tick(self._clock.now())
        self.ticks += 1
        return report

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="signing-timers", daemon=True)
        self._thread.start()
        logger.info("timer_scheduler_started", extra={"tick_interval": self._tick_interval})

    def stop(self, timeout: float = 30.0) -> None:
        """Signal stop and wait for the loop to finish."""
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        logger.info("timer_scheduler_stopped", extra={"ticks": self.ticks})

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("timer_tick_exception")
            self._stop_event.wait(timeout=self._tick_interval)
