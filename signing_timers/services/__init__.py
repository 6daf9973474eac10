"""Timer services: action application and the polling loop."""

from signing_timers.services.reminder_service import ReminderService, TickReport
from signing_timers.services.scheduler import ReminderScheduler

__all__ = ["ReminderScheduler", "ReminderService", "TickReport"]
