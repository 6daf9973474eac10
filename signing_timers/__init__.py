"""
signing_timers -- Reminders, expiry, escalation and timer nodes.

Responsibility:
    Drives everything that happens because time passed: timer nodes fire,
    overdue tasks expire (taking their timeout route), assignees get
    reminders, expired tasks escalate, and instances past their deadline
    expire.

Architecture position:
    Same layer as signing_services.  ``domain`` is pure planning;
    ``services`` applies the plan through the orchestrator.

Usage:
    service = ReminderService(orchestrator)
    service.tick()                      # one pass, e.g. from cron
    ReminderScheduler(service).start()  # or a background thread
"""

from signing_timers.domain.schedule import TimerAction, TimerActionKind, TimerSettings, plan_timer_actions
from signing_timers.services.reminder_service import ReminderService, TickReport
from signing_timers.services.scheduler import ReminderScheduler

__all__ = [
    "ReminderScheduler",
    "ReminderService",
    "TickReport",
    "TimerAction",
    "TimerActionKind",
    "TimerSettings",
    "plan_timer_actions",
]
