"""Pure timer planning (reminders, expiry, escalation, timer nodes)."""

from signing_timers.domain.schedule import (
    TimerAction,
    TimerActionKind,
    TimerSettings,
    next_reminder_at,
    plan_timer_actions,
)

__all__ = [
    "TimerAction",
    "TimerActionKind",
    "TimerSettings",
    "next_reminder_at",
    "plan_timer_actions",
]
