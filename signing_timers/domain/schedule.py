"""
Pure timer planning.

Contract:
    ``plan_timer_actions(tasks, instances, now, settings)`` is PURE -- no
    I/O, no clock reads.  It returns the timer actions due at ``now``,
    ordered by fire time, for the reminder service to apply.

Architecture: signing_timers/domain.  ZERO I/O.

Rules:
    - Timer tasks fire (complete) at ``due_at``.
    - A human task expires at ``due_at``.
    - Reminders: the first at ``due_at - interval`` (or ``assigned_at +
      interval`` without a due date), then one ``interval`` after the
      previous reminder; only strictly before ``due_at``.  When the due
      window is shorter than the interval no early reminder is sent.
    - An expired, not yet escalated task escalates at ``expired_at +
      escalation_delay`` unless its instance was cancelled.
    - A running instance past its deadline expires.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from uuid import UUID

from signing_kernel.domain.dtos import InstanceRecord, TaskRecord
from signing_kernel.domain.task import ACTIONABLE_TASK_STATUSES, TaskKind, TaskStatus
from signing_kernel.domain.workflow import InstanceStatus


class TimerActionKind(str, Enum):
    FIRE_TIMER = "fire_timer"
    REMIND = "remind"
    EXPIRE = "expire"
    ESCALATE = "escalate"
    EXPIRE_INSTANCE = "expire_instance"


# Order of actions sharing a fire time.
_KIND_RANK = {
    TimerActionKind.FIRE_TIMER: 0,
    TimerActionKind.REMIND: 1,
    TimerActionKind.EXPIRE: 2,
    TimerActionKind.ESCALATE: 3,
    TimerActionKind.EXPIRE_INSTANCE: 4,
}


@dataclass(frozen=True)
class TimerSettings:
    reminder_interval_seconds: int = 24 * 3600
    escalation_delay_seconds: int = 72 * 3600


@dataclass(frozen=True)
class TimerAction:
    kind: TimerActionKind
    fire_at: datetime
    instance_id: UUID
    task_id: UUID | None = None

    def sort_key(self) -> tuple:
        return (self.fire_at, _KIND_RANK[self.kind], str(self.instance_id), str(self.task_id or ""))


def next_reminder_at(task: TaskRecord, interval_seconds: int) -> datetime | None:
    """When the next reminder of ``task`` is due (None: no further reminder)."""
    if interval_seconds <= 0:
        return None
    interval = timedelta(seconds=interval_seconds)
    if task.reminders_sent:
        candidate = max(task.reminders_sent) + interval
    elif task.due_at is not None:
        candidate = task.due_at - interval
        if task.assigned_at is not None and candidate <= task.assigned_at:
            return None
    elif task.assigned_at is not None:
        candidate = task.assigned_at + interval
    else:
        return None
    if task.due_at is not None and candidate >= task.due_at:
        return None
    return candidate


def _task_action(
    task: TaskRecord,
    instance: InstanceRecord | None,
    now: datetime,
    settings: TimerSettings,
) -> TimerAction | None:
    if task.status in ACTIONABLE_TASK_STATUSES:
        if instance is None or instance.status is not InstanceStatus.RUNNING:
            return None
        if task.kind is TaskKind.SERVICE_CALL:
            return None
        if task.kind is TaskKind.TIMER:
            if task.due_at is not None and task.due_at <= now:
                return TimerAction(TimerActionKind.FIRE_TIMER, task.due_at, task.instance_id, task.task_id)
            return None
        if task.due_at is not None and task.due_at <= now:
            return TimerAction(TimerActionKind.EXPIRE, task.due_at, task.instance_id, task.task_id)
        remind_at = next_reminder_at(task, settings.reminder_interval_seconds)
        if remind_at is not None and remind_at <= now:
            return TimerAction(TimerActionKind.REMIND, remind_at, task.instance_id, task.task_id)
        return None

    if task.status is TaskStatus.EXPIRED and task.escalated_at is None and task.expired_at is not None:
        if instance is not None and instance.status is InstanceStatus.CANCELLED:
            return None
        escalate_at = task.expired_at + timedelta(seconds=settings.escalation_delay_seconds)
        if escalate_at <= now:
            return TimerAction(TimerActionKind.ESCALATE, escalate_at, task.instance_id, task.task_id)
    return None


def plan_timer_actions(
    tasks: Iterable[TaskRecord],
    instances: Iterable[InstanceRecord],
    now: datetime,
    settings: TimerSettings | None = None,
    per_instance: Mapping[UUID, TimerSettings] | None = None,
) -> list[TimerAction]:
    """Timer actions due at ``now``, ordered by fire time.

    Args:
        tasks: Candidate tasks (actionable, or expired and not escalated).
        instances: Instances of those tasks plus any past their deadline.
        now: Evaluation time, from the caller's clock.
        settings: Fallback reminder / escalation settings.
        per_instance: Settings of each instance's definition.
    """
    settings = settings or TimerSettings()
    per_instance = per_instance or {}
    by_id = {i.instance_id: i for i in instances}

    actions: list[TimerAction] = []
    for task in tasks:
        instance = by_id.get(task.instance_id)
        action = _task_action(task, instance, now, per_instance.get(task.instance_id, settings))
        if action is not None:
            actions.append(action)

    for instance in by_id.values():
        if (
            instance.status is InstanceStatus.RUNNING
            and instance.deadline is not None
            and instance.deadline <= now
        ):
            actions.append(
                TimerAction(TimerActionKind.EXPIRE_INSTANCE, instance.deadline, instance.instance_id)
            )

    return sorted(actions, key=TimerAction.sort_key)
