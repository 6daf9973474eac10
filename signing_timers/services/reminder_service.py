"""
ReminderService -- applies due timer actions.

Contract:
    ``tick(now)`` reads the timer candidates, plans the due actions with
    the pure planner and applies each one in its own instance transaction
    through the orchestrator.  Returns a ``TickReport``.

Architecture: signing_timers/services.  Uses signing_timers.domain for
    planning and signing_services.orchestrator for locks, transactions
    and the workflow engine.

Invariants enforced:
    - Every action re-checks the persisted state under the instance lock,
      so a task completed since planning is left alone.
    - One transaction per action: a failing action rolls back alone and
      is retried on the next tick.
    - ``escalation_triggered`` is emitted at most once per task
      (``escalated_at`` is set in the same transaction).

Audit relevance:
    Emits reminder_sent and escalation_triggered; expiry and timer fires
    go through the engine (task_expired, task_completed, workflow_*).
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID

from signing_kernel.domain.clock import Clock
from signing_kernel.domain.task import ACTIONABLE_TASK_STATUSES, TaskStatus
from signing_kernel.domain.workflow import InstanceStatus
from signing_kernel.exceptions import SigningKernelError
from signing_kernel.logging_config import LogContext, get_logger
from signing_kernel.models.audit_event import AuditAction
from signing_kernel.models.task import TaskModel
from signing_kernel.selectors.task_selector import TaskSelector
from signing_kernel.selectors.workflow_selector import WorkflowSelector
from signing_kernel.services.task_scheduler import SYSTEM_ACTOR
from signing_kernel.utils.rfc3339 import format_utc
from signing_services.orchestrator import SigningOrchestrator, UnitOfWork
from signing_timers.domain.schedule import (
    TimerAction,
    TimerActionKind,
    TimerSettings,
    plan_timer_actions,
)

logger = get_logger("timers.reminder_service")

REMINDER_TEMPLATE = "task_reminder"
ESCALATION_TEMPLATE = "task_escalation"


@dataclass
class TickReport:
    applied: Counter = field(default_factory=Counter)
    skipped: int = 0
    failed: int = 0

    @property
    def total_applied(self) -> int:
        return sum(self.applied.values())


class ReminderService:
    """Reminder, expiry, escalation and timer-node processing."""

    def __init__(self, orchestrator: SigningOrchestrator, clock: Clock | None = None):
        self._orchestrator = orchestrator
        self._clock = clock or orchestrator.clock
        settings = orchestrator.settings
        self._defaults = TimerSettings(
            reminder_interval_seconds=settings.reminder_interval_seconds,
            escalation_delay_seconds=settings.escalation_delay_seconds,
        )
        self._handlers = {
            TimerActionKind.FIRE_TIMER: self._fire_timer,
            TimerActionKind.REMIND: self._remind,
            TimerActionKind.EXPIRE: self._expire_task,
            TimerActionKind.ESCALATE: self._escalate,
            TimerActionKind.EXPIRE_INSTANCE: self._expire_instance,
        }

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def plan(self, now: datetime) -> list[TimerAction]:
        with self._orchestrator.session_factory() as session:
            tasks = TaskSelector(session).timer_candidates()
            workflows = WorkflowSelector(session)
            overdue = workflows.running_past_deadline(now)
            instances = workflows.get_many(
                {t.instance_id for t in tasks} | {i.instance_id for i in overdue}
            )
            per_instance: dict[UUID, TimerSettings] = {}
            for instance in instances.values():
                definition = self._orchestrator.load_definition(
                    session, instance.workflow_id, instance.workflow_version
                )
                per_instance[instance.instance_id] = TimerSettings(
                    reminder_interval_seconds=definition.settings.reminder_interval_seconds,
                    escalation_delay_seconds=definition.settings.escalation_delay_seconds,
                )
        return plan_timer_actions(tasks, instances.values(), now, self._defaults, per_instance)

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    def tick(self, now: datetime | None = None) -> TickReport:
        """Apply every timer action due at ``now`` (public for testing)."""
        now = now or self._clock.now()
        report = TickReport()
        for action in self.plan(now):
            with LogContext.bind(instance_id=action.instance_id, task_id=action.task_id or ""):
                try:
                    applied = self._apply(action, now)
                except SigningKernelError:
                    report.failed += 1
                    logger.warning(
                        "timer_action_failed",
                        extra={"kind": action.kind.value, "fire_at": format_utc(action.fire_at)},
                        exc_info=True,
                    )
                    continue
            if applied:
                report.applied[action.kind.value] += 1
            else:
                report.skipped += 1
        if report.total_applied or report.failed:
            logger.info(
                "timer_tick_completed",
                extra={
                    "applied": dict(report.applied),
                    "skipped": report.skipped,
                    "failed": report.failed,
                },
            )
        return report

    def _apply(self, action: TimerAction, now: datetime) -> bool:
        with self._orchestrator.instance_transaction(action.instance_id, f"timer_{action.kind.value}") as unit:
            return self._handlers[action.kind](unit, action, now)

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    def _live_task(self, unit: UnitOfWork, action: TimerAction) -> TaskModel | None:
        task = unit.scheduler.load(action.task_id, for_update=True)
        if TaskStatus(task.status) not in ACTIONABLE_TASK_STATUSES:
            return None
        if task.instance.status != InstanceStatus.RUNNING.value:
            return None
        return task

    def _fire_timer(self, unit: UnitOfWork, action: TimerAction, now: datetime) -> bool:
        task = self._live_task(unit, action)
        if task is None or task.due_at is None or task.due_at > now:
            return False
        instance = task.instance
        definition = self._orchestrator.load_definition(
            unit.session, instance.workflow_id, instance.workflow_version
        )
        unit.engine.on_timer_fired(instance, definition, task)
        logger.info("timer_fired", extra={"task_id": str(task.id), "node_id": task.node_id})
        return True

    def _expire_task(self, unit: UnitOfWork, action: TimerAction, now: datetime) -> bool:
        task = self._live_task(unit, action)
        if task is None or task.due_at is None or task.due_at > now:
            return False
        instance = task.instance
        definition = self._orchestrator.load_definition(
            unit.session, instance.workflow_id, instance.workflow_version
        )
        unit.engine.on_task_expired(instance, definition, task)
        return True

    def _send(self, channel: str, template_id: str, recipient: str, variables: dict) -> str:
        notifier = self._orchestrator.ports.notifier
        if notifier is None:
            return ""
        return self._orchestrator.gateway.call(
            "notifier", "send", notifier.send, channel, template_id, recipient, variables
        )

    def _task_variables(self, task: TaskModel) -> dict:
        return {
            "task_id": str(task.id),
            "instance_id": str(task.instance_id),
            "workflow_id": task.instance.workflow_id,
            "node_id": task.node_id,
            "due_at": format_utc(task.due_at) if task.due_at else None,
        }

    def _remind(self, unit: UnitOfWork, action: TimerAction, now: datetime) -> bool:
        task = self._live_task(unit, action)
        if task is None or not task.assignee_id:
            return False
        if task.due_at is not None and task.due_at <= now:
            return False
        channel = self._orchestrator.settings.notification_channel
        delivery_id = self._send(channel, REMINDER_TEMPLATE, task.assignee_id, self._task_variables(task))
        unit.scheduler.record_reminder(task, now)
        unit.auditor.record(
            str(task.instance_id),
            AuditAction.REMINDER_SENT,
            SYSTEM_ACTOR,
            instance_id=task.instance_id,
            node_id=task.node_id,
            task_id=task.id,
            details={
                "recipient": task.assignee_id,
                "channel": channel,
                "delivery_id": delivery_id,
                "reminder": len(task.reminders_sent),
                "due_at": format_utc(task.due_at) if task.due_at else None,
            },
        )
        logger.info("reminder_sent", extra={"task_id": str(task.id), "recipient": task.assignee_id})
        return True

    def _escalate(self, unit: UnitOfWork, action: TimerAction, now: datetime) -> bool:
        task = unit.scheduler.load(action.task_id, for_update=True)
        if task.status != TaskStatus.EXPIRED.value or task.escalated_at is not None:
            return False
        if task.instance.status == InstanceStatus.CANCELLED.value:
            return False
        settings = self._orchestrator.settings
        recipient = settings.escalation_recipient
        variables = {**self._task_variables(task), "assignee": task.assignee_id}
        delivery_id = self._send(settings.notification_channel, ESCALATION_TEMPLATE, recipient, variables)
        unit.scheduler.mark_escalated(task, now)
        unit.auditor.record(
            str(task.instance_id),
            AuditAction.ESCALATION_TRIGGERED,
            SYSTEM_ACTOR,
            instance_id=task.instance_id,
            node_id=task.node_id,
            task_id=task.id,
            details={
                "recipient": recipient,
                "delivery_id": delivery_id,
                "assignee": task.assignee_id,
                "expired_at": format_utc(task.expired_at) if task.expired_at else None,
            },
        )
        logger.warning("escalation_triggered", extra={"task_id": str(task.id), "recipient": recipient})
        return True

    def _expire_instance(self, unit: UnitOfWork, action: TimerAction, now: datetime) -> bool:
        instance = self._orchestrator.load_instance(unit.session, action.instance_id)
        if instance.status != InstanceStatus.RUNNING.value:
            return False
        if instance.deadline is None or instance.deadline > now:
            return False
        unit.engine.expire(instance)
        return True
