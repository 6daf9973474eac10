"""
Tests for pure timer planning.

Covers:
- Reminder schedule (before the due date, interval after the last one)
- Expiry of overdue human tasks and firing of timer tasks
- Escalation after the delay, skipped for cancelled instances
- Instance deadlines
- Ordering of actions and per-instance settings
"""

from datetime import timedelta
from uuid import uuid4

from signing_kernel.domain.dtos import InstanceRecord, TaskRecord
from signing_kernel.domain.task import Participant, TaskKind, TaskStatus
from signing_kernel.domain.workflow import InstanceStatus
from signing_timers.domain.schedule import (
    TimerActionKind,
    TimerSettings,
    next_reminder_at,
    plan_timer_actions,
)

from conftest import T0

DAY = timedelta(days=1)
SETTINGS = TimerSettings(reminder_interval_seconds=86400, escalation_delay_seconds=72 * 3600)


def instance(status=InstanceStatus.RUNNING, **fields) -> InstanceRecord:
    values = {
        "instance_id": uuid4(),
        "workflow_id": "wf",
        "workflow_version": 1,
        "organization_id": "org-1",
        "status": status,
        "initiated_by": "admin",
    }
    values.update(fields)
    return InstanceRecord(**values)


def task(inst: InstanceRecord, kind=TaskKind.SIGNATURE, status=TaskStatus.PENDING, **fields) -> TaskRecord:
    values = {
        "task_id": uuid4(),
        "instance_id": inst.instance_id,
        "node_id": "sign",
        "order": 0,
        "kind": kind,
        "status": status,
        "assignee": Participant(id="alice"),
        "assigned_at": T0,
    }
    values.update(fields)
    return TaskRecord(**values)


def kinds(actions) -> list[str]:
    return [a.kind.value for a in actions]


class TestNextReminder:

    def test_first_reminder_one_interval_before_due(self):
        t = task(instance(), due_at=T0 + 7 * DAY)

        assert next_reminder_at(t, 86400) == T0 + 6 * DAY

    def test_following_reminder_after_the_last_one(self):
        t = task(instance(), due_at=T0 + 7 * DAY, reminders_sent=(T0 + 2 * DAY,))

        assert next_reminder_at(t, 86400) == T0 + 3 * DAY

    def test_no_reminder_at_or_after_due(self):
        t = task(instance(), due_at=T0 + 7 * DAY, reminders_sent=(T0 + 6 * DAY,))

        assert next_reminder_at(t, 86400) is None

    def test_short_window_gets_no_early_reminder(self):
        t = task(instance(), due_at=T0 + timedelta(hours=12))

        assert next_reminder_at(t, 86400) is None

    def test_without_due_date_remind_after_assignment(self):
        t = task(instance())

        assert next_reminder_at(t, 86400) == T0 + DAY

    def test_disabled_interval(self):
        assert next_reminder_at(task(instance(), due_at=T0 + 7 * DAY), 0) is None


class TestPlanning:

    def test_nothing_due(self):
        inst = instance()

        assert plan_timer_actions([task(inst, due_at=T0 + 7 * DAY)], [inst], T0 + DAY, SETTINGS) == []

    def test_reminder_due(self):
        inst = instance()
        t = task(inst, due_at=T0 + 7 * DAY)

        actions = plan_timer_actions([t], [inst], T0 + 6 * DAY, SETTINGS)

        assert kinds(actions) == ["remind"]
        assert actions[0].task_id == t.task_id
        assert actions[0].fire_at == T0 + 6 * DAY

    def test_overdue_task_expires_instead_of_reminding(self):
        inst = instance()
        t = task(inst, due_at=T0 + 7 * DAY)

        actions = plan_timer_actions([t], [inst], T0 + 7 * DAY + timedelta(seconds=1), SETTINGS)

        assert kinds(actions) == ["expire"]
        assert actions[0].fire_at == T0 + 7 * DAY

    def test_timer_task_fires(self):
        inst = instance()
        timer = task(inst, kind=TaskKind.TIMER, assignee=None, due_at=T0 + timedelta(hours=1))

        assert kinds(plan_timer_actions([timer], [inst], T0 + timedelta(hours=1), SETTINGS)) == ["fire_timer"]
        assert plan_timer_actions([timer], [inst], T0 + timedelta(minutes=59), SETTINGS) == []

    def test_service_calls_are_never_timed(self):
        inst = instance()
        call = task(inst, kind=TaskKind.SERVICE_CALL, assignee=None, due_at=T0)

        assert plan_timer_actions([call], [inst], T0 + DAY, SETTINGS) == []

    def test_waiting_tasks_are_ignored(self):
        inst = instance()
        waiting = task(inst, status=TaskStatus.WAITING, due_at=T0)

        assert plan_timer_actions([waiting], [inst], T0 + DAY, SETTINGS) == []

    def test_tasks_of_finished_instances_are_ignored(self):
        inst = instance(status=InstanceStatus.COMPLETED)

        assert plan_timer_actions([task(inst, due_at=T0)], [inst], T0 + DAY, SETTINGS) == []


class TestEscalation:

    def expired(self, inst, expired_at=T0 + 7 * DAY, **fields):
        return task(inst, status=TaskStatus.EXPIRED, due_at=T0 + 7 * DAY, expired_at=expired_at, **fields)

    def test_escalates_after_delay(self):
        inst = instance(status=InstanceStatus.FAILED)
        t = self.expired(inst)

        assert plan_timer_actions([t], [inst], T0 + 10 * DAY - timedelta(seconds=1), SETTINGS) == []
        actions = plan_timer_actions([t], [inst], T0 + 10 * DAY, SETTINGS)
        assert kinds(actions) == ["escalate"]
        assert actions[0].fire_at == T0 + 10 * DAY

    def test_escalates_once(self):
        inst = instance(status=InstanceStatus.FAILED)
        t = self.expired(inst, escalated_at=T0 + 10 * DAY)

        assert plan_timer_actions([t], [inst], T0 + 20 * DAY, SETTINGS) == []

    def test_cancelled_instance_does_not_escalate(self):
        inst = instance(status=InstanceStatus.CANCELLED)

        assert plan_timer_actions([self.expired(inst)], [inst], T0 + 20 * DAY, SETTINGS) == []

    def test_per_instance_delay(self):
        inst = instance(status=InstanceStatus.FAILED)
        short = TimerSettings(reminder_interval_seconds=86400, escalation_delay_seconds=3600)

        actions = plan_timer_actions(
            [self.expired(inst)], [inst], T0 + 7 * DAY + timedelta(hours=1), SETTINGS,
            per_instance={inst.instance_id: short},
        )

        assert kinds(actions) == ["escalate"]


class TestDeadlinesAndOrdering:

    def test_instance_past_deadline_expires(self):
        inst = instance(deadline=T0 + DAY)

        actions = plan_timer_actions([], [inst], T0 + DAY, SETTINGS)

        assert kinds(actions) == ["expire_instance"]
        assert actions[0].task_id is None

    def test_actions_sorted_by_fire_time_then_kind(self):
        late = instance()
        early = instance(deadline=T0 + 7 * DAY)
        expiring = task(late, due_at=T0 + 7 * DAY)
        reminding = task(early, due_at=T0 + 9 * DAY, node_id="other")

        actions = plan_timer_actions([reminding, expiring], [late, early], T0 + 8 * DAY, SETTINGS)

        assert kinds(actions) == ["expire", "expire_instance", "remind"]
        assert [a.fire_at for a in actions] == [T0 + 7 * DAY, T0 + 7 * DAY, T0 + 8 * DAY]

    def test_action_kind_values(self):
        assert {k.value for k in TimerActionKind} == {
            "fire_timer", "remind", "expire", "escalate", "expire_instance",
        }
