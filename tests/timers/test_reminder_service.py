"""
Tests for ReminderService and ReminderScheduler against a live orchestrator.

Covers:
- Reminders on the definition's interval, recorded and audited once
- Expiry taking an on_timeout route
- Instance deadline expiry
- A failing notifier counts as a failed action and is retried next tick
- Scheduler thread start / stop and manual ticks
"""

import time
from datetime import timedelta

from signing_kernel.domain.task import TaskStatus
from signing_kernel.domain.workflow import InstanceStatus
from signing_timers.services.reminder_service import REMINDER_TEMPLATE, ReminderService
from signing_timers.services.scheduler import ReminderScheduler

from conftest import ADMIN, ORGANIZATION, T0, linear_definition, signature_node

HOUR = 3600


def reminded_signature() -> dict:
    return linear_definition(
        "reminded",
        signature_node("sign", "alice", due_in_seconds=HOUR),
        settings={"reminder_interval_seconds": 600},
    )


class TestReminders:

    def test_reminder_before_the_due_date(
        self, orchestrator, ports, start_instance, task_for, instance_trail, deterministic_clock,
    ):
        started = start_instance(reminded_signature())
        service = ReminderService(orchestrator)

        deterministic_clock.advance(49 * 60)
        assert service.tick().total_applied == 0

        deterministic_clock.advance(60)
        report = service.tick()

        (sent,) = ports.notifier.for_template(REMINDER_TEMPLATE)
        task = task_for(started.instance_id, "sign")
        reminder = instance_trail(started.instance_id).events[-1]
        assert report.applied["remind"] == 1
        assert sent.recipient == "alice"
        assert sent.variables["task_id"] == str(task.task_id)
        assert task.reminders_sent == (T0 + timedelta(minutes=50),)
        assert reminder.action == "reminder_sent"
        assert reminder.details["delivery_id"] == sent.delivery_id

    def test_reminder_is_not_repeated_within_the_interval(self, orchestrator, ports, start_instance,
                                                          deterministic_clock):
        start_instance(reminded_signature())
        service = ReminderService(orchestrator)
        deterministic_clock.advance(50 * 60)
        service.tick()

        deterministic_clock.advance(5 * 60)
        report = service.tick()

        assert report.total_applied == 0
        assert len(ports.notifier.for_template(REMINDER_TEMPLATE)) == 1

    def test_failed_delivery_is_retried(self, orchestrator, ports, start_instance, instance_trail,
                                        deterministic_clock):
        started = start_instance(reminded_signature())
        service = ReminderService(orchestrator)
        ports.notifier.failing_channels.add("email")
        deterministic_clock.advance(50 * 60)

        failed = service.tick()

        assert failed.failed == 1
        assert "reminder_sent" not in [e.action for e in instance_trail(started.instance_id).events]

        ports.notifier.failing_channels.clear()
        assert service.tick().applied["remind"] == 1


class TestExpiry:

    def test_timeout_route(self, orchestrator, ports, start_instance, task_for, deterministic_clock):
        definition = {
            "workflow_id": "chased",
            "organization_id": ORGANIZATION,
            "created_by": ADMIN,
            "nodes": [
                {"id": "start", "kind": "start"},
                signature_node("sign", "alice", due_in_seconds=HOUR),
                {"id": "chase", "kind": "notification",
                 "config": {"template_id": "signature_overdue", "recipients": ["ops"]}},
                {"id": "end", "kind": "end"},
            ],
            "edges": [
                {"source_id": "start", "target_id": "sign"},
                {"source_id": "sign", "target_id": "end"},
                {"source_id": "sign", "target_id": "chase", "route": "on_timeout"},
                {"source_id": "chase", "target_id": "end"},
            ],
        }
        started = start_instance(definition)
        deterministic_clock.advance(HOUR)

        report = ReminderService(orchestrator).tick()

        assert report.applied["expire"] == 1
        assert task_for(started.instance_id, "sign").status is TaskStatus.EXPIRED
        assert [n.recipient for n in ports.notifier.for_template("signature_overdue")] == ["ops"]
        assert orchestrator.get_workflow(started.instance_id, ADMIN).instance.status is InstanceStatus.COMPLETED

    def test_instance_deadline(self, orchestrator, start_instance, task_for, instance_trail, deterministic_clock):
        started = start_instance(linear_definition(
            "bounded", signature_node("sign", "alice"), settings={"max_execution_seconds": 2 * HOUR}
        ))
        service = ReminderService(orchestrator)

        deterministic_clock.advance(2 * HOUR - 1)
        assert service.tick().total_applied == 0

        deterministic_clock.advance(1)
        report = service.tick()

        view = orchestrator.get_workflow(started.instance_id, ADMIN)
        assert report.applied["expire_instance"] == 1
        assert view.instance.status is InstanceStatus.EXPIRED
        assert task_for(started.instance_id, "sign").status is TaskStatus.CANCELLED
        assert instance_trail(started.instance_id).events[-1].action == "workflow_expired"

    def test_finished_instances_are_left_alone(self, orchestrator, start_instance, deterministic_clock):
        started = start_instance(reminded_signature())
        orchestrator.cancel_workflow(started.instance_id, "withdrawn", ADMIN)
        deterministic_clock.advance(10 * HOUR)

        report = ReminderService(orchestrator).tick()

        assert report.total_applied == 0
        assert report.failed == 0


class TestScheduler:

    def test_manual_tick(self, orchestrator, start_instance, deterministic_clock):
        start_instance(reminded_signature())
        deterministic_clock.advance(50 * 60)
        scheduler = ReminderScheduler(ReminderService(orchestrator), deterministic_clock)

        report = scheduler.tick()

        assert report.applied["remind"] == 1
        assert scheduler.ticks == 1

    def test_thread_start_and_stop(self, orchestrator, deterministic_clock, captured_logs):
        scheduler = ReminderScheduler(
            ReminderService(orchestrator), deterministic_clock, tick_interval_seconds=0.01
        )

        scheduler.start()
        scheduler.start()
        deadline = time.monotonic() + 2
        while scheduler.ticks < 2 and time.monotonic() < deadline:
            time.sleep(0.01)
        scheduler.stop(timeout=2)

        assert scheduler.ticks >= 2
        assert scheduler.is_running is False
        messages = [r["message"] for r in captured_logs()]
        assert messages.count("timer_scheduler_started") == 1
        assert "timer_scheduler_stopped" in messages
