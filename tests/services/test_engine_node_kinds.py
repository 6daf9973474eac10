"""
Tests for the workflow engine, one node kind at a time.

Every test goes through the orchestrator so the engine runs inside real
instance transactions.

Covers:
- Notification nodes (recipient resolution, failed delivery)
- Service tasks (output variable, retries, on_error route, compensation)
- Timer nodes fired by the reminder service
- Condition and script nodes, exclusive and inclusive gateways
- Loop-back re-entry and the step limit
- max_parallel_tasks and cancellation
"""

from datetime import timedelta

import pytest

from signing_kernel.domain.task import TaskKind, TaskStatus
from signing_kernel.domain.workflow import InstanceStatus
from signing_kernel.exceptions import InstanceNotRunningError
from signing_services.workflow_engine import MAX_STEPS
from signing_timers.services.reminder_service import ReminderService

from conftest import ADMIN, ORGANIZATION, T0, linear_definition, signature_node

START = {"id": "start", "kind": "start"}
END = {"id": "end", "kind": "end"}


def flow(workflow_id: str, nodes: list[dict], edges: list, **extra) -> dict:
    """Definition mapping from nodes (start and end added) and edges.

    Edges are (source, target[, guard]) tuples or full edge mappings.
    """
    edge_dicts = []
    for edge in edges:
        if isinstance(edge, dict):
            edge_dicts.append(edge)
            continue
        data = {"source_id": edge[0], "target_id": edge[1]}
        if len(edge) > 2:
            data["guard"] = edge[2]
        edge_dicts.append(data)
    return {
        "workflow_id": workflow_id,
        "organization_id": ORGANIZATION,
        "created_by": ADMIN,
        "nodes": [START, *nodes, END],
        "edges": edge_dicts,
        **extra,
    }


def events(trail, action: str) -> list:
    return [e for e in trail.events if e.action == action]


def view_of(orchestrator, started):
    return orchestrator.get_workflow(started.instance_id, ADMIN)


class TestNotificationNodes:

    @staticmethod
    def notify_then_sign(**config) -> dict:
        notify = {"id": "notify", "kind": "notification", "config": {"template_id": "agreement_ready", **config}}
        return linear_definition("notify_then_sign", notify, signature_node("sign", "alice"))

    def test_listed_and_role_recipients(self, start_instance, ports, instance_trail):
        started = start_instance(
            self.notify_then_sign(recipients=["alice", "role:legal"], variables={"subject": "NDA"}),
            participants=[{"id": "carol", "role": "legal"}, {"id": "dave", "role": "sales"}],
        )

        sent = ports.notifier.for_template("agreement_ready")
        assert [n.recipient for n in sent] == ["alice", "carol"]
        assert {n.channel for n in sent} == {"email"}
        assert sent[0].variables["subject"] == "NDA"
        assert sent[0].variables["instance_id"] == str(started.instance_id)
        (event,) = events(instance_trail(started.instance_id), "notification_sent")
        assert event.node_id == "notify"
        assert event.details["delivery_ids"] == [n.delivery_id for n in sent]
        assert started.starting_nodes == ("sign",)

    def test_all_participants_by_default(self, start_instance, ports):
        start_instance(
            self.notify_then_sign(),
            participants=[{"id": "carol", "role": "legal"}, {"id": "dave", "role": "sales"}],
        )

        assert [n.recipient for n in ports.notifier.for_template("agreement_ready")] == ["carol", "dave"]

    def test_failed_delivery_is_audited_and_the_flow_continues(self, start_instance, ports, instance_trail):
        ports.notifier.failing_channels.add("sms")

        started = start_instance(self.notify_then_sign(channel="sms", recipients=["alice"]))

        (failed,) = events(instance_trail(started.instance_id), "notification_failed")
        assert failed.details["channel"] == "sms"
        assert "unavailable" in failed.details["error"]
        assert ports.notifier.sent == []
        assert started.starting_nodes == ("sign",)


class TestServiceTasks:

    ARCHIVE = {
        "id": "archive",
        "kind": "service_task",
        "config": {
            "service": "archive",
            "input": {"amount": "amount * 2", "copies": 2},
            "output_variable": "archive_result",
            "retry_attempts": 2,
        },
    }
    AMOUNT = [{"name": "amount", "type": "number", "default": 0}]

    def test_output_is_stored(self, orchestrator, ports, start_instance):
        received = []

        def archive(payload):
            received.append(payload)
            return {"archive_id": "arc-1"}

        ports.services.register("archive", archive)

        started = start_instance(
            linear_definition("archive_flow", self.ARCHIVE, variables=self.AMOUNT), variables={"amount": 50}
        )

        view = view_of(orchestrator, started)
        task = view.task_for("archive")
        assert received == [{"amount": 100, "copies": 2}]
        assert view.instance.status is InstanceStatus.COMPLETED
        assert view.instance.variables["archive_result"] == {"archive_id": "arc-1"}
        assert task.kind is TaskKind.SERVICE_CALL
        assert task.status is TaskStatus.COMPLETED
        assert task.result == {"output": {"archive_id": "arc-1"}, "attempts": 1}

    def test_transient_failures_are_retried(self, orchestrator, ports, start_instance, instance_trail):
        calls = []

        def flaky(payload):
            calls.append(payload)
            if len(calls) < 3:
                raise ConnectionError("archive unavailable")
            return {"archive_id": "arc-2"}

        ports.services.register("archive", flaky)

        started = start_instance(linear_definition("archive_flow", self.ARCHIVE, variables=self.AMOUNT))

        retried = events(instance_trail(started.instance_id), "service_task_retried")
        assert len(calls) == 3
        assert [e.details["retry"] for e in retried] == [1, 2]
        assert view_of(orchestrator, started).instance.status is InstanceStatus.COMPLETED

    def test_exhausted_retries_take_the_error_route(self, orchestrator, ports, start_instance):
        calls = []

        def down(payload):
            calls.append(payload)
            raise ConnectionError("archive unavailable")

        ports.services.register("archive", down)
        alert = {"id": "alert_ops", "kind": "notification",
                 "config": {"template_id": "archive_failed", "recipients": ["ops"]}}
        definition = flow(
            "archive_with_fallback",
            [self.ARCHIVE, alert],
            [
                ("start", "archive"),
                ("archive", "end"),
                {"source_id": "archive", "target_id": "alert_ops", "route": "on_error"},
                ("alert_ops", "end"),
            ],
            variables=self.AMOUNT,
        )

        started = start_instance(definition)

        view = view_of(orchestrator, started)
        assert len(calls) == 3
        assert view.task_for("archive").status is TaskStatus.FAILED
        assert [n.recipient for n in ports.notifier.for_template("archive_failed")] == ["ops"]
        assert view.instance.status is InstanceStatus.COMPLETED

    def test_unregistered_service_fails_the_instance(self, orchestrator, start_instance):
        started = start_instance(linear_definition("archive_flow", self.ARCHIVE, variables=self.AMOUNT))

        instance = view_of(orchestrator, started).instance
        assert instance.status is InstanceStatus.FAILED
        assert "archive" in instance.failure_reason
        assert started.starting_nodes == ()

    def test_failure_compensates_completed_steps(self, orchestrator, ports, start_instance, instance_trail):
        released = []

        def charge(payload):
            raise ConnectionError("card declined")

        ports.services.register("reserve", lambda payload: {"reservation": "r-1"})
        ports.services.register("release", released.append)
        ports.services.register("charge", charge)
        definition = linear_definition(
            "reserve_and_charge",
            {"id": "reserve", "kind": "service_task",
             "config": {"service": "reserve", "retry_attempts": 0,
                        "compensation": {"service": "release", "input": {"reason": "'rollback'", "amount": "amount"}}}},
            {"id": "charge", "kind": "service_task", "config": {"service": "charge", "retry_attempts": 0}},
            variables=self.AMOUNT,
        )

        started = start_instance(definition, variables={"amount": 75})

        actions = [e.action for e in instance_trail(started.instance_id).events]
        assert released == [{"reason": "rollback", "amount": 75}]
        assert actions.index("task_failed") < actions.index("compensation_invoked") < actions.index("workflow_failed")
        assert view_of(orchestrator, started).instance.status is InstanceStatus.FAILED

    def test_failed_compensation_is_recorded(self, orchestrator, ports, start_instance, instance_trail):
        ports.services.register("reserve", lambda payload: {})
        definition = linear_definition(
            "reserve_and_charge",
            {"id": "reserve", "kind": "service_task",
             "config": {"service": "reserve", "retry_attempts": 0, "compensation": {"service": "release"}}},
            {"id": "charge", "kind": "service_task", "config": {"service": "charge", "retry_attempts": 0}},
        )

        started = start_instance(definition)

        (failed,) = events(instance_trail(started.instance_id), "compensation_failed")
        assert failed.node_id == "reserve"
        assert failed.details["service"] == "release"
        assert view_of(orchestrator, started).instance.status is InstanceStatus.FAILED


class TestTimerNodes:

    def test_relative_timer_fires_when_due(self, orchestrator, start_instance, task_for, deterministic_clock):
        definition = linear_definition(
            "cooling_off",
            {"id": "wait", "kind": "timer", "config": {"delay_seconds": 3600}},
            signature_node("sign", "alice"),
        )
        started = start_instance(definition)
        timers = ReminderService(orchestrator)

        wait = task_for(started.instance_id, "wait")
        assert started.starting_nodes == ("wait",)
        assert wait.kind is TaskKind.TIMER
        assert wait.due_at == T0 + timedelta(hours=1)

        deterministic_clock.advance(1800)
        assert timers.tick().total_applied == 0

        deterministic_clock.advance(1800)
        report = timers.tick()

        assert report.applied["fire_timer"] == 1
        assert task_for(started.instance_id, "wait").status is TaskStatus.COMPLETED
        assert task_for(started.instance_id, "sign").status is TaskStatus.PENDING

    def test_absolute_timer(self, start_instance, task_for):
        definition = linear_definition(
            "fixed_date",
            {"id": "wait", "kind": "timer", "config": {"absolute": "2024-01-02T09:00:00Z"}},
        )

        started = start_instance(definition)

        assert task_for(started.instance_id, "wait").due_at == T0 + timedelta(days=1)


class TestRoutingNodes:

    @staticmethod
    def threshold_flow() -> dict:
        return flow(
            "threshold",
            [
                {"id": "check", "kind": "condition", "config": {"expression": "amount > 1000"}},
                {"id": "route", "kind": "exclusive_gateway"},
                {"id": "director", "kind": "approval", "config": {"assignee": {"id": "dana"}}},
            ],
            [
                ("start", "check"),
                ("check", "route"),
                ("route", "director", "check_result"),
                ("route", "end", "not check_result"),
                ("director", "end"),
            ],
            variables=[{"name": "amount", "type": "number", "required": True}],
        )

    def test_condition_result_routes_to_approval(self, orchestrator, start_instance):
        started = start_instance(self.threshold_flow(), variables={"amount": 5000})

        assert started.starting_nodes == ("director",)
        assert view_of(orchestrator, started).instance.variables["check_result"] is True

    def test_condition_result_skips_approval(self, orchestrator, start_instance):
        started = start_instance(self.threshold_flow(), variables={"amount": 10})

        view = view_of(orchestrator, started)
        assert view.instance.status is InstanceStatus.COMPLETED
        assert view.instance.variables["check_result"] is False
        assert view.task_for("director").status is TaskStatus.CANCELLED

    def test_script_assignments(self, orchestrator, start_instance):
        definition = linear_definition(
            "compute",
            {"id": "compute", "kind": "script", "config": {"assignments": [
                {"variable": "total", "expression": "amount * 2"},
                {"variable": "label", "expression": "upper(region)"},
                {"variable": "large", "expression": "total > 150"},
            ]}},
            variables=[{"name": "amount", "type": "number"}, {"name": "region", "type": "string"}],
        )

        started = start_instance(definition, variables={"amount": 100, "region": "eu"})

        variables = view_of(orchestrator, started).instance.variables
        assert variables["total"] == 200
        assert variables["label"] == "EU"
        assert variables["large"] is True


class TestInclusiveGateway:

    @staticmethod
    def review_flow() -> dict:
        return flow(
            "reviews",
            [
                {"id": "fan", "kind": "inclusive_gateway"},
                signature_node("legal", "alice"),
                signature_node("finance", "bob"),
                {"id": "merge", "kind": "parallel_join"},
            ],
            [
                ("start", "fan"),
                ("fan", "legal", "needs_legal"),
                ("fan", "finance", "amount > 1000"),
                ("legal", "merge"),
                ("finance", "merge"),
                ("merge", "end"),
            ],
            variables=[
                {"name": "needs_legal", "type": "boolean", "default": False},
                {"name": "amount", "type": "number", "default": 0},
            ],
        )

    def test_every_holding_branch_runs(self, start_instance, task_for):
        started = start_instance(self.review_flow(), variables={"needs_legal": True, "amount": 5000})

        assert set(started.starting_nodes) == {"legal", "finance"}

    def test_join_waits_only_for_fired_branches(
        self, orchestrator, start_instance, task_for, make_signature, captured_logs,
    ):
        started = start_instance(self.review_flow(), variables={"needs_legal": True, "amount": 10})
        assert started.starting_nodes == ("legal",)

        orchestrator.complete_task(
            task_for(started.instance_id, "legal").task_id, make_signature("alice"), actor="alice"
        )

        view = view_of(orchestrator, started)
        assert view.instance.status is InstanceStatus.COMPLETED
        assert view.task_for("finance").status is TaskStatus.CANCELLED
        assert len([r for r in captured_logs() if r["message"] == "join_fired"]) == 1

    def test_no_holding_branch_fails_the_instance(self, orchestrator, start_instance):
        started = start_instance(self.review_flow(), variables={"needs_legal": False, "amount": 10})

        instance = view_of(orchestrator, started).instance
        assert instance.status is InstanceStatus.FAILED
        assert instance.failure_reason == "no guard holds at inclusive gateway fan"


class TestLoops:

    @staticmethod
    def review_loop() -> dict:
        return flow(
            "review_loop",
            [
                {"id": "review", "kind": "approval", "config": {"assignee": {"id": "bob"}}},
                {"id": "decide", "kind": "exclusive_gateway"},
            ],
            [
                ("start", "review"),
                ("review", "decide"),
                ("decide", "end", "review_decision == 'approve'"),
                {"source_id": "decide", "target_id": "review", "guard": "review_decision == 'reject'",
                 "loop_back": True},
            ],
        )

    def test_rejection_reopens_the_review(self, orchestrator, start_instance, task_for, make_approval):
        started = start_instance(self.review_loop())
        first = task_for(started.instance_id, "review")

        result = orchestrator.complete_task(first.task_id, make_approval("reject"), actor="bob")

        (reopened,) = result.newly_pending
        assert reopened.node_id == "review"
        assert reopened.iteration == 1
        assert reopened.task_id != first.task_id

        orchestrator.complete_task(reopened.task_id, make_approval("approve"), actor="bob")

        view = view_of(orchestrator, started)
        assert view.instance.status is InstanceStatus.COMPLETED
        assert view.instance.variables["review_decision"] == "approve"

    def test_step_limit_fails_a_runaway_loop(self, orchestrator, start_instance):
        definition = flow(
            "runaway",
            [
                {"id": "bump", "kind": "script",
                 "config": {"assignments": [{"variable": "counter", "expression": "counter + 1"}]}},
                {"id": "again", "kind": "exclusive_gateway"},
            ],
            [
                ("start", "bump"),
                ("bump", "again"),
                ("again", "end", "counter < 0"),
                {"source_id": "again", "target_id": "bump", "guard": "counter >= 0", "loop_back": True},
            ],
            variables=[{"name": "counter", "type": "integer", "default": 0}],
        )

        started = start_instance(definition)

        instance = view_of(orchestrator, started).instance
        assert instance.status is InstanceStatus.FAILED
        assert instance.failure_reason == f"step limit of {MAX_STEPS} exceeded"


class TestCapacityAndCancellation:

    def test_max_parallel_tasks_caps_pending_signers(self, orchestrator, start_instance, make_signature):
        definition = flow(
            "three_signers",
            [
                {"id": "split", "kind": "parallel_split"},
                signature_node("a", "alice"),
                signature_node("b", "bob"),
                signature_node("c", "carol"),
                {"id": "join", "kind": "parallel_join"},
            ],
            [("start", "split"), ("split", "a"), ("split", "b"), ("split", "c"),
             ("a", "join"), ("b", "join"), ("c", "join"), ("join", "end")],
            settings={"max_parallel_tasks": 2},
        )
        started = start_instance(definition)
        tasks = view_of(orchestrator, started).tasks
        pending = [t for t in tasks if t.status is TaskStatus.PENDING]
        waiting = [t for t in tasks if t.status is TaskStatus.WAITING]
        assert len(pending) == 2
        assert len(waiting) == 1

        first = pending[0]
        result = orchestrator.complete_task(first.task_id, make_signature(first.assignee_id), actor=first.assignee_id)

        assert [t.node_id for t in result.newly_pending] == [waiting[0].node_id]

    def test_cancel_ends_every_live_task(self, orchestrator, start_instance, instance_trail):
        started = start_instance("sequential_two_signer")

        record = orchestrator.cancel_workflow(started.instance_id, "customer withdrew", ADMIN)

        view = view_of(orchestrator, started)
        last = instance_trail(started.instance_id).events[-1]
        assert record.status is InstanceStatus.CANCELLED
        assert {t.status for t in view.tasks} == {TaskStatus.CANCELLED}
        assert last.action == "workflow_cancelled"
        assert last.details["reason"] == "customer withdrew"
        assert len(last.details["cancelled_tasks"]) == 2

    def test_cancel_twice(self, orchestrator, start_instance):
        started = start_instance("sequential_two_signer")
        orchestrator.cancel_workflow(started.instance_id, "first", ADMIN)

        with pytest.raises(InstanceNotRunningError):
            orchestrator.cancel_workflow(started.instance_id, "second", ADMIN)
