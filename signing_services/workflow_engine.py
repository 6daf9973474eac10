"""
signing_services.workflow_engine -- Workflow graph execution.

Responsibility:
    Moves an instance through its definition graph.  Every node kind has
    one entry routine (``_handlers`` keyed by ``NodeKind``); external
    events (task completion, timer fire, task expiry) enter through the
    ``on_*`` methods and the engine advances until it reaches nodes that
    wait for the outside world.

Architecture position:
    Services layer -- thin coordinator.  Routing decisions use the pure
    engines (``signing_engines.graph`` / ``expressions``); task
    transitions go through ``TaskScheduler``; side effects go through
    the port gateway.  Operates on ORM rows in the caller's transaction
    and never commits.

Execution state:
    Tokens are implicit.  ``current_nodes`` lists the nodes waiting for
    an external event (task nodes) or for other branches (joins);
    ``regions`` holds the open parallel / inclusive regions with their
    expected and arrived branches; ``passed_nodes`` records entry order
    for compensation; ``node_visits`` counts loop re-entries.

Invariants enforced:
    - A join fires exactly once per region: when every expected branch
      has arrived and no node inside the region is still active.
    - An inclusive split expects only the branches whose guards held.
    - Nodes with several outgoing edges take the first edge (declared
      order) whose guard holds; exclusive gateways take exactly one.
    - The instance completes when no node is active and no region is
      open; tasks never reached are cancelled and listed in the
      ``workflow_completed`` event.

Failure modes:
    - A failed service task (after retries) follows the node's
      ``on_error`` edge, else the instance fails after compensating the
      passed nodes in reverse order.
    - An expired task follows the node's ``on_timeout`` edge, else the
      instance fails.
    - A gateway with no holding guard fails the instance.

Audit relevance:
    Emits workflow_started, workflow_completed, workflow_failed,
    workflow_cancelled, workflow_expired, notification_sent,
    notification_failed, service_task_retried, compensation_invoked and
    compensation_failed on the instance chain.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from signing_engines.expressions import evaluate, evaluate_guard
from signing_engines.graph import (
    condition_result_variable,
    decision_variable,
    pair_splits,
    region_nodes,
)
from signing_kernel.domain.clock import Clock, SystemClock
from signing_kernel.domain.ports import Notifier
from signing_kernel.domain.task import ACTIONABLE_TASK_STATUSES, Evidence, TaskStatus
from signing_kernel.domain.workflow import (
    INSTANCE_TRANSITIONS,
    Edge,
    EdgeRoute,
    InstanceStatus,
    Node,
    NodeKind,
    Region,
    WorkflowDefinition,
)
from signing_kernel.exceptions import (
    DeadlineError,
    DependencyFailedError,
    InstanceNotRunningError,
    InvalidTransitionError,
    InvariantBreachError,
    PortCallError,
    ServiceTaskFailedError,
)
from signing_kernel.logging_config import get_logger
from signing_kernel.models.audit_event import AuditAction
from signing_kernel.models.task import TaskModel
from signing_kernel.models.workflow import WorkflowInstanceModel
from signing_kernel.services.auditor_service import AuditorService
from signing_kernel.services.task_scheduler import SYSTEM_ACTOR, TaskScheduler
from signing_kernel.utils.rfc3339 import format_utc
from signing_services.port_gateway import PortGateway
from signing_services.service_tasks import ServiceTaskRunner

logger = get_logger("services.workflow_engine")

# Entries processed per external event before the instance is failed.
MAX_STEPS = 10_000


@dataclass
class _Run:
    """One advance of one instance."""

    instance: WorkflowInstanceModel
    definition: WorkflowDefinition
    actor: str
    queue: deque[tuple[str, str | None]] = field(default_factory=deque)
    steps: int = 0
    _pairs: dict[str, str] | None = None
    _regions: dict[tuple[str, str], frozenset[str]] = field(default_factory=dict)

    @property
    def running(self) -> bool:
        return self.instance.status == InstanceStatus.RUNNING.value

    @property
    def variables(self) -> dict[str, Any]:
        return dict(self.instance.variables or {})

    def pairs(self) -> dict[str, str]:
        if self._pairs is None:
            self._pairs = pair_splits(self.definition)
        return self._pairs

    def region_members(self, region: Region) -> frozenset[str]:
        key = (region.split_id, region.join_id)
        if key not in self._regions:
            self._regions[key] = region_nodes(self.definition, region.split_id, region.join_id)
        return self._regions[key]


class WorkflowEngine:
    """
    Graph interpreter over persisted instance state.

    Contract:
        ``start`` runs a freshly created instance from its start node;
        ``on_task_completed`` / ``on_timer_fired`` / ``on_task_expired``
        resume it after an external event; ``cancel`` / ``expire`` / ``fail``
        end it.  Each call leaves the instance either waiting on task
        nodes or joins, or terminal.

    Non-goals:
        - Does NOT authorize or lock; the orchestrator does.
        - Does NOT commit.
    """

    def __init__(
        self,
        auditor: AuditorService,
        scheduler: TaskScheduler,
        clock: Clock | None = None,
        *,
        gateway: PortGateway | None = None,
        notifier: Notifier | None = None,
        runner: ServiceTaskRunner | None = None,
        default_channel: str = "email",
    ):
        self._auditor = auditor
        self._scheduler = scheduler
        self._clock = clock or SystemClock()
        self._gateway = gateway or PortGateway()
        self._notifier = notifier
        self._runner = runner
        self._default_channel = default_channel
        self._handlers: dict[NodeKind, Callable[[_Run, Node, str | None], None]] = {
            NodeKind.START: self._enter_start,
            NodeKind.END: self._enter_end,
            NodeKind.SIGNATURE: self._enter_task,
            NodeKind.APPROVAL: self._enter_task,
            NodeKind.TIMER: self._enter_task,
            NodeKind.SERVICE_TASK: self._enter_service_task,
            NodeKind.NOTIFICATION: self._enter_notification,
            NodeKind.CONDITION: self._enter_condition,
            NodeKind.SCRIPT: self._enter_script,
            NodeKind.PARALLEL_SPLIT: self._enter_parallel_split,
            NodeKind.PARALLEL_JOIN: self._enter_join,
            NodeKind.EXCLUSIVE_GATEWAY: self._enter_exclusive,
            NodeKind.INCLUSIVE_GATEWAY: self._enter_inclusive,
        }

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def start(self, instance: WorkflowInstanceModel, definition: WorkflowDefinition, actor: str) -> list[str]:
        """Materialize tasks and advance from the start node; returns the active nodes."""
        run = _Run(instance, definition, actor)
        self._scheduler.materialize(instance, definition, actor)
        self._audit(
            instance,
            AuditAction.WORKFLOW_STARTED,
            actor,
            details={
                "workflow_id": definition.workflow_id,
                "version": definition.version,
                "start_node": definition.start_node.id,
            },
        )
        run.queue.append((definition.start_node.id, None))
        self._drive(run)
        return list(instance.current_nodes or ())

    def on_task_completed(
        self,
        instance: WorkflowInstanceModel,
        definition: WorkflowDefinition,
        task: TaskModel,
        actor: str,
        evidence: Evidence | None = None,
    ) -> None:
        """Continue past a human task that was just completed."""
        run = _Run(instance, definition, actor)
        node = definition.node(task.node_id)
        if node.kind is NodeKind.APPROVAL and evidence is not None:
            if evidence.decision is not None:
                self._set_variable(run, decision_variable(node), evidence.decision.lower())
            if node.config.get("output_variable"):
                self._set_variable(run, str(node.config["output_variable"]), dict(evidence.form_data))
        self._remove_current(run, node.id)
        self._route_next(run, node)
        self._drive(run)

    def on_timer_fired(self, instance: WorkflowInstanceModel, definition: WorkflowDefinition, task: TaskModel) -> None:
        run = _Run(instance, definition, SYSTEM_ACTOR)
        self._scheduler.complete_system(task, {"fired_at": format_utc(self._clock.now())})
        node = definition.node(task.node_id)
        self._remove_current(run, node.id)
        self._route_next(run, node)
        self._drive(run)

    def on_task_expired(self, instance: WorkflowInstanceModel, definition: WorkflowDefinition, task: TaskModel) -> None:
        """Expire a task and take its timeout route (or fail the instance)."""
        run = _Run(instance, definition, SYSTEM_ACTOR)
        self._scheduler.expire(task)
        node = definition.node(task.node_id)
        self._remove_current(run, node.id)
        self._route_failure(run, node, EdgeRoute.ON_TIMEOUT, f"task {task.id} at node {node.id} expired")
        self._drive(run)

    def resume(self, instance: WorkflowInstanceModel, definition: WorkflowDefinition, actor: str) -> None:
        """Re-check joins, promotions and completion without a new event."""
        self._drive(_Run(instance, definition, actor))

    def cancel(self, instance: WorkflowInstanceModel, reason: str, actor: str) -> list[TaskModel]:
        if instance.status != InstanceStatus.RUNNING.value:
            raise InstanceNotRunningError(str(instance.id), instance.status)
        return self._finish(instance, InstanceStatus.CANCELLED, AuditAction.WORKFLOW_CANCELLED, actor, reason)

    def expire(self, instance: WorkflowInstanceModel) -> list[TaskModel]:
        """The instance deadline (``max_execution_seconds``) passed."""
        if instance.status != InstanceStatus.RUNNING.value:
            raise InstanceNotRunningError(str(instance.id), instance.status)
        reason = f"deadline {format_utc(instance.deadline)} passed" if instance.deadline else "deadline passed"
        return self._finish(instance, InstanceStatus.EXPIRED, AuditAction.WORKFLOW_EXPIRED, SYSTEM_ACTOR, reason)

    def fail(self, instance: WorkflowInstanceModel, definition: WorkflowDefinition, reason: str, actor: str) -> None:
        self._fail_instance(_Run(instance, definition, actor), reason)

    # ------------------------------------------------------------------
    # Driver
    # ------------------------------------------------------------------

    def _drive(self, run: _Run) -> None:
        while run.running:
            if run.queue:
                run.steps += 1
                if run.steps > MAX_STEPS:
                    self._fail_instance(run, f"step limit of {MAX_STEPS} exceeded")
                    return
                node_id, source_id = run.queue.popleft()
                self._enter(run, node_id, source_id)
                continue
            if not self._fire_ready_join(run):
                break
        if not run.running:
            return
        self._scheduler.promote_ready(run.instance, run.definition)
        if not run.instance.current_nodes and not run.instance.regions:
            self._complete_instance(run)

    def _enter(self, run: _Run, node_id: str, source_id: str | None) -> None:
        instance = run.instance
        node = run.definition.node(node_id)
        visits = dict(instance.node_visits or {})
        visits[node_id] = visits.get(node_id, 0) + 1
        instance.node_visits = visits
        instance.passed_nodes = list(instance.passed_nodes or ()) + [node_id]
        logger.debug(
            "node_entered",
            extra={"node_id": node_id, "kind": node.kind.value, "source_id": source_id, "visit": visits[node_id]},
        )
        self._handlers[node.kind](run, node, source_id)

    # ------------------------------------------------------------------
    # Node routines
    # ------------------------------------------------------------------

    def _enter_start(self, run: _Run, node: Node, source_id: str | None) -> None:
        for edge in run.definition.outgoing(node.id):
            run.queue.append((edge.target_id, node.id))

    def _enter_end(self, run: _Run, node: Node, source_id: str | None) -> None:
        logger.info("branch_ended", extra={"instance_id": str(run.instance.id), "node_id": node.id})

    def _enter_task(self, run: _Run, node: Node, source_id: str | None) -> None:
        self._add_current(run, node.id)
        self._scheduler.activate(run.instance, run.definition, node.id, run.actor)

    def _enter_service_task(self, run: _Run, node: Node, source_id: str | None) -> None:
        self._add_current(run, node.id)
        task = self._scheduler.activate(run.instance, run.definition, node.id, run.actor)

        def audit_retry(retry: int, delay: float, error: Exception) -> None:
            self._audit(
                run.instance,
                AuditAction.SERVICE_TASK_RETRIED,
                SYSTEM_ACTOR,
                node_id=node.id,
                task_id=task.id,
                details={"retry": retry, "delay_seconds": delay, "error": str(error)},
            )

        try:
            if self._runner is None:
                raise ServiceTaskFailedError(str(node.config.get("service")), node.id, 0, "no service runner configured")
            outcome = self._runner.run(node, run.definition, run.variables, on_retry=audit_retry)
        except ServiceTaskFailedError as exc:
            self._scheduler.fail(task, str(exc))
            self._remove_current(run, node.id)
            self._route_failure(run, node, EdgeRoute.ON_ERROR, str(exc))
            return

        if node.config.get("output_variable"):
            self._set_variable(run, str(node.config["output_variable"]), outcome.output)
        self._scheduler.complete_system(task, {"output": outcome.output, "attempts": outcome.attempts})
        self._remove_current(run, node.id)
        self._route_next(run, node)

    def _enter_notification(self, run: _Run, node: Node, source_id: str | None) -> None:
        config = node.config
        channel = str(config.get("channel") or self._default_channel)
        template_id = str(config["template_id"])
        recipients = self._recipients(run, config.get("recipients"))
        variables = {
            **run.variables,
            **dict(config.get("variables") or {}),
            "instance_id": str(run.instance.id),
            "workflow_id": run.instance.workflow_id,
        }
        try:
            deliveries = [self._send(channel, template_id, r, variables) for r in recipients]
        except (DependencyFailedError, DeadlineError) as exc:
            self._audit(
                run.instance,
                AuditAction.NOTIFICATION_FAILED,
                SYSTEM_ACTOR,
                node_id=node.id,
                details={"channel": channel, "template_id": template_id, "error": str(exc)},
            )
            if run.definition.outgoing(node.id, EdgeRoute.ON_ERROR):
                self._route_failure(run, node, EdgeRoute.ON_ERROR, str(exc))
            else:
                self._route_next(run, node)
            return

        self._audit(
            run.instance,
            AuditAction.NOTIFICATION_SENT,
            SYSTEM_ACTOR,
            node_id=node.id,
            details={
                "channel": channel,
                "template_id": template_id,
                "recipients": recipients,
                "delivery_ids": deliveries,
            },
        )
        self._route_next(run, node)

    def _enter_condition(self, run: _Run, node: Node, source_id: str | None) -> None:
        result = evaluate(str(node.config["expression"]), run.variables) is True
        self._set_variable(run, condition_result_variable(node), result)
        self._route_next(run, node)

    def _enter_script(self, run: _Run, node: Node, source_id: str | None) -> None:
        for assignment in node.config.get("assignments") or ():
            value = evaluate(str(assignment["expression"]), run.variables)
            self._set_variable(run, str(assignment["variable"]), value)
        self._route_next(run, node)

    def _enter_parallel_split(self, run: _Run, node: Node, source_id: str | None) -> None:
        edges = run.definition.outgoing(node.id)
        self._open_region(run, node, edges)

    def _enter_inclusive(self, run: _Run, node: Node, source_id: str | None) -> None:
        if node.id not in run.pairs():
            self._route_next(run, node)
            return
        variables = run.variables
        fired = [e for e in run.definition.outgoing(node.id) if evaluate_guard(e.guard, variables)]
        if not fired:
            self._fail_instance(run, f"no guard holds at inclusive gateway {node.id}")
            return
        self._open_region(run, node, fired)

    def _enter_exclusive(self, run: _Run, node: Node, source_id: str | None) -> None:
        self._route_next(run, node)

    def _enter_join(self, run: _Run, node: Node, source_id: str | None) -> None:
        regions = [Region.from_dict(r) for r in run.instance.regions or ()]
        index = next((i for i in reversed(range(len(regions))) if regions[i].join_id == node.id), None)
        if index is None:
            logger.warning("join_without_region", extra={"instance_id": str(run.instance.id), "node_id": node.id})
            self._route_next(run, node)
            return
        region = regions[index]
        regions[index] = Region(
            split_id=region.split_id,
            join_id=region.join_id,
            expected=region.expected,
            arrived=region.arrived + (source_id or "",),
            iteration=region.iteration,
        )
        run.instance.regions = [r.to_dict() for r in regions]
        self._add_current(run, node.id)
        logger.info(
            "join_arrival",
            extra={
                "instance_id": str(run.instance.id),
                "node_id": node.id,
                "arrived": len(regions[index].arrived),
                "expected": len(region.expected),
            },
        )

    # ------------------------------------------------------------------
    # Regions
    # ------------------------------------------------------------------

    def _open_region(self, run: _Run, node: Node, edges: list[Edge]) -> None:
        join_id = run.pairs().get(node.id)
        if join_id is None:
            raise InvariantBreachError("split_pairing", f"split {node.id} has no paired join")
        region = Region(
            split_id=node.id,
            join_id=join_id,
            expected=tuple(e.target_id for e in edges),
            iteration=(run.instance.node_visits or {}).get(node.id, 1) - 1,
        )
        run.instance.regions = list(run.instance.regions or ()) + [region.to_dict()]
        logger.info(
            "region_opened",
            extra={"instance_id": str(run.instance.id), "split_id": node.id, "join_id": join_id,
                   "branches": list(region.expected)},
        )
        for edge in edges:
            run.queue.append((edge.target_id, node.id))

    def _region_live(self, run: _Run, region: Region) -> bool:
        members = run.region_members(region)
        if members & set(run.instance.current_nodes or ()):
            return True
        actionable = {s.value for s in ACTIONABLE_TASK_STATUSES}
        return any(t.node_id in members and t.status in actionable for t in run.instance.tasks)

    def _fire_ready_join(self, run: _Run) -> bool:
        regions = [Region.from_dict(r) for r in run.instance.regions or ()]
        for index in reversed(range(len(regions))):
            region = regions[index]
            if not region.complete or self._region_live(run, region):
                continue
            del regions[index]
            run.instance.regions = [r.to_dict() for r in regions]
            self._remove_current(run, region.join_id)
            logger.info(
                "join_fired",
                extra={
                    "instance_id": str(run.instance.id),
                    "split_id": region.split_id,
                    "join_id": region.join_id,
                    "iteration": region.iteration,
                },
            )
            self._route_next(run, run.definition.node(region.join_id))
            return True
        return False

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    def _first_holding(self, run: _Run, edges: list[Edge]) -> Edge | None:
        variables = run.variables
        for edge in edges:
            if evaluate_guard(edge.guard, variables):
                return edge
        return None

    def _route_next(self, run: _Run, node: Node) -> None:
        edge = self._first_holding(run, run.definition.outgoing(node.id))
        if edge is None:
            self._fail_instance(run, f"no outgoing guard holds at node {node.id}")
            return
        run.queue.append((edge.target_id, node.id))

    def _route_failure(self, run: _Run, node: Node, route: EdgeRoute, reason: str) -> None:
        edge = self._first_holding(run, run.definition.outgoing(node.id, route))
        if edge is None:
            self._fail_instance(run, reason)
            return
        logger.info(
            "failure_route_taken",
            extra={"instance_id": str(run.instance.id), "node_id": node.id, "route": route.value,
                   "target_id": edge.target_id},
        )
        run.queue.append((edge.target_id, node.id))

    # ------------------------------------------------------------------
    # Side effects
    # ------------------------------------------------------------------

    def _send(self, channel: str, template_id: str, recipient: str, variables: dict[str, Any]) -> str:
        if self._notifier is None:
            raise PortCallError("notifier", "send", "no notifier configured")
        return self._gateway.call(
            "notifier", "send", self._notifier.send, channel, template_id, recipient, variables
        )

    def _recipients(self, run: _Run, configured: list[str] | None) -> list[str]:
        participants = list(run.instance.participants or ())
        if not configured:
            return [str(p["id"]) for p in participants]
        recipients: list[str] = []
        for entry in configured:
            entry = str(entry)
            if entry.startswith("role:"):
                role = entry[len("role:"):]
                recipients.extend(str(p["id"]) for p in participants if p.get("role") == role)
            else:
                recipients.append(entry)
        return recipients

    def _compensate(self, run: _Run) -> None:
        seen: set[str] = set()
        for node_id in reversed(list(run.instance.passed_nodes or ())):
            if node_id in seen:
                continue
            seen.add(node_id)
            node = run.definition.node(node_id)
            spec = node.config.get("compensation")
            if not spec:
                continue
            if node.is_task_node:
                task = self._scheduler.current_task(run.instance, node_id)
                if task is None or task.status != TaskStatus.COMPLETED.value:
                    continue
            service = str(spec.get("service"))
            try:
                if self._runner is None:
                    raise ServiceTaskFailedError(service, node_id, 0, "no service runner configured")
                outcome = self._runner.compensate(node, run.variables)
            except ServiceTaskFailedError as exc:
                logger.warning(
                    "compensation_failed",
                    extra={"instance_id": str(run.instance.id), "node_id": node_id, "error": str(exc)},
                )
                self._audit(
                    run.instance,
                    AuditAction.COMPENSATION_FAILED,
                    SYSTEM_ACTOR,
                    node_id=node_id,
                    details={"service": service, "error": str(exc)},
                )
                continue
            self._audit(
                run.instance,
                AuditAction.COMPENSATION_INVOKED,
                SYSTEM_ACTOR,
                node_id=node_id,
                details={"service": service, "attempts": outcome.attempts},
            )

    # ------------------------------------------------------------------
    # Instance lifecycle
    # ------------------------------------------------------------------

    def _set_status(self, instance: WorkflowInstanceModel, status: InstanceStatus) -> None:
        current = InstanceStatus(instance.status)
        if status not in INSTANCE_TRANSITIONS[current]:
            raise InvalidTransitionError("workflow_instance", current.value, status.value)
        instance.status = status.value
        instance.finished_at = self._clock.now()
        instance.current_nodes = []
        instance.regions = []

    def _complete_instance(self, run: _Run) -> None:
        unreached = [
            t for t in self._scheduler.tasks_of(run.instance)
            if t.status == TaskStatus.WAITING.value
        ]
        for task in unreached:
            self._scheduler.cancel(task, "not reached", audit=False)
        self._set_status(run.instance, InstanceStatus.COMPLETED)
        self._audit(
            run.instance,
            AuditAction.WORKFLOW_COMPLETED,
            run.actor,
            details={"unreached_tasks": [str(t.id) for t in unreached]},
        )
        logger.info(
            "workflow_completed",
            extra={"instance_id": str(run.instance.id), "unreached_tasks": len(unreached)},
        )

    def _fail_instance(self, run: _Run, reason: str) -> None:
        if not run.running:
            return
        run.queue.clear()
        self._compensate(run)
        self._finish(run.instance, InstanceStatus.FAILED, AuditAction.WORKFLOW_FAILED, run.actor, reason)

    def _finish(
        self,
        instance: WorkflowInstanceModel,
        status: InstanceStatus,
        action: AuditAction,
        actor: str,
        reason: str,
    ) -> list[TaskModel]:
        cancelled = self._scheduler.cancel_live(instance, reason)
        self._set_status(instance, status)
        if status is InstanceStatus.FAILED:
            instance.failure_reason = reason
        self._audit(
            instance,
            action,
            actor,
            details={"reason": reason, "cancelled_tasks": [str(t.id) for t in cancelled]},
        )
        log = logger.error if status is InstanceStatus.FAILED else logger.info
        log(
            f"workflow_{status.value}",
            extra={"instance_id": str(instance.id), "reason": reason, "cancelled_tasks": len(cancelled)},
        )
        return cancelled

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _audit(
        self,
        instance: WorkflowInstanceModel,
        action: AuditAction,
        actor: str,
        node_id: str | None = None,
        task_id: Any = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self._auditor.record(
            str(instance.id),
            action,
            actor,
            instance_id=instance.id,
            node_id=node_id,
            task_id=task_id,
            details=details,
        )

    def _set_variable(self, run: _Run, name: str, value: Any) -> None:
        run.instance.variables = {**(run.instance.variables or {}), name: value}

    def _add_current(self, run: _Run, node_id: str) -> None:
        current = list(run.instance.current_nodes or ())
        if node_id not in current:
            run.instance.current_nodes = current + [node_id]

    def _remove_current(self, run: _Run, node_id: str) -> None:
        current = list(run.instance.current_nodes or ())
        if node_id in current:
            current.remove(node_id)
            run.instance.current_nodes = current
