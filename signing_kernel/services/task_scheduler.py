"""
TaskScheduler -- the task state machine.

Responsibility:
    Materializes task records for the task-bearing nodes of an instance,
    decides when a task becomes pending (its node was entered and its
    dependencies are completed), and performs every task transition:
    begin, complete (with requirement checks and write-once evidence),
    delegate, expire, fail and cancel.

Architecture position:
    Kernel > Services -- imperative shell.  Called by the workflow engine
    and the orchestrator with ORM rows loaded in the caller's session.
    Requirement checks are delegated to ``signing_engines.requirements``.

Invariants enforced:
    - Only transitions in ``TASK_TRANSITIONS`` are applied
      (InvalidTransitionError otherwise).
    - A task is pending only if every dependency node has a completed task.
    - ``max_parallel_tasks`` caps pending + in_progress human tasks.
    - Completion is idempotent on the evidence digest; a completed task
      with a different digest raises EvidenceMismatchError.
    - Raw signature bytes go to the object store; the task keeps only the
      reference and the digests.

Failure modes:
    - TaskNotFoundError, InvalidTaskStateError, InstanceNotRunningError.
    - RequirementUnmetError subclasses: ``attempts`` is incremented and a
      ``task_attempt_rejected`` event is flushed before the error is
      raised, so the caller can commit the rejection.
    - DelegationNotAllowedError when requirements forbid delegation.

Audit relevance:
    Emits task_materialized, task_started, task_completed,
    task_attempt_rejected, task_delegated, task_assigned, task_expired,
    task_failed and task_cancelled on the instance chain.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from signing_engines.graph import (
    compute_dependencies,
    node_due_seconds,
    task_kind_for,
    topological_order,
)
from signing_engines.requirements import evaluate_requirements, to_error
from signing_kernel.domain.clock import Clock, SystemClock
from signing_kernel.domain.task import (
    ACTIONABLE_TASK_STATUSES,
    TERMINAL_TASK_STATUSES,
    Evidence,
    Participant,
    TaskKind,
    TaskRequirements,
    TaskStatus,
    TimestampToken,
    can_transition,
)
from signing_kernel.domain.workflow import (
    HUMAN_NODE_KINDS,
    InstanceStatus,
    Node,
    NodeKind,
    WorkflowDefinition,
)
from signing_kernel.exceptions import (
    DelegationNotAllowedError,
    EvidenceMismatchError,
    InstanceNotRunningError,
    InvalidInputError,
    InvalidTaskStateError,
    InvalidTransitionError,
    TaskNotFoundError,
)
from signing_kernel.logging_config import get_logger
from signing_kernel.models.audit_event import AuditAction
from signing_kernel.models.task import TaskModel
from signing_kernel.models.workflow import WorkflowInstanceModel
from signing_kernel.services.auditor_service import AuditorService
from signing_kernel.utils.rfc3339 import format_utc, parse_utc

logger = get_logger("services.task_scheduler")

SYSTEM_ACTOR = "system"

SignatureStore = Callable[[str, bytes], str]
TimestampVerifier = Callable[[TimestampToken, str], bool]


@dataclass
class CompletionOutcome:
    """Result of ``complete``; ``replayed`` marks an idempotent retry."""

    task: TaskModel
    replayed: bool = False
    newly_pending: list[TaskModel] = field(default_factory=list)


class TaskScheduler:
    """
    Task state machine over ORM rows.

    Contract:
        Every transition validates against ``TASK_TRANSITIONS``, flushes,
        and appends the matching audit event.  Tasks moved to pending
        during the scheduler's lifetime are collected in ``promoted``.

    Non-goals:
        - Does NOT route the graph; the workflow engine decides which
          nodes are entered.
        - Does NOT commit.
    """

    def __init__(
        self,
        session: Session,
        auditor: AuditorService,
        clock: Clock | None = None,
        *,
        store_signature: SignatureStore | None = None,
        verify_timestamp: TimestampVerifier | None = None,
        trusted_issuers: Iterable[str] = (),
        on_assigned: Callable[[TaskModel], None] | None = None,
    ):
        self._session = session
        self._auditor = auditor
        self._clock = clock or SystemClock()
        self._store_signature = store_signature
        self._verify_timestamp = verify_timestamp
        self._trusted_issuers = tuple(trusted_issuers)
        self._on_assigned = on_assigned
        self.promoted: list[TaskModel] = []

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def load(self, task_id: UUID | str, for_update: bool = False) -> TaskModel:
        stmt = select(TaskModel).where(TaskModel.id == task_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        task = self._session.execute(stmt).scalar_one_or_none()
        if task is None:
            raise TaskNotFoundError(str(task_id))
        return task

    def tasks_of(self, instance: WorkflowInstanceModel) -> list[TaskModel]:
        return sorted(
            instance.tasks,
            key=lambda t: (
                t.order,
                t.iteration,
                t.status != TaskStatus.DELEGATED.value,
                t.created_at,
            ),
        )

    def tasks_for_node(self, instance: WorkflowInstanceModel, node_id: str) -> list[TaskModel]:
        return [t for t in self.tasks_of(instance) if t.node_id == node_id]

    def current_task(self, instance: WorkflowInstanceModel, node_id: str) -> TaskModel | None:
        """Latest non-superseded task of a node (delegation clones win)."""
        candidates = [
            t for t in self.tasks_for_node(instance, node_id)
            if t.status != TaskStatus.DELEGATED.value
        ]
        return candidates[-1] if candidates else None

    def completed_nodes(self, instance: WorkflowInstanceModel) -> set[str]:
        return {t.node_id for t in instance.tasks if t.status == TaskStatus.COMPLETED.value}

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _transition(self, task: TaskModel, to_status: TaskStatus) -> None:
        from_status = TaskStatus(task.status)
        if not can_transition(from_status, to_status):
            raise InvalidTransitionError("task", from_status.value, to_status.value)
        task.status = to_status.value

    def _record(
        self,
        action: AuditAction,
        task: TaskModel,
        actor: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        self._auditor.record(
            str(task.instance_id),
            action,
            actor,
            instance_id=task.instance_id,
            node_id=task.node_id,
            task_id=task.id,
            details=details,
        )

    # ------------------------------------------------------------------
    # Materialization and activation
    # ------------------------------------------------------------------

    def resolve_assignee(self, node: Node, instance: WorkflowInstanceModel) -> Participant | None:
        if node.kind not in HUMAN_NODE_KINDS:
            return None
        participants = [Participant.from_dict(p) for p in instance.participants or ()]
        assignee = node.config.get("assignee")
        if assignee:
            # Either a participant id or an inline participant mapping.
            declared = Participant.from_dict(assignee) if isinstance(assignee, dict) else Participant(id=str(assignee))
            for participant in participants:
                if participant.id == declared.id:
                    return participant
            return declared
        role = node.config.get("assignee_role")
        for participant in participants:
            if participant.role == role:
                return participant
        raise InvalidInputError("participants", f"no participant with role {role!r} for node {node.id}")

    def _new_task(
        self,
        instance: WorkflowInstanceModel,
        definition: WorkflowDefinition,
        node: Node,
        order: int,
        dependencies: Iterable[str],
        iteration: int = 0,
        assignee: Participant | None = None,
    ) -> TaskModel:
        requirements = TaskRequirements.merged(
            definition.settings.default_requirements,
            node.config.get("requirements"),
        )
        task = TaskModel(
            instance_id=instance.id,
            node_id=node.id,
            order=order,
            iteration=iteration,
            kind=task_kind_for(node).value,
            status=TaskStatus.WAITING.value,
            assignee_id=assignee.id if assignee else None,
            assignee=assignee.to_dict() if assignee else None,
            dependencies=sorted(dependencies),
            requirements=requirements.to_dict(),
            attempts=0,
            reminders_sent=[],
            newly_pending_ids=[],
            created_at=self._clock.now(),
        )
        instance.tasks.append(task)
        return task

    def materialize(
        self,
        instance: WorkflowInstanceModel,
        definition: WorkflowDefinition,
        actor: str,
    ) -> list[TaskModel]:
        """One waiting task per task-bearing node, in topological order."""
        dependencies = compute_dependencies(definition)
        nodes = definition.node_map()
        created: list[TaskModel] = []
        for order, node_id in enumerate(topological_order(definition)):
            node = nodes[node_id]
            if not node.is_task_node:
                continue
            task = self._new_task(
                instance,
                definition,
                node,
                order,
                dependencies.get(node_id, ()),
                assignee=self.resolve_assignee(node, instance),
            )
            created.append(task)
        self._session.flush()
        for task in created:
            self._record(
                AuditAction.TASK_MATERIALIZED,
                task,
                actor,
                {
                    "kind": task.kind,
                    "assignee": task.assignee_id,
                    "dependencies": list(task.dependencies),
                    "order": task.order,
                },
            )
            self._assigned(task)
        logger.info(
            "tasks_materialized",
            extra={"instance_id": str(instance.id), "count": len(created)},
        )
        return created

    def activate(
        self,
        instance: WorkflowInstanceModel,
        definition: WorkflowDefinition,
        node_id: str,
        actor: str,
    ) -> TaskModel:
        """
        Entry of a task node.  Loop re-entry of a node whose task is
        terminal creates the next iteration.
        """
        node = definition.node(node_id)
        task = self.current_task(instance, node_id)
        if task is None or TaskStatus(task.status) in TERMINAL_TASK_STATUSES:
            iteration = 0 if task is None else task.iteration + 1
            order = task.order if task is not None else len(definition.nodes)
            dependencies = task.dependencies if task is not None else ()
            task = self._new_task(
                instance,
                definition,
                node,
                order,
                dependencies,
                iteration=iteration,
                assignee=self.resolve_assignee(node, instance),
            )
            self._session.flush()
            self._record(
                AuditAction.TASK_MATERIALIZED,
                task,
                actor,
                {"kind": task.kind, "assignee": task.assignee_id, "iteration": iteration},
            )
            self._assigned(task)
        self.promote_ready(instance, definition)
        return task

    def _dependencies_met(self, task: TaskModel, completed: set[str]) -> bool:
        return all(dep in completed for dep in task.dependencies or ())

    def _live_human_count(self, instance: WorkflowInstanceModel) -> int:
        actionable = {s.value for s in ACTIONABLE_TASK_STATUSES}
        system_kinds = {TaskKind.TIMER.value, TaskKind.SERVICE_CALL.value}
        return sum(
            1 for t in instance.tasks
            if t.status in actionable and t.kind not in system_kinds
        )

    def promote_ready(
        self,
        instance: WorkflowInstanceModel,
        definition: WorkflowDefinition,
    ) -> list[TaskModel]:
        """Waiting tasks of entered nodes whose dependencies are completed -> pending."""
        if instance.status != InstanceStatus.RUNNING.value:
            return []
        entered = set(instance.current_nodes or ())
        completed = self.completed_nodes(instance)
        cap = definition.settings.max_parallel_tasks
        live = self._live_human_count(instance)
        nodes = definition.node_map()
        promoted: list[TaskModel] = []
        for task in self.tasks_of(instance):
            if task.status != TaskStatus.WAITING.value or task.node_id not in entered:
                continue
            if self.current_task(instance, task.node_id) is not task:
                continue
            if not self._dependencies_met(task, completed):
                continue
            node = nodes[task.node_id]
            is_human = node.kind in HUMAN_NODE_KINDS
            if is_human and cap is not None and live >= cap:
                logger.debug(
                    "task_promotion_capped",
                    extra={"task_id": str(task.id), "max_parallel_tasks": cap},
                )
                continue
            self._make_pending(task, node, definition)
            if is_human:
                live += 1
            promoted.append(task)
        if promoted:
            self._session.flush()
            self.promoted.extend(promoted)
        return promoted

    def _assigned(self, task: TaskModel) -> None:
        if self._on_assigned is not None and task.assignee_id:
            self._on_assigned(task)

    def _make_pending(self, task: TaskModel, node: Node, definition: WorkflowDefinition) -> None:
        now = self._clock.now()
        self._transition(task, TaskStatus.PENDING)
        task.assigned_at = now
        if task.due_at is None:
            if node.kind is NodeKind.TIMER and node.config.get("absolute"):
                absolute = node.config["absolute"]
                task.due_at = parse_utc(absolute) if isinstance(absolute, str) else absolute
            else:
                seconds = node_due_seconds(node, definition)
                if seconds is not None:
                    task.due_at = now + timedelta(seconds=seconds)
        logger.info(
            "task_pending",
            extra={
                "task_id": str(task.id),
                "node_id": task.node_id,
                "assignee": task.assignee_id,
                "due_at": format_utc(task.due_at) if task.due_at else None,
            },
        )

    # ------------------------------------------------------------------
    # Human actions
    # ------------------------------------------------------------------

    def _require_running(self, task: TaskModel) -> None:
        instance = task.instance
        if instance.status != InstanceStatus.RUNNING.value:
            raise InstanceNotRunningError(str(instance.id), instance.status)

    def begin(self, task: TaskModel, actor: str) -> TaskModel:
        """pending -> in_progress (the signer opened the task)."""
        self._require_running(task)
        if task.status != TaskStatus.PENDING.value:
            raise InvalidTaskStateError(str(task.id), task.status, "begin")
        self._transition(task, TaskStatus.IN_PROGRESS)
        self._session.flush()
        self._record(AuditAction.TASK_STARTED, task, actor)
        return task

    def complete(self, task: TaskModel, evidence: Evidence, actor: str) -> CompletionOutcome:
        """
        Complete a human task with evidence.

        Preconditions:
            - Task is pending or in_progress; instance is running.
        Postconditions:
            - Task is completed with write-once evidence and digest, or
              (on an identical retry) the stored outcome is returned.

        Raises:
            EvidenceMismatchError: completed earlier with other evidence.
            RequirementUnmetError: evidence fails a requirement.
        """
        digest = evidence.digest()
        if task.status == TaskStatus.COMPLETED.value:
            if task.evidence_digest == digest:
                logger.info(
                    "task_completion_replayed",
                    extra={"task_id": str(task.id), "evidence_digest": digest},
                )
                replay = [self.load(UUID(i)) for i in task.newly_pending_ids or ()]
                return CompletionOutcome(task=task, replayed=True, newly_pending=replay)
            raise EvidenceMismatchError(str(task.id), task.evidence_digest or "", digest)

        self._require_running(task)
        if TaskStatus(task.status) not in ACTIONABLE_TASK_STATUSES:
            raise InvalidTaskStateError(str(task.id), task.status, "complete")

        unmet = evaluate_requirements(
            TaskKind(task.kind),
            TaskRequirements.from_dict(task.requirements),
            evidence,
            trusted_issuers=self._trusted_issuers,
            verify_timestamp=self._verify_timestamp,
        )
        if unmet:
            task.attempts = (task.attempts or 0) + 1
            self._session.flush()
            self._record(
                AuditAction.TASK_ATTEMPT_REJECTED,
                task,
                actor,
                {
                    "attempt": task.attempts,
                    "unmet": [u.requirement for u in unmet],
                    "reason": unmet[0].reason,
                    "evidence_digest": digest,
                },
            )
            logger.warning(
                "task_requirement_unmet",
                extra={
                    "task_id": str(task.id),
                    "requirement": unmet[0].requirement,
                    "attempts": task.attempts,
                },
            )
            raise to_error(str(task.id), unmet[0])

        signature_ref = None
        if evidence.signature:
            if self._store_signature is None:
                raise InvalidInputError("evidence.signature", "no object store configured for signatures")
            signature_ref = self._store_signature(
                f"signatures/{task.instance_id}/{task.id}/{digest}", evidence.signature
            )

        now = self._clock.now()
        self._transition(task, TaskStatus.COMPLETED)
        task.completed_at = now
        task.evidence = evidence.to_record(signature_ref=signature_ref)
        task.evidence_digest = digest
        self._session.flush()
        self._record(
            AuditAction.TASK_COMPLETED,
            task,
            actor,
            {
                "evidence_digest": digest,
                "signature_ref": task.evidence.get("signature_ref"),
                "decision": evidence.decision,
                "attempts": task.attempts,
            },
        )
        logger.info(
            "task_completed",
            extra={"task_id": str(task.id), "node_id": task.node_id, "actor": actor},
        )
        return CompletionOutcome(task=task)

    def delegate(self, task: TaskModel, new_assignee: Participant, actor: str) -> tuple[TaskModel, TaskModel]:
        """
        Supersede a task by a pending clone for ``new_assignee``.

        Raises:
            DelegationNotAllowedError: requirements forbid delegation.
            InvalidTaskStateError: task is not pending or in_progress.
        """
        self._require_running(task)
        if TaskStatus(task.status) not in ACTIONABLE_TASK_STATUSES:
            raise InvalidTaskStateError(str(task.id), task.status, "delegate")
        requirements = TaskRequirements.from_dict(task.requirements)
        if not requirements.allow_delegation:
            raise DelegationNotAllowedError(str(task.id), task.instance.workflow_id)
        if new_assignee.id == task.assignee_id:
            raise InvalidInputError("new_assignee", "task is already assigned to this participant")

        now = self._clock.now()
        self._transition(task, TaskStatus.DELEGATED)
        task.delegated_to = new_assignee.id

        clone = TaskModel(
            instance_id=task.instance_id,
            node_id=task.node_id,
            order=task.order,
            iteration=task.iteration,
            kind=task.kind,
            status=TaskStatus.PENDING.value,
            assignee_id=new_assignee.id,
            assignee=new_assignee.to_dict(),
            dependencies=list(task.dependencies or ()),
            requirements=dict(task.requirements or {}),
            due_at=task.due_at,
            assigned_at=now,
            attempts=0,
            reminders_sent=[],
            newly_pending_ids=[],
            delegated_from=task.id,
            created_at=now,
        )
        task.instance.tasks.append(clone)
        self._session.flush()

        self._record(
            AuditAction.TASK_DELEGATED,
            task,
            actor,
            {"from": task.assignee_id, "to": new_assignee.id, "new_task_id": str(clone.id)},
        )
        self._record(
            AuditAction.TASK_ASSIGNED,
            clone,
            actor,
            {"assignee": new_assignee.id, "delegated_from": str(task.id)},
        )
        self._assigned(clone)
        logger.info(
            "task_delegated",
            extra={"task_id": str(task.id), "new_task_id": str(clone.id), "to": new_assignee.id},
        )
        return task, clone

    # ------------------------------------------------------------------
    # System transitions
    # ------------------------------------------------------------------

    def complete_system(self, task: TaskModel, result: dict[str, Any] | None = None) -> TaskModel:
        """Timer fired or service call succeeded."""
        if task.status == TaskStatus.WAITING.value:
            self._transition(task, TaskStatus.PENDING)
            task.assigned_at = self._clock.now()
        self._transition(task, TaskStatus.COMPLETED)
        task.completed_at = self._clock.now()
        task.result = dict(result or {})
        self._session.flush()
        self._record(AuditAction.TASK_COMPLETED, task, SYSTEM_ACTOR, {"result": task.result})
        return task

    def fail(self, task: TaskModel, reason: str) -> TaskModel:
        if task.status == TaskStatus.WAITING.value:
            self._transition(task, TaskStatus.PENDING)
        self._transition(task, TaskStatus.FAILED)
        task.result = {"error": reason}
        self._session.flush()
        self._record(AuditAction.TASK_FAILED, task, SYSTEM_ACTOR, {"reason": reason})
        logger.warning("task_failed", extra={"task_id": str(task.id), "reason": reason})
        return task

    def expire(self, task: TaskModel) -> TaskModel:
        """pending / in_progress -> expired (the due date passed)."""
        if TaskStatus(task.status) not in ACTIONABLE_TASK_STATUSES:
            raise InvalidTaskStateError(str(task.id), task.status, "expire")
        now = self._clock.now()
        self._transition(task, TaskStatus.EXPIRED)
        task.expired_at = now
        self._session.flush()
        self._record(
            AuditAction.TASK_EXPIRED,
            task,
            SYSTEM_ACTOR,
            {"due_at": format_utc(task.due_at) if task.due_at else None},
        )
        logger.warning("task_expired", extra={"task_id": str(task.id), "node_id": task.node_id})
        return task

    def cancel(self, task: TaskModel, reason: str, actor: str = SYSTEM_ACTOR, audit: bool = True) -> TaskModel:
        self._transition(task, TaskStatus.CANCELLED)
        task.cancel_reason = reason
        self._session.flush()
        if audit:
            self._record(AuditAction.TASK_CANCELLED, task, actor, {"reason": reason})
        return task

    def cancel_live(self, instance: WorkflowInstanceModel, reason: str) -> list[TaskModel]:
        """Cancel every non-terminal task of an instance (no per-task events)."""
        cancelled: list[TaskModel] = []
        for task in self.tasks_of(instance):
            if TaskStatus(task.status) in (TaskStatus.WAITING, TaskStatus.PENDING, TaskStatus.IN_PROGRESS):
                self.cancel(task, reason, audit=False)
                cancelled.append(task)
        return cancelled

    # ------------------------------------------------------------------
    # Timer bookkeeping
    # ------------------------------------------------------------------

    def record_reminder(self, task: TaskModel, at: datetime) -> None:
        task.reminders_sent = list(task.reminders_sent or ()) + [format_utc(at)]
        self._session.flush()

    def mark_escalated(self, task: TaskModel, at: datetime) -> None:
        task.escalated_at = at
        self._session.flush()
