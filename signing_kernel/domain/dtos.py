"""
DTOs -- Pure domain data transfer objects.

Responsibility:
    Immutable records returned by the orchestrator's operations: task and
    instance snapshots, audit events, and the result shapes of start,
    complete, delegate and read operations.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.
    Free of ORM dependencies.  Models convert themselves with ``to_dto()``;
    callers never receive ORM entities.

Invariants enforced:
    - Services accept and return DTOs, never ORM entities, so a caller
      cannot mutate persisted state behind a transaction's back.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

from signing_kernel.domain.task import (
    Participant,
    TaskKind,
    TaskRequirements,
    TaskStatus,
)
from signing_kernel.domain.workflow import InstanceStatus, Region
from signing_kernel.utils.rfc3339 import format_utc


def _ts(value: datetime | None) -> str | None:
    return format_utc(value) if value is not None else None


@dataclass(frozen=True)
class TaskRecord:
    """Snapshot of a task."""

    task_id: UUID
    instance_id: UUID
    node_id: str
    order: int
    kind: TaskKind
    status: TaskStatus
    iteration: int = 0
    assignee: Participant | None = None
    dependencies: tuple[str, ...] = ()
    requirements: TaskRequirements = field(default_factory=TaskRequirements)
    due_at: datetime | None = None
    assigned_at: datetime | None = None
    completed_at: datetime | None = None
    evidence: dict[str, Any] | None = None
    evidence_digest: str | None = None
    attempts: int = 0
    reminders_sent: tuple[datetime, ...] = ()
    delegated_to: str | None = None
    delegated_from: UUID | None = None
    expired_at: datetime | None = None
    escalated_at: datetime | None = None
    cancel_reason: str | None = None
    result: dict[str, Any] | None = None

    @property
    def assignee_id(self) -> str | None:
        return self.assignee.id if self.assignee else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": str(self.task_id),
            "instance_id": str(self.instance_id),
            "node_id": self.node_id,
            "order": self.order,
            "iteration": self.iteration,
            "kind": self.kind.value,
            "status": self.status.value,
            "assignee": self.assignee.to_dict() if self.assignee else None,
            "dependencies": list(self.dependencies),
            "requirements": self.requirements.to_dict(),
            "due_at": _ts(self.due_at),
            "assigned_at": _ts(self.assigned_at),
            "completed_at": _ts(self.completed_at),
            "evidence_digest": self.evidence_digest,
            "attempts": self.attempts,
            "reminders_sent": [_ts(r) for r in self.reminders_sent],
            "delegated_to": self.delegated_to,
            "delegated_from": str(self.delegated_from) if self.delegated_from else None,
            "expired_at": _ts(self.expired_at),
            "escalated_at": _ts(self.escalated_at),
            "cancel_reason": self.cancel_reason,
        }


@dataclass(frozen=True)
class InstanceRecord:
    """Snapshot of a workflow instance."""

    instance_id: UUID
    workflow_id: str
    workflow_version: int
    organization_id: str
    status: InstanceStatus
    initiated_by: str
    current_nodes: tuple[str, ...] = ()
    variables: dict[str, Any] = field(default_factory=dict)
    regions: tuple[Region, ...] = ()
    participants: tuple[Participant, ...] = ()
    documents: tuple[dict[str, Any], ...] = ()
    deadline: datetime | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    predicted_duration_seconds: int | None = None
    failure_reason: str | None = None
    row_version: int = 1

    @property
    def is_running(self) -> bool:
        return self.status is InstanceStatus.RUNNING

    def to_dict(self) -> dict[str, Any]:
        return {
            "instance_id": str(self.instance_id),
            "workflow_id": self.workflow_id,
            "workflow_version": self.workflow_version,
            "organization_id": self.organization_id,
            "status": self.status.value,
            "initiated_by": self.initiated_by,
            "current_nodes": list(self.current_nodes),
            "variables": dict(self.variables),
            "regions": [r.to_dict() for r in self.regions],
            "participants": [p.to_dict() for p in self.participants],
            "documents": [dict(d) for d in self.documents],
            "deadline": _ts(self.deadline),
            "started_at": _ts(self.started_at),
            "finished_at": _ts(self.finished_at),
            "predicted_duration_seconds": self.predicted_duration_seconds,
            "failure_reason": self.failure_reason,
        }


@dataclass(frozen=True)
class AuditEventRecord:
    """One link of an audit chain."""

    chain_key: str
    seq: int
    prev_hash: str
    timestamp: datetime
    actor: str
    action: str
    hash: str
    instance_id: UUID | None = None
    node_id: str | None = None
    task_id: UUID | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def body(self) -> dict[str, Any]:
        """Every field except ``hash``, in canonical form."""
        return {
            "chain_key": self.chain_key,
            "instance_id": str(self.instance_id) if self.instance_id else None,
            "seq": self.seq,
            "prev_hash": self.prev_hash,
            "timestamp": format_utc(self.timestamp),
            "actor": self.actor,
            "action": self.action,
            "node_id": self.node_id,
            "task_id": str(self.task_id) if self.task_id else None,
            "details": self.details,
        }

    def to_dict(self) -> dict[str, Any]:
        data = self.body()
        data["hash"] = self.hash
        return data


@dataclass(frozen=True)
class DefinitionRef:
    workflow_id: str
    version: int


@dataclass(frozen=True)
class StartResult:
    instance_id: UUID
    starting_nodes: tuple[str, ...]


@dataclass(frozen=True)
class CompletionResult:
    task: TaskRecord
    newly_pending: tuple[TaskRecord, ...] = ()


@dataclass(frozen=True)
class DelegationResult:
    old_task: TaskRecord
    new_task: TaskRecord


@dataclass(frozen=True)
class InstanceView:
    instance: InstanceRecord
    tasks: tuple[TaskRecord, ...] = ()

    def task_for(self, node_id: str) -> TaskRecord | None:
        """Latest task of a node (highest iteration, delegation clones last)."""
        matching = [t for t in self.tasks if t.node_id == node_id]
        return matching[-1] if matching else None


@dataclass(frozen=True)
class AuditTrail:
    instance_id: UUID
    events: tuple[AuditEventRecord, ...]
    verified: bool


@dataclass(frozen=True)
class TaskFilters:
    """Filters for list_user_tasks."""

    statuses: tuple[TaskStatus, ...] = ()
    instance_id: UUID | None = None
    kind: TaskKind | None = None
    due_before: datetime | None = None
