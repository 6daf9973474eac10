"""
Module: signing_kernel.models.task
Responsibility: ORM persistence for tasks.

Architecture position: Kernel > Models.  May import from db/ and domain/ only.

Invariants enforced:
    - Status values are limited by a check constraint; TaskScheduler
      enforces TASK_TRANSITIONS.
    - A completed task never changes status again and its evidence is
      write-once (ORM listener in db/immutability.py).
    - Raw signature bytes are never stored here; ``evidence`` holds the
      object-store reference and digests only.

Failure modes:
    - ImmutabilityViolationError on changing a completed task or its evidence.

Audit relevance:
    evidence_digest is the value recorded in the task_completed audit
    event; a verifier can recompute it from the stored evidence record.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import CheckConstraint, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from signing_kernel.db.base import Base, UUIDString
from signing_kernel.db.types import JSONDocument, UTCDateTime

if TYPE_CHECKING:
    from signing_kernel.domain.dtos import TaskRecord
    from signing_kernel.models.workflow import WorkflowInstanceModel


class TaskModel(Base):
    """Persistent task.  ``id`` is the task_id."""

    __tablename__ = "tasks"

    __table_args__ = (
        CheckConstraint(
            "status IN ('waiting', 'pending', 'in_progress', 'completed', "
            "'failed', 'expired', 'delegated', 'cancelled')",
            name="ck_tasks_valid_status",
        ),
        Index("idx_task_instance", "instance_id"),
        Index("idx_task_assignee_status_due", "assignee_id", "status", "due_at"),
        Index("idx_task_status_due", "status", "due_at"),
    )

    instance_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("workflow_instances.id", ondelete="CASCADE"),
        nullable=False,
    )

    node_id: Mapped[str] = mapped_column(String(255), nullable=False)

    order: Mapped[int] = mapped_column("task_order", Integer, nullable=False)

    iteration: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    kind: Mapped[str] = mapped_column(String(20), nullable=False)

    status: Mapped[str] = mapped_column(String(20), nullable=False)

    assignee_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    assignee: Mapped[dict[str, Any] | None] = mapped_column(JSONDocument(), nullable=True)

    dependencies: Mapped[list[str]] = mapped_column(JSONDocument(), nullable=False, default=list)

    requirements: Mapped[dict[str, Any]] = mapped_column(JSONDocument(), nullable=False, default=dict)

    due_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    assigned_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    evidence: Mapped[dict[str, Any] | None] = mapped_column(JSONDocument(), nullable=True)

    evidence_digest: Mapped[str | None] = mapped_column(String(64), nullable=True)

    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    reminders_sent: Mapped[list[str]] = mapped_column(JSONDocument(), nullable=False, default=list)

    delegated_to: Mapped[str | None] = mapped_column(String(255), nullable=True)

    delegated_from: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    expired_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    escalated_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    cancel_reason: Mapped[str | None] = mapped_column(String(4000), nullable=True)

    result: Mapped[dict[str, Any] | None] = mapped_column(JSONDocument(), nullable=True)

    # Task ids promoted by this task's completion, replayed on idempotent retries.
    newly_pending_ids: Mapped[list[str]] = mapped_column(JSONDocument(), nullable=False, default=list)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    instance: Mapped[WorkflowInstanceModel] = relationship(
        "WorkflowInstanceModel",
        back_populates="tasks",
    )

    def __repr__(self) -> str:
        return f"<Task {self.id} {self.node_id} {self.status}>"

    def to_dto(self) -> TaskRecord:
        """Convert ORM model to frozen domain DTO."""
        from signing_kernel.domain.dtos import TaskRecord
        from signing_kernel.domain.task import (
            Participant,
            TaskKind,
            TaskRequirements,
            TaskStatus,
        )
        from signing_kernel.utils.rfc3339 import parse_utc

        return TaskRecord(
            task_id=self.id,
            instance_id=self.instance_id,
            node_id=self.node_id,
            order=self.order,
            iteration=self.iteration,
            kind=TaskKind(self.kind),
            status=TaskStatus(self.status),
            assignee=Participant.from_dict(self.assignee) if self.assignee else None,
            dependencies=tuple(self.dependencies or ()),
            requirements=TaskRequirements.from_dict(self.requirements),
            due_at=self.due_at,
            assigned_at=self.assigned_at,
            completed_at=self.completed_at,
            evidence=dict(self.evidence) if self.evidence else None,
            evidence_digest=self.evidence_digest,
            attempts=self.attempts,
            reminders_sent=tuple(parse_utc(r) for r in self.reminders_sent or ()),
            delegated_to=self.delegated_to,
            delegated_from=self.delegated_from,
            expired_at=self.expired_at,
            escalated_at=self.escalated_at,
            cancel_reason=self.cancel_reason,
            result=dict(self.result) if self.result else None,
        )
