"""
Module: signing_kernel.models.workflow
Responsibility: ORM persistence for workflow definitions and instances.

Architecture position: Kernel > Models.  May import from db/ and domain/ only.

Invariants enforced:
    - (workflow_id, version) is unique; a registered definition is
      immutable (ORM listener in db/immutability.py).
    - Instance status values are limited by a check constraint; the service
      layer enforces INSTANCE_TRANSITIONS.
    - Optimistic concurrency: row_version is the mapper's version_id_col,
      so two sessions that both loaded version N cannot both commit.
    - An instance exclusively owns its tasks; deleting the instance deletes
      its tasks (ORM cascade plus ON DELETE CASCADE).

Failure modes:
    - IntegrityError on duplicate (workflow_id, version).
    - StaleDataError on a concurrent instance update (mapped to CONFLICT).

Audit relevance:
    definition_hash pins the exact definition an instance ran; every state
    change of an instance is mirrored in its audit chain.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from signing_kernel.db.base import Base
from signing_kernel.db.types import JSONDocument, UTCDateTime

if TYPE_CHECKING:
    from signing_kernel.domain.dtos import InstanceRecord
    from signing_kernel.domain.workflow import WorkflowDefinition
    from signing_kernel.models.task import TaskModel


class WorkflowDefinitionModel(Base):
    """Registered, versioned workflow definition.  Immutable."""

    __tablename__ = "workflow_definitions"

    __table_args__ = (
        UniqueConstraint("workflow_id", "version", name="uq_workflow_definition_version"),
        Index("idx_workflow_definition_org", "organization_id"),
    )

    workflow_id: Mapped[str] = mapped_column(String(255), nullable=False)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    name: Mapped[str] = mapped_column(String(255), nullable=False)

    organization_id: Mapped[str] = mapped_column(String(255), nullable=False)

    created_by: Mapped[str] = mapped_column(String(255), nullable=False)

    definition: Mapped[dict[str, Any]] = mapped_column(JSONDocument(), nullable=False)

    definition_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    def __repr__(self) -> str:
        return f"<WorkflowDefinition {self.workflow_id} v{self.version}>"

    def to_domain(self) -> WorkflowDefinition:
        from signing_kernel.domain.workflow import WorkflowDefinition

        return WorkflowDefinition.from_dict(self.definition)


class WorkflowInstanceModel(Base):
    """A running (or finished) execution of a workflow definition.

    JSON columns are replaced, never mutated in place, so the unit of work
    sees every change.
    """

    __tablename__ = "workflow_instances"

    __table_args__ = (
        CheckConstraint(
            "status IN ('running', 'completed', 'failed', 'cancelled', 'expired')",
            name="ck_workflow_instances_valid_status",
        ),
        Index("idx_instance_org_status", "organization_id", "status"),
        Index("idx_instance_status_deadline", "status", "deadline"),
    )

    workflow_id: Mapped[str] = mapped_column(String(255), nullable=False)

    workflow_version: Mapped[int] = mapped_column(Integer, nullable=False)

    definition_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    organization_id: Mapped[str] = mapped_column(String(255), nullable=False)

    status: Mapped[str] = mapped_column(String(20), nullable=False)

    initiated_by: Mapped[str] = mapped_column(String(255), nullable=False)

    current_nodes: Mapped[list[str]] = mapped_column(JSONDocument(), nullable=False, default=list)

    variables: Mapped[dict[str, Any]] = mapped_column(JSONDocument(), nullable=False, default=dict)

    # Open parallel/inclusive regions (Region.to_dict()), innermost last.
    regions: Mapped[list[dict[str, Any]]] = mapped_column(JSONDocument(), nullable=False, default=list)

    # Node ids in the order they were passed, for reverse-order compensation.
    passed_nodes: Mapped[list[str]] = mapped_column(JSONDocument(), nullable=False, default=list)

    # Per-node entry counts, used for loop iterations.
    node_visits: Mapped[dict[str, int]] = mapped_column(JSONDocument(), nullable=False, default=dict)

    participants: Mapped[list[dict[str, Any]]] = mapped_column(JSONDocument(), nullable=False, default=list)

    documents: Mapped[list[dict[str, Any]]] = mapped_column(JSONDocument(), nullable=False, default=list)

    deadline: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    started_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    finished_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    predicted_duration_seconds: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    failure_reason: Mapped[str | None] = mapped_column(String(4000), nullable=True)

    row_version: Mapped[int] = mapped_column(Integer, nullable=False)

    tasks: Mapped[list[TaskModel]] = relationship(
        "TaskModel",
        back_populates="instance",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="TaskModel.order",
    )

    __mapper_args__ = {"version_id_col": row_version}

    def __repr__(self) -> str:
        return f"<WorkflowInstance {self.id} {self.workflow_id} v{self.workflow_version} {self.status}>"

    def to_dto(self) -> InstanceRecord:
        """Convert ORM model to frozen domain DTO."""
        from signing_kernel.domain.dtos import InstanceRecord
        from signing_kernel.domain.task import Participant
        from signing_kernel.domain.workflow import InstanceStatus, Region

        return InstanceRecord(
            instance_id=self.id,
            workflow_id=self.workflow_id,
            workflow_version=self.workflow_version,
            organization_id=self.organization_id,
            status=InstanceStatus(self.status),
            initiated_by=self.initiated_by,
            current_nodes=tuple(self.current_nodes or ()),
            variables=dict(self.variables or {}),
            regions=tuple(Region.from_dict(r) for r in self.regions or ()),
            participants=tuple(Participant.from_dict(p) for p in self.participants or ()),
            documents=tuple(dict(d) for d in self.documents or ()),
            deadline=self.deadline,
            started_at=self.started_at,
            finished_at=self.finished_at,
            predicted_duration_seconds=self.predicted_duration_seconds,
            failure_reason=self.failure_reason,
            row_version=self.row_version,
        )
