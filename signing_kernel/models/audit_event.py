"""
Module: signing_kernel.models.audit_event
Responsibility: ORM persistence for the tamper-evident audit hash chains.
Architecture position: Kernel > Models.  May import from db/ and domain/ only.

Invariants enforced:
    - Audit records are append-only; no UPDATE or DELETE (ORM listener).
    - Hash chain integrity: hash = H(prev_hash || canonical(event_without_hash)).
      Validated by AuditorService and signing_engines.audit_chain.
    - seq is dense and strictly increasing per chain_key, allocated from the
      locked AuditChainHead row (never max(seq) + 1).

Failure modes:
    - ImmutabilityViolationError on any UPDATE/DELETE attempt.
    - IntegrityError on a duplicate (chain_key, seq).
    - AuditChainBrokenError when chain validation detects a hash mismatch.

Audit relevance:
    AuditEvent IS the audit trail.  Each workflow instance has its own
    chain keyed by the instance id; definition registrations live on the
    "system" chain and ADP decisions on the "authz" chain.
"""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import BigInteger, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from signing_kernel.db.base import Base, UUIDString
from signing_kernel.db.types import JSONDocument, UTCDateTime
from signing_kernel.domain.dtos import AuditEventRecord

SYSTEM_CHAIN = "system"
AUTHZ_CHAIN = "authz"


class AuditAction(str, Enum):
    """Types of auditable actions.

    Contract: Every member represents one class of event that MUST be
    recorded in an audit chain.
    """

    # Definition lifecycle
    DEFINITION_REGISTERED = "definition_registered"

    # Instance lifecycle
    WORKFLOW_CREATED = "workflow_created"
    WORKFLOW_STARTED = "workflow_started"
    WORKFLOW_COMPLETED = "workflow_completed"
    WORKFLOW_FAILED = "workflow_failed"
    WORKFLOW_CANCELLED = "workflow_cancelled"
    WORKFLOW_EXPIRED = "workflow_expired"

    # Task lifecycle
    TASK_MATERIALIZED = "task_materialized"
    TASK_ASSIGNED = "task_assigned"
    TASK_STARTED = "task_started"
    TASK_COMPLETED = "task_completed"
    TASK_ATTEMPT_REJECTED = "task_attempt_rejected"
    TASK_EXPIRED = "task_expired"
    TASK_DELEGATED = "task_delegated"
    TASK_FAILED = "task_failed"
    TASK_CANCELLED = "task_cancelled"

    # Engine side effects
    NOTIFICATION_SENT = "notification_sent"
    NOTIFICATION_FAILED = "notification_failed"
    SERVICE_TASK_RETRIED = "service_task_retried"
    COMPENSATION_INVOKED = "compensation_invoked"
    COMPENSATION_FAILED = "compensation_failed"

    # Timers
    REMINDER_SENT = "reminder_sent"
    ESCALATION_TRIGGERED = "escalation_triggered"

    # Authorization
    POLICY_DENIED = "policy_denied"
    POLICY_ALLOWED = "policy_allowed"


class AuditEvent(Base):
    """
    Audit event with hash chain for tamper evidence.

    Contract:
        AuditEvent rows are append-only, never updated or deleted.
        Each row's hash covers the previous row's hash, creating a
        tamper-evident chain per chain_key.

    Guarantees:
        - (chain_key, seq) is unique; seq starts at 1.
        - prev_hash of seq 1 is the chain's recorded genesis hash.

    Non-goals:
        - This model does NOT enforce hash correctness at INSERT time;
          that is the responsibility of AuditorService.
    """

    __tablename__ = "audit_events"

    __table_args__ = (
        UniqueConstraint("chain_key", "seq", name="uq_audit_chain_seq"),
        Index("idx_audit_instance_seq", "instance_id", "seq"),
        Index("idx_audit_action", "action"),
    )

    chain_key: Mapped[str] = mapped_column(String(64), nullable=False)

    instance_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    seq: Mapped[int] = mapped_column(BigInteger, nullable=False)

    prev_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    timestamp: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    actor: Mapped[str] = mapped_column(String(255), nullable=False)

    action: Mapped[str] = mapped_column(String(50), nullable=False)

    node_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    task_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    details: Mapped[dict[str, Any]] = mapped_column(JSONDocument(), nullable=False, default=dict)

    # hash = H(prev_hash || canonical(event_without_hash))
    hash: Mapped[str] = mapped_column(String(64), nullable=False)

    def __repr__(self) -> str:
        return f"<AuditEvent {self.chain_key}#{self.seq} {self.action}>"

    def to_dto(self) -> AuditEventRecord:
        return AuditEventRecord(
            chain_key=self.chain_key,
            seq=self.seq,
            prev_hash=self.prev_hash,
            timestamp=self.timestamp,
            actor=self.actor,
            action=self.action,
            hash=self.hash,
            instance_id=self.instance_id,
            node_id=self.node_id,
            task_id=self.task_id,
            details=dict(self.details or {}),
        )


class AuditChainHead(Base):
    """
    Head of one audit chain: the locked counter row for seq allocation.

    Contract:
        Writers lock this row (SELECT ... FOR UPDATE) before appending, so
        seq allocation and prev_hash linking are serialized per chain while
        different chains proceed independently.
    """

    __tablename__ = "audit_chains"

    chain_key: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)

    genesis_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    head_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    head_seq: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
