"""
AuditorService -- tamper-evident audit chains.

Responsibility:
    Creates immutable, hash-chained audit events for every state change of
    a workflow instance, every definition registration and every audited
    authorization decision.  Provides chain validation for tamper detection,
    prefix reads for subscribers and export for external verification.

Architecture position:
    Kernel > Services -- imperative shell, called by TaskScheduler,
    AuthorizationService, the workflow engine, the orchestrator and the
    reminder service.

Invariants enforced:
    - Sequence monotonicity via the locked AuditChainHead row (never
      max(seq) + 1).  seq is dense per chain and starts at 1.
    - Chain integrity: ``hash = H(prev_hash || canonical(event_without_hash))``;
      the first event links to the chain's recorded genesis hash.
    - Out-of-order appends are rejected (AuditSequenceError).
    - Append-only: audit events are never modified or deleted (ORM listener).

Failure modes:
    - AuditChainBrokenError: recomputed hash does not match the stored
      hash, or prev_hash does not match the predecessor's hash.
    - AuditSequenceError: an appended event's seq or prev_hash does not
      continue the chain head.

Audit relevance:
    This IS the audit service.  All audit events flow through ``append()``,
    which enforces linkage before persisting.
"""

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from signing_engines.audit_chain import find_chain_break
from signing_kernel.domain.clock import Clock, SystemClock
from signing_kernel.domain.dtos import AuditEventRecord
from signing_kernel.exceptions import AuditChainBrokenError, AuditSequenceError
from signing_kernel.logging_config import get_logger
from signing_kernel.models.audit_event import AuditAction, AuditChainHead, AuditEvent
from signing_kernel.utils.hashing import genesis_hash, hash_audit_event, json_safe

logger = get_logger("services.auditor")


@dataclass(frozen=True)
class AuditTrace:
    """
    Audit chain (or a prefix of it) in seq order.
    """

    chain_key: str
    genesis_hash: str
    events: tuple[AuditEventRecord, ...]

    @property
    def is_empty(self) -> bool:
        return len(self.events) == 0

    @property
    def actions(self) -> list[str]:
        return [e.action for e in self.events]

    def count(self, action: AuditAction | str) -> int:
        value = action.value if isinstance(action, AuditAction) else action
        return sum(1 for e in self.events if e.action == value)


class AuditorService:
    """
    Service for creating and validating tamper-evident audit events.

    Contract:
        ``record()`` builds the next event of a chain and ``append()``
        persists it after checking it continues the chain head.

    Guarantees:
        - Every event's ``hash`` is a deterministic function of its
          predecessor's hash and its own canonical body.
        - Appended records are also collected in ``appended`` so the
          orchestrator can publish them to subscribers after commit.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        on_append: Callable[[AuditEventRecord], None] | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._on_append = on_append
        self.appended: list[AuditEventRecord] = []

    # ------------------------------------------------------------------
    # Chain heads
    # ------------------------------------------------------------------

    def _lock_head(self, chain_key: str) -> AuditChainHead:
        """
        Lock (or create) the head row of a chain.

        SELECT ... FOR UPDATE serializes concurrent appends to one chain.
        A concurrent first append races on the unique chain_key; the loser
        rolls back its savepoint and re-reads.
        """
        head = self._session.execute(
            select(AuditChainHead)
            .where(AuditChainHead.chain_key == chain_key)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if head is not None:
            return head

        savepoint = self._session.begin_nested()
        try:
            genesis = genesis_hash(chain_key)
            head = AuditChainHead(
                chain_key=chain_key,
                genesis_hash=genesis,
                head_hash=genesis,
                head_seq=0,
                created_at=self._clock.now(),
            )
            self._session.add(head)
            self._session.flush()
            savepoint.commit()
            logger.debug("audit_chain_opened", extra={"chain_key": chain_key})
            return head
        except IntegrityError:
            logger.debug("audit_chain_open_race_retry", extra={"chain_key": chain_key})
            savepoint.rollback()
            return self._session.execute(
                select(AuditChainHead)
                .where(AuditChainHead.chain_key == chain_key)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalar_one()

    def genesis_for(self, chain_key: str) -> str:
        """Recorded genesis hash of a chain (computed if the chain is empty)."""
        head = self._session.execute(
            select(AuditChainHead).where(AuditChainHead.chain_key == chain_key)
        ).scalar_one_or_none()
        return head.genesis_hash if head else genesis_hash(chain_key)

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def record(
        self,
        chain_key: str,
        action: AuditAction,
        actor: str,
        *,
        instance_id: UUID | None = None,
        node_id: str | None = None,
        task_id: UUID | None = None,
        details: dict[str, Any] | None = None,
    ) -> AuditEventRecord:
        """
        Build and append the next event of ``chain_key``.

        Postconditions:
            - A new AuditEvent row is flushed with seq = head_seq + 1 and
              prev_hash = head hash.
        """
        head = self._lock_head(chain_key)
        body = AuditEventRecord(
            chain_key=chain_key,
            seq=head.head_seq + 1,
            prev_hash=head.head_hash,
            timestamp=self._clock.now(),
            actor=actor,
            action=action.value,
            hash="",
            instance_id=instance_id,
            node_id=node_id,
            task_id=task_id,
            details=json_safe(details or {}),
        )
        event_hash = hash_audit_event(body.prev_hash, body.body())
        record = AuditEventRecord(
            chain_key=body.chain_key,
            seq=body.seq,
            prev_hash=body.prev_hash,
            timestamp=body.timestamp,
            actor=body.actor,
            action=body.action,
            hash=event_hash,
            instance_id=body.instance_id,
            node_id=body.node_id,
            task_id=body.task_id,
            details=body.details,
        )
        return self._persist(head, record)

    def append(self, record: AuditEventRecord) -> AuditEventRecord:
        """
        Append an externally built event (replication, import).

        Raises:
            AuditSequenceError: seq is not head_seq + 1 or prev_hash is not
                the head hash.
            AuditChainBrokenError: the event's hash does not match its body.
        """
        head = self._lock_head(record.chain_key)
        if record.seq != head.head_seq + 1:
            logger.error(
                "audit_sequence_rejected",
                extra={
                    "chain_key": record.chain_key,
                    "expected_seq": head.head_seq + 1,
                    "actual_seq": record.seq,
                },
            )
            raise AuditSequenceError(record.chain_key, head.head_seq + 1, record.seq)
        if record.prev_hash != head.head_hash:
            raise AuditChainBrokenError(
                record.chain_key, record.seq, head.head_hash, record.prev_hash
            )
        expected = hash_audit_event(record.prev_hash, record.body())
        if record.hash != expected:
            raise AuditChainBrokenError(record.chain_key, record.seq, expected, record.hash)
        return self._persist(head, record)

    def _persist(self, head: AuditChainHead, record: AuditEventRecord) -> AuditEventRecord:
        self._session.add(
            AuditEvent(
                chain_key=record.chain_key,
                instance_id=record.instance_id,
                seq=record.seq,
                prev_hash=record.prev_hash,
                timestamp=record.timestamp,
                actor=record.actor,
                action=record.action,
                node_id=record.node_id,
                task_id=record.task_id,
                details=record.details,
                hash=record.hash,
            )
        )
        head.head_seq = record.seq
        head.head_hash = record.hash
        self._session.flush()

        self.appended.append(record)
        if self._on_append is not None:
            self._on_append(record)

        logger.info(
            "audit_event_created",
            extra={
                "chain_key": record.chain_key,
                "action": record.action,
                "seq": record.seq,
            },
        )
        return record

    # ------------------------------------------------------------------
    # Reading and verification
    # ------------------------------------------------------------------

    def get_trace(self, chain_key: str | UUID, since_seq: int = 0) -> AuditTrace:
        """
        Events of a chain with seq > since_seq, in seq order.

        Readers take no locks; a concurrent writer may make this a prefix.
        """
        chain_key = str(chain_key)
        events = self._session.execute(
            select(AuditEvent)
            .where(AuditEvent.chain_key == chain_key, AuditEvent.seq > since_seq)
            .order_by(AuditEvent.seq)
        ).scalars().all()
        return AuditTrace(
            chain_key=chain_key,
            genesis_hash=self.genesis_for(chain_key),
            events=tuple(e.to_dto() for e in events),
        )

    def events_since(self, chain_key: str | UUID, seq: int) -> list[AuditEventRecord]:
        return list(self.get_trace(chain_key, since_seq=seq).events)

    def export_chain(self, chain_key: str | UUID) -> list[dict[str, Any]]:
        """Canonical dicts for external verification (see signing_engines.audit_chain)."""
        return [e.to_dict() for e in self.get_trace(chain_key).events]

    def validate_chain(self, chain_key: str | UUID) -> bool:
        """
        Replay a chain from its genesis hash.

        Raises:
            AuditChainBrokenError: If chain validation fails at any point.
        """
        trace = self.get_trace(chain_key)
        broken = find_chain_break(trace.events, trace.genesis_hash)
        if broken is not None:
            logger.critical(
                "audit_chain_broken",
                extra={
                    "chain_key": trace.chain_key,
                    "seq": broken.seq,
                    "expected_hash": broken.expected_hash,
                    "actual_hash": broken.actual_hash,
                },
            )
            raise AuditChainBrokenError(
                trace.chain_key, broken.seq, broken.expected_hash, broken.actual_hash
            )

        logger.info(
            "audit_chain_valid",
            extra={"chain_key": trace.chain_key, "event_count": len(trace.events)},
        )
        return True
