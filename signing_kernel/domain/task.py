"""
Task domain types (``signing_kernel.domain.task``).

Responsibility
--------------
Pure value objects for the task state machine: task kinds, lifecycle
statuses and their transition table, participants, task requirements and
the evidence a participant submits on completion.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  May import
only from ``utils/hashing``.

Invariants enforced
-------------------
* ``TASK_TRANSITIONS`` defines the only valid status transitions.
  Terminal states (completed, failed, expired, delegated, cancelled) have
  no outgoing edges, so ``completed`` is irreversible.
* ``Evidence.digest()`` is deterministic: equal evidence gives an equal
  digest, which is what makes completion idempotent.
* ``Evidence.content_digest()`` excludes the timestamp token, so a TSA
  token can cover the digest of the evidence it is attached to.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from signing_kernel.utils.hashing import hash_payload, sha256_hex
from signing_kernel.utils.rfc3339 import format_utc, parse_utc


# =========================================================================
# Task lifecycle
# =========================================================================


class TaskKind(str, Enum):
    """What the assignee (or timer/service) has to do."""

    SIGNATURE = "signature"
    APPROVAL = "approval"
    REVIEW = "review"
    WITNESS = "witness"
    USER_FORM = "user_form"
    SERVICE_CALL = "service_call"
    TIMER = "timer"


# Kinds whose completion evidence must carry a signature.
SIGNING_TASK_KINDS: frozenset[TaskKind] = frozenset({
    TaskKind.SIGNATURE,
    TaskKind.WITNESS,
})


class TaskStatus(str, Enum):
    """Task lifecycle states."""

    WAITING = "waiting"
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"
    DELEGATED = "delegated"
    CANCELLED = "cancelled"


TASK_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.WAITING: frozenset({
        TaskStatus.PENDING,
        TaskStatus.CANCELLED,
    }),
    TaskStatus.PENDING: frozenset({
        TaskStatus.IN_PROGRESS,
        TaskStatus.COMPLETED,
        TaskStatus.FAILED,
        TaskStatus.EXPIRED,
        TaskStatus.DELEGATED,
        TaskStatus.CANCELLED,
    }),
    TaskStatus.IN_PROGRESS: frozenset({
        TaskStatus.COMPLETED,
        TaskStatus.FAILED,
        TaskStatus.EXPIRED,
        TaskStatus.DELEGATED,
        TaskStatus.CANCELLED,
    }),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.EXPIRED: frozenset(),
    TaskStatus.DELEGATED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}

TERMINAL_TASK_STATUSES: frozenset[TaskStatus] = frozenset(
    s for s, targets in TASK_TRANSITIONS.items() if not targets
)

LIVE_TASK_STATUSES: frozenset[TaskStatus] = frozenset({
    TaskStatus.WAITING,
    TaskStatus.PENDING,
    TaskStatus.IN_PROGRESS,
})

# Statuses in which the assignee may act on the task.
ACTIONABLE_TASK_STATUSES: frozenset[TaskStatus] = frozenset({
    TaskStatus.PENDING,
    TaskStatus.IN_PROGRESS,
})


def can_transition(from_status: TaskStatus, to_status: TaskStatus) -> bool:
    return to_status in TASK_TRANSITIONS.get(from_status, frozenset())


# =========================================================================
# Participants
# =========================================================================


@dataclass(frozen=True)
class Participant:
    """A person taking part in an instance, copied on start."""

    id: str
    email: str | None = None
    display_name: str | None = None
    role: str | None = None
    credential_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "display_name": self.display_name,
            "role": self.role,
            "credential_id": self.credential_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Participant:
        return cls(
            id=str(data["id"]),
            email=data.get("email"),
            display_name=data.get("display_name"),
            role=data.get("role"),
            credential_id=data.get("credential_id"),
        )


# =========================================================================
# Requirements
# =========================================================================


class SignatureType(str, Enum):
    SIMPLE = "simple"
    ADVANCED = "advanced"
    QUALIFIED = "qualified"


class CertificateLevel(str, Enum):
    BASIC = "basic"
    ADVANCED = "advanced"
    QUALIFIED = "qualified"

    @property
    def rank(self) -> int:
        return _CERTIFICATE_RANK[self]


_CERTIFICATE_RANK = {
    CertificateLevel.BASIC: 1,
    CertificateLevel.ADVANCED: 2,
    CertificateLevel.QUALIFIED: 3,
}


@dataclass(frozen=True)
class TaskRequirements:
    """Preconditions the completion evidence must satisfy."""

    require_mfa: bool = False
    mfa_level: int = 1
    require_timestamp: bool = False
    allow_delegation: bool = False
    signature_type: SignatureType = SignatureType.SIMPLE
    certificate_level: CertificateLevel | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "require_mfa": self.require_mfa,
            "mfa_level": self.mfa_level,
            "require_timestamp": self.require_timestamp,
            "allow_delegation": self.allow_delegation,
            "signature_type": self.signature_type.value,
            "certificate_level": (
                self.certificate_level.value if self.certificate_level else None
            ),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> TaskRequirements:
        data = data or {}
        level = data.get("certificate_level")
        return cls(
            require_mfa=bool(data.get("require_mfa", False)),
            mfa_level=int(data.get("mfa_level", 1)),
            require_timestamp=bool(data.get("require_timestamp", False)),
            allow_delegation=bool(data.get("allow_delegation", False)),
            signature_type=SignatureType(data.get("signature_type", SignatureType.SIMPLE.value)),
            certificate_level=CertificateLevel(level) if level else None,
        )

    @classmethod
    def merged(cls, *layers: dict[str, Any] | None) -> TaskRequirements:
        """Later layers override earlier ones (settings defaults, node config)."""
        combined: dict[str, Any] = {}
        for layer in layers:
            if layer:
                combined.update(layer)
        return cls.from_dict(combined)


# =========================================================================
# Evidence
# =========================================================================


@dataclass(frozen=True)
class MfaAssertion:
    """Result of a multi-factor verification, asserted by the identity layer."""

    level: int
    method: str = "totp"
    verified_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "level": self.level,
            "method": self.method,
            "verified_at": format_utc(self.verified_at) if self.verified_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MfaAssertion:
        verified_at = data.get("verified_at")
        return cls(
            level=int(data["level"]),
            method=str(data.get("method", "totp")),
            verified_at=parse_utc(verified_at) if isinstance(verified_at, str) else verified_at,
        )


@dataclass(frozen=True)
class TimestampToken:
    """Token issued by a timestamp authority over ``digest``."""

    token: str
    digest: str
    issued_at: datetime
    authority: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "token": self.token,
            "digest": self.digest,
            "issued_at": format_utc(self.issued_at),
            "authority": self.authority,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TimestampToken:
        issued_at = data["issued_at"]
        return cls(
            token=str(data["token"]),
            digest=str(data["digest"]),
            issued_at=parse_utc(issued_at) if isinstance(issued_at, str) else issued_at,
            authority=str(data["authority"]),
        )


@dataclass(frozen=True)
class Certificate:
    """One certificate of a chain.  Chains are ordered leaf first."""

    subject: str
    issuer: str
    serial: str
    level: CertificateLevel = CertificateLevel.BASIC

    def to_dict(self) -> dict[str, Any]:
        return {
            "subject": self.subject,
            "issuer": self.issuer,
            "serial": self.serial,
            "level": self.level.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Certificate:
        return cls(
            subject=str(data["subject"]),
            issuer=str(data["issuer"]),
            serial=str(data["serial"]),
            level=CertificateLevel(data.get("level", CertificateLevel.BASIC.value)),
        )


@dataclass(frozen=True)
class Evidence:
    """The complete record submitted on task completion.

    Raw ``signature`` bytes never reach the audit log: the scheduler moves
    them to the object store and keeps only the reference and digest.
    """

    signature: bytes | None = None
    signature_ref: str | None = None
    decision: str | None = None
    form_data: dict[str, Any] = field(default_factory=dict)
    mfa: MfaAssertion | None = None
    timestamp: TimestampToken | None = None
    certificate_chain: tuple[Certificate, ...] = ()
    client_ip: str | None = None
    user_agent: str | None = None

    @property
    def has_signature(self) -> bool:
        return bool(self.signature) or bool(self.signature_ref)

    def _content(self) -> dict[str, Any]:
        return {
            "signature_sha256": sha256_hex(self.signature) if self.signature else None,
            "signature_ref": None if self.signature else self.signature_ref,
            "decision": self.decision,
            "form_data": self.form_data,
            "mfa": self.mfa.to_dict() if self.mfa else None,
            "certificate_chain": [c.to_dict() for c in self.certificate_chain],
            "client_ip": self.client_ip,
            "user_agent": self.user_agent,
        }

    def content_digest(self) -> str:
        """Digest of everything except the timestamp token (what the TSA covers)."""
        return hash_payload(self._content())

    def digest(self) -> str:
        """Digest of the full evidence, used for completion idempotency."""
        content = self._content()
        content["timestamp"] = self.timestamp.to_dict() if self.timestamp else None
        return hash_payload(content)

    def to_record(self, signature_ref: str | None = None) -> dict[str, Any]:
        """Persistable form: no raw signature bytes."""
        record = self._content()
        if signature_ref is not None:
            record["signature_ref"] = signature_ref
        elif self.signature_ref is not None:
            record["signature_ref"] = self.signature_ref
        record["timestamp"] = self.timestamp.to_dict() if self.timestamp else None
        return record

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Evidence:
        signature = data.get("signature")
        if isinstance(signature, str):
            signature = signature.encode("utf-8")
        return cls(
            signature=signature,
            signature_ref=data.get("signature_ref"),
            decision=data.get("decision"),
            form_data=dict(data.get("form_data") or {}),
            mfa=MfaAssertion.from_dict(data["mfa"]) if data.get("mfa") else None,
            timestamp=(
                TimestampToken.from_dict(data["timestamp"]) if data.get("timestamp") else None
            ),
            certificate_chain=tuple(
                Certificate.from_dict(c) for c in data.get("certificate_chain") or ()
            ),
            client_ip=data.get("client_ip"),
            user_agent=data.get("user_agent"),
        )
