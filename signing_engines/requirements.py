"""
signing_engines.requirements -- Evidence requirement checks.

Responsibility:
    Decide whether the evidence submitted on task completion satisfies the
    task's kind and requirements: signature presence, approval decision,
    MFA strength, timestamp binding and certificate chain.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  Timestamp token
    verification is a port call; the caller passes a verifier callable.

Invariants enforced:
    - Checks run in a fixed order (signature, decision, mfa, timestamp,
      certificate) so the reported failure is deterministic.
    - A timestamp token must cover ``Evidence.content_digest()``.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass

from signing_engines.tracer import traced_engine
from signing_kernel.domain.task import (
    SIGNING_TASK_KINDS,
    Certificate,
    CertificateLevel,
    Evidence,
    SignatureType,
    TaskKind,
    TaskRequirements,
    TimestampToken,
)
from signing_kernel.exceptions import (
    CertificateRequirementError,
    MfaRequirementError,
    MissingDecisionError,
    MissingSignatureError,
    RequirementUnmetError,
    TimestampRequirementError,
)

APPROVE = "approve"
REJECT = "reject"
DECISIONS = frozenset({APPROVE, REJECT})

TimestampVerifier = Callable[[TimestampToken, str], bool]


@dataclass(frozen=True)
class UnmetRequirement:
    requirement: str
    reason: str
    required_level: int | None = None


def _chain_linked(chain: tuple[Certificate, ...]) -> bool:
    return all(chain[i].issuer == chain[i + 1].subject for i in range(len(chain) - 1))


def _chain_trusted(chain: tuple[Certificate, ...], trusted_issuers: frozenset[str]) -> bool:
    root = chain[-1]
    return root.issuer in trusted_issuers or root.subject in trusted_issuers


@traced_engine("requirements", "1.0", fingerprint_fields=("kind", "requirements", "evidence"))
def evaluate_requirements(
    kind: TaskKind,
    requirements: TaskRequirements,
    evidence: Evidence,
    trusted_issuers: Iterable[str] = (),
    verify_timestamp: TimestampVerifier | None = None,
) -> list[UnmetRequirement]:
    """Every unmet requirement, in check order.  Empty means satisfied."""
    unmet: list[UnmetRequirement] = []
    trusted = frozenset(trusted_issuers)

    if kind in SIGNING_TASK_KINDS and not evidence.has_signature:
        unmet.append(UnmetRequirement("signature", "evidence carries no signature"))

    if kind is TaskKind.APPROVAL and (evidence.decision or "").lower() not in DECISIONS:
        unmet.append(UnmetRequirement("decision", "approval needs decision 'approve' or 'reject'"))

    if requirements.require_mfa:
        if evidence.mfa is None:
            unmet.append(UnmetRequirement("mfa", "no MFA assertion", requirements.mfa_level))
        elif evidence.mfa.level < requirements.mfa_level:
            unmet.append(UnmetRequirement(
                "mfa",
                f"MFA level {evidence.mfa.level} below required {requirements.mfa_level}",
                requirements.mfa_level,
            ))

    if requirements.require_timestamp:
        token = evidence.timestamp
        if token is None:
            unmet.append(UnmetRequirement("timestamp", "no timestamp token"))
        elif token.digest != evidence.content_digest():
            unmet.append(UnmetRequirement("timestamp", "timestamp token does not cover the evidence"))
        elif verify_timestamp is not None and not verify_timestamp(token, evidence.content_digest()):
            unmet.append(UnmetRequirement("timestamp", "timestamp authority rejected the token"))

    chain = evidence.certificate_chain
    needs_chain = (
        requirements.signature_type is not SignatureType.SIMPLE
        or requirements.certificate_level is not None
    )
    if needs_chain:
        if not chain:
            unmet.append(UnmetRequirement("certificate", "no certificate chain"))
        elif not _chain_linked(chain):
            unmet.append(UnmetRequirement("certificate", "certificate chain is not linked"))
        else:
            if requirements.signature_type is SignatureType.QUALIFIED:
                if not _chain_trusted(chain, trusted):
                    unmet.append(UnmetRequirement("certificate", f"chain root {chain[-1].issuer!r} is not trusted"))
                elif chain[0].level is not CertificateLevel.QUALIFIED:
                    unmet.append(UnmetRequirement("certificate", "qualified signature needs a qualified certificate"))
            level = requirements.certificate_level
            if level is not None and chain[0].level.rank < level.rank:
                unmet.append(UnmetRequirement(
                    "certificate", f"certificate level {chain[0].level.value} below {level.value}"
                ))

    return unmet


_ERRORS: dict[str, type[RequirementUnmetError]] = {
    "signature": MissingSignatureError,
    "decision": MissingDecisionError,
    "timestamp": TimestampRequirementError,
    "certificate": CertificateRequirementError,
}


def to_error(task_id: str, unmet: UnmetRequirement) -> RequirementUnmetError:
    """The typed error for one unmet requirement."""
    if unmet.requirement == "mfa":
        return MfaRequirementError(task_id, unmet.reason, unmet.required_level or 1)
    return _ERRORS.get(unmet.requirement, RequirementUnmetError)(task_id, unmet.reason)
