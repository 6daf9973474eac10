"""
Tests for evidence requirement checks.

Covers:
- Signature presence for signing task kinds
- Approval decisions
- MFA presence and level
- Timestamp binding to the evidence content and TSA verification
- Certificate chains (linkage, trust, qualified level, minimum level)
- Deterministic check order and typed errors
"""

from dataclasses import replace

import pytest

from signing_engines.requirements import UnmetRequirement, evaluate_requirements, to_error
from signing_kernel.domain.clock import DeterministicClock
from signing_kernel.domain.task import (
    Certificate,
    CertificateLevel,
    Evidence,
    MfaAssertion,
    SignatureType,
    TaskKind,
    TaskRequirements,
)
from signing_kernel.exceptions import (
    CertificateRequirementError,
    ErrorKind,
    MfaRequirementError,
    MissingDecisionError,
    MissingSignatureError,
    TimestampRequirementError,
)
from signing_services.adapters import HmacTimestampAuthority

from conftest import T0

TRUSTED = ("Qualified Trust Service CA",)

QUALIFIED_CHAIN = (
    Certificate(subject="Alice", issuer="Signing CA", serial="01", level=CertificateLevel.QUALIFIED),
    Certificate(subject="Signing CA", issuer="Qualified Trust Service CA", serial="02"),
)


def signed(**overrides) -> Evidence:
    values = {"signature": b"sig-bytes", "client_ip": "10.0.0.1"}
    values.update(overrides)
    return Evidence(**values)


def names(unmet) -> list[str]:
    return [u.requirement for u in unmet]


class TestSignatureAndDecision:

    def test_signature_task_needs_signature(self):
        unmet = evaluate_requirements(TaskKind.SIGNATURE, TaskRequirements(), Evidence())

        assert names(unmet) == ["signature"]

    def test_signature_reference_is_enough(self):
        evidence = Evidence(signature_ref="mem://signatures/abc")

        assert evaluate_requirements(TaskKind.SIGNATURE, TaskRequirements(), evidence) == []

    def test_witness_needs_signature(self):
        assert names(evaluate_requirements(TaskKind.WITNESS, TaskRequirements(), Evidence())) == ["signature"]

    def test_review_needs_nothing(self):
        assert evaluate_requirements(TaskKind.REVIEW, TaskRequirements(), Evidence()) == []

    @pytest.mark.parametrize("decision", ["approve", "reject", "APPROVE", "Reject"])
    def test_approval_decisions(self, decision):
        evidence = Evidence(decision=decision)

        assert evaluate_requirements(TaskKind.APPROVAL, TaskRequirements(), evidence) == []

    @pytest.mark.parametrize("decision", [None, "", "maybe"])
    def test_approval_without_valid_decision(self, decision):
        evidence = Evidence(decision=decision)

        assert names(evaluate_requirements(TaskKind.APPROVAL, TaskRequirements(), evidence)) == ["decision"]


class TestMfa:

    REQUIRED = TaskRequirements(require_mfa=True, mfa_level=2)

    def test_missing_assertion(self):
        unmet = evaluate_requirements(TaskKind.SIGNATURE, self.REQUIRED, signed())

        assert names(unmet) == ["mfa"]
        assert unmet[0].required_level == 2

    def test_level_too_low(self):
        unmet = evaluate_requirements(TaskKind.SIGNATURE, self.REQUIRED, signed(mfa=MfaAssertion(level=1)))

        assert names(unmet) == ["mfa"]
        assert "below required 2" in unmet[0].reason

    def test_sufficient_level(self):
        evidence = signed(mfa=MfaAssertion(level=3, method="webauthn"))

        assert evaluate_requirements(TaskKind.SIGNATURE, self.REQUIRED, evidence) == []

    def test_not_required(self):
        assert evaluate_requirements(TaskKind.SIGNATURE, TaskRequirements(), signed(mfa=MfaAssertion(level=0))) == []


class TestTimestamp:

    REQUIRED = TaskRequirements(require_timestamp=True)

    @pytest.fixture
    def tsa(self):
        return HmacTimestampAuthority(b"secret", DeterministicClock(T0))

    def test_missing_token(self, tsa):
        unmet = evaluate_requirements(TaskKind.SIGNATURE, self.REQUIRED, signed(), verify_timestamp=tsa.verify)

        assert names(unmet) == ["timestamp"]

    def test_token_covering_the_evidence(self, tsa):
        evidence = signed()
        evidence = replace(evidence, timestamp=tsa.stamp(evidence.content_digest()))

        assert evaluate_requirements(TaskKind.SIGNATURE, self.REQUIRED, evidence, verify_timestamp=tsa.verify) == []

    def test_token_for_other_content(self, tsa):
        token = tsa.stamp(signed(signature=b"other").content_digest())
        evidence = signed(timestamp=token)

        unmet = evaluate_requirements(TaskKind.SIGNATURE, self.REQUIRED, evidence, verify_timestamp=tsa.verify)

        assert unmet[0].reason == "timestamp token does not cover the evidence"

    def test_forged_token(self, tsa):
        evidence = signed()
        forger = HmacTimestampAuthority(b"not-the-secret", DeterministicClock(T0))
        evidence = replace(evidence, timestamp=forger.stamp(evidence.content_digest()))

        unmet = evaluate_requirements(TaskKind.SIGNATURE, self.REQUIRED, evidence, verify_timestamp=tsa.verify)

        assert unmet[0].reason == "timestamp authority rejected the token"

    def test_timestamp_does_not_change_content_digest(self, tsa):
        evidence = signed()
        stamped = replace(evidence, timestamp=tsa.stamp(evidence.content_digest()))

        assert stamped.content_digest() == evidence.content_digest()
        assert stamped.digest() != evidence.digest()


class TestCertificates:

    def test_simple_signature_needs_no_chain(self):
        assert evaluate_requirements(TaskKind.SIGNATURE, TaskRequirements(), signed()) == []

    def test_advanced_signature_needs_chain(self):
        requirements = TaskRequirements(signature_type=SignatureType.ADVANCED)

        unmet = evaluate_requirements(TaskKind.SIGNATURE, requirements, signed())

        assert [(u.requirement, u.reason) for u in unmet] == [("certificate", "no certificate chain")]

    def test_unlinked_chain(self):
        requirements = TaskRequirements(signature_type=SignatureType.ADVANCED)
        chain = (QUALIFIED_CHAIN[0], Certificate(subject="Other CA", issuer="Root", serial="03"))

        unmet = evaluate_requirements(TaskKind.SIGNATURE, requirements, signed(certificate_chain=chain))

        assert unmet[0].reason == "certificate chain is not linked"

    def test_qualified_signature_with_trusted_chain(self):
        requirements = TaskRequirements(signature_type=SignatureType.QUALIFIED)
        evidence = signed(certificate_chain=QUALIFIED_CHAIN)

        assert evaluate_requirements(TaskKind.SIGNATURE, requirements, evidence, trusted_issuers=TRUSTED) == []

    def test_qualified_signature_with_untrusted_root(self):
        requirements = TaskRequirements(signature_type=SignatureType.QUALIFIED)
        evidence = signed(certificate_chain=QUALIFIED_CHAIN)

        unmet = evaluate_requirements(TaskKind.SIGNATURE, requirements, evidence, trusted_issuers=("Someone Else",))

        assert names(unmet) == ["certificate"]
        assert "not trusted" in unmet[0].reason

    def test_qualified_signature_needs_qualified_leaf(self):
        requirements = TaskRequirements(signature_type=SignatureType.QUALIFIED)
        chain = (replace(QUALIFIED_CHAIN[0], level=CertificateLevel.ADVANCED), QUALIFIED_CHAIN[1])

        unmet = evaluate_requirements(
            TaskKind.SIGNATURE, requirements, signed(certificate_chain=chain), trusted_issuers=TRUSTED
        )

        assert unmet[0].reason == "qualified signature needs a qualified certificate"

    def test_minimum_certificate_level(self):
        requirements = TaskRequirements(certificate_level=CertificateLevel.ADVANCED)
        basic = (replace(QUALIFIED_CHAIN[0], level=CertificateLevel.BASIC),)
        advanced = (replace(QUALIFIED_CHAIN[0], level=CertificateLevel.ADVANCED),)

        assert names(evaluate_requirements(TaskKind.SIGNATURE, requirements, signed(certificate_chain=basic))) == [
            "certificate"
        ]
        assert evaluate_requirements(TaskKind.SIGNATURE, requirements, signed(certificate_chain=advanced)) == []


class TestOrderingAndErrors:

    def test_every_unmet_requirement_in_fixed_order(self):
        requirements = TaskRequirements(
            require_mfa=True, require_timestamp=True, signature_type=SignatureType.ADVANCED,
        )

        unmet = evaluate_requirements(TaskKind.SIGNATURE, requirements, Evidence())

        assert names(unmet) == ["signature", "mfa", "timestamp", "certificate"]

    @pytest.mark.parametrize("requirement, error_type, code", [
        ("signature", MissingSignatureError, "SIGNATURE_REQUIRED"),
        ("decision", MissingDecisionError, "DECISION_REQUIRED"),
        ("timestamp", TimestampRequirementError, "TIMESTAMP_REQUIRED"),
        ("certificate", CertificateRequirementError, "CERTIFICATE_REQUIRED"),
    ])
    def test_typed_errors(self, requirement, error_type, code):
        error = to_error("task-1", UnmetRequirement(requirement, "reason"))

        assert isinstance(error, error_type)
        assert error.code == code
        assert error.kind is ErrorKind.REQUIREMENT_UNMET
        assert error.task_id == "task-1"

    def test_mfa_error_carries_required_level(self):
        unmet = evaluate_requirements(
            TaskKind.SIGNATURE, TaskRequirements(require_mfa=True, mfa_level=3), signed()
        )

        error = to_error("task-1", unmet[0])

        assert isinstance(error, MfaRequirementError)
        assert error.required_level == 3
        assert error.code == "MFA_REQUIRED"
