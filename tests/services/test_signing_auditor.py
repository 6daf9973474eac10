"""
Tests for AuditorService.

Covers:
- Dense per-chain sequence starting at 1, linked from the genesis hash
- Independent chains
- Prefix reads (since_seq) and export
- Externally built events: accepted when they continue the head, rejected otherwise
- Tamper detection by validate_chain
- ORM-level immutability of audit rows
"""

from dataclasses import replace

import pytest
from sqlalchemy import select, text

from signing_engines.audit_chain import verify_chain
from signing_kernel.exceptions import (
    AuditChainBrokenError,
    AuditSequenceError,
    ImmutabilityViolationError,
)
from signing_kernel.models.audit_event import AuditAction, AuditEvent
from signing_kernel.services.auditor_service import AuditorService
from signing_kernel.utils.hashing import genesis_hash, hash_audit_event

CHAIN = "instance:test"


@pytest.fixture
def auditor(session, deterministic_clock):
    return AuditorService(session, deterministic_clock)


def record_three(auditor: AuditorService, chain_key: str = CHAIN):
    auditor.record(chain_key, AuditAction.WORKFLOW_CREATED, "admin", details={"version": 1})
    auditor.record(chain_key, AuditAction.TASK_MATERIALIZED, "system", node_id="sign_a")
    return auditor.record(chain_key, AuditAction.WORKFLOW_STARTED, "admin")


class TestRecording:

    def test_sequence_starts_at_one_and_links(self, auditor):
        record_three(auditor)

        trace = auditor.get_trace(CHAIN)

        assert [e.seq for e in trace.events] == [1, 2, 3]
        assert trace.events[0].prev_hash == genesis_hash(CHAIN)
        assert trace.events[1].prev_hash == trace.events[0].hash
        assert trace.events[2].prev_hash == trace.events[1].hash
        assert trace.actions == ["workflow_created", "task_materialized", "workflow_started"]

    def test_hash_covers_the_body(self, auditor):
        event = auditor.record(CHAIN, AuditAction.WORKFLOW_CREATED, "admin", details={"k": "v"})

        assert event.hash == hash_audit_event(event.prev_hash, event.body())

    def test_timestamps_come_from_the_clock(self, auditor, deterministic_clock):
        first = auditor.record(CHAIN, AuditAction.WORKFLOW_CREATED, "admin")
        deterministic_clock.advance(60)
        second = auditor.record(CHAIN, AuditAction.WORKFLOW_STARTED, "admin")

        assert (second.timestamp - first.timestamp).total_seconds() == 60

    def test_chains_are_independent(self, auditor):
        record_three(auditor, "instance:a")
        event = auditor.record("instance:b", AuditAction.WORKFLOW_CREATED, "admin")

        assert event.seq == 1
        assert event.prev_hash == genesis_hash("instance:b")

    def test_appended_records_are_collected(self, session, deterministic_clock):
        published = []
        auditor = AuditorService(session, deterministic_clock, on_append=published.append)

        record_three(auditor)

        assert [e.seq for e in auditor.appended] == [1, 2, 3]
        assert published == auditor.appended

    def test_audit_event_logged(self, auditor, captured_logs):
        auditor.record(CHAIN, AuditAction.WORKFLOW_CREATED, "admin")

        logs = [r for r in captured_logs() if r["message"] == "audit_event_created"]
        assert logs[0]["chain_key"] == CHAIN
        assert logs[0]["seq"] == 1


class TestReading:

    def test_prefix_read(self, auditor):
        record_three(auditor)

        trace = auditor.get_trace(CHAIN, since_seq=1)

        assert [e.seq for e in trace.events] == [2, 3]

    def test_events_since(self, auditor):
        record_three(auditor)

        assert [e.action for e in auditor.events_since(CHAIN, 2)] == ["workflow_started"]
        assert auditor.events_since(CHAIN, 3) == []

    def test_empty_chain(self, auditor):
        trace = auditor.get_trace("instance:nothing")

        assert trace.is_empty
        assert trace.genesis_hash == genesis_hash("instance:nothing")

    def test_count(self, auditor):
        record_three(auditor)
        auditor.record(CHAIN, AuditAction.TASK_MATERIALIZED, "system", node_id="sign_b")

        assert auditor.get_trace(CHAIN).count(AuditAction.TASK_MATERIALIZED) == 2
        assert auditor.get_trace(CHAIN).count("workflow_started") == 1

    def test_export_verifies_offline(self, auditor):
        record_three(auditor)

        exported = auditor.export_chain(CHAIN)

        assert len(exported) == 3
        assert verify_chain(exported, genesis_hash(CHAIN)) is True


class TestAppend:

    def test_continuing_event_is_accepted(self, auditor):
        last = record_three(auditor)
        body = replace(last, seq=4, prev_hash=last.hash, action="workflow_completed", hash="")
        event = replace(body, hash=hash_audit_event(body.prev_hash, body.body()))

        auditor.append(event)

        assert auditor.get_trace(CHAIN).events[-1].seq == 4
        assert auditor.validate_chain(CHAIN) is True

    def test_sequence_gap_rejected(self, auditor):
        last = record_three(auditor)
        body = replace(last, seq=5, prev_hash=last.hash, hash="")
        event = replace(body, hash=hash_audit_event(body.prev_hash, body.body()))

        with pytest.raises(AuditSequenceError) as exc_info:
            auditor.append(event)

        assert exc_info.value.expected_seq == 4
        assert exc_info.value.actual_seq == 5

    def test_wrong_link_rejected(self, auditor):
        last = record_three(auditor)
        body = replace(last, seq=4, prev_hash=last.prev_hash, hash="")
        event = replace(body, hash=hash_audit_event(body.prev_hash, body.body()))

        with pytest.raises(AuditChainBrokenError):
            auditor.append(event)

    def test_wrong_hash_rejected(self, auditor):
        last = record_three(auditor)
        event = replace(last, seq=4, prev_hash=last.hash, hash="0" * 64)

        with pytest.raises(AuditChainBrokenError) as exc_info:
            auditor.append(event)

        assert exc_info.value.seq == 4


class TestValidation:

    def test_intact_chain(self, auditor):
        record_three(auditor)

        assert auditor.validate_chain(CHAIN) is True

    def test_rewritten_row_is_detected(self, auditor, session, captured_logs):
        record_three(auditor)
        session.execute(
            text("UPDATE audit_events SET actor = 'mallory' WHERE chain_key = :key AND seq = 2"),
            {"key": CHAIN},
        )
        session.expire_all()

        with pytest.raises(AuditChainBrokenError) as exc_info:
            auditor.validate_chain(CHAIN)

        assert exc_info.value.seq == 2
        assert any(r["message"] == "audit_chain_broken" for r in captured_logs())


class TestImmutability:

    def test_update_blocked(self, auditor, session):
        record_three(auditor)
        row = session.execute(
            select(AuditEvent).where(AuditEvent.chain_key == CHAIN, AuditEvent.seq == 1)
        ).scalar_one()
        row.actor = "mallory"

        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_delete_blocked(self, auditor, session):
        record_three(auditor)
        row = session.execute(
            select(AuditEvent).where(AuditEvent.chain_key == CHAIN, AuditEvent.seq == 3)
        ).scalar_one()
        session.delete(row)

        with pytest.raises(ImmutabilityViolationError):
            session.flush()
