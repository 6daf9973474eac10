"""
Tests for offline audit chain verification.

Covers:
- A well-formed chain verifies from its genesis hash
- Sequence gaps, broken links and rewritten bodies are located
- Exported dicts verify exactly like records
- Property: any single-field tamper is detected at or before its event
"""

from dataclasses import replace
from datetime import timedelta

import pytest
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from signing_engines.audit_chain import find_chain_break, verify_chain
from signing_kernel.domain.dtos import AuditEventRecord
from signing_kernel.utils.hashing import genesis_hash, hash_audit_event

from conftest import T0

CHAIN_KEY = "instance:5f0c8a52-7d4b-4f44-9a34-2f3f2c0b8f11"


def build_chain(actions: list[str], chain_key: str = CHAIN_KEY) -> list[AuditEventRecord]:
    """A correctly linked chain of events with the given actions."""
    events: list[AuditEventRecord] = []
    previous = genesis_hash(chain_key)
    for seq, action in enumerate(actions, start=1):
        unsigned = AuditEventRecord(
            chain_key=chain_key,
            seq=seq,
            prev_hash=previous,
            timestamp=T0 + timedelta(minutes=seq),
            actor="alice" if seq % 2 else "bob",
            action=action,
            hash="",
            node_id=f"node_{seq}",
            details={"n": seq},
        )
        event = replace(unsigned, hash=hash_audit_event(previous, unsigned.body()))
        events.append(event)
        previous = event.hash
    return events


ACTIONS = ["workflow_created", "task_materialized", "workflow_started", "task_completed", "workflow_completed"]


class TestVerification:

    def test_well_formed_chain(self):
        events = build_chain(ACTIONS)

        assert find_chain_break(events, genesis_hash(CHAIN_KEY)) is None
        assert verify_chain(events, genesis_hash(CHAIN_KEY)) is True

    def test_empty_chain_verifies(self):
        assert verify_chain([], genesis_hash(CHAIN_KEY)) is True

    def test_wrong_genesis(self):
        brk = find_chain_break(build_chain(ACTIONS), genesis_hash("instance:other"))

        assert brk.seq == 1
        assert brk.reason == "prev_hash does not link"

    def test_sequence_gap(self):
        events = build_chain(ACTIONS)
        del events[2]

        brk = find_chain_break(events, genesis_hash(CHAIN_KEY))

        assert brk.seq == 4
        assert brk.reason == "sequence gap"
        assert brk.expected_hash == "3"

    def test_rewritten_details(self):
        events = build_chain(ACTIONS)
        events[3] = replace(events[3], details={"n": 999})

        brk = find_chain_break(events, genesis_hash(CHAIN_KEY))

        assert brk.seq == 4
        assert brk.reason == "hash mismatch"
        assert brk.actual_hash == events[3].hash

    def test_rehashed_event_breaks_the_next_link(self):
        events = build_chain(ACTIONS)
        forged = replace(events[1], actor="mallory")
        events[1] = replace(forged, hash=hash_audit_event(forged.prev_hash, forged.body()))

        brk = find_chain_break(events, genesis_hash(CHAIN_KEY))

        assert brk.seq == 3
        assert brk.reason == "prev_hash does not link"

    def test_exported_dicts_verify(self):
        exported = [event.to_dict() for event in build_chain(ACTIONS)]

        assert verify_chain(exported, genesis_hash(CHAIN_KEY)) is True

        exported[0]["action"] = "workflow_deleted"
        assert find_chain_break(exported, genesis_hash(CHAIN_KEY)).reason == "hash mismatch"


class TestTamperProperty:

    @settings(max_examples=60, suppress_health_check=[HealthCheck.too_slow])
    @given(
        length=st.integers(min_value=1, max_value=12),
        data=st.data(),
    )
    def test_single_field_tamper_is_detected(self, length, data):
        events = build_chain([f"action_{i}" for i in range(length)])
        index = data.draw(st.integers(min_value=0, max_value=length - 1), label="index")
        field = data.draw(st.sampled_from(["actor", "action", "node_id", "details", "timestamp"]), label="field")
        original = events[index]
        tampered_values = {
            "actor": original.actor + "-x",
            "action": original.action + "-x",
            "node_id": (original.node_id or "") + "-x",
            "details": {"n": -1},
            "timestamp": original.timestamp + timedelta(seconds=1),
        }
        events[index] = replace(original, **{field: tampered_values[field]})

        brk = find_chain_break(events, genesis_hash(CHAIN_KEY))

        assert brk is not None
        assert brk.seq == index + 1

    @pytest.mark.parametrize("chain_key", ["system", "authz", "instance:abc"])
    def test_genesis_depends_on_chain_key(self, chain_key):
        assert genesis_hash(chain_key) != genesis_hash(chain_key + "-")
        assert len(genesis_hash(chain_key)) == 64
