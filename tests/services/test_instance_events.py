"""
Tests for instance subscriptions and per-instance locks.

Covers:
- Replay of the persisted chain, then live events after each commit
- No duplicates when a live event is also in the replay
- Iteration ends on a terminal event or close()
- Rejected completions are published (they commit); rolled-back work is not
- InstanceLockRegistry exclusion, re-entry, timeout and cleanup
"""

import threading
from datetime import datetime, timezone

import pytest

from signing_kernel.domain.dtos import AuditEventRecord
from signing_kernel.exceptions import (
    AuthorizationDeniedError,
    ConcurrencyConflictError,
    InvalidTaskStateError,
    MfaRequirementError,
)
from signing_services.event_stream import EventBroker
from signing_services.instance_lock import InstanceLockRegistry

from conftest import ADMIN, linear_definition, signature_node


def event(seq: int, action: str = "task_pending", chain_key: str = "inst-1") -> AuditEventRecord:
    return AuditEventRecord(
        chain_key=chain_key,
        seq=seq,
        prev_hash="0" * 64,
        timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc),
        actor="system",
        action=action,
        hash=f"{seq:064d}",
    )


class TestSubscriptions:

    def test_replay_then_live_events(
        self, orchestrator, start_instance, task_for, instance_trail, make_signature,
    ):
        started = start_instance("sequential_two_signer")
        persisted = len(instance_trail(started.instance_id).events)

        with orchestrator.subscribe_instance(started.instance_id, ADMIN) as subscription:
            replayed = [subscription.next_event(timeout=0) for _ in range(persisted)]
            assert subscription.next_event(timeout=0) is None

            task = task_for(started.instance_id, "sign_a")
            orchestrator.complete_task(task.task_id, make_signature("alice"), actor="alice")
            task = task_for(started.instance_id, "sign_b")
            orchestrator.complete_task(task.task_id, make_signature("bob"), actor="bob")

            live = list(subscription)

        seqs = [e.seq for e in replayed + live]
        assert replayed[0].action == "workflow_created"
        assert seqs == list(range(1, len(seqs) + 1))
        assert live[-1].action == "workflow_completed"
        assert subscription.finished

    def test_subscription_needs_read_access(self, orchestrator, start_instance):
        started = start_instance("sequential_two_signer")

        with pytest.raises(AuthorizationDeniedError):
            orchestrator.subscribe_instance(started.instance_id, "mallory")

    def test_rejected_attempt_is_published(
        self, orchestrator, start_instance, task_for, instance_trail, make_signature,
    ):
        started = start_instance(
            linear_definition("mfa", signature_node("sign", "alice", requirements={"require_mfa": True}))
        )
        task = task_for(started.instance_id, "sign")

        with orchestrator.subscribe_instance(started.instance_id, ADMIN) as subscription:
            for _ in range(len(instance_trail(started.instance_id).events)):
                subscription.next_event(timeout=0)
            with pytest.raises(MfaRequirementError):
                orchestrator.complete_task(
                    task.task_id, make_signature("alice"), actor="alice"
                )

            rejected = subscription.next_event(timeout=1)

        assert rejected.action == "task_attempt_rejected"

    def test_rolled_back_work_is_not_published(
        self, orchestrator, start_instance, task_for, instance_trail, make_signature,
    ):
        started = start_instance("sequential_two_signer")
        waiting = task_for(started.instance_id, "sign_b")

        with orchestrator.subscribe_instance(started.instance_id, ADMIN) as subscription:
            for _ in range(len(instance_trail(started.instance_id).events)):
                subscription.next_event(timeout=0)
            with pytest.raises(InvalidTaskStateError):
                orchestrator.complete_task(waiting.task_id, make_signature("bob"), actor="bob")

            assert subscription.next_event(timeout=0.05) is None

    def test_close_ends_iteration_and_unsubscribes(self, orchestrator, start_instance):
        started = start_instance("sequential_two_signer")
        subscription = orchestrator.subscribe_instance(started.instance_id, ADMIN)
        assert orchestrator.broker.subscriber_count(started.instance_id) == 1

        subscription.close()

        assert orchestrator.broker.subscriber_count(started.instance_id) == 0
        assert subscription.finished


class TestEventBroker:

    def test_overlap_with_replay_is_dropped(self):
        broker = EventBroker()
        subscription = broker.subscribe("inst-1")
        subscription.prime([event(2), event(1)])

        broker.publish([event(2), event(3)])

        assert [subscription.next_event(timeout=0).seq for _ in range(3)] == [1, 2, 3]
        assert subscription.next_event(timeout=0) is None

    def test_other_instances_are_not_delivered(self):
        broker = EventBroker()
        subscription = broker.subscribe("inst-1")

        delivered = broker.publish([event(1, chain_key="inst-2")])

        assert delivered == 0
        assert subscription.next_event(timeout=0) is None

    def test_terminal_event_finishes(self):
        broker = EventBroker()
        subscription = broker.subscribe("inst-1")
        broker.publish([event(1), event(2, "workflow_cancelled"), event(3)])

        assert [e.seq for e in subscription] == [1, 2]

    def test_close_wakes_a_blocked_reader(self):
        broker = EventBroker()
        subscription = broker.subscribe("inst-1")
        results = []
        reader = threading.Thread(target=lambda: results.append(subscription.next_event()))
        reader.start()

        subscription.close()
        reader.join(timeout=2)

        assert results == [None]


class TestInstanceLocks:

    def test_reentrant_and_cleaned_up(self):
        locks = InstanceLockRegistry()

        with locks.hold("inst-1"):
            with locks.hold("inst-1"):
                assert len(locks) == 1

        assert len(locks) == 0

    def test_contention_times_out(self):
        locks = InstanceLockRegistry(timeout_seconds=0.05)
        held = threading.Event()
        release = threading.Event()

        def holder():
            with locks.hold("inst-1"):
                held.set()
                release.wait(2)

        thread = threading.Thread(target=holder)
        thread.start()
        held.wait(2)
        try:
            with pytest.raises(ConcurrencyConflictError):
                with locks.hold("inst-1"):
                    pass
            with locks.hold("inst-2"):
                pass
        finally:
            release.set()
            thread.join(2)

        assert len(locks) == 0

    def test_other_threads_wait_their_turn(self):
        locks = InstanceLockRegistry()
        order = []

        def worker(name):
            with locks.hold("inst-1"):
                order.append(f"{name}:in")
                order.append(f"{name}:out")

        threads = [threading.Thread(target=worker, args=(n,)) for n in "abcd"]
        for t in threads:
            t.start()
        for t in threads:
            t.join(2)

        pairs = [order[i:i + 2] for i in range(0, len(order), 2)]
        assert all(p[0].split(":")[0] == p[1].split(":")[0] for p in pairs)
        assert len(order) == 8
