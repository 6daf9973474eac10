"""
signing_services.event_stream -- Live audit events for subscribers.

Responsibility:
    Fans committed audit events of an instance out to subscribers.  A
    subscription first replays the chain as persisted when it was opened,
    then yields events committed afterwards, without gaps or duplicates.

Architecture position:
    Services layer.  The orchestrator publishes ``AuditorService.appended``
    after each commit; nothing is published for rolled-back work.

Invariants enforced:
    - Events reach a subscriber in ``seq`` order, each at most once.
    - A subscription registers for live events before its replay is read;
      live events already covered by the replay are dropped by ``seq``.
    - Iteration ends after a terminal instance event (completed, failed,
      cancelled, expired) or when the subscription is closed.
"""

from __future__ import annotations

import queue
import threading
from collections.abc import Iterable, Iterator
from uuid import UUID

from signing_kernel.domain.dtos import AuditEventRecord
from signing_kernel.logging_config import get_logger
from signing_kernel.models.audit_event import AuditAction

logger = get_logger("services.event_stream")

TERMINAL_ACTIONS = frozenset({
    AuditAction.WORKFLOW_COMPLETED.value,
    AuditAction.WORKFLOW_FAILED.value,
    AuditAction.WORKFLOW_CANCELLED.value,
    AuditAction.WORKFLOW_EXPIRED.value,
})

_CLOSED = object()


class InstanceSubscription:
    """
    Iterator over the audit events of one instance.

    ``next_event(timeout)`` returns ``None`` when nothing arrives in time;
    iterating blocks until the instance finishes or ``close()`` is called.
    """

    def __init__(self, broker: EventBroker, chain_key: str):
        self.chain_key = chain_key
        self._broker = broker
        self._queue: queue.Queue = queue.Queue()
        self._replay: list[AuditEventRecord] = []
        self._last_seq = 0
        self._finished = False
        self._closed = False

    def prime(self, events: Iterable[AuditEventRecord]) -> None:
        """Set the persisted prefix of the chain to replay first."""
        self._replay = sorted(events, key=lambda e: e.seq)

    def _deliver(self, event: AuditEventRecord) -> None:
        self._queue.put(event)

    def _accept(self, event: AuditEventRecord) -> AuditEventRecord | None:
        if event.seq <= self._last_seq:
            return None
        self._last_seq = event.seq
        if event.action in TERMINAL_ACTIONS:
            self._finished = True
        return event

    @property
    def finished(self) -> bool:
        return self._finished or self._closed

    def next_event(self, timeout: float | None = None) -> AuditEventRecord | None:
        while self._replay:
            event = self._accept(self._replay.pop(0))
            if event is not None:
                return event
        while not self.finished:
            try:
                item = self._queue.get(timeout=timeout)
            except queue.Empty:
                return None
            if item is _CLOSED:
                return None
            event = self._accept(item)
            if event is not None:
                return event
        return None

    def __iter__(self) -> Iterator[AuditEventRecord]:
        while True:
            event = self.next_event()
            if event is None:
                return
            yield event

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._broker._unsubscribe(self)
        self._queue.put(_CLOSED)

    def __enter__(self) -> InstanceSubscription:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


class EventBroker:
    """In-process registry of instance subscriptions."""

    def __init__(self) -> None:
        self._subscriptions: dict[str, list[InstanceSubscription]] = {}
        self._lock = threading.Lock()

    def subscribe(self, instance_id: UUID | str) -> InstanceSubscription:
        subscription = InstanceSubscription(self, str(instance_id))
        with self._lock:
            self._subscriptions.setdefault(subscription.chain_key, []).append(subscription)
        return subscription

    def _unsubscribe(self, subscription: InstanceSubscription) -> None:
        with self._lock:
            subscribers = self._subscriptions.get(subscription.chain_key, [])
            if subscription in subscribers:
                subscribers.remove(subscription)
            if not subscribers:
                self._subscriptions.pop(subscription.chain_key, None)

    def publish(self, events: Iterable[AuditEventRecord]) -> int:
        """Deliver committed events; returns the number of deliveries."""
        delivered = 0
        for event in events:
            with self._lock:
                subscribers = list(self._subscriptions.get(event.chain_key, ()))
            for subscription in subscribers:
                subscription._deliver(event)
                delivered += 1
        if delivered:
            logger.debug("audit_events_published", extra={"deliveries": delivered})
        return delivered

    def subscriber_count(self, instance_id: UUID | str) -> int:
        with self._lock:
            return len(self._subscriptions.get(str(instance_id), ()))
