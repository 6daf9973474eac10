"""
signing_services.instance_lock -- Per-instance logical locks.

Responsibility:
    Linearizes mutations of one workflow instance inside the process.
    Different instances never contend.  Optimistic row versioning on the
    instance row covers writers in other processes.

Invariants enforced:
    - At most one thread holds the lock of an instance at a time (the
      holder may re-enter).
    - Locks of idle instances are dropped, so the registry does not grow
      with the number of instances ever touched.

Failure modes:
    - ConcurrencyConflictError (CONFLICT) when the lock is not acquired
      within ``timeout_seconds``.
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from uuid import UUID

from signing_kernel.exceptions import ConcurrencyConflictError
from signing_kernel.logging_config import get_logger

logger = get_logger("services.instance_lock")


@dataclass
class _Entry:
    lock: threading.RLock = field(default_factory=threading.RLock)
    users: int = 0


class InstanceLockRegistry:
    """Reference-counted reentrant locks keyed by instance id."""

    def __init__(self, timeout_seconds: float = 30.0):
        self._timeout = timeout_seconds
        self._entries: dict[str, _Entry] = {}
        self._guard = threading.Lock()

    @contextmanager
    def hold(self, instance_id: UUID | str) -> Iterator[None]:
        key = str(instance_id)
        with self._guard:
            entry = self._entries.setdefault(key, _Entry())
            entry.users += 1
        try:
            if not entry.lock.acquire(timeout=self._timeout):
                logger.warning(
                    "instance_lock_timeout",
                    extra={"instance_id": key, "timeout_seconds": self._timeout},
                )
                raise ConcurrencyConflictError("workflow_instance", key)
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            with self._guard:
                entry.users -= 1
                if entry.users == 0:
                    self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)
