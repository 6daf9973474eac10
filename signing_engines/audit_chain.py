"""
signing_engines.audit_chain -- Offline audit chain verification.

Responsibility:
    Replay an exported audit chain from its genesis hash without a
    database, so third parties can verify an instance's history.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Invariants enforced:
    - For every event i: ``prev_hash_i == hash_{i-1}`` (genesis for i = 1),
      ``seq_i == i`` and ``hash_i == H(prev_hash_i || canonical(body_i))``.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from signing_kernel.domain.dtos import AuditEventRecord
from signing_kernel.utils.hashing import hash_audit_event


@dataclass(frozen=True)
class ChainBreak:
    """First point where a chain fails verification."""

    seq: int
    expected_hash: str
    actual_hash: str
    reason: str


def _body_and_hash(event: AuditEventRecord | Mapping[str, Any]) -> tuple[dict[str, Any], str]:
    if isinstance(event, AuditEventRecord):
        return event.body(), event.hash
    body = {k: v for k, v in event.items() if k != "hash"}
    return body, str(event["hash"])


def find_chain_break(
    events: Iterable[AuditEventRecord | Mapping[str, Any]],
    genesis: str,
) -> ChainBreak | None:
    """Replay a chain; ``None`` when every link verifies.

    Accepts either records or the canonical dicts of ``export_chain``.
    """
    previous = genesis
    for index, event in enumerate(events, start=1):
        body, stored_hash = _body_and_hash(event)
        seq = int(body["seq"])
        if seq != index:
            return ChainBreak(seq, str(index), str(seq), "sequence gap")
        if body["prev_hash"] != previous:
            return ChainBreak(seq, previous, str(body["prev_hash"]), "prev_hash does not link")
        recomputed = hash_audit_event(body["prev_hash"], body)
        if recomputed != stored_hash:
            return ChainBreak(seq, recomputed, stored_hash, "hash mismatch")
        previous = stored_hash
    return None


def verify_chain(events: Iterable[AuditEventRecord | Mapping[str, Any]], genesis: str) -> bool:
    return find_chain_break(events, genesis) is None
