#!/usr/bin/env python3
"""
Verify audit hash chains.

Replays every chain (or the chains named with --chain) from its genesis
hash and reports the first break: a sequence gap, a prev_hash that does
not link, or a recomputed hash that differs from the stored one.

Two sources are supported:
  - a database (SIGNING_DATABASE_URL or --database-url)
  - a JSON export, as produced by ``AuditorService.export_chain``:
    either a list of events or {"chain_key": ..., "events": [...]}

Usage:
    python scripts/verify_audit_chain.py --database-url sqlite:///signing.db
    python scripts/verify_audit_chain.py --chain <instance-id> --database-url ...
    python scripts/verify_audit_chain.py --export chain.json

Exit status is 0 when every chain verifies, 2 when one is broken.
"""

import argparse
import json
import os
import sys
from pathlib import Path

# Add project root to path
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from sqlalchemy import select

from signing_engines.audit_chain import find_chain_break
from signing_kernel.db.engine import get_session_factory, init_engine_from_url
from signing_kernel.models.audit_event import AuditEvent
from signing_kernel.services.auditor_service import AuditorService
from signing_kernel.utils.hashing import genesis_hash


def _report(chain_key: str, events: list, genesis: str) -> bool:
    broken = find_chain_break(events, genesis)
    if broken is None:
        print(f"OK      {chain_key}  ({len(events)} events)")
        return True
    print(f"BROKEN  {chain_key}  at seq {broken.seq}: {broken.reason}")
    print(f"  expected: {broken.expected_hash}")
    print(f"  actual:   {broken.actual_hash}")
    return False


def verify_export(path: Path) -> bool:
    data = json.loads(path.read_text())
    if isinstance(data, list):
        events = data
        chain_key = str(events[0]["chain_key"]) if events else path.stem
    else:
        events = data["events"]
        chain_key = str(data["chain_key"])
    return _report(chain_key, events, genesis_hash(chain_key))


def verify_database(url: str, chains: list[str]) -> bool:
    init_engine_from_url(url)
    factory = get_session_factory()
    ok = True
    with factory() as session:
        auditor = AuditorService(session)
        if not chains:
            chains = list(session.execute(
                select(AuditEvent.chain_key).distinct().order_by(AuditEvent.chain_key)
            ).scalars())
        if not chains:
            print("No audit chains found.")
        for chain_key in chains:
            trace = auditor.get_trace(chain_key)
            ok = _report(chain_key, list(trace.events), trace.genesis_hash) and ok
    return ok


def main() -> int:
    parser = argparse.ArgumentParser(description="Verify audit hash chains.")
    parser.add_argument("--database-url", default=os.environ.get("SIGNING_DATABASE_URL"))
    parser.add_argument("--chain", action="append", default=[], help="chain key (repeatable)")
    parser.add_argument("--export", type=Path, help="verify a JSON chain export instead of a database")
    args = parser.parse_args()

    if args.export is not None:
        if not args.export.is_file():
            print(f"Error: file not found: {args.export}", file=sys.stderr)
            return 1
        ok = verify_export(args.export)
    elif args.database_url:
        ok = verify_database(args.database_url, args.chain)
    else:
        parser.error("pass --database-url (or set SIGNING_DATABASE_URL) or --export")
    return 0 if ok else 2


if __name__ == "__main__":
    sys.exit(main())
