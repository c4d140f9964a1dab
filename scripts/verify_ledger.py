#!/usr/bin/env python3
"""Replay every object's custody ledger and compare it with the registry.

Reports objects whose stored state disagrees with their history or whose hash
chain is broken. Exits 1 if any object fails.

Usage:
  python scripts/verify_ledger.py
  python scripts/verify_ledger.py --object-code DOC-2024-00017 --verbose
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.custody.modules.custody.errors import StorageUnavailable  # noqa: E402
from app.custody.modules.custody.models import CustodyEvent, TrackedObject  # noqa: E402
from app.custody.modules.custody.service import ConsistencyReport, TransactionCoordinator  # noqa: E402
from app.custody.rbac import RbacAccessGate, UserDirectory  # noqa: E402
from scripts._db_utils import script_store  # noqa: E402


def verify_all(coordinator: TransactionCoordinator, object_codes: list[str] | None = None) -> list[ConsistencyReport]:
    """Check each object; raises StorageUnavailable if the database cannot be read."""
    if object_codes is None:
        try:
            with coordinator.store.read_session() as s:
                # Ledger-only codes count too: an event without a registry row is a mismatch.
                codes = set(s.scalars(select(TrackedObject.object_code)))
                codes.update(s.scalars(select(CustodyEvent.object_code).distinct()))
        except SQLAlchemyError as e:
            raise StorageUnavailable("Storage failure while listing objects.") from e
        object_codes = sorted(codes)
    return [coordinator.check_consistency(code) for code in object_codes]


def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--database-url", default=None, help="Defaults to $DATABASE_URL")
    parser.add_argument("--object-code", action="append", default=None, help="Check only this object (repeatable)")
    parser.add_argument("--verbose", action="store_true", help="Print passing objects too")
    args = parser.parse_args()

    with script_store(args.database_url) as store:
        coordinator = TransactionCoordinator(store, gate=RbacAccessGate(store), directory=UserDirectory(store))
        try:
            reports = verify_all(coordinator, args.object_code)
        except StorageUnavailable as e:
            print(f"ERROR {e.message}", file=sys.stderr)
            sys.exit(2)

    failed = [r for r in reports if not r.ok]
    for r in reports:
        if r.ok and not args.verbose:
            continue
        print(f"{'OK  ' if r.ok else 'FAIL'} {r.object_code}")
        for name, values in r.mismatches.items():
            print(f"     {name}: registry={values['registry']!r} ledger={values['ledger']!r}")
        for err in r.chain_errors:
            print(f"     chain: {err}")

    print(f"Checked {len(reports)} object(s); {len(failed)} failed.")
    if failed:
        sys.exit(1)


if __name__ == "__main__":
    main()
