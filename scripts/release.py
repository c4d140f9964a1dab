#!/usr/bin/env python3
"""Release step: upgrade the schema, seed roles, optionally audit the ledger.

Runs before the web workers start (see scripts/start.py). With
--verify-ledger the release fails if any object's registry row disagrees
with its chain of custody, so a broken deploy never starts serving.

Usage:
  python scripts/release.py
  python scripts/release.py --verify-ledger
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from scripts._db_utils import script_database_url  # noqa: E402


def upgrade_schema(database_url: str, revision: str = "head") -> None:
    from alembic import command
    from alembic.config import Config

    cfg = Config(str(ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(ROOT / "migrations"))
    cfg.set_main_option("sqlalchemy.url", database_url)
    command.upgrade(cfg, revision)


def audit_ledger(database_url: str) -> int:
    """Number of objects whose ledger and registry disagree."""
    from app.custody.modules.custody.service import TransactionCoordinator
    from app.custody.rbac import RbacAccessGate, UserDirectory
    from scripts._db_utils import script_store
    from scripts.verify_ledger import verify_all

    with script_store(database_url) as store:
        coordinator = TransactionCoordinator(store, gate=RbacAccessGate(store), directory=UserDirectory(store))
        failed = [r for r in verify_all(coordinator) if not r.ok]
    for r in failed:
        print(f"Ledger mismatch: {r.object_code} {sorted(r.mismatches)} {r.chain_errors}", flush=True)
    return len(failed)


def run_release(*, seed: bool = True, verify_ledger: bool = False) -> None:
    if not (os.environ.get("DATABASE_URL") or "").strip():
        raise RuntimeError("DATABASE_URL must be set for a release.")
    database_url = script_database_url(None)
    env = (os.environ.get("ENV") or "").strip().lower()
    if env in ("prod", "production") and database_url.startswith("sqlite"):
        raise RuntimeError("Custody releases in production need PostgreSQL, not SQLite.")

    print(f"[release] env={env or 'development'} upgrading schema", flush=True)
    upgrade_schema(database_url)

    if seed:
        from scripts import init_db

        print("[release] seeding roles and admin user", flush=True)
        init_db.seed_only(database_url=database_url)

    if verify_ledger:
        print("[release] verifying custody ledger", flush=True)
        failures = audit_ledger(database_url)
        if failures:
            raise RuntimeError(f"{failures} object(s) failed ledger verification.")
    print("[release] done", flush=True)


def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--skip-seed", action="store_true", help="Do not seed permissions/roles/admin")
    parser.add_argument("--verify-ledger", action="store_true", help="Fail if any object's ledger is inconsistent")
    args = parser.parse_args()
    run_release(seed=not args.skip_seed, verify_ledger=args.verify_ledger)


if __name__ == "__main__":
    main()
