#!/usr/bin/env python3
"""Grant a role to a user (idempotent).

Usage:
  python scripts/grant_role.py --email clerk@example.com --role custodian
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from sqlalchemy import select
from sqlalchemy.orm import Session

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.custody.models import Role, User  # noqa: E402
from scripts._db_utils import script_session  # noqa: E402


def grant_role(s: Session, email: str, role_key: str) -> str:
    user = s.scalars(select(User).where(User.email.ilike(email.strip()))).one_or_none()
    if not user:
        return f"User not found: {email}"
    role = s.scalars(select(Role).where(Role.key == role_key)).one_or_none()
    if not role:
        return f"Role not found: {role_key}. Run python scripts/init_db.py first."
    if role in (user.roles or []):
        return f"User already has role {role_key}: {email}"
    user.roles.append(role)
    return f"Role {role_key} granted to {email}"


def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--email", required=True, help="User email")
    parser.add_argument("--role", default="admin", help="Role key (admin, custodian, auditor, viewer)")
    parser.add_argument("--database-url", default=None, help="Defaults to $DATABASE_URL")
    args = parser.parse_args()

    with script_session(args.database_url) as s:
        print(grant_role(s, args.email, args.role))


if __name__ == "__main__":
    main()
