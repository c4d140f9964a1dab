"""
Seed permissions, roles and the admin user (idempotent).

Usage:
  python scripts/init_db.py
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

from sqlalchemy import select
from sqlalchemy.orm import Session
from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.custody.models import Permission, Role, User  # noqa: E402
from scripts._db_utils import script_database_url, script_session  # noqa: E402

PERMISSIONS = {
    "admin.view": "Admin: view",
    # Custody engine: one key per operation kind
    "custody.view": "Custody: view objects and history",
    "custody.create": "Custody: register objects",
    "custody.move": "Custody: move objects",
    "custody.assign": "Custody: assign objects",
    "custody.tag": "Custody: bind RFID tags",
    "custody.status_change": "Custody: change status",
    "custody.retire": "Custody: retire objects",
    "custody.audit": "Custody: verify ledger consistency",
    # Locations
    "locations.view": "Locations: view",
    "locations.manage": "Locations: create and retire",
}

ROLES = {
    "admin": ("Administrator", tuple(PERMISSIONS)),
    "custodian": (
        "Custodian",
        (
            "custody.view",
            "custody.create",
            "custody.move",
            "custody.assign",
            "custody.tag",
            "custody.status_change",
            "locations.view",
        ),
    ),
    "auditor": ("Auditor", ("custody.view", "custody.audit", "locations.view")),
    "viewer": ("Viewer", ("custody.view", "locations.view")),
}


def seed(s: Session, *, admin_email: str, admin_password: str) -> User:
    """
    Seed permissions/roles/admin user in an idempotent way.
    Does NOT overwrite an existing admin user's password.
    """
    perms: dict[str, Permission] = {}
    for key, name in PERMISSIONS.items():
        p = s.scalars(select(Permission).where(Permission.key == key)).one_or_none()
        if not p:
            p = Permission(key=key, name=name)
            s.add(p)
        perms[key] = p

    roles: dict[str, Role] = {}
    for key, (name, grants) in ROLES.items():
        role = s.scalars(select(Role).where(Role.key == key)).one_or_none()
        if not role:
            role = Role(key=key, name=name)
            s.add(role)
        for perm_key in grants:
            if perms[perm_key] not in role.permissions:
                role.permissions.append(perms[perm_key])
        roles[key] = role

    user = s.scalars(select(User).where(User.email == admin_email)).one_or_none()
    if not user:
        user = User(
            email=admin_email,
            password_hash=generate_password_hash(admin_password),
            full_name="Administrator",
            is_active=True,
        )
        s.add(user)
    if roles["admin"] not in user.roles:
        user.roles.append(roles["admin"])
    s.flush()
    return user


def seed_only(*, database_url: str | None = None) -> None:
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@example.com").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"

    with script_session(script_database_url(database_url)) as s:
        seed(s, admin_email=admin_email, admin_password=admin_password)

    print("Initialized database (seed_only).")
    print(f"Admin email: {admin_email}")
    print("Admin password: (from ADMIN_PASSWORD)")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
