"""
Location graph reads and location administration.
"""
from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.custody.audit import record_event
from app.custody.utils import parse_int, utcnow

from .models import Location

if TYPE_CHECKING:
    from app.custody.models import User


VALID_KINDS = ("zone", "box")

# A box must sit inside a zone; zones may nest or be roots.
ALLOWED_PARENT_KINDS = {
    "zone": {None, "zone"},
    "box": {"zone"},
}


class LocationError(ValueError):
    pass


class LocationInUse(LocationError):
    pass


class LocationGraph:
    """Read-only view of the zone/box tree, bound to one session."""

    def __init__(self, s: Session):
        self.s = s

    def resolve(self, location_id: int) -> Location | None:
        return self.s.get(Location, location_id)

    def is_active(self, location_id: int) -> bool:
        loc = self.resolve(location_id)
        return bool(loc and loc.is_active)

    def children(self, location_id: int, *, active_only: bool = True) -> list[Location]:
        q = select(Location).where(Location.parent_id == location_id)
        if active_only:
            q = q.where(Location.is_active.is_(True))
        return list(self.s.scalars(q.order_by(Location.code.asc())))

    def path(self, location_id: int) -> list[Location]:
        """Root-to-leaf chain ending at location_id; empty if it does not exist."""
        out: list[Location] = []
        seen: set[int] = set()
        loc = self.resolve(location_id)
        while loc is not None and loc.id not in seen:
            seen.add(loc.id)
            out.append(loc)
            loc = self.resolve(loc.parent_id) if loc.parent_id is not None else None
        out.reverse()
        return out

    def list_locations(self, *, include_retired: bool = False) -> list[Location]:
        q = select(Location)
        if not include_retired:
            q = q.where(Location.is_active.is_(True))
        return list(self.s.scalars(q.order_by(Location.code.asc())))


def validate_location_payload(payload: dict) -> list[str]:
    """Validate location creation payload. Returns list of errors."""
    errors = []
    if not (payload.get("code") or "").strip():
        errors.append("Location code is required.")
    if not (payload.get("name") or "").strip():
        errors.append("Location name is required.")
    kind = (payload.get("kind") or "zone").strip()
    if kind not in VALID_KINDS:
        errors.append(f"Invalid kind. Must be one of: {', '.join(VALID_KINDS)}")
    for key in ("parent_id", "capacity"):
        try:
            value = parse_int(payload.get(key))
        except ValueError:
            errors.append(f"{key} must be an integer.")
            continue
        if key == "capacity" and value is not None and value < 0:
            errors.append("capacity must not be negative.")
    return errors


def create_location(s: Session, payload: dict, user: "User | None") -> Location:
    """Create a zone or box. Raises LocationError on invalid input."""
    errors = validate_location_payload(payload)
    if errors:
        raise LocationError("; ".join(errors))

    code = payload["code"].strip()
    kind = (payload.get("kind") or "zone").strip()
    parent_id = parse_int(payload.get("parent_id"))

    if s.scalar(select(Location.id).where(Location.code == code)) is not None:
        raise LocationError(f"Location code already exists: {code}")

    parent = None
    if parent_id is not None:
        parent = s.get(Location, parent_id)
        if parent is None or not parent.is_active:
            raise LocationError(f"Parent location {parent_id} does not exist or is retired.")
    parent_kind = parent.kind if parent is not None else None
    if parent_kind not in ALLOWED_PARENT_KINDS[kind]:
        raise LocationError(f"A {kind} cannot be placed under {parent_kind or 'the root'}.")

    loc = Location(
        code=code,
        name=payload["name"].strip(),
        kind=kind,
        parent_id=parent_id,
        capacity=parse_int(payload.get("capacity")),
        description=(payload.get("description") or "").strip() or None,
        is_active=True,
        created_at=utcnow(),
        created_by_user_id=user.id if user else None,
    )
    s.add(loc)
    s.flush()

    record_event(
        s,
        actor=user,
        action="location.create",
        entity_type="Location",
        entity_id=str(loc.id),
        metadata={"code": loc.code, "kind": loc.kind, "parent_id": loc.parent_id},
    )
    return loc


def occupant_count(s: Session, location_id: int) -> int:
    """Non-terminal tracked objects currently at location_id."""
    from app.custody.modules.custody.models import TERMINAL_STATUSES, TrackedObject

    return s.scalar(
        select(func.count(TrackedObject.id)).where(
            TrackedObject.current_location_id == location_id,
            TrackedObject.status.not_in(TERMINAL_STATUSES),
        )
    ) or 0


def retire_location(s: Session, location: Location, user: "User | None", reason: str) -> Location:
    """
    Retire a location. Refused while it still holds live objects or active
    child locations, so no object is ever left pointing at a retired place.
    """
    if not location.is_active:
        raise LocationError(f"Location {location.code} is already retired.")

    occupants = occupant_count(s, location.id)
    if occupants:
        raise LocationInUse(f"Location {location.code} still holds {occupants} object(s).")

    active_children = LocationGraph(s).children(location.id)
    if active_children:
        raise LocationInUse(f"Location {location.code} still has {len(active_children)} active child location(s).")

    location.is_active = False
    location.retired_at = utcnow()

    record_event(
        s,
        actor=user,
        action="location.retire",
        entity_type="Location",
        entity_id=str(location.id),
        reason=reason,
        metadata={"code": location.code},
    )
    return location
