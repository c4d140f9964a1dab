"""
Object registry: durable current state of each tracked object.

The registry never decides what the new state is. It inserts what it is given
at creation, and afterwards only applies deltas guarded by the version the
caller read.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import func, or_, select, text, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from .errors import DuplicateCode, DuplicateTag, InvalidRequest, LockTimeout, VersionConflict
from .ledger import PROJECTION_FIELDS
from .models import TERMINAL_STATUSES, ObjectStatus, ObjectType, TrackedObject

logger = logging.getLogger(__name__)

# SQLSTATE for lock_not_available (raised when SET LOCAL lock_timeout expires).
PG_LOCK_NOT_AVAILABLE = "55P03"


@dataclass(frozen=True)
class ObjectDraft:
    object_code: str
    object_type: ObjectType
    name: str | None = None
    description: str | None = None
    rfid_tag: str | None = None
    location_id: int | None = None
    assignee_id: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class ObjectRegistry:
    def get(self, s: Session, object_code: str) -> TrackedObject | None:
        return s.scalars(select(TrackedObject).where(TrackedObject.object_code == object_code)).first()

    def load_for_update(
        self,
        s: Session,
        object_code: str,
        *,
        lock_timeout_seconds: float | None = None,
    ) -> TrackedObject | None:
        """
        Read the row for a mutation. On PostgreSQL this also takes the row lock
        (bounded by lock_timeout) so separate worker processes serialize too;
        other dialects ignore FOR UPDATE and rely on the in-process guard.
        """
        if s.get_bind().dialect.name == "postgresql" and lock_timeout_seconds:
            s.execute(text(f"SET LOCAL lock_timeout = {max(int(lock_timeout_seconds * 1000), 1)}"))
        q = (
            select(TrackedObject)
            .where(TrackedObject.object_code == object_code)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        try:
            return s.scalars(q).first()
        except OperationalError as e:
            if getattr(e.orig, "pgcode", None) == PG_LOCK_NOT_AVAILABLE:
                raise LockTimeout(f"Object {object_code} is locked by another worker.", object_code=object_code) from e
            raise

    def find_by_tag(self, s: Session, rfid_tag: str, *, exclude_code: str | None = None) -> TrackedObject | None:
        """The live (non-terminal) object bound to rfid_tag, if any."""
        q = select(TrackedObject).where(
            TrackedObject.rfid_tag == rfid_tag,
            TrackedObject.status.not_in(TERMINAL_STATUSES),
        )
        if exclude_code is not None:
            q = q.where(TrackedObject.object_code != exclude_code)
        return s.scalars(q).first()

    def create(self, s: Session, draft: ObjectDraft, *, actor_user_id: int | None, now: datetime) -> TrackedObject:
        if self.get(s, draft.object_code) is not None:
            raise DuplicateCode(f"Object code already exists: {draft.object_code}", object_code=draft.object_code)
        if draft.rfid_tag and self.find_by_tag(s, draft.rfid_tag) is not None:
            raise DuplicateTag(f"RFID tag {draft.rfid_tag} is bound to another object.", object_code=draft.object_code)

        obj = TrackedObject(
            object_code=draft.object_code,
            object_type=draft.object_type.value,
            name=draft.name,
            description=draft.description,
            status=ObjectStatus.ACTIVE.value,
            current_location_id=draft.location_id,
            assigned_to_id=draft.assignee_id,
            rfid_tag=draft.rfid_tag,
            metadata_=dict(draft.metadata),
            version=1,
            last_sequence=0,
            created_at=now,
            updated_at=now,
            created_by_user_id=actor_user_id,
            updated_by_user_id=actor_user_id,
        )
        s.add(obj)
        try:
            s.flush()
        except IntegrityError as e:
            # Lost a race with another request for the same code or tag.
            if "object_code" in str(e.orig).lower():
                raise DuplicateCode(f"Object code already exists: {draft.object_code}", object_code=draft.object_code) from e
            raise DuplicateTag(f"RFID tag {draft.rfid_tag} is bound to another object.", object_code=draft.object_code) from e
        return obj

    def apply_projection(
        self,
        s: Session,
        object_code: str,
        delta: dict[str, Any],
        expected_version: int,
        *,
        last_sequence: int,
        actor_user_id: int | None,
        now: datetime,
    ) -> TrackedObject:
        """Apply delta iff the stored version is still expected_version; bumps version by one."""
        unknown = set(delta) - set(PROJECTION_FIELDS)
        if unknown:
            raise InvalidRequest(f"Not projection fields: {', '.join(sorted(unknown))}", object_code=object_code)

        stmt = (
            update(TrackedObject)
            .where(TrackedObject.object_code == object_code, TrackedObject.version == expected_version)
            .values(
                **delta,
                version=expected_version + 1,
                last_sequence=last_sequence,
                updated_at=now,
                updated_by_user_id=actor_user_id,
            )
            .execution_options(synchronize_session=False)
        )
        try:
            result = s.execute(stmt)
        except IntegrityError as e:
            raise DuplicateTag(f"RFID tag {delta.get('rfid_tag')} is bound to another object.", object_code=object_code) from e
        if result.rowcount != 1:
            raise VersionConflict(
                f"Object {object_code} changed since version {expected_version} was read.",
                object_code=object_code,
            )
        return s.scalars(
            select(TrackedObject)
            .where(TrackedObject.object_code == object_code)
            .execution_options(populate_existing=True)
        ).one()

    def list_objects(
        self,
        s: Session,
        *,
        object_type: str | None = None,
        status: str | None = None,
        location_id: int | None = None,
        assigned_to_id: int | None = None,
        search: str | None = None,
        page: int = 1,
        per_page: int = 50,
    ) -> tuple[list[TrackedObject], int]:
        q = select(TrackedObject)
        if object_type:
            q = q.where(TrackedObject.object_type == object_type)
        if status:
            q = q.where(TrackedObject.status == status)
        if location_id is not None:
            q = q.where(TrackedObject.current_location_id == location_id)
        if assigned_to_id is not None:
            q = q.where(TrackedObject.assigned_to_id == assigned_to_id)
        if search:
            like = f"%{search}%"
            q = q.where(
                or_(
                    TrackedObject.object_code.ilike(like),
                    TrackedObject.name.ilike(like),
                    TrackedObject.description.ilike(like),
                    TrackedObject.rfid_tag.ilike(like),
                )
            )
        total = s.scalar(select(func.count()).select_from(q.subquery())) or 0
        items = list(
            s.scalars(
                q.order_by(TrackedObject.created_at.desc(), TrackedObject.id.desc())
                .offset((page - 1) * per_page)
                .limit(per_page)
            )
        )
        return items, total
