from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from app.custody.models import Base
from app.custody.utils import utcnow


class ObjectType(str, Enum):
    DOCKET = "docket"
    EVIDENCE = "evidence"
    EQUIPMENT = "equipment"
    FILE = "file"
    TOOL = "tool"


class ObjectStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    ARCHIVED = "archived"
    DISPOSED = "disposed"
    RETIRED = "retired"


class EventKind(str, Enum):
    CREATE = "create"
    MOVE = "move"
    ASSIGN = "assign"
    TAG = "tag"
    STATUS_CHANGE = "status_change"
    RETIRE = "retire"


TERMINAL_STATUSES = (ObjectStatus.DISPOSED.value, ObjectStatus.RETIRED.value)

_LIVE_TAG_PREDICATE = text("rfid_tag IS NOT NULL AND status NOT IN ('disposed', 'retired')")

JSONType = JSON().with_variant(JSONB(), "postgresql")


class TrackedObject(Base):
    """
    Current state of a tracked object. Every projection column here is
    derivable by replaying the object's custody events.
    """

    __tablename__ = "tracked_objects"
    __table_args__ = (
        Index("idx_tracked_objects_type_status", "object_type", "status"),
        Index("idx_tracked_objects_location", "current_location_id"),
        Index("idx_tracked_objects_assigned", "assigned_to_id"),
        # One live object per tag; terminal objects keep their last tag for the record.
        Index(
            "uq_tracked_objects_live_tag",
            "rfid_tag",
            unique=True,
            postgresql_where=_LIVE_TAG_PREDICATE,
            sqlite_where=_LIVE_TAG_PREDICATE,
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    # Identity (immutable)
    object_code: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)  # e.g. "DOC-2024-00017"
    object_type: Mapped[str] = mapped_column(String(16), nullable=False)  # docket, evidence, equipment, file, tool
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Projection
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=ObjectStatus.ACTIVE.value)
    current_location_id: Mapped[int | None] = mapped_column(ForeignKey("locations.id", ondelete="RESTRICT"), nullable=True)
    assigned_to_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=True)
    rfid_tag: Mapped[str | None] = mapped_column(String(128), nullable=True)

    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONType, nullable=True, default=dict)

    # Concurrency bookkeeping
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    last_sequence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    updated_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict:
        return {
            "object_code": self.object_code,
            "object_type": self.object_type,
            "name": self.name,
            "description": self.description,
            "status": self.status,
            "current_location_id": self.current_location_id,
            "assigned_to_id": self.assigned_to_id,
            "rfid_tag": self.rfid_tag,
            "metadata": self.metadata_ or {},
            "version": self.version,
            "last_sequence": self.last_sequence,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class CustodyEvent(Base):
    """
    Append-only chain-of-custody record. Never updated, never deleted.
    event_hash = sha256(canonical content + prev_hash); sequence 1 chains from GENESIS.
    """

    __tablename__ = "custody_events"
    __table_args__ = (
        UniqueConstraint("object_code", "sequence", name="uq_custody_events_object_sequence"),
        Index("idx_custody_events_object_recorded", "object_code", "recorded_at"),
        Index("idx_custody_events_correlation", "correlation_id"),
        Index("idx_custody_events_actor", "actor_user_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    object_code: Mapped[str] = mapped_column(
        ForeignKey("tracked_objects.object_code", ondelete="RESTRICT"), nullable=False
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    event_kind: Mapped[str] = mapped_column(String(32), nullable=False)
    actor_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=True)

    from_location_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    to_location_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    from_assignee_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    to_assignee_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    from_status: Mapped[str | None] = mapped_column(String(16), nullable=True)
    to_status: Mapped[str | None] = mapped_column(String(16), nullable=True)
    from_tag: Mapped[str | None] = mapped_column(String(128), nullable=True)
    to_tag: Mapped[str | None] = mapped_column(String(128), nullable=True)

    object_version: Mapped[int] = mapped_column(Integer, nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    correlation_id: Mapped[str] = mapped_column(String(64), nullable=False)
    reason: Mapped[str | None] = mapped_column(String(512), nullable=True)

    prev_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    event_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    def hash_content(self) -> dict:
        """Fields covered by event_hash (everything except the hashes and row id)."""
        return {
            "object_code": self.object_code,
            "sequence": self.sequence,
            "event_kind": self.event_kind,
            "actor_user_id": self.actor_user_id,
            "from_location_id": self.from_location_id,
            "to_location_id": self.to_location_id,
            "from_assignee_id": self.from_assignee_id,
            "to_assignee_id": self.to_assignee_id,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "from_tag": self.from_tag,
            "to_tag": self.to_tag,
            "object_version": self.object_version,
            "recorded_at": self.recorded_at.isoformat() if self.recorded_at else None,
            "correlation_id": self.correlation_id,
            "reason": self.reason,
        }

    def to_dict(self) -> dict:
        out = self.hash_content()
        out["prev_hash"] = self.prev_hash
        out["event_hash"] = self.event_hash
        return out
