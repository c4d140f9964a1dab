"""
Custody ledger: the append-only, hash-chained event log per tracked object.

The ledger is the system of record. The registry row for an object is only a
cache of `replay(history(object_code))`.
"""
from __future__ import annotations

import hashlib
import logging
from collections.abc import Iterable
from dataclasses import dataclass, replace
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.custody.utils import canonical_json

from .errors import SequenceConflict
from .models import TERMINAL_STATUSES, CustodyEvent, EventKind

logger = logging.getLogger(__name__)

GENESIS_HASH = "GENESIS"

PROJECTION_FIELDS = ("status", "current_location_id", "assigned_to_id", "rfid_tag")


def compute_event_hash(content: dict, prev_hash: str) -> str:
    return hashlib.sha256((canonical_json(content) + prev_hash).encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class EventDraft:
    """An event before the ledger has numbered and chained it."""

    object_code: str
    event_kind: EventKind
    actor_user_id: int | None
    correlation_id: str
    from_location_id: int | None = None
    to_location_id: int | None = None
    from_assignee_id: int | None = None
    to_assignee_id: int | None = None
    from_status: str | None = None
    to_status: str | None = None
    from_tag: str | None = None
    to_tag: str | None = None
    reason: str | None = None


@dataclass(frozen=True)
class Projection:
    object_code: str
    status: str
    current_location_id: int | None
    assigned_to_id: int | None
    rfid_tag: str | None
    version: int
    last_sequence: int

    def fields(self) -> dict:
        return {name: getattr(self, name) for name in PROJECTION_FIELDS}

    def to_dict(self) -> dict:
        out = self.fields()
        out.update(object_code=self.object_code, version=self.version, last_sequence=self.last_sequence)
        return out


def apply_event(state: Projection | None, ev: CustodyEvent) -> Projection:
    """Fold one event into a projection."""
    kind = EventKind(ev.event_kind)
    if kind is EventKind.CREATE:
        return Projection(
            object_code=ev.object_code,
            status=ev.to_status or "active",
            current_location_id=ev.to_location_id,
            assigned_to_id=ev.to_assignee_id,
            rfid_tag=ev.to_tag,
            version=ev.object_version,
            last_sequence=ev.sequence,
        )
    if state is None:
        raise ValueError(f"{ev.object_code}: first event is {kind.value}, not create")

    state = replace(state, version=ev.object_version, last_sequence=ev.sequence)
    if kind is EventKind.MOVE:
        return replace(state, current_location_id=ev.to_location_id)
    if kind is EventKind.ASSIGN:
        return replace(state, assigned_to_id=ev.to_assignee_id)
    if kind is EventKind.TAG:
        return replace(state, rfid_tag=ev.to_tag)
    # STATUS_CHANGE and RETIRE
    return replace(state, status=ev.to_status)


def replay(events: Iterable[CustodyEvent]) -> Projection | None:
    state: Projection | None = None
    for ev in events:
        state = apply_event(state, ev)
    return state


class CustodyLedger:
    """
    Stateless ledger operations. Writes must run inside the caller's
    transaction so they commit or roll back together with the registry.
    """

    def last_event(self, s: Session, object_code: str) -> CustodyEvent | None:
        return s.scalars(
            select(CustodyEvent)
            .where(CustodyEvent.object_code == object_code)
            .order_by(CustodyEvent.sequence.desc())
            .limit(1)
        ).first()

    def append(
        self,
        s: Session,
        draft: EventDraft,
        *,
        object_version: int,
        recorded_at: datetime,
    ) -> CustodyEvent:
        """Number, chain and stage one event. Raises SequenceConflict on a racing append."""
        last = self.last_event(s, draft.object_code)
        sequence = (last.sequence if last else 0) + 1
        prev_hash = last.event_hash if last else GENESIS_HASH
        # Per-object timestamps never run backwards, so as_of cut-offs stay prefix-shaped.
        if last is not None and recorded_at < last.recorded_at:
            recorded_at = last.recorded_at

        ev = CustodyEvent(
            object_code=draft.object_code,
            sequence=sequence,
            event_kind=draft.event_kind.value,
            actor_user_id=draft.actor_user_id,
            from_location_id=draft.from_location_id,
            to_location_id=draft.to_location_id,
            from_assignee_id=draft.from_assignee_id,
            to_assignee_id=draft.to_assignee_id,
            from_status=draft.from_status,
            to_status=draft.to_status,
            from_tag=draft.from_tag,
            to_tag=draft.to_tag,
            object_version=object_version,
            recorded_at=recorded_at,
            correlation_id=draft.correlation_id,
            reason=draft.reason,
            prev_hash=prev_hash,
            event_hash="",
        )
        ev.event_hash = compute_event_hash(ev.hash_content(), prev_hash)
        s.add(ev)
        try:
            s.flush()
        except IntegrityError as e:
            logger.error(
                "Custody sequence conflict object_code=%s sequence=%s (concurrent append bypassed the guard)",
                draft.object_code,
                sequence,
            )
            raise SequenceConflict(
                f"Sequence {sequence} for {draft.object_code} was claimed concurrently.",
                object_code=draft.object_code,
            ) from e
        return ev

    def history(self, s: Session, object_code: str, as_of: datetime | None = None) -> list[CustodyEvent]:
        """Chain of custody, oldest first, optionally cut off at as_of (inclusive)."""
        q = select(CustodyEvent).where(CustodyEvent.object_code == object_code)
        if as_of is not None:
            q = q.where(CustodyEvent.recorded_at <= as_of)
        return list(s.scalars(q.order_by(CustodyEvent.sequence.asc())))

    def events_for_correlation(self, s: Session, correlation_id: str) -> list[CustodyEvent]:
        return list(
            s.scalars(
                select(CustodyEvent)
                .where(CustodyEvent.correlation_id == correlation_id)
                .order_by(CustodyEvent.object_code.asc(), CustodyEvent.sequence.asc())
            )
        )

    def reconstruct_state(self, s: Session, object_code: str, as_of: datetime | None = None) -> Projection | None:
        """What the registry row should hold at as_of; None if the object did not exist yet."""
        return replay(self.history(s, object_code, as_of))

    def verify_chain(self, s: Session, object_code: str) -> tuple[bool, list[str]]:
        """Check numbering, lifecycle shape and every hash link for one object."""
        errors: list[str] = []
        prev_hash = GENESIS_HASH
        terminal_at: int | None = None
        for expected_seq, ev in enumerate(self.history(s, object_code), start=1):
            if ev.sequence != expected_seq:
                errors.append(f"sequence {ev.sequence} found where {expected_seq} was expected")
            if expected_seq == 1 and ev.event_kind != EventKind.CREATE.value:
                errors.append(f"first event is {ev.event_kind}, not create")
            if expected_seq > 1 and ev.event_kind == EventKind.CREATE.value:
                errors.append(f"create event repeated at sequence {ev.sequence}")
            if terminal_at is not None:
                errors.append(f"event {ev.sequence} follows terminal event {terminal_at}")
            if ev.prev_hash != prev_hash:
                errors.append(f"event {ev.sequence} does not link to its predecessor")
            if compute_event_hash(ev.hash_content(), ev.prev_hash) != ev.event_hash:
                errors.append(f"event {ev.sequence} content does not match its hash")
            if ev.to_status in TERMINAL_STATUSES and ev.event_kind in (
                EventKind.STATUS_CHANGE.value,
                EventKind.RETIRE.value,
            ):
                terminal_at = ev.sequence
            prev_hash = ev.event_hash
        return len(errors) == 0, errors
