"""
Custody service layer: the transaction coordinator.

Every custody mutation runs the same protocol:

1. authorize the actor (no lock or write before this)
2. take the per-object guard
3. load the object row (row-locked where the database supports it)
4. validate the request against the object and the location graph
5. compute the event drafts and the projection delta
6. append the events and apply the delta in one database transaction,
   guarded by the version read in step 3
7. return the updated object and the new events

Any failure before the commit leaves nothing behind. Outcomes are reported as
OperationResult values; business failures are never raised to the caller.
"""
from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.custody.db import CustodyStore
from app.custody.modules.locations.service import LocationGraph
from app.custody.utils import canonical_json, utcnow

from .errors import (
    CustodyError,
    DuplicateCode,
    DuplicateTag,
    Forbidden,
    InvalidActor,
    InvalidLocation,
    InvalidRequest,
    InvalidTransition,
    NotFound,
    StorageUnavailable,
    VersionConflict,
)
from .guard import ConcurrencyGuard
from .ledger import CustodyLedger, EventDraft, Projection
from .models import CustodyEvent, EventKind, ObjectStatus, ObjectType, TrackedObject
from .registry import ObjectDraft, ObjectRegistry

logger = logging.getLogger(__name__)


MAX_CODE_LENGTH = 64
MAX_TAG_LENGTH = 128

# Valid status transitions (disposed and retired are terminal)
STATUS_TRANSITIONS = {
    "active": {"inactive", "archived", "disposed", "retired"},
    "inactive": {"active", "disposed", "retired"},
    "archived": {"disposed", "retired"},
    "disposed": set(),
    "retired": set(),
}


class AccessControlGate(Protocol):
    def authorize(self, actor_id: int | None, operation_kind: str, object_code: str) -> bool: ...


class ActorDirectory(Protocol):
    def exists(self, actor_id: int) -> bool: ...


@dataclass(frozen=True)
class OperationResult:
    object: TrackedObject | None = None
    events: tuple[CustodyEvent, ...] = ()
    projection: Projection | None = None
    error: CustodyError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def retriable(self) -> bool:
        return self.error is not None and self.error.retriable

    def unwrap(self) -> TrackedObject | None:
        if self.error is not None:
            raise self.error
        return self.object


@dataclass(frozen=True)
class ConsistencyReport:
    object_code: str
    ok: bool
    mismatches: dict[str, dict[str, Any]] = field(default_factory=dict)
    chain_errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "object_code": self.object_code,
            "ok": self.ok,
            "mismatches": self.mismatches,
            "chain_errors": self.chain_errors,
        }


def can_transition_to(current: str, new_status: str) -> tuple[bool, list[str]]:
    """Check the status state machine."""
    errors = []
    if current not in STATUS_TRANSITIONS:
        errors.append(f"Current status '{current}' is invalid")
        return False, errors
    if not STATUS_TRANSITIONS[current]:
        errors.append(f"Object is {current}; no further changes are allowed")
        return False, errors
    if new_status not in STATUS_TRANSITIONS[current]:
        errors.append(f"Cannot transition from '{current}' to '{new_status}'")
        return False, errors
    return True, []


def text_field(value: Any, label: str) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise InvalidRequest(f"{label} must be a string.")
    return value.strip()


def normalize_tag(rfid_tag: str | None) -> str | None:
    tag = text_field(rfid_tag, "RFID tag")
    if len(tag) > MAX_TAG_LENGTH:
        raise InvalidRequest(f"RFID tag is longer than {MAX_TAG_LENGTH} characters.")
    return tag or None


def parse_object_type(value: Any) -> ObjectType:
    try:
        return ObjectType((value or "").strip().lower())
    except (ValueError, AttributeError):
        allowed = ", ".join(t.value for t in ObjectType)
        raise InvalidRequest(f"Invalid object type {value!r}. Must be one of: {allowed}")


def parse_status(value: Any) -> ObjectStatus:
    try:
        return ObjectStatus((value or "").strip().lower())
    except (ValueError, AttributeError):
        allowed = ", ".join(t.value for t in ObjectStatus)
        raise InvalidRequest(f"Invalid status {value!r}. Must be one of: {allowed}")


def validate_metadata(metadata: Any, max_bytes: int) -> dict[str, Any]:
    if metadata is None:
        return {}
    if not isinstance(metadata, dict):
        raise InvalidRequest("Metadata must be a key-value object.")
    if any(not isinstance(k, str) for k in metadata):
        raise InvalidRequest("Metadata keys must be strings.")
    size = len(canonical_json(metadata).encode("utf-8"))
    if size > max_bytes:
        raise InvalidRequest(f"Metadata is {size} bytes; the limit is {max_bytes}.")
    return metadata


def build_object_draft(payload: dict, *, metadata_max_bytes: int) -> ObjectDraft:
    """Turn a create payload into an ObjectDraft. Raises InvalidRequest."""
    code = text_field(payload.get("object_code"), "Object code")
    if not code:
        raise InvalidRequest("Object code is required.")
    if len(code) > MAX_CODE_LENGTH:
        raise InvalidRequest(f"Object code is longer than {MAX_CODE_LENGTH} characters.")
    return ObjectDraft(
        object_code=code,
        object_type=parse_object_type(payload.get("object_type")),
        name=text_field(payload.get("name"), "Name") or None,
        description=text_field(payload.get("description"), "Description") or None,
        rfid_tag=normalize_tag(payload.get("rfid_tag")),
        location_id=payload.get("location_id"),
        assignee_id=payload.get("assignee_id"),
        metadata=validate_metadata(payload.get("metadata"), metadata_max_bytes),
    )


def _delta_from_drafts(drafts: Sequence[EventDraft]) -> dict[str, Any]:
    delta: dict[str, Any] = {}
    for d in drafts:
        if d.event_kind is EventKind.MOVE:
            delta["current_location_id"] = d.to_location_id
        elif d.event_kind is EventKind.ASSIGN:
            delta["assigned_to_id"] = d.to_assignee_id
        elif d.event_kind is EventKind.TAG:
            delta["rfid_tag"] = d.to_tag
        elif d.event_kind in (EventKind.STATUS_CHANGE, EventKind.RETIRE):
            delta["status"] = d.to_status
    return delta


# A plan validates the loaded object and returns the events to write (empty = no-op).
Plan = Callable[[Session, TrackedObject, LocationGraph], list[EventDraft]]


class TransactionCoordinator:
    def __init__(
        self,
        store: CustodyStore,
        *,
        gate: AccessControlGate,
        directory: ActorDirectory,
        guard: ConcurrencyGuard | None = None,
        clock: Callable[[], datetime] = utcnow,
        metadata_max_bytes: int = 8192,
        ledger: CustodyLedger | None = None,
        registry: ObjectRegistry | None = None,
    ):
        self.store = store
        self.gate = gate
        self.directory = directory
        self.guard = guard or ConcurrencyGuard()
        self.clock = clock
        self.metadata_max_bytes = metadata_max_bytes
        self.ledger = ledger or CustodyLedger()
        self.registry = registry or ObjectRegistry()

    # ---------- helpers ----------

    def _authorize(self, actor_id: int | None, operation_kinds: Sequence[str], object_code: str) -> None:
        for kind in operation_kinds:
            if not self.gate.authorize(actor_id, kind, object_code):
                raise Forbidden(f"Actor {actor_id} may not {kind} {object_code}.", object_code=object_code)

    def _fail(self, operation: str, object_code: str, e: CustodyError) -> OperationResult:
        if e.retriable:
            logger.warning("Custody %s %s failed (retriable): %s", operation, object_code, e.message)
        else:
            logger.info("Custody %s %s rejected: kind=%s %s", operation, object_code, e.kind.value, e.message)
        return OperationResult(error=e)

    def _storage_failure(self, operation: str, object_code: str, e: Exception) -> OperationResult:
        logger.exception("Custody %s %s storage failure", operation, object_code)
        return OperationResult(
            error=StorageUnavailable(f"Storage failure during {operation}; nothing was recorded.", object_code=object_code)
        )

    @staticmethod
    def _ensure_not_terminal(obj: TrackedObject) -> None:
        if obj.is_terminal:
            raise InvalidTransition(
                f"Object {obj.object_code} is {obj.status}; no further changes are allowed.",
                object_code=obj.object_code,
            )

    def _resolve_location(self, graph: LocationGraph, location_id: Any, object_code: str) -> int:
        if isinstance(location_id, bool) or not isinstance(location_id, int):
            raise InvalidRequest("Location id must be an integer.", object_code=object_code)
        if not graph.is_active(location_id):
            raise InvalidLocation(f"Location {location_id} does not exist or is retired.", object_code=object_code)
        return location_id

    def _check_actor(self, actor_id: Any, object_code: str) -> int:
        if isinstance(actor_id, bool) or not isinstance(actor_id, int):
            raise InvalidRequest("Assignee id must be an integer.", object_code=object_code)
        if not self.directory.exists(actor_id):
            raise InvalidActor(f"Actor {actor_id} is not a recognized identity.", object_code=object_code)
        return actor_id

    def _mutate(
        self,
        operation: str,
        object_code: str,
        actor_id: int | None,
        authorize_as: Sequence[str],
        plan: Plan,
        *,
        correlation_id: str | None,
    ) -> OperationResult:
        object_code = (object_code or "").strip()
        try:
            self._authorize(actor_id, authorize_as, object_code)
            with self.guard.acquire(object_code):
                with self.store.session() as s:
                    obj = self.registry.load_for_update(
                        s, object_code, lock_timeout_seconds=self.guard.timeout_seconds
                    )
                    if obj is None:
                        raise NotFound(f"Object {object_code} not found.", object_code=object_code)
                    drafts = plan(s, obj, LocationGraph(s))
                    if not drafts:
                        return OperationResult(object=obj)

                    expected_version = obj.version
                    now = self.clock()
                    events = [
                        self.ledger.append(s, d, object_version=expected_version + 1, recorded_at=now)
                        for d in drafts
                    ]
                    try:
                        updated = self.registry.apply_projection(
                            s,
                            object_code,
                            _delta_from_drafts(drafts),
                            expected_version,
                            last_sequence=events[-1].sequence,
                            actor_user_id=actor_id,
                            now=now,
                        )
                    except VersionConflict:
                        logger.error(
                            "Custody version conflict under guard object_code=%s expected_version=%s",
                            object_code,
                            expected_version,
                        )
                        raise
            logger.info(
                "Custody %s object_code=%s version=%s events=%s correlation_id=%s",
                operation,
                object_code,
                updated.version,
                ",".join(f"{e.sequence}:{e.event_kind}" for e in events),
                events[0].correlation_id,
            )
            return OperationResult(object=updated, events=tuple(events))
        except CustodyError as e:
            return self._fail(operation, object_code, e)
        except SQLAlchemyError as e:
            return self._storage_failure(operation, object_code, e)

    # ---------- mutations ----------

    def create_object(
        self,
        payload: dict,
        actor_id: int | None,
        *,
        correlation_id: str | None = None,
        reason: str | None = None,
    ) -> OperationResult:
        """Register a new tracked object; its chain of custody starts with a create event."""
        raw_code = payload.get("object_code")
        code = raw_code.strip() if isinstance(raw_code, str) else ""
        try:
            draft = build_object_draft(payload, metadata_max_bytes=self.metadata_max_bytes)
            self._authorize(actor_id, [EventKind.CREATE.value], draft.object_code)
            with self.guard.acquire(draft.object_code):
                with self.store.session() as s:
                    if self.registry.get(s, draft.object_code) is not None:
                        raise DuplicateCode(f"Object code already exists: {draft.object_code}", object_code=draft.object_code)
                    if draft.rfid_tag and self.registry.find_by_tag(s, draft.rfid_tag) is not None:
                        raise DuplicateTag(
                            f"RFID tag {draft.rfid_tag} is bound to another object.", object_code=draft.object_code
                        )
                    if draft.location_id is not None:
                        self._resolve_location(LocationGraph(s), draft.location_id, draft.object_code)
                    if draft.assignee_id is not None:
                        self._check_actor(draft.assignee_id, draft.object_code)

                    now = self.clock()
                    obj = self.registry.create(s, draft, actor_user_id=actor_id, now=now)
                    ev = self.ledger.append(
                        s,
                        EventDraft(
                            object_code=draft.object_code,
                            event_kind=EventKind.CREATE,
                            actor_user_id=actor_id,
                            correlation_id=correlation_id or uuid.uuid4().hex,
                            to_location_id=draft.location_id,
                            to_assignee_id=draft.assignee_id,
                            to_status=ObjectStatus.ACTIVE.value,
                            to_tag=draft.rfid_tag,
                            reason=reason,
                        ),
                        object_version=1,
                        recorded_at=now,
                    )
                    obj.last_sequence = ev.sequence
                    s.flush()
            logger.info("Custody create object_code=%s type=%s correlation_id=%s", obj.object_code, obj.object_type, ev.correlation_id)
            return OperationResult(object=obj, events=(ev,))
        except CustodyError as e:
            if e.object_code is None:
                e.object_code = code or None
            return self._fail("create", code, e)
        except SQLAlchemyError as e:
            return self._storage_failure("create", code, e)

    def move_object(
        self,
        object_code: str,
        to_location_id: int,
        actor_id: int | None,
        *,
        correlation_id: str | None = None,
        reason: str | None = None,
    ) -> OperationResult:
        cid = correlation_id or uuid.uuid4().hex

        def plan(s: Session, obj: TrackedObject, graph: LocationGraph) -> list[EventDraft]:
            self._ensure_not_terminal(obj)
            target = self._resolve_location(graph, to_location_id, obj.object_code)
            if obj.current_location_id == target:
                return []
            return [
                EventDraft(
                    object_code=obj.object_code,
                    event_kind=EventKind.MOVE,
                    actor_user_id=actor_id,
                    correlation_id=cid,
                    from_location_id=obj.current_location_id,
                    to_location_id=target,
                    reason=reason,
                )
            ]

        return self._mutate("move", object_code, actor_id, [EventKind.MOVE.value], plan, correlation_id=cid)

    def assign_object(
        self,
        object_code: str,
        to_assignee_id: int | None,
        actor_id: int | None,
        *,
        correlation_id: str | None = None,
        reason: str | None = None,
    ) -> OperationResult:
        """Hand custody to to_assignee_id; None releases the current assignment."""
        cid = correlation_id or uuid.uuid4().hex

        def plan(s: Session, obj: TrackedObject, graph: LocationGraph) -> list[EventDraft]:
            self._ensure_not_terminal(obj)
            target = None if to_assignee_id is None else self._check_actor(to_assignee_id, obj.object_code)
            if obj.assigned_to_id == target:
                return []
            return [
                EventDraft(
                    object_code=obj.object_code,
                    event_kind=EventKind.ASSIGN,
                    actor_user_id=actor_id,
                    correlation_id=cid,
                    from_assignee_id=obj.assigned_to_id,
                    to_assignee_id=target,
                    reason=reason,
                )
            ]

        return self._mutate("assign", object_code, actor_id, [EventKind.ASSIGN.value], plan, correlation_id=cid)

    def tag_object(
        self,
        object_code: str,
        rfid_tag: str | None,
        actor_id: int | None,
        *,
        correlation_id: str | None = None,
        reason: str | None = None,
    ) -> OperationResult:
        """Bind rfid_tag to the object; an empty tag clears the binding."""
        cid = correlation_id or uuid.uuid4().hex
        try:
            tag = normalize_tag(rfid_tag)
        except CustodyError as e:
            e.object_code = object_code
            return self._fail("tag", object_code, e)

        def plan(s: Session, obj: TrackedObject, graph: LocationGraph) -> list[EventDraft]:
            self._ensure_not_terminal(obj)
            if obj.rfid_tag == tag:
                return []
            if tag is not None:
                holder = self.registry.find_by_tag(s, tag, exclude_code=obj.object_code)
                if holder is not None:
                    raise DuplicateTag(
                        f"RFID tag {tag} is bound to {holder.object_code}.", object_code=obj.object_code
                    )
            return [
                EventDraft(
                    object_code=obj.object_code,
                    event_kind=EventKind.TAG,
                    actor_user_id=actor_id,
                    correlation_id=cid,
                    from_tag=obj.rfid_tag,
                    to_tag=tag,
                    reason=reason,
                )
            ]

        return self._mutate("tag", object_code, actor_id, [EventKind.TAG.value], plan, correlation_id=cid)

    def change_status(
        self,
        object_code: str,
        new_status: str,
        actor_id: int | None,
        *,
        correlation_id: str | None = None,
        reason: str | None = None,
    ) -> OperationResult:
        """Move the object through the status state machine; `retired` emits a retire event."""
        cid = correlation_id or uuid.uuid4().hex
        try:
            target = parse_status(new_status)
        except CustodyError as e:
            e.object_code = object_code
            return self._fail("status_change", object_code, e)
        kind = EventKind.RETIRE if target is ObjectStatus.RETIRED else EventKind.STATUS_CHANGE

        def plan(s: Session, obj: TrackedObject, graph: LocationGraph) -> list[EventDraft]:
            self._ensure_not_terminal(obj)
            ok, errors = can_transition_to(obj.status, target.value)
            if not ok:
                raise InvalidTransition("; ".join(errors), object_code=obj.object_code)
            return [
                EventDraft(
                    object_code=obj.object_code,
                    event_kind=kind,
                    actor_user_id=actor_id,
                    correlation_id=cid,
                    from_status=obj.status,
                    to_status=target.value,
                    reason=reason,
                )
            ]

        return self._mutate(kind.value, object_code, actor_id, [kind.value], plan, correlation_id=cid)

    def retire_object(
        self,
        object_code: str,
        actor_id: int | None,
        *,
        correlation_id: str | None = None,
        reason: str | None = None,
    ) -> OperationResult:
        return self.change_status(
            object_code, ObjectStatus.RETIRED.value, actor_id, correlation_id=correlation_id, reason=reason
        )

    def record_custody(
        self,
        object_code: str,
        actor_id: int | None,
        *,
        to_location_id: int | None = None,
        to_assignee_id: int | None = None,
        release_assignee: bool = False,
        correlation_id: str | None = None,
        reason: str | None = None,
    ) -> OperationResult:
        """
        Check-out/check-in in one request: a move and an assign committed
        together, sharing one correlation id and one version step.
        """
        cid = correlation_id or uuid.uuid4().hex
        moving = to_location_id is not None
        assigning = to_assignee_id is not None or release_assignee
        if not moving and not assigning:
            return self._fail(
                "custody", object_code, InvalidRequest("Nothing to record: give a location and/or an assignee.", object_code=object_code)
            )
        if to_assignee_id is not None and release_assignee:
            return self._fail(
                "custody", object_code, InvalidRequest("Cannot assign and release in the same request.", object_code=object_code)
            )
        kinds = ([EventKind.MOVE.value] if moving else []) + ([EventKind.ASSIGN.value] if assigning else [])

        def plan(s: Session, obj: TrackedObject, graph: LocationGraph) -> list[EventDraft]:
            self._ensure_not_terminal(obj)
            drafts: list[EventDraft] = []
            if moving:
                target_loc = self._resolve_location(graph, to_location_id, obj.object_code)
                if obj.current_location_id != target_loc:
                    drafts.append(
                        EventDraft(
                            object_code=obj.object_code,
                            event_kind=EventKind.MOVE,
                            actor_user_id=actor_id,
                            correlation_id=cid,
                            from_location_id=obj.current_location_id,
                            to_location_id=target_loc,
                            reason=reason,
                        )
                    )
            if assigning:
                target_actor = None if release_assignee else self._check_actor(to_assignee_id, obj.object_code)
                if obj.assigned_to_id != target_actor:
                    drafts.append(
                        EventDraft(
                            object_code=obj.object_code,
                            event_kind=EventKind.ASSIGN,
                            actor_user_id=actor_id,
                            correlation_id=cid,
                            from_assignee_id=obj.assigned_to_id,
                            to_assignee_id=target_actor,
                            reason=reason,
                        )
                    )
            return drafts

        return self._mutate("custody", object_code, actor_id, kinds, plan, correlation_id=cid)

    def record_tag_read(
        self,
        rfid_tag: str,
        location_id: int,
        actor_id: int | None,
        *,
        reader_id: str | None = None,
        correlation_id: str | None = None,
    ) -> OperationResult:
        """
        A reader at location_id detected rfid_tag: move the live object that
        carries the tag there. Reads at the object's current location are
        no-ops, so a reader can report the same tag repeatedly.
        """
        cid = correlation_id or uuid.uuid4().hex
        try:
            tag = normalize_tag(rfid_tag)
            if tag is None:
                raise InvalidRequest("RFID tag is required.")
            with self.store.read_session() as s:
                holder = self.registry.find_by_tag(s, tag)
                object_code = holder.object_code if holder is not None else None
        except CustodyError as e:
            return self._fail("tag_read", str(rfid_tag), e)
        except SQLAlchemyError as e:
            return self._storage_failure("tag_read", str(rfid_tag), e)
        if object_code is None:
            return self._fail("tag_read", tag, NotFound(f"No live object carries tag {tag!r}."))
        reason = f"RFID read by reader {reader_id}" if reader_id else "RFID read"

        def plan(s: Session, obj: TrackedObject, graph: LocationGraph) -> list[EventDraft]:
            # The tag may have been rebound or the object retired since the lookup.
            if obj.is_terminal or obj.rfid_tag != tag:
                raise NotFound(f"No live object carries tag {tag!r}.", object_code=obj.object_code)
            target = self._resolve_location(graph, location_id, obj.object_code)
            if obj.current_location_id == target:
                return []
            return [
                EventDraft(
                    object_code=obj.object_code,
                    event_kind=EventKind.MOVE,
                    actor_user_id=actor_id,
                    correlation_id=cid,
                    from_location_id=obj.current_location_id,
                    to_location_id=target,
                    reason=reason,
                )
            ]

        return self._mutate("tag_read", object_code, actor_id, [EventKind.MOVE.value], plan, correlation_id=cid)

    def record_tag_reads(
        self,
        reads: Sequence[dict],
        actor_id: int | None,
        *,
        correlation_id: str | None = None,
    ) -> list[OperationResult]:
        """Apply a batch of reader detections in order; each read succeeds or fails on its own."""
        cid = correlation_id or uuid.uuid4().hex
        return [
            self.record_tag_read(
                read.get("rfid_tag"),
                read.get("location_id"),
                actor_id,
                reader_id=read.get("reader_id"),
                correlation_id=cid,
            )
            for read in reads
        ]

    # ---------- reads (never take the guard) ----------

    def get_object(self, object_code: str) -> OperationResult:
        try:
            with self.store.read_session() as s:
                obj = self.registry.get(s, object_code)
            if obj is None:
                return OperationResult(error=NotFound(f"Object {object_code} not found.", object_code=object_code))
            return OperationResult(object=obj)
        except SQLAlchemyError as e:
            return self._storage_failure("get", object_code, e)

    def locate_tag(self, rfid_tag: str) -> OperationResult:
        """The live object an RFID read refers to."""
        tag = (rfid_tag or "").strip()
        try:
            with self.store.read_session() as s:
                obj = self.registry.find_by_tag(s, tag) if tag else None
            if obj is None:
                return OperationResult(error=NotFound(f"No live object carries tag {tag!r}."))
            return OperationResult(object=obj)
        except SQLAlchemyError as e:
            return self._storage_failure("locate_tag", tag, e)

    def list_objects(self, **filters: Any) -> tuple[list[TrackedObject], int]:
        with self.store.read_session() as s:
            return self.registry.list_objects(s, **filters)

    def get_history(self, object_code: str, as_of: datetime | None = None) -> OperationResult:
        """Chain of custody oldest-first, cut off at as_of when given."""
        try:
            with self.store.read_session() as s:
                obj = self.registry.get(s, object_code)
                if obj is None:
                    return OperationResult(error=NotFound(f"Object {object_code} not found.", object_code=object_code))
                events = self.ledger.history(s, object_code, as_of)
            return OperationResult(object=obj, events=tuple(events))
        except SQLAlchemyError as e:
            return self._storage_failure("history", object_code, e)

    def reconstruct_state(self, object_code: str, as_of: datetime | None = None) -> OperationResult:
        """Replay the ledger up to as_of; projection is None if the object did not exist yet."""
        try:
            with self.store.read_session() as s:
                obj = self.registry.get(s, object_code)
                if obj is None:
                    return OperationResult(error=NotFound(f"Object {object_code} not found.", object_code=object_code))
                projection = self.ledger.reconstruct_state(s, object_code, as_of)
            return OperationResult(object=obj, projection=projection)
        except SQLAlchemyError as e:
            return self._storage_failure("reconstruct", object_code, e)

    def check_consistency(self, object_code: str) -> ConsistencyReport:
        """
        Compare the registry row with a full replay and verify the hash chain.

        Raises StorageUnavailable if the database cannot be read.
        """
        try:
            with self.store.read_session() as s:
                obj = self.registry.get(s, object_code)
                projection = self.ledger.reconstruct_state(s, object_code)
                chain_ok, chain_errors = self.ledger.verify_chain(s, object_code)
        except SQLAlchemyError as e:
            logger.exception("Custody check_consistency %s storage failure", object_code)
            raise StorageUnavailable(
                f"Storage failure while verifying {object_code}.", object_code=object_code
            ) from e

        if obj is None and projection is None:
            return ConsistencyReport(object_code=object_code, ok=False, chain_errors=["object not found"])

        mismatches: dict[str, dict[str, Any]] = {}
        if obj is None or projection is None:
            mismatches["exists"] = {"registry": obj is not None, "ledger": projection is not None}
        else:
            expected = projection.fields()
            expected.update(version=projection.version, last_sequence=projection.last_sequence)
            for name, value in expected.items():
                stored = getattr(obj, name)
                if stored != value:
                    mismatches[name] = {"registry": stored, "ledger": value}

        ok = chain_ok and not mismatches
        if not ok:
            logger.error(
                "Custody consistency check failed object_code=%s mismatches=%s chain_errors=%s",
                object_code,
                mismatches,
                chain_errors,
            )
        return ConsistencyReport(object_code=object_code, ok=ok, mismatches=mismatches, chain_errors=chain_errors)


def build_coordinator(store: CustodyStore, config: dict) -> TransactionCoordinator:
    """Wire the coordinator to the role tables and user directory of this process."""
    from app.custody.rbac import RbacAccessGate, UserDirectory

    return TransactionCoordinator(
        store,
        gate=RbacAccessGate(store),
        directory=UserDirectory(store),
        guard=ConcurrencyGuard(timeout_seconds=float(config.get("LOCK_TIMEOUT_SECONDS") or 5.0)),
        metadata_max_bytes=int(config.get("METADATA_MAX_BYTES") or 8192),
    )
