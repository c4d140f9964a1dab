"""Tests for the custody ledger (hash chain, replay) and the registry's version guard."""
from datetime import datetime, timedelta

import pytest
from sqlalchemy import text

from app.custody.db import build_engine, build_store
from app.custody.models import Base, User
from app.custody.modules.custody.errors import DuplicateTag, InvalidRequest, SequenceConflict, VersionConflict
from app.custody.modules.custody.ledger import (
    GENESIS_HASH,
    CustodyLedger,
    EventDraft,
    apply_event,
    compute_event_hash,
    replay,
)
from app.custody.modules.custody.models import CustodyEvent, EventKind, ObjectType
from app.custody.modules.custody.registry import ObjectDraft, ObjectRegistry
from app.custody.utils import canonical_json

T0 = datetime(2026, 3, 1, 12, 0, 0)


@pytest.fixture()
def store(tmp_path):
    store = build_store(build_engine(f"sqlite:///{tmp_path/'test.db'}"))
    Base.metadata.create_all(bind=store.engine)
    yield store
    store.engine.dispose()


@pytest.fixture()
def actor_id(store):
    with store.session() as s:
        u = User(email="clerk@example.com", password_hash="x")
        s.add(u)
        s.flush()
        return u.id


def _seed_object(store, actor_id, code="DOC-1", tag=None):
    """Create an object and its create event directly through registry + ledger."""
    registry, ledger = ObjectRegistry(), CustodyLedger()
    with store.session() as s:
        registry.create(
            s, ObjectDraft(object_code=code, object_type=ObjectType.DOCKET, rfid_tag=tag), actor_user_id=actor_id, now=T0
        )
        ev = ledger.append(
            s,
            EventDraft(
                object_code=code,
                event_kind=EventKind.CREATE,
                actor_user_id=actor_id,
                correlation_id="seed",
                to_status="active",
                to_tag=tag,
            ),
            object_version=1,
            recorded_at=T0,
        )
        s.execute(text("UPDATE tracked_objects SET last_sequence = :seq WHERE object_code = :code"), {"seq": ev.sequence, "code": code})


def _append(store, actor_id, code, kind, minutes, **fields):
    ledger = CustodyLedger()
    with store.session() as s:
        last = ledger.last_event(s, code)
        return ledger.append(
            s,
            EventDraft(object_code=code, event_kind=kind, actor_user_id=actor_id, correlation_id="t", **fields),
            object_version=last.object_version + 1,
            recorded_at=T0 + timedelta(minutes=minutes),
        )


def test_hash_chain_links_events(store, actor_id):
    _seed_object(store, actor_id)
    _append(store, actor_id, "DOC-1", EventKind.MOVE, 1, to_location_id=3)
    _append(store, actor_id, "DOC-1", EventKind.ASSIGN, 2, to_assignee_id=actor_id)

    with store.read_session() as s:
        events = CustodyLedger().history(s, "DOC-1")
        ok, errors = CustodyLedger().verify_chain(s, "DOC-1")

    assert [e.sequence for e in events] == [1, 2, 3]
    assert events[0].prev_hash == GENESIS_HASH
    assert events[1].prev_hash == events[0].event_hash
    assert events[2].prev_hash == events[1].event_hash
    assert events[2].event_hash == compute_event_hash(events[2].hash_content(), events[1].event_hash)
    assert ok, errors


def test_hash_is_sha256_of_canonical_content_plus_prev():
    import hashlib

    content = {"b": 1, "a": None}
    expected = hashlib.sha256((canonical_json(content) + "prev").encode("utf-8")).hexdigest()
    assert compute_event_hash(content, "prev") == expected
    assert canonical_json(content) == '{"a":null,"b":1}'


def test_verify_chain_detects_tampering(store, actor_id):
    _seed_object(store, actor_id)
    _append(store, actor_id, "DOC-1", EventKind.MOVE, 1, to_location_id=3)
    _append(store, actor_id, "DOC-1", EventKind.MOVE, 2, from_location_id=3, to_location_id=4)

    with store.session() as s:
        s.execute(text("UPDATE custody_events SET to_location_id = 99 WHERE object_code = 'DOC-1' AND sequence = 2"))

    with store.read_session() as s:
        ok, errors = CustodyLedger().verify_chain(s, "DOC-1")
    assert not ok
    assert any("event 2 content" in e for e in errors)


def test_verify_chain_detects_gaps_and_events_after_terminal(store, actor_id):
    _seed_object(store, actor_id)
    _append(store, actor_id, "DOC-1", EventKind.STATUS_CHANGE, 1, from_status="active", to_status="disposed")
    _append(store, actor_id, "DOC-1", EventKind.MOVE, 2, to_location_id=3)

    with store.session() as s:
        s.execute(text("DELETE FROM custody_events WHERE object_code = 'DOC-1' AND sequence = 2"))

    with store.read_session() as s:
        ok, errors = CustodyLedger().verify_chain(s, "DOC-1")
    assert not ok
    assert any("where 2 was expected" in e for e in errors)
    assert any("does not link" in e for e in errors)


def test_replay_folds_events(store, actor_id):
    _seed_object(store, actor_id, tag="RFID-1")
    _append(store, actor_id, "DOC-1", EventKind.MOVE, 1, to_location_id=3)
    _append(store, actor_id, "DOC-1", EventKind.ASSIGN, 2, to_assignee_id=actor_id)
    _append(store, actor_id, "DOC-1", EventKind.TAG, 3, from_tag="RFID-1", to_tag=None)
    _append(store, actor_id, "DOC-1", EventKind.RETIRE, 4, from_status="active", to_status="retired")

    ledger = CustodyLedger()
    with store.read_session() as s:
        state = ledger.reconstruct_state(s, "DOC-1")
        at_two = ledger.reconstruct_state(s, "DOC-1", as_of=T0 + timedelta(minutes=2))

    assert state.fields() == {
        "status": "retired",
        "current_location_id": 3,
        "assigned_to_id": actor_id,
        "rfid_tag": None,
    }
    assert (state.version, state.last_sequence) == (5, 5)
    assert at_two.rfid_tag == "RFID-1"
    assert at_two.assigned_to_id == actor_id
    assert at_two.last_sequence == 3


def test_replay_requires_create_first():
    ev = CustodyEvent(object_code="DOC-1", sequence=1, event_kind="move", to_location_id=3, object_version=1)
    with pytest.raises(ValueError):
        apply_event(None, ev)
    assert replay([]) is None


def test_recorded_at_never_runs_backwards(store, actor_id):
    _seed_object(store, actor_id)
    ev = _append(store, actor_id, "DOC-1", EventKind.MOVE, -30, to_location_id=3)
    assert ev.recorded_at == T0


def test_racing_append_is_a_sequence_conflict(store, actor_id, monkeypatch):
    _seed_object(store, actor_id)
    ledger = CustodyLedger()
    # Simulate a writer that bypassed the guard and read a stale tail.
    monkeypatch.setattr(ledger, "last_event", lambda s, code: None)
    with pytest.raises(SequenceConflict):
        with store.session() as s:
            ledger.append(
                s,
                EventDraft(object_code="DOC-1", event_kind=EventKind.MOVE, actor_user_id=actor_id, correlation_id="x"),
                object_version=2,
                recorded_at=T0,
            )


def test_apply_projection_checks_version(store, actor_id):
    _seed_object(store, actor_id)
    registry = ObjectRegistry()

    with store.session() as s:
        obj = registry.apply_projection(
            s, "DOC-1", {"current_location_id": 3}, 1, last_sequence=2, actor_user_id=actor_id, now=T0
        )
        assert (obj.version, obj.current_location_id, obj.last_sequence) == (2, 3, 2)

    with pytest.raises(VersionConflict):
        with store.session() as s:
            registry.apply_projection(
                s, "DOC-1", {"current_location_id": 4}, 1, last_sequence=3, actor_user_id=actor_id, now=T0
            )

    with pytest.raises(InvalidRequest):
        with store.session() as s:
            registry.apply_projection(s, "DOC-1", {"name": "x"}, 2, last_sequence=3, actor_user_id=actor_id, now=T0)

    with store.read_session() as s:
        assert registry.get(s, "DOC-1").current_location_id == 3


def test_live_tag_index_backs_up_validation(store, actor_id):
    _seed_object(store, actor_id, code="DOC-1", tag="RFID-1")
    _seed_object(store, actor_id, code="DOC-2")
    registry = ObjectRegistry()
    with pytest.raises(DuplicateTag):
        with store.session() as s:
            registry.apply_projection(s, "DOC-2", {"rfid_tag": "RFID-1"}, 1, last_sequence=1, actor_user_id=actor_id, now=T0)
