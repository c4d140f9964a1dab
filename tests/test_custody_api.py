"""Tests for the custody JSON API (error mapping, permissions, correlation)."""
from datetime import timedelta

import pytest
from sqlalchemy import select
from werkzeug.security import generate_password_hash

from app.custody import create_app
from app.custody.db import session_scope
from app.custody.models import Base, Role, User
from app.custody.modules.custody.guard import ConcurrencyGuard
from app.custody.modules.custody.models import CustodyEvent
from app.custody.modules.locations.service import create_location
from app.custody.utils import parse_timestamp
from scripts.init_db import seed


@pytest.fixture()
def client(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("METADATA_MAX_BYTES", "512")

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        seed(s, admin_email="admin@example.com", admin_password="pw")
        ids = {}
        for email, role_key in (("clerk@example.com", "custodian"), ("viewer@example.com", "viewer")):
            u = User(email=email, password_hash=generate_password_hash("pw"), is_active=True)
            u.roles.append(s.scalars(select(Role).where(Role.key == role_key)).one())
            s.add(u)
            s.flush()
            ids[role_key] = u.id
        zone = create_location(s, {"code": "Z-A", "name": "Zone A"}, None)
        ids["box1"] = create_location(s, {"code": "B-1", "name": "Box 1", "kind": "box", "parent_id": zone.id}, None).id
        ids["box2"] = create_location(s, {"code": "B-2", "name": "Box 2", "kind": "box", "parent_id": zone.id}, None).id

    c = app.test_client()
    c.ids = ids
    return c


def _login(client, email="clerk@example.com"):
    r = client.post("/auth/login", json={"email": email, "password": "pw"})
    assert r.status_code == 200


def _new_object(client, code="DOC-1", **extra):
    payload = {"object_code": code, "object_type": "docket"}
    payload.update(extra)
    r = client.post("/api/objects", json=payload)
    assert r.status_code == 201, r.json
    return r.json


def test_custody_lifecycle_over_http(client):
    _login(client)
    ids = client.ids

    body = _new_object(client, name="State v. Doe", metadata={"court": "D4"})
    assert body["object"]["version"] == 1
    assert [e["event_kind"] for e in body["events"]] == ["create"]

    r = client.post("/api/objects/DOC-1/move", json={"location_id": ids["box1"], "reason": "filed"})
    assert r.status_code == 200
    assert r.json["object"]["current_location_id"] == ids["box1"]
    moved_at = r.json["events"][0]["recorded_at"]

    r = client.post("/api/objects/DOC-1/assign", json={"assignee_id": ids["viewer"]})
    assert r.json["object"]["assigned_to_id"] == ids["viewer"]

    r = client.post("/api/objects/DOC-1/tag", json={"rfid_tag": "RFID-001"})
    assert r.json["object"]["rfid_tag"] == "RFID-001"

    r = client.get("/api/tags/RFID-001")
    assert r.json["object"]["object_code"] == "DOC-1"

    r = client.get("/api/objects/DOC-1/history")
    assert [e["event_kind"] for e in r.json["events"]] == ["create", "move", "assign", "tag"]
    assert [e["sequence"] for e in r.json["events"]] == [1, 2, 3, 4]

    r = client.get("/api/objects/DOC-1/history", query_string={"as_of": moved_at})
    assert [e["event_kind"] for e in r.json["events"]] == ["create", "move"]

    r = client.get("/api/objects/DOC-1/state", query_string={"as_of": moved_at})
    assert r.json["state"]["current_location_id"] == ids["box1"]
    assert r.json["state"]["assigned_to_id"] is None

    before = (parse_timestamp(body["events"][0]["recorded_at"]) - timedelta(hours=1)).isoformat() + "Z"
    r = client.get("/api/objects/DOC-1/state", query_string={"as_of": before})
    assert r.status_code == 200
    assert r.json["state"] is None

    r = client.get("/api/objects/DOC-1")
    assert r.json["object"]["version"] == 4
    assert r.json["object"]["metadata"] == {"court": "D4"}


def test_object_list_filters(client):
    _login(client)
    ids = client.ids
    _new_object(client, "DOC-1", location_id=ids["box1"])
    _new_object(client, "DOC-2", location_id=ids["box2"], object_type="evidence")
    _new_object(client, "TOOL-1", object_type="tool", name="Torque wrench")

    assert client.get("/api/objects").json["total"] == 3
    r = client.get("/api/objects", query_string={"location_id": ids["box1"]})
    assert [o["object_code"] for o in r.json["objects"]] == ["DOC-1"]
    r = client.get("/api/objects", query_string={"type": "tool"})
    assert [o["object_code"] for o in r.json["objects"]] == ["TOOL-1"]
    r = client.get("/api/objects", query_string={"q": "wrench"})
    assert r.json["total"] == 1
    r = client.get("/api/objects", query_string={"per_page": 2, "page": 2})
    assert (len(r.json["objects"]), r.json["total_pages"]) == (1, 2)


def test_error_kinds_map_to_http_status(client):
    _login(client)
    ids = client.ids
    _new_object(client, "DOC-1")
    _new_object(client, "DOC-2")
    client.post("/api/objects/DOC-1/tag", json={"rfid_tag": "RFID-001"})

    cases = [
        (client.post("/api/objects", json={"object_code": "DOC-1", "object_type": "docket"}), 409, "duplicate_code"),
        (client.post("/api/objects/DOC-2/tag", json={"rfid_tag": "RFID-001"}), 409, "duplicate_tag"),
        (client.post("/api/objects/NOPE/move", json={"location_id": ids["box1"]}), 404, "not_found"),
        (client.post("/api/objects/DOC-1/move", json={"location_id": 9999}), 422, "invalid_location"),
        (client.post("/api/objects/DOC-1/assign", json={"assignee_id": 9999}), 422, "invalid_actor"),
        (client.post("/api/objects/DOC-1/move", json={}), 400, "invalid_request"),
        (client.post("/api/objects/DOC-1/move", json={"location_id": "x"}), 400, "invalid_request"),
        (client.post("/api/objects/DOC-1/move", json=[1, 2]), 400, "invalid_request"),
        (client.post("/api/objects/DOC-1/assign", json={}), 400, "invalid_request"),
        (client.post("/api/objects/DOC-1/tag", json={"rfid_tag": 5}), 400, "invalid_request"),
        (client.post("/api/objects/DOC-1/status", json={"status": "lost"}), 400, "invalid_request"),
        (client.post("/api/objects/DOC-1/status", json={"status": "active"}), 409, "invalid_transition"),
        (client.post("/api/objects/DOC-1/custody", json={}), 400, "invalid_request"),
        (client.post("/api/objects", json={"object_code": "M-1", "object_type": "file", "metadata": "{bad"}), 400, "invalid_request"),
        (client.post("/api/objects", json={"object_code": "M-2", "object_type": "file", "metadata": {"x": "y" * 600}}), 400, "invalid_request"),
        (client.get("/api/objects/DOC-1/history?as_of=yesterday"), 400, "invalid_request"),
        (client.get("/api/objects/NOPE/history"), 404, "not_found"),
        (client.get("/api/tags/RFID-404"), 404, "not_found"),
    ]
    for r, status, kind in cases:
        assert (r.status_code, r.json["error"]["kind"]) == (status, kind)

    assert client.get("/api/objects/DOC-1").json["object"]["version"] == 2


def test_disposed_object_rejects_moves(client):
    _login(client)
    _new_object(client)
    r = client.post("/api/objects/DOC-1/status", json={"status": "disposed", "reason": "destroyed per order"})
    assert r.status_code == 200
    assert r.json["events"][0]["reason"] == "destroyed per order"

    r = client.post("/api/objects/DOC-1/move", json={"location_id": client.ids["box1"]})
    assert r.status_code == 409
    assert r.json["error"]["kind"] == "invalid_transition"
    assert r.json["error"]["retriable"] is False


def test_operation_permissions(client):
    _login(client)
    _new_object(client)

    # Custodians cannot retire; that is reserved for admins.
    r = client.post("/api/objects/DOC-1/status", json={"status": "retired"})
    assert r.status_code == 403
    assert r.json["error"]["kind"] == "forbidden"

    # Verification needs the audit permission.
    assert client.get("/api/objects/DOC-1/verify").status_code == 403
    client.post("/auth/logout")

    _login(client, "viewer@example.com")
    assert client.get("/api/objects/DOC-1").status_code == 200
    r = client.post("/api/objects/DOC-1/move", json={"location_id": client.ids["box1"]})
    assert r.status_code == 403
    client.post("/auth/logout")

    _login(client, "admin@example.com")
    r = client.get("/api/objects/DOC-1/verify")
    assert r.status_code == 200
    assert r.json["ok"] is True
    assert client.post("/api/objects/DOC-1/status", json={"status": "retired"}).status_code == 200


def test_combined_custody_request_shares_correlation_id(client):
    _login(client)
    ids = client.ids
    _new_object(client)

    r = client.post(
        "/api/objects/DOC-1/custody",
        json={"location_id": ids["box2"], "assignee_id": ids["viewer"]},
        headers={"X-Request-ID": "checkout-7"},
    )
    assert r.status_code == 200
    assert r.json["object"]["version"] == 2
    assert [(e["event_kind"], e["correlation_id"]) for e in r.json["events"]] == [
        ("move", "checkout-7"),
        ("assign", "checkout-7"),
    ]

    r = client.post("/api/objects/DOC-1/custody", json={"release_assignee": True})
    assert r.json["object"]["assigned_to_id"] is None

    with session_scope(client.application) as s:
        codes = set(s.scalars(select(CustodyEvent.object_code).where(CustodyEvent.correlation_id == "checkout-7")))
    assert codes == {"DOC-1"}


def test_lock_timeout_is_503_with_retry_after(client):
    _login(client)
    _new_object(client)
    coordinator = client.application.extensions["custody_coordinator"]
    coordinator.guard = ConcurrencyGuard(timeout_seconds=0.1)

    with coordinator.guard.acquire("DOC-1"):
        r = client.post("/api/objects/DOC-1/move", json={"location_id": client.ids["box1"]})
        # Reads never wait for the guard.
        assert client.get("/api/objects/DOC-1/history").status_code == 200

    assert r.status_code == 503
    assert r.headers["Retry-After"] == "1"
    assert r.json["error"]["kind"] == "lock_timeout"
    assert r.json["error"]["retriable"] is True

    assert client.post("/api/objects/DOC-1/move", json={"location_id": client.ids["box1"]}).status_code == 200


def test_create_with_non_string_fields_is_400(client):
    _login(client)
    for payload in (
        {"object_code": 123, "object_type": "docket"},
        {"object_code": "DOC-1", "object_type": "docket", "rfid_tag": 5},
        {"object_code": "DOC-1", "object_type": "docket", "name": 7},
    ):
        r = client.post("/api/objects", json=payload)
        assert r.status_code == 400, payload
        assert r.json["error"]["kind"] == "invalid_request"
    assert client.get("/api/objects").json["total"] == 0


def test_reader_detections_move_objects(client):
    _login(client)
    ids = client.ids
    _new_object(client, "DOC-1", rfid_tag="RFID-001", location_id=ids["box1"])
    _new_object(client, "DOC-2", rfid_tag="RFID-002")

    r = client.post(
        "/api/tag-reads",
        json={"rfid_tag": "RFID-001", "location_id": ids["box2"], "reader_id": "DOCK-3"},
        headers={"X-Request-ID": "scan-1"},
    )
    assert r.status_code == 200
    assert r.json["object"]["current_location_id"] == ids["box2"]
    assert [(e["event_kind"], e["correlation_id"]) for e in r.json["events"]] == [("move", "scan-1")]

    r = client.post("/api/tag-reads", json={"rfid_tag": "RFID-404", "location_id": ids["box2"]})
    assert (r.status_code, r.json["error"]["kind"]) == (404, "not_found")
    r = client.post("/api/tag-reads", json={"rfid_tag": "RFID-001", "location_id": 9999})
    assert (r.status_code, r.json["error"]["kind"]) == (422, "invalid_location")
    r = client.post("/api/tag-reads", json={"rfid_tag": "RFID-001", "location_id": "dock"})
    assert (r.status_code, r.json["error"]["kind"]) == (400, "invalid_request")

    r = client.post(
        "/api/tag-reads/batch",
        json={
            "reads": [
                {"rfid_tag": "RFID-002", "location_id": ids["box1"], "reader_id": 7},
                {"rfid_tag": "RFID-001", "location_id": ids["box2"]},
                {"rfid_tag": "RFID-404", "location_id": ids["box1"]},
            ]
        },
    )
    assert r.status_code == 200
    assert (r.json["processed"], r.json["moved"], r.json["failed"]) == (3, 1, 1)
    assert [item["ok"] for item in r.json["results"]] == [True, True, False]
    assert r.json["results"][0]["events"][0]["reason"] == "RFID read by reader 7"
    assert r.json["results"][2]["error"]["kind"] == "not_found"
    assert client.get("/api/objects/DOC-2").json["object"]["current_location_id"] == ids["box1"]

    assert client.post("/api/tag-reads/batch", json={"reads": []}).status_code == 400
    assert client.post("/api/tag-reads/batch", json={"reads": ["RFID-001"]}).status_code == 400


def test_reader_detection_ignores_retired_objects_and_needs_move_permission(client):
    _login(client, "admin@example.com")
    _new_object(client, "DOC-1", rfid_tag="RFID-001")
    assert client.post("/api/objects/DOC-1/status", json={"status": "retired"}).status_code == 200
    r = client.post("/api/tag-reads", json={"rfid_tag": "RFID-001", "location_id": client.ids["box1"]})
    assert r.status_code == 404
    _new_object(client, "DOC-2", rfid_tag="RFID-002")
    client.post("/auth/logout")

    _login(client, "viewer@example.com")
    r = client.post("/api/tag-reads", json={"rfid_tag": "RFID-002", "location_id": client.ids["box1"]})
    assert (r.status_code, r.json["error"]["kind"]) == (403, "forbidden")
