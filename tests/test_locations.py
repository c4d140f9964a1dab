"""Tests for the Locations module (zone/box tree and its admin API)."""
import pytest
from sqlalchemy import select
from werkzeug.security import generate_password_hash

from app.custody import create_app
from app.custody.db import session_scope
from app.custody.models import AuditEvent, Base, Role, User
from app.custody.modules.locations.service import LocationError, LocationGraph, create_location
from scripts.init_db import seed


@pytest.fixture()
def client(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        seed(s, admin_email="admin@example.com", admin_password="pw")
        viewer_role = s.scalars(select(Role).where(Role.key == "viewer")).one()
        u = User(email="viewer@example.com", password_hash=generate_password_hash("pw"), is_active=True)
        u.roles.append(viewer_role)
        s.add(u)

    return app.test_client()


def _login(client, email="admin@example.com"):
    r = client.post("/auth/login", json={"email": email, "password": "pw"})
    assert r.status_code == 200


def _create(client, **payload):
    return client.post("/api/locations", json=payload)


def test_locations_require_auth(client):
    assert client.get("/api/locations").status_code == 401


def test_create_zone_and_box(client):
    _login(client)
    r = _create(client, code="Z-A", name="Records room A", kind="zone")
    assert r.status_code == 201
    zone_id = r.json["location"]["id"]

    r = _create(client, code="Z-A-B1", name="Box 1", kind="box", parent_id=zone_id, capacity=40)
    assert r.status_code == 201
    box = r.json["location"]
    assert box["parent_id"] == zone_id
    assert box["capacity"] == 40

    r = client.get(f"/api/locations/{box['id']}")
    assert r.status_code == 200
    assert r.json["location"]["path"] == ["Z-A", "Z-A-B1"]
    assert r.json["location"]["occupants"] == 0

    r = client.get(f"/api/locations/{zone_id}")
    assert [c["code"] for c in r.json["location"]["children"]] == ["Z-A-B1"]

    with session_scope(client.application) as s:
        actions = [e.action for e in s.scalars(select(AuditEvent).where(AuditEvent.action.like("location.%")))]
    assert actions == ["location.create", "location.create"]


def test_create_location_validation(client):
    _login(client)
    zone_id = _create(client, code="Z-A", name="Zone A").json["location"]["id"]
    box_id = _create(client, code="B-1", name="Box", kind="box", parent_id=zone_id).json["location"]["id"]

    cases = [
        {"code": "", "name": "No code"},
        {"code": "Z-A", "name": "Duplicate"},
        {"code": "B-2", "name": "Root box", "kind": "box"},
        {"code": "B-3", "name": "Box in box", "kind": "box", "parent_id": box_id},
        {"code": "Z-9", "name": "Bad kind", "kind": "shelf"},
        {"code": "Z-8", "name": "Bad parent", "parent_id": "abc"},
        {"code": "Z-7", "name": "Missing parent", "parent_id": 9999},
    ]
    for payload in cases:
        r = _create(client, **payload)
        assert r.status_code == 400, payload
        assert r.json["error"]["kind"] == "invalid_request"

    # Zones may nest.
    assert _create(client, code="Z-A-1", name="Sub zone", parent_id=zone_id).status_code == 201


def test_retire_location_rules(client):
    _login(client)
    zone_id = _create(client, code="Z-A", name="Zone A").json["location"]["id"]
    box_id = _create(client, code="B-1", name="Box", kind="box", parent_id=zone_id).json["location"]["id"]

    r = client.post(f"/api/locations/{box_id}/retire", json={})
    assert r.status_code == 400

    # Zone with an active child box is in use.
    r = client.post(f"/api/locations/{zone_id}/retire", json={"reason": "room closed"})
    assert r.status_code == 409
    assert r.json["error"]["kind"] == "location_in_use"

    # Box holding a live object is in use.
    r = client.post("/api/objects", json={"object_code": "DOC-1", "object_type": "docket", "location_id": box_id})
    assert r.status_code == 201
    r = client.post(f"/api/locations/{box_id}/retire", json={"reason": "damaged"})
    assert r.status_code == 409

    # Once the object is retired the box can go, then the zone.
    assert client.post("/api/objects/DOC-1/status", json={"status": "retired"}).status_code == 200
    r = client.post(f"/api/locations/{box_id}/retire", json={"reason": "damaged"})
    assert r.status_code == 200
    assert r.json["location"]["is_active"] is False
    assert client.post(f"/api/locations/{zone_id}/retire", json={"reason": "room closed"}).status_code == 200

    r = client.post(f"/api/locations/{box_id}/retire", json={"reason": "again"})
    assert r.status_code == 409

    assert client.get("/api/locations").json["locations"] == []
    assert len(client.get("/api/locations?include_retired=1").json["locations"]) == 2

    # Retired locations are not valid custody targets.
    r = client.post("/api/objects", json={"object_code": "DOC-2", "object_type": "docket", "location_id": box_id})
    assert r.status_code == 422
    assert r.json["error"]["kind"] == "invalid_location"


def test_viewer_can_read_but_not_manage(client):
    _login(client)
    _create(client, code="Z-A", name="Zone A")
    client.post("/auth/logout")

    _login(client, "viewer@example.com")
    assert client.get("/api/locations").status_code == 200
    r = _create(client, code="Z-B", name="Zone B")
    assert r.status_code == 403
    assert r.json["error"]["kind"] == "forbidden"
    assert client.get("/api/locations/9999").status_code == 404


def test_location_graph_path_and_children(client):
    with session_scope(client.application) as s:
        zone = create_location(s, {"code": "Z", "name": "Zone"}, None)
        sub = create_location(s, {"code": "Z-1", "name": "Sub", "parent_id": zone.id}, None)
        box = create_location(s, {"code": "Z-1-B", "name": "Box", "kind": "box", "parent_id": sub.id}, None)
        with pytest.raises(LocationError):
            create_location(s, {"code": "X", "name": "x", "kind": "box"}, None)

        graph = LocationGraph(s)
        assert [loc.code for loc in graph.path(box.id)] == ["Z", "Z-1", "Z-1-B"]
        assert [loc.code for loc in graph.children(zone.id)] == ["Z-1"]
        assert graph.is_active(box.id)
        assert not graph.is_active(424242)
        assert graph.path(424242) == []
