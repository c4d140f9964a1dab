from __future__ import annotations

from flask import Blueprint, g, jsonify, request

from app.custody.db import db_session
from app.custody.models import User
from app.custody.rbac import require_permission

from .service import LocationError, LocationGraph, LocationInUse, create_location, occupant_count, retire_location

bp = Blueprint("locations", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _error(kind: str, message: str, status: int):
    return jsonify({"error": {"kind": kind, "message": message}}), status


@bp.get("/locations")
@require_permission("locations.view")
def locations_list():
    s = db_session()
    include_retired = request.args.get("include_retired") == "1"
    locations = LocationGraph(s).list_locations(include_retired=include_retired)
    return jsonify({"locations": [loc.to_dict() for loc in locations]})


@bp.get("/locations/<int:location_id>")
@require_permission("locations.view")
def locations_detail(location_id: int):
    s = db_session()
    graph = LocationGraph(s)
    loc = graph.resolve(location_id)
    if not loc:
        return _error("not_found", f"Location {location_id} not found.", 404)
    out = loc.to_dict()
    out["path"] = [p.code for p in graph.path(location_id)]
    out["children"] = [c.to_dict() for c in graph.children(location_id)]
    out["occupants"] = occupant_count(s, location_id)
    return jsonify({"location": out})


@bp.post("/locations")
@require_permission("locations.manage")
def locations_create():
    s = db_session()
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        return _error("invalid_request", "Request body must be a JSON object.", 400)
    try:
        loc = create_location(s, payload, _current_user())
    except LocationError as e:
        s.rollback()
        return _error("invalid_request", str(e), 400)
    s.commit()
    return jsonify({"location": loc.to_dict()}), 201


@bp.post("/locations/<int:location_id>/retire")
@require_permission("locations.manage")
def locations_retire(location_id: int):
    s = db_session()
    loc = LocationGraph(s).resolve(location_id)
    if not loc:
        return _error("not_found", f"Location {location_id} not found.", 404)

    payload = request.get_json(silent=True) or {}
    reason = (payload.get("reason") or "").strip() if isinstance(payload, dict) else ""
    if not reason:
        return _error("invalid_request", "Reason is required to retire a location.", 400)

    try:
        retire_location(s, loc, _current_user(), reason)
    except LocationInUse as e:
        s.rollback()
        return _error("location_in_use", str(e), 409)
    except LocationError as e:
        s.rollback()
        return _error("invalid_transition", str(e), 409)
    s.commit()
    return jsonify({"location": loc.to_dict()})
