from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify, request

from app.custody.models import User
from app.custody.rbac import require_login, require_permission
from app.custody.utils import parse_int, parse_metadata, parse_timestamp

from .errors import CustodyError, ErrorCategory, ErrorKind, InvalidRequest
from .service import OperationResult, TransactionCoordinator

bp = Blueprint("custody", __name__)

_CATEGORY_STATUS = {
    ErrorCategory.NOT_FOUND: 404,
    ErrorCategory.CONFLICT: 409,
    ErrorCategory.CONTENTION: 503,
    ErrorCategory.FORBIDDEN: 403,
    ErrorCategory.INVALID: 400,
    ErrorCategory.STORAGE: 503,
    ErrorCategory.INTERNAL: 500,
}

# A missing *referenced* entity is a bad request body, not a missing resource.
_KIND_STATUS = {
    ErrorKind.INVALID_LOCATION: 422,
    ErrorKind.INVALID_ACTOR: 422,
}


def _coordinator() -> TransactionCoordinator:
    return current_app.extensions["custody_coordinator"]


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise InvalidRequest("Request body must be a JSON object.")
    return data


def _int_field(data: dict, key: str, *, required: bool = False) -> int | None:
    try:
        value = parse_int(data.get(key))
    except ValueError:
        raise InvalidRequest(f"{key} must be an integer.")
    if required and value is None:
        raise InvalidRequest(f"{key} is required.")
    return value


def _reason(data: dict) -> str | None:
    return (data.get("reason") or "").strip()[:512] or None


def _error_response(err: CustodyError):
    resp = jsonify({"error": err.to_dict()})
    resp.status_code = _KIND_STATUS.get(err.kind, _CATEGORY_STATUS[err.category])
    if err.kind is ErrorKind.LOCK_TIMEOUT:
        resp.headers["Retry-After"] = "1"
    return resp


def _result_response(result: OperationResult, status: int = 200):
    if not result.ok:
        return _error_response(result.error)
    return jsonify(
        {
            "object": result.object.to_dict() if result.object else None,
            "events": [e.to_dict() for e in result.events],
        }
    ), status


def _as_of_arg():
    raw = request.args.get("as_of")
    try:
        return parse_timestamp(raw)
    except ValueError:
        raise InvalidRequest(f"as_of is not an ISO-8601 timestamp: {raw!r}")


@bp.errorhandler(CustodyError)
def _custody_error(err: CustodyError):
    return _error_response(err)


# ---------- Objects ----------
@bp.get("/objects")
@require_permission("custody.view")
def objects_list():
    page = max(request.args.get("page", 1, type=int) or 1, 1)
    per_page = min(max(request.args.get("per_page", 50, type=int) or 50, 1), 200)
    items, total = _coordinator().list_objects(
        object_type=(request.args.get("type") or "").strip() or None,
        status=(request.args.get("status") or "").strip() or None,
        location_id=request.args.get("location_id", type=int),
        assigned_to_id=request.args.get("assigned_to_id", type=int),
        search=(request.args.get("q") or "").strip() or None,
        page=page,
        per_page=per_page,
    )
    return jsonify(
        {
            "objects": [o.to_dict() for o in items],
            "page": page,
            "per_page": per_page,
            "total": total,
            "total_pages": (total + per_page - 1) // per_page,
        }
    )


@bp.post("/objects")
@require_login
def objects_create():
    data = _json_body()
    payload = dict(data)
    metadata, err = parse_metadata(data.get("metadata"))
    if err:
        raise InvalidRequest(err)
    payload["metadata"] = metadata
    payload["location_id"] = _int_field(data, "location_id")
    payload["assignee_id"] = _int_field(data, "assignee_id")
    result = _coordinator().create_object(
        payload,
        _current_user().id,
        correlation_id=g.request_id,
        reason=_reason(data),
    )
    return _result_response(result, status=201)


@bp.get("/objects/<object_code>")
@require_permission("custody.view")
def objects_detail(object_code: str):
    return _result_response(_coordinator().get_object(object_code))


@bp.post("/objects/<object_code>/move")
@require_login
def objects_move(object_code: str):
    data = _json_body()
    result = _coordinator().move_object(
        object_code,
        _int_field(data, "location_id", required=True),
        _current_user().id,
        correlation_id=g.request_id,
        reason=_reason(data),
    )
    return _result_response(result)


@bp.post("/objects/<object_code>/assign")
@require_login
def objects_assign(object_code: str):
    data = _json_body()
    if "assignee_id" not in data:
        raise InvalidRequest("assignee_id is required (null releases the assignment).")
    result = _coordinator().assign_object(
        object_code,
        _int_field(data, "assignee_id"),
        _current_user().id,
        correlation_id=g.request_id,
        reason=_reason(data),
    )
    return _result_response(result)


@bp.post("/objects/<object_code>/tag")
@require_login
def objects_tag(object_code: str):
    data = _json_body()
    if "rfid_tag" not in data:
        raise InvalidRequest("rfid_tag is required (null or empty clears the binding).")
    rfid_tag = data.get("rfid_tag")
    if rfid_tag is not None and not isinstance(rfid_tag, str):
        raise InvalidRequest("rfid_tag must be a string.")
    result = _coordinator().tag_object(
        object_code,
        rfid_tag,
        _current_user().id,
        correlation_id=g.request_id,
        reason=_reason(data),
    )
    return _result_response(result)


@bp.post("/objects/<object_code>/status")
@require_login
def objects_status(object_code: str):
    data = _json_body()
    new_status = data.get("status")
    if not isinstance(new_status, str) or not new_status.strip():
        raise InvalidRequest("status is required.")
    result = _coordinator().change_status(
        object_code,
        new_status,
        _current_user().id,
        correlation_id=g.request_id,
        reason=_reason(data),
    )
    return _result_response(result)


@bp.post("/objects/<object_code>/custody")
@require_login
def objects_custody(object_code: str):
    data = _json_body()
    result = _coordinator().record_custody(
        object_code,
        _current_user().id,
        to_location_id=_int_field(data, "location_id"),
        to_assignee_id=_int_field(data, "assignee_id"),
        release_assignee=bool(data.get("release_assignee")),
        correlation_id=g.request_id,
        reason=_reason(data),
    )
    return _result_response(result)


# ---------- Chain of custody ----------
@bp.get("/objects/<object_code>/history")
@require_permission("custody.view")
def objects_history(object_code: str):
    as_of = _as_of_arg()
    result = _coordinator().get_history(object_code, as_of=as_of)
    if not result.ok:
        return _error_response(result.error)
    return jsonify(
        {
            "object_code": object_code,
            "as_of": as_of.isoformat() if as_of else None,
            "events": [e.to_dict() for e in result.events],
        }
    )


@bp.get("/objects/<object_code>/state")
@require_permission("custody.view")
def objects_state(object_code: str):
    as_of = _as_of_arg()
    result = _coordinator().reconstruct_state(object_code, as_of=as_of)
    if not result.ok:
        return _error_response(result.error)
    return jsonify(
        {
            "object_code": object_code,
            "as_of": as_of.isoformat() if as_of else None,
            "state": result.projection.to_dict() if result.projection else None,
        }
    )


@bp.get("/objects/<object_code>/verify")
@require_permission("custody.audit")
def objects_verify(object_code: str):
    report = _coordinator().check_consistency(object_code)
    return jsonify(report.to_dict()), (200 if report.ok else 409)


@bp.get("/tags/<rfid_tag>")
@require_permission("custody.view")
def tags_lookup(rfid_tag: str):
    return _result_response(_coordinator().locate_tag(rfid_tag))


# ---------- RFID reader detections ----------
MAX_BATCH_READS = 500


def _tag_read_args(read: dict) -> dict:
    try:
        location_id = parse_int(read.get("location_id"))
    except ValueError:
        location_id = read.get("location_id")
    reader_id = read.get("reader_id")
    return {
        "rfid_tag": read.get("rfid_tag"),
        "location_id": location_id,
        "reader_id": str(reader_id)[:64] if reader_id not in (None, "") else None,
    }


@bp.post("/tag-reads")
@require_login
def tag_reads_record():
    args = _tag_read_args(_json_body())
    result = _coordinator().record_tag_read(
        args["rfid_tag"],
        args["location_id"],
        _current_user().id,
        reader_id=args["reader_id"],
        correlation_id=g.request_id,
    )
    return _result_response(result)


@bp.post("/tag-reads/batch")
@require_login
def tag_reads_batch():
    reads = _json_body().get("reads")
    if not isinstance(reads, list) or not reads:
        raise InvalidRequest("reads must be a non-empty list.")
    if len(reads) > MAX_BATCH_READS:
        raise InvalidRequest(f"At most {MAX_BATCH_READS} reads per batch.")
    if not all(isinstance(r, dict) for r in reads):
        raise InvalidRequest("Each read must be a JSON object.")

    parsed = [_tag_read_args(r) for r in reads]
    results = _coordinator().record_tag_reads(parsed, _current_user().id, correlation_id=g.request_id)
    items = []
    for args, result in zip(parsed, results):
        item = {"rfid_tag": args["rfid_tag"], "ok": result.ok}
        if result.ok:
            item["object_code"] = result.object.object_code
            item["events"] = [e.to_dict() for e in result.events]
        else:
            item["error"] = result.error.to_dict()
        items.append(item)
    return jsonify(
        {
            "processed": len(items),
            "moved": sum(1 for r in results if r.ok and r.events),
            "failed": sum(1 for r in results if not r.ok),
            "results": items,
        }
    )
