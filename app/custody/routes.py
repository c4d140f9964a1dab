from flask import Blueprint, current_app

bp = Blueprint("routes", __name__)


@bp.get("/health")
def health():
    """Health check endpoint. Returns JSON, including schema drift status."""
    ok = bool(current_app.config.get("_schema_health_ok", True))
    return {"ok": True, "schema_ok": ok, "schema_missing": current_app.config.get("_schema_health_missing") or []}


@bp.get("/healthz")
def healthz():
    """
    Fast liveness probe. No DB access.
    """
    return "ok", 200
