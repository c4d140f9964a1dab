import logging
import os
from datetime import timedelta

from dotenv import load_dotenv
from flask import Flask, g, jsonify, request
from sqlalchemy import inspect as sa_inspect

from app.custody.auth import bp as auth_bp, load_current_user
from app.custody.config import load_config
from app.custody.db import init_db, teardown_db_session
from app.custody.modules.custody.admin import bp as custody_bp
from app.custody.modules.custody.service import build_coordinator
from app.custody.modules.locations.admin import bp as locations_bp
from app.custody.routes import bp as routes_bp

# Tables and columns the running code depends on; a miss means `alembic upgrade head` was skipped.
_EXPECTED_SCHEMA = {
    "locations": ("code", "kind", "parent_id", "is_active"),
    "tracked_objects": ("object_code", "status", "rfid_tag", "version", "last_sequence"),
    "custody_events": ("object_code", "sequence", "prev_hash", "event_hash", "correlation_id"),
    "audit_events": ("request_id", "action", "client_ip"),
}


def _configure_logging(app: Flask) -> None:
    level = getattr(logging, str(app.config.get("LOG_LEVEL") or "INFO").upper(), logging.INFO)
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    root.setLevel(level)
    app.logger.setLevel(level)


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True
    _configure_logging(app)

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")

    store = init_db(app)
    app.extensions["custody_coordinator"] = build_coordinator(store, app.config)

    def _dispose_engine_on_fork() -> None:
        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(locations_bp, url_prefix="/api")
    app.register_blueprint(custody_bp, url_prefix="/api")

    def _load_user_wrapper():
        if request.path.startswith(("/health", "/healthz")):
            g.current_user = None
            return None
        return load_current_user()

    app.before_request(_load_user_wrapper)
    app.teardown_appcontext(teardown_db_session)

    # Migration health (lean): detect drift between code expectations and DB schema.
    app.config.setdefault("_schema_health_ok", True)
    app.config.setdefault("_schema_health_missing", [])
    app.config.setdefault("_schema_health_logged", False)

    def _run_schema_health_check() -> None:
        missing: list[str] = []
        try:
            insp = sa_inspect(app.extensions["sqlalchemy_engine"])
            for table, columns in _EXPECTED_SCHEMA.items():
                if not insp.has_table(table):
                    missing.append(f"{table} (table)")
                    continue
                cols = {c["name"] for c in insp.get_columns(table)}
                missing.extend(f"{table}.{col}" for col in columns if col not in cols)
        except Exception as e:
            app.logger.exception("Schema health check failed: %s", e)

        app.config["_schema_health_missing"] = missing
        app.config["_schema_health_ok"] = not missing
        if missing and not app.config.get("_schema_health_logged"):
            app.config["_schema_health_logged"] = True
            app.logger.error("DB schema out of date; run `alembic upgrade head`. Missing: %s", ", ".join(missing))

    _run_schema_health_check()

    @app.before_request
    def _schema_health_guardrail():  # type: ignore[no-redef]
        if app.config.get("_schema_health_ok") or not request.path.startswith("/api"):
            return None
        # Tables may have been created after boot (tests, first deploy); look again before refusing.
        _run_schema_health_check()
        if app.config.get("_schema_health_ok"):
            return None
        return jsonify(
            {
                "error": {
                    "kind": "schema_out_of_date",
                    "message": "Database schema is out of date; run `alembic upgrade head`.",
                    "missing": app.config.get("_schema_health_missing") or [],
                }
            }
        ), 503

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        rid = getattr(g, "request_id", None)
        app.logger.exception("Unhandled 500 (request_id=%s)", rid)
        return jsonify({"error": {"kind": "internal", "message": "Internal server error.", "request_id": rid}}), 500

    @app.errorhandler(403)
    def _err_403(e):  # type: ignore[no-redef]
        missing = getattr(g, "missing_permission", None)
        if missing:
            app.logger.warning("Forbidden: missing_permission=%s request_id=%s", missing, getattr(g, "request_id", None))
        return jsonify({"error": {"kind": "forbidden", "message": "Forbidden.", "missing_permission": missing}}), 403

    @app.errorhandler(404)
    def _err_404(e):  # type: ignore[no-redef]
        return jsonify({"error": {"kind": "not_found", "message": "Not found."}}), 404

    @app.errorhandler(413)
    def _err_413(e):  # type: ignore[no-redef]
        return jsonify({"error": {"kind": "invalid_request", "message": "Request body too large."}}), 413

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
