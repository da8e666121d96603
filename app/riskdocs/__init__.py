import logging
import os
from datetime import timedelta

from flask import Flask, g, jsonify, request, session
from dotenv import load_dotenv
from sqlalchemy import inspect as sa_inspect

from app.riskdocs.config import load_config
from app.riskdocs.constants import OPS_LOGGER
from app.riskdocs.db import init_db, teardown_db_session
from app.riskdocs.models import Base
from app.riskdocs.lifecycle.errors import InvariantViolation, LifecycleError
from app.riskdocs.routes import bp as routes_bp
from app.riskdocs.auth import bp as auth_bp, load_current_user
from app.riskdocs.modules.documents.admin import bp as documents_bp
from app.riskdocs.modules.actions.admin import bp as actions_bp


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True

    logging.basicConfig(level=app.config.get("LOG_LEVEL") or "INFO")
    app.logger.setLevel(app.config.get("LOG_LEVEL") or "INFO")

    # CSRF protection (minimal)
    from app.riskdocs.security import ensure_csrf_token, validate_csrf

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(("/health", "/healthz")):
            return None
        ensure_csrf_token()
        session.permanent = True
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            # Login/logout establish the session; they cannot carry a token yet.
            if (request.endpoint or "").startswith("auth."):
                return None
            if not validate_csrf(request):
                return jsonify({"error": "CSRF_FAILED", "message": "CSRF token missing or invalid."}), 400

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")

    init_db(app)

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
    app.register_blueprint(documents_bp, url_prefix="/api")
    app.register_blueprint(actions_bp, url_prefix="/api")

    app.before_request(load_current_user)
    app.teardown_appcontext(teardown_db_session)

    # Migration health (lean): detect drift between code expectations and DB schema.
    app.config.setdefault("_schema_health_ok", True)
    app.config.setdefault("_schema_health_missing", [])

    def _run_schema_health_check() -> None:
        missing: list[str] = []
        try:
            engine = app.extensions.get("sqlalchemy_engine")
            if engine is None:
                raise RuntimeError("sqlalchemy_engine not initialized")
            insp = sa_inspect(engine)
            for table in Base.metadata.sorted_tables:
                if not insp.has_table(table.name):
                    # Fresh database; `alembic upgrade head` has not run yet.
                    continue
                cols = {c["name"] for c in insp.get_columns(table.name)}
                missing.extend(f"{table.name}.{c.name}" for c in table.columns if c.name not in cols)
        except Exception as e:
            app.logger.exception("Schema health check failed: %s", e)

        if missing:
            app.config["_schema_health_missing"] = missing
            app.logger.error("DB schema out of date; run `alembic upgrade head`. Missing: %s", ", ".join(missing))
        app.config["_schema_health_ok"] = not missing

    _run_schema_health_check()

    @app.before_request
    def _schema_health_guardrail():  # type: ignore[no-redef]
        if app.config.get("_schema_health_ok"):
            return None
        if request.path.startswith("/api"):
            return jsonify(
                {
                    "error": "SCHEMA_OUT_OF_DATE",
                    "message": "Database schema is out of date.",
                    "missing": app.config.get("_schema_health_missing") or [],
                }
            ), 500
        return None

    @app.errorhandler(LifecycleError)
    def _lifecycle_error(e: LifecycleError):  # type: ignore[no-redef]
        rid = getattr(g, "request_id", None)
        if isinstance(e, InvariantViolation):
            logging.getLogger(OPS_LOGGER).error("InvariantViolation (request_id=%s): %s", rid, e.message)
        else:
            app.logger.info("%s (request_id=%s): %s", e.code, rid, e.message)
        return jsonify(e.to_dict()), e.http_status

    @app.errorhandler(ValueError)
    def _value_error(e: ValueError):  # type: ignore[no-redef]
        return jsonify({"error": "BAD_REQUEST", "message": str(e)}), 400

    @app.errorhandler(404)
    def _err_404(e):  # type: ignore[no-redef]
        return jsonify({"error": "NOT_FOUND", "message": "Not found."}), 404

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        rid = getattr(g, "request_id", None)
        app.logger.exception("Unhandled 500 (request_id=%s)", rid)
        return jsonify({"error": "INTERNAL_ERROR", "message": "Internal server error.", "request_id": rid}), 500

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
