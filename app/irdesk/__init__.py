import logging
import os
from datetime import timedelta

from dotenv import load_dotenv
from flask import Flask, g, jsonify, request, session
from werkzeug.exceptions import HTTPException

from app.irdesk.config import load_config, production_problems
from app.irdesk.db import init_db, missing_tables, teardown_db_session
from app.irdesk.errors import ApiError
from app.irdesk.routes import bp as routes_bp
from app.irdesk.auth import bp as auth_bp, load_current_user
from app.irdesk.modules.organizations.api import bp as organizations_bp
from app.irdesk.modules.licensing.api import bp as licensing_bp
from app.irdesk.modules.audit_trail.api import bp as audit_trail_bp
from app.irdesk.modules.incidents.api import bp as incidents_bp
from app.irdesk.modules.assets.api import bp as assets_bp
from app.irdesk.modules.tags.api import bp as tags_bp
from app.irdesk.modules.content.api import admin_bp as content_admin_bp, bp as content_bp
from app.irdesk.modules.communications.api import bp as communications_bp
from app.irdesk.modules.runbooks.api import bp as runbooks_bp
from app.irdesk.modules.exercises.api import admin_bp as exercises_admin_bp, bp as exercises_bp
from app.irdesk.modules.dashboard.api import bp as dashboard_bp
from app.irdesk.modules.system_admin.api import bp as system_admin_bp, public_bp as public_settings_bp

# Auth endpoints that must work before the client holds a CSRF token.
_CSRF_EXEMPT_ENDPOINTS = ("auth.login", "auth.logout", "auth.csrf")


def _configure_logging(app: Flask) -> None:
    level = getattr(logging, str(app.config.get("LOG_LEVEL") or "INFO").upper(), logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    app.logger.setLevel(level)


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True
    app.json.sort_keys = False
    _configure_logging(app)

    from app.irdesk.security import ensure_csrf_token, validate_csrf

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(("/health", "/healthz")):
            return None
        ensure_csrf_token()
        session.permanent = True
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            if request.endpoint in _CSRF_EXEMPT_ENDPOINTS:
                return None
            if not validate_csrf(request):
                return jsonify({"error": "CSRF_FAILED", "message": "CSRF token missing or invalid."}), 400
        return None

    # Production guardrails (fail fast with clear logs)
    problems = production_problems(app.config)
    if problems:
        raise RuntimeError(" ".join(problems))

    init_db(app)

    if hasattr(os, "register_at_fork"):
        def _after_fork_child():
            engine = app.extensions.get("sqlalchemy_engine")
            if engine:
                engine.dispose()
                app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

        os.register_at_fork(after_in_child=_after_fork_child)

    if app.config.get("STORAGE_BACKEND") == "s3":
        from app.irdesk.storage import storage_from_config

        info = storage_from_config(app.config).describe()
        if not info["configured"]:
            app.logger.error("STORAGE CONFIG ERROR: Missing required S3 env vars: %s", ", ".join(info["missing"]))

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(organizations_bp, url_prefix="/api/organization")
    app.register_blueprint(licensing_bp, url_prefix="/api/organization")
    app.register_blueprint(audit_trail_bp, url_prefix="/api/organization/audit")
    app.register_blueprint(incidents_bp, url_prefix="/api/incidents")
    app.register_blueprint(assets_bp, url_prefix="/api/assets")
    app.register_blueprint(tags_bp, url_prefix="/api/tags")
    app.register_blueprint(content_bp, url_prefix="/api")
    app.register_blueprint(content_admin_bp, url_prefix="/api/system-admin")
    app.register_blueprint(communications_bp, url_prefix="/api/communications")
    app.register_blueprint(runbooks_bp, url_prefix="/api/runbooks")
    app.register_blueprint(exercises_bp, url_prefix="/api/exercises")
    app.register_blueprint(exercises_admin_bp, url_prefix="/api/system-admin")
    app.register_blueprint(dashboard_bp, url_prefix="/api/dashboard")
    app.register_blueprint(system_admin_bp, url_prefix="/api/system-admin")
    app.register_blueprint(public_settings_bp, url_prefix="/api/settings")

    from app.irdesk.tenancy import meter_api_request

    app.before_request(load_current_user)
    app.before_request(meter_api_request)
    app.teardown_appcontext(teardown_db_session)

    # Migration health (lean): detect drift between code expectations and DB schema.
    try:
        missing = missing_tables(app)
    except Exception as e:  # connection problems surface again on first request
        app.logger.exception("Schema health check failed: %s", e)
        missing = []
    app.config["_schema_health_ok"] = not missing
    if missing:
        app.logger.warning("DB schema out of date; run `alembic upgrade head`. Missing: %s", ", ".join(missing))

    @app.errorhandler(ApiError)
    def _api_error(e: ApiError):  # type: ignore[no-redef]
        if e.status_code >= 500:
            app.logger.error("API error %s (request_id=%s): %s", e.code, getattr(g, "request_id", None), e.message)
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(403)
    def _err_403(e):  # type: ignore[no-redef]
        missing_perm = getattr(g, "missing_permission", None)
        if missing_perm:
            app.logger.warning("Forbidden: missing_permission=%s request_id=%s", missing_perm, getattr(g, "request_id", None))
        body = {"error": "FORBIDDEN", "message": "You do not have permission to perform this action."}
        if missing_perm:
            body["missingPermission"] = missing_perm
        return jsonify(body), 403

    @app.errorhandler(413)
    def _err_413(e):  # type: ignore[no-redef]
        limit = app.config.get("MAX_CONTENT_LENGTH")
        message = "File too large."
        if limit:
            message = f"File too large. Maximum size is {limit / (1024 * 1024):g}MB."
        return jsonify({"error": "PAYLOAD_TOO_LARGE", "message": message}), 413

    @app.errorhandler(HTTPException)
    def _http_error(e: HTTPException):  # type: ignore[no-redef]
        code = (e.name or "error").upper().replace(" ", "_")
        return jsonify({"error": code, "message": e.description}), e.code or 500

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return jsonify({"error": "INTERNAL_ERROR", "message": "An unexpected error occurred."}), 500

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
