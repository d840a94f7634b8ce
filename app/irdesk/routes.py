from flask import Blueprint, current_app

bp = Blueprint("routes", __name__)


@bp.get("/")
def index():
    return {"service": "irdesk", "env": current_app.config.get("ENV")}


@bp.get("/health")
def health():
    """Health check endpoint. Returns JSON."""
    return {"ok": True, "schema_ok": bool(current_app.config.get("_schema_health_ok", True))}


@bp.get("/healthz")
def healthz():
    """
    Liveness check for the load balancer. No DB access.
    """
    return "ok", 200
