"""Blueprint registration plus the health and index routes."""
from datetime import datetime

from flask import Blueprint, current_app
from sqlalchemy import text

from extensions import db
from utils.api import service, success
from .audit import audit_bp
from .auth import auth_bp
from .milestones import milestones_bp
from .projects import projects_bp

main_bp = Blueprint("main", __name__)


@main_bp.route("/health", methods=["GET"])
def health():
    try:
        db.session.execute(text("SELECT 1"))
        database = "connected"
    except Exception as exc:
        current_app.logger.error("Database health check failed", extra={"error": str(exc)})
        database = "unavailable"
    blockchain = service("blockchain_client")
    scheduler = service("notification_scheduler")
    return success(
        {
            "status": "OK" if database == "connected" else "DEGRADED",
            "timestamp": datetime.utcnow().isoformat(),
            "database": database,
            "blockchain": {"configured": blockchain.configured, "network": blockchain.network},
            "scheduler": {name: job["running"] for name, job in scheduler.job_status().items()},
        }
    )


@main_bp.route("/", methods=["GET"])
def index():
    return success(
        {
            "name": "Green Hydrogen Subsidy Platform API",
            "endpoints": ["/api/auth", "/api/projects", "/api/milestones", "/api/audit", "/api/health"],
        }
    )


__all__ = ["main_bp", "auth_bp", "projects_bp", "milestones_bp", "audit_bp"]
