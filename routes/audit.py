"""Audit log queries and the flag/review workflow."""
from flask import Blueprint, request
from flask_login import current_user, login_required

from extensions import db
from models import AUDIT_SEVERITIES, Audit, Project
from utils import audit_logger
from utils.api import arg_bool, json_body, parse_datetime, success
from utils.errors import AuthorizationError, NotFoundError, ValidationFailed
from utils.permissions import Action, Role, can, capability_required

audit_bp = Blueprint("audit", __name__)

SEARCH_ARGS = {
    "eventType": "event_type",
    "category": "category",
    "severity": "severity",
    "resourceType": "resource_type",
    "resourceId": "resource_id",
    "userId": "actor_user_id",
}


def _date_args():
    return (
        parse_datetime(request.args.get("startDate"), "startDate"),
        parse_datetime(request.args.get("endDate"), "endDate"),
    )


def _load_audit(audit_id: str) -> Audit:
    entry = db.session.get(Audit, audit_id)
    if entry is None:
        raise NotFoundError("Audit log not found")
    return entry


def _access_audit(description: str, **kwargs) -> None:
    audit_logger.log_user_action(
        current_user,
        "data_export",
        "read",
        description,
        category="data_access",
        severity="low",
        resource_type="system",
        **kwargs,
    )


@audit_bp.route("", methods=["GET"])
@capability_required(Action.AUDIT_READ)
def list_audits():
    try:
        page = max(int(request.args.get("page", 1)), 1)
        limit = min(max(int(request.args.get("limit", 50)), 1), 200)
    except ValueError as exc:
        raise ValidationFailed("page and limit must be integers") from exc
    start, end = _date_args()
    filters = {field: request.args.get(arg) for arg, field in SEARCH_ARGS.items()}
    filters.update(start=start, end=end, flagged=arg_bool("flagged"), reviewed=arg_bool("reviewed"))

    result = audit_logger.search(filters, page=page, per_page=limit)
    _access_audit(
        f"Accessed audit logs ({result.total} records)",
        context={"filters": {key: request.args[key] for key in request.args}},
    )
    return success(
        {"auditLogs": [entry.to_dict() for entry in result.items]},
        pagination={"current": page, "pages": result.pages, "total": result.total, "limit": limit},
    )


@audit_bp.route("/statistics", methods=["GET"])
@capability_required(Action.AUDIT_READ)
def audit_statistics():
    start, end = _date_args()
    stats = audit_logger.statistics(start, end)
    _access_audit("Viewed audit statistics")
    return success({"statistics": stats})


@audit_bp.route("/security", methods=["GET"])
@capability_required(Action.AUDIT_SECURITY)
def security_events():
    start, end = _date_args()
    severity = request.args.get("severity", "medium")
    if severity not in AUDIT_SEVERITIES:
        raise ValidationFailed(f"Invalid severity: {severity}")
    events = audit_logger.security_events(start, end, min_severity=severity)
    _access_audit(f"Viewed security events ({len(events)} records)")
    return success({"events": [entry.to_dict() for entry in events], "count": len(events)})


@audit_bp.route("/trail/<resource_type>/<resource_id>", methods=["GET"])
@capability_required(Action.PROJECT_AUDIT_TRAIL, Action.AUDIT_READ)
def resource_trail(resource_type, resource_id):
    if current_user.role == Role.PRODUCER.value:
        project = db.session.get(Project, resource_id) if resource_type == "project" else None
        if project is None or project.producer_id != current_user.id:
            raise AuthorizationError("Not authorized to view this audit trail")
    try:
        limit = min(max(int(request.args.get("limit", 50)), 1), 500)
    except ValueError as exc:
        raise ValidationFailed("limit must be an integer") from exc
    trail = audit_logger.audit_trail(resource_type, resource_id, limit=limit)
    _access_audit(f"Viewed audit trail for {resource_type}: {resource_id}", resource_id=resource_id)
    return success({"auditTrail": [entry.to_dict() for entry in trail], "count": len(trail)})


@audit_bp.route("/user/<user_id>", methods=["GET"])
@login_required
def user_activity(user_id):
    if user_id != current_user.id and not can(current_user, Action.AUDIT_READ):
        raise AuthorizationError("Not authorized to view this user's activity")
    try:
        limit = min(max(int(request.args.get("limit", 100)), 1), 500)
    except ValueError as exc:
        raise ValidationFailed("limit must be an integer") from exc
    activity = audit_logger.user_activity(user_id, limit=limit)
    _access_audit(f"Viewed activity for user: {user_id}", resource_id=user_id)
    return success({"activity": [entry.to_dict() for entry in activity], "count": len(activity)})


@audit_bp.route("/<audit_id>/flag", methods=["POST"])
@capability_required(Action.AUDIT_REVIEW)
def flag(audit_id):
    reason = (json_body().get("reason") or "").strip()
    if not reason:
        raise ValidationFailed("A reason is required to flag an audit log")
    entry = audit_logger.flag_for_review(_load_audit(audit_id), reason[:500], current_user)
    return success({"auditLog": entry.to_dict()}, message="Audit log flagged for review successfully")


@audit_bp.route("/<audit_id>/review", methods=["POST"])
@capability_required(Action.AUDIT_REVIEW)
def review(audit_id):
    notes = json_body().get("notes")
    entry = audit_logger.mark_reviewed(_load_audit(audit_id), current_user, notes)
    return success({"auditLog": entry.to_dict()}, message="Audit log marked as reviewed successfully")
