"""Append-only audit trail writer plus the read-side query helpers."""
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from flask import current_app, has_request_context, request

from extensions import db
from models import (
    AUDIT_ACTIONS,
    AUDIT_ACTOR_ROLES,
    AUDIT_CATEGORIES,
    AUDIT_CURRENCIES,
    AUDIT_EVENT_TYPES,
    AUDIT_NETWORKS,
    AUDIT_RESOURCE_TYPES,
    AUDIT_SEVERITIES,
    DATA_CLASSIFICATIONS,
    Audit,
    compute_expiry,
    count_by,
)
from utils.errors import ConflictError

AUTO_FLAG_REASON = "Auto-flagged due to critical severity or security category"

SEVERITY_RANK = {name: rank for rank, name in enumerate(AUDIT_SEVERITIES)}

SYSTEM_ACTOR: Dict[str, Any] = {"role": "system"}


def actor_from_user(user) -> Dict[str, Any]:
    """Build an actor descriptor, adding request origin details when a request is active."""
    actor: Dict[str, Any] = {}
    if user is not None and getattr(user, "is_authenticated", False):
        actor = {
            "user_id": user.id,
            "email": user.email,
            "wallet": user.wallet_address,
            "role": user.role,
        }
    if has_request_context():
        actor["ip"] = (request.remote_addr or "unknown")[:64]
        actor["user_agent"] = (request.headers.get("User-Agent") or "unknown")[:255]
    return actor


def _require(value, allowed, label: str) -> None:
    if value not in allowed:
        raise ValueError(f"Invalid audit {label}: {value}")


def _default_retention() -> int:
    try:
        return int(current_app.config.get("AUDIT_RETENTION_DAYS", 2555))
    except RuntimeError:
        return 2555


def record_event(
    event_type: str,
    *,
    action: str,
    resource_type: str,
    description: str,
    category: str,
    severity: str = "medium",
    resource_id: Optional[str] = None,
    resource_name: Optional[str] = None,
    resource_details: Optional[Dict[str, Any]] = None,
    actor: Optional[Dict[str, Any]] = None,
    blockchain: Optional[Dict[str, Any]] = None,
    financial: Optional[Dict[str, Any]] = None,
    context: Optional[Dict[str, Any]] = None,
    request_info: Optional[Dict[str, Any]] = None,
    response_info: Optional[Dict[str, Any]] = None,
    tags: Optional[list] = None,
    data_classification: str = "internal",
    personal_data_involved: bool = False,
    retention_days: Optional[int] = None,
    commit: bool = True,
) -> Audit:
    """Create exactly one audit record.

    With ``commit=False`` the record joins the caller's unit of work so a state
    transition and its audit row are persisted together.
    """
    _require(event_type, AUDIT_EVENT_TYPES, "event type")
    _require(action, AUDIT_ACTIONS, "action")
    _require(resource_type, AUDIT_RESOURCE_TYPES, "resource type")
    _require(category, AUDIT_CATEGORIES, "category")
    _require(severity, AUDIT_SEVERITIES, "severity")
    _require(data_classification, DATA_CLASSIFICATIONS, "data classification")
    if not description:
        raise ValueError("Audit description is required")

    actor = actor or {}
    if actor.get("role") is not None:
        _require(actor["role"], AUDIT_ACTOR_ROLES, "actor role")
    if blockchain and blockchain.get("network") is not None:
        _require(blockchain["network"], AUDIT_NETWORKS, "network")
    if financial and financial.get("currency") is not None:
        _require(financial["currency"], AUDIT_CURRENCIES, "currency")

    now = datetime.utcnow()
    retention = int(retention_days if retention_days is not None else _default_retention())
    entry = Audit(
        event_type=event_type,
        actor_user_id=actor.get("user_id"),
        actor_email=actor.get("email"),
        actor_wallet=actor.get("wallet"),
        actor_role=actor.get("role"),
        actor_ip=actor.get("ip"),
        actor_user_agent=actor.get("user_agent"),
        resource_type=resource_type,
        resource_id=str(resource_id) if resource_id is not None else None,
        resource_name=resource_name,
        resource_details=resource_details,
        action=action,
        description=description[:1000],
        request_info=request_info,
        response_info=response_info,
        blockchain=blockchain,
        tx_hash=(blockchain or {}).get("transactionHash"),
        financial=financial,
        severity=severity,
        category=category,
        correlation_id=request.headers.get("X-Correlation-ID") if has_request_context() else None,
        tags=list(tags or []),
        context=context,
        data_classification=data_classification,
        personal_data_involved=personal_data_involved,
        retention_days=retention,
        expire_at=compute_expiry(now, retention),
        timestamp=now,
    )
    if severity == "critical" or category == "security":
        entry.flagged = True
        entry.flag_reason = AUTO_FLAG_REASON
        entry.flagged_at = now

    db.session.add(entry)
    if commit:
        db.session.commit()
    return entry


def log_user_action(user, event_type: str, action: str, description: str, *, category: str = "data_access", **kwargs) -> Audit:
    kwargs.setdefault("resource_type", "user")
    kwargs.setdefault("resource_id", getattr(user, "id", None))
    return record_event(
        event_type,
        action=action,
        description=description,
        category=category,
        actor=kwargs.pop("actor", None) or actor_from_user(user),
        **kwargs,
    )


def log_blockchain_transaction(user, tx_result: Dict[str, Any], *, function_name: str, description: str, contract_address: Optional[str] = None, financial: Optional[Dict[str, Any]] = None, resource_type: str = "blockchain", resource_id: Optional[str] = None, commit: bool = True) -> Audit:
    return record_event(
        "blockchain_transaction",
        action="create",
        resource_type=resource_type,
        resource_id=resource_id or tx_result.get("transactionHash"),
        description=description,
        category="financial",
        severity="high",
        actor=actor_from_user(user),
        blockchain={
            "network": current_app.config.get("BLOCKCHAIN_NETWORK", "localhost"),
            "transactionHash": tx_result.get("transactionHash"),
            "blockNumber": tx_result.get("blockNumber"),
            "contractAddress": contract_address,
            "gasUsed": str(tx_result.get("gasUsed")) if tx_result.get("gasUsed") is not None else None,
            "functionName": function_name,
        },
        financial=financial,
        commit=commit,
    )


def log_security_event(event_type: str, description: str, *, user=None, severity: str = "high", action: str = "read", resource_type: str = "system", resource_id: Optional[str] = None, request_info: Optional[Dict[str, Any]] = None, commit: bool = True) -> Audit:
    return record_event(
        event_type,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        description=description,
        category="security",
        severity=severity,
        actor=actor_from_user(user),
        request_info=request_info,
        commit=commit,
    )


def audit_trail(resource_type: str, resource_id: str, limit: int = 50) -> list[Audit]:
    return (
        Audit.query.filter_by(resource_type=resource_type, resource_id=str(resource_id))
        .order_by(Audit.timestamp.desc())
        .limit(limit)
        .all()
    )


def user_activity(user_id: str, limit: int = 100) -> list[Audit]:
    return (
        Audit.query.filter_by(actor_user_id=str(user_id))
        .order_by(Audit.timestamp.desc())
        .limit(limit)
        .all()
    )


def security_events(start: Optional[datetime] = None, end: Optional[datetime] = None, min_severity: str = "medium") -> list[Audit]:
    _require(min_severity, AUDIT_SEVERITIES, "severity")
    allowed = [name for name in AUDIT_SEVERITIES if SEVERITY_RANK[name] >= SEVERITY_RANK[min_severity]]
    query = Audit.query.filter(Audit.category == "security", Audit.severity.in_(allowed))
    if start:
        query = query.filter(Audit.timestamp >= start)
    if end:
        query = query.filter(Audit.timestamp <= end)
    return query.order_by(Audit.timestamp.desc()).all()


def _date_range(start: Optional[datetime], end: Optional[datetime]) -> tuple[datetime, datetime]:
    end = end or datetime.utcnow()
    start = start or end - timedelta(days=30)
    return start, end


def statistics(start: Optional[datetime] = None, end: Optional[datetime] = None) -> Dict[str, Any]:
    start, end = _date_range(start, end)
    scoped = Audit.query.filter(Audit.timestamp >= start, Audit.timestamp <= end)
    top_users = (
        scoped.filter(Audit.actor_user_id.isnot(None))
        .with_entities(Audit.actor_user_id, Audit.actor_email, db.func.count(Audit.id))
        .group_by(Audit.actor_user_id, Audit.actor_email)
        .order_by(db.func.count(Audit.id).desc())
        .limit(10)
        .all()
    )
    return {
        "range": {"start": start.isoformat(), "end": end.isoformat()},
        "overview": {
            "totalEvents": scoped.count(),
            "securityEvents": scoped.filter(Audit.category == "security").count(),
            "criticalEvents": scoped.filter(Audit.severity == "critical").count(),
            "flaggedEvents": scoped.filter(Audit.flagged.is_(True)).count(),
            "blockchainTransactions": scoped.filter(Audit.event_type == "blockchain_transaction").count(),
        },
        "byEventType": count_by(Audit.event_type, scoped),
        "byCategory": count_by(Audit.category, scoped),
        "bySeverity": count_by(Audit.severity, scoped),
        "topUsers": [{"userId": uid, "email": email, "count": count} for uid, email, count in top_users],
    }


def search(filters: Dict[str, Any], page: int = 1, per_page: int = 50):
    query = Audit.query
    for field in ("event_type", "category", "severity", "resource_type", "resource_id", "actor_user_id"):
        if filters.get(field):
            query = query.filter(getattr(Audit, field) == filters[field])
    for field in ("flagged", "reviewed", "archived"):
        if filters.get(field) is not None:
            query = query.filter(getattr(Audit, field).is_(bool(filters[field])))
    if filters.get("start"):
        query = query.filter(Audit.timestamp >= filters["start"])
    if filters.get("end"):
        query = query.filter(Audit.timestamp <= filters["end"])
    return query.order_by(Audit.timestamp.desc()).paginate(page=page, per_page=per_page, error_out=False)


def flag_for_review(audit: Audit, reason: str, user) -> Audit:
    if audit.flagged:
        raise ConflictError("Audit record is already flagged")
    audit.flagged = True
    audit.flag_reason = reason
    audit.flagged_by = user.id
    audit.flagged_at = datetime.utcnow()
    db.session.commit()
    return audit


def mark_reviewed(audit: Audit, user, notes: Optional[str] = None) -> Audit:
    if audit.reviewed:
        raise ConflictError("Audit record has already been reviewed")
    audit.reviewed = True
    audit.reviewed_by = user.id
    audit.reviewed_at = datetime.utcnow()
    audit.review_notes = notes
    db.session.commit()
    return audit


def archive(audit: Audit) -> Audit:
    if audit.archived:
        raise ConflictError("Audit record is already archived")
    audit.archived = True
    audit.archived_at = datetime.utcnow()
    db.session.commit()
    return audit


def purge_expired(now: Optional[datetime] = None) -> int:
    removed = Audit.query.filter(Audit.expire_at < (now or datetime.utcnow())).delete(synchronize_session=False)
    db.session.commit()
    return removed
