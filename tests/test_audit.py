from datetime import datetime, timedelta

import pytest

from extensions import db
from models import Audit, ImmutableRecordError
from utils import audit_logger
from utils.errors import ConflictError

from conftest import get_user


@pytest.fixture
def app_ctx(app):
    with app.app_context():
        yield


def _event(**overrides):
    event_type = overrides.pop("event_type", "project_updated")
    fields = {
        "action": "update",
        "resource_type": "project",
        "resource_id": "project-1",
        "description": "Updated project",
        "category": "data_modification",
    }
    fields.update(overrides)
    return audit_logger.record_event(event_type, **fields)


def test_record_event_sets_expiry_from_retention(app_ctx):
    entry = _event(retention_days=30)

    assert entry.retention_days == 30
    assert entry.expire_at - entry.timestamp == timedelta(days=30)
    assert entry.flagged is False


def test_security_and_critical_events_are_auto_flagged(app_ctx):
    security = audit_logger.log_security_event("access_denied", "Denied", severity="medium")
    critical = _event(severity="critical")

    assert security.flagged is True
    assert critical.flagged is True
    assert security.flag_reason == audit_logger.AUTO_FLAG_REASON


def test_unknown_enumerations_are_rejected(app_ctx):
    with pytest.raises(ValueError):
        audit_logger.record_event(
            "made_up_event", action="update", resource_type="project", description="x", category="data_modification"
        )
    with pytest.raises(ValueError):
        _event(severity="catastrophic")


def test_audit_rows_are_immutable_outside_review_fields(app_ctx):
    entry = _event()
    entry.description = "Rewritten history"

    with pytest.raises(ImmutableRecordError):
        db.session.commit()
    db.session.rollback()


def test_mark_reviewed_twice_fails_and_keeps_first_timestamp(users, app_ctx):
    reviewer = get_user(users.auditor.id)
    entry = audit_logger.mark_reviewed(_event(), reviewer, "Checked")
    first_reviewed_at = entry.reviewed_at

    with pytest.raises(ConflictError):
        audit_logger.mark_reviewed(entry, reviewer, "Again")

    refreshed = db.session.get(Audit, entry.id)
    assert refreshed.reviewed_at == first_reviewed_at
    assert refreshed.review_notes == "Checked"


def test_flag_for_review_once(users, app_ctx):
    government = get_user(users.government.id)
    entry = audit_logger.flag_for_review(_event(), "Suspicious amount", government)

    assert entry.flagged_by == government.id
    with pytest.raises(ConflictError):
        audit_logger.flag_for_review(entry, "Again", government)


def test_queries_filter_by_resource_actor_and_severity(users, app_ctx):
    government = get_user(users.government.id)
    audit_logger.log_user_action(government, "project_created", "create", "Created", category="data_modification", resource_type="project", resource_id="p-1")
    audit_logger.log_user_action(government, "project_updated", "update", "Updated", category="data_modification", resource_type="project", resource_id="p-2")
    audit_logger.log_security_event("authentication_failed", "Bad password", severity="low")
    audit_logger.log_security_event("access_denied", "Denied", severity="high")

    assert [a.resource_id for a in audit_logger.audit_trail("project", "p-1")] == ["p-1"]
    assert len(audit_logger.user_activity(government.id)) == 2
    assert [a.event_type for a in audit_logger.security_events(min_severity="medium")] == ["access_denied"]

    page = audit_logger.search({"category": "security", "flagged": True}, page=1, per_page=10)
    assert page.total == 2

    stats = audit_logger.statistics()
    assert stats["overview"]["totalEvents"] == 4
    assert stats["overview"]["securityEvents"] == 2
    assert stats["byEventType"]["project_created"] == 1
    assert stats["topUsers"][0]["userId"] == government.id


def test_purge_removes_only_expired_records(app_ctx):
    _event(retention_days=1)
    keep = _event(retention_days=3650)

    removed = audit_logger.purge_expired(datetime.utcnow() + timedelta(days=2))

    assert removed == 1
    assert [a.id for a in Audit.query.all()] == [keep.id]
