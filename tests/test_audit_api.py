from conftest import auth


def _created_entry(client, user):
    response = client.get("/api/audit", query_string={"eventType": "project_created"}, headers=auth(user))
    assert response.status_code == 200
    body = response.get_json()
    assert body["pagination"]["total"] == 1
    return body["data"]["auditLogs"][0]


def test_audit_search_is_limited_to_reviewers(client, users, project):
    entry = _created_entry(client, users.auditor)
    assert entry["resource"] == {"type": "project", "id": project.id, "name": "Kutch Green Hydrogen Hub", "details": None}
    assert entry["actor"]["role"] == "government"

    assert client.get("/api/audit", headers=auth(users.producer)).status_code == 403

    bad = client.get("/api/audit", query_string={"limit": "many"}, headers=auth(users.government))
    assert bad.status_code == 400


def test_flag_then_review_once(client, users, project):
    entry = _created_entry(client, users.government)

    no_reason = client.post(f"/api/audit/{entry['id']}/flag", json={}, headers=auth(users.auditor))
    assert no_reason.status_code == 400

    flagged = client.post(
        f"/api/audit/{entry['id']}/flag", json={"reason": "Subsidy looks high"}, headers=auth(users.auditor)
    )
    assert flagged.status_code == 200
    assert flagged.get_json()["data"]["auditLog"]["flagReason"] == "Subsidy looks high"

    reviewed = client.post(f"/api/audit/{entry['id']}/review", json={"notes": "Matches sanction"}, headers=auth(users.auditor))
    assert reviewed.status_code == 200
    log = reviewed.get_json()["data"]["auditLog"]
    assert log["reviewed"] is True
    assert log["reviewedBy"] == users.auditor.id

    again = client.post(f"/api/audit/{entry['id']}/review", json={"notes": "Twice"}, headers=auth(users.government))
    assert again.status_code == 409

    missing = client.post("/api/audit/not-an-id/review", json={}, headers=auth(users.auditor))
    assert missing.status_code == 404


def test_security_events_require_government(client, users):
    client.get("/api/projects", headers={"Authorization": "Bearer forged"})

    response = client.get("/api/audit/security", query_string={"severity": "low"}, headers=auth(users.government))
    assert response.status_code == 200
    assert "access_denied" in {event["eventType"] for event in response.get_json()["data"]["events"]}

    assert client.get("/api/audit/security", headers=auth(users.auditor)).status_code == 403
    bad = client.get("/api/audit/security", query_string={"severity": "extreme"}, headers=auth(users.government))
    assert bad.status_code == 400


def test_producer_trail_is_scoped_to_own_projects(client, users, project, make_user):
    own = client.get(f"/api/audit/trail/project/{project.id}", headers=auth(users.producer))
    assert own.status_code == 200
    assert own.get_json()["data"]["count"] >= 1

    system = client.get(f"/api/audit/trail/system/{project.id}", headers=auth(users.producer))
    assert system.status_code == 403

    outsider = make_user("producer", email="outsider@example.com", wallet_address="0x" + "6" * 40)
    denied = client.get(f"/api/audit/trail/project/{project.id}", headers=auth(outsider))
    assert denied.status_code == 403
    assert denied.get_json()["error"]["message"] == "Not authorized to view this audit trail"


def test_user_activity_self_or_reviewer(client, users, project):
    own = client.get(f"/api/audit/user/{users.government.id}", headers=auth(users.government))
    assert own.status_code == 200
    assert "project_created" in {entry["eventType"] for entry in own.get_json()["data"]["activity"]}

    assert client.get(f"/api/audit/user/{users.government.id}", headers=auth(users.auditor)).status_code == 200
    assert client.get(f"/api/audit/user/{users.government.id}", headers=auth(users.producer)).status_code == 403


def test_statistics_endpoint(client, users, project):
    response = client.get("/api/audit/statistics", headers=auth(users.government))

    assert response.status_code == 200
    overview = response.get_json()["data"]["statistics"]["overview"]
    assert overview["totalEvents"] >= 2
