import pytest

from extensions import db
from models import Audit, Project

from conftest import auth, milestone_payload

CHAIN_TX = "0x" + "aa" * 32


class FakeChain:
    configured = True
    network = "localhost"
    contract_address = "0x" + "5" * 40

    def __init__(self):
        self.calls = []

    def _receipt(self, name, *args):
        self.calls.append((name, args))
        return {"transactionHash": CHAIN_TX, "blockNumber": 7, "gasUsed": 21000, "eventData": None}

    def create_project(self, project_id, producer_address, total_subsidy, metadata=""):
        return self._receipt("createProject", project_id, producer_address, total_subsidy)

    def release_subsidy(self, milestone_id, producer_address):
        return self._receipt("releaseSubsidy", milestone_id, producer_address)


@pytest.fixture
def chain(app):
    fake = FakeChain()
    app.extensions["blockchain_client"] = fake
    return fake


def _error(response):
    return response.get_json()["error"]["message"]


def test_create_project_links_producer_wallet(client, users, project_payload):
    response = client.post("/api/projects", json=project_payload, headers=auth(users.government))

    assert response.status_code == 201
    project = response.get_json()["data"]["project"]
    assert project["producer"]["id"] == users.producer.id
    assert project["producerWalletAddress"] == "0x" + "1" * 40
    assert project["status"] == "pending"
    assert project["capacity"] == {"value": 100.0, "unit": "MW"}
    assert project["projectId"].startswith("GHP-")


def test_only_government_creates_projects(app, client, users, project_payload):
    response = client.post("/api/projects", json=project_payload, headers=auth(users.producer))

    assert response.status_code == 403
    with app.app_context():
        assert Audit.query.filter_by(event_type="access_denied").count() == 1
        assert Project.query.count() == 0


@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"producer": "missing"}, "Invalid producer ID"),
        ({"location": {"city": "Bhuj"}}, "Location with city and state is required"),
        ({"expectedEndDate": "2025-01-01T00:00:00Z"}, "Expected end date must be after expected start date"),
        ({"technology": "Cold Fusion"}, "Invalid technology: Cold Fusion"),
    ],
)
def test_create_project_validation(client, users, project_payload, overrides, message):
    response = client.post("/api/projects", json={**project_payload, **overrides}, headers=auth(users.government))

    assert response.status_code == 400
    assert _error(response) == message


def test_create_project_requires_producer_role(client, users, project_payload):
    response = client.post(
        "/api/projects", json={**project_payload, "producer": users.auditor.id}, headers=auth(users.government)
    )
    assert response.status_code == 400
    assert _error(response) == "Invalid producer ID"


def test_register_on_chain_records_transaction(app, client, users, project_payload, chain):
    response = client.post(
        "/api/projects", json={**project_payload, "registerOnChain": True}, headers=auth(users.government)
    )

    assert response.status_code == 201
    data = response.get_json()["data"]
    assert data["project"]["chainTxHash"] == CHAIN_TX
    assert data["blockchain"]["blockNumber"] == 7
    assert chain.calls[0][0] == "createProject"
    with app.app_context():
        entry = Audit.query.filter_by(event_type="blockchain_transaction").one()
        assert entry.tx_hash == CHAIN_TX
        assert entry.blockchain["functionName"] == "createProject"


def test_listing_is_scoped_by_role(client, users, project, make_user):
    other = make_user("auditor", email="idle-auditor@example.com", wallet_address="0x" + "7" * 40)

    def names(user, **params):
        response = client.get("/api/projects", query_string=params, headers=auth(user))
        assert response.status_code == 200
        return response.get_json()

    assert names(users.producer)["pagination"]["total"] == 1
    assert names(users.auditor)["pagination"]["total"] == 1
    assert names(other)["pagination"]["total"] == 0
    assert names(users.government, search="kutch")["pagination"]["total"] == 1
    assert names(users.government, search="nothing-matches")["pagination"]["total"] == 0


def test_other_producer_cannot_view_project(client, project, make_user):
    outsider = make_user("producer", email="outsider@example.com", wallet_address="0x" + "6" * 40)

    response = client.get(f"/api/projects/{project.id}", headers=auth(outsider))

    assert response.status_code == 403
    assert _error(response) == "Not authorized to view this project"


def test_get_project_includes_milestones(client, users, milestone):
    response = client.get(f"/api/projects/{milestone.project_id}", headers=auth(users.producer))

    assert response.status_code == 200
    project = response.get_json()["data"]["project"]
    assert [m["id"] for m in project["milestones"]] == [milestone.id]
    assert project["milestoneCount"] == 1


def test_approve_activates_and_notifies(client, users, project, outbox):
    response = client.post(f"/api/projects/{project.id}/approve", headers=auth(users.government))

    assert response.status_code == 200
    data = response.get_json()["data"]["project"]
    assert data["status"] == "active"
    assert data["approvalStatus"] == "approved"
    assert data["notifications"][-1]["type"] == "status_change"
    assert outbox[-1]["subject"].startswith("Project Approved")

    again = client.post(f"/api/projects/{project.id}/approve", headers=auth(users.government))
    assert again.status_code == 409
    assert _error(again) == "Project is already approved"


def test_reject_cancels_and_blocks_milestones(client, users, project):
    response = client.post(
        f"/api/projects/{project.id}/reject", json={"reason": "Incomplete land documents"}, headers=auth(users.government)
    )

    assert response.status_code == 200
    data = response.get_json()["data"]["project"]
    assert data["status"] == "cancelled"
    assert data["rejectionReason"] == "Incomplete land documents"

    blocked = client.post(f"/api/projects/{project.id}/milestones", json=milestone_payload(), headers=auth(users.government))
    assert blocked.status_code == 409


def test_assign_auditor_requires_auditor_role(client, users, project):
    response = client.post(
        f"/api/projects/{project.id}/assign-auditor", json={"auditorId": users.producer.id}, headers=auth(users.government)
    )
    assert response.status_code == 400
    assert _error(response) == "Invalid auditor ID"


def test_producer_updates_are_restricted(app, client, users, project):
    renamed = client.put(f"/api/projects/{project.id}", json={"name": "Renamed"}, headers=auth(users.producer))
    assert renamed.status_code == 400

    described = client.put(
        f"/api/projects/{project.id}", json={"description": "Now with storage"}, headers=auth(users.producer)
    )
    assert described.status_code == 200
    assert described.get_json()["data"]["project"]["description"] == "Now with storage"

    status = client.put(f"/api/projects/{project.id}", json={"status": "suspended"}, headers=auth(users.government))
    assert status.status_code == 200
    with app.app_context():
        assert Audit.query.filter_by(event_type="project_status_changed", resource_id=project.id).count() == 1


@pytest.mark.parametrize(
    "body, message",
    [
        ({"totalSubsidy": "lots"}, "totalSubsidy must be a number"),
        ({"totalSubsidy": -5}, "totalSubsidy cannot be negative"),
        ({"capacityValue": "big"}, "capacityValue must be a number"),
        ({"capacityValue": [100]}, "capacityValue must be a number"),
    ],
)
def test_update_rejects_non_numeric_amounts(app, client, users, project, body, message):
    response = client.put(f"/api/projects/{project.id}", json=body, headers=auth(users.government))

    assert response.status_code == 400
    assert response.get_json()["error"]["message"] == message
    with app.app_context():
        assert db.session.get(Project, project.id).total_subsidy == 100000
        assert Audit.query.filter_by(event_type="system_error").count() == 0


def test_update_accepts_numeric_strings(client, users, project):
    response = client.put(
        f"/api/projects/{project.id}", json={"totalSubsidy": "150000", "capacityValue": "120"}, headers=auth(users.government)
    )

    assert response.status_code == 200
    data = response.get_json()["data"]["project"]
    assert data["totalSubsidy"] == 150000
    assert data["capacity"]["value"] == 120


def test_delete_is_soft(app, client, users, project):
    response = client.delete(f"/api/projects/{project.id}", headers=auth(users.government))

    assert response.status_code == 200
    assert client.get(f"/api/projects/{project.id}", headers=auth(users.government)).status_code == 404
    with app.app_context():
        assert db.session.get(Project, project.id).is_active is False


def test_statistics_are_scoped_for_producers(client, users, milestone, make_user):
    outsider = make_user("producer", email="stats@example.com", wallet_address="0x" + "6" * 40)

    own = client.get("/api/projects/statistics", headers=auth(users.producer)).get_json()["data"]["statistics"]
    assert own["totalProjects"] == 1
    assert own["totalSubsidy"] == 100000
    assert own["milestones"]["totalMilestones"] == 1

    empty = client.get("/api/projects/statistics", headers=auth(outsider)).get_json()["data"]["statistics"]
    assert empty["totalProjects"] == 0
    assert empty["milestones"]["totalMilestones"] == 0


def test_project_audit_trail_covers_milestones(client, users, milestone):
    response = client.get(f"/api/projects/{milestone.project_id}/audit", headers=auth(users.producer))

    assert response.status_code == 200
    events = {entry["eventType"] for entry in response.get_json()["data"]["auditTrail"]}
    assert {"project_created", "milestone_created"} <= events

    oracle = client.get(f"/api/projects/{milestone.project_id}/audit", headers=auth(users.oracle))
    assert oracle.status_code == 403
