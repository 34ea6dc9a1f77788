from datetime import datetime, timedelta

import pytest

from extensions import db
from models import Audit, Project
from utils.oracle_service import OracleProvider, OracleService

from conftest import auth, get_milestone, milestone_payload

TX_HASH = "0x" + "ab" * 32
CHAIN_TX = "0x" + "cd" * 32

STEPS = (
    ("start", "producer", {}),
    ("complete", "producer", {}),
    ("verify", "auditor", {"comments": "Stacks inspected on site"}),
    ("approve", "government", {"comments": "Cleared for release"}),
)


def _post(client, user, milestone_id, action, body=None):
    return client.post(f"/api/milestones/{milestone_id}/{action}", json=body or {}, headers=auth(user))


def _advance(client, users, milestone_id, through="approve"):
    for action, role, body in STEPS:
        response = _post(client, getattr(users, role), milestone_id, action, body)
        assert response.status_code == 200, response.get_json()
        if action == through:
            return response
    raise AssertionError(f"unknown step {through}")


class FakeChain:
    configured = True
    network = "localhost"
    contract_address = "0x" + "5" * 40

    def __init__(self):
        self.releases = []

    def release_subsidy(self, milestone_id, producer_address):
        self.releases.append((milestone_id, producer_address))
        return {"transactionHash": CHAIN_TX, "blockNumber": 11, "gasUsed": 52000, "eventData": None}


def test_milestone_lifecycle_end_to_end(app, client, users, milestone, outbox):
    _advance(client, users, milestone.id)

    response = _post(client, users.government, milestone.id, "release-subsidy", {"txHash": TX_HASH})

    assert response.status_code == 200
    data = response.get_json()["data"]
    assert data["transactionHash"] == TX_HASH
    assert data["milestone"]["released"] is True
    assert data["milestone"]["verification"]["isVerified"] is True
    assert data["milestone"]["approval"]["isApproved"] is True
    assert data["milestone"]["projectSummary"]["releasedAmount"] == 25000
    assert outbox[-1]["subject"].startswith("Subsidy Released")
    with app.app_context():
        events = Audit.query.filter_by(resource_id=milestone.id).all()
        assert len(events) == 6
        assert {entry.event_type for entry in events} == {
            "milestone_created",
            "milestone_updated",
            "milestone_completed",
            "verification_completed",
            "approval_granted",
            "subsidy_released",
        }


def test_verify_before_complete_conflicts(app, client, users, milestone):
    assert _post(client, users.producer, milestone.id, "start").status_code == 200

    response = _post(client, users.auditor, milestone.id, "verify")

    assert response.status_code == 409
    assert response.get_json()["error"]["message"] == "Only completed milestones can be verified"
    with app.app_context():
        assert get_milestone(milestone.id).status == "in_progress"
        assert Audit.query.filter_by(resource_id=milestone.id, event_type="verification_completed").count() == 0


def test_roles_are_gated_per_transition(client, users, milestone):
    assert _post(client, users.government, milestone.id, "start").status_code == 403
    assert _post(client, users.auditor, milestone.id, "start").status_code == 403
    assert _post(client, users.producer, milestone.id, "approve").status_code == 403
    assert _post(client, users.producer, milestone.id, "release-subsidy", {"txHash": TX_HASH}).status_code == 403


def test_owning_producer_cannot_verify_or_approve(app, client, users, milestone):
    _advance(client, users, milestone.id, through="complete")

    verify = _post(client, users.producer, milestone.id, "verify", {"comments": "Looks done to me"})
    assert verify.status_code == 403
    with app.app_context():
        record = get_milestone(milestone.id)
        assert record.status == "completed"
        assert record.is_verified is False
        assert Audit.query.filter_by(resource_id=milestone.id, event_type="verification_completed").count() == 0

    assert _post(client, users.auditor, milestone.id, "verify").status_code == 200
    approve = _post(client, users.producer, milestone.id, "approve")
    assert approve.status_code == 403
    with app.app_context():
        record = get_milestone(milestone.id)
        assert record.is_verified is True
        assert record.is_approved is False


def test_release_requires_tx_hash_and_approval(client, users, milestone):
    _advance(client, users, milestone.id, through="verify")

    missing = _post(client, users.government, milestone.id, "release-subsidy")
    assert missing.status_code == 400
    assert missing.get_json()["error"]["message"] == "txHash is required unless submitOnChain is set"

    early = _post(client, users.government, milestone.id, "release-subsidy", {"txHash": TX_HASH})
    assert early.status_code == 409


def test_release_on_chain_uses_producer_wallet(app, client, users, milestone, outbox):
    chain = FakeChain()
    app.extensions["blockchain_client"] = chain
    _advance(client, users, milestone.id)

    response = _post(client, users.government, milestone.id, "release-subsidy", {"submitOnChain": True})

    assert response.status_code == 200
    data = response.get_json()["data"]
    assert data["transactionHash"] == CHAIN_TX
    assert data["blockchain"]["blockNumber"] == 11
    assert chain.releases[0][1] == "0x" + "1" * 40
    with app.app_context():
        assert get_milestone(milestone.id).release_tx_hash == CHAIN_TX
        entry = Audit.query.filter_by(event_type="blockchain_transaction").one()
        assert entry.resource_type == "blockchain"
        assert entry.financial["toAddress"] == "0x" + "1" * 40
        assert Audit.query.filter_by(resource_id=milestone.id).count() == 6

    again = _post(client, users.government, milestone.id, "release-subsidy", {"submitOnChain": True})
    assert again.status_code == 409
    assert len(chain.releases) == 1


def _two_large_milestones(client, users, project):
    ids = []
    for sequence in (1, 2):
        response = client.post(
            f"/api/projects/{project.id}/milestones",
            json=milestone_payload(title=f"Stack bank {sequence}", sequenceNumber=sequence, subsidyAmount=60000),
            headers=auth(users.government),
        )
        assert response.status_code == 201, response.get_json()
        ids.append(response.get_json()["data"]["milestone"]["id"])
        _advance(client, users, ids[-1])
    return ids


def test_on_chain_release_checks_budget_before_submitting(app, client, users, project):
    chain = FakeChain()
    app.extensions["blockchain_client"] = chain
    first, second = _two_large_milestones(client, users, project)

    assert _post(client, users.government, first, "release-subsidy", {"submitOnChain": True}).status_code == 200
    response = _post(client, users.government, second, "release-subsidy", {"submitOnChain": True})

    assert response.status_code == 409
    assert response.get_json()["error"]["message"] == "Release would exceed the project's total subsidy"
    assert len(chain.releases) == 1
    with app.app_context():
        assert Audit.query.filter_by(event_type="blockchain_transaction").count() == 1
        assert get_milestone(second).released is False


def test_confirmed_chain_release_is_audited_when_recording_fails(app, client, users, project):
    class RacingChain(FakeChain):
        def release_subsidy(self, milestone_id, producer_address):
            # Another release drains the budget while the transaction is mined.
            Project.query.filter_by(id=project.id).update({Project.released_amount: Project.total_subsidy})
            db.session.commit()
            return super().release_subsidy(milestone_id, producer_address)

    chain = RacingChain()
    app.extensions["blockchain_client"] = chain
    first, _ = _two_large_milestones(client, users, project)

    response = _post(client, users.government, first, "release-subsidy", {"submitOnChain": True})

    assert response.status_code == 409
    assert len(chain.releases) == 1
    with app.app_context():
        entry = Audit.query.filter_by(event_type="blockchain_transaction").one()
        assert entry.blockchain["transactionHash"] == CHAIN_TX
        assert entry.financial["amount"] == 60000
        assert get_milestone(first).released is False
        assert Audit.query.filter_by(resource_id=first, event_type="subsidy_released").count() == 0


def test_requirement_completion_through_api(client, users, milestone):
    _post(client, users.producer, milestone.id, "start")

    first = _post(client, users.producer, milestone.id, "requirements/0/complete", {"evidence": "delivery.pdf"})
    assert first.get_json()["data"]["milestone"]["completionPercentage"] == 50

    missing = _post(client, users.producer, milestone.id, "requirements/5/complete")
    assert missing.status_code == 404

    last = _post(client, users.producer, milestone.id, "requirements/1/complete")
    assert last.get_json()["data"]["milestone"]["status"] == "completed"


def test_milestone_update_and_comments(client, users, milestone):
    response = client.put(
        f"/api/milestones/{milestone.id}", json={"title": "Stack installation"}, headers=auth(users.producer)
    )
    assert response.status_code == 200
    assert response.get_json()["data"]["milestone"]["title"] == "Stack installation"

    subsidy = client.put(f"/api/milestones/{milestone.id}", json={"subsidyAmount": 1}, headers=auth(users.producer))
    assert subsidy.status_code == 403

    comment = _post(client, users.auditor, milestone.id, "updates", {"message": "Inspection booked", "type": "progress"})
    assert comment.status_code == 200
    assert comment.get_json()["data"]["milestone"]["updates"][-1]["message"] == "Inspection booked"


def test_other_producer_cannot_see_milestone(client, milestone, make_user):
    outsider = make_user("producer", email="outsider@example.com", wallet_address="0x" + "6" * 40)

    response = client.get(f"/api/milestones/{milestone.id}", headers=auth(outsider))

    assert response.status_code == 403
    assert response.get_json()["error"]["message"] == "Not authorized to view this milestone"


def test_overdue_and_upcoming_listings(client, users, project):
    now = datetime.utcnow()
    late = milestone_payload(
        title="Permits",
        plannedStartDate=(now - timedelta(days=20)).isoformat(),
        plannedEndDate=(now - timedelta(days=2)).isoformat(),
        subsidyAmount=1000,
    )
    soon = milestone_payload(
        title="Grid tie-in",
        sequenceNumber=2,
        plannedStartDate=now.isoformat(),
        plannedEndDate=(now + timedelta(days=3)).isoformat(),
        subsidyAmount=1000,
    )
    for payload in (late, soon):
        created = client.post(f"/api/projects/{project.id}/milestones", json=payload, headers=auth(users.government))
        assert created.status_code == 201

    overdue = client.get("/api/milestones/overdue", headers=auth(users.producer)).get_json()["data"]["milestones"]
    assert [m["title"] for m in overdue] == ["Permits"]
    assert overdue[0]["isOverdue"] is True

    upcoming = client.get("/api/milestones/upcoming", query_string={"days": 7}, headers=auth(users.producer))
    assert [m["title"] for m in upcoming.get_json()["data"]["milestones"]] == ["Grid tie-in"]

    bad = client.get("/api/milestones/upcoming", query_string={"days": "soon"}, headers=auth(users.producer))
    assert bad.status_code == 400


def test_create_milestone_validation(client, users, project):
    response = client.post(
        f"/api/projects/{project.id}/milestones",
        json=milestone_payload(sequenceNumber=0),
        headers=auth(users.government),
    )
    assert response.status_code == 400
    assert "sequenceNumber" in response.get_json()["error"]["details"]

    client.post(f"/api/projects/{project.id}/milestones", json=milestone_payload(), headers=auth(users.government))
    duplicate = client.post(f"/api/projects/{project.id}/milestones", json=milestone_payload(), headers=auth(users.government))
    assert duplicate.status_code == 409


def test_oracle_refresh_is_advisory(app, client, users, milestone):
    def static(data):
        return lambda provider, milestone, project, session, timeout: data

    app.extensions["oracle_service"] = OracleService(
        [
            OracleProvider("weather", "Weather Oracle", "weather", 0.3, fetcher=static({"temperature": 29.0})),
            OracleProvider("energy", "Energy Oracle", "energy", 0.4, fetcher=static({"efficiency": 81.0})),
            OracleProvider("certification", "Certification Oracle", "certification", 0.3, fetcher=static({"complianceScore": 0.9})),
        ],
        threshold=0.75,
    )

    response = _post(client, users.oracle, milestone.id, "oracle-data")

    assert response.status_code == 200
    data = response.get_json()["data"]
    assert data["verification"]["consensus"] is True
    assert data["oracleData"]["dataSource"] == "Multiple Oracles"
    stored = client.get(f"/api/milestones/{milestone.id}/oracle-data", headers=auth(users.producer))
    assert stored.get_json()["data"]["oracleData"]["verificationHash"] == data["oracleData"]["verificationHash"]
    assert client.get(f"/api/milestones/{milestone.id}", headers=auth(users.producer)).get_json()["data"]["milestone"]["status"] == "pending"

    denied = _post(client, users.producer, milestone.id, "oracle-data")
    assert denied.status_code == 403


@pytest.mark.parametrize("role, expected", [("producer", 1), ("government", 1)])
def test_milestone_statistics(client, users, milestone, role, expected):
    stats = client.get("/api/milestones/statistics", headers=auth(getattr(users, role))).get_json()["data"]["statistics"]
    assert stats["totalMilestones"] == expected
    assert stats["byStatus"] == {"pending": 1}
