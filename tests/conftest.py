from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest

from app import create_app
from extensions import db
from models import Milestone, Project, User
from utils.permissions import DEFAULT_PERMISSIONS, Role
from utils.security import issue_access_token

PASSWORD = "Str0ng!Passw0rd"
WALLETS = {
    "producer": "0x" + "1" * 40,
    "government": "0x" + "2" * 40,
    "auditor": "0x" + "3" * 40,
    "oracle": "0x" + "4" * 40,
}


@pytest.fixture
def app(monkeypatch, tmp_path):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("LOG_DIR", str(tmp_path / "logs"))
    application = create_app("testing")
    yield application
    with application.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def outbox(monkeypatch):
    """Capture outgoing mail instead of talking to SMTP."""
    sent = []

    def capture(subject, text_body, html_body, sender, recipients):
        sent.append({"subject": subject, "text": text_body, "to": list(recipients)})

    monkeypatch.setattr("utils.email_service._dispatch_email", capture)
    return sent


@pytest.fixture
def make_user(app):
    def factory(role: str, email: str = None, **fields) -> SimpleNamespace:
        with app.app_context():
            user = User(
                name=fields.pop("name", f"{role.title()} User"),
                email=email or f"{role}@example.com",
                role=role,
                wallet_address=fields.pop("wallet_address", WALLETS.get(role)),
                permissions=list(DEFAULT_PERMISSIONS[Role.parse(role)]),
                **fields,
            )
            user.set_password(PASSWORD)
            # Keep freshly issued tokens newer than the password timestamp.
            user.password_changed_at = datetime.utcnow() - timedelta(minutes=1)
            db.session.add(user)
            db.session.commit()
            return SimpleNamespace(id=user.id, email=user.email, role=role, token=issue_access_token(user))

    return factory


@pytest.fixture
def users(make_user):
    return SimpleNamespace(
        producer=make_user("producer"),
        government=make_user("government"),
        auditor=make_user("auditor"),
        oracle=make_user("oracle"),
    )


def auth(user) -> dict:
    return {"Authorization": f"Bearer {user.token}"}


@pytest.fixture
def project_payload(users):
    return {
        "name": "Kutch Green Hydrogen Hub",
        "description": "100 MW electrolysis plant powered by co-located solar",
        "producer": users.producer.id,
        "location": {"city": "Bhuj", "state": "Gujarat", "coordinates": {"latitude": 23.25, "longitude": 69.67}},
        "capacityValue": 100,
        "capacityUnit": "MW",
        "technology": "Electrolysis",
        "totalSubsidy": 100000,
        "expectedStartDate": "2026-01-01T00:00:00Z",
        "expectedEndDate": "2028-12-31T00:00:00Z",
        "tags": ["solar", "electrolysis"],
    }


def milestone_payload(**overrides) -> dict:
    payload = {
        "title": "Electrolyser installation",
        "description": "Install and connect the electrolyser stacks",
        "category": "Equipment Installation",
        "sequenceNumber": 1,
        "plannedStartDate": (datetime.utcnow() + timedelta(days=1)).isoformat(),
        "plannedEndDate": (datetime.utcnow() + timedelta(days=60)).isoformat(),
        "subsidyAmount": 25000,
        "requirements": ["Stacks delivered", "Grid connection approved"],
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def project(app, client, users, project_payload):
    """A project created through the API with the auditor assigned."""
    response = client.post("/api/projects", json=project_payload, headers=auth(users.government))
    assert response.status_code == 201, response.get_json()
    project_id = response.get_json()["data"]["project"]["id"]
    response = client.post(
        f"/api/projects/{project_id}/assign-auditor",
        json={"auditorId": users.auditor.id},
        headers=auth(users.government),
    )
    assert response.status_code == 200, response.get_json()
    return SimpleNamespace(id=project_id)


@pytest.fixture
def milestone(client, users, project):
    response = client.post(
        f"/api/projects/{project.id}/milestones",
        json=milestone_payload(),
        headers=auth(users.government),
    )
    assert response.status_code == 201, response.get_json()
    return SimpleNamespace(id=response.get_json()["data"]["milestone"]["id"], project_id=project.id)


@pytest.fixture
def model_project(app, users):
    """A project inserted directly for service-level tests."""
    with app.app_context():
        record = Project(
            name="Direct Project",
            description="Inserted without the API",
            producer_id=users.producer.id,
            producer_wallet_address=WALLETS["producer"],
            government_id=users.government.id,
            auditor_id=users.auditor.id,
            location={"city": "Pune", "state": "Maharashtra"},
            capacity_value=10,
            total_subsidy=100000,
            expected_start_date=datetime(2026, 1, 1),
            expected_end_date=datetime(2027, 1, 1),
        )
        db.session.add(record)
        db.session.commit()
        return record.id


def get_user(user_id) -> User:
    return db.session.get(User, user_id)


def get_milestone(milestone_id) -> Milestone:
    return db.session.get(Milestone, milestone_id)
