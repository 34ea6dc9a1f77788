from app import create_app
from extensions import db
from models import Audit
from utils.audit_logger import actor_from_user


def test_health_reports_services(client):
    response = client.get("/api/health")

    assert response.status_code == 200
    data = response.get_json()["data"]
    assert data["status"] == "OK"
    assert data["database"] == "connected"
    assert data["blockchain"] == {"configured": False, "network": "localhost"}
    assert set(data["scheduler"]) == {"overdue-check", "due-reminders", "weekly-summary", "audit-purge"}
    assert not any(data["scheduler"].values())


def test_index_and_security_headers(client):
    response = client.get("/api/", headers={"Origin": "http://localhost:3000"})

    assert response.get_json()["data"]["name"] == "Green Hydrogen Subsidy Platform API"
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["Access-Control-Allow-Origin"] == "http://localhost:3000"

    foreign = client.get("/api/", headers={"Origin": "https://evil.example"})
    assert "Access-Control-Allow-Origin" not in foreign.headers


def test_unknown_route_uses_error_envelope(client):
    response = client.get("/api/nowhere")

    assert response.status_code == 404
    body = response.get_json()
    assert body["success"] is False
    assert body["error"]["message"]


def test_server_error_is_audited_with_redacted_body(app, client):
    def explode():
        raise RuntimeError("disk full")

    app.add_url_rule("/api/explode", "explode", explode, methods=["POST"])

    response = client.post("/api/explode", json={"email": "a@example.com", "password": "hunter22"})

    assert response.status_code == 500
    assert response.get_json()["error"]["message"] == "Server Error"
    with app.app_context():
        entry = Audit.query.filter_by(event_type="system_error").one()
        assert entry.severity == "high"
        assert entry.request_info["body"] == {"email": "a@example.com", "password": "[REDACTED]"}
        assert "disk full" in entry.description


FORWARDED = {"Authorization": "Bearer forged", "X-Forwarded-For": "203.0.113.9, 198.51.100.7"}


def _denied_ip(app):
    with app.app_context():
        return Audit.query.filter_by(event_type="access_denied").one().actor_ip


def test_forwarded_header_is_ignored_without_trusted_proxy(app, client):
    client.get("/api/projects", headers=FORWARDED)

    assert _denied_ip(app) == "127.0.0.1"


def test_trusted_proxy_resolves_nearest_forwarded_address(app, monkeypatch):
    monkeypatch.setenv("TRUSTED_PROXY_COUNT", "1")
    proxied = create_app("testing")

    proxied.test_client().get("/api/projects", headers=FORWARDED)

    assert _denied_ip(proxied) == "198.51.100.7"
    with proxied.app_context():
        db.session.remove()
        db.drop_all()


def test_actor_ip_fits_audit_column(app):
    with app.test_request_context("/", environ_base={"REMOTE_ADDR": "f" * 100}):
        assert actor_from_user(None)["ip"] == "f" * 64
