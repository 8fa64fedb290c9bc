from fastapi.testclient import TestClient

from bulk_mail_service.server import build_service, build_transport, create_server_app
from bulk_mail_service.transport import SmtpTransport, UnconfiguredTransport


def base_settings(tmp_path, **overrides):
    settings = {
        "db_path": str(tmp_path / "server.db"),
        "api_token": None,
        "public_base_url": "https://mail.example.com",
        "smtp_host": None,
        "smtp_port": 587,
        "smtp_user": None,
        "smtp_password": None,
        "smtp_use_tls": False,
        "smtp_start_tls": False,
        "smtp_from": None,
        "scheduler_active": True,
        "scheduler_interval": 30.0,
        "test_mode": True,
        "log_delivery_activity": False,
        "max_attachments": 2,
        "max_attachment_bytes": 1024,
    }
    settings.update(overrides)
    return settings


def test_build_transport_without_host_fails_sends(tmp_path):
    assert isinstance(build_transport(base_settings(tmp_path)), UnconfiguredTransport)
    no_sender = build_transport(base_settings(tmp_path, smtp_host="smtp.example.com"))
    assert isinstance(no_sender, UnconfiguredTransport)


def test_build_transport_with_smtp(tmp_path):
    transport = build_transport(
        base_settings(tmp_path, smtp_host="smtp.example.com", smtp_port=465, smtp_use_tls=True,
                      smtp_from="news@example.com")
    )
    assert isinstance(transport, SmtpTransport)
    assert transport.settings.port == 465
    assert transport.settings.use_tls is True
    assert transport.sender == "news@example.com"


def test_build_service_applies_settings(tmp_path):
    core = build_service(base_settings(tmp_path))
    assert core.persistence.db_path == str(tmp_path / "server.db")
    assert core.public_base_url == "https://mail.example.com"
    assert core.attachments.max_attachments == 2
    assert core.attachments.max_attachment_bytes == 1024


def test_lifespan_initialises_database(tmp_path):
    app = create_server_app(base_settings(tmp_path, api_token="tok"))
    with TestClient(app) as client:
        assert client.get("/status").status_code == 401
        response = client.get("/api/email-history", headers={"X-API-Token": "tok"})
        assert response.status_code == 200
        assert response.json() == {"ok": True, "logs": []}
