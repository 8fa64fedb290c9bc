import asyncio
import types

import pytest
from fastapi.testclient import TestClient

from bulk_mail_service import api
from bulk_mail_service.api import create_app, API_TOKEN_HEADER_NAME
from bulk_mail_service.core import BulkMailCore, SubmitResult
from bulk_mail_service.errors import InvalidTransition, NotFoundError, ValidationError
from bulk_mail_service.tracking import PIXEL_GIF


API_TOKEN = "secret-token"


class DummyReporting:
    async def history(self):
        return [{"id": 1, "recipients": ["a@example.com"], "subject": "S", "body": "B", "sent_ts": 10}]

    async def scheduled(self):
        return [
            {
                "id": 3,
                "recipients": ["a@example.com"],
                "subject": "S",
                "body": "B",
                "attachments": ["a.txt"],
                "scheduled_ts": 99,
                "status": "scheduled",
            }
        ]

    async def get_job(self, job_id):
        raise NotFoundError("Scheduled email not found")

    async def delivery_detail(self, log_id):
        return []

    async def stats(self):
        return {"pending": 1, "sent": 2, "delivered": 3, "failed": 0}


class DummyService:
    def __init__(self):
        self.calls = []
        self.opened = []
        self.metrics = types.SimpleNamespace(generate_latest=lambda: b"metrics-data")
        self.reporting = DummyReporting()

    async def handle_command(self, cmd, payload):
        self.calls.append((cmd, payload))
        return {"ok": True}

    async def submit(self, payload):
        self.calls.append(("submit", payload))
        if not payload.get("recipients"):
            raise ValidationError("at least one recipient is required")
        return SubmitResult(log_id=5, sent=len(payload["recipients"]))

    async def cancel(self, job_id):
        if job_id == 404:
            raise NotFoundError("Scheduled email not found")
        return {"ok": True, "id": job_id, "cancelled": True, "status": "cancelled"}

    async def update_delivery_status(self, record_id, status, error=None):
        if status == "pending":
            raise ValidationError("Delivery records cannot be moved back to 'pending'")
        if record_id == 409:
            raise InvalidTransition("failed", status)
        return {"id": record_id, "email_log_id": 1, "recipient": "a@example.com", "status": status, "error": error}

    async def track_open(self, record_id):
        self.opened.append(record_id)
        return True


@pytest.fixture(autouse=True)
def reset_service():
    original = api.service
    original_token = getattr(api.app.state, "api_token", None)
    api.service = None
    api.app.state.api_token = None
    try:
        yield
    finally:
        api.service = original
        api.app.state.api_token = original_token


@pytest.fixture
def client_and_service():
    svc = DummyService()
    client = TestClient(create_app(svc, api_token=API_TOKEN))
    client.headers.update({API_TOKEN_HEADER_NAME: API_TOKEN})
    return client, svc


def test_returns_500_when_service_missing():
    create_app(DummyService(), api_token=API_TOKEN)
    api.service = None
    client = TestClient(api.app)
    response = client.post("/commands/run-now", headers={API_TOKEN_HEADER_NAME: API_TOKEN})
    assert response.status_code == 500
    assert response.json()["detail"] == "Service not initialized"


def test_rejects_missing_token():
    client = TestClient(create_app(DummyService(), api_token=API_TOKEN))
    response = client.get("/api/email-history")
    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid or missing API token"


def test_tracking_pixel_needs_no_token():
    svc = DummyService()
    client = TestClient(create_app(svc, api_token=API_TOKEN))
    response = client.get("/api/track/12")
    assert response.status_code == 200
    assert response.content == PIXEL_GIF
    assert response.headers["content-type"] == "image/gif"
    assert "no-store" in response.headers["cache-control"]
    assert svc.opened == [12]


@pytest.mark.parametrize("record_id", ["abc", "0", "-3", "1.5", "99999999999999999999999"])
def test_tracking_pixel_ignores_ids_that_name_no_record(record_id):
    svc = DummyService()
    client = TestClient(create_app(svc, api_token=API_TOKEN))
    response = client.get(f"/api/track/{record_id}")
    assert response.status_code == 200
    assert response.content == PIXEL_GIF
    assert svc.opened == []


def test_commands_dispatch_to_service(client_and_service):
    client, svc = client_and_service
    assert client.get("/status").json() == {"ok": True}
    assert client.post("/commands/run-now").json()["ok"] is True
    assert client.post("/commands/suspend").json()["ok"] is True
    assert client.post("/commands/activate").json()["ok"] is True
    assert [c[0] for c in svc.calls] == ["run now", "suspend", "activate"]
    assert client.get("/metrics").content == b"metrics-data"


def test_send_accepts_dashboard_field_names(client_and_service):
    client, svc = client_and_service
    response = client.post(
        "/api/send-bulk-email",
        json={"subject": "Hi", "message": "<p>x</p>", "emails": ["a@example.com", "b@example.com"]},
    )
    assert response.status_code == 200
    data = response.json()
    assert data["ok"] is True
    assert data["sent"] == 2
    assert data["log_id"] == 5
    assert data["message"] == "Emails processed. Sent: 2, Failed: 0"
    submitted = svc.calls[-1][1]
    assert submitted["body"] == "<p>x</p>"
    assert submitted["recipients"] == ["a@example.com", "b@example.com"]


def test_send_validation_error_maps_to_400(client_and_service):
    client, _ = client_and_service
    response = client.post("/api/send-bulk-email", json={"subject": "Hi", "body": "x", "recipients": []})
    assert response.status_code == 400
    assert "recipient" in response.json()["detail"]


def test_listing_routes(client_and_service):
    client, _ = client_and_service
    assert client.get("/api/email-history").json()["logs"][0]["recipients"] == ["a@example.com"]
    jobs = client.get("/api/scheduled-emails").json()["jobs"]
    assert jobs[0]["attachments"] == ["a.txt"]
    assert client.get("/api/email-delivery-status/1").json() == {"ok": True, "records": []}
    stats = client.get("/api/email-delivery-stats").json()
    assert stats["total"] == 6
    assert client.get("/api/scheduled-emails/77").status_code == 404


def test_cancel_routes(client_and_service):
    client, _ = client_and_service
    response = client.delete("/api/scheduled-emails/3")
    assert response.json() == {"ok": True, "id": 3, "cancelled": True, "status": "cancelled"}
    assert client.delete("/api/scheduled-emails/404").status_code == 404


def test_update_delivery_status_error_mapping(client_and_service):
    client, _ = client_and_service
    ok = client.put("/api/email-delivery-status/1", json={"status": "failed", "error_message": "bounce"})
    assert ok.status_code == 200
    assert ok.json()["record"]["error"] == "bounce"
    assert client.put("/api/email-delivery-status/1", json={"status": "pending"}).status_code == 400
    assert client.put("/api/email-delivery-status/409", json={"status": "sent"}).status_code == 409
    assert client.put("/api/email-delivery-status/1", json={"status": "lost"}).status_code == 422


class RecordingTransport:
    def __init__(self):
        self.sent = []

    async def send(self, to, subject, html_body, attachments=()):
        self.sent.append(to)

    async def release(self):
        return None

    async def cleanup(self):
        return None

    async def close(self):
        return None


def test_end_to_end_with_real_core(tmp_path):
    core = BulkMailCore(db_path=str(tmp_path / "api.db"), transport=RecordingTransport(), test_mode=True)
    asyncio.run(core.init())
    client = TestClient(create_app(core))

    sent = client.post(
        "/api/send-bulk-email",
        json={"subject": "Hello", "body": "<p>Hi</p>", "recipients": "a@example.com, b@example.com"},
    ).json()
    assert sent["sent"] == 2
    records = client.get(f"/api/email-delivery-status/{sent['log_id']}").json()["records"]
    assert [r["status"] for r in records] == ["sent", "sent"]
    assert records[0]["subject"] == "Hello"

    client.get(f"/api/track/{records[0]['id']}")
    huge = client.get("/api/track/9223372036854775807")
    assert huge.status_code == 200
    assert huge.content == PIXEL_GIF
    stats = client.get("/api/email-delivery-stats").json()["stats"]
    assert stats == {"pending": 0, "sent": 1, "delivered": 1, "failed": 0}

    scheduled = client.post(
        "/api/send-bulk-email",
        json={
            "subject": "Later",
            "body": "<p>Soon</p>",
            "recipients": ["c@example.com"],
            "scheduledTime": "2999-01-01T09:00:00Z",
        },
    ).json()
    assert scheduled["scheduled"] is True
    assert scheduled["message"] == f"Email scheduled with job ID {scheduled['job_id']}"
    jobs = client.get("/api/scheduled-emails").json()["jobs"]
    assert [j["id"] for j in jobs] == [scheduled["job_id"]]

    cancelled = client.delete(f"/api/scheduled-emails/{scheduled['job_id']}").json()
    assert cancelled["cancelled"] is True
    assert client.get("/api/scheduled-emails").json()["jobs"] == []
    assert len(client.get("/api/email-history").json()["logs"]) == 1
