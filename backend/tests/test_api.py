"""
API Tests for the letter and email status endpoints

Uses httpx against the ASGI app with the database, settings, notification
hub and dispatch queue overridden per test.

Run with: pytest tests/test_api.py -v
"""

from datetime import datetime

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from config import get_settings
from database import get_db
from database.models import EmailJobDB, EmailJobStatus
from routers.deps import get_dispatch_submit, get_email_client, get_hub
from server import app

TEMPLATE_ID = "tpl-offer"


@pytest.fixture
def submitted():
    return []


@pytest_asyncio.fixture
async def client(session_factory, settings, hub, submitted, seeded):
    async def override_db():
        async with session_factory() as session:
            yield session

    def override_submit():
        return lambda job_id: submitted.append(job_id) or True

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_hub] = lambda: hub
    app.dependency_overrides[get_dispatch_submit] = override_submit
    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
            yield http
    finally:
        app.dependency_overrides.clear()


async def send_email(client, tab_id, employee_id="E100", **extra):
    body = {
        "employeeId": employee_id,
        "templateId": TEMPLATE_ID,
        "subject": "Offer for {EmpName}",
        "content": "<p>Hello {EmpName}</p>",
    }
    body.update(extra)
    return await client.post(f"/api/tabs/{tab_id}/send-email", json=body, headers={"X-User-Id": "42"})


async def get_job(session_factory, job_id) -> EmailJobDB:
    async with session_factory() as session:
        result = await session.execute(select(EmailJobDB).where(EmailJobDB.id == job_id))
        return result.scalar_one()


class TestSendEmail:

    @pytest.mark.asyncio
    async def test_send_email_accepted(self, client, seeded, submitted, session_factory):
        response = await send_email(client, seeded.id)

        assert response.status_code == 202
        data = response.json()
        assert data["status"] == "pending"
        assert submitted == [data["jobId"]]

        job = await get_job(session_factory, data["jobId"])
        assert job.sent_by == "42"
        assert job.subject == "Offer for Jane Doe"

    @pytest.mark.asyncio
    async def test_unknown_tab_is_404(self, client):
        response = await send_email(client, "no-such-tab")
        assert response.status_code == 404
        assert response.json()["detail"]["error"] == "not_found"

    @pytest.mark.asyncio
    async def test_unknown_employee_is_404(self, client, seeded):
        response = await send_email(client, seeded.id, employee_id="E999")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_employee_without_email_is_400(self, client, seeded):
        response = await send_email(client, seeded.id, employee_id="E200")
        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "validation_error"

    @pytest.mark.asyncio
    async def test_malformed_body_is_422(self, client, seeded):
        response = await client.post(f"/api/tabs/{seeded.id}/send-email", json={"employeeId": "E100"})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_invalid_attachment_content_is_422(self, client, seeded):
        response = await send_email(
            client, seeded.id,
            extraAttachments=[{"fileName": "a.txt", "content": "***not base64***"}],
        )
        assert response.status_code == 422


class TestGeneration:

    @pytest.mark.asyncio
    async def test_generate_preview_returns_pdf(self, client, seeded):
        response = await client.post(
            f"/api/tabs/{seeded.id}/generate-preview",
            json={"employeeId": "E100", "templateId": TEMPLATE_ID},
        )

        assert response.status_code == 200
        assert response.headers["content-type"] == "application/pdf"
        assert "E100_Offer_Letter_Preview.pdf" in response.headers["content-disposition"]
        assert response.content.startswith(b"%PDF")

    @pytest.mark.asyncio
    async def test_generate_preview_unknown_template(self, client, seeded):
        response = await client.post(
            f"/api/tabs/{seeded.id}/generate-preview",
            json={"employeeId": "E100", "templateId": "missing"},
        )
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_generate_letters_zip(self, client, seeded):
        response = await client.post(
            f"/api/tabs/{seeded.id}/generate-letters",
            json={"templateId": TEMPLATE_ID, "employeeIds": ["E100", "E999"]},
        )

        assert response.status_code == 200
        assert response.headers["content-type"] == "application/zip"
        assert response.headers["x-skipped-employees"] == "E999"

    @pytest.mark.asyncio
    async def test_template_placeholders(self, client):
        response = await client.get(f"/api/templates/{TEMPLATE_ID}/placeholders")
        assert response.status_code == 200
        assert response.json()["placeholders"] == ["EmpName", "EmpID", "CTC", "Signature"]


class TestEmailStatus:

    @pytest.mark.asyncio
    async def test_webhook_sequence_ends_opened(self, client, seeded, session_factory):
        job_id = (await send_email(client, seeded.id)).json()["jobId"]

        for event_type in ("sent", "delivered", "opened"):
            response = await client.post(
                "/api/webhooks/email", json={"event_type": event_type, "email_job_id": job_id}
            )
            assert response.status_code == 200

        job = await get_job(session_factory, job_id)
        assert job.status == EmailJobStatus.OPENED.value
        assert job.sent_at and job.delivered_at and job.opened_at

    @pytest.mark.asyncio
    async def test_webhook_batch_with_bounce_reason(self, client, seeded, session_factory):
        job_id = (await send_email(client, seeded.id)).json()["jobId"]

        response = await client.post("/api/webhooks/email", json=[
            {"event_type": "delivered", "email_job_id": job_id, "timestamp": 1700000000},
            {"event_type": "bounced", "email_job_id": job_id, "reason": "mailbox full"},
            {"event_type": "delivered", "email_job_id": "unknown-job"},
        ])

        assert response.json() == {"received": 3, "applied": 2, "ignored": 1}
        job = await get_job(session_factory, job_id)
        assert job.status == EmailJobStatus.BOUNCED.value
        assert job.error_message == "mailbox full"

    @pytest.mark.asyncio
    async def test_webhook_tolerates_malformed_timestamps(self, client, seeded, session_factory):
        job_id = (await send_email(client, seeded.id)).json()["jobId"]

        response = await client.post("/api/webhooks/email", json=[
            {"event_type": "delivered", "email_job_id": job_id, "timestamp": "2024-05-01T10:00:00Z"},
            {"event_type": "opened", "email_job_id": job_id, "timestamp": "not-a-time"},
            {"event_type": "clicked", "email_job_id": job_id, "timestamp": "1e20"},
        ])

        assert response.status_code == 200
        assert response.json() == {"received": 3, "applied": 3, "ignored": 0}
        job = await get_job(session_factory, job_id)
        assert job.status == EmailJobStatus.CLICKED.value
        assert job.delivered_at.replace(tzinfo=None) == datetime(2024, 5, 1, 10)
        assert job.opened_at is not None

    @pytest.mark.asyncio
    async def test_webhook_unknown_job_is_404(self, client):
        response = await client.post(
            "/api/webhooks/email", json={"event_type": "delivered", "email_job_id": "unknown-job"}
        )
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_webhook_secret_enforced(self, client, settings):
        settings.EMAIL_WEBHOOK_SECRET = "s3cret"
        payload = {"event_type": "delivered", "email_job_id": "job"}

        assert (await client.post("/api/webhooks/email", json=payload)).status_code == 401
        response = await client.post("/api/webhooks/email", json=payload, headers={"X-Webhook-Secret": "s3cret"})
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_retry_rules(self, client, seeded, submitted):
        job_id = (await send_email(client, seeded.id)).json()["jobId"]

        response = await client.post(f"/api/email-jobs/{job_id}/retry")
        assert response.status_code == 400

        await client.post("/api/webhooks/email", json={"event_type": "dropped", "email_job_id": job_id})
        response = await client.post(f"/api/email-jobs/{job_id}/retry")
        assert response.status_code == 202
        assert response.json()["status"] == "pending"
        assert response.json()["retryCount"] == 1
        assert submitted == [job_id, job_id]

    @pytest.mark.asyncio
    async def test_get_job_and_history(self, client, seeded):
        job_id = (await send_email(client, seeded.id)).json()["jobId"]

        job = (await client.get(f"/api/email-jobs/{job_id}")).json()
        assert job["recipient_email"] == "jane@example.com"
        assert "attachments" not in job

        history = (await client.get(f"/api/tabs/{seeded.id}/email-history")).json()
        assert history["source"] == "database"
        assert [j["id"] for j in history["jobs"]] == [job_id]

        stats = (await client.get(f"/api/tabs/{seeded.id}/email-stats")).json()
        assert stats["total"] == 1
        assert stats["byStatus"] == {"pending": 1}

    @pytest.mark.asyncio
    async def test_poll_without_provider_is_noop(self, client):
        app.dependency_overrides[get_email_client] = lambda: None
        response = await client.post("/api/email-status/poll")
        assert response.status_code == 200
        assert response.json()["checked"] == 0
