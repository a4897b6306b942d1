"""
Unit Tests for Email Job Storage and the Status Poller

Run with: pytest tests/test_job_store.py -v
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
import pytest_asyncio

from database.models import EmailJobDB, EmailJobStatus, LetterTypeDB
from email_integration.job_store import EmailHistoryLog, EmailJobRepository
from email_integration.status_poller import StatusPoller


def job_record(job_id, letter_type_id="tab-1", status="pending", created_at="2024-01-01T00:00:00"):
    job = MagicMock()
    job.id = job_id
    job.status = status
    job.to_dict.return_value = {
        "id": job_id, "letter_type_id": letter_type_id, "status": status, "created_at": created_at,
    }
    return job


class TestEmailHistoryLog:

    def test_write_creates_json_file(self, tmp_path):
        log = EmailHistoryLog(tmp_path / "history")
        path = log.write(job_record("job-1"), "pending")
        assert path.name.startswith("email_job-1_")
        assert path.suffix == ".json"

    def test_write_never_raises(self, tmp_path):
        blocker = tmp_path / "history"
        blocker.write_text("a file where the directory should be")
        assert EmailHistoryLog(blocker).write(job_record("job-1")) is None

    def test_read_for_tab_keeps_latest_per_job(self, tmp_path):
        log = EmailHistoryLog(tmp_path)
        (tmp_path / "email_job-1_20240101_000000.json").write_text(
            '{"id": "job-1", "letter_type_id": "tab-1", "status": "pending", '
            '"created_at": "2024-01-01", "saved_at": "2024-01-01T00:00:00"}'
        )
        (tmp_path / "email_job-1_20240101_000500.json").write_text(
            '{"id": "job-1", "letter_type_id": "tab-1", "status": "sent", '
            '"created_at": "2024-01-01", "saved_at": "2024-01-01T00:05:00"}'
        )
        (tmp_path / "email_job-2_20240102_000000.json").write_text(
            '{"id": "job-2", "letter_type_id": "tab-2", "status": "sent", '
            '"created_at": "2024-01-02", "saved_at": "2024-01-02T00:00:00"}'
        )
        (tmp_path / "email_broken_20240103_000000.json").write_text("{not json")

        records = log.read_for_tab("tab-1")

        assert [(r["id"], r["status"]) for r in records] == [("job-1", "sent")]

    def test_read_for_tab_missing_directory(self, tmp_path):
        assert EmailHistoryLog(tmp_path / "absent").read_for_tab("tab-1") == []


@pytest_asyncio.fixture
async def jobs(db):
    db.add(LetterTypeDB(id="tab-1", display_name="Offer Letter"))
    now = datetime.now(timezone.utc)
    common = dict(letter_type_id="tab-1", recipient_email="a@example.com", subject="s", content="c")
    db.add_all([
        EmailJobDB(id="sent", status="sent", provider_message_id="m1", sent_at=now, **common),
        EmailJobDB(id="delivered", status="delivered", provider_message_id="m2", sent_at=now,
                   delivered_at=now, **common),
        EmailJobDB(id="no-provider-id", status="sent", sent_at=now, **common),
        EmailJobDB(id="old-queued", status="queued", updated_at=now - timedelta(hours=1), **common),
        EmailJobDB(id="new-queued", status="queued", updated_at=now, **common),
    ])
    await db.commit()


class TestEmailJobRepository:

    @pytest.mark.asyncio
    async def test_list_pollable(self, db, jobs):
        pollable = await EmailJobRepository(db).list_pollable(limit=10)
        assert [job.id for job in pollable] == ["sent"]

    @pytest.mark.asyncio
    async def test_list_queued_respects_age(self, db, jobs):
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=5)
        queued = await EmailJobRepository(db).list_queued(cutoff, limit=10)
        assert [job.id for job in queued] == ["old-queued"]

    @pytest.mark.asyncio
    async def test_status_counts(self, db, jobs):
        counts = await EmailJobRepository(db).status_counts("tab-1")
        assert counts == {"sent": 2, "delivered": 1, "queued": 2}


class TestStatusPoller:

    @pytest.mark.asyncio
    async def test_process_once_polls_and_resubmits(self, session_factory, hub, settings, jobs):
        client = MagicMock()
        client.is_ready.return_value = True
        client.get_last_event.return_value = "delivered"
        submitted = []
        poller = StatusPoller(
            session_factory, hub, EmailHistoryLog(settings.email_history_dir), client,
            submit=lambda job_id: submitted.append(job_id) or True,
            queued_retry_seconds=300,
        )

        stats = await poller.process_once()

        assert stats["checked"] == 1
        assert stats["updated"] == 1
        assert stats["resubmitted"] == 1
        assert submitted == ["old-queued"]

        async with session_factory() as session:
            job = await EmailJobRepository(session).get("sent")
        assert job.status == EmailJobStatus.DELIVERED.value

    def test_stop(self, hub, settings):
        poller = StatusPoller(MagicMock(), hub, EmailHistoryLog(settings.email_history_dir), MagicMock())
        poller._running = True
        poller.stop()
        assert not poller._running
