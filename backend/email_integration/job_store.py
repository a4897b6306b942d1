"""
Email Job Store

- EmailJobRepository: email_jobs table access over an AsyncSession
- EmailHistoryLog: flat-file JSON copy of every job transition, written to
  {EMAIL_HISTORY_DIR}/email_{jobId}_{yyyyMMdd_HHmmss}.json

The flat-file log is the fallback record when the database write fails, and
the fallback source for tab history listings when the database is down.
"""

import json
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from sqlalchemy import func, or_, and_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import EmailJobDB, EmailJobStatus

logger = logging.getLogger(__name__)

# Pending jobs whose sent_at is older than this are also reconciled by polling
PENDING_POLL_GRACE = timedelta(seconds=30)


class EmailJobRepository:
    """email_jobs persistence for one session."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, job_id: str) -> Optional[EmailJobDB]:
        return await self.db.get(EmailJobDB, job_id)

    async def add(self, job: EmailJobDB) -> EmailJobDB:
        self.db.add(job)
        await self.db.commit()
        return job

    async def save(self, job: EmailJobDB):
        self.db.add(job)
        await self.db.commit()

    async def rollback(self):
        await self.db.rollback()

    async def list_for_tab(self, letter_type_id: str, limit: int = 100) -> List[EmailJobDB]:
        result = await self.db.execute(
            select(EmailJobDB)
            .where(EmailJobDB.letter_type_id == letter_type_id)
            .order_by(EmailJobDB.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def status_counts(self, letter_type_id: str) -> Dict[str, int]:
        result = await self.db.execute(
            select(EmailJobDB.status, func.count(EmailJobDB.id))
            .where(EmailJobDB.letter_type_id == letter_type_id)
            .group_by(EmailJobDB.status)
        )
        return {status: count for status, count in result.all()}

    async def list_pollable(self, limit: int, now: Optional[datetime] = None) -> List[EmailJobDB]:
        """
        Jobs the provider may still have news about: sent (or pending with an
        old sent_at), carrying a provider id, with no terminal timestamp yet.
        """
        now = now or datetime.now(timezone.utc)
        result = await self.db.execute(
            select(EmailJobDB)
            .where(
                or_(
                    EmailJobDB.status == EmailJobStatus.SENT.value,
                    and_(
                        EmailJobDB.status == EmailJobStatus.PENDING.value,
                        EmailJobDB.sent_at.is_not(None),
                        EmailJobDB.sent_at < now - PENDING_POLL_GRACE,
                    ),
                ),
                EmailJobDB.provider_message_id.is_not(None),
                EmailJobDB.delivered_at.is_(None),
                EmailJobDB.bounced_at.is_(None),
                EmailJobDB.dropped_at.is_(None),
            )
            .order_by(EmailJobDB.sent_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_queued(self, older_than: datetime, limit: int) -> List[EmailJobDB]:
        result = await self.db.execute(
            select(EmailJobDB)
            .where(
                EmailJobDB.status == EmailJobStatus.QUEUED.value,
                EmailJobDB.updated_at < older_than,
            )
            .order_by(EmailJobDB.updated_at)
            .limit(limit)
        )
        return list(result.scalars().all())


class EmailHistoryLog:
    """
    Best-effort flat-file history. write() never raises.
    """

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    def write(self, job: EmailJobDB, event: Optional[str] = None) -> Optional[Path]:
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            stamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
            path = self.directory / f"email_{job.id}_{stamp}.json"
            record = job.to_dict()
            record["event"] = event or job.status
            record["saved_at"] = datetime.now(timezone.utc).isoformat()
            path.write_text(json.dumps(record, indent=2, default=str), encoding="utf-8")
            return path
        except (OSError, TypeError, ValueError, SQLAlchemyError) as e:
            logger.warning(f"Failed to write email history for job {getattr(job, 'id', None)}: {e}")
            return None

    def read_for_tab(self, letter_type_id: str, limit: int = 100) -> List[Dict[str, Any]]:
        """Latest recorded state per job for one tab, newest first."""
        if not self.directory.is_dir():
            return []

        latest: Dict[str, Dict[str, Any]] = {}
        for path in sorted(self.directory.glob("email_*.json")):
            try:
                record = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as e:
                logger.warning(f"Skipping unreadable history file {path.name}: {e}")
                continue
            if record.get("letter_type_id") != letter_type_id:
                continue
            job_id = record.get("id")
            previous = latest.get(job_id)
            if previous is None or record.get("saved_at", "") >= previous.get("saved_at", ""):
                latest[job_id] = record

        records = sorted(latest.values(), key=lambda r: r.get("created_at") or "", reverse=True)
        return records[:limit]
