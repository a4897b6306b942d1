"""
Email Status Poller

Background loop that reconciles email jobs with the provider when webhooks
are late or missing, and hands capacity-queued jobs back to the dispatch pool.

Usage:
- API trigger: POST /api/email-status/poll
- Lifespan: started by server.py when POLL_INTERVAL_SECONDS > 0
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from email_integration.email_client import EmailClient
from email_integration.job_store import EmailHistoryLog, EmailJobRepository
from email_integration.status_tracker import DeliveryStatusTracker
from services.notification_hub import NotificationHub

logger = logging.getLogger(__name__)


class StatusPoller:
    """
    Args:
        db_session_factory: SQLAlchemy async session factory
        hub: notification channel
        history: flat-file audit log
        email_client: provider client
        submit: callable queueing a job id for dispatch
        batch_size: jobs reconciled per cycle
        poll_interval: seconds between cycles when running continuously
        queued_retry_seconds: age after which queued jobs are submitted again
    """

    def __init__(
        self,
        db_session_factory,
        hub: NotificationHub,
        history: EmailHistoryLog,
        email_client: EmailClient,
        submit: Optional[Callable[[str], bool]] = None,
        batch_size: int = 50,
        poll_interval: float = 10.0,
        queued_retry_seconds: float = 300.0,
    ):
        self.db_session_factory = db_session_factory
        self.hub = hub
        self.history = history
        self.email_client = email_client
        self.submit = submit
        self.batch_size = batch_size
        self.poll_interval = poll_interval
        self.queued_retry_seconds = queued_retry_seconds
        self._running = False

    async def process_once(self) -> dict:
        """
        Run one poll cycle.

        Returns:
            Processing statistics
        """
        async with self.db_session_factory() as db:
            repository = EmailJobRepository(db)
            tracker = DeliveryStatusTracker(repository, self.hub, self.history, self.email_client)
            result = await tracker.poll_statuses(self.batch_size)

            resubmitted = 0
            if self.submit is not None:
                cutoff = datetime.now(timezone.utc) - timedelta(seconds=self.queued_retry_seconds)
                for job in await repository.list_queued(cutoff, self.batch_size):
                    if not self.submit(job.id):
                        break
                    resubmitted += 1

        stats = result.to_dict()
        stats["resubmitted"] = resubmitted
        stats["timestamp"] = datetime.now(timezone.utc).isoformat()
        return stats

    async def run_continuous(self):
        self._running = True
        logger.info(f"Starting email status poller (batch_size={self.batch_size}, poll_interval={self.poll_interval}s)")

        while self._running:
            try:
                stats = await self.process_once()
                if stats["resubmitted"]:
                    logger.info(f"Resubmitted {stats['resubmitted']} queued email jobs")
            except Exception as e:
                logger.error(f"Status poller error: {e}")

            await asyncio.sleep(self.poll_interval)

    def stop(self):
        self._running = False
        logger.info("Email status poller stopping...")
