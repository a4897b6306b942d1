"""
Delivery Status Tracker

Single writer for email job state after creation. Consumes:
- provider webhooks (handle_event)
- manual retries (retry)
- dispatch outcomes from the workers (record_sent / record_failed / record_queued)
- provider polling (poll_statuses)

Every transition goes through commit_transition():
1. persist the job
2. write a flat-file history copy (best effort)
3. publish EmailStatusUpdate to user_{sent_by} (best effort)

If step 1 fails, the history copy is still written so the outcome is not
lost, and InternalError is raised to the caller.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from database.models import EmailJobDB
from email_integration import state_machine
from email_integration.email_client import EmailClient
from email_integration.job_store import EmailHistoryLog, EmailJobRepository
from sentry_integration import capture_exception
from services.notification_hub import EMAIL_STATUS_EVENT, NotificationHub, user_group
from utils.errors import InternalError, NotFoundError

logger = logging.getLogger(__name__)


@dataclass
class StatusEvent:
    """A provider delivery event, from a webhook or a poll"""
    event_type: str
    email_job_id: str
    timestamp: Optional[Any] = None
    reason: Optional[str] = None


@dataclass
class PollResult:
    checked: int = 0
    updated: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"checked": self.checked, "updated": self.updated, "errors": self.errors}


def status_payload(job: EmailJobDB) -> Dict[str, Any]:
    return {
        "emailJobId": job.id,
        "letterTypeId": job.letter_type_id,
        "status": job.status,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "employeeName": job.recipient_name,
        "employeeEmail": job.recipient_email,
        "errorMessage": job.error_message,
    }


class DeliveryStatusTracker:
    """
    Drives email jobs through the state machine for one session.

    Args:
        repository: job persistence for the caller's session
        hub: notification channel
        history: flat-file audit log
        email_client: provider client (polling only)
        resubmit: callback that queues a job id for dispatch (retries only)
    """

    def __init__(
        self,
        repository: EmailJobRepository,
        hub: NotificationHub,
        history: EmailHistoryLog,
        email_client: Optional[EmailClient] = None,
        resubmit: Optional[Callable[[str], bool]] = None,
    ):
        self.repository = repository
        self.hub = hub
        self.history = history
        self.email_client = email_client
        self.resubmit = resubmit

    # ==================== TRANSITION PIPELINE ====================

    async def commit_transition(self, job: EmailJobDB, event: Optional[str] = None) -> EmailJobDB:
        job.updated_at = datetime.now(timezone.utc)
        try:
            await self.repository.save(job)
        except SQLAlchemyError as e:
            logger.error(f"Failed to persist email job {job.id} ({job.status}): {e}")
            capture_exception(e, email_job_id=job.id, status=job.status)
            # Snapshot before rollback expires the job
            self.history.write(job, event)
            await self.repository.rollback()
            raise InternalError(f"Failed to persist email job {job.id}")

        self.history.write(job, event)
        self.publish(job)
        return job

    def publish(self, job: EmailJobDB):
        group = user_group(job.sent_by)
        if group is None:
            return
        try:
            self.hub.publish(group, EMAIL_STATUS_EVENT, status_payload(job))
        except Exception as e:
            logger.warning(f"Failed to publish status for job {job.id}: {e}")

    async def _get_job(self, job_id: str) -> EmailJobDB:
        job = await self.repository.get(job_id)
        if job is None:
            raise NotFoundError(f"Email job {job_id} not found", parameter="emailJobId")
        return job

    # ==================== PROVIDER EVENTS ====================

    async def handle_event(self, event: StatusEvent) -> Optional[EmailJobDB]:
        """
        Apply a webhook/poll event.

        Returns:
            The updated job, or None for unrecognized event types

        Raises:
            NotFoundError: the referenced job does not exist
        """
        if state_machine.normalize_event(event.event_type) is None:
            logger.info(f"Dropping unrecognized email event '{event.event_type}' for job {event.email_job_id}")
            return None

        job = await self._get_job(event.email_job_id)
        previous = job.status
        state_machine.apply_event(
            job,
            event.event_type,
            occurred_at=state_machine.to_datetime(event.timestamp),
            reason=event.reason,
        )
        logger.info(f"Email job {job.id}: {previous} -> {job.status} ({event.event_type})")
        return await self.commit_transition(job, event.event_type)

    # ==================== RETRY ====================

    async def retry(self, job_id: str) -> EmailJobDB:
        """
        Return a failed/bounced/dropped job to pending and dispatch it once.

        Raises:
            NotFoundError: unknown job
            ValidationError: job is not retryable
        """
        job = await self._get_job(job_id)
        state_machine.prepare_retry(job)
        await self.commit_transition(job, "retry")
        logger.info(f"Email job {job.id} retry #{job.retry_count} requested")

        if self.resubmit is not None and not self.resubmit(job.id):
            await self.record_failed(job, "Dispatch queue is full")
        return job

    # ==================== DISPATCH OUTCOMES ====================

    async def record_sent(self, job: EmailJobDB, provider_message_id: Optional[str]) -> EmailJobDB:
        if state_machine.mark_sent(job, provider_message_id):
            await self.commit_transition(job, "sent")
        return job

    async def record_failed(self, job: EmailJobDB, error: str) -> EmailJobDB:
        if state_machine.mark_failed(job, error):
            await self.commit_transition(job, "failed")
        return job

    async def record_queued(self, job: EmailJobDB) -> EmailJobDB:
        if state_machine.mark_queued(job):
            await self.commit_transition(job, "queued")
        return job

    # ==================== POLLING ====================

    async def poll_statuses(self, batch_size: int = 50) -> PollResult:
        """
        Reconcile in-flight jobs against the provider's last known event.
        A failure on one job never stops the sweep.
        """
        result = PollResult()
        if self.email_client is None or not self.email_client.is_ready():
            logger.debug("Skipping status poll: email client not configured")
            return result

        jobs = await self.repository.list_pollable(batch_size)
        for job in jobs:
            result.checked += 1
            try:
                last_event = await asyncio.to_thread(self.email_client.get_last_event, job.provider_message_id)
                if not last_event or state_machine.normalize_event(last_event) is None:
                    continue
                if state_machine.normalize_event(last_event) == state_machine.normalize_event(job.status):
                    continue
                await self.handle_event(StatusEvent(event_type=last_event, email_job_id=job.id))
                result.updated += 1
            except Exception as e:
                logger.error(f"Status poll failed for job {job.id}: {e}")
                result.errors.append(f"{job.id}: {e}")

        if result.checked:
            logger.info(f"Status poll: {result.checked} checked, {result.updated} updated, {len(result.errors)} errors")
        return result
