"""
Email Status Router

Delivery status ingress and job management.

Endpoints:
- POST /api/webhooks/email - Provider delivery events (single event or list)
- POST /api/email-status/poll - Reconcile in-flight jobs with the provider now
- GET /api/email-jobs/{job_id} - Current state of one email job
- POST /api/email-jobs/{job_id}/retry - Retry a failed, bounced or dropped job

Webhooks are authenticated with X-Webhook-Secret when EMAIL_WEBHOOK_SECRET is set.
"""

import hmac
import logging
from typing import Callable, List, Optional, Union

from fastapi import APIRouter, Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings, get_settings
from database import get_db
from email_integration.email_client import EmailClient
from email_integration.email_schema import PollResponse, WebhookEventPayload, WebhookResponse
from email_integration.job_store import EmailHistoryLog, EmailJobRepository
from email_integration.status_tracker import DeliveryStatusTracker, StatusEvent
from routers.deps import get_dispatch_submit, get_email_client, get_history, get_hub
from services.notification_hub import NotificationHub
from utils.errors import NotFoundError

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Email Status"])


def verify_webhook_secret(
    x_webhook_secret: Optional[str] = Header(None, alias="X-Webhook-Secret"),
    settings: Settings = Depends(get_settings),
):
    expected = settings.EMAIL_WEBHOOK_SECRET
    if not expected:
        return
    if not x_webhook_secret or not hmac.compare_digest(x_webhook_secret, expected):
        logger.warning("Rejected email webhook with invalid secret")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook secret")


# ==================== WEBHOOKS ====================

@router.post("/webhooks/email", response_model=WebhookResponse, dependencies=[Depends(verify_webhook_secret)])
async def email_webhook(
    payload: Union[WebhookEventPayload, List[WebhookEventPayload]],
    db: AsyncSession = Depends(get_db),
    hub: NotificationHub = Depends(get_hub),
    history: EmailHistoryLog = Depends(get_history),
):
    """
    Apply provider events in order.

    A single event for an unknown job is answered with 404. In a batch,
    events for unknown jobs are skipped and counted as ignored.
    """
    tracker = DeliveryStatusTracker(EmailJobRepository(db), hub, history)
    events = payload if isinstance(payload, list) else [payload]

    applied = 0
    for event in events:
        status_event = StatusEvent(
            event_type=event.event_type,
            email_job_id=event.email_job_id,
            timestamp=event.timestamp,
            reason=event.reason,
        )
        try:
            job = await tracker.handle_event(status_event)
        except NotFoundError:
            if not isinstance(payload, list):
                raise
            logger.warning(f"Webhook event {event.event_type} for unknown job {event.email_job_id}")
            continue
        if job is not None:
            applied += 1

    return WebhookResponse(received=len(events), applied=applied, ignored=len(events) - applied)


# ==================== POLLING ====================

@router.post("/email-status/poll", response_model=PollResponse)
async def poll_email_status(
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
    hub: NotificationHub = Depends(get_hub),
    history: EmailHistoryLog = Depends(get_history),
    email_client: EmailClient = Depends(get_email_client),
):
    tracker = DeliveryStatusTracker(EmailJobRepository(db), hub, history, email_client)
    result = await tracker.poll_statuses(settings.POLL_BATCH_SIZE)
    return PollResponse(**result.to_dict())


# ==================== JOBS ====================

@router.get("/email-jobs/{job_id}")
async def get_email_job(job_id: str, db: AsyncSession = Depends(get_db)):
    job = await EmailJobRepository(db).get(job_id)
    if job is None:
        raise NotFoundError(f"Email job {job_id} not found", parameter="jobId")
    return job.to_dict()


@router.post("/email-jobs/{job_id}/retry", status_code=status.HTTP_202_ACCEPTED)
async def retry_email_job(
    job_id: str,
    db: AsyncSession = Depends(get_db),
    hub: NotificationHub = Depends(get_hub),
    history: EmailHistoryLog = Depends(get_history),
    submit: Callable[[str], bool] = Depends(get_dispatch_submit),
):
    tracker = DeliveryStatusTracker(EmailJobRepository(db), hub, history, resubmit=submit)
    job = await tracker.retry(job_id)
    return {"jobId": job.id, "status": job.status, "retryCount": job.retry_count}
