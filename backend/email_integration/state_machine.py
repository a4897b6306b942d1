"""
Email Job State Machine

    pending -> sent -> delivered -> opened -> clicked
                    -> bounced | dropped | unsubscribed | spam_reported
    pending -> failed            (local failure)
    pending -> queued            (provider capacity exhausted)
    failed | bounced | dropped -> pending   (explicit retry only)

Provider events are applied in receipt order with last-write-wins on status,
so a late 'bounced' after 'delivered' still lands. No event maps to
'pending'; only prepare_retry() can move a job back there.

Functions here mutate the job object in memory; persistence, audit copies
and notifications are the status tracker's job.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple

from database.models import EmailJobStatus
from utils.errors import ValidationError

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = {EmailJobStatus.FAILED, EmailJobStatus.BOUNCED, EmailJobStatus.DROPPED}
# Statuses a local dispatch outcome may still overwrite
DISPATCHABLE_STATUSES = {EmailJobStatus.PENDING, EmailJobStatus.QUEUED}

CAPACITY_MESSAGE = "Email service credits exceeded - will retry later"

# Provider event name -> (status, timestamp attribute)
EVENT_TRANSITIONS: Dict[str, Tuple[EmailJobStatus, str]] = {
    "sent": (EmailJobStatus.SENT, "sent_at"),
    "delivered": (EmailJobStatus.DELIVERED, "delivered_at"),
    "opened": (EmailJobStatus.OPENED, "opened_at"),
    "open": (EmailJobStatus.OPENED, "opened_at"),
    "clicked": (EmailJobStatus.CLICKED, "clicked_at"),
    "click": (EmailJobStatus.CLICKED, "clicked_at"),
    "bounced": (EmailJobStatus.BOUNCED, "bounced_at"),
    "bounce": (EmailJobStatus.BOUNCED, "bounced_at"),
    "dropped": (EmailJobStatus.DROPPED, "dropped_at"),
    "unsubscribe": (EmailJobStatus.UNSUBSCRIBED, "unsubscribed_at"),
    "unsubscribed": (EmailJobStatus.UNSUBSCRIBED, "unsubscribed_at"),
    "spamreport": (EmailJobStatus.SPAM_REPORTED, "spam_reported_at"),
    "complained": (EmailJobStatus.SPAM_REPORTED, "spam_reported_at"),
}


def normalize_event(event_type: Optional[str]) -> Optional[str]:
    """'email.delivered' / 'Delivered ' -> 'delivered'; unknown -> None."""
    if not event_type:
        return None
    name = event_type.strip().lower()
    if name.startswith("email."):
        name = name[len("email."):]
    return name if name in EVENT_TRANSITIONS else None


def to_datetime(timestamp) -> datetime:
    """
    Epoch seconds (int/float/numeric str), ISO-8601 string or datetime ->
    aware UTC datetime. None, empty or unparseable values -> now.
    """
    now = datetime.now(timezone.utc)
    if timestamp is None or timestamp == "":
        return now
    if isinstance(timestamp, datetime):
        parsed = timestamp
    else:
        try:
            parsed = datetime.fromtimestamp(float(timestamp), tz=timezone.utc)
        except (OverflowError, OSError):
            logger.warning(f"Event timestamp out of range: {timestamp!r}, using receipt time")
            return now
        except (TypeError, ValueError):
            try:
                parsed = datetime.fromisoformat(str(timestamp).strip().replace("Z", "+00:00"))
            except ValueError:
                logger.warning(f"Unparseable event timestamp {timestamp!r}, using receipt time")
                return now
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def status_of(job) -> EmailJobStatus:
    return EmailJobStatus(job.status)


def apply_event(job, event_type: str, occurred_at: Optional[datetime] = None, reason: Optional[str] = None) -> bool:
    """
    Apply a provider event to a job.

    Returns:
        False when the event type is not recognized (job untouched)
    """
    name = normalize_event(event_type)
    if name is None:
        logger.info(f"Ignoring unrecognized email event '{event_type}' for job {job.id}")
        return False

    status, timestamp_attr = EVENT_TRANSITIONS[name]
    job.status = status.value
    setattr(job, timestamp_attr, occurred_at or datetime.now(timezone.utc))

    if reason:
        job.error_message = reason
        if status == EmailJobStatus.BOUNCED:
            job.bounce_reason = reason
        elif status == EmailJobStatus.DROPPED:
            job.drop_reason = reason

    job.processed_at = datetime.now(timezone.utc)
    return True


def can_retry(job) -> bool:
    return status_of(job) in RETRYABLE_STATUSES


def prepare_retry(job, now: Optional[datetime] = None):
    """
    Move a failed/bounced/dropped job back to pending.

    Raises:
        ValidationError: job is in any other status
    """
    if not can_retry(job):
        raise ValidationError(
            f"Email job {job.id} cannot be retried from status '{job.status}'",
            parameter="status",
        )
    job.status = EmailJobStatus.PENDING.value
    job.error_message = None
    # Provider id and event timestamps belong to the previous attempt
    for _, timestamp_attr in set(EVENT_TRANSITIONS.values()):
        setattr(job, timestamp_attr, None)
    job.provider_message_id = None
    job.bounce_reason = None
    job.drop_reason = None
    job.retry_count = (job.retry_count or 0) + 1
    job.last_retry_at = now or datetime.now(timezone.utc)


def _dispatch_outcome_allowed(job, outcome: EmailJobStatus) -> bool:
    if status_of(job) in DISPATCHABLE_STATUSES:
        return True
    logger.warning(f"Not marking job {job.id} {outcome.value}: already {job.status}")
    return False


def mark_sent(job, provider_message_id: Optional[str], now: Optional[datetime] = None) -> bool:
    if not _dispatch_outcome_allowed(job, EmailJobStatus.SENT):
        return False
    job.status = EmailJobStatus.SENT.value
    job.sent_at = now or datetime.now(timezone.utc)
    job.provider_message_id = provider_message_id
    job.error_message = None
    return True


def mark_failed(job, error: str) -> bool:
    if not _dispatch_outcome_allowed(job, EmailJobStatus.FAILED):
        return False
    job.status = EmailJobStatus.FAILED.value
    job.error_message = error
    return True


def mark_queued(job, error: str = CAPACITY_MESSAGE) -> bool:
    if not _dispatch_outcome_allowed(job, EmailJobStatus.QUEUED):
        return False
    job.status = EmailJobStatus.QUEUED.value
    job.error_message = error
    return True
