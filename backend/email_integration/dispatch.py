"""
Email Dispatch Engine

Request side (EmailDispatchEngine.dispatch):
- validates tab, template, employee row and recipient address
- fills subject/body tokens from the employee's placeholders
- creates the email job in 'pending', records it and publishes it
- hands the job id to the dispatch worker pool and returns immediately

Worker side (DispatchJobProcessor.process):
- renders the letter and its PDF on first attempt (reused on retry)
- submits to the provider and records sent / queued / failed
"""

import asyncio
import base64
import binascii
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings
from database.models import EmailJobDB, EmailJobStatus, generate_uuid
from email_integration.email_client import EmailAttachment, EmailClient, EmailMessage, is_valid_email
from email_integration.job_store import EmailHistoryLog, EmailJobRepository
from email_integration.state_machine import DISPATCHABLE_STATUSES, status_of
from email_integration.status_tracker import DeliveryStatusTracker
from letters.document_renderer import PDF_MIME_TYPE, render_preview_pdf
from letters.letter_service import LetterService
from letters.placeholder_resolver import fill_text
from logging_config import set_job_context
from sentry_integration import capture_exception
from services.notification_hub import NotificationHub
from utils.errors import DeliveryError, InternalError, LetterServiceError, ValidationError

logger = logging.getLogger(__name__)


def _validate_attachments(attachments: Optional[List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    validated = []
    for index, attachment in enumerate(attachments or []):
        name = (attachment.get("fileName") or "").strip()
        if not name:
            raise ValidationError(f"Attachment {index} has no fileName", parameter="extraAttachments")
        try:
            base64.b64decode(attachment.get("content") or "", validate=True)
        except (binascii.Error, ValueError):
            raise ValidationError(f"Attachment '{name}' is not valid base64", parameter="extraAttachments")
        validated.append({
            "fileName": name,
            "mimeType": attachment.get("mimeType") or "application/octet-stream",
            "content": attachment.get("content") or "",
        })
    return validated


class EmailDispatchEngine:
    """
    Creates email jobs for letters and queues them for background delivery.

    Args:
        db: request-scoped session (used only before the job is queued)
        settings: application settings
        hub: notification channel
        submit: callable queueing a job id; returns False when the queue is full
    """

    def __init__(self, db: AsyncSession, settings: Settings, hub: NotificationHub, submit):
        self.db = db
        self.settings = settings
        self.letters = LetterService(db, settings)
        self.repository = EmailJobRepository(db)
        self.history = EmailHistoryLog(settings.email_history_dir)
        self.tracker = DeliveryStatusTracker(self.repository, hub, self.history)
        self.submit = submit

    async def dispatch(
        self,
        tab_id: str,
        employee_id: str,
        template_id: str,
        subject: str,
        content: str,
        sent_by: Optional[str] = None,
        signature_path: Optional[str] = None,
        cc: Optional[List[str]] = None,
        extra_attachments: Optional[List[Dict[str, Any]]] = None,
    ) -> EmailJobDB:
        """
        Create a pending email job and queue it.

        Raises:
            NotFoundError: tab, template or employee row missing
            ValidationError: recipient address or attachments invalid
            InternalError: the job could not be stored
        """
        letter_type = await self.letters.get_letter_type(tab_id)
        await self.letters.get_template(template_id)

        employee = await self.letters.get_employee(employee_id)
        placeholders = await self.letters.resolver.resolve(employee_id, letter_type, employee=employee)

        recipient = (placeholders.lookup("Email") or "").strip()
        if not is_valid_email(recipient):
            raise ValidationError(f"Employee {employee_id} has no valid email address", parameter="email")

        for address in cc or []:
            if not is_valid_email(address):
                raise ValidationError(f"Invalid cc address: {address}", parameter="cc")

        job = EmailJobDB(
            id=generate_uuid(),
            letter_type_id=letter_type.id,
            employee_id=str(employee_id),
            template_id=template_id,
            signature_token=signature_path,
            recipient_email=recipient,
            recipient_name=placeholders.lookup("EmpName") or str(employee_id),
            subject=fill_text(subject, placeholders),
            content=fill_text(content, placeholders),
            cc=list(cc or []),
            attachments=_validate_attachments(extra_attachments),
            status=EmailJobStatus.PENDING.value,
            sent_by=sent_by,
            retry_count=0,
        )

        try:
            await self.repository.add(job)
        except SQLAlchemyError as e:
            logger.error(f"Failed to store email job for {employee_id}: {e}")
            capture_exception(e, tab_id=tab_id, employee_id=employee_id)
            self.history.write(job, "pending")
            await self.repository.rollback()
            raise InternalError("Failed to create email job")

        self.history.write(job, "pending")
        self.tracker.publish(job)
        logger.info(f"Email job {job.id} created for {employee_id} on tab {tab_id}")

        if not self.submit(job.id):
            logger.error(f"Dispatch queue full; failing email job {job.id}")
            await self.tracker.record_failed(job, "Dispatch queue is full")

        return job


class DispatchJobProcessor:
    """
    Background half of the dispatch engine.

    One instance is shared by every worker of a pool and holds the
    long-lived handles (settings, provider client, notification hub, history
    log). Database sessions are passed in per unit of work.
    """

    def __init__(
        self,
        settings: Settings,
        hub: NotificationHub,
        email_client: EmailClient,
        history: Optional[EmailHistoryLog] = None,
    ):
        self.settings = settings
        self.hub = hub
        self.email_client = email_client
        self.history = history or EmailHistoryLog(settings.email_history_dir)

    def tracker_for(self, session: AsyncSession) -> DeliveryStatusTracker:
        return DeliveryStatusTracker(EmailJobRepository(session), self.hub, self.history, self.email_client)

    async def process(self, session: AsyncSession, job_id: str):
        set_job_context(job_id)
        tracker = self.tracker_for(session)
        job = await tracker.repository.get(job_id)
        if job is None:
            logger.warning(f"Email job {job_id} vanished before dispatch")
            return
        if status_of(job) not in DISPATCHABLE_STATUSES:
            logger.info(f"Skipping email job {job_id}: status is {job.status}")
            return

        try:
            await self._attach_letter(session, job)
        except LetterServiceError as e:
            logger.error(f"Letter generation failed for job {job_id}: {e.message}")
            await tracker.record_failed(job, f"Letter generation failed: {e.message}")
            return

        try:
            provider_message_id = await self._send(job)
        except DeliveryError as e:
            if e.capacity_exceeded:
                logger.warning(f"Provider capacity exhausted; job {job_id} queued")
                await tracker.record_queued(job)
            else:
                await tracker.record_failed(job, e.message)
            return

        await tracker.record_sent(job, provider_message_id)
        logger.info(f"Email job {job_id} sent ({provider_message_id})")

    async def fail(self, session: AsyncSession, job_id: str, error: str):
        """Record a failure decided outside process() (timeouts, crashes)."""
        tracker = self.tracker_for(session)
        job = await tracker.repository.get(job_id)
        if job is None:
            return
        await tracker.record_failed(job, error)

    async def _attach_letter(self, session: AsyncSession, job: EmailJobDB):
        attachments = list(job.attachments or [])
        if any(a.get("generated") for a in attachments):
            return

        letters = LetterService(session, self.settings)
        letter = await letters.generate(
            job.letter_type_id, job.employee_id, job.template_id, job.signature_token
        )
        try:
            pdf = await asyncio.to_thread(render_preview_pdf, letter.document.content, letter.attachment_filename)
        except LetterServiceError:
            raise
        except Exception as e:
            capture_exception(e, email_job_id=job.id)
            raise InternalError(f"PDF rendering failed: {e}")

        main = {
            "fileName": letter.attachment_filename,
            "mimeType": PDF_MIME_TYPE,
            "content": base64.b64encode(pdf).decode("ascii"),
            "generated": True,
        }
        # Reassign so the JSON column is flagged dirty
        job.attachments = [main] + attachments

    async def _send(self, job: EmailJobDB) -> Optional[str]:
        message = EmailMessage(
            to=job.recipient_email,
            subject=job.subject,
            body=job.content,
            cc=list(job.cc or []),
            attachments=[EmailAttachment.from_job_dict(a) for a in job.attachments or []],
            job_id=job.id,
            tracking_id=job.tracking_id,
        )
        result = await asyncio.to_thread(self.email_client.send_email, message)
        if not result.success:
            raise DeliveryError(result.error or "Email provider rejected the message", result.capacity_exceeded)
        return result.provider_message_id
