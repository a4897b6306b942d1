"""
Email Client - Resend Provider Implementation

This module provides email sending via the Resend API.

Resend API Reference:
- Send: POST https://api.resend.com/emails -> { id: "message_id" }
- Status: GET https://api.resend.com/emails/{id} -> { ..., last_event: "delivered" }

Provider quota/rate errors are reported separately from other failures so the
dispatch engine can park the job as 'queued' instead of 'failed'.
"""

import base64
import logging
import re
from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field

import resend

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$')

CAPACITY_ERROR_TYPES = {"rate_limit_exceeded", "daily_quota_exceeded", "monthly_quota_exceeded"}
CAPACITY_ERROR_MARKERS = ("maximum credits exceeded", "credits exceeded", "quota exceeded")


def is_valid_email(email: Optional[str]) -> bool:
    return bool(email) and bool(EMAIL_PATTERN.match(email.strip()))


@dataclass
class EmailResult:
    """Result of an email operation"""
    success: bool
    provider_message_id: Optional[str] = None
    error: Optional[str] = None
    capacity_exceeded: bool = False
    provider_response: Optional[Dict[str, Any]] = None


@dataclass
class EmailAttachment:
    """Email attachment"""
    filename: str
    content: bytes
    content_type: str = "application/octet-stream"

    @classmethod
    def from_job_dict(cls, data: Dict[str, Any]) -> "EmailAttachment":
        """Decode the {fileName, mimeType, content(base64)} shape stored on jobs."""
        return cls(
            filename=data.get("fileName") or "attachment",
            content=base64.b64decode(data.get("content") or ""),
            content_type=data.get("mimeType") or "application/octet-stream",
        )


@dataclass
class EmailMessage:
    """Represents an email message to send"""
    to: str
    subject: str
    body: str
    from_address: Optional[str] = None
    cc: List[str] = field(default_factory=list)
    html: bool = True
    attachments: List[EmailAttachment] = field(default_factory=list)
    job_id: Optional[str] = None
    tracking_id: Optional[str] = None


def _is_capacity_error(error: Exception) -> bool:
    error_type = str(getattr(error, "error_type", "") or "").lower()
    if error_type in CAPACITY_ERROR_TYPES:
        return True
    text = str(error).lower()
    return any(marker in text for marker in CAPACITY_ERROR_MARKERS)


class EmailClient:
    """
    Email Client - Resend Provider Implementation.

    The Resend SDK is synchronous; async callers should run these methods in
    a thread (asyncio.to_thread).

    Usage:
        client = EmailClient(api_key, "letters@example.com")
        result = client.send_email(EmailMessage(
            to="user@example.com",
            subject="Your letter",
            body="<p>Please find your letter attached.</p>"
        ))
    """

    def __init__(
        self,
        api_key: str = "",
        from_address: str = "",
        provider: str = "resend"
    ):
        self.api_key = api_key
        self.from_address = from_address
        self.provider = provider

        if self.api_key:
            resend.api_key = self.api_key
            logger.info(f"Email client initialized (provider: {self.provider})")
        else:
            logger.warning("Email client not initialized - EMAIL_API_KEY not set")

    @classmethod
    def from_settings(cls, settings) -> "EmailClient":
        return cls(
            api_key=settings.EMAIL_API_KEY,
            from_address=settings.EMAIL_FROM_ADDRESS,
            provider=settings.EMAIL_PROVIDER,
        )

    def is_ready(self) -> bool:
        """Check if client is ready to send emails."""
        return bool(self.api_key and self.from_address)

    def send_email(self, message: EmailMessage) -> EmailResult:
        """
        Send an email via Resend.

        Args:
            message: EmailMessage to send

        Returns:
            EmailResult with send status
        """
        if not self.is_ready():
            return EmailResult(
                success=False,
                error="Email client not configured. Check EMAIL_API_KEY and EMAIL_FROM_ADDRESS."
            )

        params: Dict[str, Any] = {
            "from": message.from_address or self.from_address,
            "to": [message.to],
            "subject": message.subject,
        }

        if message.html:
            params["html"] = message.body
        else:
            params["text"] = message.body

        if message.cc:
            params["cc"] = message.cc

        if message.attachments:
            params["attachments"] = [
                {
                    "filename": att.filename,
                    "content": base64.b64encode(att.content).decode("ascii"),
                    "content_type": att.content_type,
                }
                for att in message.attachments
            ]

        # Correlation headers for support lookups
        if message.job_id:
            params["headers"] = {
                "X-Email-Job-ID": message.job_id,
                "X-Tracking-ID": message.tracking_id or "",
            }

        try:
            logger.info(f"Sending email to {message.to} via Resend ({len(message.attachments)} attachments)")
            response = resend.Emails.send(params)
        except resend.exceptions.ResendError as e:
            error_msg = str(e)
            logger.error(f"Resend API error: {error_msg}")
            return EmailResult(success=False, error=error_msg, capacity_exceeded=_is_capacity_error(e))
        except Exception as e:
            error_msg = f"Unexpected error sending email: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return EmailResult(success=False, error=error_msg, capacity_exceeded=_is_capacity_error(e))

        provider_msg_id = None
        if isinstance(response, dict):
            provider_msg_id = response.get("id")
        elif hasattr(response, "id"):
            provider_msg_id = response.id

        logger.info(f"Email accepted by provider: {provider_msg_id}")
        return EmailResult(
            success=True,
            provider_message_id=provider_msg_id,
            provider_response=response if isinstance(response, dict) else {"id": provider_msg_id},
        )

    def get_last_event(self, provider_message_id: str) -> Optional[str]:
        """
        Ask the provider for the latest delivery event of a message.

        Returns:
            Event name such as "delivered" or "bounced", or None if unknown
        """
        response = resend.Emails.get(email_id=provider_message_id)
        if isinstance(response, dict):
            return response.get("last_event")
        return getattr(response, "last_event", None)

    def get_status(self) -> Dict[str, Any]:
        """Get client configuration status."""
        return {
            "provider": self.provider,
            "ready": self.is_ready(),
            "from_address": self.from_address or "Not set",
            "api_key_set": bool(self.api_key)
        }
