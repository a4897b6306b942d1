"""
Shared router dependencies.

Authentication is handled upstream; the gateway forwards the caller's id in
X-User-Id, which is used to route status notifications.
"""

from typing import Callable, Optional

from fastapi import Depends, Header

from config import Settings, get_settings
from email_integration.email_client import EmailClient
from email_integration.job_store import EmailHistoryLog
from email_integration.worker_pool import submit_job
from services.notification_hub import NotificationHub, get_notification_hub

_email_client: Optional[EmailClient] = None


async def get_current_user_id(x_user_id: Optional[str] = Header(None, alias="X-User-Id")) -> Optional[str]:
    return x_user_id


def get_hub() -> NotificationHub:
    return get_notification_hub()


def get_history(settings: Settings = Depends(get_settings)) -> EmailHistoryLog:
    return EmailHistoryLog(settings.email_history_dir)


def get_email_client() -> EmailClient:
    """Get or create email client singleton."""
    global _email_client
    if _email_client is None:
        _email_client = EmailClient.from_settings(get_settings())
    return _email_client


def get_dispatch_submit() -> Callable[[str], bool]:
    return submit_job
