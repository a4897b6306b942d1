"""
Email Integration Module

Letter email delivery using Resend as the email provider.

Features:
- Asynchronous dispatch through a bounded worker pool
- Per-dispatch timeout with failure recording
- Delivery status state machine fed by webhooks, polling and dispatch outcomes
- Flat-file history copy of every transition
- Live status notifications per sending user
"""

from .email_client import EmailClient, EmailResult, EmailMessage, EmailAttachment, is_valid_email
from .state_machine import RETRYABLE_STATUSES, DISPATCHABLE_STATUSES, apply_event, prepare_retry
from .job_store import EmailJobRepository, EmailHistoryLog
from .status_tracker import DeliveryStatusTracker, StatusEvent, PollResult
from .dispatch import EmailDispatchEngine, DispatchJobProcessor
from .worker_pool import DispatchWorkerPool, get_dispatch_pool, set_dispatch_pool, submit_job
from .status_poller import StatusPoller

__all__ = [
    # Client
    'EmailClient',
    'EmailResult',
    'EmailMessage',
    'EmailAttachment',
    'is_valid_email',
    # State
    'RETRYABLE_STATUSES',
    'DISPATCHABLE_STATUSES',
    'apply_event',
    'prepare_retry',
    'EmailJobRepository',
    'EmailHistoryLog',
    'DeliveryStatusTracker',
    'StatusEvent',
    'PollResult',
    # Dispatch
    'EmailDispatchEngine',
    'DispatchJobProcessor',
    'DispatchWorkerPool',
    'get_dispatch_pool',
    'set_dispatch_pool',
    'submit_job',
    'StatusPoller',
]
