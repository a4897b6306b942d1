from .letters import router as letters_router
from .email_status import router as email_status_router
from .notifications import router as notifications_router

__all__ = [
    'letters_router',
    'email_status_router',
    'notifications_router',
]
