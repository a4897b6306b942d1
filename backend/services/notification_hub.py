"""
Notification Hub

In-process fan-out of status events to live subscribers (WebSocket clients),
grouped by owning user. Group keys look like "user_{userId}".

Publishing never blocks: a subscriber whose buffer is full misses the event
and a warning is logged. Events are not persisted; the email job row (and its
flat-file history) remains the source of truth.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Optional, Set

logger = logging.getLogger(__name__)

EMAIL_STATUS_EVENT = "EmailStatusUpdate"


def user_group(user_id: Optional[str]) -> Optional[str]:
    return f"user_{user_id}" if user_id else None


@dataclass
class Notification:
    """A single published event"""
    group: str
    event: str
    payload: Dict[str, Any]
    published_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": self.event,
            "group": self.group,
            "payload": self.payload,
            "published_at": self.published_at.isoformat(),
        }


class NotificationHub:
    """
    Process-wide publish/subscribe channel.

    Usage:
        hub = NotificationHub()
        async with hub.subscribe("user_42") as queue:
            notification = await queue.get()

        hub.publish("user_42", "EmailStatusUpdate", {"emailJobId": job_id})
    """

    def __init__(self, queue_size: int = 100):
        self.queue_size = queue_size
        self._groups: Dict[str, Set[asyncio.Queue]] = {}

    def publish(self, group: str, event: str, payload: Dict[str, Any]) -> int:
        """
        Deliver an event to every subscriber of a group.

        Returns:
            Number of subscribers that received it
        """
        notification = Notification(group=group, event=event, payload=payload)
        delivered = 0
        for queue in list(self._groups.get(group, ())):
            try:
                queue.put_nowait(notification)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning(f"Subscriber buffer full in {group}; dropped {event}")
        logger.debug(f"Published {event} to {group} ({delivered} subscribers)")
        return delivered

    @asynccontextmanager
    async def subscribe(self, group: str) -> AsyncIterator[asyncio.Queue]:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._groups.setdefault(group, set()).add(queue)
        logger.info(f"Subscriber joined {group}")
        try:
            yield queue
        finally:
            members = self._groups.get(group)
            if members is not None:
                members.discard(queue)
                if not members:
                    del self._groups[group]
            logger.info(f"Subscriber left {group}")

    def subscriber_count(self, group: str) -> int:
        return len(self._groups.get(group, ()))


_hub: Optional[NotificationHub] = None


def get_notification_hub() -> NotificationHub:
    """Get the process-wide hub, creating it on first use."""
    global _hub
    if _hub is None:
        from config import get_settings
        _hub = NotificationHub(queue_size=get_settings().NOTIFICATION_QUEUE_SIZE)
    return _hub
