"""
Job Event Bus - fan-out of job change notifications.

Subscribers are the UI cache invalidation hook and the WebSocket
connections in ``demoforge.main``. A failing subscriber is logged and
never affects the write that triggered the notification.
"""

from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

import structlog

from demoforge.models import Job

logger = structlog.get_logger()

JOB_UPDATED = "job.updated"
AUDIT_UPDATED = "audit.updated"


@dataclass
class JobNotification:
    """A change that downstream caches should react to."""
    topic: str
    job_id: str
    job: Optional[Job] = None
    paths: list[str] = field(default_factory=list)


Subscriber = Callable[[JobNotification], Awaitable[None]]


class JobEventBus:
    """In-process publish/subscribe for job notifications."""

    def __init__(self):
        self._subscribers: list[Subscriber] = []

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        """Register a subscriber; returns a function that removes it."""
        self._subscribers.append(subscriber)

        def unsubscribe() -> None:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

        return unsubscribe

    async def publish(self, notification: JobNotification) -> None:
        for subscriber in list(self._subscribers):
            try:
                await subscriber(notification)
            except Exception:
                logger.exception(
                    "Notification subscriber failed",
                    topic=notification.topic,
                    job_id=notification.job_id,
                )
