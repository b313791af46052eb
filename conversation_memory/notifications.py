"""
Push notifications toward the UI layer.

Notifications are fire-and-forget: a subscriber that raises is logged and
skipped, and nothing is retried. A UI that missed one reconciles by reading
conversation metadata again.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from .models import utc_now

logger = logging.getLogger(__name__)


class NotificationType(Enum):
    CONVERSATION_CREATED = "conversation_created"
    CONVERSATION_RENAMED = "conversation_renamed"
    STATE_CHANGED = "state_changed"


@dataclass
class Notification:
    """A single push notification."""

    type: NotificationType
    conversation_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "conversation_id": self.conversation_id,
            "payload": dict(self.payload),
            "timestamp": self.timestamp.isoformat(),
        }


Subscriber = Callable[[Notification], Awaitable[None] | None]


class Notifier:
    """Fans notifications out to subscribers, sync or async."""

    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a subscriber. Returns a function that unsubscribes it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    async def publish(self, notification: Notification) -> None:
        for callback in list(self._subscribers):
            try:
                result = callback(notification)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(
                    "Notification subscriber failed for %s (%s)",
                    notification.type.value,
                    notification.conversation_id,
                )

    async def conversation_created(self, conversation_id: str, channel: str) -> None:
        await self.publish(
            Notification(NotificationType.CONVERSATION_CREATED, conversation_id, {"channel": channel})
        )

    async def conversation_renamed(
        self, conversation_id: str, title: str, topics: list[str], manual: bool
    ) -> None:
        await self.publish(
            Notification(
                NotificationType.CONVERSATION_RENAMED,
                conversation_id,
                {"title": title, "topics": list(topics), "manual": manual},
            )
        )

    async def state_changed(self, conversation_id: str, old: str | None, new: str) -> None:
        await self.publish(
            Notification(
                NotificationType.STATE_CHANGED,
                conversation_id,
                {"from": old, "to": new},
            )
        )
