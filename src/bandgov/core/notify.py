"""Post-commit notification dispatch.

Core operations never notify anyone themselves. They return the
notifications they want sent, and the caller dispatches them once the
decision has committed. A failed delivery is logged and dropped.
"""

from __future__ import annotations

import logging
from typing import Protocol

from bandgov.models.governance import Notification

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def notify(self, user_id: str, notification: Notification) -> None: ...


class LoggingNotifier:
    """Writes each notification to the log. Used when no delivery channel is configured."""

    async def notify(self, user_id: str, notification: Notification) -> None:
        logger.info(
            "notification user=%s type=%s related=%s title=%s",
            user_id,
            notification.type,
            notification.related_id,
            notification.title,
        )


async def dispatch_notifications(notifier: Notifier, notifications: list[Notification]) -> int:
    """Send every notification. Returns how many were delivered."""
    delivered = 0
    for notification in notifications:
        try:
            await notifier.notify(notification.user_id, notification)
        except Exception:  # Delivery must never undo a committed decision
            logger.exception(
                "notification_failed user=%s type=%s",
                notification.user_id,
                notification.type,
            )
            continue
        delivered += 1
    return delivered
