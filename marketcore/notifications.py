"""Fire-and-forget notifications for settlement events."""

import logging
from enum import Enum
from typing import Any, Dict, Iterable, Optional

from marketcore.protocols import NotificationDispatcher, NullNotificationDispatcher

logger = logging.getLogger(__name__)


class NotificationType(str, Enum):
    """Notification types emitted by the engine."""

    BATCH_SUCCESSFUL = "batch_successful"
    BATCH_FAILED = "batch_failed"
    BATCH_CANCELLED = "batch_cancelled"
    ERRAND_APPLICATION = "errand_application"
    ERRAND_ACCEPTED = "errand_accepted"
    ERRAND_COMPLETED = "errand_completed"
    ERRAND_CANCELLED = "errand_cancelled"
    WITHDRAWAL_REQUESTED = "withdrawal_requested"


class Notifier:
    """Wraps a dispatcher so that delivery failures never reach the caller.

    Failures are logged and dropped; this engine does not retry notifications.
    """

    def __init__(self, dispatcher: Optional[NotificationDispatcher] = None):
        self._dispatcher = dispatcher or NullNotificationDispatcher()

    def send(
        self,
        user_id: Optional[str],
        type: NotificationType,
        title: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Send one notification. Returns False if it could not be dispatched."""
        if not user_id:
            return False
        try:
            self._dispatcher.notify(user_id, NotificationType(type).value, title, message, data or {})
        except Exception as e:
            logger.warning(f"Notification {type} to {user_id} failed: {e}")
            return False
        return True

    def send_many(
        self,
        user_ids: Iterable[str],
        type: NotificationType,
        title: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Send one notification per distinct user. Returns the number dispatched."""
        sent = 0
        seen = set()
        for user_id in user_ids:
            if not user_id or user_id in seen:
                continue
            seen.add(user_id)
            if self.send(user_id, type, title, message, data):
                sent += 1
        return sent
