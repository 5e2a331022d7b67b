"""Notification dispatch — decides nothing, only hands messages to the queue."""

import logging
from typing import Any, Iterable

logger = logging.getLogger(__name__)


class Notifier:
    """Enqueues security notifications for asynchronous delivery by Celery."""

    def send(self, recipient_id: int, kind: str, payload: dict[str, Any]) -> None:
        from helpdesk_rbac.tasks.celery_app import deliver_security_notification

        deliver_security_notification.delay(recipient_id, kind, payload)
        logger.debug("Queued %s notification for user %s", kind, recipient_id)

    def notify_suspicious_activity(self, user_id: int, payload: dict[str, Any]) -> None:
        self.send(user_id, "suspicious_activity", payload)

    def notify_security_team(self, recipient_ids: Iterable[int], payload: dict[str, Any]) -> None:
        for recipient_id in recipient_ids:
            self.send(recipient_id, "emergency_access_granted", payload)
