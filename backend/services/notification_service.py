"""
HRMS Approvals - Notifier

Turns workflow notifications ({to, subject, message, tenant_id, actor_id,
module, action}) into emails. Failures raise NotificationError; callers that
must not fail (the side-effect outbox) catch and retry.
"""

import logging
from typing import Any, Dict, Optional

from services.email_service import EmailService

logger = logging.getLogger(__name__)


class NotificationError(Exception):
    pass


class Notifier:

    def __init__(self, email_service: EmailService, audit_sink=None):
        self.email_service = email_service
        self.audit_sink = audit_sink

    async def send(self, notification: Dict[str, Any]) -> Optional[str]:
        """Send one notification. Returns the provider message id."""
        to = notification.get("to")
        if not to:
            logger.info("Notification skipped, no recipient: %s", notification.get("subject"))
            return None
        recipients = to if isinstance(to, list) else [to]

        result = await self.email_service.send_email(
            to=recipients,
            subject=notification.get("subject", ""),
            text_body=notification.get("message", ""),
            metadata={
                "tenant_id": notification.get("tenant_id"),
                "module": notification.get("module"),
                "action": notification.get("action"),
            },
        )
        if not result.success:
            raise NotificationError(result.error or "Email provider reported failure")

        # The email is out; a failed audit write must not trigger a resend
        if self.audit_sink is not None:
            try:
                await self.audit_sink.record({
                    "tenant_id": notification.get("tenant_id"),
                    "actor_id": notification.get("actor_id"),
                    "action": "Notification Sent",
                    "module": notification.get("module") or "Notifications",
                    "entity_type": "Notification",
                    "description": f"Notification sent via email to {', '.join(recipients)}",
                })
            except Exception as e:
                logger.warning("Failed to audit notification %s: %s", result.message_id, e)
        return result.message_id
