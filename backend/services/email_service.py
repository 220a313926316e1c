"""
HRMS Approvals - Email Service

Provider-agnostic email sending. The mock provider logs each message and
stores it in the 'email_logs' collection; the webhook provider hands the
message to an HTTP relay (NOTIFICATION_WEBHOOK_URL) that owns real delivery.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import List, Optional, Dict, Any
from enum import Enum
from dataclasses import dataclass, asdict

import httpx

from services.app_config import EMAIL_PROVIDER, EMAIL_FROM_ADDRESS, NOTIFICATION_WEBHOOK_URL

logger = logging.getLogger(__name__)


class EmailProvider(str, Enum):
    """Supported email providers."""
    MOCK = "mock"
    WEBHOOK = "webhook"


@dataclass
class EmailMessage:
    """Email message structure."""
    to: List[str]
    subject: str
    text_body: str
    html_body: Optional[str] = None
    from_address: str = EMAIL_FROM_ADDRESS
    metadata: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class EmailResult:
    """Result of an email send operation."""
    success: bool
    message_id: Optional[str] = None
    provider: str = EmailProvider.MOCK.value
    error: Optional[str] = None
    timestamp: str = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.now(timezone.utc).isoformat()

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# =============================================================================
# MOCK EMAIL PROVIDER
# =============================================================================

class MockEmailProvider:
    """
    Mock email provider for development and testing.

    Stores emails in MongoDB collection 'email_logs' and keeps an in-memory
    copy for tests.
    """

    def __init__(self, db=None):
        self.db = db
        self._sent_emails: List[Dict[str, Any]] = []

    async def send(self, message: EmailMessage) -> EmailResult:
        message_id = f"mock_{uuid.uuid4().hex[:12]}"
        timestamp = datetime.now(timezone.utc).isoformat()

        email_record = {
            "message_id": message_id,
            "provider": EmailProvider.MOCK.value,
            "to": message.to,
            "subject": message.subject,
            "from_address": message.from_address,
            "text_body": message.text_body,
            "html_body": message.html_body,
            "metadata": message.metadata or {},
            "sent_at": timestamp,
            "status": "sent",
        }

        logger.info("[MOCK EMAIL] To: %s | Subject: %s | ID: %s",
                    ", ".join(message.to), message.subject, message_id)

        self._sent_emails.append(email_record)
        if self.db is not None:
            await self.db.email_logs.insert_one(dict(email_record))

        return EmailResult(success=True, message_id=message_id, timestamp=timestamp)

    def get_sent_emails(self) -> List[Dict[str, Any]]:
        return self._sent_emails.copy()

    def clear_sent_emails(self):
        self._sent_emails.clear()


# =============================================================================
# WEBHOOK PROVIDER
# =============================================================================

class WebhookEmailProvider:
    """Posts the message as JSON to an HTTP relay."""

    def __init__(self, url: str, timeout: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.url = url
        self.timeout = timeout
        self.transport = transport

    async def send(self, message: EmailMessage) -> EmailResult:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            try:
                response = await client.post(self.url, json=message.to_dict())
            except httpx.HTTPError as e:
                return EmailResult(success=False, provider=EmailProvider.WEBHOOK.value, error=str(e))

        if response.status_code >= 400:
            return EmailResult(
                success=False,
                provider=EmailProvider.WEBHOOK.value,
                error=f"Relay returned {response.status_code}: {response.text[:200]}",
            )
        message_id = None
        if response.headers.get("content-type", "").startswith("application/json"):
            message_id = response.json().get("message_id")
        return EmailResult(success=True, message_id=message_id, provider=EmailProvider.WEBHOOK.value)


# =============================================================================
# EMAIL SERVICE (Main Interface)
# =============================================================================

class EmailService:
    """
    Unified interface for sending emails.

    Usage:
        service = EmailService(db=database)
        result = await service.send_email(
            to=["employee@example.com"],
            subject="Travel Claim Level1 Approved",
            text_body="Your travel claim has been approved"
        )
    """

    def __init__(self, db=None, provider: EmailProvider = None):
        self.db = db
        self.provider_type = provider or EmailProvider(EMAIL_PROVIDER)
        self._provider = None

    def _get_provider(self):
        """Get or create the email provider instance."""
        if self._provider is None:
            if self.provider_type == EmailProvider.WEBHOOK:
                if not NOTIFICATION_WEBHOOK_URL:
                    raise RuntimeError("NOTIFICATION_WEBHOOK_URL is not configured")
                self._provider = WebhookEmailProvider(NOTIFICATION_WEBHOOK_URL)
            else:
                self._provider = MockEmailProvider(db=self.db)
        return self._provider

    async def send_email(
        self,
        to: List[str],
        subject: str,
        text_body: str,
        html_body: Optional[str] = None,
        from_address: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> EmailResult:
        message = EmailMessage(
            to=to,
            subject=subject,
            text_body=text_body,
            html_body=html_body,
            from_address=from_address or EMAIL_FROM_ADDRESS,
            metadata=metadata,
        )
        return await self._get_provider().send(message)

    async def get_email_logs(
        self,
        limit: int = 50,
        skip: int = 0,
        subject_filter: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """Sent emails, newest first. Falls back to the mock provider's memory without a db."""
        if self.db is None:
            provider = self._get_provider()
            if isinstance(provider, MockEmailProvider):
                emails = provider.get_sent_emails()
                if subject_filter:
                    emails = [e for e in emails if subject_filter.lower() in e.get("subject", "").lower()]
                return emails[skip:skip + limit]
            return []

        query = {}
        if subject_filter:
            query["subject"] = {"$regex": subject_filter, "$options": "i"}
        cursor = self.db.email_logs.find(query, {"_id": 0}).sort("sent_at", -1).skip(skip).limit(limit)
        return await cursor.to_list(limit)
