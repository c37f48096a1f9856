"""
Dev Email Adapter.

Logs emails instead of sending them. Used for local development and
testing of the delivery workers.

Key behaviors:
- Logs email details
- Returns SKIPPED status (not SENT)
- Stores emails in memory for test assertions
- Recipients listed in failing_recipients get a FAILED result, so the
  partial-failure path can be exercised without a real provider
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from uuid import uuid4

from src.core.ports.email import EmailResult, EmailStatus

logger = logging.getLogger(__name__)


@dataclass
class SentEmail:
    """Record of a logged email for test assertions."""

    id: str
    recipient: str
    subject: str
    body_html: str
    body_text: str
    logged_at: datetime


@dataclass
class DevEmailAdapter:
    """
    Dev email adapter that logs instead of sending.

    Implements EmailTransportPort. Safe to share between worker threads.
    """

    # In-memory storage for test assertions
    sent_emails: list[SentEmail] = field(default_factory=list)
    # Every send attempt, including failed ones, in call order
    attempts: list[str] = field(default_factory=list)
    failing_recipients: set[str] = field(default_factory=set)

    # Configuration
    log_level: int = logging.INFO
    log_body: bool = True  # Whether to log body content
    body_preview_length: int = 100  # Max chars of body to log

    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def send_email(
        self,
        recipient: str,
        subject: str,
        body_html: str,
        body_text: str,
    ) -> EmailResult:
        """
        Log an email instead of sending.

        Returns:
            EmailResult with SKIPPED status, or FAILED for a failing recipient
        """
        with self._lock:
            self.attempts.append(recipient)
            if recipient in self.failing_recipients:
                logger.warning("EMAIL (dev): simulated failure for %s", recipient)
                return EmailResult.failed(recipient, "Simulated transport failure")

            message_id = f"dev-{uuid4().hex[:12]}"
            self.sent_emails.append(
                SentEmail(
                    id=message_id,
                    recipient=recipient,
                    subject=subject,
                    body_html=body_html,
                    body_text=body_text,
                    logged_at=datetime.now(UTC),
                )
            )

        self._log_email(recipient, subject, body_html, message_id)
        return EmailResult(
            status=EmailStatus.SKIPPED,
            message_id=message_id,
            recipient=recipient,
            error="Dev mode - email logged, not sent",
        )

    def _log_email(
        self,
        recipient: str,
        subject: str,
        body_html: str,
        message_id: str,
    ) -> None:
        """Log email details."""
        parts = [
            f"EMAIL (dev): To={recipient}",
            f"Subject={subject}",
        ]

        if self.log_body and body_html:
            preview = body_html[: self.body_preview_length]
            if len(body_html) > self.body_preview_length:
                preview += "..."
            parts.append(f"Body={preview}")

        parts.append(f"MessageID={message_id}")
        logger.log(self.log_level, ", ".join(parts))

    # --- Test Helper Methods ---

    def get_emails_to(self, recipient: str) -> list[SentEmail]:
        """Get all emails logged to a specific recipient."""
        return [e for e in self.sent_emails if e.recipient == recipient]

    def clear(self) -> None:
        """Clear all stored emails (for test isolation)."""
        self.sent_emails.clear()
        self.attempts.clear()

    @property
    def email_count(self) -> int:
        """Get the number of logged emails."""
        return len(self.sent_emails)
