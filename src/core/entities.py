"""
Domain entities for the newsletter publishing pipeline.

Persisted records shared by the idempotency ledger, the outbox writer and
the delivery workers:
- IdempotencyRecord: one row per (caller_id, idempotency_key)
- NewsletterIssue: immutable issue content, written once per publish
- DeliveryTask: one pending (issue, recipient) pair in the delivery queue

Subscribers live in the newsletter component (they are owned by the
signup flow, the pipeline only reads the confirmed set).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Literal
from uuid import UUID, uuid4

__all__ = [
    "DeliveryTask",
    "IdempotencyRecord",
    "LedgerStatus",
    "NewsletterIssue",
]


# Ledger row lifecycle: claimed -> completed (-> purged)
LedgerStatus = Literal["claimed", "completed"]


@dataclass
class IdempotencyRecord:
    """
    Idempotency ledger row.

    Invariants:
    - (caller_id, idempotency_key) is unique
    - status "claimed" means in flight: no response columns are set
    - status "completed" means replayable: status code, headers and body set
    """

    caller_id: str
    idempotency_key: str
    status: LedgerStatus = "claimed"
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    claimed_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    response_status_code: int | None = None
    response_headers: bytes | None = None
    response_body: bytes | None = None
    completed_at: datetime | None = None

    @property
    def is_completed(self) -> bool:
        return self.status == "completed"


@dataclass(frozen=True)
class NewsletterIssue:
    """Published newsletter issue. Never updated after insert."""

    title: str
    html_body: str
    text_body: str
    id: UUID = field(default_factory=uuid4)
    published_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(frozen=True)
class DeliveryTask:
    """
    Pending delivery of one issue to one recipient.

    Presence in the queue is the pending state; deletion is terminal.
    attempt_count / next_attempt_at only matter when retries are enabled.
    """

    issue_id: UUID
    recipient_email: str
    attempt_count: int = 0
    next_attempt_at: datetime | None = None
