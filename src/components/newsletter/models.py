"""
Newsletter component models.

Subscriber records and address validation results. Subscribers are the
audience of the publishing pipeline: only confirmed ones receive issues.

State machine: pending → confirmed → unsubscribed
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from uuid import UUID

# --- Subscriber State Machine ---


class SubscriberStatus(Enum):
    """
    Newsletter subscriber status.

    State transitions:
    - pending → confirmed (via confirmation link)
    - confirmed → unsubscribed (via unsubscribe link)
    """

    PENDING = "pending"  # Awaiting email confirmation
    CONFIRMED = "confirmed"  # Email confirmed, receives issues
    UNSUBSCRIBED = "unsubscribed"  # User unsubscribed


# Valid state transitions
VALID_TRANSITIONS: dict[SubscriberStatus, set[SubscriberStatus]] = {
    SubscriberStatus.PENDING: {SubscriberStatus.CONFIRMED},
    SubscriberStatus.CONFIRMED: {SubscriberStatus.UNSUBSCRIBED},
    SubscriberStatus.UNSUBSCRIBED: set(),  # Terminal state
}


def can_transition(from_status: SubscriberStatus, to_status: SubscriberStatus) -> bool:
    """Check if a subscriber state transition is valid."""
    return to_status in VALID_TRANSITIONS.get(from_status, set())


# --- Entity ---


@dataclass
class NewsletterSubscriber:
    """Newsletter subscriber entity."""

    id: UUID
    email: str
    status: SubscriberStatus = SubscriberStatus.PENDING
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    confirmed_at: datetime | None = None
    unsubscribed_at: datetime | None = None


# --- Output Models ---


@dataclass(frozen=True)
class ValidationError:
    """Validation error detail."""

    code: str
    message: str
    field: str | None = None


@dataclass(frozen=True)
class ValidateEmailOutput:
    """Output from email validation."""

    is_valid: bool
    normalized_email: str | None = None  # Lowercase, trimmed
    errors: list[ValidationError] = field(default_factory=list)


# --- Error Types ---


class NewsletterError(Exception):
    """Base newsletter error."""

    pass


class EmailValidationError(NewsletterError):
    """Email validation failed."""

    def __init__(self, email: str, reason: str) -> None:
        self.email = email
        self.reason = reason
        super().__init__(f"Invalid email '{email}': {reason}")


class SubscriptionError(NewsletterError):
    """Subscription state change not allowed."""

    def __init__(self, email: str, reason: str) -> None:
        self.email = email
        self.reason = reason
        super().__init__(f"Subscription error for '{email}': {reason}")
