"""
Newsletter subscriber component.

Functional core for the subscriber side of the pipeline: address
validation (also used by the delivery workers to reject malformed
recipients) and the subscriber state machine.

Key behaviors:
- RFC 5322 (simplified) address format check
- pending → confirmed transitions, idempotent on repeat; unsubscribed is terminal
"""

from __future__ import annotations

import logging
import re
from datetime import UTC, datetime
from uuid import uuid4

from src.components.newsletter.models import (
    EmailValidationError,
    NewsletterSubscriber,
    SubscriberStatus,
    SubscriptionError,
    ValidateEmailOutput,
    ValidationError,
    can_transition,
)
from src.components.newsletter.ports import SubscriberRepoPort

logger = logging.getLogger(__name__)

# --- Email Validation Regex (RFC 5322 simplified) ---

EMAIL_REGEX = re.compile(
    r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+@"
    r"[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?"
    r"(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)+$"
)

MAX_EMAIL_LENGTH = 254


# --- Pure Functions (Functional Core) ---


def validate_email(email: str) -> ValidateEmailOutput:
    """
    Validate email address format.

    Returns:
        ValidateEmailOutput with the normalized address or the first error
    """
    normalized = email.strip().lower() if email else ""

    if not normalized:
        return ValidateEmailOutput(
            is_valid=False,
            errors=[ValidationError("EMPTY_EMAIL", "Email address is required", "email")],
        )

    if len(normalized) > MAX_EMAIL_LENGTH:
        return ValidateEmailOutput(
            is_valid=False,
            errors=[ValidationError("EMAIL_TOO_LONG", "Email address is too long", "email")],
        )

    if not EMAIL_REGEX.match(normalized):
        return ValidateEmailOutput(
            is_valid=False,
            errors=[ValidationError("INVALID_FORMAT", "Invalid email format", "email")],
        )

    return ValidateEmailOutput(is_valid=True, normalized_email=normalized)


def create_subscriber(email: str, now: datetime | None = None) -> NewsletterSubscriber:
    """Create a new subscriber in pending status."""
    return NewsletterSubscriber(
        id=uuid4(),
        email=email,
        status=SubscriberStatus.PENDING,
        created_at=now or datetime.now(UTC),
    )


def confirm_subscriber(
    subscriber: NewsletterSubscriber,
    now: datetime | None = None,
) -> NewsletterSubscriber:
    """
    Confirm a subscriber (transition pending → confirmed).

    Raises:
        SubscriptionError: subscriber already unsubscribed
    """
    if subscriber.status == SubscriberStatus.CONFIRMED:
        return subscriber  # Idempotent
    if not can_transition(subscriber.status, SubscriberStatus.CONFIRMED):
        raise SubscriptionError(
            subscriber.email,
            f"cannot go from {subscriber.status.value} to confirmed",
        )

    return NewsletterSubscriber(
        id=subscriber.id,
        email=subscriber.email,
        status=SubscriberStatus.CONFIRMED,
        created_at=subscriber.created_at,
        confirmed_at=now or datetime.now(UTC),
    )


# --- Run Handlers ---


def run_add_subscriber(
    repo: SubscriberRepoPort,
    email: str,
    *,
    confirmed: bool = True,
    now: datetime | None = None,
) -> NewsletterSubscriber:
    """
    Register a subscriber, optionally confirming it straight away.

    Used by operator tooling to seed an audience; the signup/confirmation
    flow itself lives outside this service.

    Raises:
        EmailValidationError: the address is malformed
    """
    validation = validate_email(email)
    if not validation.is_valid or validation.normalized_email is None:
        reason = validation.errors[0].message if validation.errors else "invalid"
        raise EmailValidationError(email, reason)

    subscriber = repo.get_by_email(validation.normalized_email)
    if subscriber is None:
        subscriber = create_subscriber(validation.normalized_email, now)
    if confirmed:
        subscriber = confirm_subscriber(subscriber, now)

    logger.info("Subscriber %s is %s", subscriber.email, subscriber.status.value)
    return repo.save(subscriber)
