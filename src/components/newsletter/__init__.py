"""
Newsletter component.

Subscriber model, state machine and email address validation.
"""

from src.components.newsletter.component import (
    EMAIL_REGEX,
    confirm_subscriber,
    create_subscriber,
    run_add_subscriber,
    validate_email,
)
from src.components.newsletter.models import (
    VALID_TRANSITIONS,
    EmailValidationError,
    NewsletterError,
    NewsletterSubscriber,
    SubscriberStatus,
    SubscriptionError,
    ValidateEmailOutput,
    ValidationError,
    can_transition,
)
from src.components.newsletter.ports import SubscriberRepoPort

__all__ = [
    # Component
    "EMAIL_REGEX",
    "confirm_subscriber",
    "create_subscriber",
    "run_add_subscriber",
    "validate_email",
    # Models
    "VALID_TRANSITIONS",
    "NewsletterSubscriber",
    "SubscriberStatus",
    "ValidateEmailOutput",
    "ValidationError",
    "can_transition",
    # Errors
    "EmailValidationError",
    "NewsletterError",
    "SubscriptionError",
    # Ports
    "SubscriberRepoPort",
]
